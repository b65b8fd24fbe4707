from __future__ import annotations

import json
import os
import stat
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any

from platformdirs import user_config_path

DEFAULT_TIMEOUT_S = 30.0
DEFAULT_GIT_TIMEOUT_S = 300.0
DEFAULT_NPM_REGISTRY_URL = "https://registry.npmjs.org"
DEFAULT_GITHUB_API_URL = "https://api.github.com"
DEFAULT_GITLAB_API_URL = "https://gitlab.com/api/v4"

AGENTSKILLS_DIRNAME = ".agentskills"
SKILLS_DIRNAME = "skills"
LOCK_FILENAME = "skills-lock.json"
PROJECT_DESCRIPTOR = "package.json"
PROJECT_SKILLS_FIELD = "agentskills"


@dataclass(frozen=True)
class Config:
    timeout_s: float = DEFAULT_TIMEOUT_S
    git_timeout_s: float = DEFAULT_GIT_TIMEOUT_S
    npm_registry_url: str = DEFAULT_NPM_REGISTRY_URL
    github_api_url: str = DEFAULT_GITHUB_API_URL
    gitlab_api_url: str = DEFAULT_GITLAB_API_URL
    github_token: str | None = None
    gitlab_token: str | None = None
    git_executable: str = "git"
    global_skills_dir: str | None = None  # defaults to ~/.agentskills/skills


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("AGENTSKILLS_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path("agentskills") / "config.json"


def _apply_env(cfg: Config) -> Config:
    updates: dict[str, Any] = {}
    if env := os.getenv("AGENTSKILLS_TIMEOUT_S"):
        try:
            updates["timeout_s"] = float(env)
        except ValueError as e:
            raise ValueError(f"AGENTSKILLS_TIMEOUT_S must be a number, got {env!r}") from e
    if env := os.getenv("AGENTSKILLS_NPM_REGISTRY"):
        updates["npm_registry_url"] = env
    if not cfg.github_token and (env := os.getenv("GITHUB_TOKEN")):
        updates["github_token"] = env
    if not cfg.gitlab_token and (env := os.getenv("GITLAB_TOKEN")):
        updates["gitlab_token"] = env
    return replace(cfg, **updates) if updates else cfg


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    if not path.exists():
        return _apply_env(Config())

    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        return _apply_env(Config())

    allowed = {f.name for f in Config.__dataclass_fields__.values()}  # type: ignore[attr-defined]
    filtered: dict[str, Any] = {k: v for k, v in raw.items() if k in allowed}
    return _apply_env(Config(**filtered))  # type: ignore[arg-type]


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(asdict(cfg), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)

    # Best-effort permissions hardening (the file may hold tokens).
    try:
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
    except OSError:
        pass

    return path


def project_skills_dir(project_dir: str | Path) -> Path:
    return Path(project_dir).expanduser().resolve() / AGENTSKILLS_DIRNAME / SKILLS_DIRNAME


def global_skills_dir(cfg: Config | None = None) -> Path:
    if cfg is not None and cfg.global_skills_dir:
        return Path(cfg.global_skills_dir).expanduser()
    return Path.home() / AGENTSKILLS_DIRNAME / SKILLS_DIRNAME


def lock_path_for_project(project_dir: str | Path) -> Path:
    return Path(project_dir).expanduser().resolve() / AGENTSKILLS_DIRNAME / LOCK_FILENAME


def read_declared_skills(project_dir: str | Path) -> dict[str, str]:
    """
    Read the ``agentskills`` field of the project's package.json.

    Returns an empty mapping when the descriptor or the field is absent.
    """
    path = Path(project_dir).expanduser() / PROJECT_DESCRIPTOR
    if not path.exists():
        return {}
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ValueError(f"{path} must contain a JSON object")

    declared = raw.get(PROJECT_SKILLS_FIELD)
    if declared is None:
        return {}
    if not isinstance(declared, dict):
        raise ValueError(f"{PROJECT_SKILLS_FIELD} in {path} must be an object")

    out: dict[str, str] = {}
    for name, spec in declared.items():
        if not isinstance(spec, str):
            raise ValueError(f"{PROJECT_SKILLS_FIELD}.{name} in {path} must be a string")
        out[str(name)] = spec
    return out
