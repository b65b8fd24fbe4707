"""
skills-lock.json: the record of the last successful installs.

The registry uses the lock file only as an optional allow-list; a missing
lock file means "load everything found on disk".
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from .client import AgentSkillsError
from .config import LOCK_FILENAME, lock_path_for_project
from .installer import InstallResult, InstallSuccess

LOCK_FILE_VERSION = "1.0"


class LockFileCorrupt(AgentSkillsError):
    code = "LOCK_FILE_CORRUPT"


@dataclass(frozen=True)
class SkillLockEntry:
    spec: str
    resolved_version: str
    integrity: str

    def to_json(self) -> dict[str, str]:
        return {"spec": self.spec, "resolvedVersion": self.resolved_version, "integrity": self.integrity}


@dataclass(frozen=True)
class SkillLockFile:
    version: str
    skills: dict[str, SkillLockEntry]

    def to_json(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "skills": {name: self.skills[name].to_json() for name in sorted(self.skills)},
        }


def _write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)


def _parse_lock(raw: Any, *, path: Path) -> SkillLockFile:
    if not isinstance(raw, dict):
        raise LockFileCorrupt(f"Lock file {path} must contain a JSON object")
    skills_raw = raw.get("skills")
    if not isinstance(skills_raw, dict):
        raise LockFileCorrupt(f"Lock file {path} has no 'skills' object")

    skills: dict[str, SkillLockEntry] = {}
    for name, item in skills_raw.items():
        if not isinstance(item, dict):
            raise LockFileCorrupt(f"Lock file {path}: entry {name!r} must be an object")
        fields = {key: item.get(key) for key in ("spec", "resolvedVersion", "integrity")}
        if not all(isinstance(v, str) for v in fields.values()):
            raise LockFileCorrupt(f"Lock file {path}: entry {name!r} needs string spec, resolvedVersion and integrity")
        skills[name] = SkillLockEntry(
            spec=fields["spec"],  # type: ignore[arg-type]
            resolved_version=fields["resolvedVersion"],  # type: ignore[arg-type]
            integrity=fields["integrity"],  # type: ignore[arg-type]
        )

    version = raw.get("version")
    return SkillLockFile(version=str(version) if version is not None else LOCK_FILE_VERSION, skills=skills)


def load_lock_file(path: Path) -> SkillLockFile | None:
    if not path.exists():
        return None
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (ValueError, UnicodeDecodeError) as e:
        raise LockFileCorrupt(f"Lock file {path} is not valid JSON: {e}") from e
    return _parse_lock(raw, path=path)


class LockFileManager:
    def __init__(self, skills_dir: str | Path) -> None:
        self.skills_dir = Path(skills_dir).expanduser().resolve()
        self.lock_path = self.skills_dir.parent / LOCK_FILENAME

    def generate_lock_file(self, results: Mapping[str, InstallResult]) -> Path:
        """
        Write the lock file for successful installs, keyed and sorted by install name.

        Callers filter failures out first; passing one is a programming error.
        """
        skills: dict[str, SkillLockEntry] = {}
        for name, result in results.items():
            if not isinstance(result, InstallSuccess):
                raise ValueError(f"Cannot lock failed install {name!r}; pass only successful results")
            skills[name] = SkillLockEntry(
                spec=result.spec,
                resolved_version=result.resolved_version,
                integrity=result.integrity,
            )

        lock = SkillLockFile(version=LOCK_FILE_VERSION, skills=skills)
        _write_json_atomic(self.lock_path, lock.to_json())
        return self.lock_path

    def read_lock_file(self) -> SkillLockFile | None:
        return load_lock_file(self.lock_path)


def get_allowed_skills_from_lock(lock_path: str | Path) -> set[str] | None:
    lock = load_lock_file(Path(lock_path))
    if lock is None:
        return None
    return set(lock.skills)


def get_allowed_skills(project_dir: str | Path) -> set[str] | None:
    """
    Install names listed in ``<project_dir>/.agentskills/skills-lock.json``.

    ``None`` means there is no lock file and nothing should be filtered.
    """
    return get_allowed_skills_from_lock(lock_path_for_project(project_dir))
