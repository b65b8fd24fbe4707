"""SKILL.md parsing and validation."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml

from .client import AgentSkillsError

logger = logging.getLogger(__name__)

SKILL_FILENAME = "SKILL.md"
PACKAGE_JSON = "package.json"

NAME_MAX_LEN = 64
DESCRIPTION_MAX_LEN = 1024
COMPATIBILITY_MAX_LEN = 500
LONG_BODY_CHARS = 20000

_DELIMITER = "---"
_NAME_RE = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")


class ManifestInvalid(AgentSkillsError):
    code = "MANIFEST_INVALID"


@dataclass(frozen=True)
class SkillManifest:
    name: str
    description: str
    license: str | None = None
    compatibility: str | None = None
    metadata: dict[str, Any] | None = None
    allowed_tools: list[str] | None = None
    requires_mcp_servers: list[dict[str, Any]] | None = None
    package_name: str | None = None
    version: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


def split_frontmatter(content: str) -> tuple[dict[str, Any], str]:
    """
    Split ``---`` delimited YAML frontmatter from the markdown body.

    Raises ManifestInvalid with the parser diagnostic when the frontmatter is
    missing, unterminated, not valid YAML, or not a mapping.
    """
    if not content.strip():
        raise ManifestInvalid("Skill file is empty")

    stripped = content.lstrip("\ufeff").lstrip("\n")
    if not stripped.startswith(_DELIMITER) or not stripped[len(_DELIMITER) :].startswith(("\n", "\r\n")):
        raise ManifestInvalid("Skill file must start with YAML frontmatter")

    after_open = stripped[len(_DELIMITER) :].replace("\r\n", "\n")
    close_idx = after_open.find(f"\n{_DELIMITER}", 1)
    if close_idx == -1:
        raise ManifestInvalid("YAML frontmatter is not terminated with ---")

    yaml_block = after_open[1:close_idx]
    body = after_open[close_idx + 1 + len(_DELIMITER) :]
    if body.startswith("\n"):
        body = body[1:]

    try:
        parsed = yaml.safe_load(yaml_block)
    except yaml.YAMLError as e:
        raise ManifestInvalid(f"Failed to parse YAML frontmatter: {e}") from e

    if not isinstance(parsed, dict) or not parsed:
        raise ManifestInvalid("YAML frontmatter must be a non-empty mapping")
    return parsed, body


def _optional_str(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, (str, int, float)):
        raise ManifestInvalid(f"Field '{key}' must be a string")
    return str(value)


def manifest_from_frontmatter(data: dict[str, Any]) -> SkillManifest:
    for required in ("name", "description"):
        if required not in data:
            raise ManifestInvalid(f"required field '{required}' is missing from skill metadata")

    name = data["name"]
    if not isinstance(name, str) or not name.strip():
        raise ManifestInvalid("Field 'name' must be a non-empty string")
    description = data["description"]
    if not isinstance(description, str) or not description.strip():
        raise ManifestInvalid("Field 'description' must be a non-empty string")

    metadata = data.get("metadata")
    if metadata is not None and not isinstance(metadata, dict):
        raise ManifestInvalid("Field 'metadata' must be a mapping")

    allowed_tools = data.get("allowed-tools")
    if isinstance(allowed_tools, str):
        allowed_tools = allowed_tools.split()
    if allowed_tools is not None and not isinstance(allowed_tools, list):
        raise ManifestInvalid("Field 'allowed-tools' must be a list")

    servers = data.get("requires-mcp-servers")
    if servers is not None:
        if not isinstance(servers, list) or not all(isinstance(s, dict) for s in servers):
            raise ManifestInvalid("Field 'requires-mcp-servers' must be a list of mappings")

    known = {"name", "description", "license", "compatibility", "metadata", "allowed-tools", "requires-mcp-servers"}
    return SkillManifest(
        name=name.strip(),
        description=description.strip(),
        license=_optional_str(data, "license"),
        compatibility=_optional_str(data, "compatibility"),
        metadata=metadata,
        allowed_tools=[str(t) for t in allowed_tools] if allowed_tools is not None else None,
        requires_mcp_servers=servers,
        extra={k: v for k, v in data.items() if k not in known},
    )


def _read_package_json(skill_root: Path) -> dict[str, Any]:
    path = skill_root / PACKAGE_JSON
    if not path.is_file():
        return {}
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        logger.debug("Ignoring unreadable %s", path)
        return {}
    return raw if isinstance(raw, dict) else {}


def read_skill_file(skill_root: Path) -> str:
    skill_md = skill_root / SKILL_FILENAME
    if skill_md.is_symlink():
        raise ManifestInvalid(f"{SKILL_FILENAME} in {skill_root} is a symlink")
    if not skill_md.is_file():
        raise ManifestInvalid(f"{SKILL_FILENAME} file not found in {skill_root}")
    try:
        return skill_md.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ManifestInvalid(f"Failed to read {skill_md}: {e}") from e


def load_manifest(skill_root: Path) -> tuple[SkillManifest, str, str]:
    """
    Parse SKILL.md (and the optional package.json) at ``skill_root``.

    Returns (manifest, raw_content, body).
    """
    raw_content = read_skill_file(skill_root)
    data, body = split_frontmatter(raw_content)
    manifest = manifest_from_frontmatter(data)

    package = _read_package_json(skill_root)
    package_name = package.get("name") if isinstance(package.get("name"), str) else None
    version = package.get("version") if isinstance(package.get("version"), str) else None
    if package_name or version:
        manifest = replace(manifest, package_name=package_name, version=version)
    return manifest, raw_content, body


def validate_manifest(manifest: SkillManifest, *, body: str = "", dir_name: str | None = None) -> list[str]:
    """
    Non-blocking checks. Each returned string describes one finding.

    A directory name that differs from the declared name is reported but is
    never an error: skills may be installed under a local alias.
    """
    warnings: list[str] = []
    name = manifest.name
    if len(name) > NAME_MAX_LEN:
        warnings.append(f"Name '{name}' is longer than {NAME_MAX_LEN} characters")
    if not _NAME_RE.match(name):
        warnings.append(
            f"Name '{name}' should contain only lowercase letters, numbers and single hyphens"
        )
    if len(manifest.description) > DESCRIPTION_MAX_LEN:
        warnings.append(f"Description is longer than {DESCRIPTION_MAX_LEN} characters")
    if manifest.compatibility is not None and len(manifest.compatibility) > COMPATIBILITY_MAX_LEN:
        warnings.append(f"Compatibility is longer than {COMPATIBILITY_MAX_LEN} characters")
    if len(body) > LONG_BODY_CHARS:
        warnings.append("Body content is very long and may not fit an agent's context")
    if dir_name is not None and dir_name != name:
        warnings.append(f"Directory name '{dir_name}' does not match skill name '{name}'")
    return warnings
