"""
In-memory registry of installed skills.

Skills are keyed by install name (the directory name). The name declared in
SKILL.md is exposed as ``Skill.name`` and may differ from the key.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from .client import AgentSkillsError
from .manifest import SKILL_FILENAME, SkillManifest, load_manifest, validate_manifest

logger = logging.getLogger(__name__)


class RegistryError(AgentSkillsError):
    code = "REGISTRY_ERROR"


@dataclass(frozen=True)
class Skill:
    name: str
    install_name: str
    description: str
    path: Path
    raw_content: str
    body: str
    manifest: SkillManifest
    plugin_name: str | None = None

    @property
    def metadata(self) -> dict[str, Any] | None:
        return self.manifest.metadata

    @property
    def requires_mcp_servers(self) -> list[dict[str, Any]] | None:
        return self.manifest.requires_mcp_servers


@dataclass(frozen=True)
class SkillMetadata:
    name: str
    install_name: str
    description: str
    license: str | None = None
    compatibility: str | None = None
    metadata: dict[str, Any] | None = None
    allowed_tools: list[str] | None = None
    plugin_name: str | None = None


@dataclass(frozen=True)
class SkillCollision:
    name: str
    kept: Path
    skipped: Path


@dataclass(frozen=True)
class RegistryState:
    skill_count: int
    skills: dict[str, Skill]
    sources: tuple[Path, ...]
    provenance: dict[str, Path]
    collisions: tuple[SkillCollision, ...] = ()
    warnings: tuple[str, ...] = ()
    last_loaded: datetime | None = None


@dataclass
class _Index:
    skills: dict[str, Skill] = field(default_factory=dict)
    provenance: dict[str, Path] = field(default_factory=dict)
    collisions: list[SkillCollision] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _list_skill_dirs(directory: Path) -> list[tuple[str, Path]]:
    """(install name, skill dir) pairs for one skills directory, sorted by name."""
    if not directory.exists():
        raise RegistryError(f"Skills directory does not exist: {directory}")
    if not directory.is_dir():
        raise RegistryError(f"Skills directory is not a directory: {directory}")

    if (directory / SKILL_FILENAME).is_file():
        return [(directory.name, directory)]

    try:
        entries = sorted(directory.iterdir(), key=lambda p: p.name)
    except OSError as e:
        raise RegistryError(f"Could not read skills directory {directory}: {e}") from e
    return [(p.name, p) for p in entries if not p.name.startswith(".") and p.is_dir()]


def _load_one(install_name: str, skill_dir: Path, *, plugin_name: str | None, index: _Index) -> Skill | None:
    try:
        manifest, raw_content, body = load_manifest(skill_dir)
    except AgentSkillsError as e:
        index.warnings.append(f"Skipping {skill_dir}: {e}")
        return None

    for finding in validate_manifest(manifest, body=body, dir_name=install_name):
        index.warnings.append(f"{skill_dir}: {finding}")

    return Skill(
        name=manifest.name,
        install_name=install_name,
        description=manifest.description,
        path=skill_dir,
        raw_content=raw_content,
        body=body,
        manifest=manifest,
        plugin_name=plugin_name,
    )


class SkillRegistry:
    def __init__(self) -> None:
        self._skills: dict[str, Skill] = {}
        self._provenance: dict[str, Path] = {}
        self._sources: tuple[Path, ...] = ()
        self._collisions: tuple[SkillCollision, ...] = ()
        self._warnings: tuple[str, ...] = ()
        self._last_loaded: datetime | None = None

    def load_skills(self, skills_dir: str | Path, *, plugin_name: str | None = None) -> int:
        """Replace the index with the skills found in one directory."""
        return self._load([Path(skills_dir)], allowed_names=None, plugin_name=plugin_name)

    def load_skills_from_multiple(
        self,
        skills_dirs: Iterable[str | Path],
        allowed_names: set[str] | frozenset[str] | None = None,
    ) -> int:
        """
        Replace the index with skills from several directories.

        Earlier directories take precedence (local before global). When
        ``allowed_names`` is given, only those install names are loaded.
        A broken skill is skipped with a warning; a directory that cannot be
        listed raises RegistryError and leaves the previous index untouched.
        """
        return self._load([Path(d) for d in skills_dirs], allowed_names=allowed_names, plugin_name=None)

    def _load(
        self,
        dirs: list[Path],
        *,
        allowed_names: set[str] | frozenset[str] | None,
        plugin_name: str | None,
    ) -> int:
        index = _Index()
        for directory in dirs:
            directory = directory.expanduser().resolve()
            for install_name, skill_dir in _list_skill_dirs(directory):
                if allowed_names is not None and install_name not in allowed_names:
                    continue
                if install_name in index.skills:
                    index.collisions.append(
                        SkillCollision(name=install_name, kept=index.provenance[install_name], skipped=directory)
                    )
                    continue
                skill = _load_one(install_name, skill_dir, plugin_name=plugin_name, index=index)
                if skill is None:
                    continue
                index.skills[install_name] = skill
                index.provenance[install_name] = directory

        if allowed_names is not None:
            for name in sorted(set(allowed_names) - set(index.skills)):
                index.warnings.append(f"Skill '{name}' is listed in the lock file but is not installed")

        self._skills = index.skills
        self._provenance = index.provenance
        self._sources = tuple(d.expanduser().resolve() for d in dirs)
        self._collisions = tuple(index.collisions)
        self._warnings = tuple(index.warnings)
        self._last_loaded = datetime.now(timezone.utc)

        for warning in self._warnings:
            logger.debug("%s", warning)
        logger.debug("Loaded %d skill(s) from %d director(ies)", len(self._skills), len(dirs))
        return len(self._skills)

    def get_skill(self, name: str) -> Skill | None:
        return self._skills.get(name)

    def get_all_skills(self) -> list[Skill]:
        return list(self._skills.values())

    def get_skill_metadata(self, name: str) -> SkillMetadata | None:
        skill = self._skills.get(name)
        return self._metadata(skill) if skill else None

    def get_all_metadata(self) -> list[SkillMetadata]:
        return [self._metadata(s) for s in self._skills.values()]

    @staticmethod
    def _metadata(skill: Skill) -> SkillMetadata:
        m = skill.manifest
        return SkillMetadata(
            name=skill.name,
            install_name=skill.install_name,
            description=skill.description,
            license=m.license,
            compatibility=m.compatibility,
            metadata=m.metadata,
            allowed_tools=m.allowed_tools,
            plugin_name=skill.plugin_name,
        )

    def get_state(self) -> RegistryState:
        return RegistryState(
            skill_count=len(self._skills),
            skills=dict(self._skills),
            sources=self._sources,
            provenance=dict(self._provenance),
            collisions=self._collisions,
            warnings=self._warnings,
            last_loaded=self._last_loaded,
        )
