"""
Skill installation: parse, fetch, locate, validate, digest and materialize.

The skill is stored under the caller's install name. The name declared in
SKILL.md is kept as metadata and may differ, so users can alias an upstream
skill to a local name.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import shutil
import tempfile
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Mapping, TypeVar

from .client import AgentSkillsError
from .manifest import SKILL_FILENAME, ManifestInvalid, SkillManifest, load_manifest, read_skill_file, split_frontmatter
from .providers import FetchedSource, FetchProvider, UnsupportedSourceKind
from .skill_tree import DEFAULT_EXCLUDE_NAMES, copy_tree, digest_tree
from .specifier import ParsedSource, parse

logger = logging.getLogger(__name__)

TMP_DIRNAME = ".tmp"

T = TypeVar("T")


class SkillNotFound(AgentSkillsError):
    code = "SKILL_NOT_FOUND"


class DirectoryCollision(AgentSkillsError):
    code = "DIRECTORY_COLLISION"


@dataclass(frozen=True)
class InstallError:
    code: str
    message: str


@dataclass(frozen=True)
class InstallSuccess:
    name: str
    spec: str
    resolved_version: str
    integrity: str
    install_path: Path
    manifest: SkillManifest

    @property
    def success(self) -> bool:
        return True


@dataclass(frozen=True)
class InstallFailure:
    name: str
    spec: str
    error: InstallError

    @property
    def success(self) -> bool:
        return False


InstallResult = InstallSuccess | InstallFailure


@dataclass(frozen=True)
class InstallAllResult:
    results: dict[str, InstallResult]

    @property
    def installed(self) -> frozenset[str]:
        return frozenset(name for name, r in self.results.items() if r.success)

    @property
    def failed(self) -> frozenset[str]:
        return frozenset(name for name, r in self.results.items() if not r.success)

    @property
    def success(self) -> bool:
        return not self.failed

    def successful(self) -> dict[str, InstallSuccess]:
        return {name: r for name, r in self.results.items() if isinstance(r, InstallSuccess)}


def check_install_name(name: Any) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValueError("Skill name is required")
    if (
        name != name.strip()
        or name in (".", "..")
        or name.startswith(".")
        or any(c in name for c in ("/", "\\", "\0"))
    ):
        raise ValueError(f"Invalid install name {name!r}: must be a single directory name")
    return name


def _declared_name(skill_dir: Path) -> str | None:
    try:
        data, _ = split_frontmatter(read_skill_file(skill_dir))
    except ManifestInvalid:
        return None
    name = data.get("name")
    return name.strip() if isinstance(name, str) else None


def _find_named_skill(base: Path, skill_name: str) -> Path | None:
    for candidate in (base / skill_name, base / "skills" / skill_name):
        if (candidate / SKILL_FILENAME).is_file():
            return candidate

    for skill_md in sorted(base.rglob(SKILL_FILENAME), key=lambda p: (len(p.parts), p.as_posix())):
        rel_parts = skill_md.relative_to(base).parts
        if any(p in DEFAULT_EXCLUDE_NAMES for p in rel_parts):
            continue
        if skill_md.is_file() and _declared_name(skill_md.parent) == skill_name:
            return skill_md.parent
    return None


def resolve_skill_root(root: Path, source: ParsedSource) -> Path:
    """Narrow a fetched tree to the skill directory named by ``subpath``/``skill_filter``."""
    base = root
    if source.subpath:
        try:
            base = (root / source.subpath).resolve()
            inside = base.is_relative_to(root.resolve())
        except (OSError, RuntimeError) as e:
            raise SkillNotFound(f"Path '{source.subpath}' in {source.location} cannot be resolved: {e}") from e
        if not inside:
            raise SkillNotFound(f"Path '{source.subpath}' escapes the fetched tree")
        if not base.exists():
            raise SkillNotFound(f"Path '{source.subpath}' not found in {source.location}")
        if not base.is_dir():
            raise SkillNotFound(f"Path '{source.subpath}' in {source.location} is not a directory")

    if source.skill_filter:
        found = _find_named_skill(base, source.skill_filter)
        if found is None:
            raise SkillNotFound(f"Skill '{source.skill_filter}' not found in {source.location}")
        base = found
    return base


async def _run_to_completion(func: Callable[..., T], *args: Any) -> T:
    # A cancelled caller still waits for the worker thread, so the per-name
    # lock is never released while a rename is in flight.
    task = asyncio.ensure_future(asyncio.to_thread(func, *args))
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        await asyncio.wait({task})
        raise


class SkillInstaller:
    def __init__(self, skills_dir: str | Path, *, providers: Mapping[str, FetchProvider]) -> None:
        if not str(skills_dir).strip():
            raise ValueError("Skills directory is required")
        self.skills_dir = Path(skills_dir).expanduser().resolve()
        self.providers = providers
        # name -> (lock, number of callers holding or waiting on it)
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}

    @contextlib.asynccontextmanager
    async def _name_lock(self, name: str) -> AsyncIterator[None]:
        lock, users = self._locks.get(name, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[name] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            _, users = self._locks[name]
            if users == 1:
                del self._locks[name]
            else:
                self._locks[name] = (lock, users - 1)

    def _ensure_skills_dir(self) -> Path:
        try:
            self.skills_dir.mkdir(parents=True, exist_ok=True)
            tmp_root = self.skills_dir / TMP_DIRNAME
            tmp_root.mkdir(exist_ok=True)
        except OSError as e:
            raise AgentSkillsError(f"Could not create skills directory: {self.skills_dir}") from e
        return tmp_root

    @contextlib.asynccontextmanager
    async def _working_dir(self, prefix: str) -> AsyncIterator[Path]:
        tmp_root = await asyncio.to_thread(self._ensure_skills_dir)
        work = Path(await asyncio.to_thread(tempfile.mkdtemp, prefix=prefix, dir=tmp_root))
        try:
            yield work
        finally:
            await _run_to_completion(shutil.rmtree, work, True)

    async def _fetch(self, source: ParsedSource, work: Path) -> tuple[FetchedSource, Path]:
        provider = self.providers.get(source.kind)
        if provider is None:
            raise UnsupportedSourceKind(f"No fetch provider registered for source kind '{source.kind}'")
        fetched = await provider.fetch(source, work)
        skill_root = await asyncio.to_thread(resolve_skill_root, fetched.root, source)
        return fetched, skill_root

    async def install(self, install_name: str, spec: str) -> InstallResult:
        """
        Install ``spec`` under ``<skills_dir>/<install_name>``.

        Failures are returned as InstallFailure; only an empty or unsafe
        install name, or an empty spec, raise ValueError (before any I/O).
        Concurrent calls for the same install name run one after another.
        """
        check_install_name(install_name)
        if not isinstance(spec, str) or not spec.strip():
            raise ValueError("Package spec is required")

        async with self._name_lock(install_name):
            try:
                return await self._install(install_name, spec)
            except AgentSkillsError as e:
                logger.debug("Install of %s from %s failed: %s", install_name, spec, e)
                return InstallFailure(name=install_name, spec=spec, error=InstallError(e.code, str(e)))
            except OSError as e:
                logger.debug("Install of %s from %s failed", install_name, spec, exc_info=True)
                return InstallFailure(name=install_name, spec=spec, error=InstallError("INSTALL_FAILED", str(e)))

    async def _install(self, install_name: str, spec: str) -> InstallSuccess:
        source = parse(spec)

        async with self._working_dir(f"{install_name}-") as work:
            fetched, skill_root = await self._fetch(source, work)
            manifest, _, _ = await asyncio.to_thread(load_manifest, skill_root)
            if manifest.name != install_name:
                logger.debug("Installing skill '%s' under alias '%s'", manifest.name, install_name)

            tree = await asyncio.to_thread(digest_tree, skill_root)
            resolved_version = source.ref or fetched.resolved_version or tree.integrity
            install_path = await _run_to_completion(self._materialize, install_name, skill_root)

        logger.debug("Installed %s (%s) at %s", install_name, resolved_version, install_path)
        return InstallSuccess(
            name=install_name,
            spec=spec,
            resolved_version=resolved_version,
            integrity=tree.integrity,
            install_path=install_path,
            manifest=manifest,
        )

    def _materialize(self, install_name: str, skill_root: Path) -> Path:
        """
        Copy the validated tree into a hidden staging directory, then swap it
        into place. The target is never visible half-written.
        """
        dest = self.skills_dir / install_name
        if dest.is_symlink() or (dest.exists() and not dest.is_dir()):
            raise DirectoryCollision(f"Cannot install to {dest}: path exists and is not a directory")

        token = uuid.uuid4().hex[:12]
        staging = self.skills_dir / f".{install_name}.staging-{token}"
        staging.mkdir()
        try:
            copy_tree(skill_root, staging)
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise

        backup: Path | None = None
        try:
            if dest.exists():
                backup = self.skills_dir / f".{install_name}.old-{token}"
                dest.rename(backup)
            staging.rename(dest)
        except BaseException:
            if backup is not None and backup.exists() and not dest.exists():
                backup.rename(dest)
            shutil.rmtree(staging, ignore_errors=True)
            raise

        if backup is not None:
            shutil.rmtree(backup, ignore_errors=True)
        return dest

    async def install_all(self, skills: Mapping[str, str]) -> InstallAllResult:
        """Install every (name, spec) pair concurrently."""
        names = list(skills)
        outcomes = await asyncio.gather(*(self.install(name, skills[name]) for name in names))
        return InstallAllResult(results=dict(zip(names, outcomes)))

    async def get_manifest(self, spec: str) -> SkillManifest:
        """Fetch and validate ``spec`` without installing it."""
        source = parse(spec)
        async with self._working_dir("manifest-") as work:
            _, skill_root = await self._fetch(source, work)
            manifest, _, _ = await asyncio.to_thread(load_manifest, skill_root)
        return manifest
