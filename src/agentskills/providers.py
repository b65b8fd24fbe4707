"""
Fetch providers: one strategy per source kind.

Each provider receives a parsed source and an empty working directory owned
by the caller, and returns the directory that holds the raw fetched tree.
Providers never clean up after themselves; the installer removes the whole
working directory on every exit path.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Protocol
from urllib.parse import quote, urlsplit

from .archives import ArchiveError, extract_archive, unwrap_single_directory
from .client import AgentSkillsError, AgentSkillsHTTPError, HttpClient
from .config import (
    DEFAULT_GIT_TIMEOUT_S,
    DEFAULT_GITHUB_API_URL,
    DEFAULT_GITLAB_API_URL,
    DEFAULT_NPM_REGISTRY_URL,
    Config,
)
from .skill_tree import copy_tree
from .specifier import ARCHIVE_SUFFIXES, ParsedSource

logger = logging.getLogger(__name__)

SOURCE_DIRNAME = "source"


class FetchError(AgentSkillsError):
    code = "FETCH_FAILED"


class UnsupportedSourceKind(AgentSkillsError):
    code = "UNSUPPORTED_SOURCE_KIND"


@dataclass(frozen=True)
class FetchedSource:
    root: Path
    resolved_version: str | None = None


class FetchProvider(Protocol):
    async def fetch(self, source: ParsedSource, dest: Path) -> FetchedSource:
        ...


def _fetch_error(e: AgentSkillsError, what: str) -> FetchError:
    if isinstance(e, AgentSkillsHTTPError):
        if e.status_code == 404:
            return FetchError(f"{what} not found (HTTP 404)")
        if e.status_code in (401, 403):
            return FetchError(f"Access denied to {what} (HTTP {e.status_code}); check your token")
    return FetchError(f"Failed to fetch {what}: {e}")


async def _extract(archive: Path, dest: Path) -> Path:
    try:
        await asyncio.to_thread(extract_archive, archive, dest)
    except ArchiveError as e:
        raise FetchError(str(e)) from e
    except OSError as e:
        raise FetchError(f"Could not extract {archive.name}: {e}") from e
    finally:
        archive.unlink(missing_ok=True)
    return await asyncio.to_thread(unwrap_single_directory, dest)


def _read_package_version(root: Path) -> str | None:
    path = root / "package.json"
    if not path.is_file():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    version = data.get("version") if isinstance(data, dict) else None
    return version if isinstance(version, str) and version.strip() else None


def _owner_repo(source: ParsedSource) -> tuple[str, str]:
    parts = urlsplit(str(source.url)).path.strip("/").split("/")
    if len(parts) < 2:
        raise FetchError(f"Cannot determine owner/repo from {source.url}")
    return parts[0], parts[1]


class LocalProvider:
    async def fetch(self, source: ParsedSource, dest: Path) -> FetchedSource:
        path = source.local_path
        if path is None or not path.exists():
            raise FetchError(f"Local path not found: {path}")
        if not path.is_dir():
            raise FetchError(f"Source is not a directory: {path}")

        root = dest / SOURCE_DIRNAME
        try:
            count = await asyncio.to_thread(copy_tree, path, root)
        except OSError as e:
            raise FetchError(f"Could not copy {path}: {e}") from e
        logger.debug("Copied %d file(s) from %s", count, path)
        version = await asyncio.to_thread(_read_package_version, root)
        return FetchedSource(root=root, resolved_version=version)


class GitHubProvider:
    """Resolves the ref to a commit through the REST API, then downloads that commit's tarball."""

    def __init__(self, http: HttpClient, *, api_url: str = DEFAULT_GITHUB_API_URL) -> None:
        self._http = http
        self.api_url = api_url.rstrip("/")

    async def resolve_commit(self, owner: str, repo: str, ref: str | None) -> str:
        url = f"{self.api_url}/repos/{quote(owner, safe='')}/{quote(repo, safe='')}/commits/{quote(ref or 'HEAD', safe='')}"
        sha = (await self._http.get_text(url, headers={"Accept": "application/vnd.github.sha"})).strip()
        if not sha:
            raise FetchError(f"Could not resolve {owner}/{repo}#{ref or 'HEAD'} to a commit")
        return sha

    async def fetch(self, source: ParsedSource, dest: Path) -> FetchedSource:
        owner, repo = _owner_repo(source)
        what = f"github:{owner}/{repo}" + (f"#{source.ref}" if source.ref else "")
        archive = dest / "archive.tar.gz"
        try:
            sha = await self.resolve_commit(owner, repo, source.ref)
            await self._http.download(
                f"{self.api_url}/repos/{quote(owner, safe='')}/{quote(repo, safe='')}/tarball/{sha}",
                archive,
            )
        except FetchError:
            raise
        except AgentSkillsError as e:
            raise _fetch_error(e, what) from e

        root = await _extract(archive, dest / SOURCE_DIRNAME)
        return FetchedSource(root=root, resolved_version=sha)


class GitLabProvider:
    def __init__(self, http: HttpClient, *, api_url: str = DEFAULT_GITLAB_API_URL) -> None:
        self._http = http
        self.api_url = api_url.rstrip("/")

    async def resolve_commit(self, project: str, ref: str | None) -> str:
        base = f"{self.api_url}/projects/{quote(project, safe='')}"
        if not ref:
            info = await self._http.get_json(base)
            ref = info.get("default_branch") if isinstance(info, dict) else None
            if not isinstance(ref, str) or not ref:
                raise FetchError(f"Project {project} has no default branch")
        commit = await self._http.get_json(f"{base}/repository/commits/{quote(ref, safe='')}")
        sha = commit.get("id") if isinstance(commit, dict) else None
        if not isinstance(sha, str) or not sha:
            raise FetchError(f"Could not resolve gitlab:{project}#{ref} to a commit")
        return sha

    async def fetch(self, source: ParsedSource, dest: Path) -> FetchedSource:
        owner, repo = _owner_repo(source)
        project = f"{owner}/{repo}"
        what = f"gitlab:{project}" + (f"#{source.ref}" if source.ref else "")
        archive = dest / "archive.tar.gz"
        try:
            sha = await self.resolve_commit(project, source.ref)
            await self._http.download(
                f"{self.api_url}/projects/{quote(project, safe='')}/repository/archive.tar.gz?sha={quote(sha, safe='')}",
                archive,
            )
        except FetchError:
            raise
        except AgentSkillsError as e:
            raise _fetch_error(e, what) from e

        root = await _extract(archive, dest / SOURCE_DIRNAME)
        return FetchedSource(root=root, resolved_version=sha)


class GitProvider:
    """Clones with the ``git`` executable; shallow when the ref is a branch or tag."""

    def __init__(self, *, git_executable: str = "git", timeout_s: float = DEFAULT_GIT_TIMEOUT_S) -> None:
        self.git_executable = git_executable
        self.timeout_s = timeout_s

    async def _run(self, *args: str, cwd: Path | None = None) -> str:
        env = dict(os.environ)
        env["GIT_TERMINAL_PROMPT"] = "0"
        try:
            proc = await asyncio.create_subprocess_exec(
                self.git_executable,
                *args,
                cwd=str(cwd) if cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except FileNotFoundError as e:
            raise FetchError(f"git executable not found: {self.git_executable}") from e

        try:
            out, err = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_s)
        except asyncio.TimeoutError as e:
            if proc.returncode is None:
                proc.kill()
            await proc.wait()
            raise FetchError(f"git {args[0]} timed out after {self.timeout_s}s") from e
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
            raise

        if proc.returncode != 0:
            message = err.decode("utf-8", errors="replace").strip() or f"exit code {proc.returncode}"
            raise FetchError(f"git {args[0]} failed: {message}")
        return out.decode("utf-8", errors="replace").strip()

    async def fetch(self, source: ParsedSource, dest: Path) -> FetchedSource:
        url = str(source.url)
        ref = source.ref
        if ref is not None and ref.startswith("-"):
            raise FetchError(f"Invalid git ref: {ref!r}")

        checkout = dest / "checkout"
        if ref:
            try:
                await self._run("clone", "--depth", "1", "--branch", ref, "--", url, str(checkout))
            except FetchError:
                # Commit SHAs cannot be cloned shallowly by name.
                logger.debug("Shallow clone of %s at %s failed; retrying with a full clone", url, ref)
                await asyncio.to_thread(shutil.rmtree, checkout, True)
                await self._run("clone", "--", url, str(checkout))
                await self._run("-c", "advice.detachedHead=false", "checkout", ref, cwd=checkout)
        else:
            await self._run("clone", "--depth", "1", "--", url, str(checkout))

        sha = await self._run("rev-parse", "HEAD", cwd=checkout)
        # The checkout may contain symlinks; hand back a copy without them or .git.
        root = dest / SOURCE_DIRNAME
        await asyncio.to_thread(copy_tree, checkout, root)
        await asyncio.to_thread(shutil.rmtree, checkout, True)
        return FetchedSource(root=root, resolved_version=sha)


class DirectUrlProvider:
    def __init__(self, http: HttpClient) -> None:
        self._http = http

    async def fetch(self, source: ParsedSource, dest: Path) -> FetchedSource:
        url = str(source.url)
        path = urlsplit(url).path.lower()
        suffix = next((s for s in ARCHIVE_SUFFIXES if path.endswith(s)), ".archive")
        archive = dest / f"archive{suffix}"
        try:
            await self._http.download(url, archive)
        except AgentSkillsError as e:
            raise _fetch_error(e, url) from e

        root = await _extract(archive, dest / SOURCE_DIRNAME)
        return FetchedSource(root=root)


_SRI_ALGORITHMS = {"sha512": hashlib.sha512, "sha384": hashlib.sha384, "sha256": hashlib.sha256, "sha1": hashlib.sha1}


def verify_integrity(path: Path, integrity: str) -> bool:
    """Check ``path`` against a Subresource Integrity string; any supported entry must match."""
    checked = False
    for token in integrity.split():
        alg, _, expected = token.partition("-")
        factory = _SRI_ALGORITHMS.get(alg.lower())
        if factory is None or not expected:
            continue
        h = factory()
        with path.open("rb") as f:
            while chunk := f.read(1024 * 1024):
                h.update(chunk)
        if base64.b64encode(h.digest()).decode("ascii") == expected.split("?", 1)[0]:
            return True
        checked = True
    return not checked


def _select_version(packument: Mapping[str, Any], ref: str | None, *, name: str) -> str:
    versions = packument.get("versions")
    tags = packument.get("dist-tags")
    versions = versions if isinstance(versions, dict) else {}
    tags = tags if isinstance(tags, dict) else {}

    wanted = ref or "latest"
    if wanted in versions:
        return wanted
    tagged = tags.get(wanted)
    if isinstance(tagged, str) and tagged in versions:
        return tagged
    raise FetchError(
        f"No version {wanted!r} of {name} (exact versions and dist-tags only; ranges are not supported)"
    )


class NpmProvider:
    """Resolves well-known package references against an npm-compatible registry."""

    def __init__(self, http: HttpClient, *, registry_url: str = DEFAULT_NPM_REGISTRY_URL) -> None:
        self._http = http
        self.registry_url = registry_url.rstrip("/")

    async def fetch(self, source: ParsedSource, dest: Path) -> FetchedSource:
        name = str(source.url)
        what = f"{name}@{source.ref}" if source.ref else name
        try:
            packument = await self._http.get_json(f"{self.registry_url}/{quote(name, safe='@')}")
        except AgentSkillsError as e:
            raise _fetch_error(e, f"package {name}") from e
        if not isinstance(packument, dict):
            raise FetchError(f"Unexpected registry response for {name}")

        version = _select_version(packument, source.ref, name=name)
        meta = packument["versions"][version]
        dist = meta.get("dist") if isinstance(meta, dict) else None
        tarball = dist.get("tarball") if isinstance(dist, dict) else None
        if not isinstance(tarball, str) or not tarball:
            raise FetchError(f"{name}@{version} has no tarball")

        archive = dest / "package.tgz"
        try:
            await self._http.download(tarball, archive)
        except AgentSkillsError as e:
            raise _fetch_error(e, what) from e

        integrity = dist.get("integrity")
        if isinstance(integrity, str) and integrity.strip():
            ok = await asyncio.to_thread(verify_integrity, archive, integrity)
            if not ok:
                archive.unlink(missing_ok=True)
                raise FetchError(f"Integrity check failed for {name}@{version}")

        root = await _extract(archive, dest / SOURCE_DIRNAME)
        return FetchedSource(root=root, resolved_version=version)


def make_http_client(config: Config, **kwargs: Any) -> HttpClient:
    host_tokens: dict[str, str] = {}
    for api_url, token in ((config.github_api_url, config.github_token), (config.gitlab_api_url, config.gitlab_token)):
        host = urlsplit(api_url).hostname
        if host and token:
            host_tokens[host] = token
    return HttpClient(timeout_s=config.timeout_s, host_tokens=host_tokens, **kwargs)


def default_providers(config: Config, http: HttpClient) -> dict[str, FetchProvider]:
    """The closed set of providers, keyed by source kind."""
    return {
        "local": LocalProvider(),
        "github": GitHubProvider(http, api_url=config.github_api_url),
        "gitlab": GitLabProvider(http, api_url=config.gitlab_api_url),
        "git": GitProvider(git_executable=config.git_executable, timeout_s=config.git_timeout_s),
        "direct-url": DirectUrlProvider(http),
        "well-known": NpmProvider(http, registry_url=config.npm_registry_url),
    }
