"""
Parsing of skill source specifiers.

A specifier says where a skill comes from. The recognized forms are tried in
order and the first one that matches wins:

    github:owner/repo[/subpath][@skill][#ref]
    github:owner/repo#[ref::]path:subpath          (also gitlab:)
    git+<scheme>://host/repo.git[#ref][::path:subpath]
    [@scope/]name[@version][::path:subpath]        (npm-style package)
    file:./relative | file:/absolute | file:~/home
    https://host/archive.tgz[#path:subpath]        (direct tarball/zip)

Fragment attributes are separated by ``::`` and follow the npm convention:
``path:<subpath>``, ``skill:<name>``, ``semver:<range>`` (ignored) and a bare
value, which is the git ref.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Literal
from urllib.parse import urlsplit

from .client import AgentSkillsError

SourceKind = Literal["github", "gitlab", "git", "local", "direct-url", "well-known"]

SOURCE_KINDS: tuple[str, ...] = ("github", "gitlab", "git", "local", "direct-url", "well-known")

HOSTED_PREFIXES = {"github:": "github", "gitlab:": "gitlab"}
HOSTED_BASE_URLS = {"github": "https://github.com", "gitlab": "https://gitlab.com"}
GIT_SCHEMES = frozenset({"https", "http", "ssh", "git", "file"})
ARCHIVE_SUFFIXES = (".tgz", ".tar.gz", ".tar", ".tar.bz2", ".tbz2", ".tar.xz", ".txz", ".zip")

_REPO_SEGMENT_RE = re.compile(r"^[A-Za-z0-9_.-]+$")
_SKILL_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
_NPM_NAME_RE = re.compile(r"^(?:@[a-z0-9][a-z0-9._~-]*/)?[a-z0-9][a-z0-9._~-]*$")
_GIT_PREFIX_RE = re.compile(r"^git\+([A-Za-z][A-Za-z0-9+.-]*)://")
_NPM_NAME_MAX_LEN = 214


class InvalidSpecifier(AgentSkillsError):
    code = "INVALID_SPECIFIER"


@dataclass(frozen=True)
class ParsedSource:
    kind: SourceKind
    spec: str
    url: str | None = None
    local_path: Path | None = None
    subpath: str | None = None
    ref: str | None = None
    skill_filter: str | None = None

    def __post_init__(self) -> None:
        if self.kind == "local":
            if self.local_path is None or self.url is not None or self.ref is not None:
                raise ValueError("local sources carry a local_path and neither url nor ref")
        elif self.url is None or self.local_path is not None:
            raise ValueError(f"{self.kind} sources carry a url and no local_path")

    @property
    def location(self) -> str:
        return str(self.local_path) if self.kind == "local" else str(self.url)


def _invalid(spec: str, reason: str) -> InvalidSpecifier:
    return InvalidSpecifier(f"Invalid specifier {spec!r}: {reason}")


def _normalize_subpath(value: str, *, spec: str) -> str:
    parts = [p for p in value.strip().replace("\\", "/").split("/") if p not in ("", ".")]
    if not parts:
        raise _invalid(spec, "empty path")
    if any(p == ".." for p in parts):
        raise _invalid(spec, "path must not contain '..'")
    return "/".join(parts)


def _check_skill_name(value: str, *, spec: str) -> str:
    name = value.strip()
    if not _SKILL_NAME_RE.match(name):
        raise _invalid(spec, f"invalid skill name {value!r}")
    return name


def _parse_fragment(fragment: str, *, spec: str) -> tuple[str | None, str | None, str | None]:
    """Split ``ref::path:sub::skill:name`` into (ref, subpath, skill)."""
    ref: str | None = None
    subpath: str | None = None
    skill: str | None = None
    for part in fragment.split("::"):
        part = part.strip()
        if not part:
            continue
        if part.startswith("path:"):
            if subpath is not None:
                raise _invalid(spec, "path given more than once")
            subpath = _normalize_subpath(part[len("path:") :], spec=spec)
        elif part.startswith("skill:"):
            if skill is not None:
                raise _invalid(spec, "skill given more than once")
            skill = _check_skill_name(part[len("skill:") :], spec=spec)
        elif part.startswith("semver:"):
            # Range resolution is not supported; the attribute is accepted and ignored.
            continue
        else:
            if ref is not None:
                raise _invalid(spec, "ref given more than once")
            if any(c.isspace() for c in part):
                raise _invalid(spec, f"invalid ref {part!r}")
            ref = part
    return ref, subpath, skill


def _parse_hosted(spec: str, raw: str, prefix: str, kind: str) -> ParsedSource:
    body, hash_sep, fragment = raw[len(prefix) :].partition("#")
    if hash_sep and not fragment.strip():
        raise _invalid(spec, "empty fragment after '#'")

    skill: str | None = None
    if "@" in body:
        body, _, skill_s = body.partition("@")
        skill = _check_skill_name(skill_s, spec=spec)

    segments = body.split("/")
    if len(segments) < 2:
        raise _invalid(spec, f"expected {prefix}owner/repo")
    owner, repo = segments[0].strip(), segments[1].strip()
    if repo.endswith(".git"):
        repo = repo[: -len(".git")]
    if not _REPO_SEGMENT_RE.match(owner) or not _REPO_SEGMENT_RE.match(repo):
        raise _invalid(spec, f"expected {prefix}owner/repo")

    shorthand_subpath: str | None = None
    rest = "/".join(segments[2:])
    if rest.strip("/"):
        shorthand_subpath = _normalize_subpath(rest, spec=spec)

    ref, attr_subpath, attr_skill = _parse_fragment(fragment, spec=spec) if fragment else (None, None, None)
    if shorthand_subpath and attr_subpath:
        raise _invalid(spec, "subpath given both in the repository path and as path:")
    if skill and attr_skill:
        raise _invalid(spec, "skill given both as @name and as skill:")

    return ParsedSource(
        kind=kind,  # type: ignore[arg-type]
        spec=spec,
        url=f"{HOSTED_BASE_URLS[kind]}/{owner}/{repo}",
        subpath=shorthand_subpath or attr_subpath,
        ref=ref,
        skill_filter=skill or attr_skill,
    )


def _parse_git_url(spec: str, raw: str) -> ParsedSource:
    m = _GIT_PREFIX_RE.match(raw)
    if not m or m.group(1).lower() not in GIT_SCHEMES:
        raise _invalid(spec, "expected git+<scheme>://... with scheme https, http, ssh, git or file")
    remote, _, fragment = raw[len("git+") :].partition("#")
    if not remote.split("://", 1)[1].strip("/"):
        raise _invalid(spec, "missing git remote")
    ref, subpath, skill = _parse_fragment(fragment, spec=spec) if fragment else (None, None, None)
    return ParsedSource(kind="git", spec=spec, url=remote, subpath=subpath, ref=ref, skill_filter=skill)


def _parse_package(spec: str, raw: str) -> ParsedSource | None:
    body, attr_sep, attrs = raw.partition("::")
    at_idx = body.find("@", 1) if body.startswith("@") else body.find("@")
    if at_idx > 0:
        name, version = body[:at_idx], body[at_idx + 1 :]
    else:
        name, version = body, None

    if len(name) > _NPM_NAME_MAX_LEN or not _NPM_NAME_RE.match(name):
        return None

    if version is not None and (not version.strip() or any(c.isspace() for c in version)):
        raise _invalid(spec, "empty or malformed version")

    subpath: str | None = None
    skill: str | None = None
    if attr_sep:
        bare, subpath, skill = _parse_fragment(attrs, spec=spec)
        if bare is not None:
            raise _invalid(spec, f"unknown attribute {bare!r}; use @version for versions")
    return ParsedSource(kind="well-known", spec=spec, url=name, subpath=subpath, ref=version, skill_filter=skill)


def _parse_local(spec: str, raw: str) -> ParsedSource:
    path_s = raw[len("file:") :]
    if path_s.startswith("//"):
        path_s = path_s[2:]
    if not path_s.strip():
        raise _invalid(spec, "missing path after file:")
    local_path = Path(os.path.abspath(os.path.expanduser(path_s)))
    return ParsedSource(kind="local", spec=spec, local_path=local_path)


def _parse_direct_url(spec: str, raw: str) -> ParsedSource:
    url, _, fragment = raw.partition("#")
    try:
        parts = urlsplit(url)
    except ValueError as e:
        raise _invalid(spec, "malformed URL") from e
    if not parts.netloc:
        raise _invalid(spec, "URL has no host")
    if not parts.path.lower().endswith(ARCHIVE_SUFFIXES):
        raise _invalid(spec, "URL does not point to a tarball or zip archive")
    ref, subpath, skill = _parse_fragment(fragment, spec=spec) if fragment else (None, None, None)
    if ref is not None:
        raise _invalid(spec, "archive URLs do not support refs")
    return ParsedSource(kind="direct-url", spec=spec, url=url, subpath=subpath, skill_filter=skill)


def parse(spec: str) -> ParsedSource:
    if not isinstance(spec, str) or not spec.strip():
        raise InvalidSpecifier("Specifier must not be empty.")
    raw = spec.strip()

    for prefix, kind in HOSTED_PREFIXES.items():
        if raw.startswith(prefix):
            return _parse_hosted(spec, raw, prefix, kind)

    if raw.startswith("git+"):
        return _parse_git_url(spec, raw)

    package = _parse_package(spec, raw)
    if package is not None:
        return package

    if raw.startswith("file:"):
        return _parse_local(spec, raw)

    if raw.startswith(("https://", "http://")):
        return _parse_direct_url(spec, raw)

    raise _invalid(spec, "not a recognized specifier format")


def is_valid_specifier(spec: str) -> bool:
    try:
        parse(spec)
    except InvalidSpecifier:
        return False
    return True
