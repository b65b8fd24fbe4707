from __future__ import annotations

import os
import shutil
import tarfile
import zipfile
from pathlib import Path

from .client import AgentSkillsError


class ArchiveError(AgentSkillsError):
    code = "FETCH_FAILED"


def _safe_target(dest: Path, name: str) -> Path:
    if name.startswith("/") or name.startswith("\\") or (len(name) > 1 and name[1] == ":"):
        raise ArchiveError(f"Archive contains an absolute path entry: {name!r}")
    target = (dest / name).resolve()
    base = dest.resolve()
    if not str(target).startswith(str(base) + os.sep) and target != base:
        raise ArchiveError(f"Archive contains an invalid path entry: {name!r}")
    return target


def safe_extract_zip(archive: Path, dest: Path) -> None:
    dest.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(archive, "r") as zf:
        for info in zf.infolist():
            name = info.filename
            if not name:
                continue
            target = _safe_target(dest, name)

            if info.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                continue

            # Unix symlinks are stored with S_IFLNK in the high bits of external_attr.
            mode = info.external_attr >> 16
            if mode and (mode & 0o170000) == 0o120000:
                continue

            target.parent.mkdir(parents=True, exist_ok=True)
            with zf.open(info, "r") as src, target.open("wb") as out:
                shutil.copyfileobj(src, out)


def safe_extract_tar(archive: Path, dest: Path) -> None:
    dest.mkdir(parents=True, exist_ok=True)
    with tarfile.open(archive, "r:*") as tf:
        for member in tf:
            name = member.name
            if not name or name in (".", "./"):
                continue
            target = _safe_target(dest, name)

            if member.isdir():
                target.mkdir(parents=True, exist_ok=True)
                continue
            # Links and device files never leave the working directory.
            if not member.isfile():
                continue

            src = tf.extractfile(member)
            if src is None:
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            with src, target.open("wb") as out:
                shutil.copyfileobj(src, out)
            if member.mode & 0o111:
                target.chmod(0o755)


def extract_archive(archive: Path, dest: Path) -> None:
    """Extract a zip or (optionally compressed) tar archive, detected by content."""
    if zipfile.is_zipfile(archive):
        try:
            safe_extract_zip(archive, dest)
        except zipfile.BadZipFile as e:
            raise ArchiveError(f"Corrupt archive {archive.name}: {e}") from e
        return
    try:
        is_tar = tarfile.is_tarfile(archive)
    except OSError as e:
        raise ArchiveError(f"Could not read archive {archive.name}: {e}") from e
    if not is_tar:
        raise ArchiveError(f"Unsupported archive format: {archive.name}")
    try:
        safe_extract_tar(archive, dest)
    except (tarfile.TarError, EOFError) as e:
        raise ArchiveError(f"Corrupt archive {archive.name}: {e}") from e


def unwrap_single_directory(root: Path) -> Path:
    """
    Return the only child of ``root`` when the archive wrapped everything in
    one top-level folder (GitHub tarballs, npm's ``package/``), else ``root``.
    """
    children = [p for p in root.iterdir() if p.name not in ("pax_global_header",)]
    if len(children) == 1 and children[0].is_dir() and not children[0].is_symlink():
        return children[0]
    return root
