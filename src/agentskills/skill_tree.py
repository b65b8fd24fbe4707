from __future__ import annotations

import base64
import hashlib
import shutil
from dataclasses import dataclass
from pathlib import Path

# Directory/file names to skip anywhere in the tree.
DEFAULT_EXCLUDE_NAMES = {
    ".git",
    ".hg",
    ".svn",
    ".agentskills",
    ".DS_Store",
    "__pycache__",
    ".pytest_cache",
    ".mypy_cache",
    ".ruff_cache",
    ".venv",
    "venv",
    "node_modules",
    ".idea",
    ".vscode",
}

_CHUNK = 1024 * 1024


@dataclass(frozen=True)
class SkillTree:
    root: Path
    files: tuple[Path, ...]
    integrity: str
    size_bytes: int

    @property
    def file_count(self) -> int:
        return len(self.files)


def _should_exclude(path: Path, root: Path) -> bool:
    try:
        rel = path.relative_to(root)
    except ValueError:
        return True

    parts = rel.parts
    if any(p in DEFAULT_EXCLUDE_NAMES for p in parts):
        return True
    return False


def collect_files(root: Path) -> list[Path]:
    """Regular files under ``root``, sorted by relative POSIX path."""
    files: list[Path] = []
    for p in root.rglob("*"):
        if _should_exclude(p, root):
            continue
        if p.is_symlink():
            # Avoid surprising content and portability issues.
            continue
        if p.is_file():
            files.append(p)

    files.sort(key=lambda p: p.relative_to(root).as_posix())
    return files


def _file_sha256(path: Path) -> bytes:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while chunk := f.read(_CHUNK):
            h.update(chunk)
    return h.digest()


def digest_tree(root: Path) -> SkillTree:
    """
    Content digest over a skill tree.

    Only relative paths and file bytes contribute, so re-fetching identical
    content yields the same digest regardless of timestamps or location.
    """
    root = root.resolve()
    files = collect_files(root)
    h = hashlib.sha256()
    size = 0
    for p in files:
        rel = p.relative_to(root).as_posix()
        h.update(rel.encode("utf-8"))
        h.update(b"\0")
        h.update(_file_sha256(p))
        size += p.stat().st_size

    integrity = "sha256-" + base64.b64encode(h.digest()).decode("ascii")
    return SkillTree(root=root, files=tuple(files), integrity=integrity, size_bytes=size)


def copy_tree(src: Path, dest: Path) -> int:
    """
    Copy the files of ``src`` into ``dest`` (created if missing).

    Excluded names and symlinks are skipped so the copy never points outside
    itself. Returns the number of files copied.
    """
    src = src.resolve()
    dest.mkdir(parents=True, exist_ok=True)
    count = 0
    for p in collect_files(src):
        target = dest / p.relative_to(src)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(p, target)
        count += 1
    return count
