"""Content hashing and read-only locking of finished output trees."""

from __future__ import annotations

import hashlib
import logging
import os
import stat
from pathlib import Path

from .files import IDENTITY_FILE_NAME

LOGGER = logging.getLogger(__name__)

_CHUNK_SIZE = 1024 * 1024
_WRITE_BITS = stat.S_IWUSR | stat.S_IWGRP | stat.S_IWOTH


def hash_tree(root: Path) -> str:
    """Return the SHA-256 hex digest over all files below ``root``.

    Files are visited in sorted order of their relative POSIX paths; each
    contributes its path and the digest of its content. Symbolic links
    contribute their target path and are never followed. The identity file
    at the root itself is excluded, so hashing a finalized tree reproduces
    the stored hash.
    """

    digest = hashlib.sha256()
    for relative in _relative_files(root):
        if relative == IDENTITY_FILE_NAME:
            continue
        digest.update(relative.encode("utf-8"))
        digest.update(b"\0")
        digest.update(_entry_digest(root / relative).encode("ascii"))
        digest.update(b"\n")
    return digest.hexdigest()


def read_identity(root: Path) -> str | None:
    path = root / IDENTITY_FILE_NAME
    if not path.is_file():
        return None
    return path.read_text(encoding="utf-8").strip()


def finalize(root: Path) -> str:
    """Hash ``root``, write the identity file and lock the tree read-only."""

    identity = hash_tree(root)
    (root / IDENTITY_FILE_NAME).write_text(identity + "\n", encoding="utf-8")
    LOGGER.info("Output %s has identity %s", root, identity)
    lock_tree(root)
    return identity


def lock_tree(root: Path) -> None:
    """Remove all write permissions below and including ``root``."""

    for current, directories, files in os.walk(root, topdown=False):
        for name in files + directories:
            _remove_write_bits(Path(current) / name)
    _remove_write_bits(root)
    LOGGER.debug("Locked %s read-only", root)


def is_locked(root: Path) -> bool:
    for current, directories, files in os.walk(root):
        for name in [current, *(os.path.join(current, entry) for entry in files + directories)]:
            path = Path(name)
            if path.is_symlink():
                continue
            if stat.S_IMODE(path.stat().st_mode) & _WRITE_BITS:
                return False
    return True


def _relative_files(root: Path) -> list[str]:
    relative_paths = []
    for current, directories, files in os.walk(root):
        directories.sort()
        links = [name for name in directories if os.path.islink(os.path.join(current, name))]
        for name in files + links:
            path = Path(current) / name
            relative_paths.append(path.relative_to(root).as_posix())
    return sorted(relative_paths)


def _entry_digest(path: Path) -> str:
    if path.is_symlink():
        target = os.readlink(path)
        return hashlib.sha256(b"symlink\0" + os.fsencode(target)).hexdigest()
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _remove_write_bits(path: Path) -> None:
    if path.is_symlink():
        return
    mode = stat.S_IMODE(path.stat().st_mode)
    path.chmod(mode & ~_WRITE_BITS)
