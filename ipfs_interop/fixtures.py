"""
fixtures.py – Throwaway data on disk and in memory for the scenarios.
"""

import os
import random
import shutil
import tempfile
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .config import KB
from .logs import setup_logging

logger = setup_logging("fixtures")

MAX_FILE_SIZE = 4 * KB
NEW_DIR_CHANCE = 0.5


def temp_dir(prefix: str = "ipfs") -> str:
    """A fresh, not yet existing path under the system temp directory."""
    return os.path.join(tempfile.gettempdir(), f"{prefix}_{uuid.uuid4().hex}")


def random_bytes(size: int, rng: random.Random | None = None) -> bytes:
    if rng is None:
        return os.urandom(size)
    return rng.randbytes(size)


def random_tree(path: str | Path, depth: int, number: int,
                rng: random.Random | None = None) -> int:
    """
    Fill *path* with *number* random files spread over nested directories
    at most *depth* levels deep.  Returns how many entries the tree holds,
    the root directory included.  Every directory created holds at least
    one file.
    """
    if depth < 0 or number < 0:
        raise ValueError("depth and number must not be negative")
    rng = rng or random.Random()
    root = Path(path)
    root.mkdir(parents=True, exist_ok=True)
    entries = 1
    dir_count = 0

    for i in range(number):
        current = root
        for _ in range(rng.randint(0, depth)):
            subdirs = sorted(p for p in current.iterdir() if p.is_dir())
            if subdirs and rng.random() >= NEW_DIR_CHANCE:
                current = rng.choice(subdirs)
                continue
            dir_count += 1
            current = current / f"dir-{dir_count}"
            current.mkdir()
            entries += 1
        (current / f"file-{i}.bin").write_bytes(random_bytes(rng.randint(1, MAX_FILE_SIZE), rng))
        entries += 1

    logger.debug(f"Staged {entries} entries under {root}")
    return entries


@contextmanager
def staged_tree(depth: int, number: int,
                rng: random.Random | None = None) -> Iterator[tuple[Path, int]]:
    """Yield ``(root, entry_count)`` for a random tree that is removed afterwards."""
    root = Path(temp_dir("tree"))
    try:
        count = random_tree(root, depth, number, rng)
        yield root, count
    finally:
        shutil.rmtree(root, ignore_errors=True)
