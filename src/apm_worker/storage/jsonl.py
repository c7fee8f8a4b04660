"""Append-only JSON-lines files guarded by advisory file locks."""

import json
import os
from pathlib import Path
from typing import Any, Union

from filelock import FileLock

DEFAULT_LOCK_TIMEOUT = 10.0

PathLike = Union[str, os.PathLike]


def lock_for(path: PathLike, timeout: float = DEFAULT_LOCK_TIMEOUT) -> FileLock:
    """Return the advisory lock shared by every writer of ``path``."""
    return FileLock(str(path) + ".lock", timeout=timeout)


def append_line(path: PathLike, line: str, lock: FileLock = None) -> None:
    """Append one line of text, creating parent directories as needed."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    lock = lock or lock_for(target)
    with lock:
        with open(target, "a", encoding="utf-8") as fh:
            fh.write(line.rstrip("\n") + "\n")
            fh.flush()


def append_json_line(path: PathLike, payload: Any, lock: FileLock = None) -> None:
    append_line(path, json.dumps(payload, default=str, separators=(",", ":")), lock=lock)
