from __future__ import annotations

import contextlib
import json
import os
import tempfile
from pathlib import Path
from typing import Any

from loguru import logger


def atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON to a sibling temp file, then rename it over ``path``.

    Readers in other processes see either the old or the new document, never a
    partial one.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_name)
        raise


def read_json(path: Path) -> dict[str, Any] | None:
    """Return the JSON object at ``path``, or None if missing or unreadable."""
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as ex:
        logger.debug(f"Ignoring unreadable JSON file {path}: {ex}")
        return None
    if not isinstance(data, dict):
        logger.debug(f"Ignoring non-object JSON file {path}")
        return None
    return data
