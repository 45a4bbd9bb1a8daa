"""JSON document helpers shared by the file-backed stores."""

from __future__ import annotations

import json
import os
import pathlib
import re
from typing import Any

from bulkprice.errors import NotFoundError

DEFAULT_DATA_DIR = "data"

KEY_RE = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]{0,127}")


def data_dir() -> pathlib.Path:
    return pathlib.Path(os.environ.get("DATA_DIR", DEFAULT_DATA_DIR))


def document_path(root: pathlib.Path, key: str, suffix: str) -> pathlib.Path:
    if not key or not KEY_RE.fullmatch(key) or ".." in key:
        raise NotFoundError(f"Unknown id: {key!r}")
    return root / f"{key}{suffix}"


def write_exclusive(path: pathlib.Path, payload: dict[str, Any]) -> None:
    """Write a new document; an existing one is never replaced."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("x") as fh:
        json.dump(payload, fh, indent=2)


def read_document(path: pathlib.Path) -> dict[str, Any]:
    try:
        return json.loads(path.read_text())
    except FileNotFoundError as exc:
        raise NotFoundError(f"Unknown id: {path.name}") from exc
    except json.JSONDecodeError as exc:
        raise NotFoundError(f"Unreadable record: {path.name}") from exc
