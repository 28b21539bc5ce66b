"""Shared utility functions used across the pipeline."""
from __future__ import annotations

import asyncio
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

import orjson

from course_rag.errors import QueryCancelled


# --- Text Utilities -----------------------------------------------------------

def truncate_text(text: str, max_chars: int = 300) -> str:
    """Truncate text for display purposes."""
    if len(text) <= max_chars:
        return text
    return text[:max_chars].rstrip() + "..."


def estimate_tokens(text: str) -> int:
    """Rough token estimate used for chunk sizing: one token per four characters."""
    return -(-len(text) // 4)


# --- File I/O -----------------------------------------------------------------

def write_bytes_atomic(data: bytes, path: str | Path) -> None:
    """Write to a sibling temp file, then swap it into place."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def save_json(data: Any, path: str | Path) -> None:
    """Serialise data to JSON using orjson (fast, handles datetime/UUID)."""
    write_bytes_atomic(orjson.dumps(data, option=orjson.OPT_INDENT_2 | orjson.OPT_NON_STR_KEYS), path)


def load_json(path: str | Path) -> Any:
    """Load JSON data from file."""
    with open(Path(path), "rb") as f:
        return orjson.loads(f.read())


# --- Cancellation ---------------------------------------------------------------

def raise_if_cancelled(cancel_event: Optional[asyncio.Event], stage: str) -> None:
    """Abort a query before its next external call when the caller has gone away."""
    if cancel_event is not None and cancel_event.is_set():
        raise QueryCancelled(f"Query cancelled before {stage}")
