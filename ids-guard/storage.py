from __future__ import annotations

import json
import os
import tempfile
from typing import Any, List


def write_json_atomic(path: str, payload: Any) -> None:
    """Write payload to path using a temp file + atomic rename to avoid corruption."""
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".ids-guard-", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2, default=str)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    finally:
        if os.path.exists(tmp_path):
            try:
                os.remove(tmp_path)
            except OSError:
                pass


def read_json_list(path: str) -> List[Any]:
    """Load a JSON list from disk, treating a missing or truncated file as empty."""
    if not os.path.exists(path):
        return []
    try:
        with open(path, "r", encoding="utf-8") as handle:
            loaded = json.load(handle)
    except (json.JSONDecodeError, OSError):
        return []
    return loaded if isinstance(loaded, list) else []


def append_records(path: str, records: List[Any], max_items: int) -> List[Any]:
    """Append records to the JSON list at path, keep the newest max_items, return the list."""
    items = read_json_list(path)
    items.extend(records)
    if max_items > 0 and len(items) > max_items:
        items = items[-max_items:]
    write_json_atomic(path, items)
    return items
