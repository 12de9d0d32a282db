"""
Small filesystem helpers shared by the job, cache and call stores.

Every write goes to a temporary file in the target directory and is moved into
place with ``os.replace``, so readers never observe a half-written document and
concurrent writers of the same key converge to the last one.
"""

import json
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Optional

_SAFE_KEY = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


def is_safe_key(key: str) -> bool:
    """Check that an id can be used as a single path component."""
    return bool(key) and bool(_SAFE_KEY.match(key)) and ".." not in key


def write_json_atomic(path: Path, data: Any) -> None:
    """Atomically replace ``path`` with the JSON encoding of ``data``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def read_json(path: Path) -> Optional[Any]:
    """Load JSON data from a file, or None if it is missing or unreadable."""
    if not path.exists():
        return None

    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (json.JSONDecodeError, IOError):
        return None


def append_json_line(path: Path, record: Any) -> None:
    """Append one JSON document as a line (audit logs)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    line = json.dumps(record, ensure_ascii=False) + "\n"
    # O_APPEND keeps concurrent single-line writes from interleaving
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o644)
    try:
        os.write(fd, line.encode("utf-8"))
    finally:
        os.close(fd)
