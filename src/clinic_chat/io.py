from __future__ import annotations

import hashlib
import json
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Union

PathLike = Union[str, Path]


def ensure_dir(p: PathLike) -> Path:
    """Ensure that a directory exists, returning it as a Path."""
    p = Path(p)
    try:
        p.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise OSError(f"Failed to create directory {p}: {e}") from e
    return p


def safe_key(name: str) -> str:
    """Turn an owner/user id into a filesystem-safe file stem.

    The readable prefix is lossy, so a digest of the raw id is appended to
    keep distinct ids on distinct files.
    """
    prefix = re.sub(r"[^\w\-@]+", "_", name.strip())[:64] or "default"
    digest = hashlib.sha256(name.encode("utf-8")).hexdigest()[:12]
    return f"{prefix}-{digest}"


def read_json(path: PathLike) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def atomic_write_json(path: PathLike, data: Any) -> None:
    """Write JSON via a temp file in the same directory, then replace."""
    p = Path(path)
    ensure_dir(p.parent)
    text = json.dumps(data, ensure_ascii=False, indent=2)
    with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False, dir=str(p.parent)) as tmp:
        tmp.write(text)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_name = tmp.name
    os.replace(tmp_name, p)
