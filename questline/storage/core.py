"""Storage initialization, path helpers, atomic JSON I/O and the store lock."""

import json
import os
import re
import tempfile
import threading
import unicodedata
from pathlib import Path
from typing import Any

_data_dir: Path | None = None

# Serialises every read-modify-write in the process (increments, merges).
store_lock = threading.RLock()


class StorageError(RuntimeError):
    """Raised when a document cannot be read or written."""


class ConflictError(StorageError):
    """Raised when a versioned write loses against a concurrent update."""


def init_storage(data_dir: Path) -> None:
    global _data_dir
    _data_dir = data_dir
    _data_dir.mkdir(parents=True, exist_ok=True)
    campaigns_dir().mkdir(exist_ok=True)
    prompts_dir().mkdir(exist_ok=True)
    usage_dir().mkdir(exist_ok=True)
    (usage_dir() / "users").mkdir(exist_ok=True)
    (usage_dir() / "daily").mkdir(exist_ok=True)


def data_dir() -> Path:
    assert _data_dir is not None, "Call init_storage() before using storage"
    return _data_dir


def campaigns_dir() -> Path:
    return data_dir() / "campaigns"


def prompts_dir() -> Path:
    return data_dir() / "prompts"


def usage_dir() -> Path:
    return data_dir() / "usage"


def read_json(path: Path, default: Any = None) -> Any:
    """Load a JSON document, returning `default` when the file is missing."""
    if not path.is_file():
        return default
    try:
        return json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise StorageError(f"Cannot read {path.name}: {e}") from e


def write_json(path: Path, data: Any) -> None:
    """Write a JSON document atomically (temp file + rename)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2, default=str)
        os.replace(tmp, path)
    except OSError as e:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise StorageError(f"Cannot write {path.name}: {e}") from e


def increment_fields(path: Path, deltas: dict[str, int], extra: dict[str, Any] | None = None) -> dict[str, Any]:
    """Atomically add `deltas` to numeric fields of a document (created if missing).

    Dotted keys address nested maps: {"tokens.gpt-4o-mini.total": 12}.
    `extra` fields are set verbatim after the increments.
    """
    with store_lock:
        doc = read_json(path, {}) or {}
        for key, delta in deltas.items():
            target = doc
            *parents, leaf = key.split(".")
            for part in parents:
                target = target.setdefault(part, {})
            target[leaf] = target.get(leaf, 0) + delta
        if extra:
            doc.update(extra)
        write_json(path, doc)
        return doc


def slugify(title: str) -> str:
    """Convert a title to a filesystem-safe slug.

    "The Cursed Tavern" → "the-cursed-tavern"
    """
    text = unicodedata.normalize("NFKD", title)
    text = text.encode("ascii", "ignore").decode("ascii")
    text = text.lower()
    text = re.sub(r"['\"]", "", text)
    text = re.sub(r"[^a-z0-9]+", "-", text)
    text = text.strip("-")
    return text or "untitled"
