"""Knowledge-base documents (lore/rules reference material).

Each document: {id, name, worldModule, content, category, targetModel, enabled}.
"""

from pathlib import Path
from typing import Any

from .core import data_dir, read_json, store_lock, write_json


def _knowledge_path() -> Path:
    return data_dir() / "knowledge.json"


def get_knowledge_documents() -> list[dict[str, Any]]:
    """Load all knowledge documents. Returns [] if missing."""
    return read_json(_knowledge_path(), [])


def save_knowledge_documents(docs: list[dict[str, Any]]) -> None:
    write_json(_knowledge_path(), docs)


def add_knowledge_document(doc: dict[str, Any]) -> dict[str, Any]:
    """Append a document, assigning the next numeric id and enabled=True by default."""
    with store_lock:
        docs = get_knowledge_documents()
        next_id = max((int(d.get("id", 0)) for d in docs), default=0) + 1
        stored = {"id": next_id, "enabled": True, **doc}
        docs.append(stored)
        save_knowledge_documents(docs)
    return stored
