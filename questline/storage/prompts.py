"""Prompt documents: one global document plus optional per-world overrides.

    prompts/global.json    {brainPrompt, voicePrompt, stateReviewerPrompt,
                            stateReviewerEnabled, stateReviewerModel,
                            stateReviewerFrequency}
    prompts/<world>.json   {worldId, brainPrompt, voicePrompt,
                            stateReviewerPrompt}   (null = use global)
"""

from pathlib import Path
from typing import Any

from .core import prompts_dir, read_json, slugify, write_json

GLOBAL_DOC = "global"


def _prompt_path(doc_id: str) -> Path:
    return prompts_dir() / f"{slugify(doc_id)}.json"


def get_prompt_document(doc_id: str) -> dict[str, Any] | None:
    """Return a prompt document, or None if it does not exist."""
    return read_json(_prompt_path(doc_id))


def save_prompt_document(doc_id: str, fields: dict[str, Any]) -> dict[str, Any]:
    """Merge fields into a prompt document and persist. Returns the document."""
    doc = get_prompt_document(doc_id) or {}
    doc.update(fields)
    write_json(_prompt_path(doc_id), doc)
    return doc
