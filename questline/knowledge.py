"""Knowledge retrieval: pick lore/rules documents for a prompt.

Documents are scoped by world module ("global" matches every world) and by
audience (targetModel "brain", "voice", "both" or unset). The shortest
documents win, bounding the worst-case prompt size.
"""

import logging
from typing import Any

from questline import storage

logger = logging.getLogger(__name__)


def _module_matches(doc: dict[str, Any], world_module: str) -> bool:
    return doc.get("worldModule") in ("global", world_module)


def _audience_matches(doc: dict[str, Any], audience: str) -> bool:
    target = doc.get("targetModel")
    return not target or target in ("both", audience)


def select_documents(
    docs: list[dict[str, Any]],
    world_module: str,
    audience: str,
    max_docs: int,
) -> list[dict[str, Any]]:
    """Filter, order by ascending content length and keep the first max_docs."""
    matching = [
        d for d in docs
        if d.get("enabled") is True
        and _module_matches(d, world_module)
        and _audience_matches(d, audience)
    ]
    matching.sort(key=lambda d: len(d.get("content") or ""))
    return matching[:max(max_docs, 0)]


def format_document(doc: dict[str, Any]) -> str:
    category = str(doc.get("category") or "other").upper()
    return f"[{category}: {doc.get('name', '')}]\n{doc.get('content', '')}"


def fetch_knowledge(
    world_module: str,
    audience: str,
    max_docs: int,
    docs: list[dict[str, Any]] | None = None,
) -> list[str]:
    """Return formatted documents ready for prompt concatenation.

    `docs` comes from the turn's ConfigSnapshot; when omitted the store is
    read directly.
    """
    if docs is None:
        docs = storage.get_knowledge_documents()
    selected = select_documents(docs, world_module, audience, max_docs)
    logger.debug(
        "knowledge world=%s audience=%s selected=%d of %d",
        world_module, audience, len(selected), len(docs),
    )
    return [format_document(d) for d in selected]


def knowledge_section(documents: list[str], purpose: str = "world context and lore") -> str:
    """Prompt section wrapping formatted documents; empty when there are none."""
    if not documents:
        return ""
    joined = "\n\n---\n\n".join(documents)
    return f"\n\nREFERENCE MATERIALS (Use for {purpose}):\n---\n{joined}\n---\n"
