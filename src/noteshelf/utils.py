"""Utility functions for the Noteshelf persistence core."""

import json
from typing import Any, List

PREVIEW_LENGTH = 100


def extract_document_text(document: Any) -> str:
    """Concatenate the text inserts of a structured rich-text document.

    The document is a mapping with a ``document`` root node. Each node may
    carry a ``delta`` list of fragments (``{"insert": "text", ...}``) and a
    ``children`` list of nested nodes. Text is collected depth-first, node
    text before its children. Non-text inserts (embedded images and the
    like) are skipped.

    Example:
        >>> extract_document_text({"document": {"children": [
        ...     {"delta": [{"insert": "Hello "}, {"insert": "world"}]}]}})
        'Hello world'
    """
    parts: List[str] = []

    def walk(node: Any) -> None:
        if not isinstance(node, dict):
            return
        delta = node.get("delta")
        if isinstance(delta, list):
            for op in delta:
                if isinstance(op, dict) and isinstance(op.get("insert"), str):
                    parts.append(op["insert"])
        children = node.get("children")
        if isinstance(children, list):
            for child in children:
                walk(child)

    if isinstance(document, dict):
        walk(document.get("document"))
    return "".join(parts)


def content_preview(content: str, length: int = PREVIEW_LENGTH) -> str:
    """Build a short plain-text preview of note content.

    Structured documents (JSON with a ``document`` root) yield the leading
    ``length`` characters of their concatenated text. Anything else is
    treated as raw text: the leading ``length`` characters with newlines
    turned into spaces and the ends trimmed. Never raises.

    Args:
        content: The stored content payload.
        length: Maximum preview length.

    Returns:
        The preview text, or "" for empty content.
    """
    if not content:
        return ""

    try:
        decoded = json.loads(content)
        if isinstance(decoded, dict) and "document" in decoded:
            return extract_document_text(decoded)[:length]
    except (ValueError, TypeError, RecursionError):
        # Not a structured document; fall through to raw text
        pass

    return content[:length].replace("\n", " ").strip()


def escape_like_pattern(value: str) -> str:
    """Escape SQL LIKE wildcards to treat them as literals.

    Search input containing '%' or '_' must match those characters
    literally instead of acting as wildcards.

    Args:
        value: User input string that may contain LIKE wildcards

    Returns:
        String with '%', '_', and '\\' escaped for use with ``escape="\\"``

    Example:
        >>> escape_like_pattern("100% done")
        '100\\\\% done'
    """
    escape_table = str.maketrans(
        {
            "\\": "\\\\",  # Escape backslash first
            "%": "\\%",
            "_": "\\_",
        }
    )
    return value.translate(escape_table)
