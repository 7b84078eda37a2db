from typing import Any, Dict, List, Optional, Sequence

import config

GROUNDING_RULES = """Follow these rules for every answer:
1. The documents below are real content provided by the user. Never treat them as examples, samples or placeholder data.
2. Answer using only information found in the documents.
3. Respond in the same language as the user's question.
4. If the documents do not contain the information needed, say so explicitly. Do not guess or make anything up.
5. Each document starts with a line "=== BEGIN DOCUMENT: <name> ===" and ends with a line "=== END DOCUMENT ===". Only attribute content to a document if it appears between that document's own markers."""

NO_DOCUMENTS_NOTICE = (
    "No documents are available for this conversation. No document content was provided, "
    "so tell the user that you have no documents to draw on and do not present any answer "
    "as coming from a document."
)


def build_system_instruction(manifest: Sequence[str], block: str, preamble: Optional[str] = None) -> str:
    if preamble is None:
        preamble = config.SYSTEM_INSTRUCTIONS
    parts = [preamble.strip(), GROUNDING_RULES] if preamble and preamble.strip() else [GROUNDING_RULES]

    if not manifest or not block:
        parts.append(NO_DOCUMENTS_NOTICE)
        return "\n\n".join(parts)

    listing = "\n".join(f"- {name}" for name in manifest)
    parts.append(f"You have access to the following {len(manifest)} document(s):\n{listing}")
    parts.append(f"Document content:\n\n{block}")
    return "\n\n".join(parts)


def build_messages(
    manifest: Sequence[str],
    block: str,
    caller_messages: Sequence[Dict[str, Any]],
    preamble: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """System instruction followed by the caller's messages, verbatim and in order."""
    system = {"role": "system", "content": build_system_instruction(manifest, block, preamble)}
    return [system] + [dict(m) for m in caller_messages]
