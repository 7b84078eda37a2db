"""Turns a document scope into the delimited context block for a chat turn."""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Iterable, List, Optional, Tuple

import tiktoken

from document_store import DocumentRecord, DocumentStore
from errors import DocChatError, NotFound, UpstreamFailure

logger = logging.getLogger("docchat.context")

BEGIN_MARKER = "=== BEGIN DOCUMENT: {name} ==="
END_MARKER = "=== END DOCUMENT ==="

_MARKER_RUN = re.compile(r"={3,}")
_MARKER_LINE = re.compile(r"^([ \t]*)===(?=[ \t]*(?:BEGIN|END) DOCUMENT\b)", re.MULTILINE)


@dataclass(frozen=True)
class Scope:
    """Documents eligible for a turn: every stored document, or an explicit
    list of keys (``keys is None`` means all)."""

    keys: Optional[Tuple[str, ...]] = None

    @classmethod
    def all(cls) -> "Scope":
        return cls(None)

    @classmethod
    def explicit(cls, keys: Iterable[str]) -> "Scope":
        # Keep the first occurrence of each key, in caller order.
        return cls(tuple(dict.fromkeys(keys)))

    @property
    def is_all(self) -> bool:
        return self.keys is None


@dataclass
class AssembledContext:
    block: str = ""
    manifest: List[str] = field(default_factory=list)
    keys: List[str] = field(default_factory=list)


@lru_cache(maxsize=1)
def get_tokenizer():
    # cl100k_base works well for modern OpenAI chat models
    return tiktoken.get_encoding("cl100k_base")


def count_tokens(text: str) -> int:
    return len(get_tokenizer().encode(text))


def display_name(name: str) -> str:
    # A line break in a name would split the marker line, and "===" inside
    # it would look like the end of the marker.
    flat = " ".join(name.splitlines()).strip()
    return _MARKER_RUN.sub(lambda m: " ".join(m.group(0)), flat) or "untitled"


def neutralize_markers(text: str) -> str:
    """Break up lines in document text that would read as section markers.

    ``=== END DOCUMENT ===`` becomes ``= = = END DOCUMENT ===``; nothing else
    in the text changes.
    """
    return _MARKER_LINE.sub(r"\1= = =", text)


def render_section(name: str, text: str) -> str:
    return f"{BEGIN_MARKER.format(name=name)}\n\n{neutralize_markers(text)}\n\n{END_MARKER}"


class ContextAssembler:
    def __init__(
        self,
        store: DocumentStore,
        fetch_timeout: float = 10.0,
        max_concurrency: int = 8,
        max_context_tokens: int = 0,
    ):
        self.store = store
        self.fetch_timeout = fetch_timeout
        self.max_concurrency = max(1, max_concurrency)
        self.max_context_tokens = max_context_tokens

    async def resolve(self, scope: Scope) -> List[str]:
        if not scope.is_all:
            return list(scope.keys)
        try:
            records = await asyncio.wait_for(asyncio.to_thread(self.store.list), self.fetch_timeout)
        except asyncio.TimeoutError as exc:
            raise UpstreamFailure("Document storage did not respond in time.") from exc
        except DocChatError as exc:
            raise UpstreamFailure("Document storage is unreachable.") from exc
        # Keys start with a fixed-width timestamp, so this is upload order.
        return sorted(r.id for r in records)

    async def _fetch(self, key: str, limit: asyncio.Semaphore) -> Tuple[Optional[DocumentRecord], Optional[str]]:
        """Returns (record, None), (None, "missing") or (None, reason)."""
        async with limit:
            try:
                record = await asyncio.wait_for(
                    asyncio.to_thread(self.store.get_metadata, key), self.fetch_timeout
                )
            except NotFound:
                return None, "missing"
            except asyncio.TimeoutError:
                return None, "timed out"
            except DocChatError as exc:
                return None, exc.reason
            except Exception:
                logger.exception("Unexpected error loading %s", key)
                return None, "unexpected error"
        return record, None

    async def assemble(self, scope: Scope) -> AssembledContext:
        keys = await self.resolve(scope)
        if not keys:
            logger.info("No documents in scope")
            return AssembledContext()

        limit = asyncio.Semaphore(self.max_concurrency)
        results = await asyncio.gather(*(self._fetch(key, limit) for key in keys))

        reached_storage = False
        sections: List[str] = []
        manifest: List[str] = []
        included: List[str] = []
        used_tokens = 0

        for key, (record, failure) in zip(keys, results):
            if failure == "missing":
                reached_storage = True
                logger.info("Dropping %s from scope: document no longer exists", key)
                continue
            if failure:
                logger.warning("Skipping %s: %s", key, failure)
                continue
            reached_storage = True

            text = record.extracted_text or ""
            if not text.strip():
                logger.info("Skipping %s: no extracted text", key)
                continue

            name = display_name(record.name)
            section = render_section(name, text)
            if self.max_context_tokens > 0:
                section_tokens = count_tokens(section)
                if used_tokens + section_tokens > self.max_context_tokens:
                    logger.warning(
                        "Leaving out %s: %d tokens would exceed the context budget (%d/%d used)",
                        key,
                        section_tokens,
                        used_tokens,
                        self.max_context_tokens,
                    )
                    continue
                used_tokens += section_tokens

            sections.append(section)
            manifest.append(name)
            included.append(key)

        if not reached_storage:
            raise UpstreamFailure("Document storage is unreachable; no document could be loaded.")

        block = "\n\n".join(sections)
        logger.info("Assembled %d of %d documents (%d chars)", len(included), len(keys), len(block))
        return AssembledContext(block=block, manifest=manifest, keys=included)
