import asyncio
import logging
from typing import Any, Dict, List, Optional, Protocol, Sequence

from openai import AsyncOpenAI, OpenAIError

from context import ContextAssembler, Scope
from errors import UpstreamFailure
from prompts import build_messages

logger = logging.getLogger("docchat.chat")


class CompletionBackend(Protocol):
    async def complete(self, messages: List[Dict[str, Any]], model: str) -> Dict[str, str]:
        """Return the first assistant reply as ``{"role", "content"}``."""
        ...


class OpenAICompletionBackend:
    def __init__(self, client: AsyncOpenAI, timeout: float = 60.0):
        self.client = client
        self.timeout = timeout

    async def complete(self, messages: List[Dict[str, Any]], model: str) -> Dict[str, str]:
        try:
            response = await asyncio.wait_for(
                self.client.chat.completions.create(model=model, messages=messages),
                self.timeout,
            )
        except asyncio.TimeoutError as exc:
            logger.error("Completion call to %s timed out after %ss", model, self.timeout)
            raise UpstreamFailure("The language model did not respond in time.") from exc
        except OpenAIError as exc:
            logger.error("Completion call to %s failed: %s", model, exc)
            raise UpstreamFailure("The language model request failed.") from exc

        if not response.choices:
            raise UpstreamFailure("The language model returned no reply.")
        message = response.choices[0].message
        return {"role": message.role, "content": message.content or ""}


class ChatOrchestrator:
    """One chat turn: scope -> context -> prompt -> completion -> reply."""

    def __init__(self, assembler: ContextAssembler, completions: CompletionBackend, default_model: str):
        self.assembler = assembler
        self.completions = completions
        self.default_model = default_model

    async def handle_turn(
        self,
        messages: Sequence[Dict[str, Any]],
        scope: Scope,
        model: Optional[str] = None,
    ) -> Dict[str, str]:
        context = await self.assembler.assemble(scope)
        final_messages = build_messages(context.manifest, context.block, messages)
        model = model or self.default_model
        logger.info(
            "Chat turn: %d caller messages, %d documents in context, model %s",
            len(messages),
            len(context.manifest),
            model,
        )
        return await self.completions.complete(final_messages, model)
