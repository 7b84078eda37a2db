import asyncio
import unittest
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai

from chat import ChatOrchestrator, OpenAICompletionBackend
from context import ContextAssembler, Scope
from document_store import DocumentStore
from errors import UpstreamFailure
from fakes import Clock, FakeCompletions, FakeContainerClient
from prompts import NO_DOCUMENTS_NOTICE


def completion_response(content="Mocked Answer", role="assistant"):
    return MagicMock(choices=[MagicMock(message=MagicMock(role=role, content=content))])


class TestChatOrchestrator(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.container = FakeContainerClient()
        self.store = DocumentStore(self.container, clock=Clock())
        self.completions = FakeCompletions("Revenue grew 10% in Q3.")
        self.orchestrator = ChatOrchestrator(ContextAssembler(self.store), self.completions, default_model="gpt-4o-mini")

    async def test_turn_returns_backend_reply_untouched(self):
        doc = self.store.put(b"x", "text/plain", "q3.txt", "Revenue grew 10%.").id
        caller = [{"role": "user", "content": "How did revenue change?"}]

        reply = await self.orchestrator.handle_turn(caller, Scope.explicit([doc]))

        self.assertEqual(reply, {"role": "assistant", "content": "Revenue grew 10% in Q3."})
        call = self.completions.calls[0]
        self.assertEqual(call["model"], "gpt-4o-mini")
        self.assertEqual(call["messages"][1:], caller)
        self.assertIn("=== BEGIN DOCUMENT: q3.txt ===", call["messages"][0]["content"])

    async def test_explicit_model_wins(self):
        await self.orchestrator.handle_turn([{"role": "user", "content": "hi"}], Scope.all(), model="gpt-4o")
        self.assertEqual(self.completions.calls[0]["model"], "gpt-4o")

    async def test_no_documents_still_calls_backend(self):
        reply = await self.orchestrator.handle_turn([{"role": "user", "content": "hi"}], Scope.all())

        self.assertEqual(reply["content"], "Revenue grew 10% in Q3.")
        self.assertIn(NO_DOCUMENTS_NOTICE, self.completions.calls[0]["messages"][0]["content"])

    async def test_backend_failure_surfaces_without_side_effects(self):
        self.store.put(b"x", "text/plain", "a.txt", "text")
        before = dict(self.container.blobs)
        self.completions.error = UpstreamFailure("The language model request failed.")

        with self.assertRaises(UpstreamFailure):
            await self.orchestrator.handle_turn([{"role": "user", "content": "hi"}], Scope.all())
        self.assertEqual(self.container.blobs, before)

    async def test_unreachable_storage_does_not_reach_backend(self):
        self.store.put(b"x", "text/plain", "a.txt", "text")
        self.container.broken = True

        with self.assertRaises(UpstreamFailure):
            await self.orchestrator.handle_turn([{"role": "user", "content": "hi"}], Scope.all())
        self.assertEqual(self.completions.calls, [])


class TestOpenAICompletionBackend(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.client = MagicMock()
        self.client.chat.completions.create = AsyncMock(return_value=completion_response())
        self.backend = OpenAICompletionBackend(self.client, timeout=1.0)

    async def test_first_choice_is_returned(self):
        messages = [{"role": "system", "content": "s"}, {"role": "user", "content": "u"}]

        reply = await self.backend.complete(messages, "gpt-4o-mini")

        self.assertEqual(reply, {"role": "assistant", "content": "Mocked Answer"})
        self.client.chat.completions.create.assert_awaited_once_with(model="gpt-4o-mini", messages=messages)

    async def test_api_error_becomes_upstream_failure(self):
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        self.client.chat.completions.create.side_effect = openai.APIConnectionError(request=request)

        with self.assertRaises(UpstreamFailure) as ctx:
            await self.backend.complete([{"role": "user", "content": "u"}], "gpt-4o-mini")
        self.assertEqual(ctx.exception.reason, "The language model request failed.")

    async def test_timeout_becomes_upstream_failure(self):
        async def hang(**kwargs):
            await asyncio.sleep(5)

        self.client.chat.completions.create = hang
        backend = OpenAICompletionBackend(self.client, timeout=0.05)

        with self.assertRaises(UpstreamFailure):
            await backend.complete([{"role": "user", "content": "u"}], "gpt-4o-mini")

    async def test_empty_choices(self):
        self.client.chat.completions.create.return_value = MagicMock(choices=[])
        with self.assertRaises(UpstreamFailure):
            await self.backend.complete([{"role": "user", "content": "u"}], "gpt-4o-mini")


if __name__ == "__main__":
    unittest.main()
