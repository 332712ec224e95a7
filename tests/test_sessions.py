from __future__ import annotations

import json
import unittest

import httpx

from flightschool.sessions import OllamaSessionProvider, SessionDestroyedError


def _ndjson(*chunks) -> bytes:
    return "".join((c if isinstance(c, str) else json.dumps(c)) + "\n" for c in chunks).encode()


class OllamaSessionTest(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.body = b""
        self.requests: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            self.requests.append(json.loads(request.content))
            return httpx.Response(200, content=self.body)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://ai")
        self.provider = OllamaSessionProvider("http://ai", "llama3.1", timeout=5, client=client)

    async def asyncTearDown(self) -> None:
        await self.provider.aclose()

    async def _collect(self, prompt: str = "hi") -> list:
        session = await self.provider.create_session("test")
        return [event async for event in session.stream(prompt)]

    async def test_stream_relays_deltas_and_tools(self) -> None:
        self.body = _ndjson(
            {"message": {"content": "", "tool_calls": [{"function": {"name": "search_code"}}]}},
            {"message": {"content": "Hel"}},
            {"message": {"content": "lo"}, "done": True},
        )
        events = await self._collect()
        self.assertEqual([e.type for e in events], ["tool_start", "delta", "delta", "done"])
        self.assertEqual(events[-1].total_content, "Hello")
        self.assertTrue(self.requests[0]["stream"])

    async def test_malformed_line_ends_stream_with_error_event(self) -> None:
        self.body = _ndjson({"message": {"content": "Par"}}, "{not json")
        with self.assertLogs("flightschool.sessions", level="WARNING"):
            events = await self._collect()
        self.assertEqual([e.type for e in events], ["delta", "error"])
        self.assertEqual(events[-1].to_dict(), {"type": "error", "message": "AI stream returned malformed data"})

    async def test_send_and_wait_returns_reply_text(self) -> None:
        self.body = json.dumps({"message": {"content": '{"goal": {}}'}}).encode()
        session = await self.provider.create_session("test", system_prompt="be brief")
        result = await session.send_and_wait("hi")
        self.assertEqual(result.response_text, '{"goal": {}}')
        self.assertEqual(self.requests[0]["messages"][0], {"role": "system", "content": "be brief"})

    async def test_destroyed_session_refuses_calls(self) -> None:
        session = await self.provider.create_session("test")
        await session.destroy()
        with self.assertRaises(SessionDestroyedError):
            await session.send_and_wait("hi")


if __name__ == "__main__":
    unittest.main()
