"""Tests for the chat endpoint client using httpx.MockTransport."""

import asyncio
import json

import httpx
import pytest

from opencode.client import ApiClient
from opencode.errors import StreamDecodeError, TransportError
from opencode.messages import (
    ChatCompletionRequest,
    Message,
    Role,
    ToolDefinition,
)


def _request(**overrides):
    defaults = dict(
        model="test/model",
        messages=[Message.system("sys"), Message.user("hi")],
    )
    defaults.update(overrides)
    return ChatCompletionRequest(**defaults)


def _run(handler, coro_fn):
    async def main():
        async with ApiClient(
            "sk-test",
            base_url="https://api.test/v1",
            transport=httpx.MockTransport(handler),
        ) as client:
            return await coro_fn(client)

    return asyncio.run(main())


class TestChatCompletion:
    def test_posts_request_and_parses_response(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "choices": [
                        {
                            "message": {
                                "role": "assistant",
                                "content": None,
                                "tool_calls": [
                                    {
                                        "id": "call_9",
                                        "type": "function",
                                        "function": {
                                            "name": "FileReadTool",
                                            "arguments": '{"path":"a"}',
                                        },
                                    }
                                ],
                            },
                            "finish_reason": "tool_calls",
                        }
                    ]
                },
            )

        tool = ToolDefinition(name="FileReadTool", description="d", parameters={})
        response = _run(
            handler,
            lambda c: c.chat_completion(
                _request(tools=[tool], tool_choice="auto", temperature=0.2)
            ),
        )

        assert seen["url"] == "https://api.test/v1/chat/completions"
        assert seen["headers"]["authorization"] == "Bearer sk-test"
        assert seen["headers"]["x-title"] == "OpenCode CLI"
        assert seen["headers"]["http-referer"] == "http://localhost:3000"
        body = seen["body"]
        assert body["model"] == "test/model"
        assert body["messages"] == [
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "hi"},
        ]
        assert body["tools"][0]["function"]["name"] == "FileReadTool"
        assert body["tool_choice"] == "auto"
        assert body["temperature"] == 0.2
        assert "stream" not in body
        assert "max_tokens" not in body

        choice = response.first
        assert choice.finish_reason == "tool_calls"
        assert choice.message.role == Role.ASSISTANT
        # Arguments stay a raw string, echoed unchanged.
        assert choice.message.tool_calls[0].function.arguments == '{"path":"a"}'

    def test_error_status(self):
        def handler(request):
            return httpx.Response(500, text="upstream exploded")

        with pytest.raises(TransportError) as exc:
            _run(handler, lambda c: c.chat_completion(_request()))
        assert str(exc.value) == "API request failed with status 500: upstream exploded"

    def test_timeout_is_transport_error(self):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        with pytest.raises(TransportError, match="timed out"):
            _run(handler, lambda c: c.chat_completion(_request()))

    def test_connect_error_names_endpoint(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(TransportError, match="api.test"):
            _run(handler, lambda c: c.chat_completion(_request()))

    def test_invalid_json_body(self):
        def handler(request):
            return httpx.Response(200, text="<html>")

        with pytest.raises(TransportError, match="Failed to parse API response"):
            _run(handler, lambda c: c.chat_completion(_request()))


class TestChatCompletionStream:
    SSE = (
        b'data: {"choices":[{"delta":{"role":"assistant"}}]}\n\n'
        b'data: {"choices":[{"delta":{"content":"Hel"}}]}\n\n'
        b'data: {"choices":[{"delta":{"content":"lo"},"finish_reason":"stop"}]}\n\n'
        b"data: [DONE]\n\n"
    )

    def _collect(self, handler):
        async def collect(client):
            return [c async for c in client.chat_completion_stream(_request())]

        return _run(handler, collect)

    def test_yields_decoded_chunks(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            seen["accept"] = request.headers["accept"]
            return httpx.Response(
                200,
                content=self.SSE,
                headers={"content-type": "text/event-stream"},
            )

        chunks = self._collect(handler)
        assert seen["body"]["stream"] is True
        assert seen["accept"] == "text/event-stream"
        assert [c.choices[0].delta.content for c in chunks] == [None, "Hel", "lo"]
        assert chunks[-1].choices[0].finish_reason == "stop"

    def test_error_status(self):
        def handler(request):
            return httpx.Response(401, text="bad key")

        with pytest.raises(TransportError, match="status 401: bad key"):
            self._collect(handler)

    def test_truncated_stream(self):
        def handler(request):
            return httpx.Response(200, content=b'data: {"choices": [')

        with pytest.raises(StreamDecodeError, match="incomplete data"):
            self._collect(handler)
