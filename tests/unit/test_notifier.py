"""Unit tests for notification sinks."""

import asyncio
import json

import httpx
import pytest

from polyedge.services.notifier import LogNotifier, TelegramNotifier, notify_safely


class TestTelegramNotifier:
    def _notifier(self, handler):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return TelegramNotifier("123:abc", "42", client=client)

    @pytest.mark.asyncio
    async def test_posts_to_bot_api(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"ok": True})

        assert await self._notifier(handler).send("hello") is True
        assert seen["url"] == "https://api.telegram.org/bot123:abc/sendMessage"
        assert seen["body"]["chat_id"] == "42"
        assert seen["body"]["text"] == "hello"

    @pytest.mark.asyncio
    async def test_api_error_returns_false(self):
        assert await self._notifier(lambda r: httpx.Response(401)).send("x") is False

    @pytest.mark.asyncio
    async def test_transport_error_returns_false(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        assert await self._notifier(handler).send("x") is False


class TestNotifySafely:
    @pytest.mark.asyncio
    async def test_never_raises(self):
        class Exploding:
            async def send(self, text):
                raise RuntimeError("boom")

        class Slow:
            async def send(self, text):
                await asyncio.sleep(1)
                return True

        await notify_safely(Exploding(), "x")
        await notify_safely(Slow(), "x", timeout=0.01)
        await notify_safely(LogNotifier(), "x")
