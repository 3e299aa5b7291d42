"""Tests for effect execution against a mocked HTTP transport."""

import datetime as dt
import json
import random

import httpx
import pytest

from cvflow.services.effect_executor import EffectExecutor
from cvflow.services.flow_engine import Effect, EffectResult, EffectType


def executor_for(handler) -> EffectExecutor:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return EffectExecutor(client=client)


class TestApiCalls:
    @pytest.mark.asyncio
    async def test_api_call_success(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            seen["header"] = request.headers.get("X-Name")
            return httpx.Response(200, json={"data": {"score": 9}})

        effect = Effect(
            EffectType.API_CALL,
            "lookup",
            {
                "method": "POST",
                "url": "https://api.test/score",
                "headers": {"X-Name": "Jane"},
                "body": {"name": "Jane"},
                "responseMapping": {"$.data.score": "score"},
            },
        )
        result = await executor_for(handler).execute(effect)

        assert result.ok
        assert result.data == {"data": {"score": 9}}
        assert result.bindings == {"score": 9}
        assert seen == {
            "method": "POST",
            "url": "https://api.test/score",
            "body": {"name": "Jane"},
            "header": "Jane",
        }

    @pytest.mark.asyncio
    async def test_http_error_is_a_failed_result(self):
        def handler(request):
            return httpx.Response(503, json={"error": "down"})

        effect = Effect(EffectType.API_CALL, "lookup", {"method": "GET", "url": "https://api.test/x"})
        result = await executor_for(handler).execute(effect)
        assert not result.ok
        assert result.error == "HTTP 503"
        assert result.data == {"error": "down"}

    @pytest.mark.asyncio
    async def test_transport_error_is_a_failed_result(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        effect = Effect(EffectType.API_CALL, "lookup", {"method": "GET", "url": "https://api.test/x"})
        result = await executor_for(handler).execute(effect)
        assert not result.ok
        assert "refused" in result.error

    @pytest.mark.asyncio
    async def test_missing_url_fails_without_request(self):
        def handler(request):
            raise AssertionError("no request expected")

        result = await executor_for(handler).execute(Effect(EffectType.API_CALL, "lookup", {"url": ""}))
        assert not result.ok

    @pytest.mark.asyncio
    async def test_call_api_action_uses_params(self):
        def handler(request):
            assert request.method == "POST"
            assert str(request.url) == "https://hooks.test/cv"
            return httpx.Response(200, text="accepted")

        effect = Effect(
            EffectType.CALL_API,
            "hook",
            {"kind": "call_api_side_effect", "params": {"url": "https://hooks.test/cv", "body": {"ok": True}}},
        )
        result = await executor_for(handler).execute(effect)
        assert result.ok
        assert result.data == "accepted"


class TestOtherEffects:
    @pytest.mark.asyncio
    async def test_email_without_handler_fails(self):
        result = await EffectExecutor().execute(Effect(EffectType.SEND_EMAIL, "mail", {"params": {"to": "x"}}))
        assert not result.ok
        assert "send_email" in result.error

    @pytest.mark.asyncio
    async def test_registered_handler_is_used(self):
        sent = []

        async def send_sms(effect):
            sent.append(effect.payload["params"]["to"])
            return EffectResult(ok=True, bindings={"smsSent": True})

        executor = EffectExecutor()
        executor.register(EffectType.SEND_SMS, send_sms)
        result = await executor.execute(Effect(EffectType.SEND_SMS, "sms", {"params": {"to": "+100"}}))
        assert result.ok
        assert result.bindings == {"smsSent": True}
        assert sent == ["+100"]

    @pytest.mark.asyncio
    async def test_fixed_wait(self):
        result = await EffectExecutor().execute(Effect(EffectType.WAIT, "w", {"mode": "fixed", "durationMs": 2000}))
        assert result.ok
        assert result.data["delayMs"] == 2000
        assert dt.datetime.fromisoformat(result.data["resumeAt"]) > dt.datetime.now(dt.timezone.utc)

    @pytest.mark.asyncio
    async def test_random_wait_is_drawn_from_range(self):
        executor = EffectExecutor(rng=random.Random(7))
        for _ in range(20):
            result = await executor.execute(Effect(EffectType.WAIT, "w", {"mode": "random", "rangeMs": [100, 200]}))
            assert 100 <= result.data["delayMs"] <= 200

    @pytest.mark.asyncio
    async def test_until_in_the_past_has_no_delay(self):
        payload = {"mode": "until", "untilTimestamp": "2000-01-01T00:00:00+00:00"}
        result = await EffectExecutor().execute(Effect(EffectType.WAIT, "w", payload))
        assert result.data["delayMs"] == 0
