"""
Carries out the deferred effects the flow engine emits.

HTTP effects go through httpx. E-mail and SMS have no built-in transport:
deployments register a handler for them, and without one the effect fails
so the conversation stops at that node instead of pretending it was sent.
"""

from __future__ import annotations

import datetime as dt
import logging
import random
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from cvflow.core.config import settings
from cvflow.schemas.flow import utcnow
from cvflow.services.flow_engine import (
    Effect,
    EffectResult,
    EffectType,
    apply_response_mapping,
)

logger = logging.getLogger(__name__)

EffectHandler = Callable[[Effect], Awaitable[EffectResult]]


def _parse_body(resp: httpx.Response) -> Any:
    if not resp.content:
        return None
    try:
        return resp.json()
    except ValueError:
        return resp.text


class EffectExecutor:
    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
        handlers: dict[EffectType, EffectHandler] | None = None,
        rng: random.Random | None = None,
    ):
        self._client = client
        self.timeout = settings.api_call_timeout_seconds if timeout is None else timeout
        self._handlers: dict[EffectType, EffectHandler] = dict(handlers or {})
        self._rng = rng or random.Random()

    def register(self, effect_type: EffectType, handler: EffectHandler) -> None:
        self._handlers[effect_type] = handler

    async def execute(self, effect: Effect) -> EffectResult:
        handler = self._handlers.get(effect.type)
        if handler is not None:
            return await handler(effect)

        if effect.type is EffectType.API_CALL:
            return await self._api_call(effect.payload)
        if effect.type is EffectType.CALL_API:
            params = effect.payload.get("params", {})
            return await self._api_call(
                {
                    "method": params.get("method", "POST"),
                    "url": params.get("url", ""),
                    "headers": params.get("headers") or {},
                    "body": params.get("body"),
                    "responseMapping": params.get("responseMapping") or {},
                }
            )
        if effect.type is EffectType.WAIT:
            return self._wait(effect.payload)

        logger.warning("No handler registered for %s effect on node %s", effect.type.value, effect.node_id)
        return EffectResult(ok=False, error=f"No handler registered for {effect.type.value}")

    # ------------------------------------------------------------------

    async def _request(self, client: httpx.AsyncClient, payload: dict[str, Any]) -> httpx.Response:
        method = str(payload.get("method") or "GET").upper()
        kwargs: dict[str, Any] = {"headers": payload.get("headers") or {}}
        body = payload.get("body")
        if body is not None and method not in ("GET", "HEAD"):
            if isinstance(body, (dict, list)):
                kwargs["json"] = body
            else:
                kwargs["content"] = str(body)
        return await client.request(method, payload["url"], **kwargs)

    async def _api_call(self, payload: dict[str, Any]) -> EffectResult:
        url = payload.get("url") or ""
        if not url:
            return EffectResult(ok=False, error="API call has no url")

        try:
            if self._client is not None:
                resp = await self._request(self._client, payload)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await self._request(client, payload)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"API call to {url} failed: {e.response.status_code}")
            return EffectResult(
                ok=False,
                data=_parse_body(e.response),
                error=f"HTTP {e.response.status_code}",
            )
        except httpx.TimeoutException:
            logger.error(f"API call to {url} timed out")
            return EffectResult(ok=False, error="timeout")
        except httpx.HTTPError as e:
            logger.error(f"API call to {url} failed: {e}")
            return EffectResult(ok=False, error=str(e) or type(e).__name__)

        data = _parse_body(resp)
        bindings = apply_response_mapping({}, payload.get("responseMapping") or {}, data)
        return EffectResult(ok=True, data=data, bindings=bindings)

    def _wait(self, payload: dict[str, Any]) -> EffectResult:
        mode = payload.get("mode", "fixed")
        now = utcnow()
        if mode == "until":
            resume_at = dt.datetime.fromisoformat(payload["untilTimestamp"])
            if resume_at.tzinfo is None:
                resume_at = resume_at.replace(tzinfo=dt.timezone.utc)
            delay_ms = max(0, int((resume_at - now).total_seconds() * 1000))
        else:
            if mode == "random":
                low, high = payload["rangeMs"]
                delay_ms = self._rng.randint(int(low), int(high))
            else:
                delay_ms = int(payload.get("durationMs") or 0)
            resume_at = now + dt.timedelta(milliseconds=delay_ms)
        return EffectResult(
            ok=True,
            data={"resumeAt": resume_at.isoformat(), "delayMs": delay_ms},
        )
