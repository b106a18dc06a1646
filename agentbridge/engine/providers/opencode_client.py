"""Thin aiohttp client for the OpenCode server's HTTP API."""
from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import aiohttp

from ..errors import BackendNetworkError
from .opencode_transform import parse_sse_event

logger = logging.getLogger(__name__)

MODELS_CACHE_TTL = 5 * 60.0
DEFAULT_MODEL_PROVIDER = "anthropic"

# Paths whose file.watcher.updated events are pure noise
WATCHER_NOISE = ("/.git/objects/", "/.git/logs/")


@dataclass
class ProviderModel:
    id: str            # "providerID/modelID"
    name: str
    display_name: str


@dataclass
class ProvidersSnapshot:
    models: list[ProviderModel] = field(default_factory=list)
    connected: list[str] = field(default_factory=list)
    fetched_at: float = 0.0


def parse_model_id(model: str, known: list[ProviderModel] | None = None) -> dict[str, str]:
    """Split ``provider/model`` into the prompt body's model object.

    A bare model id is looked up in *known*; otherwise the provider
    defaults to anthropic.
    """
    if "/" in model:
        provider_id, model_id = model.split("/", 1)
        return {"providerID": provider_id, "modelID": model_id}
    for candidate in known or []:
        if candidate.name == model or candidate.id.endswith(f"/{model}"):
            provider_id, _, model_id = candidate.id.partition("/")
            if model_id:
                return {"providerID": provider_id, "modelID": model_id}
    return {"providerID": DEFAULT_MODEL_PROVIDER, "modelID": model}


def is_watcher_noise(event: dict[str, Any]) -> bool:
    if event.get("type") != "file.watcher.updated":
        return False
    path = (event.get("properties") or {}).get("file") or ""
    return path.endswith(".lock") or any(part in path for part in WATCHER_NOISE)


def decode_sse(event_name: str, data: str) -> dict[str, Any] | None:
    """Turn one SSE message into a ``{"type", "properties"}`` event.

    /global/event wraps each event as ``{"directory", "payload"}``.
    """
    try:
        obj = json.loads(data)
    except ValueError:
        logger.warning("opencode: dropping malformed SSE data: %.200s", data)
        return None
    if isinstance(obj, dict) and isinstance(obj.get("payload"), dict):
        obj = obj["payload"]
    if isinstance(obj, dict) and "type" in obj:
        return obj
    if event_name and event_name != "message":
        return parse_sse_event(event_name, data)
    return None


class OpenCodeClient:
    """Requests against one server base URL.

    Transport failures raise BackendNetworkError; HTTP error statuses are
    reported through return values (None / False) like the server SDK does.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None
        self._providers: ProvidersSnapshot | None = None

    async def __aenter__(self) -> OpenCodeClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        directory: str | None = None,
        body: Any = None,
    ) -> tuple[int, Any]:
        params = {"directory": directory} if directory else None
        try:
            async with self._http().request(
                method, f"{self.base_url}{path}", params=params, json=body,
            ) as resp:
                text = await resp.text()
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise BackendNetworkError(f"{method} {path} failed: {exc}") from exc
        if status >= 400:
            logger.warning("opencode: %s %s -> HTTP %d: %.200s", method, path, status, text)
        if not text:
            return status, None
        try:
            return status, json.loads(text)
        except ValueError:
            return status, text

    # ── server ──

    async def health(self) -> dict[str, Any] | None:
        try:
            status, data = await self._request("GET", "/global/health")
        except BackendNetworkError as exc:
            logger.debug("opencode: health check failed: %s", exc)
            return None
        return data if status == 200 and isinstance(data, dict) else None

    async def set_auth(self, provider_id: str, key: str) -> bool:
        status, data = await self._request(
            "PUT", f"/auth/{provider_id}", body={"type": "api", "key": key},
        )
        return status < 400 and data is True

    # ── sessions ──

    async def create_session(self, title: str | None = None, directory: str | None = None) -> str | None:
        body = {"title": title} if title else {}
        status, data = await self._request("POST", "/session", directory=directory, body=body)
        if status < 400 and isinstance(data, dict) and data.get("id"):
            return data["id"]
        return None

    async def get_session(self, session_id: str, directory: str | None = None) -> dict[str, Any] | None:
        status, data = await self._request("GET", f"/session/{session_id}", directory=directory)
        if status < 400 and isinstance(data, dict) and data.get("id"):
            return data
        return None

    async def prompt_async(
        self,
        session_id: str,
        parts: list[dict[str, Any]],
        *,
        directory: str | None = None,
        agent: str | None = None,
        model: dict[str, str] | None = None,
    ) -> bool:
        """Send a prompt without waiting for the reply; output arrives as events."""
        body: dict[str, Any] = {"parts": parts}
        if agent:
            body["agent"] = agent
        if model:
            body["model"] = model
        status, _ = await self._request(
            "POST", f"/session/{session_id}/prompt_async", directory=directory, body=body,
        )
        return status < 400

    async def abort_session(self, session_id: str, directory: str | None = None) -> bool:
        status, data = await self._request("POST", f"/session/{session_id}/abort", directory=directory)
        return status < 400 and data is not False

    async def summarize_session(self, session_id: str, directory: str | None = None) -> bool:
        status, _ = await self._request("POST", f"/session/{session_id}/summarize", directory=directory)
        return status < 400

    # ── questions and permissions ──

    async def reply_question(
        self, request_id: str, answers: list[list[str]], directory: str | None = None,
    ) -> bool:
        status, data = await self._request(
            "POST", f"/question/{request_id}/reply", directory=directory, body={"answers": answers},
        )
        return status < 400 and data is not False

    async def reject_question(self, request_id: str, directory: str | None = None) -> bool:
        status, data = await self._request("POST", f"/question/{request_id}/reject", directory=directory)
        return status < 400 and data is not False

    async def respond_permission(
        self, session_id: str, permission_id: str, response: str, directory: str | None = None,
    ) -> bool:
        """*response* is one of ``once``, ``always`` or ``reject``."""
        status, data = await self._request(
            "POST",
            f"/session/{session_id}/permissions/{permission_id}",
            directory=directory,
            body={"response": response},
        )
        return status < 400 and data is not False

    # ── providers and models ──

    async def list_providers(self, force_refresh: bool = False) -> ProvidersSnapshot:
        """Flattened models plus connected provider ids, cached for five minutes.

        On failure the last snapshot is returned even if stale.
        """
        now = time.monotonic()
        cached = self._providers
        if not force_refresh and cached is not None and now - cached.fetched_at < MODELS_CACHE_TTL:
            return cached
        try:
            status, data = await self._request("GET", "/provider")
            if status >= 400 or not isinstance(data, dict):
                raise BackendNetworkError(f"provider listing failed (HTTP {status})")
        except BackendNetworkError as exc:
            logger.error("opencode: failed to fetch providers: %s", exc)
            return cached or ProvidersSnapshot()

        models: list[ProviderModel] = []
        for provider in data.get("all") or []:
            for key, model in (provider.get("models") or {}).items():
                model_id = model.get("id") or key
                models.append(ProviderModel(
                    id=f"{provider.get('id')}/{model_id}",
                    name=model_id,
                    display_name=model.get("name") or model_id,
                ))
        snapshot = ProvidersSnapshot(
            models=models, connected=list(data.get("connected") or []), fetched_at=now,
        )
        self._providers = snapshot
        logger.info(
            "opencode: fetched %d models from %d providers",
            len(models), len(data.get("all") or []),
        )
        return snapshot

    @property
    def cached_models(self) -> list[ProviderModel]:
        return list(self._providers.models) if self._providers else []

    def invalidate_models(self) -> None:
        self._providers = None

    def parse_model_id(self, model: str) -> dict[str, str]:
        return parse_model_id(model, self.cached_models)

    # ── events ──

    async def events(
        self,
        directory: str | None = None,
        opened: asyncio.Event | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Yield events from the SSE stream until the server closes it.

        With no *directory* the global stream is used; it carries events
        for every project the server knows about. *opened* is set once
        the server has accepted the subscription.
        """
        path = "/event" if directory else "/global/event"
        params = {"directory": directory} if directory else None
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=self._timeout.total)
        try:
            async with self._http().get(
                f"{self.base_url}{path}",
                params=params,
                timeout=timeout,
                headers={"Accept": "text/event-stream"},
            ) as resp:
                if resp.status >= 400:
                    raise BackendNetworkError(f"event stream failed (HTTP {resp.status})")
                if opened is not None:
                    opened.set()
                event_name = ""
                data_lines: list[str] = []
                async for raw in _iter_lines(resp.content):
                    line = raw.decode("utf-8", errors="replace").rstrip("\r")
                    if not line:
                        if data_lines:
                            event = decode_sse(event_name, "\n".join(data_lines))
                            if event is not None:
                                yield event
                        event_name = ""
                        data_lines = []
                    elif line.startswith(":"):
                        continue
                    elif line.startswith("event:"):
                        event_name = line[6:].strip()
                    elif line.startswith("data:"):
                        data_lines.append(line[5:].lstrip(" "))
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise BackendNetworkError(f"event stream broke: {exc}") from exc


async def _iter_lines(content: aiohttp.StreamReader) -> AsyncIterator[bytes]:
    # Event payloads can carry whole file contents, so lines are split by
    # hand instead of through readline()'s size limit.
    buffer = b""
    async for chunk in content.iter_any():
        buffer += chunk
        while True:
            line, sep, rest = buffer.partition(b"\n")
            if not sep:
                break
            buffer = rest
            yield line
    if buffer:
        yield buffer
