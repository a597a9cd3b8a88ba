"""
Reverse proxy in front of the PDF engine.

Requests are forwarded verbatim (method, path, query, headers, body) to the
supervised engine. Metered requests additionally carry two hint headers with
the caller's page limit and tier. Responses are streamed back unchanged.

After a metered 2xx response has been fully relayed, a background task logs
the operation and, for non-pro callers, increments the daily counter. Failed
engine responses, transport errors and client disconnects are never charged.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, List, Optional, Tuple

import anyio
import httpx
from omegaconf import DictConfig
from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse

from .models import LimitContext, OperationLogEntry, OperationStatus, PlanTier
from .supervisor import BackendHandle
from .usage_store import UsageStore
from .utils import operation_name

logger = logging.getLogger(__name__)

HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
})

BACKEND_UNAVAILABLE = {"error": "PDF backend unavailable", "reason": "backend_unavailable"}


class ClientDisconnected(Exception):
    """The caller went away before the engine answered."""


class _Relay:
    """Streams an upstream body and remembers whether it reached the end."""

    def __init__(self, upstream: httpx.Response) -> None:
        self.upstream = upstream
        self.completed = False

    async def iterate(self):
        try:
            async for chunk in self.upstream.aiter_raw():
                yield chunk
            self.completed = True
        except httpx.RequestError as exc:
            logger.error("PDF backend stream broke off: %s", exc)
            raise
        finally:
            with anyio.CancelScope(shield=True):
                await self.upstream.aclose()


class BackendProxy:
    def __init__(
        self,
        backend: BackendHandle,
        store: UsageStore,
        config: DictConfig,
        metered_prefix: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.backend = backend
        self.store = store
        self.metered_prefix = metered_prefix
        self.max_pages_header: str = config.max_pages_header
        self.plan_header: str = config.plan_header
        self.disconnect_poll: float = float(config.disconnect_poll_seconds)
        self._excluded_request_headers = HOP_BY_HOP_HEADERS | {
            "host",
            "content-length",
            self.max_pages_header.lower(),
            self.plan_header.lower(),
        }
        self._client = httpx.AsyncClient(
            base_url=backend.base_url,
            timeout=httpx.Timeout(
                float(config.timeout_seconds),
                connect=float(config.connect_timeout_seconds),
            ),
            transport=transport,
            follow_redirects=False,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def forward(self, request: Request, context: Optional[LimitContext] = None) -> Response:
        """
        Relay ``request`` to the engine.

        Args:
            request: The inbound request
            context: Admission decision for metered routes; None for the
                unmetered pass-through routes

        Returns:
            The streamed engine response, or a 502 JSON error when the engine
            cannot be reached
        """
        target = self._target(request)
        body = await request.body()
        upstream_request = self._client.build_request(
            request.method,
            target,
            headers=self._request_headers(request, context),
            content=body,
        )

        try:
            upstream = await self._send(request, upstream_request)
        except ClientDisconnected:
            logger.info("Client disconnected before the PDF backend answered %s %s", request.method, target)
            return Response(status_code=499)
        except httpx.RequestError as exc:
            logger.error("PDF proxy error for %s %s: %r", request.method, target, exc)
            return JSONResponse(status_code=502, content=BACKEND_UNAVAILABLE)

        relay = _Relay(upstream)
        background = None
        if context is not None and upstream.is_success:
            background = BackgroundTask(
                self._account,
                context,
                operation_name(request.url.path, self.metered_prefix),
                relay,
            )

        response = StreamingResponse(
            relay.iterate(),
            status_code=upstream.status_code,
            background=background,
        )
        response.raw_headers = self._response_headers(upstream.headers.multi_items())
        return response

    def _target(self, request: Request) -> str:
        raw_path = request.scope.get("raw_path")
        path = raw_path.decode("latin-1") if raw_path else request.url.path
        query = request.url.query
        return f"{path}?{query}" if query else path

    def _request_headers(
        self,
        request: Request,
        context: Optional[LimitContext],
    ) -> List[Tuple[str, str]]:
        headers = [
            (name, value)
            for name, value in request.headers.items()
            if name.lower() not in self._excluded_request_headers
        ]
        if context is not None:
            # 0 tells the engine there is no page limit
            headers.append((self.max_pages_header, str(context.max_pages or 0)))
            headers.append((self.plan_header, context.tier.value))
        return headers

    @staticmethod
    def _response_headers(items: Iterable[Tuple[str, str]]) -> List[Tuple[bytes, bytes]]:
        return [
            (name.lower().encode("latin-1"), value.encode("latin-1"))
            for name, value in items
            if name.lower() not in HOP_BY_HOP_HEADERS
        ]

    async def _send(self, request: Request, upstream_request: httpx.Request) -> httpx.Response:
        """Send upstream, abandoning the call if the client disconnects first."""
        send = asyncio.ensure_future(self._client.send(upstream_request, stream=True))
        try:
            while True:
                done, _ = await asyncio.wait({send}, timeout=self.disconnect_poll)
                if done:
                    return send.result()
                if await request.is_disconnected():
                    raise ClientDisconnected()
        except BaseException:
            if not send.done():
                send.cancel()
            elif not send.cancelled() and send.exception() is None:
                # Answered while we were checking for the disconnect
                with anyio.CancelScope(shield=True):
                    await send.result().aclose()
            raise

    async def _account(self, context: LimitContext, operation: str, relay: _Relay) -> None:
        if not relay.completed:
            logger.info("Response for %s was not fully delivered; not metering it", operation)
            return

        try:
            await self.store.append(
                OperationLogEntry(
                    subject_id=context.subject_id,
                    subject_email=context.subject_email,
                    ip_address=context.client_ip,
                    operation=operation,
                    status=OperationStatus.SUCCESS,
                    file_size_bytes=context.content_length or None,
                )
            )
        except Exception:
            logger.exception("Failed to log PDF operation %s", operation)

        if context.tier == PlanTier.PRO:
            return
        try:
            await self.store.increment(context.subject)
        except Exception:
            logger.exception("Failed to increment PDF usage for %s", context.subject.id)
