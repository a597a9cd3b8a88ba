"""
Admission control for metered PDF operations.

The gate only reads: it resolves the caller, checks the declared upload size
and today's operation count, and either admits the request with a
:class:`LimitContext` or rejects it. Counters are incremented by the proxy
after the engine succeeds. If the check itself breaks, the request is
admitted without a context: no limit headers and no accounting.

Rejections deliberately differ by tier: anonymous callers get 401 (log in for
more), authenticated free callers get 429 (upgrade for more).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Union

from starlette.requests import Request

from .auth import bearer_token
from .configuration import MEGABYTE
from .models import Identity, LimitContext, PlanLimits, PlanTier, RejectionBody, Subject
from .plans import PlanResolver
from .usage_store import UsageStore
from .utils import parse_content_length

logger = logging.getLogger(__name__)

LOGIN_MESSAGE = "Please log in to increase your limits"
UPGRADE_MESSAGE = "Daily limit reached. Upgrade to Pro for higher limits."


@dataclass(frozen=True)
class Admitted:
    """``context`` is None when the request goes through unmetered."""

    context: Optional[LimitContext]


@dataclass(frozen=True)
class Rejected:
    status_code: int
    body: RejectionBody


Decision = Union[Admitted, Rejected]


def client_ip(request: Request) -> str:
    """First X-Forwarded-For hop, else the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _quota_rejection(tier: PlanTier, reason: str, limit: Union[str, int]) -> Rejected:
    if tier == PlanTier.ANONYMOUS:
        return Rejected(401, RejectionBody(error=LOGIN_MESSAGE, reason=reason, limit=limit))
    return Rejected(429, RejectionBody(error=UPGRADE_MESSAGE, reason=reason, limit=limit))


class MeteringGate:
    def __init__(self, resolver: PlanResolver) -> None:
        self.resolver = resolver

    @property
    def store(self) -> UsageStore:
        return self.resolver.store

    async def admit(self, request: Request) -> Decision:
        ip = client_ip(request)
        try:
            return await self._decide(request, ip)
        except Exception:
            logger.exception("Metering check failed; admitting %s unmetered", ip)
            return Admitted(None)

    async def _decide(self, request: Request, ip: str) -> Decision:
        identity: Identity = await self.resolver.resolve(bearer_token(request))
        if not identity.is_active:
            return Rejected(
                403,
                RejectionBody(error="Account is disabled", reason="account_disabled"),
            )

        content_length = parse_content_length(request.headers.get("content-length"))
        tier = identity.tier
        limits: PlanLimits = self.resolver.limits_for(tier)

        if tier == PlanTier.PRO:
            return Admitted(self._context(identity, ip, None, content_length))

        max_bytes = limits.max_file_size_bytes
        if max_bytes is not None and content_length > max_bytes:
            return _quota_rejection(tier, "file_size_exceeded", f"{max_bytes // MEGABYTE}MB")

        max_ops = limits.max_ops_per_day
        if max_ops is not None:
            used = await self.store.get_count(Subject.for_request(identity.subject_id, ip))
            if used >= max_ops:
                return _quota_rejection(tier, "daily_limit_exceeded", max_ops)

        return Admitted(self._context(identity, ip, limits.max_pages, content_length))

    @staticmethod
    def _context(
        identity: Identity,
        ip: str,
        max_pages: Optional[int],
        content_length: int,
    ) -> LimitContext:
        return LimitContext(
            subject_id=identity.subject_id,
            subject_email=identity.email,
            client_ip=ip,
            tier=identity.tier,
            max_pages=max_pages,
            content_length=content_length,
        )
