"""
Plan resolution: credentials -> identity -> tier -> limits.

A stored ``pro`` plan with a past ``plan_expires_at`` is treated as ``free``.
That degradation happens here, on every read; nothing is written back.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, Optional

from .auth import TokenVerifier
from .models import Identity, PlanLimits, PlanTier, UserRecord
from .usage_store import UsageStore

logger = logging.getLogger(__name__)

ANONYMOUS = Identity()


def _as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def effective_tier(user: UserRecord, now: Optional[datetime] = None) -> PlanTier:
    """
    Tier an authenticated user is served at right now.

    Example:
        >>> effective_tier(UserRecord(id="u", email="a@b.c", plan="pro"))
        <PlanTier.PRO: 'pro'>
        >>> effective_tier(UserRecord(id="u", email="a@b.c", plan="pro",
        ...                           plan_expires_at=datetime(2000, 1, 1)))
        <PlanTier.FREE: 'free'>
    """
    if user.plan != PlanTier.PRO.value:
        return PlanTier.FREE
    if user.plan_expires_at is None:
        return PlanTier.PRO
    now = _as_naive_utc(now or datetime.now(timezone.utc))
    if _as_naive_utc(user.plan_expires_at) < now:
        return PlanTier.FREE
    return PlanTier.PRO


class PlanResolver:
    """Maps a bearer token (or its absence) to an :class:`Identity`."""

    def __init__(
        self,
        verifier: TokenVerifier,
        store: UsageStore,
        limits: Dict[PlanTier, PlanLimits],
    ) -> None:
        self.verifier = verifier
        self.store = store
        self.limits = limits

    def limits_for(self, tier: PlanTier) -> PlanLimits:
        return self.limits[tier]

    async def resolve(self, token: Optional[str]) -> Identity:
        """
        Resolve a token to an identity.

        Missing, malformed, expired and unknown-subject tokens all resolve to
        the anonymous identity. An inactive subject is returned with
        ``is_active=False``; rejecting it is the caller's decision.
        """
        if not token:
            return ANONYMOUS

        claims = self.verifier.verify(token)
        if claims is None:
            return ANONYMOUS

        user = await self.store.get_user(claims["id"])
        if user is None:
            logger.debug("Token subject %s has no user record", claims["id"])
            return ANONYMOUS

        return Identity(
            subject_id=user.id,
            email=user.email,
            tier=effective_tier(user),
            is_active=user.is_active,
        )
