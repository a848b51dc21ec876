"""
Canonical identity resolution.

An event carries a ``user_id`` (possibly an ``anon:`` placeholder) and an
``anonymous_id``. Resolution precedence:

1. a real ``user_id`` (non-empty, not prefixed ``anon:``)
2. the account linked to ``anonymous_id`` in the identity link table
3. ``anonymous_id`` itself
4. nothing

Step 2 requires the optional link table. Whether it exists is detected once
and carried as a ``Capabilities`` value; without it the degraded resolver
skips the lookup and anonymous traffic counts under its anonymous id.
"""
from dataclasses import dataclass
from typing import Mapping, Optional

import structlog

from audience.errors import MissingCapability
from audience.schemas.events import IdentityPair

logger = structlog.get_logger(__name__)

ANON_PREFIX = "anon:"
IDENTITY_LINKS_CAPABILITY = "analytics_identity_links"


@dataclass(frozen=True)
class Capabilities:
    """Optional storage features detected at startup."""

    has_identity_links: bool = False

    @property
    def resolution_mode(self) -> str:
        return "linked" if self.has_identity_links else "degraded"


def is_signed_in_user_id(user_id: Optional[str]) -> bool:
    """True for a non-empty user id that is not an anonymous placeholder."""
    return bool(user_id) and not user_id.startswith(ANON_PREFIX)


class IdentityResolver:
    """
    Resolves events against a link lookup supplied by the caller.

    Args:
        signed_in_only: Drop events that would resolve to a bare anonymous id
    """

    mode = "linked"

    def __init__(self, signed_in_only: bool = False):
        self.signed_in_only = signed_in_only

    def resolve(self, pair: IdentityPair, links: Mapping[str, str]) -> Optional[str]:
        """Return the canonical id for one event, or None."""
        if is_signed_in_user_id(pair.user_id):
            return pair.user_id
        if not pair.anonymous_id:
            return None
        linked = self._linked_user(pair.anonymous_id, links)
        if linked:
            return linked
        if self.signed_in_only:
            return None
        return pair.anonymous_id

    def _linked_user(self, anonymous_id: str, links: Mapping[str, str]) -> Optional[str]:
        return links.get(anonymous_id)

    def resolve_all(self, pairs, links: Mapping[str, str]) -> set[str]:
        """Distinct canonical ids for a batch of events, ``None`` dropped."""
        resolved = set()
        for pair in pairs:
            canonical = self.resolve(pair, links)
            if canonical is not None:
                resolved.add(canonical)
        return resolved


class DegradedIdentityResolver(IdentityResolver):
    """Resolver for deployments without the identity link table."""

    mode = "degraded"

    def _linked_user(self, anonymous_id: str, links: Mapping[str, str]) -> Optional[str]:
        return None


def build_resolver(capabilities: Capabilities, signed_in_only: bool = False) -> IdentityResolver:
    """Pick the resolver strategy for the detected capabilities."""
    if capabilities.has_identity_links:
        return IdentityResolver(signed_in_only=signed_in_only)
    return DegradedIdentityResolver(signed_in_only=signed_in_only)


async def require_identity_links(event_store) -> None:
    """
    Check that the identity link table can be used.

    Raises:
        MissingCapability: The table is absent or the check itself failed
    """
    try:
        exists = await event_store.has_identity_link_table()
    except Exception as exc:
        logger.warning("identity_link_detection_failed", error=str(exc), error_type=type(exc).__name__)
        raise MissingCapability(IDENTITY_LINKS_CAPABILITY) from exc
    if not exists:
        raise MissingCapability(IDENTITY_LINKS_CAPABILITY)


async def detect_capabilities(event_store) -> Capabilities:
    """
    Detect optional storage features once, at startup.

    A missing link table, or a failed check, yields degraded capabilities; the
    engine keeps running and counts anonymous traffic under anonymous ids.
    """
    try:
        await require_identity_links(event_store)
    except MissingCapability as missing:
        logger.warning("identity_links_unavailable", capability=missing.capability, reason=str(missing))
        return Capabilities(has_identity_links=False)
    return Capabilities(has_identity_links=True)
