"""Unit tests for canonical identity resolution and capability detection."""
import pytest

from audience.errors import MissingCapability
from audience.schemas.events import IdentityPair
from audience.services.identity import (
    Capabilities,
    DegradedIdentityResolver,
    IdentityResolver,
    build_resolver,
    detect_capabilities,
    is_signed_in_user_id,
    require_identity_links,
)
from utils.fakes import InMemoryEventStore

LINKS = {"a1": "user_1"}


@pytest.mark.parametrize(
    "user_id,expected",
    [("user_1", True), ("anon:a1", False), ("", False), (None, False)],
)
def test_is_signed_in_user_id(user_id, expected) -> None:
    assert is_signed_in_user_id(user_id) is expected


def test_real_user_id_wins_over_link() -> None:
    resolver = IdentityResolver()
    assert resolver.resolve(IdentityPair("user_9", "a1"), LINKS) == "user_9"


def test_anonymous_id_resolves_through_link() -> None:
    resolver = IdentityResolver()
    assert resolver.resolve(IdentityPair("anon:a1", "a1"), LINKS) == "user_1"
    assert resolver.resolve(IdentityPair(None, "a1"), LINKS) == "user_1"


def test_unlinked_anonymous_id_is_its_own_identity() -> None:
    resolver = IdentityResolver()
    assert resolver.resolve(IdentityPair("anon:a2", "a2"), LINKS) == "a2"


def test_no_identifiers_resolves_to_nothing() -> None:
    resolver = IdentityResolver()
    assert resolver.resolve(IdentityPair("anon:", None), LINKS) is None
    assert resolver.resolve(IdentityPair(None, None), LINKS) is None


def test_signed_in_only_drops_unlinked_anonymous() -> None:
    resolver = IdentityResolver(signed_in_only=True)
    assert resolver.resolve(IdentityPair("anon:a2", "a2"), LINKS) is None
    assert resolver.resolve(IdentityPair("anon:a1", "a1"), LINKS) == "user_1"


def test_resolve_all_merges_linked_visitor_with_account() -> None:
    """A visitor linked to an account counts once together with the account's own events."""
    pairs = [
        IdentityPair("user_1", None),
        IdentityPair("anon:a1", "a1"),
        IdentityPair("anon:a2", "a2"),
        IdentityPair(None, None),
    ]
    assert IdentityResolver().resolve_all(pairs, LINKS) == {"user_1", "a2"}


def test_degraded_resolver_ignores_links() -> None:
    resolver = DegradedIdentityResolver()
    pairs = [IdentityPair("user_1", None), IdentityPair("anon:a1", "a1")]
    assert resolver.resolve_all(pairs, LINKS) == {"user_1", "a1"}
    assert resolver.mode == "degraded"


def test_build_resolver_follows_capabilities() -> None:
    assert type(build_resolver(Capabilities(has_identity_links=True))) is IdentityResolver
    degraded = build_resolver(Capabilities(has_identity_links=False), signed_in_only=True)
    assert isinstance(degraded, DegradedIdentityResolver)
    assert degraded.signed_in_only is True


@pytest.mark.asyncio
async def test_detect_capabilities_with_link_table() -> None:
    capabilities = await detect_capabilities(InMemoryEventStore(has_links=True))
    assert capabilities.has_identity_links is True
    assert capabilities.resolution_mode == "linked"


@pytest.mark.asyncio
async def test_detect_capabilities_without_link_table() -> None:
    capabilities = await detect_capabilities(InMemoryEventStore(has_links=False))
    assert capabilities.resolution_mode == "degraded"


@pytest.mark.asyncio
async def test_detect_capabilities_check_failure_degrades() -> None:
    class BrokenStore(InMemoryEventStore):
        async def has_identity_link_table(self) -> bool:
            raise ConnectionError("database unreachable")

    capabilities = await detect_capabilities(BrokenStore())
    assert capabilities.has_identity_links is False


@pytest.mark.asyncio
async def test_require_identity_links_names_the_missing_table() -> None:
    with pytest.raises(MissingCapability) as exc_info:
        await require_identity_links(InMemoryEventStore(has_links=False))

    assert exc_info.value.capability == "analytics_identity_links"
    assert str(exc_info.value) == "Optional capability unavailable: analytics_identity_links"


@pytest.mark.asyncio
async def test_require_identity_links_wraps_check_errors() -> None:
    class BrokenStore(InMemoryEventStore):
        async def has_identity_link_table(self) -> bool:
            raise ConnectionError("database unreachable")

    with pytest.raises(MissingCapability) as exc_info:
        await require_identity_links(BrokenStore())

    assert isinstance(exc_info.value.__cause__, ConnectionError)


@pytest.mark.asyncio
async def test_require_identity_links_passes_when_table_exists() -> None:
    await require_identity_links(InMemoryEventStore(has_links=True))
