"""Unit tests for segment predicates and test-account exclusion."""
import pytest

from audience.errors import InvalidInputError
from audience.services.segments import ExcludedAccounts, Segment, segment_definitions

ACCOUNTS = ExcludedAccounts.from_lists(["QA@Astro.example"], ["@test.example.com"])


def test_parse_known_segments() -> None:
    assert Segment.parse("grimoire") is Segment.GRIMOIRE
    assert Segment.parse("app_opened") is Segment.APP_OPENED


def test_parse_unknown_segment() -> None:
    with pytest.raises(InvalidInputError) as exc_info:
        Segment.parse("everyone")
    assert exc_info.value.code == "invalid_segment"
    assert exc_info.value.field == "segment"


@pytest.mark.parametrize(
    "email,excluded",
    [
        ("qa@astro.example", True),
        ("QA@ASTRO.EXAMPLE", True),
        ("bot@test.example.com", True),
        ("reader@astro.example", False),
        (None, False),
        ("", False),
    ],
)
def test_excluded_accounts(email, excluded) -> None:
    assert ACCOUNTS.matches(email) is excluded


@pytest.mark.parametrize(
    "event_type,page_path,expected",
    [
        ("tarot_drawn", None, {Segment.ALL, Segment.PRODUCT}),
        ("app_opened", None, {Segment.ALL, Segment.APP_OPENED}),
        ("page_viewed", "/pricing", {Segment.ALL, Segment.REACH}),
        ("page_viewed", "/grimoire/moon-phases", {Segment.ALL, Segment.REACH, Segment.GRIMOIRE}),
        ("page_viewed", None, {Segment.ALL, Segment.REACH}),
    ],
)
def test_segment_membership(event_type, page_path, expected) -> None:
    definitions = segment_definitions(ACCOUNTS)
    matched = {
        segment
        for segment, definition in definitions.items()
        if definition.event_filter.matches(event_type, page_path, "reader@astro.example")
    }
    assert matched == expected


def test_test_accounts_excluded_from_every_segment() -> None:
    definitions = segment_definitions(ACCOUNTS)
    for definition in definitions.values():
        assert not definition.event_filter.matches("page_viewed", "/grimoire/tarot", "bot@test.example.com")


def test_only_product_is_signed_in_only() -> None:
    definitions = segment_definitions(ACCOUNTS)
    assert [s for s, d in definitions.items() if d.signed_in_only] == [Segment.PRODUCT]
