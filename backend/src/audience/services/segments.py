"""
Segment definitions for daily unique-user counts.

Every segment is a predicate over raw events plus the resolver variant used
to turn matching events into canonical identities:

- all: any event, any identity
- product: event_type not in {app_opened, page_viewed}, signed-in users only
- app_opened: event_type == app_opened, any identity
- reach: event_type == page_viewed, any identity
- grimoire: page_viewed with page_path under /grimoire, any identity

Test and QA accounts are excluded from every segment. The predicates are
nested so that, for one day, product and app_opened are subsets of all and
grimoire is a subset of reach.
"""
import enum
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, Optional, Tuple

from audience.errors import InvalidInputError

APP_OPENED = "app_opened"
PAGE_VIEWED = "page_viewed"
GRIMOIRE_PATH_PREFIX = "/grimoire"


class Segment(str, enum.Enum):
    """Population over which distinct identities are counted."""

    ALL = "all"
    PRODUCT = "product"
    APP_OPENED = "app_opened"
    REACH = "reach"
    GRIMOIRE = "grimoire"

    @classmethod
    def parse(cls, value: str) -> "Segment":
        """Parse a query parameter, raising InvalidInputError for unknown names."""
        try:
            return cls(value)
        except ValueError:
            raise InvalidInputError(f"Unknown segment: {value}", field="segment", value=value, code="invalid_segment")


@dataclass(frozen=True)
class ExcludedAccounts:
    """Matches emails that belong to test or QA accounts."""

    emails: FrozenSet[str] = frozenset()
    suffixes: Tuple[str, ...] = ()

    @classmethod
    def from_lists(cls, emails: Iterable[str], suffixes: Iterable[str]) -> "ExcludedAccounts":
        return cls(
            emails=frozenset(e.lower() for e in emails),
            suffixes=tuple(s.lower() for s in suffixes),
        )

    def matches(self, email: Optional[str]) -> bool:
        if not email:
            return False
        lowered = email.lower()
        return lowered in self.emails or any(lowered.endswith(s) for s in self.suffixes)


@dataclass(frozen=True)
class EventFilter:
    """
    Declarative event predicate understood by every EventStore.

    Attributes:
        include_types: Only events of these types (None means any type)
        exclude_types: Never events of these types
        page_path_prefix: Only events whose page_path starts with this prefix
        excluded_accounts: Events whose email matches are dropped
    """

    include_types: Optional[FrozenSet[str]] = None
    exclude_types: FrozenSet[str] = frozenset()
    page_path_prefix: Optional[str] = None
    excluded_accounts: ExcludedAccounts = field(default_factory=ExcludedAccounts)

    def matches(self, event_type: str, page_path: Optional[str], email: Optional[str]) -> bool:
        """In-process evaluation, equivalent to the SQL built by the store."""
        if self.include_types is not None and event_type not in self.include_types:
            return False
        if event_type in self.exclude_types:
            return False
        if self.page_path_prefix is not None and not (page_path or "").startswith(self.page_path_prefix):
            return False
        return not self.excluded_accounts.matches(email)


@dataclass(frozen=True)
class SegmentDefinition:
    segment: Segment
    event_filter: EventFilter
    signed_in_only: bool = False


def segment_definitions(excluded_accounts: ExcludedAccounts) -> dict[Segment, SegmentDefinition]:
    """Build the segment table with the configured test-account exclusion."""
    return {
        Segment.ALL: SegmentDefinition(Segment.ALL, EventFilter(excluded_accounts=excluded_accounts)),
        Segment.PRODUCT: SegmentDefinition(
            Segment.PRODUCT,
            EventFilter(exclude_types=frozenset({APP_OPENED, PAGE_VIEWED}), excluded_accounts=excluded_accounts),
            signed_in_only=True,
        ),
        Segment.APP_OPENED: SegmentDefinition(
            Segment.APP_OPENED,
            EventFilter(include_types=frozenset({APP_OPENED}), excluded_accounts=excluded_accounts),
        ),
        Segment.REACH: SegmentDefinition(
            Segment.REACH,
            EventFilter(include_types=frozenset({PAGE_VIEWED}), excluded_accounts=excluded_accounts),
        ),
        Segment.GRIMOIRE: SegmentDefinition(
            Segment.GRIMOIRE,
            EventFilter(
                include_types=frozenset({PAGE_VIEWED}),
                page_path_prefix=GRIMOIRE_PATH_PREFIX,
                excluded_accounts=excluded_accounts,
            ),
        ),
    }
