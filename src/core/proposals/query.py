import math
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Literal, Mapping, Optional

from pydantic import BaseModel, Field, field_validator

from src.core.proposals.models import Proposal
from src.core.proposals.state_machine import ProposalState

ProposalSortField = Literal["id", "value", "state", "created_at", "updated_at"]
SortDirection = Literal["ASC", "DESC"]

SORTABLE_FIELDS = ("id", "value", "state", "created_at", "updated_at")
DEFAULT_SORT_FIELD = "created_at"
DEFAULT_SORT_DIRECTION = "DESC"
DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100

_NEVER = datetime.min.replace(tzinfo=timezone.utc)


class ProposalCriteria(BaseModel):
    """Filter, sort and page request for proposal listings.

    Out-of-range inputs are normalised instead of rejected: unknown sort fields
    fall back to ``created_at``, unknown directions to ``DESC``, ``page`` is
    raised to 1 and ``page_size`` is clamped to [1, 100].
    """

    customer_id: Optional[int] = Field(default=None, description="Customer filter.")
    state: Optional[ProposalState] = Field(default=None, description="State filter.")
    sort_by: ProposalSortField = Field(default=DEFAULT_SORT_FIELD)
    direction: SortDirection = Field(default=DEFAULT_SORT_DIRECTION)
    page: int = Field(default=1, description="1-based page number.")
    page_size: int = Field(default=DEFAULT_PAGE_SIZE, description="Items per page.")

    @field_validator("sort_by", mode="before")
    @classmethod
    def _normalize_sort_by(cls, value: Any) -> str:
        if isinstance(value, str) and value.strip().lower() in SORTABLE_FIELDS:
            return value.strip().lower()
        return DEFAULT_SORT_FIELD

    @field_validator("direction", mode="before")
    @classmethod
    def _normalize_direction(cls, value: Any) -> str:
        if isinstance(value, str) and value.strip().upper() in ("ASC", "DESC"):
            return value.strip().upper()
        return DEFAULT_SORT_DIRECTION

    @field_validator("page")
    @classmethod
    def _clamp_page(cls, value: int) -> int:
        return max(1, value)

    @field_validator("page_size")
    @classmethod
    def _clamp_page_size(cls, value: int) -> int:
        return min(max(1, value), MAX_PAGE_SIZE)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size

    @property
    def has_filters(self) -> bool:
        return self.customer_id is not None or self.state is not None


class ProposalPage(BaseModel):
    items: List[Proposal] = Field(default_factory=list)
    total: int = Field(description="Matching proposals before pagination.")
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.total else 0


class ProposalIndex:
    """Per-field id sets used to resolve criteria filters by intersection."""

    def __init__(self) -> None:
        self._sequence = 0
        self._insertion_order: Dict[int, int] = {}
        self._by_customer: Dict[int, set[int]] = {}
        self._by_state: Dict[ProposalState, set[int]] = {}

    def index(self, proposal: Proposal) -> None:
        proposal_id = proposal.proposal_id
        if proposal_id is None:
            raise ValueError("cannot index a proposal without proposal_id")
        if proposal_id not in self._insertion_order:
            self._sequence += 1
            self._insertion_order[proposal_id] = self._sequence
        self._discard(proposal_id)
        self._by_customer.setdefault(proposal.customer_id, set()).add(proposal_id)
        self._by_state.setdefault(proposal.state, set()).add(proposal_id)

    def matching_ids(self, criteria: ProposalCriteria) -> List[int]:
        candidates: List[set[int]] = []
        if criteria.customer_id is not None:
            ids = self._by_customer.get(criteria.customer_id)
            if not ids:
                return []
            candidates.append(ids)
        if criteria.state is not None:
            ids = self._by_state.get(criteria.state)
            if not ids:
                return []
            candidates.append(ids)

        if candidates:
            matched = set.intersection(*candidates)
        else:
            matched = set(self._insertion_order)
        return sorted(matched, key=self._insertion_order.__getitem__)

    def _discard(self, proposal_id: int) -> None:
        for index in (self._by_customer, self._by_state):
            for key in list(index):
                ids = index[key]
                ids.discard(proposal_id)
                if not ids:
                    del index[key]


def sort_key(sort_by: str) -> Callable[[Proposal], Any]:
    if sort_by == "id":
        return lambda proposal: proposal.proposal_id or 0
    if sort_by == "value":
        return lambda proposal: proposal.value.amount
    if sort_by == "state":
        return lambda proposal: proposal.state.value
    if sort_by == "updated_at":
        return lambda proposal: proposal.updated_at or _NEVER
    return lambda proposal: proposal.created_at


def sort_proposals(proposals: List[Proposal], *, sort_by: str, direction: str) -> List[Proposal]:
    # sorted() is stable for reverse=True too, so ties keep their input order.
    return sorted(proposals, key=sort_key(sort_by), reverse=direction == "DESC")


def paginate(proposals: List[Proposal], *, page: int, page_size: int) -> tuple[List[Proposal], int]:
    start = (page - 1) * page_size
    return proposals[start : start + page_size], len(proposals)


def select_proposals(
    criteria: ProposalCriteria,
    *,
    index: ProposalIndex,
    proposals: Mapping[int, Proposal],
) -> tuple[List[Proposal], int]:
    rows = [proposals[proposal_id] for proposal_id in index.matching_ids(criteria)]
    rows = sort_proposals(rows, sort_by=criteria.sort_by, direction=criteria.direction)
    return paginate(rows, page=criteria.page, page_size=criteria.page_size)
