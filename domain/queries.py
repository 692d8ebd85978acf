"""
CQRS: Person Query Definitions

Queries are immutable descriptions of what the read side should return.
They carry no behaviour besides validation and a few convenience
constructors; ``services.query_service.QueryService`` executes them.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date
from enum import Enum
from typing import Any, FrozenSet, Optional, Tuple

from domain.attribute_types import AttributeCategory
from domain.specifications import ISpecification, TrueSpecification


class Order(str, Enum):
    """Sort order of timeline results."""
    ASC = "asc"
    DESC = "desc"


@dataclass(frozen=True)
class BaseQuery:
    """Base class for all person queries."""

    @property
    def query_type(self) -> str:
        return type(self).__name__


@dataclass(frozen=True)
class SummaryQuery(BaseQuery):
    """
    Page through person summaries.

    Args:
        person_ids: Restrict to these ids; None means every person
        filter: Specification evaluated against each summary
        page: 1-based page number
        page_size: Results per page
    """
    person_ids: Optional[FrozenSet[str]] = None
    filter: ISpecification[Any] = field(default_factory=TrueSpecification)
    page: int = 1
    page_size: int = 50

    def __post_init__(self) -> None:
        if self.person_ids is not None:
            object.__setattr__(self, "person_ids", frozenset(self.person_ids))
        if self.page < 1:
            raise ValueError(f"page must be >= 1, got {self.page}")
        if self.page_size < 1:
            raise ValueError(f"page_size must be >= 1, got {self.page_size}")

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size

    @classmethod
    def for_person(cls, person_id: str) -> "SummaryQuery":
        return cls(person_ids=frozenset({person_id}))

    @classmethod
    def all(cls, filter: Optional[ISpecification[Any]] = None, page_size: int = 50) -> "SummaryQuery":
        return cls(filter=filter or TrueSpecification(), page_size=page_size)

    def paginate(self, page: int, page_size: Optional[int] = None) -> "SummaryQuery":
        return replace(self, page=page, page_size=page_size or self.page_size)


@dataclass(frozen=True)
class SearchQuery(BaseQuery):
    """
    Free-text search over search documents.

    Args:
        text: Query text; None returns every document passing ``filters``
        filters: Specification evaluated against each document
        min_relevance: Documents scoring below this are dropped
        limit: Maximum number of results
    """
    text: Optional[str] = None
    filters: ISpecification[Any] = field(default_factory=TrueSpecification)
    min_relevance: float = 0.0
    limit: int = 20

    def __post_init__(self) -> None:
        if not 0.0 <= self.min_relevance <= 1.0:
            raise ValueError(f"min_relevance must be in [0, 1], got {self.min_relevance}")
        if self.limit < 1:
            raise ValueError(f"limit must be >= 1, got {self.limit}")


@dataclass(frozen=True)
class TimelineQuery(BaseQuery):
    """
    History of one person.

    ``date_range`` is inclusive on both ends and compares the event date.
    """
    person_id: str
    date_range: Optional[Tuple[date, date]] = None
    limit: Optional[int] = None
    order: Order = Order.ASC

    def __post_init__(self) -> None:
        object.__setattr__(self, "order", Order(self.order))
        if self.date_range is not None:
            start, end = self.date_range
            if start > end:
                raise ValueError(f"date_range start {start} is after end {end}")
        if self.limit is not None and self.limit < 1:
            raise ValueError(f"limit must be >= 1, got {self.limit}")


@dataclass(frozen=True)
class CategoryViewQuery(BaseQuery):
    """Attributes of one person restricted to one category."""
    person_id: str
    category: AttributeCategory

    def __post_init__(self) -> None:
        object.__setattr__(self, "category", AttributeCategory(self.category))
