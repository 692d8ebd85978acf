"""
Persona - Query Service (read side)

Keeps read models up to date with committed events and answers queries
from them. Read models are eventually consistent with the event store:
each runner applies a person's events in append order, but nothing orders
a runner against the write path.

A projection failure never reaches the write path. A malformed or
unexpected event is logged and skipped, and the runner goes on with the
next one.

Usage:
    stores = ReadModelStores.in_memory()
    subscriber = ProjectionSubscriber(default_runners(stores))
    subscriber.attach(event_bus)

    queries = QueryService(stores)
    page = await queries.execute(SummaryQuery.all(ActivePersons()))
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, List, Mapping, Optional, Sequence, TypeVar

from opentelemetry import trace

from core.errors import ValidationError
from db.event_store import IEventStore
from db.read_models import IReadModelStore, InMemoryReadModelStore
from domain.attribute_types import AttributeCategory
from domain.events import PersonEvent
from domain.projections import (
    CategoryView,
    PersonSummary,
    SearchDocument,
    TimelineEntry,
    project_category_view,
    project_search,
    project_summary,
    project_timeline_entry,
    relevance,
)
from domain.queries import (
    BaseQuery,
    CategoryViewQuery,
    Order,
    SearchQuery,
    SummaryQuery,
    TimelineQuery,
)
from observability.logging import ProjectionLogger
from pipeline.event_bus import IEventPublisher, Unsubscribe

tracer = trace.get_tracer(__name__)

TModel = TypeVar("TModel")

Projection = Callable[[Optional[TModel], PersonEvent], Optional[TModel]]
KeyFunction = Callable[[PersonEvent], str]


# =============================================================================
# KEYS
# =============================================================================


def person_key(event: PersonEvent) -> str:
    return event.person_id


def timeline_key(event: PersonEvent) -> str:
    """Zero-padded so key order is version order."""
    return f"{event.person_id}:{event.version:010d}"


# =============================================================================
# PROJECTION RUNNER
# =============================================================================


class ProjectionRunner(Generic[TModel]):
    """
    Applies one pure projection to one read-model store.

    ``handle`` loads the model stored under the event's key, runs the
    projection and upserts the result, or deletes the model when the
    projection returns None for an existing one.
    """

    def __init__(
        self,
        name: str,
        projection: Projection,
        store: IReadModelStore[TModel],
        key_fn: KeyFunction = person_key,
    ):
        self.name = name
        self.projection = projection
        self.store = store
        self.key_fn = key_fn
        self.skipped = 0
        self._log = ProjectionLogger(name)

    async def handle(self, event: PersonEvent) -> bool:
        """
        Project one event.

        Returns:
            False if the event was skipped because it could not be projected
        """
        try:
            key = self.key_fn(event)
            current = await self.store.get(key)
            updated = self.projection(current, event)
            if updated is None:
                if current is not None:
                    await self.store.delete(key)
            elif updated is not current:
                await self.store.upsert(key, updated)
        except Exception as e:
            self.skipped += 1
            self._log.skipped(
                getattr(event, "event_type", type(event).__name__),
                str(getattr(event, "event_id", "")),
                e,
            )
            return False
        return True

    async def rebuild(self, event_store: IEventStore, batch_size: int = 100) -> int:
        """
        Drop the store and replay the whole event log through the projection.

        Returns:
            Number of events projected
        """
        with tracer.start_as_current_span(f"projection.rebuild.{self.name}"):
            await self.store.clear()
            projected = 0
            skipped = 0
            async for stored in event_store.stream_all(batch_size=batch_size):
                try:
                    event = stored.to_domain_event()
                except Exception as e:
                    skipped += 1
                    self._log.skipped(stored.metadata.event_type, str(stored.metadata.event_id), e)
                    continue
                if await self.handle(event):
                    projected += 1
                else:
                    skipped += 1
            self._log.rebuilt(projected, skipped)
            return projected


# =============================================================================
# STORES AND WIRING
# =============================================================================


@dataclass
class ReadModelStores:
    """The read-model stores the query service reads from."""
    summaries: IReadModelStore[PersonSummary]
    search: IReadModelStore[SearchDocument]
    timeline: IReadModelStore[TimelineEntry]
    category_views: Dict[AttributeCategory, IReadModelStore[CategoryView]] = field(default_factory=dict)

    @classmethod
    def in_memory(cls) -> "ReadModelStores":
        return cls(
            summaries=InMemoryReadModelStore("person_summary"),
            search=InMemoryReadModelStore("search_document"),
            timeline=InMemoryReadModelStore("timeline"),
            category_views={
                category: InMemoryReadModelStore(f"category_view.{category.value}")
                for category in AttributeCategory
            },
        )


def default_runners(stores: ReadModelStores) -> List[ProjectionRunner]:
    """One runner per read model, category views included."""
    runners: List[ProjectionRunner] = [
        ProjectionRunner("person_summary", project_summary, stores.summaries),
        ProjectionRunner("search_document", project_search, stores.search),
        ProjectionRunner("timeline", project_timeline_entry, stores.timeline, timeline_key),
    ]
    for category, store in stores.category_views.items():
        runners.append(
            ProjectionRunner(f"category_view.{category.value}", project_category_view(category), store)
        )
    return runners


class ProjectionSubscriber:
    """Feeds every published event to a set of projection runners."""

    def __init__(self, runners: Sequence[ProjectionRunner]):
        self.runners = list(runners)
        self._unsubscribe: Optional[Unsubscribe] = None

    async def __call__(self, event: PersonEvent) -> None:
        for runner in self.runners:
            await runner.handle(event)

    def attach(self, publisher: IEventPublisher) -> Unsubscribe:
        self._unsubscribe = publisher.subscribe(self)
        return self._unsubscribe

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    async def rebuild(self, event_store: IEventStore) -> Dict[str, int]:
        return {runner.name: await runner.rebuild(event_store) for runner in self.runners}


# =============================================================================
# QUERY SERVICE
# =============================================================================


class QueryService:
    """Answers queries from the read-model stores."""

    def __init__(self, stores: ReadModelStores):
        self.stores = stores
        self._executors: Mapping[type, Callable[[Any], Any]] = {
            SummaryQuery: self._summaries,
            SearchQuery: self._search,
            TimelineQuery: self._timeline,
            CategoryViewQuery: self._category_view,
        }

    async def execute(self, query: BaseQuery) -> List[Any]:
        """
        Run a query.

        Raises:
            ValidationError: The query type is not supported
        """
        executor = self._executors.get(type(query))
        if executor is None:
            raise ValidationError("query", f"unsupported query {type(query).__name__}")

        with tracer.start_as_current_span("query.execute") as span:
            span.set_attribute("query.type", query.query_type)
            results = await executor(query)
            span.set_attribute("query.result_count", len(results))
            return results

    async def _summaries(self, query: SummaryQuery) -> List[PersonSummary]:
        if query.person_ids is not None:
            candidates = []
            for person_id in sorted(query.person_ids):
                summary = await self.stores.summaries.get(person_id)
                if summary is not None:
                    candidates.append(summary)
        else:
            candidates = await self.stores.summaries.list()

        matching = [s for s in candidates if query.filter.is_satisfied_by(s)]
        return matching[query.offset:query.offset + query.page_size]

    async def _search(self, query: SearchQuery) -> List[SearchDocument]:
        scored = []
        for document in await self.stores.search.list():
            if not query.filters.is_satisfied_by(document):
                continue
            score = relevance(document, query.text)
            if score > 0 and score >= query.min_relevance:
                scored.append((score, document))

        # Stable sort keeps key order among equal scores.
        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [document for _, document in scored[:query.limit]]

    async def _timeline(self, query: TimelineQuery) -> List[TimelineEntry]:
        entries = await self.stores.timeline.list(person_id=query.person_id)
        if query.date_range is not None:
            start, end = query.date_range
            entries = [e for e in entries if start <= e.occurred_at.date() <= end]
        entries.sort(key=lambda e: e.version, reverse=query.order is Order.DESC)
        if query.limit is not None:
            entries = entries[:query.limit]
        return entries

    async def _category_view(self, query: CategoryViewQuery) -> List[CategoryView]:
        store = self.stores.category_views.get(query.category)
        if store is None:
            raise ValidationError("category", f"no view maintained for {query.category.value}")
        view = await store.get(query.person_id)
        return [view] if view is not None else []
