"""In-process read cache for custom field queries.

Keys are tuples such as ``("custom-fields", client_id, entity_type)``. Committed
mutations publish domain events; the cache listens on the event bus and drops
every entry whose key starts with the prefix the event names.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from collections.abc import Callable, Hashable
from dataclasses import dataclass
from time import monotonic
from typing import Any, TypeVar

from opentelemetry import trace

from portal_crm.core.config import get_settings
from portal_crm.core.events import InProcessEventBus, InternalEvent, event_bus
from portal_crm.metrics import observe_query_cache, observe_query_cache_invalidation


logger = logging.getLogger("portal_crm.crm.cache")
tracer = trace.get_tracer("portal_crm.crm.cache")

T = TypeVar("T")
CacheKey = tuple[Hashable, ...]
InvalidationListener = Callable[[CacheKey], None]

CUSTOM_FIELDS = "custom-fields"
CUSTOM_FIELD_VALUES = "custom-field-values"
OPPORTUNITY_RELATIONSHIPS = "opportunity-relationships"


def custom_fields_key(client_id: Any, entity_type: str) -> CacheKey:
    return (CUSTOM_FIELDS, str(client_id), entity_type)


def custom_field_values_key(client_id: Any, entity_type: str, entity_id: Any | None = None) -> CacheKey:
    if entity_id is None:
        return (CUSTOM_FIELD_VALUES, str(client_id), entity_type)
    return (CUSTOM_FIELD_VALUES, str(client_id), entity_type, str(entity_id))


def opportunity_relationships_key(client_id: Any, opportunity_id: Any | None = None) -> CacheKey:
    if opportunity_id is None:
        return (OPPORTUNITY_RELATIONSHIPS, str(client_id))
    return (OPPORTUNITY_RELATIONSHIPS, str(client_id), str(opportunity_id))


@dataclass
class _Entry:
    value: Any
    expires_at: float


class QueryCache:
    def __init__(self, ttl_seconds: float | None = None, clock: Callable[[], float] = monotonic) -> None:
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[CacheKey, _Entry] = {}
        self._generation = 0
        self._listeners: dict[CacheKey, list[InvalidationListener]] = defaultdict(list)

    @property
    def ttl_seconds(self) -> float:
        if self._ttl_seconds is not None:
            return self._ttl_seconds
        return get_settings().query_cache_ttl_seconds

    def get_or_load(self, key: CacheKey, loader: Callable[[], T]) -> T:
        namespace = str(key[0])
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.expires_at > now:
                observe_query_cache(namespace, "hit")
                return entry.value
            if entry is not None:
                del self._entries[key]
            generation = self._generation

        observe_query_cache(namespace, "miss")
        with tracer.start_as_current_span("query_cache.load") as span:
            span.set_attribute("cache.namespace", namespace)
            value = loader()

        ttl = self.ttl_seconds
        with self._lock:
            # A write committed while loading makes this result stale; serve it once without storing.
            if ttl > 0 and generation == self._generation:
                self._entries[key] = _Entry(value=value, expires_at=self._clock() + ttl)
        return value

    def peek(self, key: CacheKey) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.expires_at <= self._clock():
                return None
            return entry.value

    def invalidate(self, prefix: CacheKey) -> int:
        with self._lock:
            self._generation += 1
            stale = [key for key in self._entries if key[: len(prefix)] == prefix]
            for key in stale:
                del self._entries[key]
            listeners = [
                listener
                for listen_prefix, registered in self._listeners.items()
                if prefix[: len(listen_prefix)] == listen_prefix or listen_prefix[: len(prefix)] == prefix
                for listener in registered
            ]

        observe_query_cache_invalidation(str(prefix[0]) if prefix else "all", len(stale))
        logger.debug("query_cache_invalidated", extra={"cache_key": "/".join(str(part) for part in prefix)})
        for listener in listeners:
            listener(prefix)
        return len(stale)

    def subscribe(self, prefix: CacheKey, listener: InvalidationListener) -> None:
        with self._lock:
            if listener not in self._listeners[prefix]:
                self._listeners[prefix].append(listener)

    def unsubscribe(self, prefix: CacheKey, listener: InvalidationListener) -> None:
        with self._lock:
            registered = self._listeners.get(prefix, [])
            if listener in registered:
                registered.remove(listener)

    def clear(self) -> None:
        with self._lock:
            self._generation += 1
            self._entries.clear()

    def reset(self) -> None:
        self.clear()
        with self._lock:
            self._listeners.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def handle_event(self, event: InternalEvent) -> None:
        for prefix in prefixes_for_event(event.name, event.payload):
            self.invalidate(prefix)

    def bind(self, bus: InProcessEventBus) -> None:
        for event_name in INVALIDATING_EVENTS:
            bus.subscribe(event_name, self.handle_event)


def _definition_prefixes(client_id: str, payload: dict[str, Any]) -> list[CacheKey]:
    return [custom_fields_key(client_id, payload["entity_type"])]


def _definition_removed_prefixes(client_id: str, payload: dict[str, Any]) -> list[CacheKey]:
    return [
        custom_fields_key(client_id, payload["entity_type"]),
        custom_field_values_key(client_id, payload["entity_type"]),
    ]


def _value_prefixes(client_id: str, payload: dict[str, Any]) -> list[CacheKey]:
    return [custom_field_values_key(client_id, payload["entity_type"], payload["entity_id"])]


def _relationship_prefixes(client_id: str, payload: dict[str, Any]) -> list[CacheKey]:
    return [opportunity_relationships_key(client_id, payload["opportunity_id"])]


def _record_deleted_prefixes(client_id: str, payload: dict[str, Any]) -> list[CacheKey]:
    if payload["entity_type"] == "opportunities":
        return [opportunity_relationships_key(client_id, payload["entity_id"])]
    return [
        custom_field_values_key(client_id, payload["entity_type"], payload["entity_id"]),
        opportunity_relationships_key(client_id),
    ]


_PREFIX_BUILDERS: dict[str, Callable[[str, dict[str, Any]], list[CacheKey]]] = {
    "crm.custom_field.created": _definition_prefixes,
    "crm.custom_field.updated": _definition_removed_prefixes,
    "crm.custom_field.reordered": _definition_prefixes,
    "crm.custom_field.deleted": _definition_removed_prefixes,
    "crm.custom_field_values.updated": _value_prefixes,
    "crm.relationship.created": _relationship_prefixes,
    "crm.relationship.deleted": _relationship_prefixes,
    "crm.record.deleted": _record_deleted_prefixes,
}

INVALIDATING_EVENTS: tuple[str, ...] = tuple(_PREFIX_BUILDERS)


def prefixes_for_event(event_name: str, envelope: dict[str, Any]) -> list[CacheKey]:
    builder = _PREFIX_BUILDERS.get(event_name)
    client_id = envelope.get("client_id")
    if builder is None or client_id is None:
        return []
    return builder(str(client_id), envelope.get("payload") or {})


query_cache = QueryCache()
query_cache.bind(event_bus)
