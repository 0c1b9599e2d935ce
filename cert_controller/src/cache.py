from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from typing import Any

from cert_controller.src.reconcile import ReconcileEvent, ResourceRecord

LOGGER = logging.getLogger(__name__)


class ServiceCache:
    """In-memory store of the last observed state of every Service.

    The store is keyed by ``(namespace, name)`` and fed from three sources:
    a full listing (:meth:`replace`), single watch events (:meth:`apply`) and
    the periodic resync (:meth:`resync`).  Each source returns the
    :class:`ReconcileEvent` objects the change implies, with ``old`` taken
    from the cache before it was updated.

    Readers may call :meth:`get` from any thread; only the controller loop
    mutates the store.
    """

    def __init__(self) -> None:
        self._items: dict[tuple[str, str], ResourceRecord] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def keys(self) -> list[tuple[str, str]]:
        with self._lock:
            return sorted(self._items)

    def get(self, namespace: str, name: str) -> ResourceRecord | None:
        with self._lock:
            return self._items.get((namespace, name))

    def replace(self, services: Iterable[Any]) -> list[ReconcileEvent]:
        """Swap the store for a fresh listing and return the implied events.

        Services missing from the listing are reported as deleted, which heals
        deletes that happened while the watch was disconnected.
        """
        fresh: dict[tuple[str, str], ResourceRecord] = {}
        for service in services:
            record = ResourceRecord.from_service(service)
            if record is None:
                LOGGER.warning("Skipping listed Service without namespace or name")
                continue
            fresh[record.key] = record

        events: list[ReconcileEvent] = []
        with self._lock:
            previous = self._items
            self._items = fresh

        for key in sorted(fresh):
            events.append(ReconcileEvent(old=previous.get(key), new=fresh[key]))
        for key in sorted(previous.keys() - fresh.keys()):
            events.append(ReconcileEvent(old=previous[key], new=None))
        return events

    def apply(self, event_type: str, service: Any) -> ReconcileEvent | None:
        """Fold one watch event into the store.

        Returns ``None`` for event types that carry no Service state
        (``BOOKMARK``, ``ERROR``) and for objects without an identity.
        """
        if event_type not in {"ADDED", "MODIFIED", "DELETED"}:
            return None

        record = ResourceRecord.from_service(service)
        if record is None:
            LOGGER.warning("Skipping %s event for Service without namespace or name", event_type)
            return None

        with self._lock:
            previous = self._items.get(record.key)
            if event_type == "DELETED":
                self._items.pop(record.key, None)
                return ReconcileEvent(old=previous or record, new=None)
            self._items[record.key] = record

        return ReconcileEvent(old=previous, new=record)

    def resync(self) -> list[ReconcileEvent]:
        """Return an update event with ``old == new`` for every cached Service."""
        with self._lock:
            records = [self._items[key] for key in sorted(self._items)]
        return [ReconcileEvent(old=record, new=record) for record in records]
