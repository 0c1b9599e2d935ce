from __future__ import annotations

import logging
import math
import random
import threading
import time
from collections.abc import Iterable
from dataclasses import dataclass

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api

from cert_controller.src.cache import ServiceCache
from cert_controller.src.config import MANAGED_ANNOTATION_KEY, ControllerIdentity
from cert_controller.src.kube import AnnotationWriter, AnnotationWriteError
from cert_controller.src.metrics import METRICS
from cert_controller.src.reconcile import (
    Action,
    NoOp,
    ReconcileEvent,
    ResourceRecord,
    annotations_changed,
    reconcile,
)


@dataclass(frozen=True)
class PendingRetry:
    """A failed annotation write waiting to be re-driven.

    ``old`` is the snapshot that preceded the failed write; it is replayed
    against the cache's current state when the retry is due so a release
    (claimed -> unclaimed) can still be recognised.
    """

    due_at: float
    attempt: int
    old: ResourceRecord | None


class CertificateController:
    """Keeps the load balancer certificate annotation of Services in sync.

    The controller lists every Service in the cluster, then follows the watch
    stream from the list's ``resourceVersion``.  Each change is folded into a
    local :class:`ServiceCache`, turned into a :class:`ReconcileEvent` and run
    through :func:`reconcile`.  Writing actions go through an
    :class:`AnnotationWriter`.

    Everything runs on the thread that calls :meth:`run_forever`, so events
    for one Service are handled in delivery order and at most one write per
    Service is ever in flight.

    Key internal state:
        ``_next_resync_at``
            Monotonic timestamp of the next periodic resync, which re-delivers
            every cached Service as an update so failed or missed writes are
            healed by the same idempotent decision logic.
        ``_pending_retries``
            Maps ``(namespace, name)`` to a :class:`PendingRetry` scheduled
            with bounded exponential backoff after a rejected write.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        identity: ControllerIdentity,
        *,
        resync_period_seconds: int = 2,
        write_retry_limit: int = 5,
        writer: AnnotationWriter | None = None,
        cache: ServiceCache | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.identity = identity
        self.resync_period_seconds = resync_period_seconds
        self.write_retry_limit = write_retry_limit
        self.writer = writer or AnnotationWriter(core_api)
        self.cache = cache or ServiceCache()
        self.logger = logger or logging.getLogger(__name__)

        self._next_resync_at: float | None = None
        self._pending_retries: dict[tuple[str, str], PendingRetry] = {}
        METRICS.pending_retries.set(0)

        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    @property
    def pending_retries(self) -> dict[tuple[str, str], PendingRetry]:
        return dict(self._pending_retries)

    def handle_event(self, event: ReconcileEvent, *, attempt: int = 0) -> Action:
        """Decide on and apply the action for one observed change.

        Returns the decided action.  Write failures are logged and queued for
        a bounded retry; they are never raised to the caller.
        """
        subject = event.subject
        if subject is None:
            self.logger.warning("Ignoring malformed event without old or new Service")
            return NoOp()

        trigger = "edge" if annotations_changed(event.old, event.new) else "resync"
        if attempt == 0 and trigger == "edge":
            # A newer annotation change invalidates the snapshot a queued retry
            # would replay; decide from this event alone.
            self._drop_retry(subject.key)
        action = reconcile(event, self.identity)
        METRICS.reconcile_total.labels(action=action.name, trigger=trigger).inc()

        if event.new is None:
            self._drop_retry(subject.key)
            if action.name == "deleted":
                self.logger.info(
                    "Service %s/%s deleted; load balancer annotation goes with it",
                    subject.namespace,
                    subject.name,
                )
            return action

        if not action.requires_write:
            self.logger.debug(
                "No change needed for Service %s/%s (%s)",
                subject.namespace,
                subject.name,
                trigger,
            )
            return action

        if action.name == "clear":
            self.logger.info(
                "Removing LoadBalancer annotation from Service %s/%s",
                subject.namespace,
                subject.name,
            )
        elif event.new.annotation(MANAGED_ANNOTATION_KEY):
            self.logger.info(
                "Repairing LoadBalancer annotation on Service %s/%s",
                subject.namespace,
                subject.name,
            )
        else:
            self.logger.info(
                "Adding LoadBalancer annotation to Service %s/%s",
                subject.namespace,
                subject.name,
            )

        self._write(event.new, event.old, action, attempt=attempt)
        return action

    def _write(
        self,
        record: ResourceRecord,
        old: ResourceRecord | None,
        action: Action,
        *,
        attempt: int,
    ) -> None:
        try:
            result = self.writer.apply(record, MANAGED_ANNOTATION_KEY, action.value)
        except AnnotationWriteError as exc:
            METRICS.annotation_write_errors_total.labels(action=action.name).inc()
            self.logger.warning(
                "Failed to update Service %s/%s (status=%s reason=%s)",
                record.namespace,
                record.name,
                exc.status,
                exc.reason,
            )
            pending = self._pending_retries.get(record.key)
            if attempt == 0 and pending is not None:
                # Resync failures count against the retry already queued.
                attempt, old = pending.attempt, pending.old
            self._schedule_retry(record.key, old, attempt + 1, time.monotonic())
            return

        METRICS.annotation_writes_total.labels(action=action.name).inc()
        self._drop_retry(record.key)

        # Fold the server's answer into the cache so a resync that fires before
        # the watch echo does not re-send the write with a stale version.
        updated = ResourceRecord.from_service(result)
        if updated is not None and updated.key == record.key:
            self.cache.apply("MODIFIED", result)

    def _schedule_retry(
        self,
        key: tuple[str, str],
        old: ResourceRecord | None,
        attempt: int,
        now_monotonic: float,
    ) -> None:
        """Schedule a retry after a failed write using bounded exponential backoff."""
        namespace, name = key
        if attempt > self.write_retry_limit:
            self._drop_retry(key)
            METRICS.dropped_retries_total.inc()
            self.logger.error(
                "Giving up on Service %s/%s after %d failed write(s); "
                "waiting for the next change or resync",
                namespace,
                name,
                attempt,
            )
            return

        delay_seconds = min(30.0, float(2 ** (attempt - 1)))
        self._pending_retries[key] = PendingRetry(
            due_at=now_monotonic + delay_seconds,
            attempt=attempt,
            old=old,
        )
        METRICS.pending_retries.set(len(self._pending_retries))
        METRICS.write_retries_total.inc()
        self.logger.warning(
            "Scheduling write retry %d for Service %s/%s in %.1fs",
            attempt,
            namespace,
            name,
            delay_seconds,
        )

    def _drop_retry(self, key: tuple[str, str]) -> None:
        if self._pending_retries.pop(key, None) is not None:
            METRICS.pending_retries.set(len(self._pending_retries))

    def _drain_pending_retries(self, now_monotonic: float) -> None:
        """Re-drive every retry whose backoff has elapsed against the cache's current state."""
        due = [key for key, retry in self._pending_retries.items() if retry.due_at <= now_monotonic]
        for key in due:
            retry = self._pending_retries.pop(key)
            METRICS.pending_retries.set(len(self._pending_retries))
            current = self.cache.get(*key)
            if current is None:
                self.logger.info(
                    "Dropping write retry for Service %s/%s; it is no longer cached", *key
                )
                continue
            self._dispatch(
                [ReconcileEvent(old=retry.old, new=current)],
                attempt=retry.attempt,
            )

    def _resync_if_due(self, now_monotonic: float) -> None:
        if self._next_resync_at is None or now_monotonic < self._next_resync_at:
            return
        METRICS.resyncs_total.inc()
        self._dispatch(self.cache.resync())
        self._next_resync_at = now_monotonic + self.resync_period_seconds

    def _run_due_work(self) -> None:
        self._drain_pending_retries(now_monotonic=time.monotonic())
        self._resync_if_due(now_monotonic=time.monotonic())

    def _dispatch(self, events: Iterable[ReconcileEvent], *, attempt: int = 0) -> None:
        for event in events:
            try:
                self.handle_event(event, attempt=attempt)
            except Exception:
                subject = event.subject
                self.logger.exception(
                    "Unexpected error handling %s event for Service %s",
                    event.kind,
                    f"{subject.namespace}/{subject.name}" if subject else "<unknown>",
                )
                METRICS.event_errors_total.inc()

    def _relist(self) -> str | None:
        """List every Service, replace the cache and dispatch the implied events.

        Returns the list's ``resourceVersion`` to resume watching from.
        """
        listing = self.core_api.list_service_for_all_namespaces()
        resource_version = getattr(getattr(listing, "metadata", None), "resource_version", None)
        events = self.cache.replace(getattr(listing, "items", None) or [])
        METRICS.cached_services.set(len(self.cache))
        self._dispatch(events)
        return resource_version

    def _next_watch_timeout_seconds(self, now_monotonic: float) -> int:
        """Return the next watch timeout in seconds, shortened for due work.

        The watch loop must wake up in time for the next resync and for the
        nearest pending retry.  With nothing scheduled the default 30-second
        timeout is returned.
        """
        deadlines = [retry.due_at for retry in self._pending_retries.values()]
        if self._next_resync_at is not None:
            deadlines.append(self._next_resync_at)
        if not deadlines:
            return 30

        remaining = max(1.0, min(deadlines) - now_monotonic)
        return min(30, max(1, math.ceil(remaining)))

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Main control loop: list-then-watch Services until shutdown.

        1. Retries the initial list with jittered exponential backoff so
           transient API startup failures do not crash-loop the controller.
           Every listed Service is dispatched as an add.
        2. Opens a watch from the list's ``resourceVersion`` and dispatches
           each event after folding it into the cache.
        3. Resyncs the cache every ``resync_period_seconds`` and drains due
           write retries between events, shortening the watch timeout so
           both fire on time.
        4. On ``410 Gone`` re-lists; Services that vanished in the meantime
           are dispatched as deletes.
        5. On other errors backs off with jitter, capped at 30 s.

        ``401`` / ``403`` responses are treated as credential or RBAC errors
        and end the loop immediately with readiness cleared.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version = self._relist()
                self.ready.set()
                self.logger.info(
                    "Cached %d Service(s); starting watch from resourceVersion %s",
                    len(self.cache),
                    resource_version,
                )
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied during initial list (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    self.ready.clear()
                    return
                self.logger.exception("Initial Kubernetes Service list failed")
                METRICS.watch_errors_total.inc()
            except Exception:
                self.logger.exception("Unexpected error during initial Service list")
                METRICS.watch_errors_total.inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        if self._should_stop(stop):
            self.ready.clear()
            return

        self._next_resync_at = time.monotonic() + self.resync_period_seconds
        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            self._run_due_work()
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                timeout_seconds = self._next_watch_timeout_seconds(now_monotonic=time.monotonic())
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.core_api.list_service_for_all_namespaces,
                    resource_version=resource_version,
                    timeout_seconds=timeout_seconds,
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    obj = event.get("object")
                    if obj is None:
                        continue

                    metadata = getattr(obj, "metadata", None)
                    if metadata is not None and getattr(metadata, "resource_version", None):
                        resource_version = metadata.resource_version

                    event_type = str(event.get("type", ""))
                    reconcile_event = self.cache.apply(event_type, obj)
                    METRICS.cached_services.set(len(self.cache))
                    if reconcile_event is not None:
                        self._dispatch([reconcile_event])
                    self._run_due_work()

                backoff_seconds = 1
                self._run_due_work()
            except ApiException as exc:
                # 410 Gone: our resourceVersion was compacted away.  Re-list to
                # get a fresh snapshot and resume from its resourceVersion.
                if exc.status == 410:
                    self.logger.warning("Watch resource version expired, re-listing")
                    try:
                        resource_version = self._relist()
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self.logger.error(
                                "Kubernetes API access denied during 410 re-list (status=%s). "
                                "Check controller RBAC and service account permissions.",
                                relist_exc.status,
                            )
                            self.ready.clear()
                            return
                        self.logger.exception("Failed to re-list after 410")
                        METRICS.watch_errors_total.inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    METRICS.watch_errors_total.inc()
                    self.ready.clear()
                    return

                self.logger.exception("Kubernetes API watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.ready.clear()
