from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from cert_controller.src.config import (
    CONTROLLER_CLASS_ANNOTATION_KEY,
    MANAGED_ANNOTATION_KEY,
    ControllerIdentity,
)

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceRecord:
    """Immutable snapshot of a Service as seen by the watch cache.

    ``raw`` keeps a reference to the API object the snapshot was built from
    so the writer can send a full-object update.  It is excluded from equality
    so two snapshots with the same identity, version and annotations compare
    equal regardless of where they came from.
    """

    namespace: str
    name: str
    annotations: Mapping[str, str] = field(default_factory=dict)
    resource_version: str | None = None
    raw: Any = field(default=None, compare=False, repr=False)

    @property
    def key(self) -> tuple[str, str]:
        return (self.namespace, self.name)

    def annotation(self, key: str) -> str:
        return self.annotations.get(key) or ""

    @classmethod
    def from_service(cls, service: Any) -> ResourceRecord | None:
        """Build a record from a ``V1Service``; ``None`` if it has no identity."""
        metadata = getattr(service, "metadata", None)
        namespace = getattr(metadata, "namespace", None)
        name = getattr(metadata, "name", None)
        if not namespace or not name:
            return None

        raw_annotations = getattr(metadata, "annotations", None)
        annotations: dict[str, str] = {}
        if isinstance(raw_annotations, dict):
            annotations = {
                k: ("" if v is None else str(v))
                for k, v in raw_annotations.items()
                if isinstance(k, str)
            }
        return cls(
            namespace=namespace,
            name=name,
            annotations=annotations,
            resource_version=getattr(metadata, "resource_version", None),
            raw=service,
        )


@dataclass(frozen=True)
class ReconcileEvent:
    """A pair of snapshots describing one observed change.

    ``old`` is absent for an add, ``new`` is absent for a delete, both are
    present for an update (including periodic resyncs where they are equal).
    """

    old: ResourceRecord | None
    new: ResourceRecord | None

    @property
    def kind(self) -> str:
        if self.old is None and self.new is None:
            return "INVALID"
        if self.old is None:
            return "ADDED"
        if self.new is None:
            return "DELETED"
        return "UPDATED"

    @property
    def subject(self) -> ResourceRecord | None:
        return self.new if self.new is not None else self.old


@dataclass(frozen=True)
class NoOp:
    name = "noop"
    requires_write = False


@dataclass(frozen=True)
class SetAnnotation:
    value: str
    name = "set"
    requires_write = True


@dataclass(frozen=True)
class ClearAnnotation:
    name = "clear"
    requires_write = True
    value = ""


@dataclass(frozen=True)
class LogOnlyDeleted:
    name = "deleted"
    requires_write = False


Action = NoOp | SetAnnotation | ClearAnnotation | LogOnlyDeleted


def is_claimed(record: ResourceRecord | None, identity: ControllerIdentity) -> bool:
    """Return True if *record* carries this controller's class annotation.

    Exact string comparison: no wildcards, no case folding.
    """
    if record is None:
        return False
    return record.annotations.get(CONTROLLER_CLASS_ANNOTATION_KEY) == identity.controller_class


def annotations_changed(old: ResourceRecord | None, new: ResourceRecord | None) -> bool:
    """Return True if the managed or class annotation differs between snapshots."""
    if old is None or new is None:
        return old is not new
    return any(
        old.annotation(key) != new.annotation(key)
        for key in (MANAGED_ANNOTATION_KEY, CONTROLLER_CLASS_ANNOTATION_KEY)
    )


def reconcile(event: ReconcileEvent, identity: ControllerIdentity) -> Action:
    """Decide what, if anything, must be written for one observed change.

    Level-triggered: the decision depends on the claim state of ``new`` and,
    for releases, of ``old``, never on which edit produced the event.  Running
    it again on the state it produced yields :class:`NoOp`.

    1. ``new`` absent (delete): :class:`LogOnlyDeleted` if ``old`` was
       claimed, otherwise :class:`NoOp`.  Nothing is written to a Service
       that no longer exists.
    2. ``new`` claimed: :class:`NoOp` if the managed annotation already holds
       the target value, otherwise :class:`SetAnnotation` (covers both the
       missing and the drifted case).
    3. ``new`` not claimed: :class:`ClearAnnotation` if ``old`` was claimed,
       otherwise :class:`NoOp`.
    """
    old, new = event.old, event.new

    if new is None:
        if old is None:
            LOGGER.warning("Ignoring reconcile event without old or new snapshot")
            return NoOp()
        if is_claimed(old, identity):
            return LogOnlyDeleted()
        return NoOp()

    if is_claimed(new, identity):
        if new.annotation(MANAGED_ANNOTATION_KEY) == identity.target_value:
            return NoOp()
        return SetAnnotation(value=identity.target_value)

    if is_claimed(old, identity):
        return ClearAnnotation()

    return NoOp()
