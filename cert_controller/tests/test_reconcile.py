from __future__ import annotations

from types import SimpleNamespace

import pytest

from cert_controller.src.config import (
    CONTROLLER_CLASS_ANNOTATION_KEY,
    MANAGED_ANNOTATION_KEY,
    ControllerIdentity,
)
from cert_controller.src.reconcile import (
    ClearAnnotation,
    LogOnlyDeleted,
    NoOp,
    ReconcileEvent,
    ResourceRecord,
    SetAnnotation,
    annotations_changed,
    is_claimed,
    reconcile,
)

IDENTITY = ControllerIdentity(
    controller_class="certificate-controller",
    target_value="arn:aws:acm:example",
)


def make_record(
    annotations: dict[str, str] | None = None,
    namespace: str = "ns",
    name: str = "svc-a",
    resource_version: str = "1",
) -> ResourceRecord:
    return ResourceRecord(
        namespace=namespace,
        name=name,
        annotations=dict(annotations or {}),
        resource_version=resource_version,
    )


def claimed(managed: str | None = None, controller_class: str = "certificate-controller") -> ResourceRecord:
    annotations = {CONTROLLER_CLASS_ANNOTATION_KEY: controller_class}
    if managed is not None:
        annotations[MANAGED_ANNOTATION_KEY] = managed
    return make_record(annotations)


# ---------------------------------------------------------------------------
# Claim evaluation
# ---------------------------------------------------------------------------


def test_is_claimed_requires_exact_class_match() -> None:
    assert is_claimed(claimed(), IDENTITY) is True
    assert is_claimed(claimed(controller_class="Certificate-Controller"), IDENTITY) is False
    assert is_claimed(claimed(controller_class="certificate-controller "), IDENTITY) is False
    assert is_claimed(claimed(controller_class="*"), IDENTITY) is False


def test_is_claimed_false_without_annotation_or_record() -> None:
    assert is_claimed(make_record(), IDENTITY) is False
    assert is_claimed(None, IDENTITY) is False


# ---------------------------------------------------------------------------
# Decision rules
# ---------------------------------------------------------------------------


def test_add_of_claimed_service_sets_annotation() -> None:
    action = reconcile(ReconcileEvent(old=None, new=claimed()), IDENTITY)

    assert action == SetAnnotation(value="arn:aws:acm:example")
    assert action.requires_write is True


def test_claimed_service_with_empty_annotation_is_set() -> None:
    action = reconcile(ReconcileEvent(old=None, new=claimed(managed="")), IDENTITY)

    assert action == SetAnnotation(value="arn:aws:acm:example")


def test_claimed_service_with_drifted_annotation_is_repaired() -> None:
    old = claimed(managed="arn:aws:acm:example")
    new = claimed(managed="arn:aws:acm:edited-by-hand")

    action = reconcile(ReconcileEvent(old=old, new=new), IDENTITY)

    assert action == SetAnnotation(value="arn:aws:acm:example")


def test_claimed_service_with_correct_annotation_is_noop() -> None:
    record = claimed(managed="arn:aws:acm:example")

    assert reconcile(ReconcileEvent(old=None, new=record), IDENTITY) == NoOp()
    assert reconcile(ReconcileEvent(old=record, new=record), IDENTITY) == NoOp()


def test_release_clears_annotation() -> None:
    old = claimed(managed="arn:aws:acm:example")
    new = claimed(managed="arn:aws:acm:example", controller_class="other-controller")

    action = reconcile(ReconcileEvent(old=old, new=new), IDENTITY)

    assert action == ClearAnnotation()
    assert action.requires_write is True
    assert action.value == ""


def test_removing_class_annotation_clears_annotation() -> None:
    old = claimed(managed="arn:aws:acm:example")
    new = make_record({MANAGED_ANNOTATION_KEY: "arn:aws:acm:example"})

    assert reconcile(ReconcileEvent(old=old, new=new), IDENTITY) == ClearAnnotation()


def test_delete_of_claimed_service_is_log_only() -> None:
    action = reconcile(ReconcileEvent(old=claimed(managed="arn:aws:acm:example"), new=None), IDENTITY)

    assert action == LogOnlyDeleted()
    assert action.requires_write is False


def test_delete_of_unclaimed_service_is_noop() -> None:
    action = reconcile(ReconcileEvent(old=make_record(), new=None), IDENTITY)

    assert action == NoOp()


def test_event_without_snapshots_is_noop(caplog: pytest.LogCaptureFixture) -> None:
    event = ReconcileEvent(old=None, new=None)

    assert event.kind == "INVALID"
    assert reconcile(event, IDENTITY) == NoOp()
    assert "without old or new snapshot" in caplog.text


@pytest.mark.parametrize(
    "old_annotations,new_annotations",
    [
        (None, {}),
        (None, {MANAGED_ANNOTATION_KEY: "arn:aws:acm:someone-else"}),
        ({}, {MANAGED_ANNOTATION_KEY: "arn:aws:acm:someone-else"}),
        (
            {CONTROLLER_CLASS_ANNOTATION_KEY: "other-controller"},
            {
                CONTROLLER_CLASS_ANNOTATION_KEY: "other-controller",
                MANAGED_ANNOTATION_KEY: "arn:aws:acm:other",
            },
        ),
        (
            {
                CONTROLLER_CLASS_ANNOTATION_KEY: "other-controller",
                MANAGED_ANNOTATION_KEY: "arn:aws:acm:other",
            },
            {CONTROLLER_CLASS_ANNOTATION_KEY: "third-controller"},
        ),
    ],
)
def test_never_claimed_service_is_never_touched(
    old_annotations: dict[str, str] | None, new_annotations: dict[str, str]
) -> None:
    old = None if old_annotations is None else make_record(old_annotations)
    new = make_record(new_annotations)

    assert reconcile(ReconcileEvent(old=old, new=new), IDENTITY) == NoOp()
    assert reconcile(ReconcileEvent(old=new, new=None), IDENTITY) == NoOp()


def test_resync_storm_is_noop_once_write_is_reflected() -> None:
    before = claimed()
    first = reconcile(ReconcileEvent(old=None, new=before), IDENTITY)
    assert isinstance(first, SetAnnotation)

    after = claimed(managed=first.value)
    actions = [reconcile(ReconcileEvent(old=after, new=after), IDENTITY) for _ in range(100)]

    assert actions == [NoOp()] * 100


def test_replayed_add_is_idempotent() -> None:
    record = claimed()
    first = reconcile(ReconcileEvent(old=None, new=record), IDENTITY)

    written = claimed(managed=first.value)
    second = reconcile(ReconcileEvent(old=None, new=written), IDENTITY)

    assert second == NoOp()


def test_svc_a_lifecycle_scenario() -> None:
    empty = make_record({})
    assert reconcile(ReconcileEvent(old=None, new=empty), IDENTITY) == NoOp()

    added = make_record({CONTROLLER_CLASS_ANNOTATION_KEY: "certificate-controller"})
    assert reconcile(ReconcileEvent(old=None, new=added), IDENTITY) == SetAnnotation(
        value="arn:aws:acm:example"
    )

    written = make_record(
        {
            CONTROLLER_CLASS_ANNOTATION_KEY: "certificate-controller",
            MANAGED_ANNOTATION_KEY: "arn:aws:acm:example",
        },
        resource_version="2",
    )
    assert reconcile(ReconcileEvent(old=written, new=written), IDENTITY) == NoOp()

    moved = make_record(
        {
            CONTROLLER_CLASS_ANNOTATION_KEY: "other-controller",
            MANAGED_ANNOTATION_KEY: "arn:aws:acm:example",
        },
        resource_version="3",
    )
    assert reconcile(ReconcileEvent(old=written, new=moved), IDENTITY) == ClearAnnotation()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def test_annotations_changed_tracks_only_relevant_keys() -> None:
    old = claimed(managed="arn:aws:acm:example")
    unrelated = ResourceRecord(
        namespace="ns",
        name="svc-a",
        annotations={**old.annotations, "team": "payments"},
        resource_version="2",
    )

    assert annotations_changed(old, unrelated) is False
    assert annotations_changed(old, claimed(managed="")) is True
    assert annotations_changed(old, claimed(managed="arn:aws:acm:example", controller_class="x")) is True
    assert annotations_changed(None, old) is True
    assert annotations_changed(old, None) is True


def test_missing_and_empty_managed_annotation_are_equivalent() -> None:
    assert annotations_changed(claimed(), claimed(managed="")) is False


def test_record_from_service_normalizes_annotations() -> None:
    service = SimpleNamespace(
        metadata=SimpleNamespace(
            namespace="ns",
            name="svc-a",
            resource_version="42",
            annotations={CONTROLLER_CLASS_ANNOTATION_KEY: "certificate-controller", "empty": None},
        )
    )

    record = ResourceRecord.from_service(service)

    assert record is not None
    assert record.key == ("ns", "svc-a")
    assert record.resource_version == "42"
    assert record.annotations["empty"] == ""
    assert record.raw is service


def test_record_from_service_handles_missing_annotations() -> None:
    service = SimpleNamespace(
        metadata=SimpleNamespace(namespace="ns", name="svc-a", resource_version="1", annotations=None)
    )

    record = ResourceRecord.from_service(service)

    assert record is not None
    assert record.annotations == {}


def test_record_from_service_rejects_objects_without_identity() -> None:
    assert ResourceRecord.from_service(SimpleNamespace(metadata=None)) is None
    assert (
        ResourceRecord.from_service(
            SimpleNamespace(metadata=SimpleNamespace(namespace="ns", name=None))
        )
        is None
    )


def test_event_kind() -> None:
    record = make_record()

    assert ReconcileEvent(old=None, new=record).kind == "ADDED"
    assert ReconcileEvent(old=record, new=record).kind == "UPDATED"
    assert ReconcileEvent(old=record, new=None).kind == "DELETED"
    assert ReconcileEvent(old=record, new=None).subject is record
