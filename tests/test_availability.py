from coffee_monitor.availability import (
    NEW,
    NEWLY_AVAILABLE,
    NEWLY_UNAVAILABLE,
    UNCHANGED,
    TransitionPolicy,
    classify_transition,
)
from coffee_monitor.models import AvailabilityRecord


def record(record_id, available, checked_at):
    return AvailabilityRecord(
        id=record_id, product_id=1, available=available, price=169.0, checked_at=checked_at
    )


def test_first_sighting_available_is_new_and_newly_available():
    transition = classify_transition([record(1, True, "2024-05-01T09:00:00+00:00")])
    assert transition.is_new
    assert transition.is_newly_available
    assert not transition.is_newly_unavailable
    assert transition.kind == NEW


def test_first_sighting_unavailable_follows_policy():
    records = [record(1, False, "2024-05-01T09:00:00+00:00")]
    reported = classify_transition(records)
    assert reported.is_new
    assert reported.is_newly_unavailable
    assert reported.kind == NEWLY_UNAVAILABLE

    quiet = classify_transition(records, TransitionPolicy(report_first_unavailable=False))
    assert quiet.is_new
    assert not quiet.is_newly_unavailable
    assert quiet.kind == NEW


def test_flip_to_unavailable():
    transition = classify_transition(
        [
            record(2, False, "2024-05-02T09:00:00+00:00"),
            record(1, True, "2024-05-01T09:00:00+00:00"),
        ]
    )
    assert transition.is_newly_unavailable
    assert not transition.is_newly_available
    assert not transition.is_new


def test_flip_to_available():
    transition = classify_transition(
        [
            record(2, True, "2024-05-02T09:00:00+00:00"),
            record(1, False, "2024-05-01T09:00:00+00:00"),
        ]
    )
    assert transition.is_newly_available
    assert transition.kind == NEWLY_AVAILABLE


def test_no_flip_reports_nothing():
    transition = classify_transition(
        [
            record(2, True, "2024-05-02T09:00:00+00:00"),
            record(1, True, "2024-05-01T09:00:00+00:00"),
        ]
    )
    assert not transition.is_newly_available
    assert not transition.is_newly_unavailable
    assert transition.kind == UNCHANGED


def test_only_two_newest_records_matter():
    transition = classify_transition(
        [
            record(3, True, "2024-05-03T09:00:00+00:00"),
            record(2, True, "2024-05-02T09:00:00+00:00"),
            record(1, False, "2024-05-01T09:00:00+00:00"),
        ]
    )
    assert transition.kind == UNCHANGED


def test_no_records_is_unchanged():
    assert classify_transition([]).kind == UNCHANGED
