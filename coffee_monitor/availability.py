from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from .models import AvailabilityRecord

NEW = "new"
NEWLY_AVAILABLE = "newly_available"
NEWLY_UNAVAILABLE = "newly_unavailable"
UNCHANGED = "unchanged"


@dataclass(frozen=True)
class TransitionPolicy:
    # A product whose very first record is unavailable is reported as
    # newly unavailable. Turn off to report it as unchanged instead.
    report_first_unavailable: bool = True


@dataclass(frozen=True)
class Transition:
    is_new: bool = False
    is_newly_available: bool = False
    is_newly_unavailable: bool = False

    @property
    def kind(self) -> str:
        if self.is_new and self.is_newly_available:
            return NEW
        if self.is_newly_available:
            return NEWLY_AVAILABLE
        if self.is_newly_unavailable:
            return NEWLY_UNAVAILABLE
        if self.is_new:
            return NEW
        return UNCHANGED


def first_sighting_transition(
    record: AvailabilityRecord, policy: TransitionPolicy
) -> Transition:
    if record.available:
        return Transition(is_new=True, is_newly_available=True)
    return Transition(
        is_new=True,
        is_newly_unavailable=policy.report_first_unavailable,
    )


def classify_transition(
    records: Sequence[AvailabilityRecord],
    policy: TransitionPolicy = TransitionPolicy(),
) -> Transition:
    """Classify the newest record against the one before it.

    ``records`` is newest first and must include the record just written.
    """
    if not records:
        return Transition()
    if len(records) == 1:
        return first_sighting_transition(records[0], policy)
    current, previous = records[0], records[1]
    if current.available and not previous.available:
        return Transition(is_newly_available=True)
    if not current.available and previous.available:
        return Transition(is_newly_unavailable=True)
    return Transition()
