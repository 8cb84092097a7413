from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from .ledger import ZERO, FeeHeadLedger


def _floor_zero(value: Decimal) -> Decimal:
    return value if value > 0 else ZERO


@dataclass(frozen=True)
class HeadDues:
    academic_remaining: Decimal
    fine_remaining: Decimal
    van_base_without_fine: Decimal
    van_remaining: Decimal

    @property
    def payable_now(self) -> Decimal:
        return self.academic_remaining + self.fine_remaining + self.van_remaining


def academic_ceiling(entry: FeeHeadLedger) -> Decimal:
    return _floor_zero(entry.effective_due - entry.concession_entered)


def academic_remaining(entry: FeeHeadLedger) -> Decimal:
    return _floor_zero(entry.effective_due - entry.received - entry.concession_entered)


def fine_collectable(entry: FeeHeadLedger) -> bool:
    return entry.fine_eligible and not entry.is_opening_balance


def fine_remaining(entry: FeeHeadLedger) -> Decimal:
    if not fine_collectable(entry):
        return ZERO
    return _floor_zero(entry.fine_amount - entry.fine_received)


def transport_collectable(entry: FeeHeadLedger) -> bool:
    return entry.transport_applicable and not entry.is_opening_balance


def van_concession_ceiling(entry: FeeHeadLedger) -> Decimal:
    return _floor_zero(entry.route_fee - entry.prior_van_received - entry.prior_van_concession)


def van_base_without_fine(entry: FeeHeadLedger) -> Decimal:
    return _floor_zero(van_concession_ceiling(entry) - entry.van_concession_entered)


def van_ceiling(entry: FeeHeadLedger) -> Decimal:
    if not transport_collectable(entry):
        return ZERO
    return van_base_without_fine(entry) + entry.van_fine


def van_remaining(entry: FeeHeadLedger) -> Decimal:
    if not transport_collectable(entry):
        return ZERO
    return _floor_zero(van_ceiling(entry) - entry.van_received)


def payable_now(entry: FeeHeadLedger) -> Decimal:
    return academic_remaining(entry) + fine_remaining(entry) + van_remaining(entry)


def resolve_dues(entry: FeeHeadLedger) -> HeadDues:
    return HeadDues(
        academic_remaining=academic_remaining(entry),
        fine_remaining=fine_remaining(entry),
        van_base_without_fine=van_base_without_fine(entry) if transport_collectable(entry) else ZERO,
        van_remaining=van_remaining(entry),
    )


def normalize(entry: FeeHeadLedger) -> FeeHeadLedger:
    """Clamp every collected and entered figure into its current ceiling.

    Ceilings only ever pull values down: raising a concession shrinks the amount
    already entered against that component.
    """
    changes = {}

    concession = min(entry.concession_entered, entry.effective_due)
    received = min(entry.received, _floor_zero(entry.effective_due - concession))
    if entry.is_opening_balance:
        concession = ZERO
        received = min(entry.received, entry.effective_due)
    changes['concession_entered'] = concession
    changes['received'] = received

    if fine_collectable(entry):
        changes['fine_received'] = min(entry.fine_received, entry.fine_amount)
    else:
        changes['fine_received'] = ZERO
        changes['fine_manually_edited'] = False
        if entry.is_opening_balance:
            changes['fine_eligible'] = False
            changes['fine_amount'] = ZERO

    if transport_collectable(entry):
        van_concession = min(entry.van_concession_entered, van_concession_ceiling(entry))
        clamped = entry.updated(van_concession_entered=van_concession)
        changes['van_concession_entered'] = van_concession
        changes['van_received'] = min(entry.van_received, van_ceiling(clamped))
    else:
        changes.update(
            transport_applicable=False,
            route_fee=ZERO,
            prior_van_received=ZERO,
            prior_van_concession=ZERO,
            van_concession_entered=ZERO,
            van_received=ZERO,
            van_fine=ZERO,
            selected_route_id=None,
        )

    if all(getattr(entry, name) == value for name, value in changes.items()):
        return entry
    return entry.updated(**changes)
