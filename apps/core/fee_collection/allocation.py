from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from django.core.exceptions import ValidationError

from .dues import academic_remaining, fine_remaining, normalize, transport_collectable, van_remaining
from .ledger import ZERO, FeeHeadLedger, to_money, _quantize

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AllocationResult:
    ledgers: tuple
    remainder: Decimal

    @property
    def fully_allocated(self) -> bool:
        return self.remainder <= 0


def allocation_order(ledgers) -> list:
    """Indexes of ledgers in processing order: tuition heads first, stable within each group."""
    tuition = [index for index, entry in enumerate(ledgers) if entry.is_tuition]
    others = [index for index, entry in enumerate(ledgers) if not entry.is_tuition]
    return tuition + others


def _take(need: Decimal, remaining: Decimal) -> Decimal:
    if need <= 0 or remaining <= 0:
        return ZERO
    return need if need <= remaining else remaining


def allocate_to_head(entry: FeeHeadLedger, amount: Decimal):
    """Fill one head's academic due, then its fine, then its van fee. Returns (entry, leftover)."""
    remaining = amount

    take = _take(academic_remaining(entry), remaining)
    if take > 0:
        entry = entry.updated(received=entry.received + take)
        remaining -= take

    if not entry.fine_manually_edited:
        take = _take(fine_remaining(entry), remaining)
        if take > 0:
            entry = entry.updated(fine_received=entry.fine_received + take)
            remaining -= take

    if transport_collectable(entry):
        take = _take(van_remaining(entry), remaining)
        if take > 0:
            entry = entry.updated(van_received=entry.van_received + take)
            remaining -= take

    return normalize(entry), remaining


def allocate(amount, ledgers) -> AllocationResult:
    ledgers = tuple(ledgers)
    amount = _quantize(amount)
    if amount < 0:
        raise ValidationError('Allocation amount must be greater than zero.')
    if amount == 0:
        return AllocationResult(ledgers=ledgers, remainder=ZERO)

    updated = list(ledgers)
    remaining = amount
    for index in allocation_order(updated):
        if remaining <= 0:
            break
        updated[index], remaining = allocate_to_head(updated[index], remaining)

    remaining = to_money(remaining)
    if remaining > 0:
        logger.info('%s of %s could not be allocated; no remaining dues or fines.', remaining, amount)
    return AllocationResult(ledgers=tuple(updated), remainder=remaining)


def clear_allocations(ledgers) -> tuple:
    """Zero what is being collected now; dues, eligibility, concessions and costs stay."""
    return tuple(
        normalize(
            entry.updated(
                received=ZERO,
                fine_received=ZERO,
                van_received=ZERO,
                fine_manually_edited=False,
            )
        )
        for entry in ledgers
    )
