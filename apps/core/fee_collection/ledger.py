from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import date
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional

from django.utils import timezone

from . import conf

ZERO = Decimal('0.00')

MONEY_FIELDS = (
    'original_due',
    'effective_due',
    'standing_concession',
    'concession_entered',
    'received',
    'fine_amount',
    'fine_received',
    'route_fee',
    'prior_van_received',
    'prior_van_concession',
    'van_concession_entered',
    'van_received',
    'van_fine',
)


def _to_decimal(value) -> Decimal:
    if isinstance(value, bool):
        return ZERO
    try:
        amount = Decimal(str(value if value not in (None, '') else '0').strip())
    except (InvalidOperation, ValueError, TypeError):
        return ZERO
    if not amount.is_finite():
        return ZERO
    return amount


def _quantize(value) -> Decimal:
    return _to_decimal(value).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)


def to_money(value) -> Decimal:
    """Coerce feed or operator input into a non-negative two-place amount."""
    amount = _quantize(value)
    return amount if amount > 0 else ZERO


@dataclass(frozen=True)
class FeeHeadLedger:
    head_id: object
    head_name: str = ''
    is_opening_balance: bool = False

    original_due: Decimal = ZERO
    effective_due: Decimal = ZERO
    standing_concession: Decimal = ZERO
    concession_entered: Decimal = ZERO
    received: Decimal = ZERO

    fine_eligible: bool = True
    fine_amount: Decimal = ZERO
    fine_received: Decimal = ZERO
    fine_manually_edited: bool = False

    transport_applicable: bool = False
    route_fee: Decimal = ZERO
    prior_van_received: Decimal = ZERO
    prior_van_concession: Decimal = ZERO
    van_concession_entered: Decimal = ZERO
    van_received: Decimal = ZERO
    van_fine: Decimal = ZERO
    selected_route_id: Optional[object] = None

    def __post_init__(self):
        for name in MONEY_FIELDS:
            object.__setattr__(self, name, to_money(getattr(self, name)))

    @property
    def is_tuition(self) -> bool:
        return bool(conf.tuition_head_pattern().search(str(self.head_name or '')))

    def updated(self, **changes) -> 'FeeHeadLedger':
        return replace(self, **changes)

    def as_dict(self) -> dict:
        return {item.name: getattr(self, item.name) for item in fields(self)}


@dataclass(frozen=True)
class CollectionContext:
    """Student, session and date a ledger is built for."""

    student_id: Optional[object] = None
    session_id: Optional[object] = None
    opening_balance_head_id: Optional[object] = None
    opening_balance_head_name: Optional[str] = None
    as_of: date = field(default_factory=timezone.localdate)

    def __post_init__(self):
        if self.opening_balance_head_id is None:
            object.__setattr__(self, 'opening_balance_head_id', conf.opening_balance_head_id())
        if not self.opening_balance_head_name:
            object.__setattr__(self, 'opening_balance_head_name', conf.opening_balance_head_name())


def opening_balance_head(context: CollectionContext, amount) -> FeeHeadLedger:
    amount = to_money(amount)
    return FeeHeadLedger(
        head_id=context.opening_balance_head_id,
        head_name=context.opening_balance_head_name,
        is_opening_balance=True,
        original_due=amount,
        effective_due=amount,
        fine_eligible=False,
    )
