from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_CEILING, Decimal
from typing import Callable, Optional

from django.utils.dateparse import parse_date

from . import conf
from .dues import normalize
from .exceptions import FeedUnavailable, SessionNotSelected
from .ledger import ZERO, CollectionContext, FeeHeadLedger, opening_balance_head, to_money

logger = logging.getLogger(__name__)

TRUTHY_VALUES = {'true', '1', 'yes'}

FEED_DEFAULTS = {
    'fee_details': list,
    'fine_eligibility': dict,
    'transport_dues': dict,
    'van_receipts': list,
    'opening_balance': lambda: None,
    'routes': list,
    'last_routes': dict,
    'transport_costs': dict,
    'student_transport': dict,
}


@dataclass
class LedgerFeeds:
    """Zero-argument loaders for every read feed the ledger is merged from.

    A loader may be left as None when the caller has no such feed. Any loader may raise;
    the builder then carries on as if that feed returned nothing.
    """

    fee_details: Optional[Callable] = None
    fine_eligibility: Optional[Callable] = None
    transport_dues: Optional[Callable] = None
    van_receipts: Optional[Callable] = None
    opening_balance: Optional[Callable] = None
    routes: Optional[Callable] = None
    last_routes: Optional[Callable] = None
    transport_costs: Optional[Callable] = None
    student_transport: Optional[Callable] = None

    @classmethod
    def from_data(cls, data: dict) -> 'LedgerFeeds':
        """Wrap already-fetched feed values (a JSON document, a test fixture) as loaders."""
        loaders = {}
        for name in FEED_DEFAULTS:
            if name in data:
                loaders[name] = (lambda value: lambda: value)(data[name])
        return cls(**loaders)


def _get(row, key, default=None):
    if row is None:
        return default
    if isinstance(row, dict):
        return row.get(key, default)
    return getattr(row, key, default)


def _key(value) -> str:
    return str(value).strip()


def _flag(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in TRUTHY_VALUES
    return value is True or value == 1


def _parse_day(value) -> Optional[date]:
    if value in (None, ''):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return parse_date(str(value)[:10])
    except ValueError:
        return None


def _first_positive(*candidates) -> Decimal:
    for candidate in candidates:
        amount = to_money(candidate)
        if amount > 0:
            return amount
    return ZERO


def _load_feed(feeds: LedgerFeeds, name: str, context: CollectionContext):
    loader = getattr(feeds, name)
    default = FEED_DEFAULTS[name]()
    if loader is None:
        return default
    try:
        value = loader()
    except Exception as exc:
        error = FeedUnavailable(name, exc)
        logger.warning(
            '%s (student=%s, session=%s); continuing without it.',
            error,
            context.student_id,
            context.session_id,
        )
        return default
    if value is None:
        return default
    expected = (list, tuple) if isinstance(default, list) else dict if isinstance(default, dict) else None
    if expected and not isinstance(value, expected):
        logger.warning('%s; continuing without it.', FeedUnavailable(name, f'unexpected {type(value).__name__} payload'))
        return default
    return value


def fine_eligibility_for(eligibility: dict, head_key: str) -> bool:
    """Heads absent from the eligibility feed stay eligible."""
    if head_key not in eligibility:
        return True
    return _flag(eligibility[head_key])


def transport_name_pattern(keywords=None):
    keywords = conf.transport_head_keywords() if keywords is None else keywords
    if not keywords:
        return None
    alternatives = '|'.join(re.escape(keyword) for keyword in keywords)
    return re.compile(rf'\b(?:{alternatives})', re.IGNORECASE)


def resolve_opening_balance(value) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, dict):
        outstanding = to_money(value.get('outstanding', value.get('total_outstanding')))
        if outstanding > 0:
            return outstanding
        rows = value.get('rows') or []
        return to_money(sum((to_money(_get(row, 'amount')) for row in rows), ZERO))
    return to_money(value)


def van_receipt_totals(rows) -> dict:
    totals = {}
    for row in rows:
        head_id = _get(row, 'head_id')
        if head_id is None:
            continue
        received, concession = totals.get(_key(head_id), (ZERO, ZERO))
        totals[_key(head_id)] = (
            received + to_money(_get(row, 'received')),
            concession + to_money(_get(row, 'concession')),
        )
    return totals


def accrue_van_fine(route, route_fee: Decimal, prior_received: Decimal, as_of: date) -> Decimal:
    """Percentage-per-day late fine on the unpaid part of a route fee."""
    if route is None:
        return ZERO
    start = _parse_day(_get(route, 'fine_start_date'))
    percentage = to_money(_get(route, 'fine_percentage'))
    if start is None or percentage <= 0 or as_of <= start:
        return ZERO
    unpaid = route_fee - prior_received
    if unpaid <= 0:
        return ZERO
    overdue_days = (as_of - start).days
    accrued = unpaid * percentage * overdue_days / Decimal('100')
    return to_money(accrued.to_integral_value(rounding=ROUND_CEILING))


class HeadLedgerBuilder:
    def __init__(self, context: CollectionContext, feeds: LedgerFeeds):
        self.context = context
        self.feeds = feeds
        self.transport_pattern = transport_name_pattern()

    def build(self) -> list:
        if not self.context.session_id:
            raise SessionNotSelected()
        if not self.context.student_id:
            logger.debug('No student selected; returning an empty ledger.')
            return []

        data = {name: _load_feed(self.feeds, name, self.context) for name in FEED_DEFAULTS}

        self.eligibility = {_key(k): v for k, v in dict(data['fine_eligibility']).items()}
        self.transport_dues = {_key(k): v for k, v in dict(data['transport_dues']).items()}
        self.van_totals = van_receipt_totals(data['van_receipts'])
        self.has_prior_van = any(
            received > 0 or concession > 0 for received, concession in self.van_totals.values()
        )
        self.routes = {
            _key(_get(route, 'id')): route
            for route in data['routes']
            if _get(route, 'id') is not None
        }
        self.last_routes = {_key(k): v for k, v in dict(data['last_routes']).items() if v not in (None, '')}
        costs = data['transport_costs']
        per_head = _get(costs, 'per_head')
        self.per_head_costs = {_key(k): v for k, v in per_head.items()} if isinstance(per_head, dict) else {}
        self.global_cost = _get(costs, 'total')
        assignment = data['student_transport']
        self.assigned_route_id = _get(assignment, 'route_id') or None
        self.assigned_cost = _get(assignment, 'cost')

        ledgers = []
        opening_amount = resolve_opening_balance(data['opening_balance'])
        if opening_amount > 0:
            ledgers.append(opening_balance_head(self.context, opening_amount))

        for row in data['fee_details']:
            if _get(row, 'head_id') is None:
                continue
            if opening_amount > 0 and self._is_opening_balance_row(row):
                logger.debug('Dropping fee-detail row %s that duplicates the opening balance head.', _get(row, 'head_id'))
                continue
            ledgers.append(self._build_head(row))

        logger.debug(
            'Built %s ledger heads for student=%s session=%s (opening balance %s).',
            len(ledgers),
            self.context.student_id,
            self.context.session_id,
            opening_amount,
        )
        return ledgers

    def _is_opening_balance_row(self, row) -> bool:
        if _key(_get(row, 'head_id')) == _key(self.context.opening_balance_head_id):
            return True
        name = str(_get(row, 'head_name') or '').strip().lower()
        return name == self.context.opening_balance_head_name.strip().lower()

    def _transport_flag(self, row) -> bool:
        if _flag(_get(row, 'transport_applicable')):
            return True
        name = str(_get(row, 'head_name') or '')
        return bool(self.transport_pattern and self.transport_pattern.search(name))

    def _build_head(self, row) -> FeeHeadLedger:
        head_id = _get(row, 'head_id')
        key = _key(head_id)
        effective_due = to_money(_get(row, 'fee_due', _get(row, 'original_due')))
        original_due = to_money(_get(row, 'original_due', effective_due))

        standing_concession = ZERO
        if _get(row, 'concession_applied', True):
            standing_concession = to_money(_get(row, 'concession_amount'))

        fine_eligible = fine_eligibility_for(self.eligibility, key)
        fine_amount = to_money(_get(row, 'fine_amount')) if fine_eligible else ZERO

        due_record = self.transport_dues.get(key)
        route_id = self.last_routes.get(key) or self.assigned_route_id
        route = self.routes.get(_key(route_id)) if route_id is not None else None
        route_fee = _first_positive(
            _get(due_record, 'due'),
            self.per_head_costs.get(key),
            self.global_cost,
            _get(row, 'transport_cost'),
            _get(route, 'cost'),
            self.assigned_cost,
        )

        if key in self.van_totals:
            prior_received, prior_concession = self.van_totals[key]
        else:
            prior_received = to_money(_get(due_record, 'received'))
            prior_concession = to_money(_get(due_record, 'concession'))

        transport_applicable = self._transport_flag(row)
        if transport_applicable and not self.has_prior_van:
            transport_applicable = due_record is not None or route_fee > 0 or route_id is not None

        if _get(due_record, 'fine') is not None:
            van_fine = to_money(_get(due_record, 'fine'))
        else:
            van_fine = accrue_van_fine(route, route_fee, prior_received, self.context.as_of)

        entry = FeeHeadLedger(
            head_id=head_id,
            head_name=str(_get(row, 'head_name') or ''),
            original_due=original_due,
            effective_due=effective_due,
            standing_concession=standing_concession,
            fine_eligible=fine_eligible,
            fine_amount=fine_amount,
            transport_applicable=transport_applicable,
            route_fee=route_fee,
            prior_van_received=prior_received,
            prior_van_concession=prior_concession,
            van_fine=van_fine,
            selected_route_id=route_id,
        )
        return normalize(entry)


def build_head_ledgers(context: CollectionContext, feeds: LedgerFeeds) -> list:
    return HeadLedgerBuilder(context, feeds).build()

