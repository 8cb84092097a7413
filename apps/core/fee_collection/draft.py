from __future__ import annotations

import logging
from decimal import Decimal

from .allocation import allocate, clear_allocations
from .builder import LedgerFeeds, build_head_ledgers
from .dues import fine_collectable, normalize, resolve_dues, transport_collectable
from .ledger import ZERO, CollectionContext, FeeHeadLedger, to_money
from .payload import assemble_transaction_payload

logger = logging.getLogger(__name__)


def set_concession(entry: FeeHeadLedger, value) -> FeeHeadLedger:
    return normalize(entry.updated(concession_entered=to_money(value)))


def set_received(entry: FeeHeadLedger, value) -> FeeHeadLedger:
    return normalize(entry.updated(received=to_money(value)))


def set_fine_received(entry: FeeHeadLedger, value) -> FeeHeadLedger:
    if not fine_collectable(entry):
        return normalize(entry)
    return normalize(entry.updated(fine_received=to_money(value), fine_manually_edited=True))


def set_van_concession(entry: FeeHeadLedger, value) -> FeeHeadLedger:
    return normalize(entry.updated(van_concession_entered=to_money(value)))


def set_van_received(entry: FeeHeadLedger, value) -> FeeHeadLedger:
    return normalize(entry.updated(van_received=to_money(value)))


def select_route(entry: FeeHeadLedger, route_id, route_fee) -> FeeHeadLedger:
    if not transport_collectable(entry):
        return normalize(entry)
    return normalize(entry.updated(selected_route_id=route_id, route_fee=to_money(route_fee)))


EDITORS = {
    'concession': set_concession,
    'received': set_received,
    'fine_received': set_fine_received,
    'van_concession': set_van_concession,
    'van_received': set_van_received,
}


class LedgerDraft:
    """Editable ledger for the student and session open in the collection form.

    Only load() and reload() bring feed data in; read-only summary views refreshing
    in the background never write here.
    """

    def __init__(self, ledgers=(), context: CollectionContext = None, feeds: LedgerFeeds = None):
        self.context = context
        self.feeds = feeds
        self.ledgers = tuple(normalize(entry) for entry in ledgers)
        self.last_remainder = ZERO

    @classmethod
    def load(cls, context: CollectionContext, feeds: LedgerFeeds) -> 'LedgerDraft':
        return cls(build_head_ledgers(context, feeds), context=context, feeds=feeds)

    def __len__(self):
        return len(self.ledgers)

    def __iter__(self):
        return iter(self.ledgers)

    def _index(self, head_id) -> int:
        for index, entry in enumerate(self.ledgers):
            if str(entry.head_id) == str(head_id):
                return index
        raise KeyError(head_id)

    def get(self, head_id) -> FeeHeadLedger:
        return self.ledgers[self._index(head_id)]

    def dues(self, head_id):
        return resolve_dues(self.get(head_id))

    def _replace(self, index: int, entry: FeeHeadLedger) -> FeeHeadLedger:
        ledgers = list(self.ledgers)
        ledgers[index] = entry
        self.ledgers = tuple(ledgers)
        return entry

    def edit(self, head_id, field: str, value) -> FeeHeadLedger:
        editor = EDITORS.get(field)
        if editor is None:
            raise ValueError(f"Unknown ledger field '{field}'.")
        index = self._index(head_id)
        return self._replace(index, editor(self.ledgers[index], value))

    def select_route(self, head_id, route_id, route_fee) -> FeeHeadLedger:
        index = self._index(head_id)
        return self._replace(index, select_route(self.ledgers[index], route_id, route_fee))

    def apply_amount(self, amount) -> Decimal:
        result = allocate(amount, self.ledgers)
        self.ledgers = result.ledgers
        self.last_remainder = result.remainder
        return result.remainder

    def clear_allocations(self):
        self.ledgers = clear_allocations(self.ledgers)
        self.last_remainder = ZERO

    def reload(self):
        if self.context is None or self.feeds is None:
            raise ValueError('Draft was not loaded from feeds; nothing to reload.')
        self.ledgers = tuple(build_head_ledgers(self.context, self.feeds))
        self.last_remainder = ZERO
        logger.debug(
            'Reloaded draft for student=%s session=%s.',
            self.context.student_id,
            self.context.session_id,
        )

    def discard(self):
        self.ledgers = ()
        self.last_remainder = ZERO

    def payable_now(self) -> Decimal:
        return sum((resolve_dues(entry).payable_now for entry in self.ledgers), ZERO)

    def totals(self) -> dict:
        fee_received = sum((entry.received for entry in self.ledgers), ZERO)
        van_received = sum((entry.van_received for entry in self.ledgers), ZERO)
        fine_received = sum((entry.fine_received for entry in self.ledgers), ZERO)
        concessions = sum(
            (entry.concession_entered + entry.van_concession_entered for entry in self.ledgers),
            ZERO,
        )
        return {
            'fee_received': fee_received,
            'van_received': van_received,
            'concessions': concessions,
            'fine_received': fine_received,
            'grand_total': fee_received + van_received + fine_received,
        }

    def to_payload(self, *, student, payment) -> dict:
        return assemble_transaction_payload(self.ledgers, student=student, payment=payment)
