import json
import os
import random
import tempfile
from datetime import date
from decimal import Decimal
from io import StringIO

from django.core.exceptions import ValidationError
from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import SimpleTestCase, override_settings

from .allocation import allocate, allocation_order, clear_allocations
from .builder import LedgerFeeds, build_head_ledgers, resolve_opening_balance
from .draft import LedgerDraft, set_concession, set_fine_received, set_received, set_van_concession, set_van_received
from .dues import payable_now, resolve_dues, van_base_without_fine
from .exceptions import SessionNotSelected
from .forms import PaymentDetailsForm, QuickAllocateForm
from .ledger import CollectionContext, FeeHeadLedger, opening_balance_head, to_money
from .payload import MODE_CASH, MODE_ONLINE, PaymentDetails, StudentIdentity, assemble_transaction_payload


def head(head_id, name, due, **kwargs):
    return FeeHeadLedger(head_id=head_id, head_name=name, original_due=due, effective_due=due, **kwargs)


def van_head(head_id=7, name='Transport Fee', **kwargs):
    values = {
        'transport_applicable': True,
        'route_fee': Decimal('1000'),
        'prior_van_received': Decimal('200'),
        'van_concession_entered': Decimal('100'),
        'van_fine': Decimal('50'),
        'selected_route_id': 3,
    }
    values.update(kwargs)
    return FeeHeadLedger(head_id=head_id, head_name=name, **values)


class LedgerValueTests(SimpleTestCase):
    def test_money_inputs_are_coerced_to_non_negative_amounts(self):
        self.assertEqual(to_money('250.456'), Decimal('250.46'))
        self.assertEqual(to_money('abc'), Decimal('0.00'))
        self.assertEqual(to_money(float('nan')), Decimal('0.00'))
        self.assertEqual(to_money('Infinity'), Decimal('0.00'))
        self.assertEqual(to_money(-40), Decimal('0.00'))
        self.assertEqual(to_money(None), Decimal('0.00'))

    def test_ledger_fields_never_hold_negative_or_nan(self):
        entry = head(1, 'Library', 'NaN', received=-5, fine_amount='12.5')
        self.assertEqual(entry.effective_due, Decimal('0.00'))
        self.assertEqual(entry.received, Decimal('0.00'))
        self.assertEqual(entry.fine_amount, Decimal('12.50'))

    def test_tuition_match_is_case_insensitive(self):
        self.assertTrue(head(1, 'TUITION FEE April', 100).is_tuition)
        self.assertFalse(head(2, 'Library', 100).is_tuition)

    @override_settings(FEE_TUITION_HEAD_PATTERN=r'^school\b')
    def test_tuition_pattern_comes_from_settings(self):
        self.assertTrue(head(1, 'School Fee', 100).is_tuition)
        self.assertFalse(head(2, 'Tuition', 100).is_tuition)

    @override_settings(FEE_OPENING_BALANCE_HEAD_ID='ob', FEE_OPENING_BALANCE_HEAD_NAME='Old Dues')
    def test_context_defaults_opening_balance_head_from_settings(self):
        context = CollectionContext(student_id=1, session_id=2)
        entry = opening_balance_head(context, 300)
        self.assertEqual(entry.head_id, 'ob')
        self.assertEqual(entry.head_name, 'Old Dues')
        self.assertTrue(entry.is_opening_balance)
        self.assertFalse(entry.fine_eligible)


class DueResolverTests(SimpleTestCase):
    def test_academic_remaining_subtracts_received_and_concession(self):
        entry = head(1, 'Tuition', 1000, received=300, concession_entered=200)
        self.assertEqual(resolve_dues(entry).academic_remaining, Decimal('500.00'))

    def test_fine_remaining_only_for_eligible_heads(self):
        eligible = head(1, 'Tuition', 0, fine_amount=80, fine_received=30)
        ineligible = head(2, 'Exam', 0, fine_amount=80, fine_eligible=False)
        self.assertEqual(resolve_dues(eligible).fine_remaining, Decimal('50.00'))
        self.assertEqual(resolve_dues(ineligible).fine_remaining, Decimal('0.00'))

    def test_van_remaining_example(self):
        entry = van_head()
        dues = resolve_dues(entry)
        self.assertEqual(van_base_without_fine(entry), Decimal('700.00'))
        self.assertEqual(dues.van_remaining, Decimal('750.00'))

    def test_van_remaining_zero_when_not_applicable(self):
        entry = van_head(transport_applicable=False)
        self.assertEqual(resolve_dues(entry).van_remaining, Decimal('0.00'))

    def test_payable_now_sums_all_components(self):
        entry = van_head(effective_due=Decimal('400'), fine_amount=Decimal('25'))
        self.assertEqual(payable_now(entry), Decimal('1175.00'))
        self.assertEqual(resolve_dues(entry).payable_now, Decimal('1175.00'))

    def test_opening_balance_exposes_only_academic_component(self):
        context = CollectionContext(student_id=1, session_id=1)
        entry = opening_balance_head(context, 300).updated(fine_amount=50, fine_eligible=True)
        dues = resolve_dues(entry)
        self.assertEqual(dues.academic_remaining, Decimal('300.00'))
        self.assertEqual(dues.fine_remaining, Decimal('0.00'))
        self.assertEqual(dues.van_remaining, Decimal('0.00'))


class LedgerEditTests(SimpleTestCase):
    def test_received_is_clamped_to_due_minus_concession(self):
        entry = set_received(head(1, 'Tuition', 1000, concession_entered=150), 2000)
        self.assertEqual(entry.received, Decimal('850.00'))

    def test_raising_concession_shrinks_received(self):
        entry = set_received(head(1, 'Tuition', 1000), 800)
        entry = set_concession(entry, 300)
        self.assertEqual(entry.concession_entered, Decimal('300.00'))
        self.assertEqual(entry.received, Decimal('700.00'))

    def test_concession_cannot_exceed_effective_due(self):
        entry = set_concession(head(1, 'Tuition', 400), 900)
        self.assertEqual(entry.concession_entered, Decimal('400.00'))

    def test_van_received_clamps_to_base_plus_fine(self):
        entry = set_van_received(van_head(), 800)
        self.assertEqual(entry.van_received, Decimal('750.00'))

    def test_raising_van_concession_shrinks_van_received(self):
        entry = set_van_received(van_head(), 750)
        entry = set_van_concession(entry, 500)
        self.assertEqual(entry.van_received, Decimal('350.00'))

    def test_fine_edit_marks_manual_and_clamps(self):
        entry = set_fine_received(head(1, 'Tuition', 100, fine_amount=40), 90)
        self.assertEqual(entry.fine_received, Decimal('40.00'))
        self.assertTrue(entry.fine_manually_edited)

    def test_fine_edit_ignored_for_ineligible_head(self):
        entry = set_fine_received(head(1, 'Tuition', 100, fine_amount=40, fine_eligible=False), 20)
        self.assertEqual(entry.fine_received, Decimal('0.00'))
        self.assertFalse(entry.fine_manually_edited)

    def test_invariants_hold_after_any_edit_sequence(self):
        rng = random.Random(2026)
        editors = [set_concession, set_received, set_fine_received, set_van_concession, set_van_received]
        entries = [
            head(1, 'Tuition', 1200, fine_amount=60),
            van_head(effective_due=Decimal('300'), fine_amount=Decimal('20')),
            head(3, 'Exam', 500, fine_amount=30, fine_eligible=False),
        ]
        for _ in range(300):
            index = rng.randrange(len(entries))
            editor = rng.choice(editors)
            entries[index] = editor(entries[index], rng.randint(-50, 1500))
            for entry in entries:
                self.assertLessEqual(entry.received + entry.concession_entered, entry.effective_due)
                self.assertLessEqual(entry.fine_received, entry.fine_amount)
                if not entry.fine_eligible:
                    self.assertEqual(entry.fine_received, Decimal('0.00'))
                if entry.transport_applicable:
                    self.assertLessEqual(entry.van_received, van_base_without_fine(entry) + entry.van_fine)
                else:
                    self.assertEqual(entry.van_received, Decimal('0.00'))


class AllocationTests(SimpleTestCase):
    def test_allocates_tuition_then_other_heads(self):
        ledgers = [head(1, 'Tuition', 500), head(2, 'Library', 200)]
        result = allocate(600, ledgers)
        self.assertEqual(result.ledgers[0].received, Decimal('500.00'))
        self.assertEqual(result.ledgers[1].received, Decimal('100.00'))
        self.assertEqual(result.remainder, Decimal('0.00'))
        self.assertTrue(result.fully_allocated)

    def test_tuition_heads_filled_before_earlier_non_tuition_heads(self):
        ledgers = [head(1, 'Library', 200), head(2, 'Tuition Fee April', 500), head(3, 'Tuition Fee May', 500)]
        self.assertEqual(allocation_order(ledgers), [1, 2, 0])

        result = allocate(700, ledgers)
        self.assertEqual([entry.head_id for entry in result.ledgers], [1, 2, 3])
        self.assertEqual(result.ledgers[0].received, Decimal('0.00'))
        self.assertEqual(result.ledgers[1].received, Decimal('500.00'))
        self.assertEqual(result.ledgers[2].received, Decimal('200.00'))

    def test_opening_balance_head_takes_amount_before_other_non_tuition_heads(self):
        context = CollectionContext(student_id=1, session_id=1)
        ledgers = [opening_balance_head(context, 300), head(2, 'Library', 200)]
        result = allocate(100, ledgers)
        self.assertEqual(result.ledgers[0].received, Decimal('100.00'))
        self.assertEqual(resolve_dues(result.ledgers[0]).academic_remaining, Decimal('200.00'))
        self.assertEqual(result.ledgers[1].received, Decimal('0.00'))

    def test_opening_balance_head_follows_tuition_heads(self):
        context = CollectionContext(student_id=1, session_id=1)
        ledgers = [opening_balance_head(context, 300), head(2, 'Tuition', 500), head(3, 'Library', 200)]
        result = allocate(600, ledgers)
        self.assertEqual(result.ledgers[1].received, Decimal('500.00'))
        self.assertEqual(result.ledgers[0].received, Decimal('100.00'))
        self.assertEqual(result.ledgers[2].received, Decimal('0.00'))

    def test_head_due_then_its_fine_then_its_van_fee(self):
        ledgers = [
            van_head(1, 'Tuition Transport', effective_due=Decimal('100'), fine_amount=Decimal('20')),
            head(2, 'Library', 50),
        ]
        result = allocate(900, ledgers)
        first = result.ledgers[0]
        self.assertEqual(first.received, Decimal('100.00'))
        self.assertEqual(first.fine_received, Decimal('20.00'))
        self.assertEqual(first.van_received, Decimal('750.00'))
        self.assertEqual(result.ledgers[1].received, Decimal('30.00'))

    def test_manually_edited_fine_is_never_touched(self):
        entry = set_fine_received(head(1, 'Tuition', 100, fine_amount=40), 5)
        result = allocate(1000, [entry])
        self.assertEqual(result.ledgers[0].fine_received, Decimal('5.00'))
        self.assertEqual(result.ledgers[0].received, Decimal('100.00'))
        self.assertEqual(result.remainder, Decimal('900.00'))

    def test_ineligible_fine_is_skipped(self):
        result = allocate(500, [head(1, 'Exam', 100, fine_amount=40, fine_eligible=False)])
        self.assertEqual(result.ledgers[0].fine_received, Decimal('0.00'))
        self.assertEqual(result.remainder, Decimal('400.00'))

    def test_unplaced_amount_is_returned_and_logged(self):
        with self.assertLogs('apps.core.fee_collection.allocation', level='INFO') as logs:
            result = allocate(1000, [head(1, 'Tuition', 500), head(2, 'Library', 200)])
        self.assertEqual(result.remainder, Decimal('300.00'))
        self.assertFalse(result.fully_allocated)
        self.assertIn('300.00', logs.output[0])

    def test_zero_amount_is_a_no_op(self):
        ledgers = (head(1, 'Tuition', 500, received=20), head(2, 'Library', 200))
        result = allocate(0, ledgers)
        self.assertEqual(result.ledgers, ledgers)
        self.assertEqual(result.remainder, Decimal('0.00'))

    def test_negative_amount_is_rejected(self):
        with self.assertRaises(ValidationError):
            allocate(-10, [head(1, 'Tuition', 500)])

    def test_split_allocation_matches_combined_allocation(self):
        ledgers = [
            head(1, 'Library', 200, fine_amount=10),
            head(2, 'Tuition', 500, fine_amount=25),
            van_head(3, 'Transport Fee'),
        ]
        first = allocate(300, ledgers)
        second = allocate(400, first.ledgers)
        combined = allocate(700, ledgers)
        self.assertEqual(second.ledgers, combined.ledgers)
        self.assertEqual(second.remainder, combined.remainder)

    def test_clear_then_allocate_is_deterministic(self):
        ledgers = [
            head(1, 'Tuition', 500, concession_entered=50),
            van_head(2, 'Transport Fee', fine_amount=Decimal('15')),
        ]
        once = allocate(800, ledgers)
        cleared = clear_allocations(once.ledgers)
        again = allocate(800, cleared)
        self.assertEqual(once.ledgers, again.ledgers)
        self.assertEqual(cleared[0].concession_entered, Decimal('50.00'))
        self.assertEqual(cleared[1].route_fee, Decimal('1000.00'))
        self.assertEqual(cleared[1].van_received, Decimal('0.00'))
        self.assertEqual(cleared[0].received, Decimal('0.00'))


class FeesFeedTestCase(SimpleTestCase):
    def setUp(self):
        self.context = CollectionContext(student_id=41, session_id='2026-27', as_of=date(2026, 5, 11))
        self.fee_details = [
            {'head_id': 1, 'head_name': 'Tuition Fee April', 'original_due': 1500, 'fee_due': 1200,
             'concession_amount': 300, 'concession_applied': True, 'fine_amount': 50},
            {'head_id': 2, 'head_name': 'Library Fee', 'original_due': 300, 'fee_due': 300, 'fine_amount': 20},
            {'head_id': 5, 'head_name': 'Transport Fee', 'original_due': 0, 'fee_due': 0},
        ]

    def feeds(self, **overrides):
        data = {'fee_details': self.fee_details}
        data.update(overrides)
        return LedgerFeeds.from_data(data)

    def build(self, **overrides):
        return build_head_ledgers(self.context, self.feeds(**overrides))

    def by_id(self, ledgers):
        return {str(entry.head_id): entry for entry in ledgers}


class HeadLedgerBuilderTests(FeesFeedTestCase):
    def test_session_is_required(self):
        context = CollectionContext(student_id=41, session_id=None)
        with self.assertRaises(SessionNotSelected):
            build_head_ledgers(context, self.feeds())

    def test_missing_student_gives_empty_ledger(self):
        context = CollectionContext(student_id=None, session_id='2026-27')
        self.assertEqual(build_head_ledgers(context, self.feeds()), [])

    def test_academic_fields_come_from_fee_details(self):
        tuition = self.by_id(self.build())['1']
        self.assertEqual(tuition.original_due, Decimal('1500.00'))
        self.assertEqual(tuition.effective_due, Decimal('1200.00'))
        self.assertEqual(tuition.standing_concession, Decimal('300.00'))
        self.assertEqual(tuition.received, Decimal('0.00'))

    def test_fine_eligibility_defaults_to_true(self):
        heads = self.by_id(self.build(fine_eligibility={'2': 'false', 5: '1'}))
        self.assertTrue(heads['1'].fine_eligible)
        self.assertEqual(heads['1'].fine_amount, Decimal('50.00'))
        self.assertFalse(heads['2'].fine_eligible)
        self.assertEqual(heads['2'].fine_amount, Decimal('0.00'))
        self.assertTrue(heads['5'].fine_eligible)

    def test_failed_feed_is_logged_and_treated_as_empty(self):
        def broken():
            raise ConnectionError('eligibility service down')

        feeds = self.feeds()
        feeds.fine_eligibility = broken
        with self.assertLogs('apps.core.fee_collection.builder', level='WARNING') as logs:
            ledgers = build_head_ledgers(self.context, feeds)
        self.assertEqual(len(ledgers), 3)
        self.assertTrue(all(entry.fine_eligible for entry in ledgers))
        self.assertIn("Feed 'fine_eligibility' is unavailable", logs.output[0])

    def test_failed_fee_details_feed_gives_empty_ledger(self):
        def broken():
            raise TimeoutError('timed out')

        with self.assertLogs('apps.core.fee_collection.builder', level='WARNING'):
            ledgers = build_head_ledgers(self.context, LedgerFeeds(fee_details=broken))
        self.assertEqual(ledgers, [])

    def test_malformed_feed_payload_is_ignored(self):
        with self.assertLogs('apps.core.fee_collection.builder', level='WARNING'):
            ledgers = self.build(transport_dues=['not', 'a', 'map'])
        self.assertEqual(len(ledgers), 3)

    def test_opening_balance_head_is_synthesized_first(self):
        details = self.fee_details + [{'head_id': 99, 'head_name': 'previous balance', 'fee_due': 10}]
        ledgers = self.build(fee_details=details, opening_balance=450)
        self.assertTrue(ledgers[0].is_opening_balance)
        self.assertEqual(ledgers[0].effective_due, Decimal('450.00'))
        self.assertEqual(sum(1 for entry in ledgers if entry.is_opening_balance), 1)
        self.assertNotIn('99', self.by_id(ledgers))

    def test_previous_balance_row_kept_when_no_opening_balance_head(self):
        details = [
            {'head_id': 99, 'head_name': 'Previous Balance', 'fee_due': 700},
            {'head_id': 2, 'head_name': 'Library Fee', 'fee_due': 100},
        ]

        def broken():
            raise RuntimeError('down')

        feeds = self.feeds(fee_details=details)
        feeds.opening_balance = broken
        with self.assertLogs('apps.core.fee_collection.builder', level='WARNING'):
            ledgers = build_head_ledgers(self.context, feeds)
        self.assertEqual(len(ledgers), 2)
        self.assertEqual(self.by_id(ledgers)['99'].effective_due, Decimal('700.00'))

        ledgers = self.build(fee_details=details, opening_balance=0)
        self.assertEqual([str(entry.head_id) for entry in ledgers], ['99', '2'])

    def test_non_text_head_name_is_read_as_text(self):
        ledgers = self.build(fee_details=[{'head_id': 1, 'head_name': 2026, 'fee_due': 100}])
        self.assertEqual(ledgers[0].head_name, '2026')
        self.assertFalse(ledgers[0].is_tuition)
        self.assertEqual(ledgers[0].effective_due, Decimal('100.00'))

    def test_opening_balance_omitted_when_nothing_outstanding(self):
        self.assertFalse(any(entry.is_opening_balance for entry in self.build(opening_balance=0)))
        self.assertFalse(any(entry.is_opening_balance for entry in self.build(opening_balance=None)))

    def test_opening_balance_falls_back_to_rows(self):
        self.assertEqual(resolve_opening_balance({'outstanding': 250}), Decimal('250.00'))
        self.assertEqual(
            resolve_opening_balance({'outstanding': None, 'rows': [{'amount': 100}, {'amount': '50.5'}]}),
            Decimal('150.50'),
        )
        self.assertEqual(resolve_opening_balance(-20), Decimal('0.00'))


class TransportResolutionTests(FeesFeedTestCase):
    def test_transport_head_without_signal_is_not_offered(self):
        transport = self.by_id(self.build())['5']
        self.assertFalse(transport.transport_applicable)
        self.assertEqual(transport.route_fee, Decimal('0.00'))

    def test_transport_head_with_assigned_route_is_offered(self):
        routes = [{'id': 3, 'cost': 900}]
        transport = self.by_id(self.build(routes=routes, student_transport={'route_id': 3}))['5']
        self.assertTrue(transport.transport_applicable)
        self.assertEqual(transport.route_fee, Decimal('900.00'))
        self.assertEqual(transport.selected_route_id, 3)

    def test_prior_van_transactions_use_flag_without_inference(self):
        receipts = [{'head_id': 9, 'received': 400}]
        transport = self.by_id(self.build(van_receipts=receipts))['5']
        self.assertTrue(transport.transport_applicable)
        self.assertEqual(transport.route_fee, Decimal('0.00'))

    def test_explicit_flag_and_keyword_matching(self):
        details = [
            {'head_id': 1, 'head_name': 'Tuition', 'fee_due': 100, 'transport_applicable': 'Yes'},
            {'head_id': 2, 'head_name': 'Van Charges', 'fee_due': 0},
            {'head_id': 3, 'head_name': 'Advance Fee', 'fee_due': 100},
        ]
        receipts = [{'head_id': 1, 'received': 100}]
        heads = self.by_id(self.build(fee_details=details, van_receipts=receipts))
        self.assertTrue(heads['1'].transport_applicable)
        self.assertTrue(heads['2'].transport_applicable)
        self.assertFalse(heads['3'].transport_applicable)

    def test_keyword_matches_start_of_longer_head_names(self):
        details = [{'head_id': 8, 'head_name': 'Transportation Fee', 'fee_due': 0}]
        transport = self.build(fee_details=details, student_transport={'route_id': 3, 'cost': 900})[0]
        self.assertTrue(transport.transport_applicable)
        self.assertEqual(transport.route_fee, Decimal('900.00'))

    def test_route_fee_fallback_chain(self):
        detail = {'head_id': 5, 'head_name': 'Transport Fee', 'fee_due': 0, 'transport_cost': 600}
        routes = [{'id': 3, 'cost': 500}]
        base = {
            'fee_details': [detail],
            'transport_dues': {'5': {'due': 900}},
            'transport_costs': {'per_head': {'5': 700}, 'total': 650},
            'routes': routes,
            'student_transport': {'route_id': 3, 'cost': 400},
        }
        self.assertEqual(self.build(**base)[0].route_fee, Decimal('900.00'))

        without_due = dict(base, transport_dues={})
        self.assertEqual(self.build(**without_due)[0].route_fee, Decimal('700.00'))

        global_only = dict(without_due, transport_costs={'total': 650})
        self.assertEqual(self.build(**global_only)[0].route_fee, Decimal('650.00'))

        embedded = dict(global_only, transport_costs={})
        self.assertEqual(self.build(**embedded)[0].route_fee, Decimal('600.00'))

        route_cost = dict(embedded, fee_details=[dict(detail, transport_cost=None)])
        self.assertEqual(self.build(**route_cost)[0].route_fee, Decimal('500.00'))

        assigned_cost = dict(route_cost, routes=[])
        self.assertEqual(self.build(**assigned_cost)[0].route_fee, Decimal('400.00'))

    def test_prior_van_figures_fall_back_to_transport_due_record(self):
        dues = {'5': {'due': 1000, 'received': 300, 'concession': 100, 'remaining_before_fine': 600, 'fine': 25}}
        transport = self.by_id(self.build(transport_dues=dues))['5']
        self.assertTrue(transport.transport_applicable)
        self.assertEqual(transport.prior_van_received, Decimal('300.00'))
        self.assertEqual(transport.prior_van_concession, Decimal('100.00'))
        self.assertEqual(transport.van_fine, Decimal('25.00'))
        self.assertEqual(resolve_dues(transport).van_remaining, Decimal('625.00'))

    def test_van_receipts_are_summed_per_head(self):
        receipts = [
            {'head_id': 5, 'received': 200, 'concession': 50},
            {'head_id': 5, 'received': 100},
        ]
        transport = self.by_id(self.build(van_receipts=receipts, transport_costs={'total': 1000}))['5']
        self.assertEqual(transport.prior_van_received, Decimal('300.00'))
        self.assertEqual(transport.prior_van_concession, Decimal('50.00'))

    def test_van_fine_accrues_from_route_fine_parameters(self):
        routes = [{'id': 2, 'cost': 1000, 'fine_start_date': '2026-05-01', 'fine_percentage': 1}]
        transport = self.by_id(self.build(
            routes=routes,
            last_routes={'5': 2},
            van_receipts=[{'head_id': 5, 'received': 200}],
        ))['5']
        self.assertEqual(transport.route_fee, Decimal('1000.00'))
        self.assertEqual(transport.van_fine, Decimal('80.00'))

    def test_no_van_fine_before_fine_start(self):
        routes = [{'id': 2, 'cost': 1000, 'fine_start_date': '2026-06-01T00:00:00', 'fine_percentage': 2}]
        transport = self.by_id(self.build(routes=routes, last_routes={'5': 2}))['5']
        self.assertEqual(transport.van_fine, Decimal('0.00'))


class LedgerDraftTests(FeesFeedTestCase):
    def test_draft_is_not_overwritten_by_feed_changes_until_reload(self):
        data = {'fee_details': [dict(row) for row in self.fee_details]}
        feeds = LedgerFeeds(fee_details=lambda: data['fee_details'])
        draft = LedgerDraft.load(self.context, feeds)
        draft.edit(1, 'received', 500)

        data['fee_details'][0]['fee_due'] = 100
        self.assertEqual(draft.get(1).effective_due, Decimal('1200.00'))
        self.assertEqual(draft.get(1).received, Decimal('500.00'))

        draft.reload()
        self.assertEqual(draft.get(1).effective_due, Decimal('100.00'))
        self.assertEqual(draft.get(1).received, Decimal('0.00'))

    def test_apply_amount_and_totals(self):
        draft = LedgerDraft.load(self.context, self.feeds(opening_balance=200))
        remainder = draft.apply_amount(1500)
        self.assertEqual(remainder, Decimal('0.00'))
        self.assertEqual(draft.get(1).received, Decimal('1200.00'))
        self.assertEqual(draft.get(1).fine_received, Decimal('50.00'))
        self.assertEqual(draft.get('opening-balance').received, Decimal('200.00'))
        self.assertEqual(draft.get(2).received, Decimal('50.00'))

        draft.edit(2, 'concession', 100)
        totals = draft.totals()
        self.assertEqual(totals['fee_received'], Decimal('1450.00'))
        self.assertEqual(totals['fine_received'], Decimal('50.00'))
        self.assertEqual(totals['concessions'], Decimal('100.00'))
        self.assertEqual(totals['grand_total'], Decimal('1500.00'))

    def test_remainder_is_kept_on_the_draft(self):
        draft = LedgerDraft([head(1, 'Tuition', 100)])
        self.assertEqual(draft.apply_amount(150), Decimal('50.00'))
        self.assertEqual(draft.last_remainder, Decimal('50.00'))
        draft.clear_allocations()
        self.assertEqual(draft.last_remainder, Decimal('0.00'))
        self.assertEqual(draft.payable_now(), Decimal('100.00'))

    def test_unknown_head_or_field(self):
        draft = LedgerDraft([head(1, 'Tuition', 100)])
        with self.assertRaises(KeyError):
            draft.edit(404, 'received', 10)
        with self.assertRaises(ValueError):
            draft.edit(1, 'original_due', 10)

    def test_select_route_recalculates_van_ceiling(self):
        draft = LedgerDraft([van_head()])
        draft.edit(7, 'van_received', 750)
        entry = draft.select_route(7, 4, 500)
        self.assertEqual(entry.selected_route_id, 4)
        self.assertEqual(entry.van_received, Decimal('250.00'))
        self.assertEqual(draft.dues(7).van_remaining, Decimal('0.00'))

    def test_reload_requires_feeds(self):
        with self.assertRaises(ValueError):
            LedgerDraft([head(1, 'Tuition', 100)]).reload()

    def test_discard_empties_draft(self):
        draft = LedgerDraft.load(self.context, self.feeds())
        draft.discard()
        self.assertEqual(len(draft), 0)


class TransactionPayloadTests(SimpleTestCase):
    def setUp(self):
        context = CollectionContext(student_id=41, session_id='2026-27')
        self.student = StudentIdentity(student_id=41, admission_number='ADM-0041', class_id=8, section_id=2)
        self.payment = PaymentDetails(mode=MODE_CASH, session_id='2026-27', transaction_date=date(2026, 5, 11))
        self.ledgers = [
            opening_balance_head(context, 300).updated(received=Decimal('100')),
            head(1, 'Tuition', 500, received=400, concession_entered=50, fine_amount=20, fine_received=20),
            van_head(5, 'Transport Fee', van_received=Decimal('300')),
            head(6, 'Exam', 200, received=100, fine_amount=30, fine_eligible=False),
            head(7, 'Library', 100),
        ]

    def test_lines_only_for_heads_with_amounts(self):
        payload = assemble_transaction_payload(self.ledgers, student=self.student, payment=self.payment)
        lines = payload['transactions']
        self.assertEqual([line['fee_head'] for line in lines], ['opening-balance', 1, 5, 6])
        self.assertTrue(all(line['transaction_id'] is None for line in lines))
        self.assertEqual(lines[0]['date_of_transaction'], '2026-05-11')

    def test_component_forcing_rules(self):
        lines = {
            line['fee_head']: line
            for line in assemble_transaction_payload(self.ledgers, student=self.student, payment=self.payment)['transactions']
        }
        opening = lines['opening-balance']
        self.assertEqual(opening['fee_received'], Decimal('100.00'))
        self.assertEqual(opening['concession'], Decimal('0.00'))
        self.assertIsNone(opening['van_fee'])
        self.assertIsNone(opening['route_id'])
        self.assertEqual(opening['fine_amount'], Decimal('0.00'))

        tuition = lines[1]
        self.assertEqual(tuition['concession'], Decimal('50.00'))
        self.assertEqual(tuition['fine_amount'], Decimal('20.00'))
        self.assertIsNone(tuition['van_fee'])

        transport = lines[5]
        self.assertEqual(transport['van_fee'], Decimal('300.00'))
        self.assertEqual(transport['van_fee_concession'], Decimal('100.00'))
        self.assertEqual(transport['route_id'], 3)

        self.assertEqual(lines[6]['fine_amount'], Decimal('0.00'))

    def test_non_cash_payment_carries_reference(self):
        payment = PaymentDetails(mode=MODE_ONLINE, reference_id=' UTR123 ', session_id='2026-27')
        lines = assemble_transaction_payload(self.ledgers, student=self.student, payment=payment)['transactions']
        self.assertEqual(lines[0]['transaction_id'], 'UTR123')
        self.assertEqual(lines[0]['payment_mode'], MODE_ONLINE)

    def test_remarks_are_kept_as_entered_up_to_the_limit(self):
        payment = PaymentDetails(mode=MODE_CASH, remarks='x' * 255, session_id='2026-27')
        lines = assemble_transaction_payload(self.ledgers, student=self.student, payment=payment)['transactions']
        self.assertEqual(len(lines[0]['remarks']), 255)

        payment = PaymentDetails(mode=MODE_CASH, remarks='x' * 256, session_id='2026-27')
        with self.assertRaises(ValidationError):
            assemble_transaction_payload(self.ledgers, student=self.student, payment=payment)

    def test_validation_errors(self):
        cases = [
            (self.student, PaymentDetails(session_id=None), self.ledgers),
            (None, self.payment, self.ledgers),
            (StudentIdentity(student_id=None), self.payment, self.ledgers),
            (self.student, PaymentDetails(mode=MODE_ONLINE, session_id='2026-27'), self.ledgers),
            (self.student, PaymentDetails(mode='barter', session_id='2026-27'), self.ledgers),
            (self.student, self.payment, [head(7, 'Library', 100)]),
        ]
        for student, payment, ledgers in cases:
            with self.subTest(payment=payment, student=student):
                with self.assertRaises(ValidationError):
                    assemble_transaction_payload(ledgers, student=student, payment=payment)


class CollectionFormTests(SimpleTestCase):
    def test_quick_allocate_amount_must_be_positive(self):
        self.assertFalse(QuickAllocateForm(data={'amount': '0'}).is_valid())
        form = QuickAllocateForm(data={'amount': '1500.50'})
        self.assertTrue(form.is_valid())
        self.assertEqual(form.cleaned_data['amount'], Decimal('1500.50'))

    def test_non_cash_requires_reference(self):
        form = PaymentDetailsForm(data={'session_id': '2026-27', 'payment_mode': MODE_ONLINE})
        self.assertFalse(form.is_valid())

    def test_builds_payment_details(self):
        form = PaymentDetailsForm(data={
            'session_id': '2026-27',
            'payment_mode': MODE_CASH,
            'reference_id': 'ignored',
            'remarks': 'April dues',
            'transaction_date': '2026-05-11',
        })
        self.assertTrue(form.is_valid(), form.errors)
        details = form.to_payment_details()
        self.assertEqual(details.mode, MODE_CASH)
        self.assertEqual(details.reference_id, '')
        self.assertEqual(details.remarks, 'April dues')
        self.assertEqual(details.transaction_date, date(2026, 5, 11))


class AllocateFeesCommandTests(SimpleTestCase):
    def write_document(self, document):
        handle = tempfile.NamedTemporaryFile('w', suffix='.json', delete=False, encoding='utf-8')
        with handle:
            json.dump(document, handle)
        self.addCleanup(os.remove, handle.name)
        return handle.name

    def test_demo_run(self):
        out = StringIO()
        call_command('allocate_fees', '--demo', '--seed', '7', '--amount', '2500', stdout=out)
        self.assertIn('Allocated', out.getvalue())

    def test_feeds_file_with_payload(self):
        path = self.write_document({
            'context': {'student_id': 41, 'session_id': '2026-27', 'as_of': '2026-05-11'},
            'student': {'admission_number': 'ADM-0041'},
            'feeds': {'fee_details': [{'head_id': 1, 'head_name': 'Tuition', 'fee_due': 500}]},
        })
        out = StringIO()
        call_command('allocate_fees', '--feeds', path, '--amount', '600', '--payload', stdout=out)
        output = out.getvalue()
        self.assertIn('100.00 could not be allocated', output)
        self.assertIn('"transactions"', output)
        self.assertIn('ADM-0041', output)

    def test_missing_session_is_reported(self):
        path = self.write_document({'context': {'student_id': 41}, 'feeds': {}})
        with self.assertRaises(CommandError):
            call_command('allocate_fees', '--feeds', path, '--amount', '100', stdout=StringIO())

    def test_malformed_amount_is_reported(self):
        for amount in ('12abc', 'NaN'):
            with self.subTest(amount=amount):
                with self.assertRaises(CommandError):
                    call_command('allocate_fees', '--demo', '--amount', amount, stdout=StringIO())
