import argparse
import json
import random
from decimal import Decimal, InvalidOperation

from django.core.exceptions import ValidationError
from django.core.management.base import BaseCommand, CommandError
from django.core.serializers.json import DjangoJSONEncoder
from django.utils.dateparse import parse_date
from faker import Faker

from apps.core.fee_collection.builder import LedgerFeeds
from apps.core.fee_collection.draft import LedgerDraft
from apps.core.fee_collection.dues import resolve_dues
from apps.core.fee_collection.exceptions import SessionNotSelected
from apps.core.fee_collection.ledger import CollectionContext
from apps.core.fee_collection.payload import PAYMENT_MODES, PaymentDetails, StudentIdentity


def amount_argument(value) -> Decimal:
    try:
        amount = Decimal(value)
    except InvalidOperation:
        amount = None
    if amount is None or not amount.is_finite():
        raise argparse.ArgumentTypeError(f"'{value}' is not a valid amount.")
    return amount


def demo_document(seed=None) -> dict:
    """A plausible student ledger for trying the allocator without a backend."""
    fake = Faker('en_IN')
    rng = random.Random(seed)
    if seed is not None:
        fake.seed_instance(seed)

    routes = [
        {
            'id': index,
            'name': f'{fake.city()} Route',
            'cost': rng.choice([600, 800, 1000, 1200]),
            'fine_start_date': fake.date_between(start_date='-60d', end_date='-1d').isoformat(),
            'fine_percentage': rng.choice([0, 1, 2]),
        }
        for index in range(1, 4)
    ]
    months = ['April', 'May', 'June']
    fee_details = []
    for index, month in enumerate(months, start=1):
        fee_details.append({
            'head_id': index,
            'head_name': f'Tuition Fee {month}',
            'original_due': rng.choice([1500, 1800, 2000]),
            'fee_due': rng.choice([1200, 1500, 1800]),
            'fine_amount': rng.choice([0, 50, 100]),
            'transport_applicable': 'Yes',
        })
    fee_details.append({'head_id': 10, 'head_name': 'Library Fee', 'original_due': 300, 'fee_due': 300})
    fee_details.append({'head_id': 11, 'head_name': 'Exam Fee', 'original_due': 500, 'fee_due': 500})

    return {
        'context': {'student_id': rng.randint(100, 999), 'session_id': '2026-27'},
        'student': {
            'student_id': None,
            'admission_number': fake.bothify('ADM-####'),
            'name': fake.name(),
        },
        'feeds': {
            'fee_details': fee_details,
            'fine_eligibility': {'11': False},
            'opening_balance': rng.choice([0, 0, 450, 900]),
            'routes': routes,
            'student_transport': {'route_id': rng.choice(routes)['id']},
        },
    }


class Command(BaseCommand):
    help = 'Builds a fee ledger from feed data and distributes a lump amount across its heads.'

    def add_arguments(self, parser):
        source = parser.add_mutually_exclusive_group(required=True)
        source.add_argument('--feeds', help='JSON document with context, student and feeds sections.')
        source.add_argument('--demo', action='store_true', help='Use a generated demo student.')
        parser.add_argument('--seed', type=int, default=None, help='Seed for the demo generator.')
        parser.add_argument('--amount', type=amount_argument, required=True, help='Lump amount to allocate.')
        parser.add_argument('--payload', action='store_true', help='Print the bulk transaction request.')
        parser.add_argument('--mode', default='cash', choices=sorted(PAYMENT_MODES))
        parser.add_argument('--reference', default='', help='Reference id for non-cash payments.')
        parser.add_argument('--remarks', default='')

    def _read_document(self, options) -> dict:
        if options['demo']:
            return demo_document(options['seed'])
        try:
            with open(options['feeds'], encoding='utf-8') as handle:
                return json.load(handle)
        except (OSError, ValueError) as exc:
            raise CommandError(f"Could not read feeds file: {exc}") from exc

    def handle(self, *args, **options):
        document = self._read_document(options)
        context_data = document.get('context') or {}
        context = CollectionContext(
            student_id=context_data.get('student_id'),
            session_id=context_data.get('session_id'),
            opening_balance_head_id=context_data.get('opening_balance_head_id'),
            **({'as_of': parse_date(context_data['as_of'])} if context_data.get('as_of') else {}),
        )

        try:
            draft = LedgerDraft.load(context, LedgerFeeds.from_data(document.get('feeds') or {}))
            remainder = draft.apply_amount(options['amount'])
        except (SessionNotSelected, ValidationError) as exc:
            raise CommandError(str(exc)) from exc

        if not len(draft):
            self.stdout.write(self.style.WARNING('No fee heads found for the selected student.'))
            return

        student_data = document.get('student') or {}
        self.stdout.write(
            f"Student {student_data.get('admission_number') or context.student_id} "
            f"{student_data.get('name') or ''}".rstrip()
        )
        for entry in draft:
            dues = resolve_dues(entry)
            self.stdout.write(
                f"{entry.head_name:<28} fee {entry.received:>10} fine {entry.fine_received:>8} "
                f"van {entry.van_received:>8} still due {dues.payable_now:>10}"
            )

        totals = draft.totals()
        self.stdout.write(self.style.SUCCESS(f"Allocated {totals['grand_total']} of {options['amount']}."))
        if remainder > 0:
            self.stdout.write(self.style.WARNING(f'{remainder} could not be allocated (no remaining dues or fines).'))

        if options['payload']:
            student = StudentIdentity(
                student_id=student_data.get('student_id') or context.student_id,
                admission_number=student_data.get('admission_number', ''),
                class_id=student_data.get('class_id'),
                section_id=student_data.get('section_id'),
            )
            payment = PaymentDetails(
                mode=options['mode'],
                reference_id=options['reference'],
                remarks=options['remarks'],
                session_id=context.session_id,
            )
            try:
                payload = draft.to_payload(student=student, payment=payment)
            except ValidationError as exc:
                raise CommandError('; '.join(exc.messages)) from exc
            self.stdout.write(json.dumps(payload, cls=DjangoJSONEncoder, indent=2))
