from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Optional

from django.core.exceptions import ValidationError
from django.utils import timezone

from .dues import fine_collectable, normalize, transport_collectable
from .ledger import ZERO

MODE_CASH = 'cash'
MODE_ONLINE = 'online'
MODE_CHEQUE = 'cheque'
MODE_UPI = 'upi'
MODE_CARD = 'card'
PAYMENT_MODE_CHOICES = (
    (MODE_CASH, 'Cash'),
    (MODE_ONLINE, 'Online'),
    (MODE_CHEQUE, 'Cheque'),
    (MODE_UPI, 'UPI'),
    (MODE_CARD, 'Card'),
)
PAYMENT_MODES = {value for value, _ in PAYMENT_MODE_CHOICES}
REMARKS_MAX_LENGTH = 255


@dataclass(frozen=True)
class StudentIdentity:
    student_id: object
    admission_number: str = ''
    class_id: Optional[object] = None
    section_id: Optional[object] = None


@dataclass(frozen=True)
class PaymentDetails:
    mode: str = MODE_CASH
    reference_id: str = ''
    remarks: str = ''
    session_id: Optional[object] = None
    transaction_date: date = field(default_factory=timezone.localdate)

    @property
    def is_cash(self) -> bool:
        return (self.mode or '').strip().lower() == MODE_CASH


def _line_for(entry, *, student: StudentIdentity, payment: PaymentDetails, mode: str) -> dict:
    van_applicable = transport_collectable(entry)
    return {
        'student_id': student.student_id,
        'admission_number': student.admission_number,
        'class_id': student.class_id,
        'section_id': student.section_id,
        'session_id': payment.session_id,
        'fee_head': entry.head_id,
        'fee_received': entry.received,
        'concession': ZERO if entry.is_opening_balance else entry.concession_entered,
        'van_fee': entry.van_received if van_applicable else None,
        'van_fee_concession': entry.van_concession_entered if van_applicable else None,
        'route_id': entry.selected_route_id if van_applicable else None,
        'fine_amount': entry.fine_received if fine_collectable(entry) else ZERO,
        'payment_mode': mode,
        'transaction_id': None if payment.is_cash else payment.reference_id.strip(),
        'remarks': (payment.remarks or '').strip(),
        'date_of_transaction': payment.transaction_date.isoformat(),
    }


def assemble_transaction_payload(ledgers, *, student: Optional[StudentIdentity], payment: PaymentDetails) -> dict:
    if not payment.session_id:
        raise ValidationError('Select an academic session before collecting fees.')
    if student is None or not student.student_id:
        raise ValidationError('Select a student before collecting fees.')

    mode = (payment.mode or '').strip().lower()
    if mode not in PAYMENT_MODES:
        raise ValidationError(f"Unsupported payment mode '{payment.mode}'.")
    if mode != MODE_CASH and not (payment.reference_id or '').strip():
        raise ValidationError('Reference id is required for non-cash payments.')
    if len((payment.remarks or '').strip()) > REMARKS_MAX_LENGTH:
        raise ValidationError(f'Remarks cannot exceed {REMARKS_MAX_LENGTH} characters.')

    lines = []
    for entry in ledgers:
        entry = normalize(entry)
        if entry.received > 0 or entry.fine_received > 0 or entry.van_received > 0:
            lines.append(_line_for(entry, student=student, payment=payment, mode=mode))

    if not lines:
        raise ValidationError('Nothing to submit: enter an amount against at least one fee head.')

    return {'transactions': lines}
