from django import forms
from django.core.exceptions import ValidationError

from .payload import MODE_CASH, PAYMENT_MODE_CHOICES, REMARKS_MAX_LENGTH, PaymentDetails


class QuickAllocateForm(forms.Form):
    amount = forms.DecimalField(max_digits=12, decimal_places=2, min_value=0.01)


class PaymentDetailsForm(forms.Form):
    session_id = forms.CharField(max_length=64)
    payment_mode = forms.ChoiceField(choices=PAYMENT_MODE_CHOICES, initial=MODE_CASH)
    reference_id = forms.CharField(max_length=120, required=False)
    remarks = forms.CharField(max_length=REMARKS_MAX_LENGTH, required=False)
    transaction_date = forms.DateField(required=False, widget=forms.DateInput(attrs={'type': 'date'}))

    def clean(self):
        cleaned = super().clean()
        mode = cleaned.get('payment_mode')
        reference_id = (cleaned.get('reference_id') or '').strip()
        if mode and mode != MODE_CASH and not reference_id:
            raise ValidationError('Reference id is required for non-cash payments.')
        cleaned['reference_id'] = reference_id if mode != MODE_CASH else ''
        return cleaned

    def to_payment_details(self) -> PaymentDetails:
        cleaned = self.cleaned_data
        details = {
            'mode': cleaned['payment_mode'],
            'reference_id': cleaned['reference_id'],
            'remarks': cleaned.get('remarks') or '',
            'session_id': cleaned['session_id'],
        }
        if cleaned.get('transaction_date'):
            details['transaction_date'] = cleaned['transaction_date']
        return PaymentDetails(**details)
