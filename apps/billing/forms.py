from decimal import Decimal

from django import forms
from django.conf import settings

from .models import Payment

GATEWAY_CHOICES = Payment.GATEWAY_CHOICES


class GatewayChoiceMixin:
    def clean_gateway(self):
        return self.cleaned_data.get("gateway") or settings.PAYMENT_DEFAULT_GATEWAY


class ProcessPaymentForm(GatewayChoiceMixin, forms.Form):
    gateway = forms.ChoiceField(choices=GATEWAY_CHOICES, required=False)
    method = forms.CharField(max_length=30)
    amount = forms.DecimalField(max_digits=12, decimal_places=2, min_value=0.01)
    phone_number = forms.CharField(max_length=20, required=False)
    reference = forms.CharField(max_length=100, required=False)
    payment_method = forms.CharField(
        max_length=255, required=False, help_text="Stripe PaymentMethod id, e.g. pm_..."
    )
    paypal_payment_id = forms.CharField(max_length=255, required=False)
    payer_id = forms.CharField(max_length=255, required=False)

    def __init__(self, *args, invoice=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.invoice = invoice

    def clean_amount(self):
        amount = self.cleaned_data["amount"]
        if self.invoice is not None and amount > self.invoice.balance_due:
            raise forms.ValidationError(
                f"Amount cannot exceed the balance due of {self.invoice.balance_due}."
            )
        return amount

    def clean(self):
        cleaned_data = super().clean()
        if self.invoice is not None and self.invoice.status in ("paid", "void"):
            raise forms.ValidationError(f"Invoice is {self.invoice.status} and cannot take payments.")
        return cleaned_data

    def payment_data(self):
        data = {key: value for key, value in self.cleaned_data.items() if value not in ("", None)}
        data["currency"] = self.invoice.currency if self.invoice is not None else None
        return data


class PaymentIntentForm(GatewayChoiceMixin, forms.Form):
    gateway = forms.ChoiceField(choices=GATEWAY_CHOICES, required=False)
    return_url = forms.URLField(required=False)
    cancel_url = forms.URLField(required=False)
    description = forms.CharField(max_length=255, required=False)


class CalculateFeesForm(forms.Form):
    gateway = forms.CharField(max_length=20)
    amount = forms.DecimalField(max_digits=12, decimal_places=2, min_value=0.01)
    currency = forms.CharField(max_length=3)

    def clean_currency(self):
        return self.cleaned_data["currency"].upper()


class RefundForm(forms.Form):
    amount = forms.DecimalField(max_digits=12, decimal_places=2, min_value=0.01)
    reason = forms.CharField(widget=forms.Textarea(attrs={"rows": 3}), required=False)

    def __init__(self, *args, payment=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.payment = payment

    def clean_amount(self):
        amount = self.cleaned_data["amount"]
        if self.payment is not None:
            refundable = self.payment.refundable_amount
            if amount > refundable:
                raise forms.ValidationError(
                    f"Amount cannot exceed the refundable balance of {refundable.quantize(Decimal('0.01'))}."
                )
        return amount
