from decimal import Decimal

from django.conf import settings
from django.db import models
from django.db.models import Sum
from django.utils import timezone

from apps.core.models import AuditMixin, TimeStampedModel


class Invoice(TimeStampedModel, AuditMixin):
    STATUS_CHOICES = [
        ("draft", "Draft"),
        ("sent", "Sent"),
        ("paid", "Paid"),
        ("void", "Void"),
    ]

    invoice_number = models.CharField(max_length=50, unique=True)
    customer = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="invoices",
    )
    currency = models.CharField(max_length=3, default="USD")
    total_amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    paid_amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    balance_due = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default="draft", db_index=True)
    issue_date = models.DateField(default=timezone.localdate)
    due_date = models.DateField(null=True, blank=True)
    paid_date = models.DateTimeField(null=True, blank=True)
    notes = models.TextField(blank=True, default="")

    class Meta:
        ordering = ["-issue_date"]

    def __str__(self):
        return f"Invoice {self.invoice_number}"

    def save(self, *args, **kwargs):
        if self.balance_due is None:
            self.balance_due = Decimal(self.total_amount) - Decimal(self.paid_amount)
        super().save(*args, **kwargs)

    @property
    def is_paid(self):
        return self.status == "paid"


class Payment(TimeStampedModel, AuditMixin):
    STATUS_CHOICES = [
        ("pending", "Pending"),
        ("processing", "Processing"),
        ("completed", "Completed"),
        ("failed", "Failed"),
        ("refunded", "Refunded"),
    ]
    TYPE_CHOICES = [
        ("full", "Full Payment"),
        ("partial", "Partial Payment"),
    ]
    GATEWAY_CHOICES = [
        ("stripe", "Stripe"),
        ("paypal", "PayPal"),
        ("clickpesa", "ClickPesa"),
    ]

    payment_number = models.CharField(max_length=30, unique=True)
    invoice = models.ForeignKey(Invoice, on_delete=models.PROTECT, related_name="payments")
    customer = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="payments",
    )
    status = models.CharField(max_length=15, choices=STATUS_CHOICES, default="pending", db_index=True)
    type = models.CharField(max_length=10, choices=TYPE_CHOICES, default="full")
    method = models.CharField(max_length=30, blank=True, default="")
    gateway = models.CharField(max_length=20, choices=GATEWAY_CHOICES, db_index=True)
    currency = models.CharField(max_length=3, default="USD")
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    fee_amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    net_amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    reference = models.CharField(max_length=100, blank=True, default="")
    gateway_transaction_id = models.CharField(max_length=255, blank=True, default="", db_index=True)
    gateway_payment_id = models.CharField(max_length=255, blank=True, default="", db_index=True)
    gateway_response = models.JSONField(default=dict, blank=True)
    failure_reason = models.TextField(blank=True, default="")
    payment_date = models.DateTimeField(default=timezone.now)
    completed_at = models.DateTimeField(null=True, blank=True)
    failed_at = models.DateTimeField(null=True, blank=True)
    refunded_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-payment_date"]

    def __str__(self):
        return f"Payment {self.payment_number} {self.amount} {self.currency} ({self.status})"

    def save(self, *args, **kwargs):
        self.net_amount = Decimal(self.amount) - Decimal(self.fee_amount or 0)
        update_fields = kwargs.get("update_fields")
        if update_fields is not None and "fee_amount" in update_fields:
            kwargs["update_fields"] = set(update_fields) | {"net_amount"}
        super().save(*args, **kwargs)

    @staticmethod
    def generate_payment_number():
        """Next number in the format PAY-YYYY-NNNNNN."""
        prefix = f"PAY-{timezone.now().year}-"
        last_payment = (
            Payment.objects.filter(payment_number__startswith=prefix)
            .order_by("-payment_number")
            .first()
        )
        seq = int(last_payment.payment_number.split("-")[-1]) + 1 if last_payment else 1
        return f"{prefix}{seq:06d}"

    def merge_gateway_response(self, data):
        """Shallow merge: new keys win, earlier keys are never dropped."""
        self.gateway_response = {**(self.gateway_response or {}), **(data or {})}

    @property
    def refunded_amount(self):
        total = self.refunds.filter(status="completed").aggregate(t=Sum("amount"))["t"]
        return total or Decimal("0.00")

    @property
    def reserved_refund_amount(self):
        total = self.refunds.filter(status__in=("pending", "completed")).aggregate(t=Sum("amount"))["t"]
        return total or Decimal("0.00")

    @property
    def refundable_amount(self):
        return self.amount - self.reserved_refund_amount


class Refund(TimeStampedModel):
    STATUS_CHOICES = [
        ("pending", "Pending"),
        ("completed", "Completed"),
        ("failed", "Failed"),
    ]

    payment = models.ForeignKey(Payment, on_delete=models.PROTECT, related_name="refunds")
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    reason = models.TextField(blank=True, default="")
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default="pending", db_index=True)
    gateway_refund_id = models.CharField(max_length=255, blank=True, default="")
    gateway_response = models.JSONField(default=dict, blank=True)
    failure_reason = models.TextField(blank=True, default="")
    processed_at = models.DateTimeField(null=True, blank=True)
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="payment_refunds",
    )

    def __str__(self):
        return f"Refund {self.amount} on {self.payment.payment_number} ({self.status})"


class WebhookEvent(TimeStampedModel):
    STATUS_CHOICES = [
        ("received", "Received"),
        ("processed", "Processed"),
        ("ignored", "Ignored"),
        ("failed", "Failed"),
    ]

    provider = models.CharField(max_length=20, db_index=True)
    event_type = models.CharField(max_length=100, blank=True, default="")
    event_id = models.CharField(max_length=255, blank=True, default="", db_index=True)
    reference = models.CharField(max_length=255, blank=True, default="")
    payload = models.JSONField(default=dict)
    headers = models.JSONField(default=dict, blank=True)
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default="received")
    error_message = models.TextField(blank=True, default="")
    ip_address = models.GenericIPAddressField(null=True, blank=True)
    payment = models.ForeignKey(
        Payment, on_delete=models.SET_NULL, null=True, blank=True, related_name="webhook_events"
    )

    def __str__(self):
        return f"{self.provider} {self.event_type or 'event'} ({self.status})"
