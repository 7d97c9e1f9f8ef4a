import logging
from decimal import Decimal, InvalidOperation

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import F, Q, Sum
from django.utils import timezone

from apps.core.services.payments import (
    ConfigurationError,
    FeeBreakdown,
    PaymentGatewayError,
    PaymentStatus,
    RefundNotAllowed,
    RefundResult,
    RefundStatus,
    UnknownGatewayError,
    get_gateway,
    get_gateways,
)
from apps.core.services.payments.base import to_decimal

from .signals import payment_status_changed

logger = logging.getLogger(__name__)

PAYMENT_NUMBER_ATTEMPTS = 5

ALLOWED_TRANSITIONS = {
    "pending": {"processing", "completed", "failed"},
    "processing": {"completed", "failed"},
    "completed": {"refunded"},
}


class PaymentGatewayService:
    """Routes payments, intents, refunds and webhook results to gateway adapters.

    Every write to a Payment happens under ``select_for_update`` in a short
    transaction. Gateway calls are made between those transactions, never while
    a row lock is held.
    """

    def __init__(self, gateways=None):
        self._gateways = gateways

    @property
    def gateways(self):
        return get_gateways() if self._gateways is None else self._gateways

    def get_gateway(self, name):
        return get_gateway(name, gateways=self.gateways)

    def get_available_gateways(self):
        return [
            {
                "name": name,
                "display_name": gateway.display_name,
                "currencies": gateway.get_supported_currencies(),
                "methods": gateway.get_payment_methods(),
            }
            for name, gateway in self.gateways.items()
            if gateway.is_configured()
        ]

    def get_payment_methods(self, name):
        try:
            return self.get_gateway(name).get_payment_methods()
        except UnknownGatewayError:
            logger.warning("Payment methods requested for unknown gateway %s", name)
            return {}

    def validate_gateway_config(self, name):
        try:
            self.get_gateway(name).ensure_configured()
        except (UnknownGatewayError, ConfigurationError) as e:
            return {"valid": False, "errors": [str(e)]}
        return {"valid": True, "errors": []}

    def calculate_fees(self, name, amount, currency):
        """Advisory fee quote; falls back to zero fees instead of raising."""
        try:
            return self.get_gateway(name).calculate_fees(amount, currency)
        except (PaymentGatewayError, InvalidOperation, ValueError, TypeError) as e:
            logger.warning("Fee calculation failed for %s: %s", name, e)
            try:
                net_amount = to_decimal(amount)
            except (InvalidOperation, ValueError, TypeError):
                net_amount = Decimal("0.00")
            return FeeBreakdown(
                fee_amount=Decimal("0.00"),
                net_amount=net_amount,
                fee_percentage=Decimal("0"),
                fixed_fee=Decimal("0"),
            )

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def process_payment(self, invoice, data, user=None):
        """
        Create a Payment for ``invoice`` and run it through the chosen gateway.

        Returns a dict with ``success``, ``payment``, ``gateway_response`` and
        ``error``. The Payment is never left ``pending`` on return.
        """
        gateway = self.get_gateway(data.get("gateway"))
        amount = to_decimal(data.get("amount") or invoice.balance_due)
        payment = self._create_pending_payment(invoice, gateway, amount, data, user)

        try:
            result = gateway.process_payment(payment, data)
            payment = self._apply(
                payment,
                result.status,
                raw=result.raw_response,
                failure_reason=result.error_message,
                transaction_id=result.transaction_id,
                payment_id=result.payment_id,
                fee_amount=None if result.status == PaymentStatus.FAILED else result.fee_amount,
            )
        except Exception as e:
            logger.exception("Payment %s failed while processing", payment.payment_number)
            payment = self._apply(payment, PaymentStatus.FAILED, raw={"error": str(e)}, failure_reason=str(e))
            return {
                "success": False,
                "payment": payment,
                "gateway_response": payment.gateway_response,
                "error": str(e),
            }

        if not result.success:
            logger.warning(
                "Payment %s failed at %s: %s", payment.payment_number, gateway.name, result.error_message
            )
        return {
            "success": result.success,
            "payment": payment,
            "gateway_response": result.raw_response,
            "error": result.error_message,
        }

    def _create_pending_payment(self, invoice, gateway, amount, data, user):
        from .models import Payment

        for attempt in range(1, PAYMENT_NUMBER_ATTEMPTS + 1):
            try:
                with transaction.atomic():
                    payment = Payment.objects.create(
                        payment_number=Payment.generate_payment_number(),
                        invoice=invoice,
                        customer=invoice.customer,
                        status="pending",
                        type="full" if amount >= invoice.balance_due else "partial",
                        method=data.get("method") or "",
                        gateway=gateway.name,
                        currency=data.get("currency") or invoice.currency,
                        amount=amount,
                        reference=data.get("reference") or "",
                        created_by=user,
                    )
                break
            except IntegrityError:
                if attempt == PAYMENT_NUMBER_ATTEMPTS:
                    raise
                logger.warning("Payment number taken by a concurrent request, retrying (attempt %s)", attempt)
        logger.info(
            "Created payment %s for invoice %s via %s",
            payment.payment_number, invoice.invoice_number, gateway.name,
        )
        return payment

    def create_payment_intent(self, invoice, gateway_name, options=None):
        """Ask the gateway for a hosted checkout. Does not touch the ledger."""
        gateway = self.get_gateway(gateway_name)
        options = options or {}
        if invoice.balance_due <= 0:
            raise ValueError("Invoice has no outstanding balance.")

        site_url = getattr(settings, "SITE_URL", "").rstrip("/")
        customer = invoice.customer
        data = {
            "amount": invoice.balance_due,
            "currency": invoice.currency,
            "description": options.get("description") or f"Payment for invoice {invoice.invoice_number}",
            "customer_email": customer.email if customer else "",
            "customer_name": (customer.get_full_name() or customer.get_username()) if customer else "",
            "metadata": {"invoice_id": str(invoice.pk), "invoice_number": invoice.invoice_number},
            "return_url": options.get("return_url") or f"{site_url}/payments/success/?invoice={invoice.pk}",
            "cancel_url": options.get("cancel_url") or f"{site_url}/payments/cancel/?invoice={invoice.pk}",
        }
        return gateway.create_payment_intent(data)

    def find_payment(self, gateway_name, reference):
        from .models import Payment

        return (
            Payment.objects.filter(gateway=gateway_name)
            .filter(Q(gateway_payment_id=reference) | Q(gateway_transaction_id=reference))
            .order_by("-created_at")
            .first()
        )

    def apply_webhook(self, payment, payload, result):
        """Merge the delivery into gateway_response and apply its status, if any."""
        return self._apply(
            payment,
            result.status,
            raw=payload,
            failure_reason=result.failure_reason,
            transaction_id=result.transaction_id,
        )

    def apply_gateway_status(self, payment, status, raw=None, failure_reason=None):
        return self._apply(payment, status, raw=raw, failure_reason=failure_reason)

    def _apply(self, payment, status, raw=None, failure_reason=None,
               transaction_id=None, payment_id=None, fee_amount=None):
        from .models import Payment

        with transaction.atomic():
            locked = Payment.objects.select_for_update().get(pk=payment.pk)
            if raw:
                locked.merge_gateway_response(raw)
            if transaction_id:
                locked.gateway_transaction_id = transaction_id
            if payment_id:
                locked.gateway_payment_id = payment_id
            if fee_amount is not None and locked.status not in ("completed", "refunded"):
                locked.fee_amount = fee_amount
            if status is not None:
                self._transition(locked, status, failure_reason)
            locked.save()
        return locked

    def _transition(self, payment, status, failure_reason=None):
        """Move a locked Payment to ``status``. Returns False when nothing changed."""
        previous = payment.status
        target = status.value if isinstance(status, PaymentStatus) else status
        if target == previous:
            return False
        if target not in ALLOWED_TRANSITIONS.get(previous, ()):
            logger.warning(
                "Ignoring %s -> %s for payment %s", previous, target, payment.payment_number
            )
            return False

        now = timezone.now()
        payment.status = target
        if target == "completed":
            payment.completed_at = now
            self._credit_invoice(payment)
        elif target == "failed":
            payment.failed_at = now
            payment.failure_reason = failure_reason or "Payment failed"
        elif target == "refunded":
            payment.refunded_at = now

        logger.info("Payment %s moved %s -> %s", payment.payment_number, previous, target)
        transaction.on_commit(
            lambda: payment_status_changed.send(
                sender=type(payment), payment=payment, previous_status=previous, status=target
            )
        )
        return True

    @staticmethod
    def _credit_invoice(payment):
        from .models import Invoice

        Invoice.objects.filter(pk=payment.invoice_id).update(
            paid_amount=F("paid_amount") + payment.amount,
            balance_due=F("balance_due") - payment.amount,
        )
        Invoice.objects.filter(pk=payment.invoice_id, balance_due__lte=0).exclude(
            status__in=("paid", "void")
        ).update(status="paid", paid_date=timezone.now())

    @staticmethod
    def _debit_invoice(payment, amount):
        from .models import Invoice

        Invoice.objects.filter(pk=payment.invoice_id).update(
            paid_amount=F("paid_amount") - amount,
            balance_due=F("balance_due") + amount,
        )
        Invoice.objects.filter(pk=payment.invoice_id, status="paid", balance_due__gt=0).update(
            status="sent", paid_date=None
        )

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    def process_refund(self, payment, amount, reason="", user=None):
        """
        Refund part or all of a completed payment.

        Raises RefundNotAllowed, without creating a Refund, when the payment is
        not completed or ``amount`` exceeds what is still refundable.
        """
        from .models import Payment, Refund

        amount = to_decimal(amount)
        if amount <= 0:
            raise RefundNotAllowed("Refund amount must be greater than zero.")
        gateway = self.get_gateway(payment.gateway)

        with transaction.atomic():
            locked = Payment.objects.select_for_update().get(pk=payment.pk)
            if locked.status != "completed":
                raise RefundNotAllowed("Only completed payments can be refunded.")
            available = locked.refundable_amount
            if amount > available:
                raise RefundNotAllowed(f"Refund amount exceeds the refundable balance of {available}.")
            refund = Refund.objects.create(
                payment=locked, amount=amount, reason=reason or "", status="pending", created_by=user
            )

        try:
            result = gateway.process_refund(locked, amount, reason)
        except Exception as e:
            logger.exception("Refund %s failed at %s", refund.pk, gateway.name)
            result = RefundResult(
                status=RefundStatus.FAILED, error_message=str(e), raw_response={"error": str(e)}
            )

        refund = self._record_refund_result(refund, result)
        return {
            "success": result.success,
            "refund": refund,
            "gateway_response": result.raw_response,
            "error": result.error_message,
        }

    def _record_refund_result(self, refund, result):
        from .models import Payment, Refund

        with transaction.atomic():
            payment = Payment.objects.select_for_update().get(pk=refund.payment_id)
            refund = Refund.objects.select_for_update().get(pk=refund.pk)
            refund.gateway_refund_id = result.refund_id or ""
            refund.gateway_response = {**(refund.gateway_response or {}), **(result.raw_response or {})}
            refund.status = result.status.value
            if result.status == RefundStatus.FAILED:
                refund.failure_reason = result.error_message or "Refund failed"
                refund.processed_at = timezone.now()
            elif result.status == RefundStatus.COMPLETED:
                self._settle_refund(payment, refund)
            refund.save()
        logger.info("Refund %s on %s is %s", refund.pk, payment.payment_number, refund.status)
        return refund

    def complete_refund(self, refund, user=None):
        """Mark a pending refund as settled by hand (mobile-money refunds)."""
        from .models import Payment, Refund

        with transaction.atomic():
            payment = Payment.objects.select_for_update().get(pk=refund.payment_id)
            refund = Refund.objects.select_for_update().get(pk=refund.pk)
            if refund.status != "pending":
                raise RefundNotAllowed("Only pending refunds can be completed.")
            refund.status = "completed"
            refund.gateway_response = {
                **(refund.gateway_response or {}),
                "completed_manually_by": user.get_username() if user else None,
            }
            self._settle_refund(payment, refund)
            refund.save()
        logger.info("Refund %s completed manually", refund.pk)
        return refund

    def _settle_refund(self, payment, refund):
        refund.processed_at = timezone.now()
        self._debit_invoice(payment, refund.amount)

        already_refunded = (
            payment.refunds.filter(status="completed").exclude(pk=refund.pk)
            .aggregate(t=Sum("amount"))["t"] or Decimal("0.00")
        )
        if already_refunded + refund.amount >= payment.amount:
            if self._transition(payment, PaymentStatus.REFUNDED):
                payment.save(update_fields=["status", "refunded_at", "updated_at"])

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile_payment(self, payment):
        """Poll the gateway for a payment still waiting on confirmation."""
        reference = payment.gateway_payment_id or payment.gateway_transaction_id
        if not reference:
            return payment
        gateway = self.get_gateway(payment.gateway)
        status = gateway.query_payment_status(reference)
        if status is None:
            return payment
        return self._apply(
            payment,
            status,
            raw={"reconciled_status": status.value, "reconciled_at": timezone.now().isoformat()},
            failure_reason="Payment failed at the gateway",
        )
