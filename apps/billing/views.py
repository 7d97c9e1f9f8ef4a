import json
import logging

from django.conf import settings
from django.http import JsonResponse
from django.shortcuts import get_object_or_404
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_POST

from apps.core.decorators import staff_required
from apps.core.services.payments import (
    ConfigurationError,
    GatewayError,
    RefundNotAllowed,
    SignatureError,
    UnknownGatewayError,
    WebhookAction,
)
from apps.core.services.payments.utils import redact_headers

from .forms import CalculateFeesForm, PaymentIntentForm, ProcessPaymentForm, RefundForm
from .models import Invoice, Payment, Refund, WebhookEvent
from .services import PaymentGatewayService

logger = logging.getLogger(__name__)


def _request_data(request):
    """Form-encoded POST data, or the JSON body when the client sent JSON."""
    if request.content_type == "application/json":
        try:
            data = json.loads(request.body or b"{}")
        except ValueError:
            return None
        return data if isinstance(data, dict) else None
    return request.POST


def _client_ip(request):
    ip_address = request.META.get("HTTP_X_FORWARDED_FOR", request.META.get("REMOTE_ADDR", ""))
    if "," in ip_address:
        ip_address = ip_address.split(",")[0].strip()
    return ip_address or None


def _payment_dict(payment):
    return {
        "id": str(payment.pk),
        "payment_number": payment.payment_number,
        "invoice_id": str(payment.invoice_id),
        "status": payment.status,
        "type": payment.type,
        "gateway": payment.gateway,
        "method": payment.method,
        "currency": payment.currency,
        "amount": float(payment.amount),
        "fee_amount": float(payment.fee_amount),
        "net_amount": float(payment.net_amount),
        "gateway_transaction_id": payment.gateway_transaction_id,
        "gateway_payment_id": payment.gateway_payment_id,
        "failure_reason": payment.failure_reason,
    }


def _refund_dict(refund):
    return {
        "id": str(refund.pk),
        "payment_id": str(refund.payment_id),
        "amount": float(refund.amount),
        "status": refund.status,
        "reason": refund.reason,
        "gateway_refund_id": refund.gateway_refund_id,
        "failure_reason": refund.failure_reason,
    }


def _invalid(form_or_message):
    if isinstance(form_or_message, str):
        return JsonResponse({"success": False, "error": form_or_message}, status=400)
    return JsonResponse({"success": False, "errors": form_or_message.errors}, status=400)


# ===========================================================================
# Admin payment actions
# ===========================================================================


@staff_required
@require_POST
def admin_process_payment(request, pk):
    """Charge an invoice through a gateway."""
    invoice = get_object_or_404(Invoice, pk=pk)
    data = _request_data(request)
    if data is None:
        return _invalid("Invalid JSON body.")

    form = ProcessPaymentForm(data, invoice=invoice)
    if not form.is_valid():
        return _invalid(form)

    try:
        result = PaymentGatewayService().process_payment(invoice, form.payment_data(), user=request.user)
    except UnknownGatewayError as e:
        return _invalid(str(e))

    return JsonResponse({
        "success": result["success"],
        "payment": _payment_dict(result["payment"]),
        "gateway_response": result["gateway_response"],
        "error": result["error"],
    })


@staff_required
@require_POST
def admin_payment_intent(request, pk):
    """Start a hosted checkout for the invoice's outstanding balance."""
    invoice = get_object_or_404(Invoice, pk=pk)
    data = _request_data(request)
    if data is None:
        return _invalid("Invalid JSON body.")

    form = PaymentIntentForm(data)
    if not form.is_valid():
        return _invalid(form)

    options = {key: value for key, value in form.cleaned_data.items() if key != "gateway" and value}
    try:
        intent = PaymentGatewayService().create_payment_intent(
            invoice, form.cleaned_data["gateway"], options
        )
    except (UnknownGatewayError, ConfigurationError, ValueError) as e:
        return _invalid(str(e))
    except GatewayError as e:
        logger.error("Payment intent for invoice %s failed: %s", invoice.invoice_number, e)
        return JsonResponse({"success": False, "error": str(e)}, status=502)

    return JsonResponse({
        "success": True,
        "reference": intent.reference,
        "redirect_url": intent.redirect_url,
        "client_secret": intent.client_secret,
        "amount": float(intent.amount),
        "currency": intent.currency,
        "extra": intent.extra,
    })


@staff_required
@require_POST
def admin_calculate_fees(request):
    data = _request_data(request)
    if data is None:
        return _invalid("Invalid JSON body.")

    form = CalculateFeesForm(data)
    if not form.is_valid():
        return _invalid(form)

    fees = PaymentGatewayService().calculate_fees(
        form.cleaned_data["gateway"], form.cleaned_data["amount"], form.cleaned_data["currency"]
    )
    return JsonResponse({
        "success": True,
        "fee_amount": float(fees.fee_amount),
        "net_amount": float(fees.net_amount),
        "fee_percentage": float(fees.fee_percentage),
        "fixed_fee": float(fees.fixed_fee),
    })


@staff_required
@require_POST
def admin_process_refund(request, pk):
    payment = get_object_or_404(Payment, pk=pk)
    data = _request_data(request)
    if data is None:
        return _invalid("Invalid JSON body.")

    form = RefundForm(data, payment=payment)
    if not form.is_valid():
        return _invalid(form)

    try:
        result = PaymentGatewayService().process_refund(
            payment, form.cleaned_data["amount"], form.cleaned_data["reason"], user=request.user
        )
    except (RefundNotAllowed, UnknownGatewayError) as e:
        return _invalid(str(e))

    return JsonResponse({
        "success": result["success"],
        "refund": _refund_dict(result["refund"]),
        "gateway_response": result["gateway_response"],
        "error": result["error"],
    })


@staff_required
@require_GET
def admin_payment_methods(request, gateway):
    service = PaymentGatewayService()
    try:
        service.get_gateway(gateway)
    except UnknownGatewayError as e:
        return _invalid(str(e))
    return JsonResponse({"success": True, "gateway": gateway, "methods": service.get_payment_methods(gateway)})


@staff_required
@require_POST
def admin_complete_refund(request, pk):
    """Record that a pending refund was paid out by hand."""
    refund = get_object_or_404(Refund, pk=pk)
    try:
        refund = PaymentGatewayService().complete_refund(refund, user=request.user)
    except RefundNotAllowed as e:
        return _invalid(str(e))
    return JsonResponse({"success": True, "refund": _refund_dict(refund)})


# ===========================================================================
# Gateway webhooks
# ===========================================================================


@csrf_exempt
@require_POST
def payment_webhook(request, gateway):
    """
    Gateway webhook endpoint for asynchronous payment confirmations.
    No auth decorator; requests are authenticated by gateway signature verification.
    """
    ip_address = _client_ip(request)
    headers = redact_headers(dict(request.headers))

    try:
        payload = json.loads(request.body)
    except ValueError:
        logger.warning("Rejected malformed %s webhook from %s", gateway, ip_address)
        return JsonResponse({"error": "Invalid JSON body."}, status=400)
    if not isinstance(payload, dict):
        return JsonResponse({"error": "Webhook body must be a JSON object."}, status=400)

    logger.info(
        "Received %s webhook", gateway,
        extra={"headers": headers, "payload": payload, "ip_address": ip_address},
    )

    service = PaymentGatewayService()
    try:
        adapter = service.get_gateway(gateway)
    except UnknownGatewayError:
        return JsonResponse({"error": "Unknown gateway."}, status=400)

    try:
        verified = adapter.verify_webhook(request.headers, request.body, payload)
    except SignatureError as e:
        logger.warning("Rejected %s webhook from %s: %s", adapter.name, ip_address, e)
        WebhookEvent.objects.create(
            provider=adapter.name,
            event_type="verification_failed",
            payload=payload,
            headers=headers,
            status="failed",
            error_message=str(e),
            ip_address=ip_address,
        )
        return JsonResponse({"error": "Signature verification failed."}, status=401)

    if verified is None and settings.PAYMENT_WEBHOOK_REQUIRE_SIGNATURE:
        logger.warning("Rejected unsigned %s webhook from %s", adapter.name, ip_address)
        return JsonResponse({"error": "Missing webhook signature."}, status=401)

    # Deduplicate
    event_id = adapter.extract_event_id(payload) or ""
    if event_id and WebhookEvent.objects.filter(
        provider=adapter.name, event_id=event_id, status="processed"
    ).exists():
        return JsonResponse({"status": "already_processed"})

    reference = adapter.extract_reference(payload)
    webhook_event = WebhookEvent.objects.create(
        provider=adapter.name,
        event_id=event_id,
        reference=reference or "",
        payload=payload,
        headers=headers,
        status="received",
        ip_address=ip_address,
    )

    if not reference:
        webhook_event.status = "failed"
        webhook_event.error_message = "No payment reference in webhook"
        webhook_event.save(update_fields=["status", "error_message", "updated_at"])
        return JsonResponse({"error": "Missing payment reference."}, status=400)

    try:
        payment = service.find_payment(adapter.name, reference)
        if payment is None:
            logger.warning("No %s payment matches webhook reference %s", adapter.name, reference)
            webhook_event.status = "ignored"
            webhook_event.error_message = f"No payment for reference {reference}"
            webhook_event.save(update_fields=["status", "error_message", "updated_at"])
            return JsonResponse({"status": "payment_not_found"})

        result = adapter.handle_webhook(payload)
        payment = service.apply_webhook(payment, payload, result)

        webhook_event.payment = payment
        webhook_event.event_type = result.event_type[:100]
        webhook_event.status = "ignored" if result.action == WebhookAction.IGNORED else "processed"
        webhook_event.save(update_fields=["payment", "event_type", "status", "updated_at"])
        return JsonResponse({
            "status": webhook_event.status,
            "action": result.action,
            "payment_status": payment.status,
        })
    except Exception as e:
        logger.exception("Processing %s webhook %s failed", adapter.name, webhook_event.pk)
        webhook_event.status = "failed"
        webhook_event.error_message = str(e)
        webhook_event.save(update_fields=["status", "error_message", "updated_at"])
        return JsonResponse({"error": "Webhook processing failed."}, status=500)
