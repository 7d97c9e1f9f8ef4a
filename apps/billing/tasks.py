"""
Django-Q2 async tasks for the billing app.

Schedule these via Django-Q2 admin, ``manage.py schedule_payment_tasks``, or programmatically:
    from django_q.tasks import async_task
    async_task('apps.billing.tasks.reconcile_processing_payments')
    async_task('apps.billing.tasks.expire_stale_payments', 48)
"""

import logging
from datetime import timedelta

import requests
from django.utils import timezone

from apps.core.services.payments import PaymentGatewayError, PaymentStatus

logger = logging.getLogger(__name__)

WAITING_STATUSES = ("pending", "processing")

SCHEDULES = (
    # (name, func, minutes between runs)
    ("Reconcile processing payments", "apps.billing.tasks.reconcile_processing_payments", 15),
    ("Expire stale payments", "apps.billing.tasks.expire_stale_payments", 60),
)


def reconcile_processing_payments(max_age_minutes=10):
    """
    Poll the gateway for payments still waiting on a webhook.

    Only payments older than ``max_age_minutes`` are checked so a webhook that
    is merely in flight gets a chance to arrive first.

    Returns:
        dict with checked, updated and error counts.
    """
    from .models import Payment
    from .services import PaymentGatewayService

    cutoff = timezone.now() - timedelta(minutes=max_age_minutes)
    payments = (
        Payment.objects.filter(status__in=WAITING_STATUSES, created_at__lte=cutoff)
        .exclude(gateway_payment_id="", gateway_transaction_id="")
        .order_by("created_at")
    )

    service = PaymentGatewayService()
    results = {"checked": 0, "updated": 0, "errors": []}

    for payment in payments:
        results["checked"] += 1
        previous_status = payment.status
        try:
            payment = service.reconcile_payment(payment)
        except (PaymentGatewayError, requests.RequestException) as e:
            logger.warning("Could not reconcile payment %s: %s", payment.payment_number, e)
            results["errors"].append(f"{payment.payment_number}: {e}")
            continue
        if payment.status != previous_status:
            results["updated"] += 1

    logger.info(
        "Payment reconciliation: %d checked, %d updated, %d errors",
        results["checked"], results["updated"], len(results["errors"]),
    )
    return results


def expire_stale_payments(max_age_hours=24):
    """Fail payments that never got a final status from their gateway."""
    from .models import Payment
    from .services import PaymentGatewayService

    cutoff = timezone.now() - timedelta(hours=max_age_hours)
    stale = Payment.objects.filter(status__in=WAITING_STATUSES, created_at__lte=cutoff)

    service = PaymentGatewayService()
    expired = 0
    for payment in stale:
        payment = service.apply_gateway_status(
            payment,
            PaymentStatus.FAILED,
            raw={"expired_at": timezone.now().isoformat()},
            failure_reason=f"No confirmation from the gateway within {max_age_hours} hours",
        )
        if payment.status == "failed":
            expired += 1

    if expired:
        logger.info("Expired %d stale payments", expired)
    return {"expired": expired}


def register_schedules():
    """Create the Django-Q2 schedules for the payment tasks. Existing ones are left alone."""
    from django_q.models import Schedule

    created = []
    for name, func, minutes in SCHEDULES:
        _, was_created = Schedule.objects.get_or_create(
            func=func,
            defaults={"name": name, "schedule_type": Schedule.MINUTES, "minutes": minutes},
        )
        if was_created:
            created.append(name)
    return created
