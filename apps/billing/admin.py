from django.contrib import admin, messages

from apps.core.services.payments import RefundNotAllowed

from .models import Invoice, Payment, Refund, WebhookEvent
from .services import PaymentGatewayService


class PaymentInline(admin.TabularInline):
    model = Payment
    extra = 0
    fields = ("payment_number", "gateway", "amount", "status", "payment_date")
    readonly_fields = fields
    can_delete = False


@admin.register(Invoice)
class InvoiceAdmin(admin.ModelAdmin):
    list_display = ("invoice_number", "customer", "status", "currency", "total_amount", "paid_amount", "balance_due", "due_date")
    list_filter = ("status", "currency")
    search_fields = ("invoice_number", "customer__username", "customer__email")
    readonly_fields = ("paid_amount", "paid_date")
    inlines = [PaymentInline]


class RefundInline(admin.TabularInline):
    model = Refund
    extra = 0
    fields = ("amount", "status", "gateway_refund_id", "processed_at")
    readonly_fields = fields
    can_delete = False


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = ("payment_number", "invoice", "gateway", "amount", "fee_amount", "currency", "status", "payment_date")
    list_filter = ("status", "gateway", "type")
    search_fields = ("payment_number", "gateway_transaction_id", "gateway_payment_id", "invoice__invoice_number")
    readonly_fields = ("net_amount", "gateway_response", "completed_at", "failed_at", "refunded_at")
    inlines = [RefundInline]


@admin.register(Refund)
class RefundAdmin(admin.ModelAdmin):
    list_display = ("payment", "amount", "status", "gateway_refund_id", "processed_at", "created_at")
    list_filter = ("status",)
    search_fields = ("payment__payment_number", "gateway_refund_id")
    readonly_fields = ("gateway_response", "processed_at")
    actions = ["complete_pending_refunds"]

    @admin.action(description="Mark selected pending refunds as completed")
    def complete_pending_refunds(self, request, queryset):
        service = PaymentGatewayService()
        completed = 0
        for refund in queryset.filter(status="pending"):
            try:
                service.complete_refund(refund, user=request.user)
                completed += 1
            except RefundNotAllowed as e:
                self.message_user(request, f"{refund.pk}: {e}", level=messages.WARNING)
        self.message_user(request, f"{completed} refund(s) completed.")


@admin.register(WebhookEvent)
class WebhookEventAdmin(admin.ModelAdmin):
    list_display = ("provider", "event_type", "event_id", "reference", "status", "payment", "created_at")
    list_filter = ("provider", "status")
    search_fields = ("event_id", "reference")
    readonly_fields = ("provider", "event_type", "event_id", "reference", "payload", "headers", "status", "error_message", "ip_address", "payment")
