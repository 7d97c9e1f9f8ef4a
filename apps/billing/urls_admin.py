from django.urls import path

from . import views

app_name = "billing_admin"

urlpatterns = [
    path("billing/invoices/<uuid:pk>/process-payment/", views.admin_process_payment, name="process_payment"),
    path("billing/invoices/<uuid:pk>/payment-intent/", views.admin_payment_intent, name="payment_intent"),
    path("billing/payments/calculate-fees/", views.admin_calculate_fees, name="calculate_fees"),
    path("billing/payments/methods/<str:gateway>/", views.admin_payment_methods, name="payment_methods"),
    path("billing/payments/<uuid:pk>/refund/", views.admin_process_refund, name="process_refund"),
    path("billing/refunds/<uuid:pk>/complete/", views.admin_complete_refund, name="complete_refund"),
]
