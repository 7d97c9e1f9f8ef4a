from django.urls import path

from . import views

app_name = "billing_webhooks"

urlpatterns = [
    # No auth, uses gateway signature verification
    path("payments/<str:gateway>/", views.payment_webhook, name="payment_webhook"),
]
