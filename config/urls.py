from django.contrib import admin
from django.urls import include, path

urlpatterns = [
    # Django admin
    path("django-admin/", admin.site.urls),
    path("admin-portal/", include("apps.billing.urls_admin")),
    path("webhooks/", include("apps.billing.urls_webhooks")),
]
