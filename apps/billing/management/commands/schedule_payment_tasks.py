from django.core.management.base import BaseCommand

from apps.billing.tasks import register_schedules


class Command(BaseCommand):
    help = "Register the Django-Q2 schedules for payment reconciliation and expiry"

    def handle(self, *args, **options):
        created = register_schedules()
        for name in created:
            self.stdout.write(self.style.SUCCESS(f"Scheduled: {name}"))
        if not created:
            self.stdout.write("Payment task schedules already registered.")
