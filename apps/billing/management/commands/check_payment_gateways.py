"""
Check payment gateway configuration and connectivity.

Usage:
    python manage.py check_payment_gateways                       # every enabled gateway
    python manage.py check_payment_gateways --gateway clickpesa   # one gateway
    python manage.py check_payment_gateways --gateway clickpesa --preview --amount 1000
"""

from decimal import Decimal

import requests
from django.core.management.base import BaseCommand, CommandError

from apps.core.services.payments import (
    AuthError,
    ConfigurationError,
    GatewayError,
    GatewayKind,
    UnknownGatewayError,
)
from apps.billing.services import PaymentGatewayService


class Command(BaseCommand):
    help = "Check payment gateway configuration, authentication and connectivity"

    def add_arguments(self, parser):
        parser.add_argument(
            "--gateway",
            choices=[kind.value for kind in GatewayKind],
            help="Only check this gateway",
        )
        parser.add_argument(
            "--preview",
            action="store_true",
            help="Also request a ClickPesa USSD preview (no money moves)",
        )
        parser.add_argument(
            "--amount",
            type=Decimal,
            default=Decimal("1000"),
            help="Amount used for the fee quote and preview (default 1000)",
        )

    def handle(self, *args, **options):
        service = PaymentGatewayService()
        names = [options["gateway"]] if options["gateway"] else list(service.gateways)
        if not names:
            raise CommandError("No payment gateways are enabled.")

        failures = 0
        for name in names:
            try:
                gateway = service.get_gateway(name)
            except UnknownGatewayError as e:
                self.stdout.write(self.style.ERROR(f"{name}: {e}"))
                failures += 1
                continue
            failures += self._check(gateway, options)

        if failures:
            raise CommandError(f"{failures} gateway check(s) failed.")
        self.stdout.write(self.style.SUCCESS("\nAll gateway checks passed."))

    def _ok(self, message):
        self.stdout.write(self.style.SUCCESS(f"  [ok] {message}"))

    def _fail(self, message):
        self.stdout.write(self.style.ERROR(f"  [fail] {message}"))
        return 1

    def _check(self, gateway, options):
        self.stdout.write(f"\n{gateway.display_name} ({gateway.config.mode})")

        try:
            gateway.ensure_configured()
        except ConfigurationError as e:
            return self._fail(str(e))
        self._ok("Configuration present")

        currency = gateway.config.currency
        if currency not in gateway.SUPPORTED_CURRENCIES:
            currency = gateway.SUPPORTED_CURRENCIES[0]
        fees = gateway.calculate_fees(options["amount"], currency)
        self._ok(f"Fee quote for {options['amount']} {currency}: fee {fees.fee_amount}, net {fees.net_amount}")

        if gateway.name == GatewayKind.CLICKPESA.value:
            failures = self._check_clickpesa(gateway, options)
            if failures:
                return failures

        success, message = gateway.test_connection()
        if not success:
            return self._fail(f"Connection: {message}")
        self._ok(f"Connection: {message}")
        return 0

    def _check_clickpesa(self, gateway, options):
        try:
            token = gateway.auth.get_token()
        except (AuthError, ConfigurationError, requests.Timeout) as e:
            return self._fail(f"Authentication: {e}")
        self._ok(f"Authentication token received ({token[:12]}...)")

        sample = {"amount": str(options["amount"]), "currency": "TZS", "orderReference": gateway.checksum.generate_reference("CHK")}
        signature = gateway.checksum.sign_payment_request(sample)
        if not gateway.checksum.verify(sample, signature):
            return self._fail("Checksum round trip did not verify")
        self._ok(f"Checksum generated ({signature[:16]}...)")

        if options["preview"]:
            try:
                intent = gateway.create_payment_intent({"amount": options["amount"], "currency": "TZS"})
            except (AuthError, GatewayError, requests.RequestException) as e:
                return self._fail(f"Preview: {e}")
            methods = ", ".join(str(m.get("name", m)) if isinstance(m, dict) else str(m) for m in intent.extra["available_methods"])
            self._ok(f"Preview {intent.reference}: {methods or 'no active methods reported'}")
        return 0
