from decimal import Decimal

import pytest

from apps.core.services.payments.clickpesa import ClickPesaGateway


class TestSharedValidation:
    def test_collects_every_error(self, clickpesa):
        errors = clickpesa.validate({"amount": 0, "currency": "GBP", "method": "mpesa"})

        assert errors == [
            "Amount must be greater than zero",
            "Currency not supported by ClickPesa",
            "Phone number is required for mobile money payments",
        ]

    @pytest.mark.parametrize("amount", [None, "", "abc", "-5"])
    def test_bad_amounts(self, stripe_gateway, amount):
        errors = stripe_gateway.validate({"amount": amount, "currency": "USD"})

        assert errors == ["Amount must be greater than zero"]

    def test_missing_currency(self, stripe_gateway):
        assert stripe_gateway.validate({"amount": "10"}) == ["Currency is required"]

    def test_currency_is_case_insensitive(self, stripe_gateway):
        assert stripe_gateway.validate({"amount": Decimal("10"), "currency": "usd"}) == []


class TestClickPesaValidation:
    @pytest.mark.parametrize("phone", ["+255712345678", "0712345678", "0612345678"])
    def test_accepts_tanzanian_mobile_numbers(self, clickpesa, phone):
        data = {"amount": "1000", "currency": "TZS", "method": "mpesa", "phone_number": phone}

        assert clickpesa.validate(data) == []

    @pytest.mark.parametrize("phone", ["12345", "0812345678", "+254712345678", "07123456789"])
    def test_rejects_other_numbers(self, clickpesa, phone):
        data = {"amount": "1000", "currency": "TZS", "method": "mpesa", "phone_number": phone}

        assert clickpesa.validate(data) == ["Invalid Tanzanian phone number format"]

    def test_bank_transfer_needs_no_phone(self, clickpesa):
        assert clickpesa.validate({"amount": "1000", "currency": "TZS", "method": "bank_transfer"}) == []

    @pytest.mark.parametrize("raw, formatted", [
        ("+255712345678", "255712345678"),
        ("0712345678", "255712345678"),
        ("255712345678", "255712345678"),
        ("712345678", "255712345678"),
        ("0712 345 678", "255712345678"),
    ])
    def test_format_phone_number(self, raw, formatted):
        assert ClickPesaGateway.format_phone_number(raw) == formatted

    def test_format_amount(self):
        assert ClickPesaGateway.format_amount(Decimal("1000.40"), "TZS") == "1000"
        assert ClickPesaGateway.format_amount(Decimal("12.5"), "USD") == "12.50"


class TestPayPalValidation:
    def test_requires_approval_ids(self, paypal_gateway):
        errors = paypal_gateway.validate({"amount": "10", "currency": "USD"})

        assert errors == ["PayPal payment id is required", "PayPal payer id is required"]
