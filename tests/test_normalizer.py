"""
Tests for the record normalizer.
"""
from datetime import date, datetime

import pytest

from ledgerlink.models.candidates import MatchType, ReconciliationState, SourceKind
from ledgerlink.services.errors import ValidationError
from ledgerlink.services.normalizer import RecordNormalizer, parse_amount, parse_date


class TestParseAmount:

    @pytest.mark.parametrize("raw,expected", [
        ("1.234,56", 1234.56),
        ("1,234.56", 1234.56),
        ("1234,56", 1234.56),
        ("€ 845,67", 845.67),
        ("$1,000", 1000.0),
        ("1,234,567", 1234567.0),
        ("(100.00)", -100.0),
        ("-500.00", -500.0),
        (12, 12.0),
        (845.67, 845.67),
    ])
    def test_formats(self, raw, expected):
        assert parse_amount(raw) == pytest.approx(expected)

    @pytest.mark.parametrize("raw", [None, "", "abc", True, float("nan")])
    def test_unparseable(self, raw):
        assert parse_amount(raw) is None


class TestParseDate:

    def test_iso(self):
        assert parse_date("2025-03-10") == date(2025, 3, 10)

    def test_iso_with_time(self):
        assert parse_date("2025-03-10T14:22:00Z") == date(2025, 3, 10)

    def test_month_first(self):
        assert parse_date("03/10/2025") == date(2025, 3, 10)

    def test_datetime_object(self):
        assert parse_date(datetime(2025, 3, 10, 9, 30)) == date(2025, 3, 10)

    def test_garbage(self):
        assert parse_date("not a date") is None
        assert parse_date(None) is None


class TestRecordNormalizer:

    def setup_method(self):
        self.normalizer = RecordNormalizer()

    def test_bank_record(self):
        candidate = self.normalizer.normalize(
            {
                "id": "bank-1",
                "booking_date": "2025-03-10",
                "amount": "1.245,67",
                "currency": "eur",
                "reference": "PAYOUT-778",
                "description": "BRAINTREE PAYOUT 778",
                "account": "ES12",
            },
            SourceKind.BANK_LEDGER,
        )
        assert candidate.id == "bank-1"
        assert candidate.source == SourceKind.BANK_LEDGER
        assert candidate.transaction_date == date(2025, 3, 10)
        assert candidate.amount == 1245.67
        assert candidate.currency == "EUR"
        assert candidate.identity is None
        assert candidate.group_key is None
        assert candidate.references == ["PAYOUT-778"]
        assert candidate.description == "BRAINTREE PAYOUT 778"
        assert candidate.metadata["account"] == "ES12"
        assert candidate.state == ReconciliationState.UNRECONCILED

    def test_gateway_transaction_prefers_settlement_amount(self):
        candidate = self.normalizer.normalize(
            {
                "transaction_id": "tx-1",
                "created_at": "2025-03-09T10:00:00Z",
                "amount": "870.00",
                "settlement_disbursement_amount": 0,
                "disbursement_amount": "845.67",
                "settlement_amount": "850.00",
                "customer_email": "ana@x.com",
                "customer_name": "Ana Silva",
                "settlement_batch_id": "2025-03-10_merchant_eur",
                "disbursement_date": "2025-03-10",
            },
            SourceKind.GATEWAY_TRANSACTION,
        )
        assert candidate.amount == 870.0
        assert candidate.net_amount == 845.67
        assert candidate.settlement_date == date(2025, 3, 10)
        assert candidate.group_key == "2025-03-10_merchant_eur"
        assert candidate.identity.email == "ana@x.com"
        assert candidate.identity.name == "Ana Silva"
        assert "tx-1" in candidate.references

    def test_no_batch_is_ignored(self):
        candidate = self.normalizer.normalize(
            {"transaction_id": "tx-2", "created_at": "2025-03-09", "amount": 10, "settlement_batch_id": "no-batch"},
            SourceKind.GATEWAY_TRANSACTION,
        )
        assert candidate.group_key is None
        assert candidate.net_amount is None

    def test_nested_custom_data(self):
        candidate = self.normalizer.normalize(
            {
                "id": "inv-1",
                "invoice_date": "2025-03-01",
                "total_amount": 500,
                "custom_data": {"email": "billing@acme.com", "order_id": "ORD-9"},
            },
            SourceKind.INVOICE,
        )
        assert candidate.identity.email == "billing@acme.com"
        assert "ORD-9" in candidate.references

    def test_missing_id(self):
        with pytest.raises(ValidationError) as excinfo:
            self.normalizer.normalize({"booking_date": "2025-03-10", "amount": 1}, SourceKind.BANK_LEDGER)
        assert excinfo.value.source == "bank_ledger"

    def test_bad_date(self):
        with pytest.raises(ValidationError) as excinfo:
            self.normalizer.normalize({"id": "b", "booking_date": "soon", "amount": 1}, SourceKind.BANK_LEDGER)
        assert excinfo.value.record_id == "b"

    def test_bad_amount(self):
        with pytest.raises(ValidationError):
            self.normalizer.normalize({"id": "b", "booking_date": "2025-03-10", "amount": "n/a"}, SourceKind.BANK_LEDGER)

    def test_bad_currency_is_validation_error(self):
        with pytest.raises(ValidationError):
            self.normalizer.normalize(
                {"id": "b", "booking_date": "2025-03-10", "amount": 1, "currency": "X" * 20},
                SourceKind.BANK_LEDGER,
            )

    def test_normalize_many_collects_rejections(self):
        candidates, rejected = self.normalizer.normalize_many(
            [
                {"id": "ok", "booking_date": "2025-03-10", "amount": 1},
                {"id": "bad", "booking_date": "2025-03-10"},
            ],
            SourceKind.BANK_LEDGER,
        )
        assert [c.id for c in candidates] == ["ok"]
        assert [r.record_id for r in rejected] == ["bad"]

    def test_reconciled_with_manual_link(self):
        candidate = self.normalizer.normalize(
            {
                "id": "inv-7",
                "invoice_date": "2025-03-01",
                "total_amount": 500,
                "reconciliation_state": "reconciled",
                "reconciliation_type": "manual",
                "reconciliation_link": {
                    "counterpart_id": "bank-9",
                    "counterpart_source": "bank_ledger",
                    "match_type": "amount_date",
                    "confidence": 100,
                },
            },
            SourceKind.INVOICE,
        )
        assert candidate.is_reconciled
        assert candidate.link.counterpart_id == "bank-9"
        assert candidate.link.manual
        assert candidate.has_manual_link

    def test_reconciled_flag_without_link_counts_as_manual(self):
        candidate = self.normalizer.normalize(
            {"id": "inv-8", "invoice_date": "2025-03-01", "total_amount": 1, "reconciled": True},
            SourceKind.INVOICE,
        )
        assert candidate.state == ReconciliationState.RECONCILED
        assert candidate.has_manual_link

    def test_automatic_link_is_not_manual(self):
        candidate = self.normalizer.normalize(
            {
                "id": "inv-9",
                "invoice_date": "2025-03-01",
                "total_amount": 1,
                "reconciliation_state": "reconciled",
                "reconciliation_link": {
                    "counterpart_id": "bank-1",
                    "counterpart_source": "bank_ledger",
                    "match_type": MatchType.AMOUNT_DATE.value,
                    "confidence": 80,
                },
            },
            SourceKind.INVOICE,
        )
        assert not candidate.has_manual_link
