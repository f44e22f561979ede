"""
Tests for the bounded subset-sum resolver.
"""
from datetime import date, timedelta

import pytest

from ledgerlink.models.candidates import Candidate, SourceKind
from ledgerlink.services.subset_sum import SubsetSumResolver

DAY = date(2025, 4, 10)


def _candidate(record_id, amount, offset=0, source=SourceKind.INVOICE, currency="EUR", net=None):
    return Candidate(
        id=record_id,
        source=source,
        transaction_date=DAY + timedelta(days=offset),
        amount=amount,
        net_amount=net,
        currency=currency,
    )


class TestSubsetSumResolver:

    def setup_method(self):
        self.resolver = SubsetSumResolver(window_days=14, pool_size=50, tolerance_pct=1.0)
        self.target = _candidate("bank-1", 1000.0, source=SourceKind.BANK_LEDGER)

    def test_nearby_orders_by_date_then_id(self):
        pool = [
            _candidate("inv-a", 600.0, offset=-1),
            _candidate("inv-c", 250.0),
            _candidate("inv-b", 400.0),
        ]
        nearby = self.resolver.nearby(self.target, pool)
        assert [c.id for c in nearby] == ["inv-b", "inv-c", "inv-a"]

    def test_nearby_filters_currency_and_window(self):
        pool = [
            _candidate("inv-usd", 1000.0, currency="USD"),
            _candidate("inv-old", 1000.0, offset=-15),
            _candidate("inv-zero", 0.0),
            _candidate("inv-ok", 1000.0, offset=14),
        ]
        assert [c.id for c in self.resolver.nearby(self.target, pool)] == ["inv-ok"]

    def test_pool_is_capped(self):
        resolver = SubsetSumResolver(window_days=14, pool_size=3)
        pool = [_candidate(f"inv-{i:02d}", 10.0, offset=i % 5) for i in range(20)]
        assert len(resolver.nearby(self.target, pool)) == 3

    def test_find_singles_within_percentage(self):
        nearby = [_candidate("inv-1", 995.0), _candidate("inv-2", 980.0)]
        singles = self.resolver.find_singles(self.target, nearby)
        assert [split.members[0].id for split in singles] == ["inv-1"]
        assert singles[0].variance == pytest.approx(5.0)
        assert singles[0].variance_pct == pytest.approx(0.5)

    def test_find_pair(self):
        nearby = self.resolver.nearby(self.target, [
            _candidate("inv-a", 600.0, offset=-1),
            _candidate("inv-b", 400.0),
            _candidate("inv-c", 250.0),
        ])
        pair = self.resolver.find_pair(self.target, nearby)
        assert pair is not None
        assert sorted(member.id for member in pair.members) == ["inv-a", "inv-b"]
        assert pair.combined_amount == pytest.approx(1000.0)
        assert pair.variance == 0.0
        assert pair.max_date_delta == 1

    def test_pair_uses_net_amount_against_bank(self):
        nearby = [
            _candidate("tx-1", 520.0, net=500.0, source=SourceKind.GATEWAY_TRANSACTION),
            _candidate("tx-2", 520.0, net=500.0, source=SourceKind.GATEWAY_TRANSACTION),
        ]
        pair = self.resolver.find_pair(self.target, nearby)
        assert pair is not None
        assert pair.combined_amount == pytest.approx(1000.0)

    def test_no_pair_outside_tolerance(self):
        nearby = [_candidate("inv-a", 600.0), _candidate("inv-b", 380.0)]
        assert self.resolver.find_pair(self.target, nearby) is None

    def test_zero_target_has_no_pair(self):
        target = _candidate("bank-0", 0.0, source=SourceKind.BANK_LEDGER)
        assert self.resolver.find_pair(target, [_candidate("a", 0.0), _candidate("b", 0.0)]) is None

    def test_nearby_keeps_gateway_records_in_the_target_direction(self):
        debit = _candidate("bank-2", -1245.67, source=SourceKind.BANK_LEDGER)
        pool = [
            _candidate("tx-1", 870.0, net=845.67, source=SourceKind.GATEWAY_TRANSACTION),
            _candidate("tx-r", -400.0, source=SourceKind.GATEWAY_TRANSACTION),
            _candidate("inv-1", 400.0),
        ]
        assert [c.id for c in self.resolver.nearby(debit, pool)] == ["inv-1", "tx-r"]
        assert [c.id for c in self.resolver.nearby(self.target, pool)] == ["inv-1", "tx-1"]
