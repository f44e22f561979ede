"""
End-to-end tests for reconciliation runs against the in-memory store.
"""
import asyncio
from datetime import date

import pytest

from ledgerlink.models.candidates import SourceKind
from ledgerlink.models.reconciliation import ReconciliationConfig, RunStatus
from ledgerlink.models.requests import ReconciliationRunRequest
from ledgerlink.services.db import DB
from ledgerlink.services.errors import FetchError, RunNotFoundError, WriteError
from ledgerlink.services.reconciliation_runner import ReconciliationRunner, select_pairings
from ledgerlink.services.store import InMemoryCandidateStore
from ledgerlink.state.run_history import RunHistory


def _records():
    return {
        SourceKind.BANK_LEDGER: [
            {"id": "bank-1", "booking_date": "2025-04-10", "amount": 500.0, "reference": "INV-1001"},
            {"id": "bank-2", "booking_date": "2025-04-12", "amount": "999.58", "description": "BRAINTREE DEP"},
            {"id": "bank-3", "booking_date": "2025-04-15", "amount": 120.0},
            {"id": "bank-bad", "booking_date": "not a date", "amount": 10.0},
        ],
        SourceKind.INVOICE: [
            {"invoice_id": "inv-1001", "invoice_number": "INV-1001", "invoice_date": "2025-04-08",
             "total_amount": "500,00", "client_name": "Acme Lda"},
        ],
        SourceKind.GATEWAY_TRANSACTION: [
            {"transaction_id": "tx-1", "created_at": "2025-04-09T14:02:00Z", "amount": 600.0,
             "settlement_amount": 582.0, "settlement_batch_id": "B-0410", "disbursement_date": "2025-04-10"},
            {"transaction_id": "tx-2", "created_at": "2025-04-09T16:40:00Z", "amount": 430.0,
             "settlement_amount": 417.5, "settlement_batch_id": "B-0410", "disbursement_date": "2025-04-10"},
        ],
    }


def _run(runner, **request):
    return asyncio.run(runner.run(ReconciliationRunRequest(**request)))


class UnfilteredStore(InMemoryCandidateStore):
    """Ignores the state filter, like a store that cannot query by state."""

    async def fetch_page(self, source, date_from, date_to, states, offset, limit):
        return await super().fetch_page(source, date_from, date_to, None, offset, limit)


class FailingFetchStore(InMemoryCandidateStore):
    async def fetch_page(self, source, date_from, date_to, states, offset, limit):
        if source == SourceKind.INVOICE:
            raise FetchError(source.value, "connection reset", offset=offset)
        return await super().fetch_page(source, date_from, date_to, states, offset, limit)


class FailingWriteStore(InMemoryCandidateStore):
    async def update(self, record_id, source, patch, expected_state=None):
        if record_id == "tx-2":
            raise WriteError(record_id, "records service returned 500")
        await super().update(record_id, source, patch, expected_state)


class TestReconciliationRunner:

    def setup_method(self):
        self.store = InMemoryCandidateStore(_records())
        self.runner = ReconciliationRunner(self.store)

    def test_live_run(self):
        run = _run(self.runner)
        assert run.status == RunStatus.SUCCEEDED
        assert run.candidates_scanned == 7
        assert run.matched == 2
        assert run.skipped_invalid == 1
        assert run.skipped == 1
        assert run.errors == 0
        assert run.total_value_matched == pytest.approx(1499.58)
        assert run.matches_by_type == {"exact_reference": 1, "settlement_aggregate": 1}
        assert len(run.error_messages) == 1
        assert run.run_id.startswith("run_")

        bank_2 = self.store.get(SourceKind.BANK_LEDGER, "bank-2")
        assert bank_2["reconciliation_link"]["counterpart_id"] == "B-0410"
        assert bank_2["description"] == "BRAINTREE DEP"
        assert self.store.get(SourceKind.GATEWAY_TRANSACTION, "tx-1")["reconciliation_state"] == "reconciled"
        assert "reconciliation_state" not in self.store.get(SourceKind.BANK_LEDGER, "bank-3")

    def test_pages_until_empty(self):
        runner = ReconciliationRunner(self.store, config=ReconciliationConfig(page_size=2))
        run = _run(runner, dry_run=True)
        assert run.candidates_scanned == 7
        # bank 3 calls, payout 1, transactions 2, invoices 2 (a short page is not the end)
        assert self.store.fetch_calls == 8

    def test_dry_run_writes_nothing(self):
        run = _run(self.runner, dry_run=True)
        assert run.dry_run is True
        assert run.matched == 2
        assert self.store.updates == []
        assert all(not match.applied for match in run.sample_matches)

    def test_dry_run_is_repeatable(self):
        first = _run(self.runner, dry_run=True)
        second = _run(self.runner, dry_run=True)
        assert first.run_id != second.run_id
        assert first.comparable_summary() == second.comparable_summary()

    def test_dry_run_agrees_with_live_run(self):
        dry = _run(self.runner, dry_run=True)
        live = _run(ReconciliationRunner(InMemoryCandidateStore(_records())))
        assert dry.comparable_summary() == live.comparable_summary()

    def test_second_live_run_is_a_no_op(self):
        _run(self.runner)
        written = len(self.store.updates)
        again = _run(self.runner)
        assert again.matched == 0
        assert again.candidates_scanned == 2
        assert len(self.store.updates) == written

    def test_manual_reconciliation_preserved(self):
        records = _records()
        records[SourceKind.INVOICE][0].update({
            "reconciliation_state": "reconciled",
            "reconciliation_type": "manual",
            "reconciliation_link": {
                "counterpart_id": "bank-99",
                "counterpart_source": "bank_ledger",
                "match_type": "manual",
                "confidence": 100,
            },
        })
        store = UnfilteredStore(records)
        run = _run(ReconciliationRunner(store))
        assert run.skipped_preserved == 1
        assert run.matched == 1
        assert all(update["record_id"] != "inv-1001" for update in store.updates)
        assert store.get(SourceKind.INVOICE, "inv-1001")["reconciliation_link"]["counterpart_id"] == "bank-99"

    def test_manual_reconciliation_preserved_without_preserve_flag(self):
        records = _records()
        records[SourceKind.INVOICE][0].update({"reconciliation_state": "reconciled"})
        store = UnfilteredStore(records)
        run = _run(ReconciliationRunner(store), preserve_reconciliation=False)
        assert run.skipped_preserved == 1
        assert all(update["record_id"] != "inv-1001" for update in store.updates)

    def test_target_date_window(self):
        run = _run(self.runner, dry_run=True, date_from=date(2025, 4, 11), date_to=date(2025, 4, 30))
        assert run.matched == 1
        assert run.matches_by_type == {"settlement_aggregate": 1}

    def test_source_filter(self):
        run = _run(self.runner, dry_run=True, sources=["bank_ledger", "invoice"])
        assert run.sources == [SourceKind.BANK_LEDGER, SourceKind.INVOICE]
        assert run.matches_by_type == {"exact_reference": 1}

    def test_fetch_error_fails_run(self):
        runner = ReconciliationRunner(FailingFetchStore(_records()))
        run = _run(runner)
        assert run.status == RunStatus.FAILED
        assert run.errors == 1
        assert run.matched == 0
        assert "connection reset" in run.error_messages[0]
        assert run.completed_at is not None

    def test_write_error_counted_and_run_continues(self):
        store = FailingWriteStore(_records())
        run = _run(ReconciliationRunner(store))
        assert run.status == RunStatus.SUCCEEDED
        assert run.matched == 1
        assert run.errors == 1
        assert any("tx-2" in message or "bank-2" in message for message in run.error_messages)
        assert store.get(SourceKind.BANK_LEDGER, "bank-1")["reconciliation_state"] == "reconciled"

    def test_failed_settlement_member_leaves_deposit_unlinked(self):
        store = FailingWriteStore(_records())
        run = _run(ReconciliationRunner(store))
        assert "reconciliation_state" not in store.get(SourceKind.BANK_LEDGER, "bank-2")
        assert "reconciliation_state" not in store.get(SourceKind.GATEWAY_TRANSACTION, "tx-2")
        assert store.get(SourceKind.GATEWAY_TRANSACTION, "tx-1")["reconciliation_state"] == "reconciled"
        assert run.partially_applied == ["tx-1"]
        assert any(message.startswith("bank-2:") and "already linked: tx-1" in message
                   for message in run.error_messages)

    def test_ambiguous_target_reported_for_review(self):
        records = _records()
        records[SourceKind.INVOICE].extend([
            {"invoice_id": "inv-a", "invoice_date": "2025-04-15", "total_amount": 120.0},
            {"invoice_id": "inv-b", "invoice_date": "2025-04-15", "total_amount": 120.0},
        ])
        store = InMemoryCandidateStore(records)
        run = _run(ReconciliationRunner(store))
        assert run.needs_review == 1
        assert run.review_sample[0].target_id == "bank-3"
        assert sorted(run.review_sample[0].candidate_ids) == ["inv-a", "inv-b"]
        assert "reconciliation_state" not in store.get(SourceKind.BANK_LEDGER, "bank-3")

    def test_flag_needs_review(self):
        records = _records()
        records[SourceKind.INVOICE].extend([
            {"invoice_id": "inv-a", "invoice_date": "2025-04-15", "total_amount": 120.0},
            {"invoice_id": "inv-b", "invoice_date": "2025-04-15", "total_amount": 120.0},
        ])
        store = InMemoryCandidateStore(records)
        runner = ReconciliationRunner(store, config=ReconciliationConfig(flag_needs_review=True))
        run = _run(runner)
        assert run.needs_review == 1
        bank_3 = store.get(SourceKind.BANK_LEDGER, "bank-3")
        assert bank_3["reconciliation_state"] == "needs_review"
        assert "reconciliation_link" not in bank_3

    def test_threshold_override(self):
        store = InMemoryCandidateStore({
            SourceKind.BANK_LEDGER: [{"id": "b", "booking_date": "2025-04-10", "amount": 50.0}],
            SourceKind.INVOICE: [{"invoice_id": "i", "invoice_date": "2025-04-16", "total_amount": 50.0}],
        })
        runner = ReconciliationRunner(store)
        # amount_date: 45 + 11.43 + 15 = 71.43; subset_sum single: 60 + 15.71 + 15 = 90.71
        assert _run(runner, dry_run=True).matches_by_type == {"amount_date": 1}
        assert _run(runner, dry_run=True, confidence_threshold=75).matches_by_type == {"subset_sum": 1}
        assert _run(runner, dry_run=True, confidence_threshold=95).matched == 0


class TestRunHistoryIntegration:

    def setup_method(self):
        self.store = InMemoryCandidateStore(_records())

    def _history(self, tmp_path):
        return RunHistory(db=DB(sqlite_path=str(tmp_path / "runs.db"), dsn=""))

    def test_successful_run_recorded(self, tmp_path):
        history = self._history(tmp_path)
        run = _run(ReconciliationRunner(self.store, history=history), dry_run=True)
        stored = history.get_run(run.run_id)
        assert stored["status"] == "SUCCEEDED"
        assert stored["dry_run"] is True
        assert stored["matched"] == 2
        assert stored["summary"]["matches_by_type"]["exact_reference"] == 1
        assert stored["config"]["confidence_threshold"] == 70.0

    def test_failed_run_recorded(self, tmp_path):
        history = self._history(tmp_path)
        run = _run(ReconciliationRunner(FailingFetchStore(_records()), history=history))
        stored = history.get_run(run.run_id)
        assert stored["status"] == "FAILED"
        assert "connection reset" in stored["error_message"]

    def test_stats(self, tmp_path):
        history = self._history(tmp_path)
        _run(ReconciliationRunner(self.store, history=history), dry_run=True)
        _run(ReconciliationRunner(FailingFetchStore(_records()), history=history))
        stats = history.get_run_stats()
        assert stats["total_runs"] == 2
        assert stats["succeeded"] == 1
        assert stats["failed"] == 1
        assert len(history.list_runs(status="failed")) == 1

    def test_unknown_run_cannot_be_completed(self, tmp_path):
        history = self._history(tmp_path)
        with pytest.raises(RunNotFoundError):
            history.complete_run("run_missing", {"matched": 0})
        assert history.get_run("run_missing") is None


def test_select_pairings_drops_unavailable_counterparts():
    config = ReconciliationConfig()
    pairings = select_pairings(config, [SourceKind.INVOICE, SourceKind.GATEWAY_TRANSACTION])
    assert [p.name for p in pairings] == ["invoice_to_gateway"]
    assert select_pairings(config, []) == config.pairings
