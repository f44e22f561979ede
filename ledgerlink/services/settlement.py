"""
Settlement Aggregator

Gateways disburse many transactions as one bank deposit. This module groups
gateway transactions sharing a settlement batch id into a SettlementBatch with
a net total (sum of each member's settlement figure, gross only as a fallback)
and a disbursement date, then scores batches against bank credits.
"""
from __future__ import annotations

import logging
import re
from collections import Counter, OrderedDict
from typing import Dict, Iterable, List, Optional, Tuple

from ledgerlink.models.candidates import Candidate, SourceKind
from ledgerlink.models.reconciliation import SettlementBatch
from ledgerlink.services.fuzzy_matching import amount_delta, date_delta_days
from ledgerlink.services.normalizer import parse_date

logger = logging.getLogger(__name__)

_KEY_DATE = re.compile(r"(\d{4}-\d{2}-\d{2})")


def member_net_amount(candidate: Candidate) -> float:
    """Best available settlement figure for one transaction."""
    if candidate.net_amount is not None:
        return candidate.net_amount
    return candidate.amount


def date_from_group_key(group_key: str):
    """Batch ids like ``2025-03-10_merchant_eur`` carry their disbursement date."""
    prefix = group_key.split("_", 1)[0]
    parsed = parse_date(prefix) if _KEY_DATE.fullmatch(prefix) else None
    if parsed:
        return parsed
    found = _KEY_DATE.search(group_key)
    return parse_date(found.group(1)) if found else None


class SettlementAggregator:
    """Builds settlement batches and finds the bank deposit for each."""

    def __init__(self, window_days: int = 3, tolerance: float = 0.10):
        self.window_days = window_days
        self.tolerance = tolerance

    def build_batches(
        self, candidates: Iterable[Candidate]
    ) -> Tuple[List[SettlementBatch], List[str]]:
        """
        Group gateway transactions by settlement batch id.

        Returns:
            (batches, unresolved_batch_ids). Batches without a resolvable
            disbursement date or with mixed currencies are unresolved and
            excluded from matching.
        """
        groups: Dict[str, List[Candidate]] = OrderedDict()
        for candidate in candidates:
            if candidate.source != SourceKind.GATEWAY_TRANSACTION or not candidate.group_key:
                continue
            groups.setdefault(candidate.group_key, []).append(candidate)

        batches: List[SettlementBatch] = []
        unresolved: List[str] = []
        for batch_id, members in groups.items():
            currencies = {member.currency for member in members}
            if len(currencies) > 1:
                logger.warning("Settlement batch %s mixes currencies %s", batch_id, sorted(currencies))
                unresolved.append(batch_id)
                continue

            disbursement_date = self._resolve_date(batch_id, members)
            if disbursement_date is None:
                logger.warning("Settlement batch %s has no resolvable disbursement date", batch_id)
                unresolved.append(batch_id)
                continue

            batches.append(SettlementBatch(
                batch_id=batch_id,
                currency=members[0].currency,
                disbursement_date=disbursement_date,
                member_ids=[member.id for member in members],
                net_total=round(sum(member_net_amount(member) for member in members), 2),
                gross_total=round(sum(member.amount for member in members), 2),
            ))

        logger.info("Built %d settlement batches (%d unresolved)", len(batches), len(unresolved))
        return batches, unresolved

    def _resolve_date(self, batch_id: str, members: List[Candidate]):
        # Most common explicit settlement date, earliest on ties
        explicit = Counter(member.settlement_date for member in members if member.settlement_date)
        if explicit:
            return sorted(explicit.items(), key=lambda item: (-item[1], item[0]))[0][0]
        return date_from_group_key(batch_id)

    def compare(
        self, batch: SettlementBatch, bank: Candidate
    ) -> Optional[Tuple[float, int]]:
        """
        Compare a batch with one bank entry.

        Returns (amount_delta, date_delta_days) when the bank entry is a credit
        in the batch currency within the date window and amount tolerance.
        """
        if bank.source != SourceKind.BANK_LEDGER or bank.amount <= 0:
            return None
        if bank.currency != batch.currency or batch.disbursement_date is None:
            return None
        days = date_delta_days(bank.transaction_date, batch.disbursement_date)
        if days > self.window_days:
            return None
        diff = amount_delta(bank.amount, batch.net_total)
        if diff > self.tolerance + 1e-9:
            return None
        return diff, days

    @staticmethod
    def rank(diff: float, days: int) -> float:
        """Lower is better."""
        return diff * 10 + days
