"""
Matching Strategy Chain

Strategies run in fixed priority order against the pool of counterparts not yet
claimed in this run:

1. Exact reference
2. Amount + date window
3. Fuzzy identity
4. Settlement aggregate
5. Subset sum

Each strategy proposes scored MatchResults for a target; the scorer picks the
winner. Claimed ids live on the MatchingContext passed to every call, never in
module state.
"""
from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from ledgerlink.models.candidates import Candidate, MatchType, SourceKind, candidate_key
from ledgerlink.models.reconciliation import (
    MatchResult,
    MatchSignals,
    ReconciliationConfig,
    SettlementBatch,
    SourcePairing,
)
from ledgerlink.services.errors import AmbiguousMatch
from ledgerlink.services.fuzzy_matching import (
    amount_delta,
    amount_within_tolerance,
    date_delta_days,
    email_match_kind,
    name_similarity,
)
from ledgerlink.services.multi_factor_scoring import MultiFactorScorer
from ledgerlink.services.settlement import SettlementAggregator
from ledgerlink.services.subset_sum import SplitMatch, SubsetSumResolver

logger = logging.getLogger(__name__)

MIN_DESCRIPTION_REFERENCE_LENGTH = 6


@dataclass
class MatchingContext:
    """Run-scoped matching state."""
    config: ReconciliationConfig
    scorer: MultiFactorScorer
    candidates: Dict[str, Candidate] = field(default_factory=dict)
    batches: Dict[str, SettlementBatch] = field(default_factory=dict)
    claimed: Set[str] = field(default_factory=set)
    ambiguous: Dict[str, AmbiguousMatch] = field(default_factory=dict)

    @classmethod
    def for_run(
        cls,
        config: ReconciliationConfig,
        candidates: List[Candidate],
        batches: Optional[List[SettlementBatch]] = None,
    ) -> "MatchingContext":
        return cls(
            config=config,
            scorer=MultiFactorScorer(threshold=config.confidence_threshold),
            candidates={candidate.key: candidate for candidate in candidates},
            batches={batch.batch_id: batch for batch in batches or []},
        )

    def is_claimed(self, candidate: Candidate) -> bool:
        return candidate.key in self.claimed

    def claim(self, result: MatchResult) -> None:
        keys = [ref.key for ref in result.refs]
        taken = [key for key in keys if key in self.claimed]
        if taken:
            raise ValueError(f"Candidates already claimed in this run: {taken}")
        self.claimed.update(keys)
        self.ambiguous.pop(result.target.key, None)

    def batch_members(self, batch: SettlementBatch) -> List[Candidate]:
        members = []
        for member_id in batch.member_ids:
            member = self.candidates.get(candidate_key(SourceKind.GATEWAY_TRANSACTION, member_id))
            if member is not None:
                members.append(member)
        return members


def _signals(target: Candidate, candidate: Candidate, window: int, **extra) -> MatchSignals:
    return MatchSignals(
        date_delta_days=date_delta_days(target.transaction_date, candidate.transaction_date),
        amount_delta=amount_delta(target.amount, candidate.comparable_amount(target.source)),
        window_days=window,
        **extra,
    )


def _result(
    pairing: SourcePairing,
    target: Candidate,
    counterparts: List[Candidate],
    match_type: MatchType,
    confidence: float,
    signals: MatchSignals,
    counterpart_source: Optional[str] = None,
    batch_id: Optional[str] = None,
    reason: Optional[str] = None,
) -> MatchResult:
    return MatchResult(
        pairing=pairing.name,
        target=target.ref(),
        counterparts=[candidate.ref() for candidate in counterparts],
        counterpart_source=counterpart_source or counterparts[0].source.value,
        match_type=match_type,
        confidence=confidence,
        amount=round(abs(target.amount), 2),
        signals=signals,
        batch_id=batch_id,
        reason=reason,
    )


class MatchingStrategy(ABC):
    """One layer of the chain."""

    match_type: MatchType

    @abstractmethod
    def propose(
        self,
        target: Candidate,
        pool: List[Candidate],
        pairing: SourcePairing,
        context: MatchingContext,
    ) -> List[MatchResult]:
        """Scored results for ``target`` drawn from unclaimed ``pool``."""


class ExactReferenceStrategy(MatchingStrategy):
    """Shared order/transaction reference, regardless of amount or date."""

    match_type = MatchType.EXACT_REFERENCE

    def propose(self, target, pool, pairing, context):
        target_refs = {ref.lower() for ref in target.references}
        tokens = set()
        if target.description:
            tokens = {token.lower() for token in re.split(r"[^\w\-]+", target.description) if token}

        hits = []
        for candidate in pool:
            shared = self._shared_reference(target_refs, tokens, candidate)
            if shared:
                hits.append((candidate, shared))
        if not hits:
            return []

        # Nearest date wins when several records carry the reference
        hits.sort(key=lambda hit: (date_delta_days(target.transaction_date, hit[0].transaction_date), hit[0].id))
        candidate, shared = hits[0]
        signals = _signals(target, candidate, window=None, reference=shared)
        confidence = context.scorer.score(self.match_type, signals).total_score
        return [_result(pairing, target, [candidate], self.match_type, confidence, signals,
                        reason=f"Shared reference {shared}")]

    def _shared_reference(self, target_refs, tokens, candidate: Candidate) -> Optional[str]:
        for ref in candidate.references:
            lowered = ref.lower()
            if lowered in target_refs:
                return ref
            if len(lowered) >= MIN_DESCRIPTION_REFERENCE_LENGTH and lowered in tokens:
                return ref
        return None


class AmountDateStrategy(MatchingStrategy):
    """Amount within tolerance and date within the narrowest non-empty window."""

    match_type = MatchType.AMOUNT_DATE

    def propose(self, target, pool, pairing, context):
        config = context.config
        windows = config.windows_for(pairing)
        hits: List[Candidate] = []
        for window in windows:
            hits = [
                candidate for candidate in pool
                if candidate.currency == target.currency
                and candidate.direction_compatible(target)
                and date_delta_days(target.transaction_date, candidate.transaction_date) <= window
                and amount_within_tolerance(
                    target.amount,
                    candidate.comparable_amount(target.source),
                    config.amount_tolerance_abs,
                    config.amount_tolerance_pct,
                )
            ]
            if hits:
                break

        results = []
        for candidate in hits:
            signals = _signals(target, candidate, window=max(windows))
            breakdown = context.scorer.score(
                self.match_type, signals, exact_amount_tolerance=config.amount_tolerance_abs
            )
            results.append(_result(pairing, target, [candidate], self.match_type,
                                   breakdown.total_score, signals))
        return results


class FuzzyIdentityStrategy(MatchingStrategy):
    """Identity similarity with looser amount tolerance; date still vetoes."""

    match_type = MatchType.FUZZY_IDENTITY

    def propose(self, target, pool, pairing, context):
        if target.identity is None:
            return []
        config = context.config
        window = max(config.windows_for(pairing))
        results = []
        for candidate in pool:
            if candidate.identity is None or candidate.currency != target.currency:
                continue
            if not candidate.direction_compatible(target):
                continue
            signals = _signals(
                target,
                candidate,
                window=window,
                email_match=email_match_kind(target.identity.email, candidate.identity.email),
                name_similarity=round(name_similarity(target.identity.name, candidate.identity.name), 2),
            )
            within = amount_within_tolerance(
                target.amount,
                candidate.comparable_amount(target.source),
                config.amount_tolerance_abs,
                config.fuzzy_amount_tolerance_pct,
            )
            breakdown = context.scorer.score(
                self.match_type,
                signals,
                amount_within=within,
                exact_amount_tolerance=config.amount_tolerance_abs,
            )
            if breakdown.vetoed:
                continue
            results.append(_result(pairing, target, [candidate], self.match_type,
                                   breakdown.total_score, signals))
        return results


class SettlementAggregateStrategy(MatchingStrategy):
    """Bank credit against the net total of a settlement batch."""

    match_type = MatchType.SETTLEMENT_AGGREGATE

    def propose(self, target, pool, pairing, context):
        if target.source != SourceKind.BANK_LEDGER or target.amount <= 0:
            return []
        if SourceKind.GATEWAY_TRANSACTION not in pairing.counterpart_sources:
            return []

        config = context.config
        aggregator = SettlementAggregator(config.settlement_window_days, config.settlement_tolerance)
        available = {candidate.key for candidate in pool}

        ranked = []
        for batch in context.batches.values():
            members = context.batch_members(batch)
            if not members or len(members) != len(batch.member_ids):
                continue
            if any(member.key not in available for member in members):
                continue
            compared = aggregator.compare(batch, target)
            if compared is None:
                continue
            diff, days = compared
            ranked.append((aggregator.rank(diff, days), batch, members, diff, days))
        if not ranked:
            return []

        ranked.sort(key=lambda item: item[0])
        best_rank = ranked[0][0]
        results = []
        for rank, batch, members, diff, days in ranked:
            if rank - best_rank > 1e-9:
                break
            signals = MatchSignals(
                date_delta_days=days,
                amount_delta=diff,
                window_days=config.settlement_window_days,
                reference=batch.batch_id,
            )
            breakdown = context.scorer.score(
                self.match_type, signals, exact_amount_tolerance=config.settlement_tolerance
            )
            results.append(_result(
                pairing, target, members, self.match_type, breakdown.total_score, signals,
                counterpart_source="settlement_batch",
                batch_id=batch.batch_id,
                reason=f"Settlement batch {batch.batch_id} ({len(members)} transactions)",
            ))
        return results


class SubsetSumStrategy(MatchingStrategy):
    """Single counterpart in the extended window, then pairs."""

    match_type = MatchType.SUBSET_SUM

    def propose(self, target, pool, pairing, context):
        config = context.config
        resolver = SubsetSumResolver(
            window_days=config.extended_window_days,
            pool_size=config.subset_pool_size,
            tolerance_pct=config.subset_tolerance_pct,
        )
        nearby = resolver.nearby(target, pool)
        if not nearby:
            return []

        singles = [self._scored(split, pairing, context) for split in resolver.find_singles(target, nearby)]
        best = context.scorer.select(target.id, singles)
        if best is not None:
            return [best]

        pair = resolver.find_pair(target, nearby)
        if pair is None:
            return []
        return [self._scored(pair, pairing, context)]

    def _scored(self, split: SplitMatch, pairing: SourcePairing, context: MatchingContext) -> MatchResult:
        config = context.config
        signals = MatchSignals(
            date_delta_days=split.max_date_delta,
            amount_delta=split.variance,
            window_days=config.extended_window_days,
        )
        breakdown = context.scorer.score(
            self.match_type, signals, exact_amount_tolerance=config.amount_tolerance_abs
        )
        members = list(split.members)
        if len(members) == 1:
            return _result(pairing, split.target, members, self.match_type, breakdown.total_score,
                           signals, reason="Single match in extended window")
        return _result(
            pairing, split.target, members, self.match_type, breakdown.total_score, signals,
            counterpart_source="group",
            reason=f"Pair sum {split.combined_amount:.2f} (variance {split.variance:.2f})",
        )


def default_strategies() -> List[MatchingStrategy]:
    return [
        ExactReferenceStrategy(),
        AmountDateStrategy(),
        FuzzyIdentityStrategy(),
        SettlementAggregateStrategy(),
        SubsetSumStrategy(),
    ]


class MatchingChain:
    """Runs strategies in priority order, strategy by strategy across all targets."""

    def __init__(self, strategies: Optional[List[MatchingStrategy]] = None):
        self.strategies = strategies or default_strategies()

    def run(
        self,
        targets: List[Candidate],
        pool: List[Candidate],
        pairing: SourcePairing,
        context: MatchingContext,
    ) -> List[MatchResult]:
        accepted: List[MatchResult] = []
        for strategy in self.strategies:
            matched_here = 0
            for target in targets:
                if context.is_claimed(target):
                    continue
                available = [
                    candidate for candidate in pool
                    if candidate.key != target.key and not context.is_claimed(candidate)
                ]
                if not available:
                    continue
                try:
                    best = context.scorer.select(
                        target.id, strategy.propose(target, available, pairing, context)
                    )
                except AmbiguousMatch as exc:
                    logger.info("Ambiguous %s match for %s: %s", strategy.match_type.value, target.id, exc.candidate_ids)
                    context.ambiguous.setdefault(target.key, exc)
                    continue
                if best is None:
                    continue
                context.claim(best)
                accepted.append(best)
                matched_here += 1
            logger.debug("Pairing %s strategy %s matched %d", pairing.name, strategy.match_type.value, matched_here)
        return accepted
