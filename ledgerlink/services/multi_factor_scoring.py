"""
Confidence scoring for match results.

Fixed point weights on a 0-100 scale:
- Exact email match: +40 (same domain only: +20)
- Name similarity: +25 at 90%+, +15 at 70-89%
- Date proximity: +20 same day, falling linearly to +10 at the window edge
- Exact amount (within absolute tolerance): +15
- Triple match (email exact + date + amount): +10

Each strategy also contributes a structural base score. Exact-reference
matches are fixed at 100. A date or amount outside tolerance vetoes the
candidate outright, whatever the identity signals say.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ledgerlink.models.candidates import MatchType
from ledgerlink.models.reconciliation import EmailMatchKind, MatchResult, MatchSignals
from ledgerlink.services.errors import AmbiguousMatch

EMAIL_EXACT_POINTS = 40.0
EMAIL_DOMAIN_POINTS = 20.0
NAME_STRONG_POINTS = 25.0
NAME_WEAK_POINTS = 15.0
DATE_MAX_POINTS = 20.0
DATE_EDGE_POINTS = 10.0
AMOUNT_EXACT_POINTS = 15.0
TRIPLE_MATCH_BONUS = 10.0

STRATEGY_BASE_SCORES: Dict[MatchType, float] = {
    MatchType.EXACT_REFERENCE: 100.0,
    MatchType.AMOUNT_DATE: 45.0,
    MatchType.FUZZY_IDENTITY: 0.0,
    MatchType.SETTLEMENT_AGGREGATE: 60.0,
    MatchType.SUBSET_SUM: 60.0,
    MatchType.MANUAL: 100.0,
}

# Scores closer than this are treated as a tie
TIE_EPSILON = 1e-6


@dataclass
class ScoreBreakdown:
    """Detailed breakdown of a confidence score."""
    base_score: float = 0.0
    email_score: float = 0.0
    name_score: float = 0.0
    date_score: float = 0.0
    amount_score: float = 0.0
    triple_bonus: float = 0.0
    vetoed: bool = False
    veto_reason: str = ""

    @property
    def total_score(self) -> float:
        """Total score capped at 100, zero when vetoed."""
        if self.vetoed:
            return 0.0
        return round(min(100.0,
            self.base_score +
            self.email_score +
            self.name_score +
            self.date_score +
            self.amount_score +
            self.triple_bonus
        ), 2)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_score": self.total_score,
            "base": self.base_score,
            "email": self.email_score,
            "name": self.name_score,
            "date": self.date_score,
            "amount": self.amount_score,
            "triple_bonus": self.triple_bonus,
            "vetoed": self.vetoed,
            "veto_reason": self.veto_reason,
        }


class MultiFactorScorer:
    """Scores strategy signals and picks the winning result for a target."""

    DEFAULT_THRESHOLD = 70.0

    def __init__(self, threshold: float = DEFAULT_THRESHOLD):
        self.threshold = threshold

    def score(
        self,
        match_type: MatchType,
        signals: MatchSignals,
        amount_within: bool = True,
        exact_amount_tolerance: float = 0.01,
    ) -> ScoreBreakdown:
        """
        Score one candidate result.

        Args:
            match_type: Strategy that produced the result
            signals: Contributing signals (date delta, window, amount delta, identity)
            amount_within: Whether the amount passed the strategy's tolerance
            exact_amount_tolerance: Absolute difference still counted as an exact amount
        """
        breakdown = ScoreBreakdown(base_score=STRATEGY_BASE_SCORES.get(match_type, 0.0))

        if match_type in (MatchType.EXACT_REFERENCE, MatchType.MANUAL):
            return breakdown

        date_within = True
        if signals.date_delta_days is not None and signals.window_days is not None:
            date_within = signals.date_delta_days <= signals.window_days
        if not date_within:
            breakdown.vetoed = True
            breakdown.veto_reason = (
                f"date delta {signals.date_delta_days}d outside {signals.window_days}d window"
            )
            return breakdown
        if not amount_within:
            breakdown.vetoed = True
            breakdown.veto_reason = f"amount delta {signals.amount_delta} outside tolerance"
            return breakdown

        breakdown.date_score = self._score_date(signals.date_delta_days, signals.window_days)

        amount_exact = (
            signals.amount_delta is not None
            and signals.amount_delta <= exact_amount_tolerance + 1e-9
        )
        if amount_exact:
            breakdown.amount_score = AMOUNT_EXACT_POINTS

        if signals.email_match == EmailMatchKind.EXACT:
            breakdown.email_score = EMAIL_EXACT_POINTS
        elif signals.email_match == EmailMatchKind.DOMAIN:
            breakdown.email_score = EMAIL_DOMAIN_POINTS

        similarity = signals.name_similarity or 0.0
        if similarity >= 90:
            breakdown.name_score = NAME_STRONG_POINTS
        elif similarity >= 70:
            breakdown.name_score = NAME_WEAK_POINTS

        if (
            signals.email_match == EmailMatchKind.EXACT
            and signals.date_delta_days is not None
            and amount_exact
        ):
            breakdown.triple_bonus = TRIPLE_MATCH_BONUS

        return breakdown

    def _score_date(self, delta: Optional[int], window: Optional[int]) -> float:
        if delta is None:
            return 0.0
        if not window:
            return DATE_MAX_POINTS if delta == 0 else 0.0
        span = DATE_MAX_POINTS - DATE_EDGE_POINTS
        return round(DATE_MAX_POINTS - span * (delta / window), 2)

    def accepts(self, confidence: float) -> bool:
        return confidence >= self.threshold

    def select(self, target_id: str, results: List[MatchResult]) -> Optional[MatchResult]:
        """
        Pick the single best accepted result.

        Results below the threshold are dropped. When the top two accepted
        results share the same confidence, the match is ambiguous.

        Raises:
            AmbiguousMatch: no clear highest score among accepted results
        """
        accepted = [result for result in results if self.accepts(result.confidence)]
        if not accepted:
            return None
        accepted.sort(key=lambda result: result.confidence, reverse=True)
        best = accepted[0]
        tied = [
            result for result in accepted
            if best.confidence - result.confidence <= TIE_EPSILON
        ]
        if len(tied) > 1:
            ids = [cid for result in tied for cid in result.counterpart_ids]
            raise AmbiguousMatch(target_id, ids, best.confidence)
        return best
