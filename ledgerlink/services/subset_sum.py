"""
Subset-Sum Resolver

Fallback for targets nothing else matched. Retries a single counterpart within
an extended date window, then searches pairs of nearby counterparts whose sum
matches the target. Combinations are capped at pairs over a bounded pool so
the search stays quadratic.
"""
from __future__ import annotations

import itertools
from dataclasses import dataclass
from typing import List, Optional, Tuple

from ledgerlink.models.candidates import Candidate
from ledgerlink.services.fuzzy_matching import (
    amount_delta,
    amount_within_tolerance,
    date_delta_days,
)


@dataclass
class SplitMatch:
    """A target covered by one or two counterparts."""
    target: Candidate
    members: Tuple[Candidate, ...]
    combined_amount: float
    variance: float
    max_date_delta: int

    @property
    def variance_pct(self) -> float:
        if not self.target.amount:
            return 0.0
        return round(self.variance / abs(self.target.amount) * 100, 4)


class SubsetSumResolver:
    """Bounded one- and two-element combination search."""

    MAX_COMBINATION_SIZE = 2

    def __init__(self, window_days: int = 14, pool_size: int = 50, tolerance_pct: float = 1.0):
        self.window_days = window_days
        self.pool_size = pool_size
        self.tolerance_pct = tolerance_pct

    def nearby(self, target: Candidate, pool: List[Candidate]) -> List[Candidate]:
        """Counterparts in the target currency within the window, closest dates first."""
        eligible = [
            candidate for candidate in pool
            if candidate.currency == target.currency
            and candidate.direction_compatible(target)
            and date_delta_days(candidate.transaction_date, target.transaction_date) <= self.window_days
            and candidate.comparable_amount(target.source) > 0
        ]
        eligible.sort(key=lambda c: (date_delta_days(c.transaction_date, target.transaction_date), c.id))
        return eligible[:self.pool_size]

    def _within(self, target_amount: float, combined: float) -> bool:
        return amount_within_tolerance(target_amount, combined, abs_tolerance=0.0, pct_tolerance=self.tolerance_pct)

    def _split(self, target: Candidate, members: Tuple[Candidate, ...]) -> SplitMatch:
        combined = round(sum(member.comparable_amount(target.source) for member in members), 2)
        return SplitMatch(
            target=target,
            members=members,
            combined_amount=combined,
            variance=amount_delta(target.amount, combined),
            max_date_delta=max(
                date_delta_days(member.transaction_date, target.transaction_date) for member in members
            ),
        )

    def find_singles(self, target: Candidate, nearby: List[Candidate]) -> List[SplitMatch]:
        """Every single counterpart whose amount matches within tolerance."""
        target_amount = abs(target.amount)
        return [
            self._split(target, (candidate,))
            for candidate in nearby
            if self._within(target_amount, candidate.comparable_amount(target.source))
        ]

    def find_pair(self, target: Candidate, nearby: List[Candidate]) -> Optional[SplitMatch]:
        """First pair (in date-proximity order) whose sum matches within tolerance."""
        target_amount = abs(target.amount)
        if not target_amount:
            return None
        for first, second in itertools.combinations(nearby, self.MAX_COMBINATION_SIZE):
            combined = first.comparable_amount(target.source) + second.comparable_amount(target.source)
            if self._within(target_amount, combined):
                return self._split(target, (first, second))
        return None
