"""
Reconciliation Applier

Writes accepted match results back to every participating record: state
``reconciled`` plus a link to the counterpart (or settlement batch). Updates
are additive and idempotent; records reconciled outside the engine are never
touched. In dry-run mode nothing is written but outcomes are reported the same
way as a live run.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from ledgerlink.models.candidates import Candidate, ReconciliationLink, ReconciliationState
from ledgerlink.models.reconciliation import MatchResult, ReconciliationPatch
from ledgerlink.services.errors import WriteError
from ledgerlink.services.store import CandidateStore

logger = logging.getLogger(__name__)


class ApplyStatus(str, Enum):
    APPLIED = "applied"
    DRY_RUN = "dry_run"
    ALREADY_APPLIED = "already_applied"
    SKIPPED_PRESERVED = "skipped_preserved"
    FAILED = "failed"


MATCHED_STATUSES = (ApplyStatus.APPLIED, ApplyStatus.DRY_RUN, ApplyStatus.ALREADY_APPLIED)


@dataclass
class ApplyOutcome:
    status: ApplyStatus
    written: List[str] = field(default_factory=list)
    error: Optional[WriteError] = None
    reason: str = ""

    @property
    def matched(self) -> bool:
        return self.status in MATCHED_STATUSES


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReconciliationApplier:
    """Turns MatchResults into store updates."""

    def __init__(
        self,
        store: CandidateStore,
        dry_run: bool = False,
        preserve_reconciliation: bool = True,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.dry_run = dry_run
        self.preserve_reconciliation = preserve_reconciliation
        self.clock = clock

    def build_links(
        self, result: MatchResult, participants: Dict[str, Candidate]
    ) -> Dict[str, ReconciliationLink]:
        """Link for each participant key. The target points at its counterpart, batch or group."""
        now = self.clock()
        target = participants[result.target.key]
        common = dict(match_type=result.match_type, confidence=result.confidence, linked_at=now)

        links: Dict[str, ReconciliationLink] = {}
        if len(result.counterparts) == 1 and result.batch_id is None:
            counterpart = result.counterparts[0]
            links[result.target.key] = ReconciliationLink(
                counterpart_id=counterpart.id,
                counterpart_source=counterpart.source.value,
                reason=result.reason,
                **common,
            )
        else:
            member_ids = result.counterpart_ids
            links[result.target.key] = ReconciliationLink(
                counterpart_id=result.batch_id or "+".join(member_ids),
                counterpart_source=result.counterpart_source,
                batch_id=result.batch_id,
                member_ids=member_ids,
                reason=result.reason,
                **common,
            )

        for counterpart in result.counterparts:
            links[counterpart.key] = ReconciliationLink(
                counterpart_id=target.id,
                counterpart_source=target.source.value,
                batch_id=result.batch_id,
                reason=result.reason,
                **common,
            )
        return links

    def _blocked(self, candidate: Candidate, link: ReconciliationLink) -> Optional[str]:
        """Why a participant must not be written, if it must not."""
        if candidate.has_manual_link:
            return f"{candidate.id} has a manual reconciliation"
        if not candidate.is_reconciled or candidate.link.same_target(link):
            return None
        if self.preserve_reconciliation:
            return f"{candidate.id} is already reconciled"
        return f"{candidate.id} is linked to {candidate.link.counterpart_id}"

    async def apply(self, result: MatchResult, candidates: Dict[str, Candidate]) -> ApplyOutcome:
        # Counterparts before the target: a failed write never leaves the
        # target pointing at members that do not link back.
        refs = [*result.counterparts, result.target]
        participants = {ref.key: candidates[ref.key] for ref in refs}
        links = self.build_links(result, participants)

        pending: List[Tuple[Candidate, ReconciliationLink]] = []
        for key, candidate in participants.items():
            link = links[key]
            reason = self._blocked(candidate, link)
            if reason:
                logger.info("Preserving reconciliation for %s: %s", result.target_id, reason)
                return ApplyOutcome(ApplyStatus.SKIPPED_PRESERVED, reason=reason)
            if candidate.is_reconciled and candidate.link and candidate.link.same_target(link):
                continue
            pending.append((candidate, link))

        if not pending:
            result.applied = True
            return ApplyOutcome(ApplyStatus.ALREADY_APPLIED)

        if self.dry_run:
            return ApplyOutcome(ApplyStatus.DRY_RUN)

        written: List[str] = []
        for candidate, link in pending:
            patch = ReconciliationPatch(
                state=ReconciliationState.RECONCILED,
                link=link,
                confidence=result.confidence,
                reason=result.reason,
                updated_at=link.linked_at,
            )
            try:
                await self.store.update(candidate.id, candidate.source, patch, expected_state=candidate.state)
            except WriteError as exc:
                logger.error(
                    "Write failed for %s (%s); %d of %d records already updated: %s",
                    candidate.id, exc.detail, len(written), len(pending), ", ".join(written) or "none",
                )
                return ApplyOutcome(ApplyStatus.FAILED, written=written, error=exc, reason=exc.message)
            written.append(candidate.id)

        result.applied = True
        return ApplyOutcome(ApplyStatus.APPLIED, written=written)

    async def flag_for_review(self, candidate: Candidate, reason: str) -> ApplyOutcome:
        """Mark a target needs-review without linking it. No-op in dry-run mode."""
        if self.dry_run or candidate.is_reconciled:
            return ApplyOutcome(ApplyStatus.DRY_RUN if self.dry_run else ApplyStatus.SKIPPED_PRESERVED)
        patch = ReconciliationPatch(
            state=ReconciliationState.NEEDS_REVIEW, reason=reason, updated_at=self.clock()
        )
        try:
            await self.store.update(candidate.id, candidate.source, patch, expected_state=candidate.state)
        except WriteError as exc:
            return ApplyOutcome(ApplyStatus.FAILED, error=exc, reason=exc.message)
        return ApplyOutcome(ApplyStatus.APPLIED, written=[candidate.id])
