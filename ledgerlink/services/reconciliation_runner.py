"""
Run Controller

fetch (page to exhaustion) -> normalize -> aggregate settlements -> match
chain per source pairing -> apply -> summary. Fetch errors abort the run with
the statistics gathered so far; single validation and write failures are
counted and the run carries on.
"""
from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from ledgerlink.models.candidates import Candidate, ReconciliationState, SourceKind
from ledgerlink.models.reconciliation import (
    MatchResult,
    ReconciliationConfig,
    ReconciliationRun,
    ReviewItem,
    RunStatus,
    SourcePairing,
)
from ledgerlink.models.requests import ReconciliationRunRequest
from ledgerlink.services.applier import ApplyStatus, ReconciliationApplier
from ledgerlink.services.config import merge_config
from ledgerlink.services.errors import FetchError
from ledgerlink.services.logging import log_error, log_reconciliation_run
from ledgerlink.services.matching import MatchingChain, MatchingContext
from ledgerlink.services.normalizer import RecordNormalizer
from ledgerlink.services.settlement import SettlementAggregator
from ledgerlink.services.store import CandidateStore
from ledgerlink.state.run_history import RunHistory

logger = logging.getLogger(__name__)

MAX_ERROR_MESSAGES = 10


def select_pairings(config: ReconciliationConfig, sources: Sequence[SourceKind]) -> List[SourcePairing]:
    """Restrict configured pairings to the requested sources."""
    if not sources:
        return list(config.pairings)
    wanted = set(sources)
    selected = []
    for pairing in config.pairings:
        if pairing.target_source not in wanted:
            continue
        counterparts = [source for source in pairing.counterpart_sources if source in wanted]
        if counterparts:
            selected.append(pairing.model_copy(update={"counterpart_sources": counterparts}))
    return selected


class ReconciliationRunner:
    """Orchestrates one reconciliation run against a candidate store."""

    def __init__(
        self,
        store: CandidateStore,
        config: Optional[ReconciliationConfig] = None,
        normalizer: Optional[RecordNormalizer] = None,
        chain: Optional[MatchingChain] = None,
        history: Optional[RunHistory] = None,
    ):
        self.store = store
        self.config = config or ReconciliationConfig()
        self.normalizer = normalizer or RecordNormalizer()
        self.chain = chain or MatchingChain()
        self.history = history

    async def run(self, request: Optional[ReconciliationRunRequest] = None) -> ReconciliationRun:
        request = request or ReconciliationRunRequest()
        config = merge_config(self.config, request.config_overrides())
        pairings = select_pairings(config, request.sources)
        sources = self._sources(pairings)

        run = ReconciliationRun(
            run_id=f"run_{uuid.uuid4().hex[:12]}",
            dry_run=request.dry_run,
            sources=sources,
            date_from=request.date_from,
            date_to=request.date_to,
        )
        if self.history:
            self.history.create_run(
                run.run_id,
                [source.value for source in sources],
                request.date_from.isoformat() if request.date_from else None,
                request.date_to.isoformat() if request.date_to else None,
                dry_run=request.dry_run,
                config=config.model_dump(mode="json"),
            )
        logger.info("Starting reconciliation run %s (dry_run=%s, sources=%s)",
                    run.run_id, request.dry_run, [s.value for s in sources])

        try:
            raw_by_source = await self._fetch_all(run, config, sources, request)
        except FetchError as exc:
            return self._fail(run, exc)

        candidates = self._normalize(run, raw_by_source)
        candidates = self._apply_preservation(run, config, candidates)

        aggregator = SettlementAggregator(config.settlement_window_days, config.settlement_tolerance)
        batches, unresolved = aggregator.build_batches(candidates)
        run.unresolved_batches = unresolved

        context = MatchingContext.for_run(config, candidates, batches)
        results: List[MatchResult] = []
        for pairing in pairings:
            targets = [
                candidate for candidate in candidates
                if candidate.source == pairing.target_source
                and self._in_window(candidate.transaction_date, request.date_from, request.date_to)
            ]
            pool = [candidate for candidate in candidates if candidate.source in pairing.counterpart_sources]
            results.extend(self.chain.run(targets, pool, pairing, context))

        applier = ReconciliationApplier(
            self.store,
            dry_run=request.dry_run,
            preserve_reconciliation=config.preserve_reconciliation,
        )
        await self._apply(run, config, applier, results, context.candidates)
        await self._review(run, config, applier, context)

        run.skipped = run.skipped_invalid + run.skipped_preserved
        run.total_value_matched = round(run.total_value_matched, 2)
        run.status = RunStatus.SUCCEEDED
        run.completed_at = datetime.now(timezone.utc)
        if self.history:
            self.history.complete_run(run.run_id, run.model_dump(mode="json"))
        log_reconciliation_run(run.model_dump(mode="json"))
        return run

    def _sources(self, pairings: List[SourcePairing]) -> List[SourceKind]:
        sources: List[SourceKind] = []
        for pairing in pairings:
            for source in [pairing.target_source, *pairing.counterpart_sources]:
                if source not in sources:
                    sources.append(source)
        return sources

    def _fetch_window(
        self, config: ReconciliationConfig, request: ReconciliationRunRequest
    ) -> Tuple[Optional[date], Optional[date]]:
        # Counterparts may sit outside the target window by up to the widest match window
        pad = timedelta(days=max(config.extended_window_days, config.settlement_window_days, *config.date_windows))
        date_from = request.date_from - pad if request.date_from else None
        date_to = request.date_to + pad if request.date_to else None
        return date_from, date_to

    async def _fetch_all(
        self,
        run: ReconciliationRun,
        config: ReconciliationConfig,
        sources: List[SourceKind],
        request: ReconciliationRunRequest,
    ) -> Dict[SourceKind, List[dict]]:
        date_from, date_to = self._fetch_window(config, request)
        states = None
        if config.preserve_reconciliation:
            states = [ReconciliationState.UNRECONCILED, ReconciliationState.NEEDS_REVIEW]

        raw_by_source: Dict[SourceKind, List[dict]] = {}
        for source in sources:
            rows: List[dict] = []
            offset = 0
            while True:
                page = await self.store.fetch_page(source, date_from, date_to, states, offset, config.page_size)
                if not page:
                    break
                rows.extend(page)
                offset += len(page)
                run.candidates_scanned += len(page)
            logger.info("Fetched %d %s records", len(rows), source.value)
            raw_by_source[source] = rows
        return raw_by_source

    def _normalize(
        self, run: ReconciliationRun, raw_by_source: Dict[SourceKind, List[dict]]
    ) -> List[Candidate]:
        candidates: List[Candidate] = []
        seen = set()
        for source, rows in raw_by_source.items():
            normalized, rejected = self.normalizer.normalize_many(rows, source)
            run.skipped_invalid += len(rejected)
            for error in rejected:
                self._record_error_message(run, f"{error.message}: {error.detail}")
            for candidate in normalized:
                # Pages may overlap if the store shifts under us
                if candidate.key in seen:
                    continue
                seen.add(candidate.key)
                candidates.append(candidate)
        return candidates

    def _apply_preservation(
        self, run: ReconciliationRun, config: ReconciliationConfig, candidates: List[Candidate]
    ) -> List[Candidate]:
        kept = []
        for candidate in candidates:
            if candidate.has_manual_link or (candidate.is_reconciled and config.preserve_reconciliation):
                run.skipped_preserved += 1
                continue
            kept.append(candidate)
        return kept

    def _in_window(self, value: date, date_from: Optional[date], date_to: Optional[date]) -> bool:
        if date_from and value < date_from:
            return False
        if date_to and value > date_to:
            return False
        return True

    async def _apply(
        self,
        run: ReconciliationRun,
        config: ReconciliationConfig,
        applier: ReconciliationApplier,
        results: List[MatchResult],
        candidates: Dict[str, Candidate],
    ) -> None:
        for result in results:
            outcome = await applier.apply(result, candidates)
            if outcome.matched:
                run.matched += 1
                run.total_value_matched += result.amount
                key = result.match_type.value
                run.matches_by_type[key] = run.matches_by_type.get(key, 0) + 1
                if len(run.sample_matches) < config.sample_size:
                    run.sample_matches.append(result)
            elif outcome.status == ApplyStatus.SKIPPED_PRESERVED:
                run.skipped_preserved += 1
            else:
                run.errors += 1
                message = f"{result.target_id}: {outcome.reason}"
                if outcome.written:
                    run.partially_applied.extend(outcome.written)
                    message += f" (already linked: {', '.join(outcome.written)})"
                self._record_error_message(run, message)

    async def _review(
        self,
        run: ReconciliationRun,
        config: ReconciliationConfig,
        applier: ReconciliationApplier,
        context: MatchingContext,
    ) -> None:
        for key, ambiguity in context.ambiguous.items():
            if key in context.claimed:
                continue
            candidate = context.candidates[key]
            run.needs_review += 1
            if len(run.review_sample) < config.sample_size:
                run.review_sample.append(ReviewItem(
                    target_id=candidate.id,
                    target_source=candidate.source,
                    reason=ambiguity.detail or ambiguity.message,
                    candidate_ids=ambiguity.candidate_ids,
                ))
            if config.flag_needs_review:
                outcome = await applier.flag_for_review(candidate, ambiguity.message)
                if outcome.status == ApplyStatus.FAILED:
                    run.errors += 1
                    self._record_error_message(run, f"{candidate.id}: {outcome.reason}")

    def _record_error_message(self, run: ReconciliationRun, message: str) -> None:
        if len(run.error_messages) < MAX_ERROR_MESSAGES:
            run.error_messages.append(message)

    def _fail(self, run: ReconciliationRun, exc: FetchError) -> ReconciliationRun:
        run.status = RunStatus.FAILED
        run.errors += 1
        run.completed_at = datetime.now(timezone.utc)
        self._record_error_message(run, f"{exc.message}: {exc.detail}")
        log_error("fetch_failed", exc.message, context={"run_id": run.run_id, **exc.context}, exception=exc)
        summary = run.model_dump(mode="json")
        if self.history:
            self.history.fail_run(run.run_id, f"{exc.message}: {exc.detail}", summary)
        log_reconciliation_run(summary)
        return run
