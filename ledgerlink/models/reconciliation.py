"""Reconciliation configuration, match results and run summaries."""
from datetime import date, datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import Field, field_validator, model_validator

from ledgerlink.models.base import LLBaseModel
from ledgerlink.models.candidates import (
    CandidateRef,
    MatchType,
    ReconciliationLink,
    ReconciliationState,
    SourceKind,
)


class EmailMatchKind(str, Enum):
    EXACT = "exact"
    DOMAIN = "domain"
    NONE = "none"


class MatchSignals(LLBaseModel):
    email_match: EmailMatchKind = EmailMatchKind.NONE
    name_similarity: Optional[float] = None
    date_delta_days: Optional[int] = None
    amount_delta: Optional[float] = None
    window_days: Optional[int] = None
    reference: Optional[str] = None


class MatchResult(LLBaseModel):
    pairing: str = "default"
    target: CandidateRef
    counterparts: List[CandidateRef] = Field(..., min_length=1)
    counterpart_source: str
    match_type: MatchType
    confidence: float = Field(..., ge=0, le=100)
    amount: float = 0.0
    signals: MatchSignals = Field(default_factory=MatchSignals)
    batch_id: Optional[str] = None
    reason: Optional[str] = None
    applied: bool = False

    @property
    def target_id(self) -> str:
        return self.target.id

    @property
    def counterpart_ids(self) -> List[str]:
        return [ref.id for ref in self.counterparts]

    @property
    def refs(self) -> List[CandidateRef]:
        return [self.target, *self.counterparts]

    @property
    def candidate_ids(self) -> List[str]:
        return [ref.id for ref in self.refs]


class SettlementBatch(LLBaseModel):
    batch_id: str
    currency: str
    disbursement_date: Optional[date] = None
    member_ids: List[str] = Field(default_factory=list)
    net_total: float = 0.0
    gross_total: float = 0.0


class SourcePairing(LLBaseModel):
    name: str
    target_source: SourceKind
    counterpart_sources: List[SourceKind] = Field(..., min_length=1)
    date_windows: Optional[List[int]] = None


def _default_pairings() -> List[SourcePairing]:
    return [
        SourcePairing(
            name="bank_to_gateway",
            target_source=SourceKind.BANK_LEDGER,
            counterpart_sources=[
                SourceKind.GATEWAY_PAYOUT,
                SourceKind.GATEWAY_TRANSACTION,
                SourceKind.INVOICE,
            ],
        ),
        SourcePairing(
            name="invoice_to_gateway",
            target_source=SourceKind.INVOICE,
            counterpart_sources=[SourceKind.GATEWAY_TRANSACTION],
        ),
    ]


class ReconciliationConfig(LLBaseModel):
    confidence_threshold: float = Field(default=70.0, ge=0, le=100)
    date_windows: List[int] = Field(default_factory=lambda: [0, 2, 7])
    amount_tolerance_abs: float = Field(default=0.01, ge=0)
    amount_tolerance_pct: float = Field(default=0.0, ge=0, le=100)
    fuzzy_amount_tolerance_pct: float = Field(default=5.0, ge=0, le=100)
    settlement_window_days: int = Field(default=3, ge=0)
    settlement_tolerance: float = Field(default=0.10, ge=0)
    extended_window_days: int = Field(default=14, ge=0)
    subset_pool_size: int = Field(default=50, ge=2)
    subset_tolerance_pct: float = Field(default=1.0, ge=0, le=100)
    preserve_reconciliation: bool = True
    flag_needs_review: bool = False
    page_size: int = Field(default=1000, ge=1)
    sample_size: int = Field(default=20, ge=0)
    pairings: List[SourcePairing] = Field(default_factory=_default_pairings)

    @field_validator("date_windows")
    @classmethod
    def sort_windows(cls, value: List[int]) -> List[int]:
        if not value:
            raise ValueError("at least one date window is required")
        if any(window < 0 for window in value):
            raise ValueError("date windows must be non-negative")
        return sorted(set(value))

    @model_validator(mode="after")
    def check_extended_window(self) -> "ReconciliationConfig":
        if self.extended_window_days < max(self.date_windows):
            raise ValueError("extended_window_days must cover the widest date window")
        return self

    def windows_for(self, pairing: SourcePairing) -> List[int]:
        if pairing.date_windows:
            return sorted(set(pairing.date_windows))
        return self.date_windows


class ReviewItem(LLBaseModel):
    target_id: str
    target_source: SourceKind
    reason: str
    candidate_ids: List[str] = Field(default_factory=list)


class RunStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ReconciliationRun(LLBaseModel):
    run_id: str
    status: RunStatus = RunStatus.RUNNING
    dry_run: bool = False
    sources: List[SourceKind] = Field(default_factory=list)
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    candidates_scanned: int = 0
    matched: int = 0
    needs_review: int = 0
    skipped: int = 0
    skipped_invalid: int = 0
    skipped_preserved: int = 0
    errors: int = 0
    total_value_matched: float = 0.0
    matches_by_type: Dict[str, int] = Field(default_factory=dict)
    unresolved_batches: List[str] = Field(default_factory=list)
    sample_matches: List[MatchResult] = Field(default_factory=list)
    review_sample: List[ReviewItem] = Field(default_factory=list)
    error_messages: List[str] = Field(default_factory=list)
    # Records written by a result whose later writes failed
    partially_applied: List[str] = Field(default_factory=list)

    def comparable_summary(self) -> Dict[str, object]:
        """Outcome fields that do not depend on run identity or timing."""
        return self.model_dump(
            mode="json",
            exclude={
                "run_id": True,
                "started_at": True,
                "completed_at": True,
                "dry_run": True,
                "sample_matches": {"__all__": {"applied"}},
            },
        )


class ReconciliationPatch(LLBaseModel):
    """Additive update issued to the candidate store for one record."""
    state: ReconciliationState
    link: Optional[ReconciliationLink] = None
    confidence: Optional[float] = Field(default=None, ge=0, le=100)
    reason: Optional[str] = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
