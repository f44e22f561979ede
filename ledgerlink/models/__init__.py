from ledgerlink.models.base import LLBaseModel
from ledgerlink.models.candidates import (
    Candidate,
    CandidateRef,
    Identity,
    MatchType,
    ReconciliationLink,
    ReconciliationState,
    SourceKind,
    candidate_key,
)
from ledgerlink.models.reconciliation import (
    EmailMatchKind,
    MatchResult,
    MatchSignals,
    ReconciliationConfig,
    ReconciliationPatch,
    ReconciliationRun,
    ReviewItem,
    RunStatus,
    SettlementBatch,
    SourcePairing,
)
from ledgerlink.models.requests import ReconciliationRunRequest

__all__ = [
    "Candidate",
    "CandidateRef",
    "EmailMatchKind",
    "Identity",
    "LLBaseModel",
    "MatchResult",
    "MatchSignals",
    "MatchType",
    "ReconciliationConfig",
    "ReconciliationLink",
    "ReconciliationPatch",
    "ReconciliationRun",
    "ReconciliationRunRequest",
    "ReconciliationState",
    "ReviewItem",
    "RunStatus",
    "SettlementBatch",
    "SourceKind",
    "SourcePairing",
    "candidate_key",
]
