"""Normalized candidate records and their reconciliation state."""
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import Field, field_validator

from ledgerlink.models.base import LLBaseModel


class SourceKind(str, Enum):
    BANK_LEDGER = "bank_ledger"
    GATEWAY_TRANSACTION = "gateway_transaction"
    GATEWAY_PAYOUT = "gateway_payout"
    INVOICE = "invoice"


GATEWAY_SOURCES = (SourceKind.GATEWAY_TRANSACTION, SourceKind.GATEWAY_PAYOUT)


class ReconciliationState(str, Enum):
    UNRECONCILED = "unreconciled"
    RECONCILED = "reconciled"
    NEEDS_REVIEW = "needs_review"


class MatchType(str, Enum):
    EXACT_REFERENCE = "exact_reference"
    AMOUNT_DATE = "amount_date"
    FUZZY_IDENTITY = "fuzzy_identity"
    SETTLEMENT_AGGREGATE = "settlement_aggregate"
    SUBSET_SUM = "subset_sum"
    MANUAL = "manual"


def candidate_key(source: SourceKind, record_id: str) -> str:
    """Run-unique key; record ids are only unique within one source."""
    return f"{SourceKind(source).value}:{record_id}"


class CandidateRef(LLBaseModel):
    id: str
    source: SourceKind

    @property
    def key(self) -> str:
        return candidate_key(self.source, self.id)


class Identity(LLBaseModel):
    email: Optional[str] = None
    name: Optional[str] = None


class ReconciliationLink(LLBaseModel):
    counterpart_id: str
    counterpart_source: str
    match_type: MatchType
    confidence: float = Field(..., ge=0, le=100)
    linked_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    batch_id: Optional[str] = None
    member_ids: List[str] = Field(default_factory=list)
    manual: bool = False
    reason: Optional[str] = None

    def same_target(self, other: "ReconciliationLink") -> bool:
        """True when both links point at the same counterpart with the same match type."""
        return (
            self.counterpart_id == other.counterpart_id
            and self.counterpart_source == other.counterpart_source
            and self.match_type == other.match_type
            and self.batch_id == other.batch_id
        )


class Candidate(LLBaseModel):
    id: str = Field(..., min_length=1)
    source: SourceKind
    transaction_date: date
    amount: float
    currency: str = Field(default="EUR", min_length=1, max_length=10)
    net_amount: Optional[float] = None
    settlement_date: Optional[date] = None
    identity: Optional[Identity] = None
    group_key: Optional[str] = None
    references: List[str] = Field(default_factory=list)
    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    state: ReconciliationState = ReconciliationState.UNRECONCILED
    link: Optional[ReconciliationLink] = None

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, value: str) -> str:
        return value.upper()

    @property
    def key(self) -> str:
        return candidate_key(self.source, self.id)

    def ref(self) -> CandidateRef:
        return CandidateRef(id=self.id, source=self.source)

    @property
    def is_reconciled(self) -> bool:
        return self.state == ReconciliationState.RECONCILED

    @property
    def has_manual_link(self) -> bool:
        """Reconciled outside the engine: flagged manual, or reconciled without a link."""
        if not self.is_reconciled:
            return False
        if self.link is None:
            return True
        return self.link.manual or self.link.match_type == MatchType.MANUAL

    def direction_compatible(self, other: "Candidate") -> bool:
        """Whether money moves the same way in both records.

        A bank entry and a gateway record must share a sign: credits pair with
        payouts and charges, debits with refunds. Invoices carry no direction
        and compare by magnitude.
        """
        sources = {self.source, other.source}
        if SourceKind.BANK_LEDGER not in sources or not sources.intersection(GATEWAY_SOURCES):
            return True
        return (self.amount > 0) == (other.amount > 0)

    def comparable_amount(self, against: Optional[SourceKind] = None) -> float:
        """Magnitude used when comparing this record against a target of ``against``.

        Gateway records are compared net of fees against bank entries and by
        their gross amount against invoices.
        """
        if self.source in GATEWAY_SOURCES and against == SourceKind.BANK_LEDGER:
            if self.net_amount is not None:
                return abs(self.net_amount)
        return abs(self.amount)
