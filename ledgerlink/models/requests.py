"""API request models."""
from datetime import date
from typing import List, Optional

from pydantic import Field, model_validator

from ledgerlink.models.base import LLBaseModel
from ledgerlink.models.candidates import SourceKind


class ReconciliationRunRequest(LLBaseModel):
    dry_run: bool = False
    sources: List[SourceKind] = Field(default_factory=list)
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    confidence_threshold: Optional[float] = Field(default=None, ge=0, le=100)
    date_windows: Optional[List[int]] = None
    amount_tolerance_abs: Optional[float] = Field(default=None, ge=0)
    amount_tolerance_pct: Optional[float] = Field(default=None, ge=0, le=100)
    settlement_window_days: Optional[int] = Field(default=None, ge=0)
    settlement_tolerance: Optional[float] = Field(default=None, ge=0)
    extended_window_days: Optional[int] = Field(default=None, ge=0)
    preserve_reconciliation: Optional[bool] = None
    sample_size: Optional[int] = Field(default=None, ge=0)
    requester: Optional[str] = None

    @model_validator(mode="after")
    def check_window(self) -> "ReconciliationRunRequest":
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValueError("date_from must not be after date_to")
        return self

    def config_overrides(self) -> dict:
        fields = (
            "confidence_threshold",
            "date_windows",
            "amount_tolerance_abs",
            "amount_tolerance_pct",
            "settlement_window_days",
            "settlement_tolerance",
            "extended_window_days",
            "preserve_reconciliation",
            "sample_size",
        )
        return {name: getattr(self, name) for name in fields if getattr(self, name) is not None}
