"""Reconciliation configuration loading (environment defaults + per-run overrides)."""
import os
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from ledgerlink.models.reconciliation import ReconciliationConfig
from ledgerlink.services.errors import ConfigError

ENV_PREFIX = "LEDGERLINK_"


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _parse_windows(value: str):
    return [int(part) for part in value.split(",") if part.strip()]


_ENV_FIELDS: Dict[str, Callable[[str], Any]] = {
    "confidence_threshold": float,
    "date_windows": _parse_windows,
    "amount_tolerance_abs": float,
    "amount_tolerance_pct": float,
    "fuzzy_amount_tolerance_pct": float,
    "settlement_window_days": int,
    "settlement_tolerance": float,
    "extended_window_days": int,
    "subset_pool_size": int,
    "subset_tolerance_pct": float,
    "preserve_reconciliation": _parse_bool,
    "flag_needs_review": _parse_bool,
    "page_size": int,
    "sample_size": int,
}


def _build(values: Dict[str, Any]) -> ReconciliationConfig:
    try:
        return ReconciliationConfig(**values)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or "config"
        raise ConfigError(field, first.get("msg", str(exc))) from exc


def load_config_from_env(environ: Optional[Dict[str, str]] = None) -> ReconciliationConfig:
    """Build a config from LEDGERLINK_* environment variables, defaults elsewhere."""
    environ = os.environ if environ is None else environ
    values: Dict[str, Any] = {}
    for field, parser in _ENV_FIELDS.items():
        raw = environ.get(f"{ENV_PREFIX}{field.upper()}")
        if raw is None or raw == "":
            continue
        try:
            values[field] = parser(raw)
        except ValueError as exc:
            raise ConfigError(field, f"Cannot parse '{raw}': {exc}") from exc
    return _build(values)


def merge_config(base: ReconciliationConfig, updates: Optional[Dict[str, Any]]) -> ReconciliationConfig:
    """Apply non-null overrides on top of ``base`` and re-validate."""
    if not updates:
        return base
    merged = base.model_dump()
    for key, value in updates.items():
        if value is None:
            continue
        if key not in merged:
            raise ConfigError(key, "Unknown configuration field")
        merged[key] = value
    return _build(merged)
