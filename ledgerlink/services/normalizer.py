"""
Record normalizer.

Turns source-specific raw records (bank statement rows, gateway transactions
and payouts, invoices) into the common ``Candidate`` shape. This module is the
only place that knows per-source field names.
"""
import logging
import math
import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from dateutil import parser as date_parser

from ledgerlink.models.candidates import (
    Candidate,
    Identity,
    MatchType,
    ReconciliationLink,
    ReconciliationState,
    SourceKind,
)
from ledgerlink.services.errors import ValidationError

logger = logging.getLogger(__name__)

# Batch ids gateways emit for transactions not yet settled
IGNORED_GROUP_KEYS = {"", "no-batch", "none", "null", "n/a"}

# Nested maps that may carry source fields
NESTED_FIELDS = ("custom_data", "metadata")

STATE_FIELD = "reconciliation_state"
LINK_FIELD = "reconciliation_link"


@dataclass(frozen=True)
class SourceFieldMap:
    """Known field names for one source, most specific first."""
    id_fields: Tuple[str, ...]
    date_fields: Tuple[str, ...]
    amount_fields: Tuple[str, ...]
    net_fields: Tuple[str, ...] = ()
    settlement_date_fields: Tuple[str, ...] = ()
    email_fields: Tuple[str, ...] = ()
    name_fields: Tuple[str, ...] = ()
    group_fields: Tuple[str, ...] = ()
    reference_fields: Tuple[str, ...] = ()
    description_fields: Tuple[str, ...] = ()
    currency_fields: Tuple[str, ...] = ("currency", "currency_iso_code")


# Settlement/disbursement amounts in order of specificity
GATEWAY_NET_FIELDS = (
    "settlement_disbursement_amount",
    "settlement_disbursement_total",
    "disbursement_settlement_amount",
    "disbursement_total_amount",
    "disbursement_amount",
    "settlement_amount",
    "net_amount",
)

FIELD_MAPS: Dict[SourceKind, SourceFieldMap] = {
    SourceKind.BANK_LEDGER: SourceFieldMap(
        id_fields=("id", "bank_transaction_id", "transaction_id"),
        date_fields=("booking_date", "value_date", "date", "transaction_date"),
        amount_fields=("amount",),
        name_fields=("counterparty", "counterparty_name", "payer_name"),
        email_fields=("payer_email",),
        reference_fields=("reference", "end_to_end_id", "payment_reference", "transaction_reference"),
        description_fields=("description", "remittance_info", "concept"),
    ),
    SourceKind.GATEWAY_TRANSACTION: SourceFieldMap(
        id_fields=("transaction_id", "id", "charge_id"),
        date_fields=("created_at", "transaction_date", "date"),
        amount_fields=("amount", "gross_amount"),
        net_fields=GATEWAY_NET_FIELDS,
        settlement_date_fields=("disbursement_date", "settlement_date"),
        email_fields=("customer_email", "email", "billing_email"),
        name_fields=("customer_name", "billing_name", "customer_company"),
        group_fields=("settlement_batch_id", "disbursement_id", "batch_id"),
        reference_fields=("transaction_id", "order_id", "payment_intent", "charge_id"),
        description_fields=("description",),
    ),
    SourceKind.GATEWAY_PAYOUT: SourceFieldMap(
        id_fields=("payout_id", "id"),
        date_fields=("arrival_date", "payout_date", "date", "created_at"),
        amount_fields=("amount", "net", "net_amount"),
        net_fields=("net", "net_amount", "amount"),
        settlement_date_fields=("arrival_date",),
        reference_fields=("payout_id", "trace_id", "statement_descriptor"),
        description_fields=("description",),
    ),
    SourceKind.INVOICE: SourceFieldMap(
        id_fields=("invoice_id", "id", "invoice_number"),
        date_fields=("invoice_date", "order_date", "due_date", "date"),
        amount_fields=("total_amount", "amount_due", "amount", "total"),
        email_fields=("email", "customer_email", "billing_email"),
        name_fields=("client_name", "customer_name", "company_name", "vendor_name"),
        reference_fields=("invoice_number", "order_id", "payment_reference", "transaction_id"),
        description_fields=("description", "memo"),
    ),
}

_US_THOUSANDS = re.compile(r"^-?\d{1,3}(,\d{3})+$")


def parse_amount(value: Any) -> Optional[float]:
    """
    Parse an amount from a number or a formatted string.

    Handles currency symbols, US (1,234.56) and European (1.234,56) separators
    and accounting negatives written in parentheses. A lone comma is a decimal
    separator (1234,56) unless it groups thousands (1,000). Returns None when
    nothing numeric remains.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) else None

    text = str(value).strip()
    if not text:
        return None

    negative = text.startswith("(") and text.endswith(")")
    text = re.sub(r"[^0-9,.\-]", "", text)
    if not text or not re.search(r"\d", text):
        return None

    has_comma = "," in text
    has_dot = "." in text
    if has_comma and has_dot:
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif has_comma:
        if _US_THOUSANDS.match(text):
            text = text.replace(",", "")
        else:
            text = text.replace(",", ".")

    try:
        number = float(text)
    except ValueError:
        return None
    if not math.isfinite(number):
        return None
    return -abs(number) if negative else number


def parse_date(value: Any) -> Optional[date]:
    """Parse a date, datetime or date string. Returns None when unparseable."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        pass
    try:
        return date_parser.parse(text, dayfirst=False).date()
    except (ValueError, TypeError, OverflowError):
        return None


def record_state(raw: Dict[str, Any]) -> ReconciliationState:
    """Reconciliation state of a raw record. Unknown values count as unreconciled."""
    raw_state = raw.get(STATE_FIELD)
    if raw_state:
        try:
            return ReconciliationState(str(raw_state).strip().lower())
        except ValueError:
            return ReconciliationState.UNRECONCILED
    if raw.get("reconciled") is True:
        return ReconciliationState.RECONCILED
    return ReconciliationState.UNRECONCILED


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class RecordNormalizer:
    """Converts raw source records into Candidates."""

    def __init__(self, field_maps: Optional[Dict[SourceKind, SourceFieldMap]] = None):
        self.field_maps = field_maps or FIELD_MAPS

    def normalize(self, raw: Dict[str, Any], source: SourceKind) -> Candidate:
        """
        Normalize one raw record.

        Raises:
            ValidationError: missing id, or unparseable date or amount
        """
        fields = self.field_maps[source]

        record_id = self._first(raw, fields.id_fields)
        if _is_blank(record_id):
            raise ValidationError(source.value, "Record has no id")
        record_id = str(record_id).strip()

        raw_date = self._first(raw, fields.date_fields)
        transaction_date = parse_date(raw_date)
        if transaction_date is None:
            raise ValidationError(source.value, f"Unparseable date: {raw_date!r}", record_id)

        raw_amount = self._first(raw, fields.amount_fields)
        amount = parse_amount(raw_amount)
        if amount is None:
            raise ValidationError(source.value, f"Unparseable amount: {raw_amount!r}", record_id)

        state, link = self._reconciliation(raw)

        try:
            return self._build(record_id, source, transaction_date, amount, raw, fields, state, link)
        except ValueError as exc:
            raise ValidationError(source.value, str(exc), record_id) from exc

    def _build(self, record_id, source, transaction_date, amount, raw, fields, state, link) -> Candidate:
        return Candidate(
            id=record_id,
            source=source,
            transaction_date=transaction_date,
            amount=round(amount, 2),
            currency=str(self._first(raw, fields.currency_fields) or "EUR"),
            net_amount=self._net_amount(raw, fields),
            settlement_date=parse_date(self._first(raw, fields.settlement_date_fields)),
            identity=self._identity(raw, fields),
            group_key=self._group_key(raw, fields),
            references=self._references(raw, fields),
            description=self._text(self._first(raw, fields.description_fields)),
            metadata=dict(raw),
            state=state,
            link=link,
        )

    def normalize_many(
        self,
        records: Iterable[Dict[str, Any]],
        source: SourceKind,
    ) -> Tuple[List[Candidate], List[ValidationError]]:
        """Normalize a batch, collecting rejections instead of raising."""
        candidates: List[Candidate] = []
        rejected: List[ValidationError] = []
        for raw in records:
            try:
                candidates.append(self.normalize(raw, source))
            except ValidationError as exc:
                logger.warning("Skipping %s record: %s (%s)", source.value, exc.message, exc.detail)
                rejected.append(exc)
        return candidates, rejected

    def _first(self, raw: Dict[str, Any], names: Iterable[str]) -> Any:
        for name in names:
            value = raw.get(name)
            if not _is_blank(value):
                return value
        for nested in NESTED_FIELDS:
            extra = raw.get(nested)
            if not isinstance(extra, dict):
                continue
            for name in names:
                value = extra.get(name)
                if not _is_blank(value):
                    return value
        return None

    def _text(self, value: Any) -> Optional[str]:
        if _is_blank(value):
            return None
        return str(value).strip()

    def _net_amount(self, raw: Dict[str, Any], fields: SourceFieldMap) -> Optional[float]:
        # First non-zero net figure wins; zero usually means "not settled yet"
        for name in fields.net_fields:
            amount = parse_amount(self._first(raw, (name,)))
            if amount:
                return round(amount, 2)
        return None

    def _identity(self, raw: Dict[str, Any], fields: SourceFieldMap) -> Optional[Identity]:
        email = self._text(self._first(raw, fields.email_fields))
        name = self._text(self._first(raw, fields.name_fields))
        if not email and not name:
            return None
        return Identity(email=email, name=name)

    def _group_key(self, raw: Dict[str, Any], fields: SourceFieldMap) -> Optional[str]:
        key = self._text(self._first(raw, fields.group_fields))
        if not key or key.lower() in IGNORED_GROUP_KEYS:
            return None
        return key

    def _references(self, raw: Dict[str, Any], fields: SourceFieldMap) -> List[str]:
        references: List[str] = []
        for name in fields.reference_fields:
            value = self._text(self._first(raw, (name,)))
            if value and value not in references:
                references.append(value)
        return references

    def _reconciliation(
        self, raw: Dict[str, Any]
    ) -> Tuple[ReconciliationState, Optional[ReconciliationLink]]:
        link = None
        link_data = raw.get(LINK_FIELD)
        if isinstance(link_data, dict):
            try:
                link = ReconciliationLink(**link_data)
            except ValueError:
                logger.warning("Ignoring malformed reconciliation link on record %s", raw.get("id"))

        state = record_state(raw)

        if link is not None and str(raw.get("reconciliation_type", "")).lower() == MatchType.MANUAL.value:
            link = link.model_copy(update={"manual": True})
        return state, link
