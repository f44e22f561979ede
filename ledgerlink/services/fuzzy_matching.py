"""
Similarity primitives for candidate matching.

Pure functions, no state:
- String similarity (normalized edit distance with a containment shortcut)
- Word-order independent name similarity
- Email normalization and match kind
- Date distance and amount tolerance checks

All similarity scores are on a 0-100 scale.
"""
from datetime import date
from typing import Optional
import re
import unicodedata

from rapidfuzz.distance import Levenshtein

from ledgerlink.models.reconciliation import EmailMatchKind

# Partial (containment) matches never score above this
CONTAINMENT_CAP = 90.0
DIRECT_NAME_THRESHOLD = 90.0
TOKEN_MATCH_THRESHOLD = 80.0
MIN_TOKEN_LENGTH = 3


def normalize_text(value: Optional[str]) -> str:
    """
    Fold a string for comparison.

    Examples:
        "  José  Núñez-Pérez " -> "jose nunezperez"
        "ACME, S.L." -> "acme sl"
    """
    if not value:
        return ""
    decomposed = unicodedata.normalize("NFD", value)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    stripped = re.sub(r"[^\w\s]", "", stripped.lower())
    return " ".join(stripped.split())


def string_similarity(left: Optional[str], right: Optional[str]) -> float:
    """
    Similarity between two already-folded strings.

    Identical strings score 100. When one contains the other the score is the
    length ratio, capped at 90. Strings whose lengths differ by more than half
    of the longer one score 0. Otherwise normalized Levenshtein distance.
    """
    if not left or not right:
        return 0.0
    if left == right:
        return 100.0

    longer = max(len(left), len(right))
    shorter = min(len(left), len(right))

    if left in right or right in left:
        return min(CONTAINMENT_CAP, shorter / longer * 100)

    if longer - shorter > longer * 0.5:
        return 0.0

    distance = Levenshtein.distance(left, right)
    return max(0.0, (longer - distance) / longer * 100)


def name_similarity(left: Optional[str], right: Optional[str]) -> float:
    """
    Word-order independent similarity for person or company names.

    "Silva Ana" vs "Ana Silva" scores 100 through token matching even though
    the direct comparison is weak.
    """
    norm_left = normalize_text(left)
    norm_right = normalize_text(right)
    if not norm_left or not norm_right:
        return 0.0

    direct = string_similarity(norm_left, norm_right)
    if direct >= DIRECT_NAME_THRESHOLD:
        return direct

    tokens_left = [word for word in norm_left.split() if len(word) >= MIN_TOKEN_LENGTH]
    tokens_right = [word for word in norm_right.split() if len(word) >= MIN_TOKEN_LENGTH]
    if not tokens_left or not tokens_right:
        return direct

    remaining = list(tokens_right)
    matches = 0
    for word in tokens_left:
        for index, other in enumerate(remaining):
            if string_similarity(word, other) >= TOKEN_MATCH_THRESHOLD:
                matches += 1
                del remaining[index]
                break

    rate = matches / max(len(tokens_left), len(tokens_right)) * 100
    return max(direct, rate)


def normalize_email(email: Optional[str]) -> str:
    """
    Canonical form of an email address.

    Lowercased, whitespace removed, "+alias" dropped from the local part and
    repeated dots collapsed: " Ana.Silva+work@X.com " -> "ana.silva@x.com".
    """
    if not email:
        return ""
    cleaned = re.sub(r"\s+", "", email.lower())
    if "@" not in cleaned:
        return cleaned
    local, _, domain = cleaned.rpartition("@")
    local = local.split("+", 1)[0]
    local = re.sub(r"\.{2,}", ".", local)
    domain = re.sub(r"\.{2,}", ".", domain)
    return f"{local}@{domain}"


def email_domain(email: Optional[str]) -> str:
    normalized = normalize_email(email)
    if "@" not in normalized:
        return ""
    return normalized.rpartition("@")[2]


def email_match_kind(left: Optional[str], right: Optional[str]) -> EmailMatchKind:
    """Exact when the normalized addresses are equal, domain when only the domains are."""
    norm_left = normalize_email(left)
    norm_right = normalize_email(right)
    if not norm_left or not norm_right:
        return EmailMatchKind.NONE
    if norm_left == norm_right:
        return EmailMatchKind.EXACT
    domain = email_domain(norm_left)
    if domain and domain == email_domain(norm_right):
        return EmailMatchKind.DOMAIN
    return EmailMatchKind.NONE


def date_delta_days(left: date, right: date) -> int:
    return abs((left - right).days)


def amount_delta(left: float, right: float) -> float:
    """Absolute difference of magnitudes, rounded to cents."""
    return round(abs(abs(left) - abs(right)), 2)


def amount_within_tolerance(
    left: float,
    right: float,
    abs_tolerance: float = 0.01,
    pct_tolerance: float = 0.0,
) -> bool:
    """
    True when the magnitudes differ by no more than the absolute tolerance or
    the percentage tolerance of the larger magnitude, whichever is wider.
    """
    delta = amount_delta(left, right)
    allowed = max(abs_tolerance, max(abs(left), abs(right)) * pct_tolerance / 100)
    return delta <= allowed + 1e-9
