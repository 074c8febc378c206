# backend/identity_sync/services/email_selection.py
"""
Email selection and field mapping for resolver identities.

Best email priority:
1) lowest qualityLevel (0 = best, missing = worst)
2) lowest rankOrder (missing = worst)
3) most recent updateDate (unparseable = oldest)
4) earliest registerDate
5) optIn = true preferred
"""

import hashlib
import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def _number(value: Any) -> float:
    if isinstance(value, bool) or value is None:
        return math.inf
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.inf


def _timestamp(value: Any) -> float:
    """Epoch seconds for a date string; -inf when missing or unparseable."""
    if not isinstance(value, str) or not value.strip():
        return -math.inf
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return -math.inf
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def _sort_key(candidate: Dict[str, Any]):
    return (
        _number(candidate.get("qualityLevel")),
        _number(candidate.get("rankOrder")),
        -_timestamp(candidate.get("updateDate")),
        _timestamp(candidate.get("registerDate")),
        0 if candidate.get("optIn") is True else 1,
    )


def select_best_email(emails: Optional[List[Dict[str, Any]]]) -> Optional[Dict[str, Any]]:
    """
    Pick the best email candidate.

    Returns:
        {"email", "quality", "rank_order"} or None when there are no candidates
    """
    candidates = [e for e in (emails or []) if isinstance(e, dict) and e.get("email")]
    if not candidates:
        return None

    # sorted() is stable, so full ties keep provider order
    best = sorted(candidates, key=_sort_key)[0]
    quality = best.get("qualityLevel")
    rank_order = best.get("rankOrder")
    return {
        "email": best["email"],
        "quality": quality if isinstance(quality, int) and not isinstance(quality, bool) else None,
        "rank_order": rank_order if isinstance(rank_order, int) and not isinstance(rank_order, bool) else None,
    }


def find_matching_email(emails: Optional[List[Dict[str, Any]]], visitor_hash: str) -> Optional[str]:
    """The email whose md5 equals the visitor hash, else the first email."""
    candidates = [e for e in (emails or []) if isinstance(e, dict) and e.get("email")]
    if not candidates:
        return None

    target = (visitor_hash or "").lower()
    for candidate in candidates:
        md5 = (candidate.get("md5") or "").lower()
        if not md5:
            md5 = hashlib.md5(candidate["email"].strip().lower().encode("utf-8")).hexdigest()
        if md5 == target:
            return candidate["email"]
    return candidates[0]["email"]


def _int_or_none(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _str_or_none(value: Any, limit: int = 255) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)[:limit]


def map_enrichment_to_fields(identity: Dict[str, Any], visitor_hash: str) -> Dict[str, Any]:
    """Flatten a resolver identity into identity record columns."""
    emails = identity.get("emails") or []
    data = identity.get("data") or {}
    best = select_best_email(emails)
    ips = identity.get("ips")

    return {
        "first_name": _str_or_none(identity.get("firstName")),
        "last_name": _str_or_none(identity.get("lastName")),
        "address": _str_or_none(identity.get("address")),
        "city": _str_or_none(identity.get("city"), 100),
        "state": _str_or_none(identity.get("state"), 50),
        "zip": _str_or_none(identity.get("zip"), 20),
        "gender": _str_or_none(identity.get("gender"), 20),
        "birth_date": _str_or_none(identity.get("birthDate"), 20),
        "email": find_matching_email(emails, visitor_hash),
        "best_email": best["email"] if best else None,
        "best_email_quality": best["quality"] if best else None,
        "household_income": _str_or_none(data.get("householdIncome"), 100),
        "home_ownership": _str_or_none(data.get("homeOwnership"), 100),
        "length_of_residence": _str_or_none(data.get("lengthOfResidence"), 50),
        "age": _int_or_none(data.get("age")),
        "marital_status": _str_or_none(data.get("maritalStatus"), 50),
        "household_persons": _int_or_none(data.get("householdPersons")),
        "household_children": _int_or_none(data.get("householdChildren")),
        "mortgage_loan_type": _str_or_none(data.get("mortgageLoanType"), 100),
        "mortgage_amount": _str_or_none(data.get("mortgageAmount"), 50),
        "mortgage_age": _str_or_none(data.get("mortgageAge"), 50),
        "home_price": _str_or_none(data.get("homePrice"), 50),
        "home_value": _str_or_none(data.get("homeValue"), 50),
        "ips": list(ips) if isinstance(ips, (list, tuple)) else None,
    }
