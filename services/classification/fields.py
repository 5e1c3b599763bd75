# services/classification/fields.py
from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Tuple


# One entry per category; every projection also carries "title".
CATEGORY_FIELDS: Dict[str, Tuple[str, ...]] = {
    "event": ("date", "time", "location", "url"),
    "expense": ("amount", "currency", "merchant", "date"),
    "contact": ("name", "phone"),
    "address": ("full", "mapsQuery"),
    "note": ("content", "category"),
    "document": ("content", "category"),
}


def _is_empty(v: Any) -> bool:
    if v is None:
        return True
    if isinstance(v, str):
        return v.strip() == ""
    if isinstance(v, (dict, list, tuple)):
        return len(v) == 0
    return False


def _as_mapping(v: Any) -> Mapping[str, Any]:
    return v if isinstance(v, Mapping) else {}


def _first_present(*values: Any) -> Any:
    for v in values:
        if not _is_empty(v):
            return v
    return None


def resolve_title(classification: Any) -> Optional[str]:
    """Top-level title, else the type sub-object's, else the generic fields bag's."""
    c = _as_mapping(classification)
    item_type = c.get("type")
    typed = _as_mapping(c.get(item_type)) if isinstance(item_type, str) else {}
    generic = _as_mapping(c.get("fields"))
    title = _first_present(c.get("title"), typed.get("title"), generic.get("title"))
    return str(title).strip() if title is not None else None


def project_fields(classification: Any) -> Dict[str, Any]:
    """
    Flatten a classification result into the editable field record for its
    type. Never raises: anything missing comes back as None.
    """
    c = _as_mapping(classification)
    item_type = c.get("type") if isinstance(c.get("type"), str) else None

    out: Dict[str, Any] = {"title": resolve_title(c)}

    names = CATEGORY_FIELDS.get(item_type or "")
    if not names:
        return out

    typed = _as_mapping(c.get(item_type))
    generic = _as_mapping(c.get("fields"))
    for name in names:
        out[name] = _first_present(typed.get(name), generic.get(name))
    return out


def _s(v: Any) -> str:
    return "" if _is_empty(v) else str(v).strip()


def build_summary(item_type: Optional[str], fields: Mapping[str, Any]) -> str:
    """Deterministic short label used when the classifier gives no summary."""
    title = _s(fields.get("title")) or "Untitled"

    if item_type == "event":
        when = " ".join(p for p in (_s(fields.get("date")), _s(fields.get("time"))) if p)
        return f"{title} – {when}" if when else title

    if item_type == "expense":
        head = _s(fields.get("merchant")) or title
        amount = _s(fields.get("amount"))
        if amount:
            return f"{head} – {amount} {_s(fields.get('currency'))}".rstrip()
        return head

    if item_type == "contact":
        head = _s(fields.get("name")) or title
        phone = _s(fields.get("phone"))
        return f"{head} – {phone}" if phone else head

    if item_type == "address":
        return f"{title} – {_s(fields.get('full')) or 'Address'}"

    if item_type in ("note", "document"):
        category = _s(fields.get("category"))
        return f"{title} – {category}" if category else title

    return title
