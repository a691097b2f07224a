"""Filter compiler — segment filter maps to SQLAlchemy predicates.

A filter map is sparse and loosely typed, e.g.

    {"source": ["hubspot", "google_sheets"], "company": "acme",
     "dncStatus": "callable", "dateRange": {"start": "2024-01-01"},
     "customFields.industry": "retail", "createdAt": {"$gte": "2024-06-01"}}

compile_filters() turns it into a list of typed predicates via a table of
per-key translators plus a default arm; to_clause() renders those into one
WHERE clause. Compilation is total: a fragment that cannot be understood
becomes NoOp (logged) instead of failing the query.
"""
import json
import logging
import math
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Optional, Union

from dateutil import parser as date_parser
from sqlalchemy import ColumnElement, Text, and_, cast, false, func, not_, or_, true

from db.models import Contact

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Predicate variants
# ---------------------------------------------------------------------------
# `field` is a contact attribute name, "address.<part>" or "custom.<key>".


@dataclass(frozen=True)
class Equals:
    field: str
    value: Any


@dataclass(frozen=True)
class Contains:
    """Case-insensitive substring match."""
    field: str
    text: str


@dataclass(frozen=True)
class Range:
    field: str
    start: Optional[datetime] = None
    end: Optional[datetime] = None


@dataclass(frozen=True)
class In:
    field: str
    values: tuple


@dataclass(frozen=True)
class TagsAny:
    tags: tuple


@dataclass(frozen=True)
class Present:
    field: str
    present: bool


@dataclass(frozen=True)
class SpecialCallable:
    """Not marked internal do-not-call; contacts without a DNC value count as callable."""


@dataclass(frozen=True)
class Operators:
    """Explicit operator sub-object, e.g. {"$gte": ..., "$lt": ...}."""
    field: str
    ops: tuple


@dataclass(frozen=True)
class AnyOf:
    branches: tuple


@dataclass(frozen=True)
class NoOp:
    reason: str = ""


Predicate = Union[
    Equals, Contains, Range, In, TagsAny, Present, SpecialCallable, Operators, AnyOf, NoOp
]

SUPPORTED_OPERATORS = ("$eq", "$ne", "$gt", "$gte", "$lt", "$lte", "$in", "$nin", "$exists", "$regex", "$startswith")


# ---------------------------------------------------------------------------
# Key tables
# ---------------------------------------------------------------------------

_ENUM_KEYS = {
    "source": "source",
    "status": "status",
    "lifecycleStage": "lifecycle_stage",
    "lifecycle_stage": "lifecycle_stage",
}

_TEXT_KEYS = {
    "email": "email",
    "firstName": "first_name",
    "first_name": "first_name",
    "lastName": "last_name",
    "last_name": "last_name",
    "company": "company",
    "jobTitle": "job_title",
    "job_title": "job_title",
}

_ADDRESS_KEYS = {
    "street": "address.street",
    "companyStreetAddress": "address.street",
    "city": "address.city",
    "companyCity": "address.city",
    "state": "address.state",
    "companyState": "address.state",
    "zip": "address.zip_code",
    "zipCode": "address.zip_code",
    "companyZipCode": "address.zip_code",
    "country": "address.country",
}

_RANGE_KEYS = {"dateRange": "created_at", "lastSyncRange": "last_synced_at"}

_PRESENCE_KEYS = {
    "hasEmail": "email",
    "hasPhone": "phone",
    "hasCompany": "company",
    "hasSyncErrors": "sync_errors",
}

# Remaining columns reachable through the default arm
_COLUMN_KEYS = {
    "sourceId": "source_id",
    "source_id": "source_id",
    "dncStatus": "dnc_status",
    "dnc_status": "dnc_status",
    "dncReason": "dnc_reason",
    "dncDate": "dnc_date",
    "createdAt": "created_at",
    "created_at": "created_at",
    "updatedAt": "updated_at",
    "lastSyncedAt": "last_synced_at",
    "last_synced_at": "last_synced_at",
    "emailIsPlaceholder": "email_is_placeholder",
}
_DATETIME_COLUMNS = ("created_at", "updated_at", "last_synced_at", "dnc_date")
_BOOLEAN_COLUMNS = ("email_is_placeholder",)
_JSON_COLUMNS = ("address", "custom_fields", "tags", "sync_errors")

# Widest integer every backend binds without overflow
_INT_BOUND = 2 ** 63

_ADDRESS_PARTS = {"street": "street", "city": "city", "state": "state",
                  "zipCode": "zip_code", "zip_code": "zip_code", "zip": "zip_code",
                  "country": "country"}


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------


def _is_operator_map(value: Any) -> bool:
    return isinstance(value, Mapping) and bool(value) and all(
        isinstance(k, str) and k.startswith("$") for k in value
    )


def _parse_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = date_parser.parse(value)
        except (ValueError, OverflowError):
            return None
    else:
        return None
    if not parsed.tzinfo:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    return None


def _plain_number(value: Any) -> bool:
    """Finite float or int that fits 64 bits; bools are not numbers here."""
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return -_INT_BOUND <= value < _INT_BOUND
    return isinstance(value, float) and math.isfinite(value)


def _scalar_list(value: Any) -> Optional[tuple]:
    if isinstance(value, (list, tuple)) and value and all(
        isinstance(v, str) or _plain_number(v) for v in value
    ):
        return tuple(value)
    return None


def _kind(field: str) -> str:
    """Storage kind of the column a predicate field compares against."""
    if field.startswith(("custom.", "address.")):
        return "text"
    if field in _DATETIME_COLUMNS:
        return "datetime"
    if field in _BOOLEAN_COLUMNS:
        return "boolean"
    if field in _JSON_COLUMNS:
        return "json"
    if field == "id":
        return "uuid"
    return "text"


def _dotted_field(key: str) -> Optional[str]:
    prefix, _, rest = key.partition(".")
    if not rest:
        return None
    if prefix in ("customFields", "custom_fields", "custom"):
        return f"custom.{rest}"
    if prefix == "address":
        return f"address.{_ADDRESS_PARTS.get(rest, rest)}"
    return None


# ---------------------------------------------------------------------------
# Translators: (field, value) -> list of predicates
# ---------------------------------------------------------------------------


def _generic(field: str, value: Any) -> list[Predicate]:
    """Default arm: operators pass through, strings contain, other scalars equal."""
    if _is_operator_map(value):
        return [Operators(field, tuple(value.items()))]
    kind = _kind(field)
    if kind == "datetime":
        return _date_match(field, value)
    if kind == "boolean":
        flag = _as_bool(value)
        return [Equals(field, flag)] if flag is not None else [NoOp(f"{field} must be boolean")]
    if kind != "text":
        return [NoOp(f"{field} cannot be matched by value")]
    if isinstance(value, str):
        return [Contains(field, value)] if value.strip() else [NoOp("empty string")]
    if isinstance(value, bool) or _plain_number(value):
        return [Equals(field, value)]
    values = _scalar_list(value)
    if values is not None:
        return [In(field, values)]
    return [NoOp(f"unsupported value for {field}")]


def _date_match(field: str, value: Any) -> list[Predicate]:
    """A range object bounds the column; a bare date matches the whole (UTC) day."""
    if isinstance(value, Mapping):
        return _range(field, value)
    parsed = _parse_datetime(value)
    if parsed is None:
        return [NoOp(f"{field} needs a date")]
    day = parsed.replace(hour=0, minute=0, second=0, microsecond=0)
    return [Range(field, day, day + timedelta(days=1) - timedelta(microseconds=1))]


def _enum(field: str, value: Any) -> list[Predicate]:
    if isinstance(value, str) and value:
        return [Equals(field, value)]
    values = _scalar_list(value)
    if values is not None:
        return [In(field, values)]
    if _is_operator_map(value):
        return [Operators(field, tuple(value.items()))]
    return [NoOp(f"bad {field} value")]


def _text(field: str, value: Any) -> list[Predicate]:
    if isinstance(value, str):
        return [Contains(field, value)] if value.strip() else [NoOp("empty string")]
    return _generic(field, value)


def _phone(value: Any) -> list[Predicate]:
    digits = re.sub(r"\D", "", str(value)) if isinstance(value, (str, int)) else ""
    if not digits:
        return [NoOp("phone filter has no digits")]
    return [Contains("phone", digits)]


def _tags(value: Any) -> list[Predicate]:
    if isinstance(value, str) and value:
        return [TagsAny((value,))]
    values = _scalar_list(value)
    if values is not None:
        return [TagsAny(tuple(str(v) for v in values))]
    return [NoOp("bad tags value")]


def _range(field: str, value: Any) -> list[Predicate]:
    if not isinstance(value, Mapping):
        return [NoOp(f"{field} range must be an object")]
    start = _parse_datetime(value.get("start") or value.get("from"))
    end = _parse_datetime(value.get("end") or value.get("to"))
    if start is None and end is None:
        return [NoOp(f"{field} range has no usable bounds")]
    return [Range(field, start, end)]


def _created_within(value: Any) -> list[Predicate]:
    if not _plain_number(value) or value <= 0:
        return [NoOp("createdWithinDays must be a positive number")]
    return [Range("created_at", datetime.now(timezone.utc) - timedelta(days=value), None)]


def _dnc(value: Any) -> list[Predicate]:
    if value == "callable":
        return [SpecialCallable()]
    return _enum("dnc_status", value)


def _presence(field: str, value: Any) -> list[Predicate]:
    flag = _as_bool(value)
    if flag is None:
        return [NoOp(f"presence flag for {field} must be boolean")]
    return [Present(field, flag)]


def _custom_fields(value: Any) -> list[Predicate]:
    if not isinstance(value, Mapping):
        return [NoOp("customFields must be an object")]
    predicates: list[Predicate] = []
    for key, sub in value.items():
        predicates.extend(_generic(f"custom.{key}", sub))
    return predicates


def _identity(value: Any) -> list[Predicate]:
    if isinstance(value, Mapping) and "$in" in value:
        raw = value["$in"] if isinstance(value["$in"], (list, tuple)) else []
    elif isinstance(value, (list, tuple)):
        raw = value
    elif isinstance(value, str):
        raw = [value]
    else:
        return [NoOp("bad id filter")]
    ids = []
    for item in raw:
        try:
            ids.append(uuid.UUID(str(item)))
        except ValueError:
            continue
    # An id filter naming no valid id matches nothing
    return [In("id", tuple(ids))]


def _any_of(value: Any) -> list[Predicate]:
    if not isinstance(value, (list, tuple)) or not value:
        return [NoOp("$or needs a non-empty list")]
    branches = tuple(tuple(compile_filters(branch)) for branch in value if isinstance(branch, Mapping))
    return [AnyOf(branches)] if branches else [NoOp("$or has no object branches")]


_TRANSLATORS: dict[str, Callable[[Any], list[Predicate]]] = {
    "tags": _tags,
    "phone": _phone,
    "dncStatus": _dnc,
    "customFields": _custom_fields,
    "_id": _identity,
    "id": _identity,
    "$or": _any_of,
    "createdWithinDays": _created_within,
}
for _key, _field in _ENUM_KEYS.items():
    _TRANSLATORS[_key] = lambda v, f=_field: _enum(f, v)
for _key, _field in {**_TEXT_KEYS, **_ADDRESS_KEYS}.items():
    _TRANSLATORS[_key] = lambda v, f=_field: _text(f, v)
for _key, _field in _RANGE_KEYS.items():
    _TRANSLATORS[_key] = lambda v, f=_field: _range(f, v)
for _key, _field in _PRESENCE_KEYS.items():
    _TRANSLATORS[_key] = lambda v, f=_field: _presence(f, v)


def _default_field(key: str) -> str:
    return _dotted_field(key) or _COLUMN_KEYS.get(key) or f"custom.{key}"


def translate(key: Any, value: Any) -> list[Predicate]:
    """Translate one filter entry. Never raises."""
    try:
        if not isinstance(key, str) or not key:
            return [NoOp("non-string key")]
        if value is None:
            return [NoOp(f"{key} is null")]
        translator = _TRANSLATORS.get(key)
        if translator is not None:
            return translator(value)
        return _generic(_default_field(key), value)
    except Exception as exc:
        logger.warning("Filter %r ignored: %s", key, exc)
        return [NoOp(str(exc))]


def compile_filters(filters: Any) -> list[Predicate]:
    """Filter map -> typed predicates. Non-mapping input compiles to no predicates."""
    if not isinstance(filters, Mapping):
        if filters not in (None, ""):
            logger.warning("Filter of type %s ignored", type(filters).__name__)
        return []
    predicates: list[Predicate] = []
    for key, value in filters.items():
        for predicate in translate(key, value):
            if isinstance(predicate, NoOp):
                logger.warning("Filter %r ignored: %s", key, predicate.reason)
            else:
                predicates.append(predicate)
    return predicates


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def _column(field: str):
    if field.startswith("custom."):
        return Contact.custom_fields[field.split(".", 1)[1]].as_string()
    if field.startswith("address."):
        return Contact.address[field.split(".", 1)[1]].as_string()
    return getattr(Contact, field)


def _phone_digits():
    expr = Contact.phone
    for char in (" ", "-", "(", ")", ".", "+", "/"):
        expr = func.replace(expr, char, "")
    return expr


def _coerce(field: str, value: Any) -> Any:
    """Bind value as the type of field's column; ValueError when it has no such form."""
    kind = _kind(field)
    if kind == "datetime":
        parsed = _parse_datetime(value)
        if parsed is None:
            raise ValueError(f"{value!r} is not a date")
        return parsed
    if kind == "boolean":
        flag = _as_bool(value)
        if flag is None:
            raise ValueError(f"{value!r} is not a boolean")
        return flag
    if kind == "uuid":
        return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
    if kind == "json":
        raise ValueError(f"{field} cannot be compared by value")
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return str(value).lower()
    if _plain_number(value):
        return str(value)
    raise ValueError(f"{value!r} cannot be compared with {field}")


def _require_text(field: str) -> None:
    if _kind(field) != "text":
        raise ValueError(f"{field} is not a text column")


def _operator_clause(field: str, op: str, value: Any) -> ColumnElement[bool]:
    column = _column(field)
    if op == "$exists":
        return column.is_(None) if _as_bool(value) is False else column.is_not(None)
    if op in ("$in", "$nin"):
        items = value if isinstance(value, (list, tuple)) else [value]
        clause = column.in_([_coerce(field, v) for v in items])
        return clause if op == "$in" else or_(column.is_(None), not_(clause))
    if op == "$regex":
        _require_text(field)
        return column.regexp_match(_coerce(field, value), flags="i")
    if op == "$startswith":
        _require_text(field)
        return column.startswith(_coerce(field, value), autoescape=True)
    coerced = _coerce(field, value)
    if op == "$eq":
        return column == coerced
    if op == "$ne":
        return or_(column.is_(None), column != coerced)
    if op == "$gt":
        return column > coerced
    if op == "$gte":
        return column >= coerced
    if op == "$lt":
        return column < coerced
    return column <= coerced


def _render(predicate: Predicate) -> Optional[ColumnElement[bool]]:
    if isinstance(predicate, Equals):
        return _column(predicate.field) == _coerce(predicate.field, predicate.value)
    if isinstance(predicate, Contains):
        _require_text(predicate.field)
        column = _phone_digits() if predicate.field == "phone" else _column(predicate.field)
        return column.icontains(str(predicate.text), autoescape=True)
    if isinstance(predicate, Range):
        if _kind(predicate.field) != "datetime":
            raise ValueError(f"{predicate.field} is not a date column")
        column = _column(predicate.field)
        bounds = []
        if predicate.start is not None:
            bounds.append(column >= predicate.start)
        if predicate.end is not None:
            bounds.append(column <= predicate.end)
        return and_(*bounds)
    if isinstance(predicate, In):
        if not predicate.values:
            return false()
        return _column(predicate.field).in_([_coerce(predicate.field, v) for v in predicate.values])
    if isinstance(predicate, TagsAny):
        # Stored JSON text holds each tag quoted, e.g. ["vip", "2024"]
        tags_text = cast(Contact.tags, Text)
        return or_(*(tags_text.contains(json.dumps(t), autoescape=True) for t in predicate.tags))
    if isinstance(predicate, Present):
        column = _column(predicate.field)
        if predicate.field == "sync_errors":
            present = cast(column, Text).not_in(["[]", "null"])
        else:
            present = and_(column.is_not(None), column != "")
        if predicate.field == "email":
            present = and_(present, Contact.email_is_placeholder.is_(False))
        return present if predicate.present else not_(present)
    if isinstance(predicate, SpecialCallable):
        return or_(Contact.dnc_status.is_(None), Contact.dnc_status != "dnc_internal")
    if isinstance(predicate, Operators):
        clauses = []
        for op, value in predicate.ops:
            if op not in SUPPORTED_OPERATORS:
                logger.warning("Operator %s on %s ignored", op, predicate.field)
                continue
            clauses.append(_operator_clause(predicate.field, op, value))
        return and_(*clauses) if clauses else None
    if isinstance(predicate, AnyOf):
        return or_(*(to_clause(list(branch)) for branch in predicate.branches))
    return None


def to_clause(predicates: list[Predicate]) -> ColumnElement[bool]:
    """AND the predicates together; a predicate that fails to render is dropped."""
    clauses = []
    for predicate in predicates:
        try:
            clause = _render(predicate)
        except Exception as exc:
            logger.warning("Predicate %r ignored: %s", predicate, exc)
            continue
        if clause is not None:
            clauses.append(clause)
    return and_(true(), *clauses)


def mentions_status(filters: Any) -> bool:
    return isinstance(filters, Mapping) and "status" in filters


def build_where(filters: Any, exclude_deleted: bool = True) -> ColumnElement[bool]:
    """Filter map -> WHERE clause over contacts.

    Soft-deleted contacts are left out unless the filter constrains status itself.
    """
    clause = to_clause(compile_filters(filters))
    if exclude_deleted and not mentions_status(filters):
        clause = and_(clause, Contact.status != "deleted")
    return clause
