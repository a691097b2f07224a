"""Field mapping — turns heterogeneous source rows into canonical contact dicts.

Targets use snake_case contact attributes, with two prefixed forms:
  - address.<part>   street, city, state, zip_code, country
  - custom.<name>    a key in Contact.custom_fields

Explicit mappings may also use the camelCase names the API exposes
(firstName, jobTitle, address.zipCode, customFields.industry, ...).
"""
import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional, Sequence

from dateutil import parser as date_parser

from db.models import CONTACT_STATUSES, LIFECYCLE_STAGES

logger = logging.getLogger(__name__)

PLACEHOLDER_DOMAIN = "placeholder.invalid"
SKIP = ""

RowTransform = Callable[[Sequence[Any], str], Optional[dict]]

_SCALAR_TARGETS = (
    "first_name",
    "last_name",
    "job_title",
    "email",
    "phone",
    "company",
    "tags",
    "lifecycle_stage",
    "status",
)
_ADDRESS_PARTS = ("street", "city", "state", "zip_code", "country")
_IDENTITY_FIELDS = ("first_name", "last_name", "email", "company")

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")

# Header aliases, matched after _normalize_header(). Order does not matter.
HEADER_ALIASES: dict[str, str] = {
    # Name
    "first name": "first_name",
    "firstname": "first_name",
    "fname": "first_name",
    "given name": "first_name",
    "last name": "last_name",
    "lastname": "last_name",
    "lname": "last_name",
    "surname": "last_name",
    "family name": "last_name",
    # Contact
    "email": "email",
    "email address": "email",
    "emailaddress": "email",
    "e-mail": "email",
    "work email": "email",
    "phone": "phone",
    "phone number": "phone",
    "phonenumber": "phone",
    "telephone": "phone",
    "mobile": "phone",
    "cell": "phone",
    "job title": "job_title",
    "jobtitle": "job_title",
    "title": "job_title",
    "position": "job_title",
    "role": "job_title",
    # Company
    "company": "company",
    "company name": "company",
    "companyname": "company",
    "organization": "company",
    "organisation": "company",
    "business": "company",
    "employer": "company",
    "website": "custom.companyWebsiteURL",
    "company website": "custom.companyWebsiteURL",
    "company website url": "custom.companyWebsiteURL",
    "url": "custom.companyWebsiteURL",
    "industry": "custom.industry",
    "naics code": "custom.naicsCode",
    "naicscode": "custom.naicsCode",
    "employees": "custom.numberOfEmployees",
    "number of employees": "custom.numberOfEmployees",
    "employee count": "custom.numberOfEmployees",
    "company size": "custom.numberOfEmployees",
    "linkedin": "custom.linkedInProfile",
    "linkedin url": "custom.linkedInProfile",
    # Address
    "address": "address.street",
    "street": "address.street",
    "street address": "address.street",
    "company street address": "address.street",
    "city": "address.city",
    "company city": "address.city",
    "state": "address.state",
    "province": "address.state",
    "company state": "address.state",
    "zip": "address.zip_code",
    "zipcode": "address.zip_code",
    "zip code": "address.zip_code",
    "postal code": "address.zip_code",
    "postcode": "address.zip_code",
    "company zip code": "address.zip_code",
    "country": "address.country",
    # Classification
    "tags": "tags",
    "labels": "tags",
    "lifecycle stage": "lifecycle_stage",
    "lifecyclestage": "lifecycle_stage",
    "stage": "lifecycle_stage",
    "status": "status",
    "lead source": "custom.leadSource",
    "source": "custom.leadSource",
    "campaign": "custom.campaignCategory",
    "campaign category": "custom.campaignCategory",
    "last campaign date": "custom.lastCampaignDate",
}

# CRM contact properties -> targets. Anything unlisted lands in custom_fields.
HUBSPOT_PROPERTY_MAP: dict[str, str] = {
    "firstname": "first_name",
    "lastname": "last_name",
    "jobtitle": "job_title",
    "email": "email",
    "phone": "phone",
    "company": "company",
    "address": "address.street",
    "city": "address.city",
    "state": "address.state",
    "zip": "address.zip_code",
    "country": "address.country",
    "website": "custom.companyWebsiteURL",
    "industry": "custom.industry",
    "business_category___industry_of_interest": "custom.industry",
    "naics_code": "custom.naicsCode",
    "numemployees": "custom.numberOfEmployees",
    "linkedin_profile_url": "custom.linkedInProfile",
    "lead_source": "custom.leadSource",
    "contact_type": "custom.campaignCategory",
    "hs_email_last_send_date": "custom.lastCampaignDate",
    "compliance_notes": "custom.complianceNotes",
    "createdate": "custom.createDate",
    "lastmodifieddate": "custom.lastModifiedDate",
    # Consumed by map_dnc_status / map_lifecycle_stage
    "lifecyclestage": SKIP,
    "hs_object_id": SKIP,
    "hs_do_not_call": SKIP,
    "do_not_call": SKIP,
    "dnc_flag": SKIP,
    "dnc_date": SKIP,
    "dnc_reason": SKIP,
    "hs_email_optout": SKIP,
    "hs_marketable_status": SKIP,
    "optout": SKIP,
    "optout_date": SKIP,
    "federal_dnc": SKIP,
    "federal_dnc_date": SKIP,
    "state_dnc": SKIP,
    "state_dnc_date": SKIP,
    "wireless_dnc": SKIP,
    "wireless_dnc_date": SKIP,
}

_HUBSPOT_LIFECYCLE = {
    "subscriber": "subscriber",
    "lead": "lead",
    "marketingqualifiedlead": "prospect",
    "salesqualifiedlead": "prospect",
    "opportunity": "prospect",
    "customer": "customer",
    "evangelist": "evangelist",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def placeholder_email(source: str, source_id: str) -> str:
    """Deterministic, unique stand-in address for a record without an email."""
    digest = uuid.uuid5(uuid.NAMESPACE_URL, f"{source}:{source_id}").hex[:16]
    return f"noemail_{digest}@{PLACEHOLDER_DOMAIN}"


def is_placeholder_email(email: Optional[str]) -> bool:
    return bool(email) and email.endswith(f"@{PLACEHOLDER_DOMAIN}")


def _normalize_header(header: Any) -> str:
    text = str(header or "").strip().lower().replace("_", " ")
    return re.sub(r"\s+", " ", text)


def _snake(name: str) -> str:
    return _CAMEL_RE.sub("_", name).lower()


def normalize_target(target: Optional[str]) -> str:
    """Canonicalize an explicit mapping target. Returns SKIP for empty targets."""
    target = (target or "").strip()
    if not target or target.lower() == "skip":
        return SKIP
    prefix, _, rest = target.partition(".")
    if rest and prefix in ("custom", "customFields", "custom_fields"):
        return f"custom.{rest}"
    if rest and prefix == "address":
        part = _snake(rest)
        return f"address.{part}" if part in _ADDRESS_PARTS else f"custom.{rest}"
    snake = _snake(target)
    if snake in _SCALAR_TARGETS:
        return snake
    if snake in _ADDRESS_PARTS:
        return f"address.{snake}"
    return f"custom.{target}"


def resolve_targets(
    headers: Sequence[Any],
    mapping: Optional[Mapping[str, Optional[str]]] = None,
    use_aliases: bool = True,
) -> list[str]:
    """One target per header: explicit mapping, then alias table, then custom field."""
    targets = []
    for header in headers:
        name = str(header or "").strip()
        if mapping is not None and name in mapping:
            targets.append(normalize_target(mapping[name]))
        elif use_aliases and _normalize_header(name) in HEADER_ALIASES:
            targets.append(HEADER_ALIASES[_normalize_header(name)])
        elif name:
            targets.append(f"custom.{name}")
        else:
            targets.append(SKIP)
    return targets


def _clean(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _first_valid_email(value: str) -> Optional[str]:
    for candidate in re.split(r"[,;\s]+", value.lower()):
        if _EMAIL_RE.match(candidate):
            return candidate
    return None


def _first_phone(value: str) -> str:
    return re.split(r"[,;/]", value)[0].strip()


def _parse_date(value: Any) -> Optional[datetime]:
    text = _clean(value)
    if not text:
        return None
    try:
        if text.isdigit():
            return datetime.fromtimestamp(int(text) / 1000, tz=timezone.utc)
        parsed = date_parser.parse(text)
    except (ValueError, OverflowError):
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Row transform
# ---------------------------------------------------------------------------


def _apply(record: dict, target: str, raw: str) -> None:
    if target == "email":
        email = _first_valid_email(raw)
        if email:
            record["email"] = email
        else:
            record["custom_fields"]["invalidEmail"] = raw
    elif target == "phone":
        record["phone"] = _first_phone(raw)
    elif target == "tags":
        record["tags"].extend(t.strip() for t in raw.split(",") if t.strip())
    elif target == "lifecycle_stage":
        if raw.lower() in LIFECYCLE_STAGES:
            record["lifecycle_stage"] = raw.lower()
        else:
            record["custom_fields"]["lifecycleStage"] = raw
    elif target == "status":
        if raw.lower() in CONTACT_STATUSES and raw.lower() != "deleted":
            record["status"] = raw.lower()
        else:
            record["custom_fields"]["status"] = raw
    elif target.startswith("address."):
        record["address"][target.split(".", 1)[1]] = raw
    elif target.startswith("custom."):
        record["custom_fields"][target.split(".", 1)[1]] = raw
    else:
        record[target] = raw


def finalize(record: dict, source: str, source_id: str) -> Optional[dict]:
    """Apply the identity drop policy and fill provenance; None means dropped."""
    if not any(record.get(field) for field in _IDENTITY_FIELDS):
        return None
    record["source"] = source
    record["source_id"] = source_id
    if record.get("email"):
        record["email_is_placeholder"] = False
    else:
        record["email"] = placeholder_email(source, source_id)
        record["email_is_placeholder"] = True
    return record


def build_row_transform(
    headers: Sequence[Any],
    mapping: Optional[Mapping[str, Optional[str]]] = None,
    *,
    source: str,
    use_aliases: bool = True,
) -> RowTransform:
    """Compile headers (plus an optional column -> field mapping) into a row transform.

    The returned callable takes (row, source_id) and yields a contact dict,
    or None when the row carries no identity (name, email or company).
    Rows are never rejected for bad values: unparseable emails and unknown
    enum values are kept in custom_fields instead.
    """
    targets = resolve_targets(headers, mapping, use_aliases)

    def transform(row: Sequence[Any], source_id: str) -> Optional[dict]:
        record: dict[str, Any] = {"address": {}, "custom_fields": {}, "tags": []}
        for target, value in zip(targets, row):
            raw = _clean(value)
            if target and raw:
                _apply(record, target, raw)
        return finalize(record, source, source_id)

    return transform


# ---------------------------------------------------------------------------
# CRM records
# ---------------------------------------------------------------------------


def _truthy(value: Any) -> bool:
    return value is True or _clean(value).lower() == "true"


def map_dnc_status(props: Optional[Mapping[str, Any]]) -> dict:
    """Derive dnc_status / dnc_date / dnc_reason from CRM do-not-call properties."""
    if not props:
        return {"dnc_status": "callable", "dnc_date": None, "dnc_reason": None}

    if (
        any(_truthy(props.get(p)) for p in ("hs_do_not_call", "do_not_call", "dnc_flag", "hs_email_optout"))
        or props.get("hs_marketable_status") == "NOT_OPTED_IN"
    ):
        return {
            "dnc_status": "dnc_internal",
            "dnc_date": _parse_date(props.get("dnc_date")) or datetime.now(timezone.utc),
            "dnc_reason": _clean(props.get("dnc_reason")) or "Marked as DNC in HubSpot",
        }
    if _truthy(props.get("optout")):
        return {
            "dnc_status": "dnc_internal",
            "dnc_date": _parse_date(props.get("optout_date")) or datetime.now(timezone.utc),
            "dnc_reason": "Marketing opt-out",
        }
    for registry, label in (("federal", "Federal"), ("state", "State"), ("wireless", "Wireless")):
        if _truthy(props.get(f"{registry}_dnc")):
            return {
                "dnc_status": f"dnc_{registry}",
                "dnc_date": _parse_date(props.get(f"{registry}_dnc_date")),
                "dnc_reason": f"{label} DNC Registry",
            }
    return {"dnc_status": "callable", "dnc_date": None, "dnc_reason": None}


def map_lifecycle_stage(stage: Any) -> str:
    return _HUBSPOT_LIFECYCLE.get(_clean(stage).lower(), "lead")


def translate_hubspot_contact(record: Mapping[str, Any]) -> Optional[dict]:
    """Translate one CRM contact ({id, properties}) into a contact dict."""
    props = record.get("properties") or {}
    hubspot_id = _clean(record.get("id") or props.get("hs_object_id"))
    headers = list(props.keys())
    transform = build_row_transform(
        headers, HUBSPOT_PROPERTY_MAP, source="hubspot", use_aliases=False
    )
    data = transform([props[h] for h in headers], hubspot_id)
    if data is None:
        return None
    data["lifecycle_stage"] = map_lifecycle_stage(props.get("lifecyclestage"))
    data.update(map_dnc_status(props))
    data["custom_fields"]["hubspotId"] = hubspot_id
    return data
