"""HubSpot CRM contact tools.

Calls the HubSpot REST API directly with a private-app bearer token.
Listing functions raise on HTTP failure so callers can fail the whole sync.
"""
import logging
import os
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)

HUBSPOT_BASE = "https://api.hubapi.com"
PAGE_LIMIT = 100
RATE_LIMIT_DELAY = 0.1
CONTACT_PROPERTIES = [
    "firstname", "lastname", "email", "phone", "company", "jobtitle",
    "website", "industry", "business_category___industry_of_interest",
    "naics_code", "numemployees", "linkedin_profile_url",
    "address", "city", "state", "zip", "country",
    "lead_source", "contact_type", "hs_email_last_send_date",
    "createdate", "lastmodifieddate", "lifecyclestage",
    "hs_do_not_call", "do_not_call", "dnc_flag", "hs_email_optout",
    "hs_marketable_status", "optout", "federal_dnc", "compliance_notes",
]


def _access_token() -> str:
    return os.environ["HUBSPOT_ACCESS_TOKEN"]


def _headers() -> Dict[str, str]:
    return {
        "Authorization": f"Bearer {_access_token()}",
        "Content-Type": "application/json",
    }


def hubspot_get_contacts_page(after: Optional[str] = None, limit: int = PAGE_LIMIT) -> Dict[str, Any]:
    """Fetch one page of contacts.

    Args:
        after: Paging cursor from the previous page, if any.
        limit: Page size (max 100).

    Returns:
        Dict with 'results' (list of {id, properties}) and 'after' (next cursor or None).
    """
    params: Dict[str, Any] = {"limit": limit, "properties": ",".join(CONTACT_PROPERTIES)}
    if after:
        params["after"] = after
    resp = requests.get(
        f"{HUBSPOT_BASE}/crm/v3/objects/contacts",
        headers=_headers(),
        params=params,
        timeout=30,
    )
    resp.raise_for_status()
    data = resp.json()
    return {
        "results": data.get("results", []),
        "after": data.get("paging", {}).get("next", {}).get("after"),
    }


def hubspot_get_all_contacts() -> List[Dict[str, Any]]:
    """Walk every contact page. Returns the full list of {id, properties} records."""
    contacts: List[Dict[str, Any]] = []
    after = None
    while True:
        page = hubspot_get_contacts_page(after=after)
        contacts.extend(page["results"])
        logger.info("Fetched %d HubSpot contacts so far", len(contacts))
        after = page["after"]
        if not after:
            return contacts
        time.sleep(RATE_LIMIT_DELAY)


def hubspot_get_contacts_since(since: datetime) -> List[Dict[str, Any]]:
    """Return contacts modified at or after `since` via the CRM search API.

    Args:
        since: Timezone-aware lower bound on lastmodifieddate.
    """
    contacts: List[Dict[str, Any]] = []
    after = None
    while True:
        body: Dict[str, Any] = {
            "filterGroups": [{
                "filters": [{
                    "propertyName": "lastmodifieddate",
                    "operator": "GTE",
                    "value": str(int(since.timestamp() * 1000)),
                }]
            }],
            "properties": CONTACT_PROPERTIES,
            "limit": PAGE_LIMIT,
        }
        if after:
            body["after"] = after
        resp = requests.post(
            f"{HUBSPOT_BASE}/crm/v3/objects/contacts/search",
            headers=_headers(),
            json=body,
            timeout=30,
        )
        resp.raise_for_status()
        data = resp.json()
        contacts.extend(data.get("results", []))
        after = data.get("paging", {}).get("next", {}).get("after")
        if not after:
            return contacts
        time.sleep(RATE_LIMIT_DELAY)


def hubspot_get_lists() -> List[Dict[str, Any]]:
    """Return the contact lists catalogue as [{id, name, size, dynamic}]."""
    resp = requests.get(
        f"{HUBSPOT_BASE}/contacts/v1/lists",
        headers=_headers(),
        params={"count": 250},
        timeout=30,
    )
    resp.raise_for_status()
    return [
        {
            "id": str(item.get("listId")),
            "name": item.get("name", ""),
            "size": item.get("metaData", {}).get("size", 0),
            "dynamic": bool(item.get("dynamic")),
        }
        for item in resp.json().get("lists", [])
    ]


def _flatten_legacy_contact(item: Dict[str, Any]) -> Dict[str, Any]:
    # v1 shape: {"vid": 1, "properties": {"firstname": {"value": "Jane"}}}
    props = {
        name: value.get("value") if isinstance(value, dict) else value
        for name, value in (item.get("properties") or {}).items()
    }
    return {"id": str(item.get("vid")), "properties": props}


def hubspot_get_list_contacts(list_id: str) -> List[Dict[str, Any]]:
    """Return every member of a contact list, as {id, properties} records.

    Args:
        list_id: HubSpot list id.
    """
    contacts: List[Dict[str, Any]] = []
    offset = None
    while True:
        params: Dict[str, Any] = {"count": PAGE_LIMIT, "property": CONTACT_PROPERTIES}
        if offset:
            params["vidOffset"] = offset
        resp = requests.get(
            f"{HUBSPOT_BASE}/contacts/v1/lists/{list_id}/contacts/all",
            headers=_headers(),
            params=params,
            timeout=30,
        )
        resp.raise_for_status()
        data = resp.json()
        contacts.extend(_flatten_legacy_contact(c) for c in data.get("contacts", []))
        if not data.get("has-more"):
            return contacts
        offset = data.get("vid-offset")
        time.sleep(RATE_LIMIT_DELAY)


def hubspot_test_connection() -> Dict[str, Any]:
    """Check the token against a one-record listing.

    Returns:
        Dict with 'connected' bool and, on failure, 'error'.
    """
    try:
        resp = requests.get(
            f"{HUBSPOT_BASE}/crm/v3/objects/contacts",
            headers=_headers(),
            params={"limit": 1},
            timeout=10,
        )
        resp.raise_for_status()
        return {"connected": True}
    except Exception as exc:
        return {"connected": False, "error": str(exc)}
