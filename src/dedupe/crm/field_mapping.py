"""Property mappings between the external CRM and local records.

Defines:
- CRM_PROPERTY_MAP: record comparison field -> CRM property name.
- FETCH_PROPERTIES: properties requested on every list-page call.
- from_crm_object(): converts one CRM object into RecordData.
- to_crm_properties(): converts staged field values into a patch payload,
  splitting a comma-separated email into primary and additional emails.
- property_group(): display group of a CRM property definition.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from src.dedupe.records.schemas import RecordData

# ── Property Mappings ──────────────────────────────────────────────────────

CRM_PROPERTY_MAP: dict[str, str] = {
    "email": "email",
    "first_name": "firstname",
    "last_name": "lastname",
    "phone": "phone",
    "organization": "company",
}

# CRM property name -> record comparison field
FIELD_ALIASES: dict[str, str] = {v: k for k, v in CRM_PROPERTY_MAP.items()}

CREATED_PROPERTY = "createdate"
MODIFIED_PROPERTY = "lastmodifieddate"
OBJECT_ID_PROPERTY = "hs_object_id"
ADDITIONAL_EMAILS_PROPERTY = "hs_additional_emails"

FETCH_PROPERTIES: list[str] = [
    *CRM_PROPERTY_MAP.values(),
    CREATED_PROPERTY,
    MODIFIED_PROPERTY,
    OBJECT_ID_PROPERTY,
]

_NON_BAG_PROPERTIES = frozenset(FETCH_PROPERTIES)


def _parse_timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def from_crm_object(obj: dict[str, Any]) -> RecordData:
    """Convert a CRM list-page result into RecordData.

    Properties outside the fixed comparison set go to the property bag as
    strings; null properties are dropped.
    """
    props: dict[str, Any] = obj.get("properties") or {}
    fields = {field: _clean(props.get(prop)) for field, prop in CRM_PROPERTY_MAP.items()}
    bag = {
        key: str(value)
        for key, value in props.items()
        if key not in _NON_BAG_PROPERTIES and value is not None
    }
    return RecordData(
        external_id=str(obj.get("id") or props.get(OBJECT_ID_PROPERTY)),
        properties=bag,
        created_at=_parse_timestamp(props.get(CREATED_PROPERTY) or obj.get("createdAt")),
        last_modified=_parse_timestamp(
            props.get(MODIFIED_PROPERTY) or obj.get("updatedAt")
        ),
        **fields,
    )


def split_emails(value: str | None) -> list[str]:
    """Split a comma-separated email field into its non-empty parts."""
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def to_crm_properties(field_values: dict[str, Any]) -> dict[str, str]:
    """Convert staged field values into a CRM patch payload.

    Keys may be record field names (first_name) or CRM property names
    (firstname); both end up as lowercase CRM property names. A
    comma-separated email becomes ``email`` plus ``hs_additional_emails``
    (semicolon-separated). None clears the property.
    """
    payload: dict[str, str] = {}
    for key, value in field_values.items():
        prop = CRM_PROPERTY_MAP.get(key, key).lower()
        if prop == "email":
            emails = split_emails(value)
            payload["email"] = emails[0] if emails else ""
            if len(emails) > 1:
                payload[ADDITIONAL_EMAILS_PROPERTY] = ";".join(emails[1:])
            continue
        payload[prop] = "" if value is None else str(value)
    return payload


_CONTACT_PROPERTIES = frozenset({"email", "firstname", "lastname", "phone"})
_COMPANY_PROPERTIES = frozenset({"company", "jobtitle", "industry"})


def property_group(name: str) -> str:
    """Display group for a CRM property name."""
    if name in _CONTACT_PROPERTIES:
        return "Contact Information"
    if name in _COMPANY_PROPERTIES:
        return "Company Information"
    if name.startswith("hs_"):
        return "HubSpot System"
    return "Custom Fields"
