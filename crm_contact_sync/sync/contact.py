"""
Contact projections used for reconciliation.

Provides:
- NormalizedContact: canonical view of a provider contact
- LocalContact: a CRM contact as seen by the sync engine
- Conversion between Google People API person resources and the
  canonical field set
- Trimmed field comparison over the compared field set
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

# Fields compared between the two sides, in reporting order
COMPARED_FIELDS = (
    "name",
    "email",
    "phone",
    "address",
    "organization",
    "title",
    "notes",
)

_FRACTION_RE = re.compile(r"\.(\d+)")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an RFC 3339 timestamp from the People API.

    Handles the 'Z' suffix and fractional seconds of any precision.
    Naive values are taken to be UTC.

    Returns:
        Timezone-aware datetime, or None if the value is missing or invalid
    """
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not value or not isinstance(value, str):
        return None

    text = value.strip().replace("Z", "+00:00").replace("z", "+00:00")
    # fromisoformat only accepts 3 or 6 fractional digits on older Pythons
    text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _primary(items: list[dict[str, Any]]) -> dict[str, Any]:
    """Entry flagged primary in its metadata, else the first one, else {}."""
    for item in items:
        if item.get("metadata", {}).get("primary"):
            return item
    return items[0] if items else {}


def format_address(address: dict[str, Any]) -> str:
    """
    Render a People API address as one line.

    Uses formattedValue when present, otherwise
    "street, city, region postal, country" with empty parts dropped.
    """
    if not address:
        return ""
    formatted = (address.get("formattedValue") or "").strip()
    if formatted:
        return formatted

    region_postal = " ".join(
        p for p in (address.get("region"), address.get("postalCode")) if p
    )
    parts = [
        address.get("streetAddress"),
        address.get("city"),
        region_postal,
        address.get("country"),
    ]
    return ", ".join(p.strip() for p in parts if p and p.strip())


class _ComparableFields:
    """Accessors shared by both contact projections."""

    def field_value(self, name: str) -> str:
        return (getattr(self, name) or "").strip()

    def to_fields(self) -> dict[str, str]:
        """The compared field set as a plain dictionary."""
        return {name: getattr(self, name) or "" for name in COMPARED_FIELDS}

    @property
    def display_label(self) -> str:
        return self.field_value("name") or self.field_value("email") or "(no name)"


@dataclass
class NormalizedContact(_ComparableFields):
    """
    Canonical view of a provider contact.

    Attributes:
        remote_id: Provider identifier (Google resource name, e.g. "people/c123")
        version_tag: Provider version for optimistic locking (Google etag)
        updated_at: Provider's last modification time, if known
    """

    remote_id: str
    version_tag: Optional[str] = None
    name: str = ""
    email: str = ""
    phone: str = ""
    address: str = ""
    organization: str = ""
    title: str = ""
    notes: str = ""
    updated_at: Optional[datetime] = None

    @classmethod
    def from_google_person(cls, person: dict[str, Any]) -> "NormalizedContact":
        """
        Project a Google People API person resource.

        The primary (or first) entry of each multi-valued field is used.

        Example person structure::

            {
                'resourceName': 'people/c12345',
                'etag': '%EgUBAi43PRoEAQIFByIM',
                'names': [{'displayName': 'Jane Doe', 'metadata': {'primary': True}}],
                'emailAddresses': [{'value': 'jane@example.com'}],
                'phoneNumbers': [{'value': '+1 555 0100'}],
                'addresses': [{'formattedValue': '1 Main St, Springfield'}],
                'organizations': [{'name': 'Acme', 'title': 'Engineer'}],
                'biographies': [{'value': 'Met at conference'}],
                'metadata': {'sources': [{'updateTime': '2024-01-01T10:00:00Z'}]}
            }
        """
        name_entry = _primary(person.get("names", []))
        name = name_entry.get("displayName", "")
        if not name:
            name = " ".join(
                p
                for p in (name_entry.get("givenName"), name_entry.get("familyName"))
                if p
            )

        organization = _primary(person.get("organizations", []))
        biographies = person.get("biographies", [])
        sources = person.get("metadata", {}).get("sources", [])

        return cls(
            remote_id=person.get("resourceName", ""),
            version_tag=person.get("etag"),
            name=name,
            email=_primary(person.get("emailAddresses", [])).get("value", ""),
            phone=_primary(person.get("phoneNumbers", [])).get("value", ""),
            address=format_address(_primary(person.get("addresses", []))),
            organization=organization.get("name", ""),
            title=organization.get("title", ""),
            notes=biographies[0].get("value", "") if biographies else "",
            updated_at=parse_timestamp(sources[0].get("updateTime")) if sources else None,
        )


@dataclass
class LocalContact(_ComparableFields):
    """A CRM contact as seen by the sync engine."""

    local_id: str
    owner_id: str
    name: str = ""
    email: str = ""
    phone: str = ""
    address: str = ""
    organization: str = ""
    title: str = ""
    notes: str = ""
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "LocalContact":
        """Build from a crm_contact row dictionary."""
        return cls(
            local_id=row["id"],
            owner_id=row["owner_id"],
            updated_at=parse_timestamp(row.get("updated_at")),
            **{name: row.get(name) or "" for name in COMPARED_FIELDS},
        )


def to_google_person(fields: dict[str, Any]) -> dict[str, Any]:
    """
    Build a People API person body from the compared field set.

    Only non-empty fields are included; an empty field is sent as an
    omitted list, which clears it when named in updatePersonFields.
    """
    person: dict[str, Any] = {}
    primary = {"primary": True}

    if fields.get("name"):
        person["names"] = [{"unstructuredName": fields["name"], "metadata": primary}]
    if fields.get("email"):
        person["emailAddresses"] = [
            {"value": fields["email"], "type": "work", "metadata": primary}
        ]
    if fields.get("phone"):
        person["phoneNumbers"] = [
            {"value": fields["phone"], "type": "work", "metadata": primary}
        ]
    if fields.get("address"):
        person["addresses"] = [
            {"formattedValue": fields["address"], "type": "work", "metadata": primary}
        ]
    if fields.get("organization") or fields.get("title"):
        person["organizations"] = [
            {
                "name": fields.get("organization") or "",
                "title": fields.get("title") or "",
                "type": "work",
                "metadata": primary,
            }
        ]
    if fields.get("notes"):
        person["biographies"] = [
            {"value": fields["notes"], "contentType": "TEXT_PLAIN", "metadata": primary}
        ]

    return person


@dataclass
class FieldChange:
    """One compared field whose trimmed values differ."""

    field: str
    remote_value: str
    local_value: str

    def to_dict(self) -> dict[str, str]:
        return {
            "field": self.field,
            "remote_value": self.remote_value,
            "local_value": self.local_value,
        }


def compare_fields(
    remote: NormalizedContact, local: LocalContact
) -> list[FieldChange]:
    """
    Compare the two sides over COMPARED_FIELDS using trimmed equality.

    Returns:
        Differing fields in COMPARED_FIELDS order (empty when in sync)
    """
    changes = []
    for name in COMPARED_FIELDS:
        remote_value = remote.field_value(name)
        local_value = local.field_value(name)
        if remote_value != local_value:
            changes.append(FieldChange(name, remote_value, local_value))
    return changes
