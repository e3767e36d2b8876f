"""Field mapping between vendor CRM payloads and canonical records.

Defines:
- Scoped external ids: scoped_external_id() / unscoped_external_id()
- Shared transforms: address formatting/parsing, minor-unit conversion,
  donation date priority, household name splitting, display names, truncation
- Blackbaud SKY API mappers: constituent -> donor, gift -> donation
- Salesforce mappers: Contact/Account -> donor, GiftTransaction -> donation,
  Campaign -> project, plus the reverse payload builders used by push-sync
- map_page(): per-record mapping of a vendor page, rejected records
  returned as SyncRecordError

Mappers are pure and deterministic. Absent optional strings map to None;
required name/email strings map to "" so repeated runs compare equal.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, TypeVar

import structlog

from src.givesync.crm.schemas import (
    Address,
    CanonicalDonation,
    CanonicalDonor,
    CanonicalProject,
    SyncRecordError,
)

logger = structlog.get_logger(__name__)

M = TypeVar("M", CanonicalDonor, CanonicalDonation, CanonicalProject)

EXTERNAL_ID_MAX_LENGTH = 255

# "John and Jane Smith Household", "Bob and Alice Jones Family"
HOUSEHOLD_PATTERN = re.compile(r"^(.+?)\s+and\s+(.+?)\s+(Household|Family)$", re.IGNORECASE)

ADDRESS_SEPARATOR = ", "


# ── Scoped External Ids ────────────────────────────────────────────────────


def scoped_external_id(provider: str, native_id: str) -> str:
    """Build the local join key "{provider}_{native_id}".

    Every lookup and every insert of a synced record goes through this
    function so two providers sharing a native id space never collide.
    """
    return truncate(f"{provider}_{native_id}", EXTERNAL_ID_MAX_LENGTH) or ""


def unscoped_external_id(provider: str, external_id: str | None) -> str:
    """Strip the provider scope from a local external id.

    Ids stored without the prefix (e.g. manual entry) are returned unchanged.
    """
    if not external_id:
        return ""
    prefix = f"{provider}_"
    if external_id.startswith(prefix):
        return external_id[len(prefix):]
    return external_id


# ── Shared Transforms ──────────────────────────────────────────────────────


def truncate(value: str | None, max_length: int | None) -> str | None:
    """Cut a string to max_length. None and unbounded columns pass through."""
    if value is None or max_length is None:
        return value
    return value[:max_length]


def clean(value: Any) -> str | None:
    """Normalize an optional vendor string: strip whitespace, empty -> None."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def format_address(address: Address | None) -> str | None:
    """Join address components into a single comma-separated display string.

    Known limitation: a component that itself contains ", " will not survive
    parse_address() unchanged.
    """
    if address is None:
        return None
    parts = [
        address.street,
        address.city,
        address.state,
        address.postal_code,
        address.country,
    ]
    joined = ADDRESS_SEPARATOR.join(part for part in parts if part)
    return joined or None


def parse_address(value: str | None) -> Address | None:
    """Split a comma-joined address string back into positional components.

    Lossy: the split is positional, so an address that skipped a component
    when it was formatted (e.g. no state) shifts every later part by one.
    """
    if not value:
        return None
    parts = value.split(ADDRESS_SEPARATOR)
    parts += [""] * (5 - len(parts))
    return Address(
        street=parts[0] or None,
        city=parts[1] or None,
        state=parts[2] or None,
        postal_code=parts[3] or None,
        country=parts[4] or None,
    )


def to_minor_units(amount: Any) -> int:
    """Convert a major-unit amount (dollars) to integer minor units (cents).

    Rounds half away from zero to the nearest cent; missing amounts become 0.
    """
    if amount is None or amount == "":
        return 0
    cents = (Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(cents)


def from_minor_units(amount: int | None) -> float | None:
    """Convert integer minor units back to a major-unit float for vendor payloads."""
    if amount is None:
        return None
    return float(Decimal(amount) / 100)


def parse_vendor_datetime(value: Any) -> datetime | None:
    """Parse an ISO-8601 date or datetime string into an aware UTC datetime.

    Accepts "2024-03-01", "2024-03-01T10:00:00Z" and Salesforce's
    "2024-03-01T10:00:00.000+0000" form. Naive values are assumed UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        # Salesforce omits the colon in the offset (+0000)
        text = re.sub(r"([+-]\d{2})(\d{2})$", r"\1:\2", text)
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def resolve_donation_date(*candidates: Any) -> datetime | None:
    """Return the first candidate date that parses, in priority order."""
    for candidate in candidates:
        parsed = parse_vendor_datetime(candidate)
        if parsed is not None:
            return parsed
    return None


def derive_display_name(
    display_name: str | None, first_name: str | None, last_name: str | None
) -> str:
    """Prefer an explicit display name, otherwise "first last"."""
    if display_name and display_name.strip():
        return display_name.strip()
    return " ".join(part for part in (first_name, last_name) if part).strip()


def split_household_name(name: str) -> dict[str, Any]:
    """Detect "A and B Household" names and split them into his/her pairs.

    Returns donor name fields. When the pattern does not match, the whole
    string is both first name and display name of a single, non-couple donor.
    """
    name = name.strip()
    match = HOUSEHOLD_PATTERN.match(name)
    if match is None:
        return {
            "first_name": name,
            "last_name": "",
            "display_name": name,
            "is_couple": False,
        }

    his_part, her_part = match.group(1).strip(), match.group(2).strip()
    her_tokens = her_part.split()
    last_name = her_tokens[-1] if len(her_tokens) > 1 else ""
    her_first = " ".join(her_tokens[:-1]) if len(her_tokens) > 1 else her_part
    return {
        "first_name": name,
        "last_name": "",
        "display_name": name,
        "is_couple": True,
        "his_first_name": his_part,
        "his_last_name": last_name or None,
        "her_first_name": her_first,
        "her_last_name": last_name or None,
    }


# ── Page Mapping ───────────────────────────────────────────────────────────


def map_page(
    records: list[dict[str, Any]],
    mapper: Callable[[dict[str, Any]], M],
    id_field: str,
) -> tuple[list[M], list[SyncRecordError]]:
    """Map a page of vendor records one at a time.

    A record the mapper rejects (missing id, unusable date, bad amount,
    failed validation) is returned as a SyncRecordError instead of
    aborting the page.
    """
    mapped: list[M] = []
    failures: list[SyncRecordError] = []
    for record in records:
        try:
            mapped.append(mapper(record))
        except (KeyError, TypeError, ValueError, ArithmeticError) as exc:
            native_id = str(record.get(id_field) or "<missing id>")
            message = str(exc) or exc.__class__.__name__
            if isinstance(exc, KeyError):
                message = f"Missing field {exc}"
            failures.append(SyncRecordError(external_id=native_id, error_message=message))
            logger.warning("field_mapping.record_rejected", external_id=native_id, error=message)
    return mapped, failures


# ── Blackbaud SKY API ──────────────────────────────────────────────────────


def map_blackbaud_constituent(constituent: dict[str, Any]) -> CanonicalDonor:
    """Map a SKY API constituent to a canonical donor.

    A constituent with a spouse becomes a couple: the constituent is "his"
    side, the spouse "her" side, and the display name joins both.
    """
    name = constituent.get("name") or {}
    spouse = constituent.get("spouse") or {}
    email = (constituent.get("email") or {}).get("address")
    phone = (constituent.get("phone") or {}).get("number")

    first_name = clean(name.get("first")) or ""
    last_name = clean(name.get("last")) or ""
    spouse_first = clean(spouse.get("first_name"))
    spouse_last = clean(spouse.get("last_name"))
    is_couple = bool(spouse_first or spouse_last)

    display_name: str | None = None
    if name.get("title") or name.get("suffix"):
        display_name = " ".join(
            part
            for part in (
                clean(name.get("title")),
                first_name,
                last_name,
                clean(name.get("suffix")),
            )
            if part
        )

    donor_fields: dict[str, Any] = {}
    if is_couple:
        primary = " ".join(part for part in (first_name, last_name) if part)
        partner = " ".join(part for part in (spouse_first, spouse_last) if part)
        if primary and partner:
            display_name = f"{primary} and {partner}"
        donor_fields = {
            "his_first_name": first_name or None,
            "his_last_name": last_name or None,
            "her_first_name": spouse_first,
            "her_last_name": spouse_last,
        }

    address = None
    raw_address = constituent.get("address")
    if raw_address:
        street = " ".join(
            part
            for part in (clean(raw_address.get("street1")), clean(raw_address.get("street2")))
            if part
        )
        address = Address(
            street=street or clean(raw_address.get("address_lines")),
            city=clean(raw_address.get("city")),
            state=clean(raw_address.get("state")),
            postal_code=clean(raw_address.get("postal_code")),
            country=clean(raw_address.get("country")),
        )

    return CanonicalDonor(
        external_id=str(constituent["id"]),
        first_name=first_name,
        last_name=last_name,
        display_name=derive_display_name(display_name, first_name, last_name) or None,
        email=clean(email) or "",
        phone=clean(phone),
        address=address,
        is_couple=is_couple,
        metadata={
            "source": "blackbaud_constituent",
            "type": constituent.get("type"),
            "lookup_id": constituent.get("lookup_id"),
            "inactive": constituent.get("inactive"),
            "date_added": constituent.get("date_added"),
            "date_modified": constituent.get("date_modified"),
        },
        **donor_fields,
    )


def map_blackbaud_gift(gift: dict[str, Any], default_currency: str = "USD") -> CanonicalDonation:
    """Map a SKY API gift to a canonical donation.

    SKY API gifts carry no currency, so the configured default is used.
    Designation prefers the designation name, then the fund description.
    """
    amount = (gift.get("amount") or {}).get("value")
    designation = (gift.get("designation") or {}).get("name") or (
        gift.get("fund") or {}
    ).get("description")

    date = resolve_donation_date(gift.get("date"), gift.get("date_added"))
    if date is None:
        raise ValueError(f"Gift {gift.get('id')} has no usable date")

    return CanonicalDonation(
        external_id=str(gift["id"]),
        donor_external_id=str(gift.get("constituent_id") or ""),
        amount=to_minor_units(amount),
        currency=default_currency,
        date=date,
        designation=clean(designation),
        metadata={
            "source": "blackbaud_gift",
            "type": gift.get("type"),
            "gift_status": gift.get("gift_status"),
            "is_anonymous": gift.get("is_anonymous"),
            "date_added": gift.get("date_added"),
            "date_modified": gift.get("date_modified"),
        },
    )


# ── Salesforce ─────────────────────────────────────────────────────────────


def map_salesforce_contact(contact: dict[str, Any]) -> CanonicalDonor:
    """Map a Salesforce Contact (individual donor) to a canonical donor."""
    first_name = clean(contact.get("FirstName")) or ""
    last_name = clean(contact.get("LastName")) or ""
    return CanonicalDonor(
        external_id=str(contact["Id"]),
        first_name=first_name,
        last_name=last_name,
        display_name=derive_display_name(None, first_name, last_name) or None,
        email=clean(contact.get("Email")) or "",
        phone=clean(contact.get("Phone")) or clean(contact.get("MobilePhone")),
        address=Address(
            street=clean(contact.get("MailingStreet")),
            city=clean(contact.get("MailingCity")),
            state=clean(contact.get("MailingState")),
            postal_code=clean(contact.get("MailingPostalCode")),
            country=clean(contact.get("MailingCountry")),
        ),
        is_couple=False,
        metadata={
            "source": "salesforce_contact",
            "account_id": contact.get("AccountId"),
            "account_type": (contact.get("Account") or {}).get("Type"),
            "title": contact.get("Title"),
            "department": contact.get("Department"),
            "created_date": contact.get("CreatedDate"),
            "last_modified_date": contact.get("LastModifiedDate"),
        },
    )


def map_salesforce_account(account: dict[str, Any]) -> CanonicalDonor:
    """Map a Salesforce household/organization Account to a canonical donor.

    Accounts have no email of their own.
    """
    name_fields = split_household_name(clean(account.get("Name")) or "")
    return CanonicalDonor(
        external_id=str(account["Id"]),
        email="",
        phone=clean(account.get("Phone")),
        address=Address(
            street=clean(account.get("BillingStreet")),
            city=clean(account.get("BillingCity")),
            state=clean(account.get("BillingState")),
            postal_code=clean(account.get("BillingPostalCode")),
            country=clean(account.get("BillingCountry")),
        ),
        metadata={
            "source": "salesforce_account",
            "type": account.get("Type"),
            "website": account.get("Website"),
            "created_date": account.get("CreatedDate"),
            "last_modified_date": account.get("LastModifiedDate"),
        },
        **name_fields,
    )


def map_salesforce_gift_transaction(
    gift: dict[str, Any],
    default_currency: str = "USD",
    donor_external_id: str | None = None,
) -> CanonicalDonation:
    """Map a Nonprofit Cloud GiftTransaction to a canonical donation.

    Date priority: TransactionDate > CheckDate > CreatedDate.

    Args:
        gift: GiftTransaction record.
        default_currency: Currency used when the record has no CurrencyIsoCode.
        donor_external_id: Override for the donor reference (combined mode
            attaches a gift to the donor it was fetched with).
    """
    date = resolve_donation_date(
        gift.get("TransactionDate"), gift.get("CheckDate"), gift.get("CreatedDate")
    )
    if date is None:
        raise ValueError(f"GiftTransaction {gift.get('Id')} has no usable date")

    amount = gift.get("CurrentAmount")
    if amount is None:
        amount = gift.get("Amount")

    return CanonicalDonation(
        external_id=str(gift["Id"]),
        donor_external_id=donor_external_id or str(gift.get("DonorId") or ""),
        amount=to_minor_units(amount),
        currency=clean(gift.get("CurrencyIsoCode")) or default_currency,
        date=date,
        designation=clean(gift.get("Name")),
        campaign_external_id=clean(gift.get("CampaignId")),
        metadata={
            "source": "salesforce_gift_transaction",
            "donor_id": gift.get("DonorId"),
            "created_date": gift.get("CreatedDate"),
        },
    )


def map_salesforce_campaign(campaign: dict[str, Any]) -> CanonicalProject:
    """Map a Salesforce Campaign to a canonical project."""
    expected_revenue = campaign.get("ExpectedRevenue")
    campaign_type = clean(campaign.get("Type"))
    return CanonicalProject(
        external_id=str(campaign["Id"]),
        name=clean(campaign.get("Name")) or "Untitled Campaign",
        description=clean(campaign.get("Description")),
        active=bool(campaign.get("IsActive", True)),
        goal=to_minor_units(expected_revenue) if expected_revenue is not None else None,
        tags=[campaign_type] if campaign_type else None,
        metadata={
            "source": "salesforce_campaign",
            "status": campaign.get("Status"),
            "start_date": campaign.get("StartDate"),
            "end_date": campaign.get("EndDate"),
            "parent_id": campaign.get("ParentId"),
        },
    )


def salesforce_contact_payload(donor: CanonicalDonor) -> dict[str, Any]:
    """Build the Contact sObject body for pushing a donor to Salesforce."""
    address = donor.address or Address()
    payload = {
        "FirstName": donor.first_name or None,
        "LastName": donor.last_name or donor.display_name or "Unknown",
        "Email": donor.email or None,
        "Phone": donor.phone,
        "MailingStreet": address.street,
        "MailingCity": address.city,
        "MailingState": address.state,
        "MailingPostalCode": address.postal_code,
        "MailingCountry": address.country,
    }
    return {key: value for key, value in payload.items() if value is not None}


def salesforce_gift_payload(donation: CanonicalDonation) -> dict[str, Any]:
    """Build the GiftTransaction sObject body for pushing a donation."""
    payload = {
        "Name": donation.designation or "Donation",
        "DonorId": donation.donor_external_id,
        "OriginalAmount": from_minor_units(donation.amount),
        "TransactionDate": parse_vendor_datetime(donation.date).isoformat(),
        "Status": "Paid",
        "CampaignId": donation.campaign_external_id,
    }
    return {key: value for key, value in payload.items() if value is not None}


def salesforce_campaign_payload(project: CanonicalProject) -> dict[str, Any]:
    """Build the Campaign sObject body for pushing a project."""
    payload = {
        "Name": project.name,
        "Description": project.description,
        "IsActive": project.active,
        "ExpectedRevenue": from_minor_units(project.goal),
        "Type": project.tags[0] if project.tags else None,
    }
    return {key: value for key, value in payload.items() if value is not None}
