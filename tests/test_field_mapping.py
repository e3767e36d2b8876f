"""Unit tests for field mapping between vendor payloads and canonical records.

Pure functions only -- no database, no HTTP.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from conftest import make_donor

from src.givesync.crm.field_mapping import (
    EXTERNAL_ID_MAX_LENGTH,
    derive_display_name,
    format_address,
    from_minor_units,
    map_blackbaud_constituent,
    map_blackbaud_gift,
    map_page,
    map_salesforce_account,
    map_salesforce_campaign,
    map_salesforce_contact,
    map_salesforce_gift_transaction,
    parse_address,
    parse_vendor_datetime,
    salesforce_contact_payload,
    salesforce_gift_payload,
    scoped_external_id,
    split_household_name,
    to_minor_units,
    unscoped_external_id,
)
from src.givesync.crm.schemas import Address, CanonicalDonation


# ── Scoped External Ids ───────────────────────────────────────────────────


class TestScopedExternalId:
    def test_prefixes_provider(self):
        assert scoped_external_id("salesforce", "003ABC") == "salesforce_003ABC"

    def test_same_native_id_differs_across_providers(self):
        assert scoped_external_id("blackbaud", "42") != scoped_external_id("salesforce", "42")

    def test_truncated_to_column_length(self):
        scoped = scoped_external_id("salesforce", "x" * 400)
        assert len(scoped) == EXTERNAL_ID_MAX_LENGTH

    def test_unscoped_strips_own_prefix(self):
        assert unscoped_external_id("salesforce", "salesforce_003ABC") == "003ABC"

    def test_unscoped_leaves_other_ids_alone(self):
        """Manually entered ids without the prefix come back unchanged."""
        assert unscoped_external_id("salesforce", "manual-7") == "manual-7"
        assert unscoped_external_id("salesforce", None) == ""


# ── Shared Transforms ─────────────────────────────────────────────────────


class TestAmountsAndDates:
    @pytest.mark.parametrize(
        ("amount", "expected"),
        [(25, 2500), ("10.005", 1001), (0.1, 10), (None, 0), ("", 0), (99.99, 9999)],
    )
    def test_to_minor_units(self, amount, expected):
        assert to_minor_units(amount) == expected

    def test_from_minor_units(self):
        assert from_minor_units(12345) == 123.45
        assert from_minor_units(None) is None

    def test_parses_salesforce_offset_without_colon(self):
        parsed = parse_vendor_datetime("2024-03-01T10:00:00.000+0000")
        assert parsed == datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)

    def test_parses_zulu_and_plain_dates(self):
        assert parse_vendor_datetime("2024-03-01T10:00:00Z") == datetime(
            2024, 3, 1, 10, tzinfo=timezone.utc
        )
        assert parse_vendor_datetime("2024-03-01") == datetime(2024, 3, 1, tzinfo=timezone.utc)

    def test_converts_offsets_to_utc(self):
        parsed = parse_vendor_datetime("2024-03-01T10:00:00-05:00")
        assert parsed == datetime(2024, 3, 1, 15, tzinfo=timezone.utc)

    def test_missing_date_is_none(self):
        assert parse_vendor_datetime(None) is None
        assert parse_vendor_datetime("") is None


class TestAddresses:
    def test_format_skips_missing_parts(self):
        address = Address(street="1 Main St", city="Springfield", postal_code="62701")
        assert format_address(address) == "1 Main St, Springfield, 62701"

    def test_format_empty_is_none(self):
        assert format_address(Address()) is None
        assert format_address(None) is None

    def test_parse_full_address(self):
        parsed = parse_address("1 Main St, Springfield, IL, 62701, US")
        assert parsed == Address(
            street="1 Main St", city="Springfield", state="IL", postal_code="62701", country="US"
        )

    def test_parse_is_positional(self):
        """A skipped component shifts later parts; the string form is lossy."""
        parsed = parse_address("1 Main St, Springfield, 62701")
        assert parsed.state == "62701"
        assert parsed.postal_code is None


class TestNames:
    def test_household_couple(self):
        fields = split_household_name("John and Jane Smith Household")
        assert fields["is_couple"] is True
        assert fields["his_first_name"] == "John"
        assert fields["her_first_name"] == "Jane"
        assert fields["his_last_name"] == "Smith"
        assert fields["her_last_name"] == "Smith"
        assert fields["display_name"] == "John and Jane Smith Household"

    def test_family_suffix_is_case_insensitive(self):
        fields = split_household_name("Bob and Alice Jones family")
        assert fields["is_couple"] is True
        assert fields["her_last_name"] == "Jones"

    def test_non_household_name(self):
        fields = split_household_name("Acme Foundation")
        assert fields == {
            "first_name": "Acme Foundation",
            "last_name": "",
            "display_name": "Acme Foundation",
            "is_couple": False,
        }

    def test_display_name_fallback(self):
        assert derive_display_name(None, "Ada", "Lovelace") == "Ada Lovelace"
        assert derive_display_name("  Dr. Ada  ", "Ada", "Lovelace") == "Dr. Ada"
        assert derive_display_name(None, None, None) == ""


# ── Blackbaud ─────────────────────────────────────────────────────────────


class TestBlackbaudMapping:
    def test_constituent_with_spouse_is_couple(self):
        donor = map_blackbaud_constituent(
            {
                "id": "280",
                "type": "Individual",
                "name": {"first": "Robert", "last": "Hernandez"},
                "spouse": {"first_name": "Maria", "last_name": "Hernandez"},
                "email": {"address": "robert@example.org"},
                "phone": {"number": "555-0100"},
                "address": {
                    "street1": "10 Elm St",
                    "street2": "Apt 4",
                    "city": "Charleston",
                    "state": "SC",
                    "postal_code": "29401",
                    "country": "United States",
                },
            }
        )
        assert donor.external_id == "280"
        assert donor.is_couple is True
        assert donor.display_name == "Robert Hernandez and Maria Hernandez"
        assert donor.his_first_name == "Robert"
        assert donor.her_first_name == "Maria"
        assert donor.email == "robert@example.org"
        assert donor.address.street == "10 Elm St Apt 4"
        assert donor.address.postal_code == "29401"
        assert donor.metadata["source"] == "blackbaud_constituent"

    def test_constituent_without_optional_fields(self):
        donor = map_blackbaud_constituent({"id": 7, "name": {"first": "Sam", "last": "Lee"}})
        assert donor.external_id == "7"
        assert donor.email == ""
        assert donor.phone is None
        assert donor.address is None
        assert donor.is_couple is False
        assert donor.display_name == "Sam Lee"

    def test_gift_maps_amount_and_designation(self):
        donation = map_blackbaud_gift(
            {
                "id": "g-1",
                "constituent_id": "280",
                "amount": {"value": 125.5},
                "date": "2024-05-02T00:00:00",
                "fund": {"description": "Capital Campaign"},
            },
            default_currency="CAD",
        )
        assert donation.amount == 12550
        assert donation.currency == "CAD"
        assert donation.donor_external_id == "280"
        assert donation.designation == "Capital Campaign"
        assert donation.date == datetime(2024, 5, 2, tzinfo=timezone.utc)

    def test_page_with_undated_gift_keeps_the_rest(self):
        gifts = [
            {"id": "g-1", "amount": {"value": 5}, "date": "2024-05-01"},
            {"id": "g-2", "amount": {"value": 5}},
            {"id": "g-3", "amount": {"value": "not a number"}, "date": "2024-05-01"},
        ]

        donations, failures = map_page(gifts, map_blackbaud_gift, "id")

        assert [donation.external_id for donation in donations] == ["g-1"]
        assert [failure.external_id for failure in failures] == ["g-2", "g-3"]
        assert "no usable date" in failures[0].error_message

    def test_page_record_without_id(self):
        donors, failures = map_page([{"name": {"last": "Nobody"}}], map_blackbaud_constituent, "id")

        assert donors == []
        assert failures[0].external_id == "<missing id>"
        assert "id" in failures[0].error_message


# ── Salesforce ────────────────────────────────────────────────────────────


class TestSalesforceMapping:
    def test_contact(self):
        donor = map_salesforce_contact(
            {
                "Id": "0035g00000AAAAAAA1",
                "FirstName": "Grace",
                "LastName": "Hopper",
                "Email": "grace@example.org",
                "MobilePhone": "555-0199",
                "MailingCity": "Arlington",
                "AccountId": "0015g00000BBBBBBB1",
                "Account": {"Type": "Organization"},
            }
        )
        assert donor.display_name == "Grace Hopper"
        assert donor.phone == "555-0199"
        assert donor.address.city == "Arlington"
        assert donor.metadata["account_id"] == "0015g00000BBBBBBB1"
        assert donor.metadata["account_type"] == "Organization"

    def test_household_account(self):
        donor = map_salesforce_account(
            {"Id": "0015g00000BBBBBBB2", "Name": "John and Jane Smith Household", "Type": "Household"}
        )
        assert donor.is_couple is True
        assert donor.email == ""
        assert donor.first_name == "John and Jane Smith Household"
        assert donor.metadata["source"] == "salesforce_account"

    def test_gift_transaction_date_priority(self):
        gift = {
            "Id": "6AB5g00000CCCCCCC1",
            "DonorId": "0015g00000BBBBBBB2",
            "CurrentAmount": 50,
            "CheckDate": "2024-02-01",
            "CreatedDate": "2024-01-01T00:00:00.000+0000",
        }
        assert map_salesforce_gift_transaction(gift).date == datetime(
            2024, 2, 1, tzinfo=timezone.utc
        )
        gift["TransactionDate"] = "2024-03-01"
        assert map_salesforce_gift_transaction(gift).date == datetime(
            2024, 3, 1, tzinfo=timezone.utc
        )

    def test_gift_transaction_donor_override(self):
        donation = map_salesforce_gift_transaction(
            {"Id": "g1", "DonorId": "acct", "Amount": "12.34", "CreatedDate": "2024-01-01"},
            donor_external_id="contact-1",
        )
        assert donation.donor_external_id == "contact-1"
        assert donation.amount == 1234

    def test_campaign(self):
        project = map_salesforce_campaign(
            {"Id": "7015g00000DDDDDDD1", "Name": "Spring Gala", "ExpectedRevenue": 5000, "Type": "Event"}
        )
        assert project.goal == 500000
        assert project.tags == ["Event"]
        assert project.active is True


class TestSalesforcePayloads:
    def test_contact_payload_drops_missing_values(self):
        payload = salesforce_contact_payload(make_donor("x", phone=None, address=None))
        assert payload["LastName"] == "Donor x"
        assert "Phone" not in payload
        assert "MailingCity" not in payload

    def test_gift_payload_converts_amount(self):
        payload = salesforce_gift_payload(
            CanonicalDonation(
                external_id="",
                donor_external_id="0015g00000BBBBBBB2",
                amount=2599,
                date=datetime(2024, 3, 1, tzinfo=timezone.utc),
            )
        )
        assert payload["OriginalAmount"] == 25.99
        assert payload["Name"] == "Donation"
        assert payload["TransactionDate"].startswith("2024-03-01")
        assert "CampaignId" not in payload
