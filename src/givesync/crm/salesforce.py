"""Salesforce Nonprofit Cloud adapter -- REST API v60 via SOQL queries.

Donors are Contacts followed by Household/Individual/Foundation Accounts,
donations are GiftTransactions and projects are Campaigns. All calls go to
the org's instance URL stored in the integration metadata ("instance_url").

Donor page tokens carry an entity discriminator:
- "contact:<locator>"  next Contact batch
- "account:"           first Account batch (Contact phase finished)
- "account:<locator>"  next Account batch

so the Account phase is always reached, however the Contact phase ends.
Other page tokens are bare query locators taken from nextRecordsUrl.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any, TypeVar
from urllib.parse import urlencode

import httpx
import structlog

from src.givesync.crm.adapter import (
    CombinedDonorFetcher,
    CRMAdapter,
    DonationUploader,
    DonorUploader,
    ProjectFetcher,
    ProjectUploader,
)
from src.givesync.crm.exceptions import CRMAPIError
from src.givesync.crm.field_mapping import (
    map_page,
    map_salesforce_account,
    map_salesforce_campaign,
    map_salesforce_contact,
    map_salesforce_gift_transaction,
    salesforce_campaign_payload,
    salesforce_contact_payload,
    salesforce_gift_payload,
)
from src.givesync.crm.http import raise_for_vendor_status, vendor_retry
from src.givesync.crm.schemas import (
    CanonicalDonation,
    CanonicalDonor,
    CanonicalProject,
    DonorWithDonations,
    OAuthTokens,
    PaginatedResponse,
    PaginationParams,
    SyncRecordError,
)

logger = structlog.get_logger(__name__)

R = TypeVar("R", CanonicalDonor, CanonicalDonation, CanonicalProject)

SALESFORCE_ID_PATTERN = re.compile(r"^[A-Za-z0-9]{15,18}$")
LOCATOR_PATTERN = re.compile(r"/query/(.+)$")

CONTACT_TOKEN_PREFIX = "contact:"
ACCOUNT_TOKEN_PREFIX = "account:"

# Salesforce accepts query batch sizes between 200 and 2000
MIN_BATCH_SIZE = 200
MAX_BATCH_SIZE = 2000

# Salesforce does not report access token lifetime
TOKEN_LIFETIME = timedelta(hours=2)

CONTACT_SOQL = (
    "SELECT Id, FirstName, LastName, Email, Phone, MobilePhone, "
    "MailingStreet, MailingCity, MailingState, MailingPostalCode, MailingCountry, "
    "AccountId, Account.Type, Title, Department, CreatedDate, LastModifiedDate "
    "FROM Contact WHERE IsDeleted = false ORDER BY LastModifiedDate DESC"
)

DONOR_ACCOUNT_TYPES = frozenset({"Household", "Individual", "Foundation"})

ACCOUNT_SOQL = (
    "SELECT Id, Name, Type, Phone, Website, "
    "BillingStreet, BillingCity, BillingState, BillingPostalCode, BillingCountry, "
    "CreatedDate, LastModifiedDate "
    "FROM Account WHERE IsDeleted = false "
    "AND (Type = 'Household' OR Type = 'Individual' OR Type = 'Foundation') "
    "ORDER BY LastModifiedDate DESC"
)

GIFT_TRANSACTION_FIELDS = (
    "Id, Name, DonorId, CurrentAmount, TransactionDate, CheckDate, CampaignId, CreatedDate"
)

GIFT_TRANSACTION_SOQL = (
    f"SELECT {GIFT_TRANSACTION_FIELDS} "
    "FROM GiftTransaction WHERE IsDeleted = false ORDER BY CreatedDate DESC"
)

CAMPAIGN_SOQL = (
    "SELECT Id, Name, Description, Status, Type, StartDate, EndDate, "
    "ExpectedRevenue, IsActive, ParentId, CreatedDate, LastModifiedDate "
    "FROM Campaign WHERE IsDeleted = false ORDER BY LastModifiedDate DESC"
)


def extract_query_locator(next_records_url: str | None) -> str | None:
    """Return the query locator from a nextRecordsUrl, or None."""
    if not next_records_url:
        return None
    match = LOCATOR_PATTERN.search(next_records_url)
    return match.group(1) if match else None


def validate_salesforce_id(value: str) -> str:
    """Return value if it is a 15/18 character Salesforce id, else raise ValueError."""
    if not SALESFORCE_ID_PATTERN.match(value or ""):
        raise ValueError(f"Invalid Salesforce id: {value!r}")
    return value


def _gift_donor(record: dict[str, Any]) -> str:
    return str(record.get("DonorId") or "")


class SalesforceAdapter(
    CRMAdapter,
    ProjectFetcher,
    CombinedDonorFetcher,
    DonorUploader,
    DonationUploader,
    ProjectUploader,
):
    """CRM adapter for Salesforce Nonprofit Cloud.

    Args:
        client_id: Connected app consumer key.
        client_secret: Connected app consumer secret.
        use_sandbox: Authenticate against test.salesforce.com.
        api_version: REST API version segment, e.g. "v60.0".
        default_currency: Currency for gifts without CurrencyIsoCode.
        transport: Optional httpx transport (tests inject httpx.MockTransport).
    """

    name = "salesforce"
    display_name = "Salesforce"

    TIMEOUT = 30.0

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        use_sandbox: bool = False,
        api_version: str = "v60.0",
        default_currency: str = "USD",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._auth_url = (
            "https://test.salesforce.com" if use_sandbox else "https://login.salesforce.com"
        )
        self._api_version = api_version
        self._default_currency = default_currency
        self._transport = transport

        if not (client_id and client_secret):
            logger.warning("salesforce.credentials_not_configured")

    def _client(self) -> httpx.AsyncClient:
        """Create a new httpx client for one request."""
        return httpx.AsyncClient(timeout=self.TIMEOUT, transport=self._transport)

    def _api_base(self, metadata: dict[str, Any] | None) -> str:
        instance_url = (metadata or {}).get("instance_url")
        if not instance_url:
            raise CRMAPIError(self.name, "Instance URL not found in metadata")
        return f"{instance_url.rstrip('/')}/services/data/{self._api_version}"

    @vendor_retry
    async def _request(
        self,
        method: str,
        url: str,
        access_token: str,
        action: str,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Send one authenticated REST call and return the decoded body ({} for 204)."""
        async with self._client() as client:
            response = await client.request(
                method,
                url,
                json=json,
                params=params,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Content-Type": "application/json",
                    **(headers or {}),
                },
            )
            raise_for_vendor_status(self.name, response, action)
            if response.status_code == 204 or not response.content:
                return {}
            return response.json()

    async def _query(
        self,
        access_token: str,
        metadata: dict[str, Any] | None,
        action: str,
        soql: str | None = None,
        locator: str | None = None,
        batch_size: int | None = None,
    ) -> dict[str, Any]:
        """Run a SOQL query, or continue one from its query locator."""
        base = self._api_base(metadata)
        if locator:
            return await self._request("GET", f"{base}/query/{locator}", access_token, action)

        headers = None
        if batch_size is not None:
            size = max(MIN_BATCH_SIZE, min(MAX_BATCH_SIZE, batch_size))
            headers = {"Sforce-Query-Options": f"batchSize={size}"}
        return await self._request(
            "GET", f"{base}/query", access_token, action, params={"q": soql or ""}, headers=headers
        )

    async def _query_all(
        self,
        access_token: str,
        metadata: dict[str, Any] | None,
        action: str,
        soql: str,
    ) -> list[dict[str, Any]]:
        """Run a SOQL query and follow locators until done."""
        records: list[dict[str, Any]] = []
        response = await self._query(access_token, metadata, action, soql=soql)
        while True:
            records.extend(response.get("records", []))
            locator = extract_query_locator(response.get("nextRecordsUrl"))
            if response.get("done", True) or not locator:
                return records
            response = await self._query(access_token, metadata, action, locator=locator)

    # ── Fetch ─────────────────────────────────────────────────────────────

    async def fetch_donors(
        self,
        access_token: str,
        params: PaginationParams,
        metadata: dict[str, Any] | None = None,
    ) -> PaginatedResponse[CanonicalDonor]:
        """Fetch one page of Contacts or Accounts depending on the page token."""
        token = params.page_token or ""

        if token.startswith(ACCOUNT_TOKEN_PREFIX):
            locator = token[len(ACCOUNT_TOKEN_PREFIX):] or None
            response = await self._query(
                access_token,
                metadata,
                "fetch accounts",
                soql=ACCOUNT_SOQL,
                locator=locator,
                batch_size=params.limit,
            )
            next_locator = extract_query_locator(response.get("nextRecordsUrl"))
            has_more = not response.get("done", True) and next_locator is not None
            donors, failures = map_page(
                response.get("records", []), map_salesforce_account, "Id"
            )
            return PaginatedResponse[CanonicalDonor](
                data=donors,
                failures=failures,
                has_more=has_more,
                next_page_token=f"{ACCOUNT_TOKEN_PREFIX}{next_locator}" if has_more else None,
                total_count=response.get("totalSize"),
            )

        locator = token[len(CONTACT_TOKEN_PREFIX):] if token.startswith(CONTACT_TOKEN_PREFIX) else token
        response = await self._query(
            access_token,
            metadata,
            "fetch contacts",
            soql=CONTACT_SOQL,
            locator=locator or None,
            batch_size=params.limit,
        )
        next_locator = extract_query_locator(response.get("nextRecordsUrl"))
        if not response.get("done", True) and next_locator is not None:
            next_token = f"{CONTACT_TOKEN_PREFIX}{next_locator}"
        else:
            next_token = ACCOUNT_TOKEN_PREFIX

        donors, failures = map_page(response.get("records", []), map_salesforce_contact, "Id")
        return PaginatedResponse[CanonicalDonor](
            data=donors,
            failures=failures,
            has_more=True,
            next_page_token=next_token,
            total_count=response.get("totalSize"),
        )

    async def fetch_donations(
        self,
        access_token: str,
        params: PaginationParams,
        metadata: dict[str, Any] | None = None,
    ) -> PaginatedResponse[CanonicalDonation]:
        """Fetch one page of GiftTransactions."""
        response = await self._query(
            access_token,
            metadata,
            "fetch gift transactions",
            soql=GIFT_TRANSACTION_SOQL,
            locator=params.page_token,
            batch_size=params.limit,
        )
        next_locator = extract_query_locator(response.get("nextRecordsUrl"))
        has_more = not response.get("done", True) and next_locator is not None
        donations, failures = map_page(
            response.get("records", []),
            lambda record: map_salesforce_gift_transaction(record, self._default_currency),
            "Id",
        )
        return PaginatedResponse[CanonicalDonation](
            data=donations,
            failures=failures,
            has_more=has_more,
            next_page_token=next_locator if has_more else None,
            total_count=response.get("totalSize"),
        )

    async def fetch_projects(
        self,
        access_token: str,
        params: PaginationParams,
        metadata: dict[str, Any] | None = None,
    ) -> PaginatedResponse[CanonicalProject]:
        """Fetch one page of Campaigns."""
        response = await self._query(
            access_token,
            metadata,
            "fetch campaigns",
            soql=CAMPAIGN_SOQL,
            locator=params.page_token,
            batch_size=params.limit,
        )
        next_locator = extract_query_locator(response.get("nextRecordsUrl"))
        has_more = not response.get("done", True) and next_locator is not None
        projects, failures = map_page(response.get("records", []), map_salesforce_campaign, "Id")
        return PaginatedResponse[CanonicalProject](
            data=projects,
            failures=failures,
            has_more=has_more,
            next_page_token=next_locator if has_more else None,
            total_count=response.get("totalSize"),
        )

    async def fetch_donors_with_donations(
        self,
        access_token: str,
        params: PaginationParams,
        metadata: dict[str, Any] | None = None,
    ) -> PaginatedResponse[DonorWithDonations]:
        """Fetch one donor page plus the GiftTransactions its donors own.

        GiftTransactions reference Accounts through DonorId. Every gift has a
        single owning donor across the whole run: the Account itself when it
        is a Household/Individual/Foundation account (synced as a donor in
        the Account phase), otherwise the earliest-created Contact of that
        Account. A page only carries the gifts whose owner is in the page.

        At most three batched queries per page: the donor page, the owning
        Contact of each non-donor Account, and one GiftTransaction IN query.
        """
        donors_page = await self.fetch_donors(access_token, params, metadata)

        page_ids = {donor.external_id for donor in donors_page.data}
        owner_by_account: dict[str, str] = {}
        contact_accounts: set[str] = set()
        for donor in donors_page.data:
            source = donor.metadata.get("source")
            account_id = donor.metadata.get("account_id")
            if source == "salesforce_account":
                owner_by_account[donor.external_id] = donor.external_id
            elif (
                source == "salesforce_contact"
                and account_id
                and SALESFORCE_ID_PATTERN.match(account_id)
                and donor.metadata.get("account_type") not in DONOR_ACCOUNT_TYPES
            ):
                contact_accounts.add(account_id)

        if contact_accounts:
            id_list = ",".join(f"'{account_id}'" for account_id in sorted(contact_accounts))
            contacts = await self._query_all(
                access_token,
                metadata,
                "fetch account contacts",
                f"SELECT Id, AccountId FROM Contact WHERE AccountId IN ({id_list}) "
                "AND IsDeleted = false ORDER BY CreatedDate ASC, Id ASC",
            )
            first_contact: dict[str, str] = {}
            for record in contacts:
                first_contact.setdefault(str(record.get("AccountId")), str(record.get("Id")))
            for account_id, contact_id in first_contact.items():
                if contact_id in page_ids:
                    owner_by_account[account_id] = contact_id

        donations_by_donor: dict[str, list[CanonicalDonation]] = {}
        donation_failures: list[SyncRecordError] = []
        account_ids = [
            account_id
            for account_id in owner_by_account
            if SALESFORCE_ID_PATTERN.match(account_id)
        ]
        if account_ids:
            id_list = ",".join(f"'{account_id}'" for account_id in account_ids)
            records = await self._query_all(
                access_token,
                metadata,
                "fetch gift transactions for donors",
                f"SELECT {GIFT_TRANSACTION_FIELDS} FROM GiftTransaction "
                f"WHERE DonorId IN ({id_list}) AND IsDeleted = false "
                "ORDER BY CreatedDate DESC",
            )
            owned = [
                record for record in records if _gift_donor(record) in owner_by_account
            ]
            donations, donation_failures = map_page(
                owned,
                lambda record: map_salesforce_gift_transaction(
                    record,
                    self._default_currency,
                    donor_external_id=owner_by_account[_gift_donor(record)],
                ),
                "Id",
            )
            for donation in donations:
                donations_by_donor.setdefault(donation.donor_external_id, []).append(donation)

        logger.info(
            "salesforce.donors_with_donations_fetched",
            donor_count=len(donors_page.data),
            account_count=len(account_ids),
            donation_count=sum(len(items) for items in donations_by_donor.values()),
        )

        return PaginatedResponse[DonorWithDonations](
            data=[
                DonorWithDonations(
                    **donor.model_dump(),
                    donations=donations_by_donor.get(donor.external_id, []),
                )
                for donor in donors_page.data
            ],
            has_more=donors_page.has_more,
            next_page_token=donors_page.next_page_token,
            total_count=donors_page.total_count,
            failures=donors_page.failures,
            donation_failures=donation_failures,
        )

    # ── Upload ────────────────────────────────────────────────────────────

    async def _upload(
        self,
        sobject: str,
        records: list[R],
        build_payload: Callable[[R], dict[str, Any]],
        access_token: str,
        metadata: dict[str, Any] | None,
    ) -> list[R]:
        """Create or update each record; skip (and log) the ones that fail.

        An update whose target no longer exists (404) is retried once as a
        create.
        """
        base = self._api_base(metadata)
        uploaded: list[R] = []

        for record in records:
            payload = build_payload(record)
            try:
                native_id = record.external_id
                if native_id:
                    validate_salesforce_id(native_id)
                    try:
                        await self._request(
                            "PATCH",
                            f"{base}/sobjects/{sobject}/{native_id}",
                            access_token,
                            f"update {sobject}",
                            json=payload,
                        )
                    except CRMAPIError as exc:
                        if exc.status_code != 404:
                            raise
                        logger.info(
                            "salesforce.upload_target_missing",
                            sobject=sobject,
                            external_id=native_id,
                        )
                        native_id = ""
                if not native_id:
                    created = await self._request(
                        "POST",
                        f"{base}/sobjects/{sobject}",
                        access_token,
                        f"create {sobject}",
                        json=payload,
                    )
                    native_id = str(created["id"])
            except (CRMAPIError, httpx.HTTPError, ValueError, KeyError) as exc:
                logger.warning(
                    "salesforce.upload_failed",
                    sobject=sobject,
                    external_id=record.external_id,
                    error=str(exc),
                )
                continue
            uploaded.append(record.model_copy(update={"external_id": native_id}))

        return uploaded

    async def upload_donors(
        self,
        access_token: str,
        donors: list[CanonicalDonor],
        metadata: dict[str, Any] | None = None,
    ) -> list[CanonicalDonor]:
        return await self._upload(
            "Contact", donors, salesforce_contact_payload, access_token, metadata
        )

    async def upload_donations(
        self,
        access_token: str,
        donations: list[CanonicalDonation],
        metadata: dict[str, Any] | None = None,
    ) -> list[CanonicalDonation]:
        return await self._upload(
            "GiftTransaction", donations, salesforce_gift_payload, access_token, metadata
        )

    async def upload_projects(
        self,
        access_token: str,
        projects: list[CanonicalProject],
        metadata: dict[str, Any] | None = None,
    ) -> list[CanonicalProject]:
        return await self._upload(
            "Campaign", projects, salesforce_campaign_payload, access_token, metadata
        )

    # ── OAuth ─────────────────────────────────────────────────────────────

    def get_authorization_url(self, state: str, redirect_uri: str) -> str:
        query = urlencode(
            {
                "response_type": "code",
                "client_id": self._client_id,
                "redirect_uri": redirect_uri,
                "state": state,
                "scope": "api refresh_token offline_access",
                "prompt": "login consent",
            }
        )
        return f"{self._auth_url}/services/oauth2/authorize?{query}"

    @vendor_retry
    async def _post_token(self, form: dict[str, str], action: str) -> dict[str, Any]:
        async with self._client() as client:
            response = await client.post(
                f"{self._auth_url}/services/oauth2/token",
                data={**form, "client_id": self._client_id, "client_secret": self._client_secret},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
            raise_for_vendor_status(self.name, response, action)
            return response.json()

    async def exchange_auth_code(
        self, code: str, redirect_uri: str, state: str | None = None
    ) -> OAuthTokens:
        data = await self._post_token(
            {"grant_type": "authorization_code", "code": code, "redirect_uri": redirect_uri},
            "exchange authorization code",
        )
        return OAuthTokens(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=datetime.now(timezone.utc) + TOKEN_LIFETIME,
            scope=data.get("scope"),
            token_type=data.get("token_type"),
            metadata={
                "instance_url": data.get("instance_url"),
                "id": data.get("id"),
                "issued_at": data.get("issued_at"),
            },
        )

    async def refresh_access_token(self, refresh_token: str) -> OAuthTokens:
        """Refresh the access token. Salesforce keeps the refresh token unchanged."""
        data = await self._post_token(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            "refresh access token",
        )
        metadata = {"instance_url": data["instance_url"]} if data.get("instance_url") else {}
        return OAuthTokens(
            access_token=data["access_token"],
            refresh_token=refresh_token,
            expires_at=datetime.now(timezone.utc) + TOKEN_LIFETIME,
            scope=data.get("scope"),
            token_type=data.get("token_type"),
            metadata=metadata,
        )

    async def validate_token(
        self, access_token: str, metadata: dict[str, Any] | None = None
    ) -> bool:
        try:
            await self._request(
                "GET", f"{self._api_base(metadata)}/limits", access_token, "validate token"
            )
        except (CRMAPIError, httpx.HTTPError):
            return False
        return True
