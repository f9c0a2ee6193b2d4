"""
Client for the external accounting ledger.

Owns OAuth token refresh and maps every failure onto the
ExternalServiceError family:

- LedgerAuthExpiredError: refresh token rejected; a human must reconnect
- LedgerTransientError: network errors, 429 and 5xx
- LedgerRejectedError: any other 4xx

An access token rejected with 401 is refreshed exactly once and the request
retried; a second 401 is fatal.
"""

import asyncio
import logging
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, AsyncIterator, Optional, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledgersync.config import Settings, settings as default_settings
from ledgersync.errors import (
    LedgerAuthExpiredError,
    LedgerRejectedError,
    LedgerTransientError,
)
from ledgersync.models import SystemSetting
from ledgersync.utils.dates import ledger_date_filter, normalize_ledger_date, utcnow

logger = logging.getLogger(__name__)

TENANT_HEADER = "xero-tenant-id"
SALES_INVOICE = "ACCREC"
TOKENS_SETTING_KEY = "ledger_tokens"


# ── Wire models ────────────────────────────────────────────


class _LedgerModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class LedgerContact(_LedgerModel):
    contact_id: Optional[str] = Field(None, alias="ContactID")
    name: Optional[str] = Field(None, alias="Name")
    email_address: Optional[str] = Field(None, alias="EmailAddress")


class LedgerLineItem(_LedgerModel):
    description: str = Field(alias="Description")
    quantity: Decimal = Field(Decimal("1"), alias="Quantity")
    unit_amount: Decimal = Field(alias="UnitAmount")
    account_code: Optional[str] = Field(None, alias="AccountCode")
    tax_type: Optional[str] = Field(None, alias="TaxType")


class LedgerInvoice(_LedgerModel):
    invoice_id: str = Field(alias="InvoiceID")
    invoice_number: Optional[str] = Field(None, alias="InvoiceNumber")
    type: Optional[str] = Field(None, alias="Type")
    status: str = Field(alias="Status")
    reference: Optional[str] = Field(None, alias="Reference")
    contact: Optional[LedgerContact] = Field(None, alias="Contact")
    date: Optional[Any] = Field(None, alias="Date")
    due_date: Optional[Any] = Field(None, alias="DueDate")
    fully_paid_on_date: Optional[Any] = Field(None, alias="FullyPaidOnDate")
    sub_total: Optional[Decimal] = Field(None, alias="SubTotal")
    total_tax: Optional[Decimal] = Field(None, alias="TotalTax")
    total: Optional[Decimal] = Field(None, alias="Total")
    amount_due: Optional[Decimal] = Field(None, alias="AmountDue")
    amount_paid: Optional[Decimal] = Field(None, alias="AmountPaid")
    currency_code: Optional[str] = Field(None, alias="CurrencyCode")
    branding_theme_id: Optional[str] = Field(None, alias="BrandingThemeID")
    line_items: list[LedgerLineItem] = Field(default_factory=list, alias="LineItems")

    @property
    def is_sales_invoice(self) -> bool:
        return self.type == SALES_INVOICE

    @property
    def invoice_date(self) -> Optional[datetime]:
        return normalize_ledger_date(self.date)

    @property
    def paid_on(self) -> Optional[datetime]:
        return normalize_ledger_date(self.fully_paid_on_date)


class LedgerTokens(BaseModel):
    access_token: str
    refresh_token: str
    expires_at: datetime
    tenant_id: str

    def expires_within(self, seconds: int) -> bool:
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at - utcnow() <= timedelta(seconds=seconds)


# ── Token persistence ──────────────────────────────────────


class TokenStore(Protocol):
    async def load(self) -> Optional[LedgerTokens]: ...

    async def save(self, tokens: LedgerTokens) -> None: ...


class SettingsTokenStore:
    """Keeps the current token set in the system_settings table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def load(self) -> Optional[LedgerTokens]:
        async with self._session_factory() as db:
            row = await db.get(SystemSetting, TOKENS_SETTING_KEY)
            if not row:
                return None
            return LedgerTokens.model_validate(row.get_value())

    async def save(self, tokens: LedgerTokens) -> None:
        async with self._session_factory() as db:
            row = await db.get(SystemSetting, TOKENS_SETTING_KEY)
            if not row:
                row = SystemSetting(key=TOKENS_SETTING_KEY, value={})
                db.add(row)
            row.set_value(tokens.model_dump(mode="json"))
            await db.commit()


# ── Client ─────────────────────────────────────────────────


class LedgerClient:
    """
    Async client for the ledger API.

    Constructed once by the process entry point and handed to whatever
    needs it; close it with aclose().
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        token_store: TokenStore,
        identity_url: str,
        client_id: str,
        client_secret: str,
        tenant_id: str,
        initial_refresh_token: str = "",
        refresh_margin_seconds: int = 60,
        max_pages: int = 50,
        branding_themes: Optional[dict[str, str]] = None,
    ):
        self._http = http
        self._token_store = token_store
        self._identity_url = identity_url
        self._client_id = client_id
        self._client_secret = client_secret
        self._tenant_id = tenant_id
        self._initial_refresh_token = initial_refresh_token
        self._refresh_margin = refresh_margin_seconds
        self._max_pages = max_pages
        self._branding_themes = branding_themes or {}
        self._tokens: Optional[LedgerTokens] = None
        self._refresh_lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls,
        token_store: TokenStore,
        config: Settings = default_settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "LedgerClient":
        http = httpx.AsyncClient(
            base_url=config.ledger_api_url,
            timeout=config.ledger_timeout_seconds,
            headers={"Accept": "application/json"},
            transport=transport,
        )
        return cls(
            http=http,
            token_store=token_store,
            identity_url=config.ledger_identity_url,
            client_id=config.ledger_client_id,
            client_secret=config.ledger_client_secret,
            tenant_id=config.ledger_tenant_id,
            initial_refresh_token=config.ledger_refresh_token,
            refresh_margin_seconds=config.ledger_token_refresh_margin_seconds,
            max_pages=config.ledger_max_pages,
            branding_themes=config.ledger_branding_themes,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    # Authentication

    async def _current_tokens(self) -> LedgerTokens:
        async with self._refresh_lock:
            return await self._load_or_refresh()

    async def _load_or_refresh(self) -> LedgerTokens:
        if self._tokens is None:
            self._tokens = await self._token_store.load()

        if self._tokens is None:
            if not self._initial_refresh_token:
                raise LedgerAuthExpiredError("Ledger is not connected")
            # Forces a refresh on first use
            self._tokens = LedgerTokens(
                access_token="",
                refresh_token=self._initial_refresh_token,
                expires_at=datetime.fromtimestamp(0, tz=timezone.utc),
                tenant_id=self._tenant_id,
            )

        if self._tokens.expires_within(self._refresh_margin):
            self._tokens = await self._refresh(self._tokens)
        return self._tokens

    async def _refresh_rejected(self, rejected: LedgerTokens) -> LedgerTokens:
        async with self._refresh_lock:
            # Another caller already replaced the rejected token
            if self._tokens is not None and self._tokens.access_token != rejected.access_token:
                return self._tokens
            self._tokens = await self._refresh(rejected)
            return self._tokens

    async def _refresh(self, tokens: LedgerTokens) -> LedgerTokens:
        try:
            response = await self._http.post(
                self._identity_url,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": tokens.refresh_token,
                },
                auth=(self._client_id, self._client_secret),
            )
        except httpx.TransportError as e:
            raise LedgerTransientError(f"Token refresh failed: {e}") from e

        if response.status_code in (400, 401):
            logger.error(f"Ledger refresh token rejected ({response.status_code})")
            raise LedgerAuthExpiredError(
                "Ledger authorisation expired, reconnect required",
                details={"status": response.status_code},
            )
        self._raise_for_status(response, "token refresh")

        body = response.json()
        refreshed = LedgerTokens(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token") or tokens.refresh_token,
            expires_at=utcnow() + timedelta(seconds=int(body.get("expires_in", 1800))),
            tenant_id=tokens.tenant_id or self._tenant_id,
        )
        await self._token_store.save(refreshed)
        logger.info("Ledger access token refreshed")
        return refreshed

    # Transport

    async def _send(
        self,
        method: str,
        path: str,
        tokens: LedgerTokens,
        params: Optional[dict[str, Any]] = None,
        json: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> httpx.Response:
        request_headers = {
            "Authorization": f"Bearer {tokens.access_token}",
            TENANT_HEADER: tokens.tenant_id,
            **(headers or {}),
        }
        try:
            return await self._http.request(
                method, path, params=params, json=json, headers=request_headers
            )
        except httpx.TransportError as e:
            raise LedgerTransientError(f"Ledger unreachable: {e}") from e

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
        json: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> httpx.Response:
        tokens = await self._current_tokens()
        response = await self._send(method, path, tokens, params, json, headers)
        if response.status_code != 401:
            return response

        logger.warning(f"Ledger returned 401 for {method} {path}, refreshing token once")
        tokens = await self._refresh_rejected(tokens)
        response = await self._send(method, path, tokens, params, json, headers)
        if response.status_code == 401:
            raise LedgerAuthExpiredError(
                "Ledger rejected a freshly refreshed token",
                details={"path": path},
            )
        return response

    @staticmethod
    def _raise_for_status(response: httpx.Response, operation: str) -> None:
        status = response.status_code
        if status < 400:
            return
        details = {"status": status, "operation": operation, "body": response.text[:500]}
        if status == 429 or status >= 500:
            raise LedgerTransientError(f"Ledger {operation} failed with {status}", details=details)
        raise LedgerRejectedError(f"Ledger {operation} rejected with {status}", details=details)

    # Operations

    async def get_invoice(self, invoice_id: str) -> Optional[LedgerInvoice]:
        """Fetch one invoice; None when the ledger does not know it."""
        response = await self._request("GET", f"/Invoices/{invoice_id}")
        if response.status_code == 404:
            return None
        self._raise_for_status(response, "get invoice")

        invoices = response.json().get("Invoices") or []
        if not invoices:
            return None
        return LedgerInvoice.model_validate(invoices[0])

    async def list_invoices(self, since: date, page: int = 1) -> list[LedgerInvoice]:
        """One page of invoices dated on or after `since`."""
        response = await self._request(
            "GET",
            "/Invoices",
            params={"where": ledger_date_filter(since), "page": page, "order": "Date DESC"},
        )
        self._raise_for_status(response, "list invoices")
        return [
            LedgerInvoice.model_validate(item)
            for item in response.json().get("Invoices") or []
        ]

    async def iter_invoices(self, since: date) -> AsyncIterator[LedgerInvoice]:
        """Walk pages until an empty one or the page limit."""
        for page in range(1, self._max_pages + 1):
            invoices = await self.list_invoices(since, page)
            if not invoices:
                return
            for invoice in invoices:
                yield invoice
        logger.warning(f"Invoice listing since {since} stopped at page limit {self._max_pages}")

    async def create_invoice(
        self,
        contact_id: str,
        line_items: list[LedgerLineItem],
        account_code: str,
        tax_type: str,
        jurisdiction_tag: str,
        currency: str = "GBP",
        reference: Optional[str] = None,
        due_date: Optional[date] = None,
        line_amount_type: str = "Exclusive",
        idempotency_key: Optional[str] = None,
    ) -> LedgerInvoice:
        """
        Create an authorised sales invoice.

        Line items without their own account code or tax type inherit the
        invoice-level ones.
        """
        items = [
            {
                "Description": item.description,
                "Quantity": str(item.quantity),
                "UnitAmount": str(item.unit_amount),
                "AccountCode": item.account_code or account_code,
                "TaxType": item.tax_type or tax_type,
            }
            for item in line_items
        ]
        invoice: dict[str, Any] = {
            "Type": SALES_INVOICE,
            "Status": "AUTHORISED",
            "Contact": {"ContactID": contact_id},
            "Date": utcnow().date().isoformat(),
            "DueDate": (due_date or utcnow().date() + timedelta(days=14)).isoformat(),
            "LineAmountTypes": line_amount_type,
            "LineItems": items,
            "CurrencyCode": currency,
        }
        if reference:
            invoice["Reference"] = reference
        theme_id = self._branding_themes.get(jurisdiction_tag)
        if theme_id:
            invoice["BrandingThemeID"] = theme_id

        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        response = await self._request(
            "POST", "/Invoices", json={"Invoices": [invoice]}, headers=headers
        )
        self._raise_for_status(response, "create invoice")

        created = response.json().get("Invoices") or []
        if not created:
            raise LedgerRejectedError("Ledger returned no invoice after create")
        result = LedgerInvoice.model_validate(created[0])
        logger.info(f"Ledger invoice {result.invoice_number} ({result.invoice_id}) created")
        return result
