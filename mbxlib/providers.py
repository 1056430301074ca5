"""
Microsoft 365 collaborators for the mailbox report.

- TenantSession: azure-identity credential shared by Graph and Exchange Online
- ExchangeAdminClient: Exchange Online admin API (InvokeCommand) over requests
- ExchangeAccountSource / ExchangeUsageLookup: Get-EXOMailbox and
  Get-EXOMailboxStatistics through the admin client
- GraphIdentityLookup: license assignment through msgraph-sdk

Required permissions (Application type):
  - Microsoft Graph: User.Read.All, Organization.Read.All (SKU names)
  - Office 365 Exchange Online: Exchange.ManageAsApp, plus a directory role
    that can read recipients (e.g. Global Reader)
"""
import asyncio
import logging
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Iterator, Optional

import requests
from azure.identity import CertificateCredential, ClientSecretCredential
from kiota_abstractions.base_request_configuration import RequestConfiguration
from msgraph import GraphServiceClient
from msgraph.generated.users.item.user_item_request_builder import UserItemRequestBuilder

from .constants import (
    DEFAULT_MAX_PAGES,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_RETRY_AFTER,
    DEFAULT_RETRY_ATTEMPTS,
    EXCHANGE_ADMIN_API_BASE,
    EXCHANGE_SCOPE,
    GRAPH_SCOPE,
    HTTP_AUTH_STATUS_CODES,
    HTTP_RETRY_STATUS_CODES,
    MAILBOX_PROPERTIES,
    RECIPIENT_TYPE_TO_CATEGORY,
)
from .errors import SessionUnavailable
from .models import AccountDescriptor, IdentityRecord, MailboxCategory, UsageRecord
from .utils import check_and_raise_session_error, retry_with_backoff

logger = logging.getLogger(__name__)

# Well-known arbitration mailbox the admin API routes app-only calls through
ANCHOR_MAILBOX = "APP:SystemMailbox{bb558c35-97f1-4cb9-8ff7-d53741dc928c}@%s"

NOT_FOUND_MARKERS = ("couldn't be found", "could not be found", "ManagementObjectNotFoundException")


# =============================================================================
# Session
# =============================================================================

class TenantSession:
    """Credential and token access for one tenant."""

    def __init__(self, tenant_id: str, credential: Any, organization: Optional[str] = None):
        self.tenant_id = tenant_id
        self.credential = credential
        self.organization = organization or tenant_id
        self._graph_client: Optional[GraphServiceClient] = None

    @classmethod
    def from_client_secret(cls, tenant_id: str, client_id: str, client_secret: str,
                           organization: Optional[str] = None) -> "TenantSession":
        credential = ClientSecretCredential(
            tenant_id=tenant_id,
            client_id=client_id,
            client_secret=client_secret
        )
        return cls(tenant_id, credential, organization)

    @classmethod
    def from_certificate(cls, tenant_id: str, client_id: str, certificate_path: str,
                         organization: Optional[str] = None) -> "TenantSession":
        credential = CertificateCredential(
            tenant_id=tenant_id,
            client_id=client_id,
            certificate_path=certificate_path
        )
        return cls(tenant_id, credential, organization)

    def get_token(self, scope: str) -> str:
        """Return a bearer token for scope. azure-identity caches and refreshes it."""
        try:
            return self.credential.get_token(scope).token
        except Exception as e:
            raise SessionUnavailable(f"Could not acquire token for {scope}: {e}", original_error=e) from e

    def exchange_token(self) -> str:
        return self.get_token(EXCHANGE_SCOPE)

    def ensure_session_active(self) -> bool:
        """Check that both Graph and Exchange Online tokens can be acquired."""
        for scope in (GRAPH_SCOPE, EXCHANGE_SCOPE):
            try:
                self.get_token(scope)
            except SessionUnavailable as e:
                logger.error(str(e))
                return False
        return True

    @property
    def graph_client(self) -> GraphServiceClient:
        if self._graph_client is None:
            self._graph_client = GraphServiceClient(credentials=self.credential, scopes=[GRAPH_SCOPE])
        return self._graph_client


# =============================================================================
# Exchange Online Admin API
# =============================================================================

class TransientRequestError(Exception):
    """Throttling or server-side error worth another attempt."""


def retry_after_seconds(value: Optional[str], default: int = DEFAULT_RETRY_AFTER) -> int:
    """Parse a Retry-After header given as delay-seconds or as an HTTP date."""
    if not value:
        return default
    value = value.strip()
    if value.isdigit():
        return int(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.debug(f"Unparseable Retry-After header: {value!r}")
        return default
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0, int((when - datetime.now(timezone.utc)).total_seconds()))


def _is_not_found(resp: requests.Response) -> bool:
    if resp.status_code == 404:
        return True
    if resp.status_code == 400:
        return any(marker in resp.text for marker in NOT_FOUND_MARKERS)
    return False


class ExchangeAdminClient:
    """
    Minimal client for the Exchange Online admin API.

    Cmdlets are posted to InvokeCommand as
    {"CmdletInput": {"CmdletName": ..., "Parameters": {...}}} and results are
    paged through @odata.nextLink.
    """

    def __init__(
        self,
        session: TenantSession,
        timeout: int = DEFAULT_REQUEST_TIMEOUT,
        max_pages: int = DEFAULT_MAX_PAGES,
        http: Optional[requests.Session] = None,
    ):
        self.session = session
        self.timeout = timeout
        self.max_pages = max_pages
        self.http = http or requests.Session()
        self.url = f"{EXCHANGE_ADMIN_API_BASE}/{session.tenant_id}/InvokeCommand"

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.session.exchange_token()}",
            "Content-Type": "application/json",
            "X-ResponseFormat": "json",
            "X-AnchorMailbox": ANCHOR_MAILBOX % self.session.organization,
        }

    @retry_with_backoff(
        max_attempts=DEFAULT_RETRY_ATTEMPTS,
        exceptions=(TransientRequestError, requests.ConnectionError, requests.Timeout),
    )
    def _post(self, url: str, body: Dict[str, Any]) -> requests.Response:
        resp = self.http.post(url, json=body, headers=self._headers(), timeout=self.timeout)

        if resp.status_code == 429:
            retry_after = retry_after_seconds(resp.headers.get("Retry-After"))
            logger.warning(f"Exchange Online throttled the request. Waiting {retry_after}s...")
            time.sleep(retry_after)
            raise TransientRequestError("429 Too Many Requests")

        if resp.status_code in HTTP_RETRY_STATUS_CODES:
            raise TransientRequestError(f"{resp.status_code} {resp.reason}")

        return resp

    def _check(self, cmdlet: str, resp: requests.Response) -> None:
        if resp.status_code in HTTP_AUTH_STATUS_CODES:
            raise SessionUnavailable(
                f"Exchange Online rejected {cmdlet} ({resp.status_code}): {resp.text[:200]}"
            )
        resp.raise_for_status()

    def invoke(self, cmdlet: str, parameters: Optional[Dict[str, Any]] = None) -> Iterator[Dict[str, Any]]:
        """Run a cmdlet and lazily yield result objects across all pages."""
        body = {"CmdletInput": {"CmdletName": cmdlet, "Parameters": parameters or {}}}
        url: Optional[str] = self.url

        for page in range(self.max_pages):
            if not url:
                return
            logger.debug(f"InvokeCommand {cmdlet} (page {page + 1})")
            resp = self._post(url, body)
            self._check(cmdlet, resp)

            data = resp.json()
            for item in data.get("value", []):
                yield item
            url = data.get("@odata.nextLink")

        if url:
            logger.warning(f"{cmdlet} stopped after {self.max_pages} pages; results may be incomplete")

    def invoke_single(self, cmdlet: str, parameters: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        """Run a cmdlet expected to return one object. Returns None when it is not found."""
        body = {"CmdletInput": {"CmdletName": cmdlet, "Parameters": parameters or {}}}
        logger.debug(f"InvokeCommand {cmdlet} {parameters}")
        resp = self._post(self.url, body)
        if _is_not_found(resp):
            return None
        self._check(cmdlet, resp)

        values = resp.json().get("value", [])
        return values[0] if values else None


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def descriptor_from_mailbox(item: Dict[str, Any]) -> AccountDescriptor:
    """Build an AccountDescriptor from a Get-EXOMailbox result object."""
    recipient_type = item.get('RecipientTypeDetails') or ""
    return AccountDescriptor(
        user_principal_name=item.get('UserPrincipalName') or item.get('PrimarySmtpAddress') or "",
        display_name=item.get('DisplayName'),
        category=RECIPIENT_TYPE_TO_CATEGORY.get(recipient_type, recipient_type),
        hidden_from_gal=bool(item.get('HiddenFromAddressListsEnabled')),
        archive_status=_as_text(item.get('ArchiveStatus')),
        auto_expanding_archive_enabled=bool(item.get('AutoExpandingArchiveEnabled')),
        storage_limit=_as_text(item.get('ProhibitSendReceiveQuota')),
        archive_quota=_as_text(item.get('ArchiveQuota')),
        retention_policy=_as_text(item.get('RetentionPolicy')),
        forwarding_smtp_address=_as_text(item.get('ForwardingSmtpAddress')),
        forwarding_address=_as_text(item.get('ForwardingAddress')),
    )


class ExchangeAccountSource:
    """Lists mailboxes of a category with Get-EXOMailbox."""

    def __init__(self, client: ExchangeAdminClient):
        self.client = client

    def list_accounts(self, category: MailboxCategory) -> Iterator[AccountDescriptor]:
        parameters: Dict[str, Any] = {
            "ResultSize": "Unlimited",
            "Properties": MAILBOX_PROPERTIES,
        }
        if category.recipient_type:
            parameters["RecipientTypeDetails"] = category.recipient_type

        count = 0
        try:
            for item in self.client.invoke("Get-EXOMailbox", parameters):
                descriptor = descriptor_from_mailbox(item)
                if not descriptor.user_principal_name:
                    logger.debug(f"Ignoring mailbox without a principal name: {item.get('Identity')}")
                    continue
                if not category.admits(descriptor.category):
                    continue
                count += 1
                yield descriptor
        except (requests.RequestException, TransientRequestError) as e:
            check_and_raise_session_error(e, "list mailboxes")
            raise SessionUnavailable(f"Mailbox listing failed: {e}", original_error=e) from e

        logger.info(f"Listed {count} {category.value} mailboxes")


class ExchangeUsageLookup:
    """Reads TotalItemSize with Get-EXOMailboxStatistics."""

    def __init__(self, client: ExchangeAdminClient):
        self.client = client

    def get_usage(self, account_id: str, archive: bool = False) -> Optional[UsageRecord]:
        parameters: Dict[str, Any] = {"Identity": account_id}
        if archive:
            parameters["Archive"] = True

        stats = self.client.invoke_single("Get-EXOMailboxStatistics", parameters)
        if stats is None:
            return None
        return UsageRecord(total_item_size=_as_text(stats.get('TotalItemSize')))


# =============================================================================
# Microsoft Graph Identity Lookup
# =============================================================================

def identity_from_user(user: Any, sku_names: Dict[str, str]) -> IdentityRecord:
    """Build an IdentityRecord from a Graph user, naming SKUs by part number."""
    assigned = getattr(user, 'assigned_licenses', None)
    if assigned is None:
        return IdentityRecord(is_licensed=False, licenses=None)

    skus = []
    for license_ in assigned:
        sku_id = getattr(license_, 'sku_id', None)
        if sku_id is None:
            continue
        skus.append(sku_names.get(str(sku_id), str(sku_id)))
    return IdentityRecord(is_licensed=len(skus) > 0, licenses=tuple(skus))


class GraphIdentityLookup:
    """
    Fetches license assignment per user through msgraph-sdk.

    msgraph-sdk is async; calls run to completion on a private event loop so
    the pipeline stays synchronous.
    """

    USER_FIELDS = ["id", "userPrincipalName", "assignedLicenses"]

    def __init__(self, graph_client: GraphServiceClient, loop: Optional[asyncio.AbstractEventLoop] = None):
        self.graph_client = graph_client
        self._loop = loop or asyncio.new_event_loop()
        self._sku_names: Optional[Dict[str, str]] = None

    def _run(self, coro):
        return self._loop.run_until_complete(coro)

    def close(self) -> None:
        if not self._loop.is_closed():
            self._loop.close()

    def load_sku_catalog(self) -> Dict[str, str]:
        """Map SKU GUIDs to part numbers (e.g. ENTERPRISEPACK). Loaded once per run."""
        if self._sku_names is not None:
            return self._sku_names

        names: Dict[str, str] = {}
        try:
            response = self._run(self.graph_client.subscribed_skus.get())
            for sku in (response.value if response and response.value else []):
                if sku.sku_id is not None and sku.sku_part_number:
                    names[str(sku.sku_id)] = sku.sku_part_number
            logger.info(f"Loaded {len(names)} subscribed SKUs")
        except Exception as e:
            check_and_raise_session_error(e, "list subscribed SKUs")
            logger.warning(f"Could not load SKU names, exporting SKU IDs instead: {e}")

        self._sku_names = names
        return names

    def get_identity(self, account_id: str) -> Optional[IdentityRecord]:
        query = UserItemRequestBuilder.UserItemRequestBuilderGetQueryParameters(
            select=self.USER_FIELDS
        )
        config = RequestConfiguration(query_parameters=query)
        try:
            user = self._run(
                self.graph_client.users.by_user_id(account_id).get(request_configuration=config)
            )
        except Exception as e:
            check_and_raise_session_error(e, f"look up licenses for {account_id}")
            if getattr(e, 'response_status_code', None) == 404:
                return None
            raise

        if user is None:
            return None
        return identity_from_user(user, self.load_sku_catalog())
