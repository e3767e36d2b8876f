"""Shared HTTP plumbing for vendor CRM adapters.

Provides:
- vendor_retry: tenacity decorator (3 attempts, exponential backoff 1-10s)
  retrying transport errors, HTTP 429 and HTTP 5xx only
- raise_for_vendor_status(): Convert a non-2xx response into CRMAPIError
"""

from __future__ import annotations

import httpx
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from src.givesync.crm.exceptions import CRMAPIError

logger = structlog.get_logger(__name__)

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    return isinstance(exc, CRMAPIError) and exc.status_code in RETRYABLE_STATUS_CODES


vendor_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception(_is_retryable),
    reraise=True,
)


def raise_for_vendor_status(provider: str, response: httpx.Response, action: str) -> None:
    """Raise CRMAPIError when the vendor returned a non-success status.

    Args:
        provider: Provider name for the error and log context.
        response: The vendor response.
        action: Short description used in the message, e.g. "fetch constituents".
    """
    if response.is_success:
        return
    logger.warning(
        "crm_http.vendor_error",
        provider=provider,
        action=action,
        status_code=response.status_code,
        body=response.text[:500],
    )
    message = f"Failed to {action}: {response.status_code}"
    vendor_message = _vendor_message(response)
    if vendor_message:
        message = f"{message} ({vendor_message})"
    raise CRMAPIError(provider, message, status_code=response.status_code)


def _vendor_message(response: httpx.Response) -> str | None:
    """Pull the human-readable message out of a vendor error body, if any.

    Salesforce returns [{"message", "errorCode"}]; OAuth endpoints return
    {"error", "error_description"}; SKY API returns {"message"} or
    [{"message"}].
    """
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, list) and body and isinstance(body[0], dict):
        body = body[0]
    if not isinstance(body, dict):
        return None
    return body.get("message") or body.get("error_description") or body.get("error")
