"""HTTP client for the platform gateway (notifications, documents, storage)."""

from __future__ import annotations

import time
from dataclasses import fields, is_dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

import httpx
import structlog

from creator_billing.config import get_settings
from creator_billing.errors import UpstreamError
from creator_billing.invoicing.models import Invoice, Payment
from creator_billing.secrets import SecretCodec, SecretString, get_secret_codec

logger = structlog.get_logger(__name__)


class PlatformAPIClient:
    """Sync client for the platform gateway.

    Implements the notification, document-rendering and object-storage
    collaborators. Transport errors are retried with exponential backoff;
    any HTTP error status becomes an :class:`UpstreamError`.
    """

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        codec: SecretCodec | None = None,
        backoff: float = 1.0,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.platform_api_url).rstrip("/")
        if token is None and settings.platform_api_token is not None:
            token = settings.platform_api_token.get_secret_value()
        self._token = token
        self._timeout = settings.platform_api_timeout
        self._max_retries = settings.platform_api_max_retries
        self._backoff = backoff
        self._codec = codec
        self._client: httpx.Client | None = None

    def _get_client(self) -> httpx.Client:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.Client(
                base_url=self.base_url,
                timeout=httpx.Timeout(self._timeout),
            )
        return self._client

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None

    def __enter__(self) -> PlatformAPIClient:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def _get_headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _request(
        self,
        method: str,
        path: str,
        *,
        collaborator: str,
        json: dict[str, Any] | None = None,
        content: bytes | None = None,
        headers: dict[str, str] | None = None,
        retry_count: int = 0,
    ) -> dict[str, Any]:
        """Make a gateway request with retry logic."""
        client = self._get_client()
        request_headers = self._get_headers()
        if headers:
            request_headers.update(headers)

        try:
            response = client.request(
                method=method,
                url=path,
                json=json,
                content=content,
                headers=request_headers,
            )
        except httpx.RequestError as e:
            if retry_count < self._max_retries:
                logger.warning(
                    "platform_request_retry",
                    path=path,
                    attempt=retry_count + 1,
                    error=str(e),
                )
                time.sleep(self._backoff * 2**retry_count)
                return self._request(
                    method,
                    path,
                    collaborator=collaborator,
                    json=json,
                    content=content,
                    headers=headers,
                    retry_count=retry_count + 1,
                )
            raise UpstreamError(
                f"Platform gateway unreachable: {e}",
                collaborator=collaborator,
                details={"path": path, "attempts": retry_count + 1},
            ) from e

        if response.status_code >= 400:
            try:
                error_detail = response.json() if response.content else {}
            except ValueError:
                error_detail = {"raw": response.text[:500] if response.text else "empty response"}
            raise UpstreamError(
                f"Platform API error: {response.status_code}",
                collaborator=collaborator,
                status_code=response.status_code,
                details={"path": path, "response": error_detail},
            )

        data = response.json() if response.content else {}
        if not isinstance(data, dict):
            raise UpstreamError(
                "Invalid platform response format",
                collaborator=collaborator,
                status_code=response.status_code,
            )
        return data

    def _url_from(self, data: dict[str, Any], collaborator: str) -> str:
        url = data.get("url")
        if not url:
            raise UpstreamError("Platform response has no url", collaborator=collaborator)
        return str(url)

    # === Notification sender ===

    def send_email(
        self,
        to: str,
        subject: str,
        body: str,
        attachments: tuple[str, ...] | list[str] = (),
    ) -> None:
        self._request(
            "POST",
            "/api/v1/notifications/email",
            collaborator="notification_sender",
            json={"to": to, "subject": subject, "body": body, "attachments": list(attachments)},
        )
        logger.debug("email_dispatched", to=to, subject=subject)

    def send_sms(self, to: str, message: str) -> None:
        self._request(
            "POST",
            "/api/v1/notifications/sms",
            collaborator="notification_sender",
            json={"to": to, "message": message},
        )
        logger.debug("sms_dispatched", to=to)

    # === Document renderer ===

    def render_invoice(self, invoice: Invoice) -> str:
        payload = self._encode(invoice)
        payload["final_amount"] = str(invoice.final_amount)
        data = self._request(
            "POST",
            "/api/v1/documents/invoices",
            collaborator="document_renderer",
            json=payload,
        )
        return self._url_from(data, "document_renderer")

    def render_receipt(self, payment: Payment, invoice: Invoice) -> str:
        data = self._request(
            "POST",
            "/api/v1/documents/receipts",
            collaborator="document_renderer",
            json={
                "payment": self._encode(payment),
                "invoice_number": invoice.invoice_number,
                "client": self._encode(invoice.client),
                "invoice_total": str(invoice.final_amount),
            },
        )
        return self._url_from(data, "document_renderer")

    # === Object storage ===

    def upload(self, key: str, content: bytes, content_type: str) -> str:
        data = self._request(
            "PUT",
            f"/api/v1/storage/{key.lstrip('/')}",
            collaborator="object_storage",
            content=content,
            headers={"Content-Type": content_type},
        )
        return self._url_from(data, "object_storage")

    # === Payload encoding ===

    def _encode(self, value: Any) -> Any:
        """Turn domain objects into JSON-ready data, revealing secrets."""
        if isinstance(value, SecretString):
            codec = self._codec or get_secret_codec()
            return codec.reveal(value)
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, Decimal):
            return str(value)
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        if is_dataclass(value) and not isinstance(value, type):
            return {f.name: self._encode(getattr(value, f.name)) for f in fields(value)}
        if isinstance(value, (list, tuple)):
            return [self._encode(v) for v in value]
        if isinstance(value, dict):
            return {str(k): self._encode(v) for k, v in value.items()}
        return value
