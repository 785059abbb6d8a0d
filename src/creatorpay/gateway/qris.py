"""OY! Indonesia QRIS gateway client.

Mints a scannable QRIS payment code for a fixed amount and expiry, and
queries the status of a previously minted code.  The client is a thin
request/response wrapper: it never retries and never persists anything.

Each request authenticates with the channel owner's API key, which the
gateway expects in both ``X-OY-Username`` and ``X-Api-Key``.  The key is
passed per call and never logged.

Errors
------
:class:`GatewayRejected`
    HTTP 401/403, or a ``status: false`` body that names the credential.
:class:`~creatorpay.payments.base.GatewayUnavailable`
    Timeout, connection failure, any other non-2xx status, or a body
    the client cannot interpret.
"""

from __future__ import annotations

import logging
import math
import re
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional

import requests
from requests.exceptions import ConnectionError as ReqConnectionError
from requests.exceptions import RequestException, Timeout

from creatorpay.payments.base import (
    GatewayCode,
    GatewayReport,
    GatewayUnavailable,
    PaymentError,
)

if TYPE_CHECKING:
    from creatorpay.config import PaymentConfig

logger = logging.getLogger(__name__)

_DEFAULT_BASE_URL = "https://api-stg.oyindonesia.com"
_PLACEHOLDER_QR_URL = "https://api.qrserver.com/v1/create-qr-code/?size=300x300&data={data}"
_PLACEHOLDER_CREDENTIALS = {"your_oy_api_key"}
_AUTH_HINT = re.compile(r"unauthori[sz]ed|api[ _-]?key|username|credential|forbidden", re.IGNORECASE)

COMPLETE_STATUS = "COMPLETE"


class GatewayRejected(PaymentError):
    """The gateway refused the channel owner's credential."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="GATEWAY_REJECTED")


def is_placeholder_credential(credential: Optional[str]) -> bool:
    """Return ``True`` for empty or obviously unset credentials."""
    if not credential:
        return True
    return credential in _PLACEHOLDER_CREDENTIALS or "placeholder" in credential.lower()


def format_expiration(expires_at: float) -> str:
    """Render *expires_at* as the gateway's ``YYYY-MM-DD HH:MM:SS`` (UTC)."""
    return datetime.fromtimestamp(expires_at, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def placeholder_code(transaction_id: str, amount: int, expires_at: float) -> GatewayCode:
    """Synthesize a local code that no real payment can settle."""
    data = f"MOCK_QRIS_{transaction_id}"
    return GatewayCode(
        transaction_id=transaction_id,
        code=data,
        url=_PLACEHOLDER_QR_URL.format(data=data),
        amount=amount,
        expires_at=expires_at,
        placeholder=True,
    )


def _parse_amount(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError("boolean is not an amount")
    if isinstance(value, int):
        return value
    number = value if isinstance(value, float) else float(str(value).strip())
    if not math.isfinite(number):
        raise ValueError(f"amount {value!r} is not finite")
    return int(number)


def parse_gateway_report(payload: Mapping[str, Any], *, source: str = "callback") -> GatewayReport:
    """Turn a callback or status body into a :class:`GatewayReport`.

    ``payment_status`` is compared case-insensitively with ``COMPLETE``;
    ``received_amount`` may be a number or a numeric string.  Status
    responses nest the fields under ``data``.

    :raises PaymentError: ``code="BAD_PAYLOAD"`` when the transaction id
        is missing or the amount is not numeric.
    """
    if not isinstance(payload, Mapping):
        raise PaymentError("Gateway payload must be a JSON object", code="BAD_PAYLOAD")
    body: Mapping[str, Any] = payload
    nested = payload.get("data")
    if "partner_trx_id" not in payload and isinstance(nested, Mapping):
        body = nested

    trx_id = body.get("partner_trx_id")
    if not trx_id or not isinstance(trx_id, str):
        raise PaymentError("Gateway payload has no partner_trx_id", code="BAD_PAYLOAD")
    raw_status = str(body.get("payment_status") or "")
    try:
        received = _parse_amount(body.get("received_amount"))
    except (TypeError, ValueError, OverflowError) as exc:
        raise PaymentError(
            f"Gateway payload for {trx_id} has a non-numeric received_amount",
            code="BAD_PAYLOAD",
        ) from exc
    return GatewayReport(
        transaction_id=trx_id,
        complete=raw_status.strip().upper() == COMPLETE_STATUS,
        received_amount=received,
        raw_status=raw_status,
        source=source,
    )


class QrisGatewayClient:
    """HTTP client for the QRIS endpoints.

    Args:
        base_url: Gateway API root (no trailing slash needed).
        qris_endpoint: Path that mints a code.
        status_endpoint: Path that reports a transaction's status.
        timeout: Per-request timeout in seconds.
        live: When ``True`` placeholder credentials are refused instead
            of producing a placeholder code.
    """

    def __init__(
        self,
        base_url: str = _DEFAULT_BASE_URL,
        *,
        qris_endpoint: str = "/api/generate-qris",
        status_endpoint: str = "/api/payment-routing/check-status",
        timeout: float = 30.0,
        live: bool = False,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._qris_endpoint = qris_endpoint
        self._status_endpoint = status_endpoint
        self._timeout = timeout
        self._live = live
        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "Accept": "application/json",
                "Content-Type": "application/json",
            }
        )

    @classmethod
    def from_config(cls, config: PaymentConfig) -> QrisGatewayClient:
        return cls(
            config.base_url,
            qris_endpoint=config.qris_endpoint,
            status_endpoint=config.status_endpoint,
            timeout=config.request_timeout_seconds,
            live=config.live,
        )

    @property
    def live(self) -> bool:
        return self._live

    # -- Internal HTTP helpers ------------------------------------------------

    def _url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    def _request(
        self,
        method: str,
        path: str,
        credential: str,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        """Execute an authenticated request and return the JSON body.

        Raises:
            GatewayRejected: On 401/403.
            GatewayUnavailable: On timeout, connection failure, other
                HTTP errors or a non-JSON body.
        """
        headers = {"X-OY-Username": credential, "X-Api-Key": credential}
        try:
            response = self._session.request(
                method,
                self._url(path),
                headers=headers,
                timeout=self._timeout,
                **kwargs,
            )
        except Timeout as exc:
            raise GatewayUnavailable("Payment gateway timeout", code="TIMEOUT") from exc
        except ReqConnectionError as exc:
            raise GatewayUnavailable(
                "Cannot reach payment gateway", code="CONNECTION_ERROR"
            ) from exc
        except RequestException as exc:
            raise GatewayUnavailable(
                f"Request error for {method} {path}: {type(exc).__name__}",
                code="REQUEST_ERROR",
            ) from exc

        if response.status_code in (401, 403):
            raise GatewayRejected(
                f"Payment gateway rejected the channel credential (HTTP {response.status_code})"
            )
        if not response.ok:
            raise GatewayUnavailable(
                f"Payment gateway returned HTTP {response.status_code} for {method} {path}",
                code=f"HTTP_{response.status_code}",
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise GatewayUnavailable(
                "Payment gateway returned a non-JSON body", code="BAD_RESPONSE"
            ) from exc
        if not isinstance(body, dict):
            raise GatewayUnavailable(
                "Payment gateway returned an unexpected body", code="BAD_RESPONSE"
            )
        return body

    @staticmethod
    def _check_status(body: Dict[str, Any]) -> None:
        """Raise when the body reports a failed call."""
        status = body.get("status")
        if isinstance(status, dict):
            ok = str(status.get("code", "")) in ("000", "200")
            message = str(status.get("message", ""))
        else:
            ok = bool(status)
            message = str(body.get("message", ""))
        if ok:
            return
        if _AUTH_HINT.search(message):
            raise GatewayRejected(f"Payment gateway rejected the channel credential: {message}")
        raise GatewayUnavailable(
            f"Payment gateway declined the request: {message or 'no reason given'}",
            code="BAD_RESPONSE",
        )

    # -- Public API -----------------------------------------------------------

    def mint_payment_code(
        self,
        transaction_id: str,
        amount: int,
        buyer_id: int,
        credential: str,
        expires_at: float,
    ) -> GatewayCode:
        """Ask the gateway for a closed-amount QRIS code.

        A placeholder credential yields a placeholder code outside live
        mode without any HTTP call.

        Raises:
            GatewayRejected: Credential refused, or a placeholder credential
                in live mode.
            GatewayUnavailable: Transport or response failure.
        """
        if is_placeholder_credential(credential):
            if self._live:
                raise GatewayRejected("Channel credential is a placeholder")
            logger.info("Placeholder credential; synthesizing code for %s", transaction_id)
            return placeholder_code(transaction_id, amount, expires_at)

        payload = {
            "partner_trx_id": transaction_id,
            "amount": amount,
            "is_open": False,
            "expiration_time": format_expiration(expires_at),
            "partner_user_id": str(buyer_id),
        }
        logger.info("Requesting QRIS code for %s (amount %d)", transaction_id, amount)
        body = self._request("POST", self._qris_endpoint, credential, json=payload)
        self._check_status(body)

        data = body.get("data") or {}
        url = data.get("qris_url") or data.get("qr_url")
        if not url:
            raise GatewayUnavailable(
                f"Payment gateway returned no QR url for {transaction_id}",
                code="BAD_RESPONSE",
            )
        return GatewayCode(
            transaction_id=transaction_id,
            code=data.get("qris_content") or data.get("qr_string") or url,
            url=url,
            amount=amount,
            expires_at=expires_at,
        )

    def get_payment_status(self, transaction_id: str, credential: str) -> GatewayReport:
        """Ask the gateway whether *transaction_id* has been paid."""
        body = self._request(
            "POST",
            self._status_endpoint,
            credential,
            json={"partner_trx_id": transaction_id, "send_callback": False},
        )
        self._check_status(body)
        data = body.get("data")
        target = data if isinstance(data, dict) else body
        target.setdefault("partner_trx_id", transaction_id)
        if target.get("received_amount") is None:
            target["received_amount"] = target.get("amount")
        try:
            return parse_gateway_report(body, source="poll")
        except PaymentError as exc:
            raise GatewayUnavailable(str(exc), code="BAD_RESPONSE") from exc

    def close(self) -> None:
        self._session.close()
