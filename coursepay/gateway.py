"""
REST client for the external payment gateway.

The gateway is the only source of truth for whether an order was actually
paid. This client wraps the order-creation and lookup endpoints and maps
every transport or HTTP failure onto the gateway error taxonomy in
``coursepay.errors`` so callers never see raw httpx exceptions.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional

import httpx

from coursepay.errors import (
    GatewayNotFound,
    GatewayTimeout,
    GatewayUnauthorized,
    GatewayUnavailable,
    GatewayValidationError,
)

log = logging.getLogger(__name__)


def _from_epoch(value) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(_strict_int(value, "created_at"), tz=timezone.utc)


def _strict_int(value, name: str) -> int:
    # minor units only: floats and booleans are rejected, never truncated
    if type(value) is not int:
        raise ValueError(f"{name} must be an integer, got {value!r}")
    return value


def _strict_str(value, name: str) -> str:
    if not isinstance(value, str) or not value:
        raise ValueError(f"{name} must be a non-empty string, got {value!r}")
    return value


@dataclass
class GatewayOrder:
    id: str
    amount: int
    currency: str
    status: str   # gateway-native: created | attempted | paid | ...
    receipt: Optional[str] = None
    notes: Dict[str, str] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    amount_paid: int = 0
    attempts: int = 0

    @classmethod
    def from_json(cls, data: dict) -> "GatewayOrder":
        notes = data.get("notes") or {}
        # the gateway serialises empty notes as []
        if not isinstance(notes, dict):
            notes = {}
        return cls(
            id=_strict_str(data["id"], "id"),
            amount=_strict_int(data["amount"], "amount"),
            currency=_strict_str(data["currency"], "currency"),
            status=_strict_str(data["status"], "status"),
            receipt=data.get("receipt"),
            notes={str(k): str(v) for k, v in notes.items()},
            created_at=_from_epoch(data.get("created_at")),
            amount_paid=_strict_int(data.get("amount_paid", 0), "amount_paid"),
            attempts=_strict_int(data.get("attempts", 0), "attempts"),
        )


class GatewayClient:
    """
    Client for the payment gateway REST API.
    Authenticates with HTTP basic auth (key id / key secret) and applies a
    bounded timeout to every call.
    """
    def __init__(self, base_url: str, key_id: str, key_secret: str,
                 timeout: float = 5.0, transport: Optional[httpx.BaseTransport] = None):
        """
        Args:
            base_url (str): Gateway API root, e.g. 'https://api.razorpay.com/v1'.
            key_id (str): Public key id.
            key_secret (str): Secret key. Never logged.
            timeout (float): Per-request timeout in seconds.
            transport (httpx.BaseTransport): Optional transport override.
        Raises:
            GatewayUnauthorized: If the credentials are not configured.
        """
        if not key_id or not key_secret:
            raise GatewayUnauthorized("Gateway credentials not configured")

        self.key_id = key_id
        timeout_config = httpx.Timeout(timeout)
        self.client = httpx.Client(
            base_url=base_url.rstrip("/"),
            auth=(key_id, key_secret),
            timeout=timeout_config,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    def close(self):
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = self.client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            log.error(f"Gateway timeout on {method} {path}: {e!r}")
            raise GatewayTimeout(f"Gateway timed out on {method} {path}") from e
        except httpx.TransportError as e:
            log.error(f"Gateway unreachable on {method} {path}: {e!r}")
            raise GatewayUnavailable(f"Gateway unreachable on {method} {path}") from e

        status = response.status_code
        if status in (401, 403):
            log.critical(f"Gateway rejected credentials (HTTP {status}) on {method} {path}")
            raise GatewayUnauthorized(
                f"Gateway rejected credentials (HTTP {status})",
                status_code=status, body=response.text,
            )
        if status >= 500:
            log.error(f"Gateway error HTTP {status} on {method} {path}")
            raise GatewayUnavailable(
                f"Gateway error (HTTP {status})", status_code=status, body=response.text,
            )
        if status == 404:
            raise GatewayNotFound(
                f"Gateway resource not found: {path}", status_code=status, body=response.text,
            )
        if status >= 400:
            log.warning(f"Gateway rejected {method} {path} (HTTP {status}): {response.text}")
            raise GatewayValidationError(
                f"{_error_description(response) or 'Gateway rejected the request'} (HTTP {status})",
                status_code=status, body=response.text,
            )

        try:
            return response.json()
        except ValueError as e:
            raise GatewayUnavailable(
                f"Gateway returned malformed JSON on {method} {path}",
                status_code=status, body=response.text,
            ) from e

    def create_order(self, amount_minor_units: int, currency: str, receipt_id: str,
                     notes: Optional[Dict[str, str]] = None) -> GatewayOrder:
        """
        Creates an order at the gateway.
        Args:
            amount_minor_units (int): Amount in the smallest currency unit.
            currency (str): ISO currency code (e.g. 'INR').
            receipt_id (str): Local order id, echoed back by the gateway as the receipt.
            notes (dict): String metadata stored with the gateway order.
        Returns:
            GatewayOrder: The created order.
        """
        payload = {
            "amount": amount_minor_units,
            "currency": currency,
            "receipt": receipt_id,
            "notes": notes or {},
        }
        log.info(f"[Order: {receipt_id}] Creating gateway order ({amount_minor_units} {currency}).")
        order = _parse(GatewayOrder, self._request("POST", "/orders", json=payload))
        log.info(f"[Order: {receipt_id}] Gateway order created: {order.id}")
        return order

    def get_order(self, gateway_order_id: str) -> GatewayOrder:
        return _parse(GatewayOrder, self._request("GET", f"/orders/{gateway_order_id}"))


def _error_description(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            return error.get("description")
    return None


def _parse(model, data):
    try:
        return model.from_json(data)
    except (KeyError, TypeError, ValueError) as e:
        raise GatewayUnavailable(f"Gateway returned an unexpected {model.__name__} payload") from e
