"""Target that drives a payment service over its HTTP API."""

from __future__ import annotations

import json
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Optional

from .types import CreatePaymentRequest, Payment, TargetError, WebhookEvent

_PATH_SAFE = "$&+:=@"


class HTTPTarget:
    """Speaks JSON to ``/payments`` and ``/webhooks/pix`` under ``base_url``."""

    def __init__(self, base_url: str, timeout: float = 15.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    @staticmethod
    def _escape(segment: str) -> str:
        return urllib.parse.quote(segment, safe=_PATH_SAFE)

    def _send(
        self, method: str, path: str, payload: Optional[dict[str, Any]] = None
    ) -> tuple[int, bytes]:
        data = None
        headers = {}
        if payload is not None:
            data = json.dumps(payload).encode()
            headers["Content-Type"] = "application/json"
        request = urllib.request.Request(
            self._base_url + path, data=data, headers=headers, method=method
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                return response.status, response.read()
        except urllib.error.HTTPError as exc:
            try:
                return exc.code, b""
            finally:
                exc.close()
        except (urllib.error.URLError, OSError) as exc:
            raise TargetError(str(exc)) from exc

    @staticmethod
    def _decode_payment(body: bytes) -> Payment:
        try:
            data = json.loads(body)
        except ValueError as exc:
            raise TargetError(f"invalid payment response: {exc}") from exc
        if not isinstance(data, dict):
            raise TargetError("invalid payment response: expected an object")
        return Payment.from_dict(data)

    def create_payment(self, request: CreatePaymentRequest) -> Payment:
        status, body = self._send("POST", "/payments", request.to_dict())
        if status >= 300:
            raise TargetError(f"create payment http status {status}")
        return self._decode_payment(body)

    def get_payment(self, payment_id: str) -> Payment:
        status, body = self._send("GET", "/payments/" + self._escape(payment_id))
        if status >= 300:
            raise TargetError(f"get payment http status {status}")
        return self._decode_payment(body)

    def handle_webhook(self, event: WebhookEvent) -> None:
        status, _ = self._send("POST", "/webhooks/pix", event.to_dict())
        if status >= 300:
            raise TargetError(f"webhook http status {status}")

    def reconcile(self, payment_id: str) -> None:
        path = "/payments/" + self._escape(payment_id) + "/reconcile"
        status, _ = self._send("POST", path)
        if status >= 300:
            raise TargetError(f"reconcile http status {status}")