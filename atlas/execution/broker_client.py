from __future__ import annotations

import logging
import random
import time
from typing import Any, Callable

import requests

LOGGER = logging.getLogger(__name__)


class BrokerAPIError(RuntimeError):
    """Non-retryable broker API error."""


class RetryableBrokerAPIError(BrokerAPIError):
    """Retryable API/network error."""


def _parse_retry_after(headers: Any) -> float | None:
    value = headers.get("Retry-After")
    if not value:
        return None
    try:
        parsed = float(value.strip())
    except ValueError:
        return None
    if parsed < 0:
        return None
    return parsed


class BrokerClient:
    """
    REST client for a fixed-expiry options broker.

    Endpoints:
    - POST /trades {symbol, direction, amount, expiry_minutes} -> {"id": ...}
    - GET /trades/{id} -> {"status": "open"|"closed", "result": "win"|"loss", "profit": float}
    - GET /account -> {"balance": float}

    429 and 5xx responses and network errors are retried with exponential
    backoff plus jitter; other 4xx responses fail immediately.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout_seconds: int = 10,
        *,
        request_max_attempts: int = 4,
        backoff_base_seconds: float = 0.5,
        backoff_max_seconds: float = 10.0,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = base_url.strip().rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.request_max_attempts = max(1, int(request_max_attempts))
        self.backoff_base_seconds = max(0.0, float(backoff_base_seconds))
        self.backoff_max_seconds = max(self.backoff_base_seconds, float(backoff_max_seconds))
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Accept": "application/json",
                "Content-Type": "application/json",
            }
        )
        self._sleep = sleep
        self.total_requests = 0
        self.total_retries = 0

    def _auth_headers(self) -> dict[str, str]:
        if not self.api_key:
            return {}
        return {"Authorization": f"Bearer {self.api_key}"}

    def _sleep_retry(self, *, endpoint: str, attempt: int, reason: str, retry_after: float | None = None) -> None:
        if retry_after is not None:
            sleep_seconds = max(0.0, retry_after)
        else:
            exponential = min(
                self.backoff_max_seconds,
                self.backoff_base_seconds * (2 ** max(0, attempt - 1)),
            )
            jitter = random.uniform(0.0, max(0.01, exponential * 0.2))
            sleep_seconds = min(self.backoff_max_seconds, exponential + jitter)
        self.total_retries += 1
        LOGGER.warning(
            "Retrying broker API call endpoint=%s attempt=%d/%d sleep=%.2fs reason=%s",
            endpoint,
            attempt,
            self.request_max_attempts,
            sleep_seconds,
            reason,
        )
        self._sleep(sleep_seconds)

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        for attempt in range(1, self.request_max_attempts + 1):
            self.total_requests += 1
            try:
                response = self.session.request(
                    method=method,
                    url=f"{self.base_url}{path}",
                    json=json,
                    headers=self._auth_headers(),
                    timeout=self.timeout_seconds,
                )
            except requests.RequestException as exc:
                if attempt >= self.request_max_attempts:
                    raise RetryableBrokerAPIError(f"Network error {method} {path}: {exc}") from exc
                self._sleep_retry(endpoint=path, attempt=attempt, reason=f"network:{type(exc).__name__}")
                continue

            if response.status_code == 429:
                if attempt >= self.request_max_attempts:
                    raise RetryableBrokerAPIError(
                        f"Retryable API error: HTTP {response.status_code} {response.text}"
                    )
                self._sleep_retry(
                    endpoint=path,
                    attempt=attempt,
                    reason="http_429",
                    retry_after=_parse_retry_after(response.headers),
                )
                continue

            if response.status_code in (500, 502, 503, 504):
                if attempt >= self.request_max_attempts:
                    raise RetryableBrokerAPIError(
                        f"Retryable API error: HTTP {response.status_code} {response.text}"
                    )
                self._sleep_retry(endpoint=path, attempt=attempt, reason=f"http_{response.status_code}")
                continue

            if response.status_code >= 400:
                raise BrokerAPIError(f"API error {method} {path}: HTTP {response.status_code} {response.text}")

            if not response.text:
                return {}
            try:
                payload = response.json()
            except ValueError as exc:
                raise BrokerAPIError(f"Invalid JSON from {method} {path}") from exc
            return payload if isinstance(payload, dict) else {"data": payload}

        raise RetryableBrokerAPIError(f"Could not complete request {method} {path}")

    def place_trade(self, *, symbol: str, direction: str, amount: float, expiry_minutes: int) -> str:
        payload = {
            "symbol": symbol,
            "direction": direction,
            "amount": amount,
            "expiry_minutes": expiry_minutes,
        }
        response = self._request("POST", "/trades", json=payload)
        trade_id = response.get("id") or response.get("trade_id")
        if not trade_id:
            raise BrokerAPIError(f"Broker did not return a trade id: {response}")
        return str(trade_id)

    def get_trade(self, trade_id: str) -> dict[str, Any]:
        return self._request("GET", f"/trades/{trade_id}")

    def get_balance(self) -> float:
        payload = self._request("GET", "/account")
        try:
            return float(payload["balance"])
        except (KeyError, TypeError, ValueError) as exc:
            raise BrokerAPIError(f"Missing balance in account payload: {payload}") from exc
