from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import requests
from requests import Response
from requests.adapters import HTTPAdapter
from urllib3.util import Retry

from config import config
from domain.base_types import Currency, CurrencyPair, currency
from domain.rates import to_rate

from .rate_sources import MalformedResponseError, ProviderUnavailableError, RateSource


@dataclass(frozen=True)
class LatestRates:
    base: Currency
    timestamp: datetime | None
    rates: dict[Currency, Decimal]


class _ExchangeRateApiClient:
    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        session: requests.Session | None = None,
        retry_attempts: int = 2,
        retry_backoff_seconds: float = 1,
    ) -> None:
        self.base_url = (base_url or config().exchange_rate_api_base_url).rstrip("/")
        self.timeout = timeout if timeout is not None else config().request_timeout_seconds
        self._session = session or requests.Session()

        retries = Retry(
            total=retry_attempts,
            backoff_factor=retry_backoff_seconds,
            status_forcelist=[429],
            allowed_methods=frozenset({"GET"}),
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retries)
        self._session.mount("https://", adapter)
        self._session.mount("http://", adapter)

    def get_latest_rates(self, *, base: Currency) -> LatestRates:
        payload = self._request("GET", f"/v4/latest/{base.upper()}")

        base_raw = payload.get("base")
        rates_raw = payload.get("rates")
        if base_raw is None or not isinstance(rates_raw, dict):
            raise MalformedResponseError("ExchangeRate-API payload missing required fields", payload=payload)

        timestamp = _parse_timestamp(payload.get("time_last_updated"), payload)

        # Unusable entries are dropped here so a bad quote is reported as missing rather than as zero.
        parsed_rates: dict[Currency, Decimal] = {}
        for code_raw, value in rates_raw.items():
            rate = to_rate(value)
            if rate is not None:
                parsed_rates[currency(str(code_raw))] = rate

        return LatestRates(base=currency(str(base_raw)), timestamp=timestamp, rates=parsed_rates)

    def _request(self, method: str, path: str) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self._session.request(method, url, timeout=self.timeout)
            response.raise_for_status()
        except requests.HTTPError as exc:
            resp = exc.response
            status_code = getattr(resp, "status_code", None)
            message, payload = self._extract_error(resp)
            raise ProviderUnavailableError(message, status_code=status_code, payload=payload) from exc
        except requests.RequestException as exc:
            status_code = getattr(getattr(exc, "response", None), "status_code", None)
            raise ProviderUnavailableError("ExchangeRate-API request failed", status_code=status_code) from exc

        try:
            payload_raw = response.json()
        except ValueError as exc:
            raise MalformedResponseError("ExchangeRate-API returned invalid JSON", payload=response.text) from exc

        if not isinstance(payload_raw, dict):
            raise MalformedResponseError("ExchangeRate-API returned unexpected payload type", payload=payload_raw)

        if payload_raw.get("result") == "error":
            message = payload_raw.get("error-type") or "ExchangeRate-API error"
            raise ProviderUnavailableError(message, payload=payload_raw)

        return payload_raw

    @staticmethod
    def _extract_error(response: Response | None) -> tuple[str, Any | None]:
        message = "ExchangeRate-API request failed"
        payload: Any | None = None
        if response is None:
            return message, payload

        try:
            payload = response.json()
            if isinstance(payload, dict):
                message = payload.get("error-type") or payload.get("message") or message
        except ValueError:
            payload = response.text
        return message, payload


def _parse_timestamp(raw: Any, payload: dict[str, Any]) -> datetime | None:
    if not raw:
        return None
    try:
        return datetime.fromtimestamp(int(raw), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError) as exc:
        msg = f"ExchangeRate-API returned invalid time_last_updated {raw!r}"
        raise MalformedResponseError(msg, payload=payload) from exc


class ExchangeRateApiSource(RateSource):
    def __init__(
        self,
        *,
        client: _ExchangeRateApiClient | None = None,
        source_name: str = "exchange-rate-api-latest",
    ) -> None:
        self.client = client or _ExchangeRateApiClient()
        self.source_name = source_name

    def provider_for(self, pair: CurrencyPair) -> str:
        return self.source_name

    def fetch_rate(self, pair: CurrencyPair) -> Decimal:
        if pair.is_btc_price:
            msg = f"ExchangeRate-API source only serves fiat pairs, got {pair}"
            raise ValueError(msg)
        latest = self.client.get_latest_rates(base=pair.base)
        try:
            return latest.rates[pair.quote]
        except KeyError as exc:
            msg = f"Currency {pair.quote} not available in ExchangeRate-API data for {pair.base}"
            raise MalformedResponseError(msg) from exc


__all__ = ["ExchangeRateApiSource", "LatestRates"]
