from __future__ import annotations

from decimal import Decimal
from typing import Any

import requests
from requests import Response
from requests.adapters import HTTPAdapter
from urllib3.util import Retry

from config import config
from domain.base_types import CurrencyPair
from domain.rates import to_rate

from .rate_sources import MalformedResponseError, ProviderUnavailableError, RateSource


class _CoinGeckoClient:
    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        session: requests.Session | None = None,
        retry_attempts: int = 2,
        retry_backoff_seconds: float = 1,
    ) -> None:
        self.base_url = (base_url or config().coingecko_base_url).rstrip("/")
        self.timeout = timeout if timeout is not None else config().request_timeout_seconds
        self._session = session or requests.Session()

        retry = Retry(
            total=retry_attempts,
            backoff_factor=retry_backoff_seconds,
            status_forcelist={429},
            allowed_methods={"GET"},
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry)
        self._session.mount("https://", adapter)
        self._session.mount("http://", adapter)

    def get_simple_price(self, *, coin_id: str, vs_currency: str) -> Decimal:
        vs_key = vs_currency.lower()
        payload = self._request("GET", "/simple/price", params={"ids": coin_id, "vs_currencies": vs_key})

        entry = payload.get(coin_id)
        if not isinstance(entry, dict):
            raise MalformedResponseError(f"CoinGecko payload missing {coin_id}", payload=payload)

        price = to_rate(entry.get(vs_key))
        if price is None:
            raise MalformedResponseError(
                f"CoinGecko returned no usable {coin_id} price in {vs_currency.upper()}", payload=payload
            )
        return price

    def _request(self, method: str, path: str, *, params: dict[str, Any] | None = None) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self._session.request(method, url, params=params, timeout=self.timeout)
            response.raise_for_status()
        except requests.HTTPError as exc:
            resp = exc.response
            message, payload_err = self._extract_error(resp)
            status_code = getattr(resp, "status_code", None)
            raise ProviderUnavailableError(message, status_code=status_code, payload=payload_err) from exc
        except requests.RequestException as exc:
            status_code = getattr(getattr(exc, "response", None), "status_code", None)
            raise ProviderUnavailableError("CoinGecko request failed", status_code=status_code) from exc

        try:
            payload: dict[str, Any] = response.json()
        except ValueError as exc:
            raise MalformedResponseError("CoinGecko returned invalid JSON", payload=response.text) from exc

        if not isinstance(payload, dict):
            raise MalformedResponseError("CoinGecko returned unexpected payload type", payload=payload)

        status = payload.get("status")
        if isinstance(status, dict) and status.get("error_message"):
            raise ProviderUnavailableError(
                status["error_message"], status_code=status.get("error_code"), payload=payload
            )

        return payload

    @staticmethod
    def _extract_error(response: Response | None) -> tuple[str, Any | None]:
        message = "CoinGecko request failed"
        if response is None:
            return message, None
        try:
            payload = response.json()
            if isinstance(payload, dict):
                status = payload.get("status")
                if isinstance(status, dict) and status.get("error_message"):
                    message = status["error_message"]
                elif payload.get("error"):
                    message = str(payload["error"])
        except ValueError:
            payload = response.text
        return message, payload


class CoinGeckoSource(RateSource):
    def __init__(
        self,
        *,
        client: _CoinGeckoClient | None = None,
        coin_id: str = "bitcoin",
        source_name: str = "coingecko-simple-price",
    ) -> None:
        if not coin_id:
            msg = "coin_id must be provided"
            raise ValueError(msg)
        self.client = client or _CoinGeckoClient()
        self.coin_id = coin_id
        self.source_name = source_name

    def provider_for(self, pair: CurrencyPair) -> str:
        return self.source_name

    def fetch_rate(self, pair: CurrencyPair) -> Decimal:
        if not pair.is_btc_price:
            msg = f"CoinGecko source only serves BTC prices, got {pair}"
            raise ValueError(msg)
        return self.client.get_simple_price(coin_id=self.coin_id, vs_currency=pair.quote)


__all__ = ["CoinGeckoSource"]
