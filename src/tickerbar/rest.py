from typing import Any

import httpx
from loguru import logger

from tickerbar.errors import RestError
from tickerbar.models import InstrumentType


class OkxRestClient:
    """Thin wrapper over the public OKX REST market endpoints.

    Transport failures surface as `httpx.HTTPError`; well-formed responses
    that report an API error (non-zero `code`) or carry an unexpected body
    raise `RestError`.
    """

    venue_name = "okx"

    def __init__(self, http_client: httpx.AsyncClient, base_url: str) -> None:
        """Initializes the client.

        Args:
            http_client: A shared httpx.AsyncClient for making REST API calls.
            base_url: The API root, e.g. "https://www.okx.com/api/v5".
        """
        self.http_client = http_client
        self.base_url = base_url.rstrip("/")

    async def fetch_tickers(
        self, instrument_type: InstrumentType
    ) -> list[dict[str, Any]]:
        """Fetches every ticker of one instrument type."""
        return await self._get(
            "/market/tickers", params={"instType": instrument_type.value}
        )

    async def fetch_ticker(self, inst_id: str) -> dict[str, Any] | None:
        """Fetches one instrument's ticker, or None if the venue has none."""
        data = await self._get("/market/ticker", params={"instId": inst_id})
        return data[0] if data else None

    async def fetch_usd_cny_rate(self) -> float:
        """Fetches the USD/CNY conversion rate.

        Raises:
            RestError: If the response does not contain a positive rate.
        """
        data = await self._get("/market/exchange-rate")
        try:
            rate = float(data[0]["usdCny"])
        except (IndexError, KeyError, TypeError, ValueError) as e:
            err_msg = f"Unexpected exchange-rate payload: {data}"
            raise RestError(err_msg) from e
        if rate <= 0:
            err_msg = f"Non-positive exchange rate: {rate}"
            raise RestError(err_msg)
        return rate

    async def _get(
        self, path: str, params: dict[str, str] | None = None
    ) -> list[dict[str, Any]]:
        url = f"{self.base_url}{path}"
        response = await self.http_client.get(url, params=params)
        response.raise_for_status()
        try:
            body = response.json()
        except ValueError as e:
            err_msg = f"Non-JSON response from {url}"
            raise RestError(err_msg) from e

        if not isinstance(body, dict) or body.get("code") != "0":
            message = body.get("msg") if isinstance(body, dict) else body
            logger.error(f"[{self.venue_name}] API error for {path}: {message}")
            err_msg = f"API error for {path}: {message}"
            raise RestError(err_msg)

        data = body.get("data")
        if not isinstance(data, list):
            err_msg = f"Missing 'data' list in response from {path}"
            raise RestError(err_msg)
        return [item for item in data if isinstance(item, dict)]
