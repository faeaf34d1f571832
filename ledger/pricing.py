import logging
from decimal import Decimal, InvalidOperation
from typing import Iterable, Optional

import httpx

logger = logging.getLogger(__name__)

COINGECKO_SIMPLE_PRICE_URL = "https://api.coingecko.com/api/v3/simple/price"


class PriceOracle:
    """USD unit prices keyed by market-data id (e.g. ``bitcoin``).

    Implementations never raise for unknown ids or feed outages; a missing
    entry in the returned map means the price is unavailable.
    """

    def get_prices(self, currency_ids: Iterable[str]) -> dict[str, Decimal]:
        raise NotImplementedError

    def get_price(self, currency_id: str) -> Optional[Decimal]:
        return self.get_prices([currency_id]).get(currency_id)

    def usd_value(self, amount: Decimal, currency_id: str) -> Decimal:
        price = self.get_price(currency_id)
        return amount * price if price is not None else Decimal("0")


class StaticPriceOracle(PriceOracle):
    def __init__(self, prices: Optional[dict[str, Decimal]] = None):
        self.prices = {k: Decimal(str(v)) for k, v in (prices or {}).items()}

    def set_price(self, currency_id: str, price) -> None:
        self.prices[currency_id] = Decimal(str(price))

    def get_prices(self, currency_ids: Iterable[str]) -> dict[str, Decimal]:
        return {cid: self.prices[cid] for cid in set(currency_ids) if cid in self.prices}


class CoinGeckoPriceOracle(PriceOracle):
    def __init__(
        self,
        base_url: str = COINGECKO_SIMPLE_PRICE_URL,
        timeout: float = 5.0,
        client: Optional[httpx.Client] = None,
    ):
        self.base_url = base_url
        self.timeout = timeout
        self.client = client or httpx.Client(timeout=timeout)

    def get_prices(self, currency_ids: Iterable[str]) -> dict[str, Decimal]:
        ids = sorted({cid for cid in currency_ids if cid})
        if not ids:
            return {}

        try:
            response = self.client.get(
                self.base_url,
                params={"ids": ",".join(ids), "vs_currencies": "usd"},
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.warning(f"Price feed returned {e.response.status_code} for {ids}; treating prices as unavailable")
            return {}
        except Exception as e:
            logger.warning(f"Price feed unreachable for {ids}: {e}; treating prices as unavailable")
            return {}

        if not isinstance(data, dict):
            logger.warning(f"Unexpected price feed payload for {ids}")
            return {}

        prices = {}
        for cid in ids:
            quote = data.get(cid)
            if not isinstance(quote, dict) or quote.get("usd") is None:
                continue
            try:
                price = Decimal(str(quote["usd"]))
            except InvalidOperation:
                continue
            if price.is_finite():
                prices[cid] = price
        return prices

    def close(self) -> None:
        self.client.close()
