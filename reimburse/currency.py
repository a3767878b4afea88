import time
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Dict, Optional

import requests

from reimburse.config import settings
from reimburse.logging_config import get_logger

logger = get_logger("currency")

# Used when restcountries is unreachable
COUNTRY_CURRENCIES = {
    "US": "USD",
    "GB": "GBP",
    "EU": "EUR",
    "IN": "INR",
    "CA": "CAD",
    "AU": "AUD",
    "DE": "EUR",
    "FR": "EUR",
    "JP": "JPY",
    "CN": "CNY",
    "BR": "BRL",
    "MX": "MXN",
}

def get_company_currency_for_country(country_code: str, session=requests) -> str:
    code = country_code.strip().upper()
    # Query restcountries to map country -> currency
    try:
        resp = session.get(settings.COUNTRIES_API_URL, timeout=settings.HTTP_TIMEOUT_SECONDS)
        resp.raise_for_status()
        for c in resp.json():
            if c.get("cca2") == code:
                currencies = c.get("currencies", {})
                if currencies:
                    # Pick the first currency code
                    return list(currencies.keys())[0]
    except (requests.RequestException, ValueError, AttributeError) as exc:
        logger.warning("Country lookup failed", extra={"event": "currency.country_lookup_failed",
                                                       "country_code": code, "reason": str(exc)})
    return COUNTRY_CURRENCIES.get(code, settings.DEFAULT_CURRENCY)


class RateCache:
    """Exchange rates keyed by base currency, each entry valid for ``ttl_seconds``."""

    def __init__(self, ttl_seconds: float = settings.RATE_CACHE_TTL_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, tuple[float, Dict[str, float]]] = {}

    def get(self, base: str) -> Optional[Dict[str, float]]:
        entry = self._entries.get(base.upper())
        if entry is None:
            return None
        stored_at, rates = entry
        if self._clock() - stored_at >= self.ttl_seconds:
            del self._entries[base.upper()]
            return None
        return rates

    def put(self, base: str, rates: Dict[str, float]) -> None:
        self._entries[base.upper()] = (self._clock(), dict(rates))

    def invalidate(self, base: Optional[str] = None) -> None:
        if base is None:
            self._entries.clear()
        else:
            self._entries.pop(base.upper(), None)


@dataclass(frozen=True)
class Conversion:
    converted_amount: Decimal
    rate: Decimal


class CurrencyConverter:
    """Converts amounts for reporting. Never raises: failures convert 1:1."""

    def __init__(self, cache: Optional[RateCache] = None, session=requests):
        self.cache = cache if cache is not None else RateCache()
        self._session = session

    def fetch_rates(self, base: str) -> Dict[str, float]:
        base = base.upper()
        cached = self.cache.get(base)
        if cached is not None:
            return cached
        url = f"{settings.EXCHANGE_RATE_API_URL.rstrip('/')}/{base}"
        resp = self._session.get(url, timeout=settings.HTTP_TIMEOUT_SECONDS)
        resp.raise_for_status()
        rates = resp.json().get("rates", {})
        self.cache.put(base, rates)
        return rates

    def rate(self, from_ccy: str, to_ccy: str) -> Decimal:
        if from_ccy.upper() == to_ccy.upper():
            return Decimal("1")
        # Get rates with base = from_ccy and read rate to to_ccy
        rate = self.fetch_rates(from_ccy).get(to_ccy.upper())
        if rate:
            return Decimal(str(rate))
        # Fallback: try base = to_ccy (invert)
        back = self.fetch_rates(to_ccy).get(from_ccy.upper())
        if not back:
            raise ValueError(f"Conversion rate {from_ccy}->{to_ccy} not available")
        return Decimal("1") / Decimal(str(back))

    def convert(self, amount, from_ccy: str, to_ccy: str) -> Conversion:
        amount = Decimal(str(amount))
        try:
            rate = self.rate(from_ccy, to_ccy)
        except (requests.RequestException, ValueError, TypeError, AttributeError, ArithmeticError) as exc:
            logger.warning(
                "Currency conversion failed, using original amount",
                extra={"event": "currency.conversion_fallback", "from_currency": from_ccy,
                       "to_currency": to_ccy, "reason": str(exc)},
            )
            return Conversion(converted_amount=amount, rate=Decimal("1"))
        converted = (amount * rate).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        return Conversion(converted_amount=converted, rate=rate)


converter = CurrencyConverter()

def convert(amount, from_ccy: str, to_ccy: str) -> Conversion:
    return converter.convert(amount, from_ccy, to_ccy)
