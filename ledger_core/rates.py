"""
Currency Rate Module

Rate sources, cached quotes with a validity window, and pure conversion.

Rates are kept relative to USD (units of currency per 1 USD); cross rates
pivot through USD. A Quote is valid for ``validity_seconds`` after it was
fetched; operations holding a quote re-check it after taking their locks
and abort with RateStaleError if the window has elapsed.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, List, Optional, Tuple
import threading
import uuid

import httpx

from .currency import Currency, Money
from .errors import RateStaleError, RateUnavailableError
from .logging_config import get_logger
from .storage import StorageInterface

logger = get_logger("ledger.rates")

# Units of currency per 1 USD
DEFAULT_USD_RATES: Dict[str, Decimal] = {
    "USD": Decimal("1"),
    "EUR": Decimal("0.92"),
    "GBP": Decimal("0.79"),
    "JPY": Decimal("149.50"),
    "CAD": Decimal("1.36"),
    "CHF": Decimal("0.88"),
    "AUD": Decimal("1.52"),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RateSource(ABC):
    """Provider of spot exchange rates"""

    @abstractmethod
    def get_rate(self, from_currency: Currency, to_currency: Currency) -> Decimal:
        """Units of to_currency for one unit of from_currency

        Raises:
            RateUnavailableError: no rate known for the pair
        """
        pass

    def close(self) -> None:
        pass


class StaticRateSource(RateSource):
    """In-process USD-pivot rate table, updatable by admins"""

    def __init__(self, rates_to_usd: Optional[Dict[str, Decimal]] = None):
        self._rates = {code: Decimal(str(rate)) for code, rate in (rates_to_usd or DEFAULT_USD_RATES).items()}
        self._rates.setdefault("USD", Decimal("1"))
        self._lock = threading.Lock()

    def set_rate(self, currency: Currency, rate_to_usd: Decimal) -> None:
        """Update the USD rate for one currency"""
        rate_to_usd = Decimal(str(rate_to_usd))
        if rate_to_usd <= 0:
            raise ValueError("Rate must be positive")
        with self._lock:
            self._rates[Currency.from_code(currency).code] = rate_to_usd

    def get_rate(self, from_currency: Currency, to_currency: Currency) -> Decimal:
        with self._lock:
            source = self._rates.get(from_currency.code)
            target = self._rates.get(to_currency.code)
        if source is None or target is None:
            raise RateUnavailableError(
                f"No rate for {from_currency.code}->{to_currency.code}",
                {"from": from_currency.code, "to": to_currency.code}
            )
        # (target per USD) / (source per USD)
        return target / source

    def all_rates(self) -> Dict[str, Decimal]:
        with self._lock:
            return dict(self._rates)


class HttpRateSource(RateSource):
    """REST client for an external rate service"""

    def __init__(self, base_url: str, timeout: float = 2.0, api_key: Optional[str] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.api_key = api_key
        self._client = httpx.Client(timeout=timeout)

    def get_rate(self, from_currency: Currency, to_currency: Currency) -> Decimal:
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            response = self._client.get(
                f"{self.base_url}/rates",
                params={"from": from_currency.code, "to": to_currency.code},
                headers=headers
            )
        except httpx.HTTPError as e:
            logger.error(f"Rate service connection failed: {e}")
            raise RateUnavailableError(f"Rate service unavailable: {e}")

        if response.status_code != 200:
            logger.warning(f"Rate service returned {response.status_code}: {response.text}")
            raise RateUnavailableError(
                f"No rate for {from_currency.code}->{to_currency.code}",
                {"status": response.status_code}
            )

        try:
            rate = Decimal(str(response.json()["rate"]))
        except (KeyError, ValueError, TypeError, InvalidOperation):
            raise RateUnavailableError("Malformed rate response")
        if rate <= 0:
            raise RateUnavailableError("Non-positive rate from rate service")
        return rate

    def close(self):
        """Close the HTTP client"""
        self._client.close()


@dataclass(frozen=True)
class Quote:
    """A rate with a bounded validity window"""
    from_currency: Currency
    to_currency: Currency
    rate: Decimal
    as_of: datetime
    expires_at: datetime

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) < self.expires_at


class CurrencyConverter:
    """Caches quotes from a RateSource and converts amounts"""

    def __init__(
        self,
        source: RateSource,
        validity_seconds: int = 300,
        storage: Optional[StorageInterface] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.source = source
        self.validity = timedelta(seconds=validity_seconds)
        self.storage = storage
        self.clock = clock
        self.history_table = "rate_history"
        self._cache: Dict[Tuple[str, str], Quote] = {}
        self._lock = threading.Lock()

    def get_rate(self, from_currency: Currency, to_currency: Currency) -> Quote:
        """
        Current quote for a pair, fetched from the source when the cached one expired

        Raises:
            RateUnavailableError: source has no rate for the pair
        """
        now = self.clock()
        if from_currency == to_currency:
            return Quote(from_currency, to_currency, Decimal("1"), now, now + self.validity)

        key = (from_currency.code, to_currency.code)
        with self._lock:
            cached = self._cache.get(key)
        if cached and cached.is_valid(now):
            return cached
        return self.refresh(from_currency, to_currency)

    def refresh(self, from_currency: Currency, to_currency: Currency) -> Quote:
        """Fetch a new quote, bypassing the cache"""
        rate = self.source.get_rate(from_currency, to_currency)
        now = self.clock()
        quote = Quote(from_currency, to_currency, rate, now, now + self.validity)
        with self._lock:
            self._cache[(from_currency.code, to_currency.code)] = quote
        return quote

    def ensure_fresh(self, quote: Quote) -> None:
        """Raise RateStaleError if the quote's window has elapsed"""
        if not quote.is_valid(self.clock()):
            raise RateStaleError(
                f"Quote for {quote.from_currency.code}->{quote.to_currency.code} expired",
                {"as_of": quote.as_of, "expires_at": quote.expires_at}
            )

    @staticmethod
    def convert(amount: Money, rate: Decimal, to_currency: Currency) -> Money:
        """Pure conversion, rounded half-even to the target currency's precision"""
        return Money(amount.amount * rate, to_currency)

    def convert_at_market(self, amount: Money, to_currency: Currency) -> Money:
        """Convert with the current quote (valuation only, never for posting)"""
        if amount.currency == to_currency:
            return amount
        quote = self.get_rate(amount.currency, to_currency)
        return self.convert(amount, quote.rate, to_currency)

    def record_history(self, quote: Quote, correlation_id: Optional[str] = None) -> None:
        """Persist a rate actually applied to a committed operation"""
        if not self.storage:
            return
        record_id = str(uuid.uuid4())
        now = self.clock().isoformat()
        self.storage.save(self.history_table, record_id, {
            'id': record_id,
            'from_currency': quote.from_currency.code,
            'to_currency': quote.to_currency.code,
            'rate': str(quote.rate),
            'as_of': quote.as_of.isoformat(),
            'correlation_id': correlation_id,
            'created_at': now,
            'updated_at': now
        })

    def get_rate_history(self, from_currency: Currency, to_currency: Currency) -> List[Dict]:
        if not self.storage:
            return []
        rows = self.storage.find(self.history_table, {
            'from_currency': from_currency.code, 'to_currency': to_currency.code
        })
        rows.sort(key=lambda r: r['created_at'])
        return rows
