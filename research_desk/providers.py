"""HTTP clients for the market-data providers (Financial Modeling Prep and Finnhub)."""

import asyncio
import logging
import re
from datetime import date, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from research_desk.cache import ResponseCache, make_cache_key
from research_desk.config import CacheTTLs, Settings
from research_desk.errors import ConfigurationError, ProviderError
from research_desk.retry import ResilientCall


logger = logging.getLogger(__name__)

_SECRET_QUERY = re.compile(r"(apikey|token|api_key)=[^&]+", re.IGNORECASE)

# Amount ranges look like "$15,001 - $50,000" or "$1,001"
_AMOUNT = re.compile(r"\$\s*([0-9][0-9,]*(?:\.[0-9]+)?)")

TRADE_FIELDS = (
    "name", "position", "assetName", "amountFrom", "amountTo", "transactionDate",
    "filingDate", "transactionType", "ownerType", "symbol", "link", "comment",
)

STATEMENT_KINDS = ("income-statement", "cash-flow-statement", "ratios", "key-metrics")
TTM_KINDS = ("income-statement", "balance-sheet-statement", "cash-flow-statement", "ratios", "key-metrics")

BALANCE_SHEET_ENDPOINTS = (
    ("v3/balance-sheet-statement/{symbol}", {"limit": 5}),
    ("v3/balance-sheet/{symbol}", {"limit": 5}),
    ("v3/financials/balance-sheet-statement/{symbol}", {}),
    ("v3/balance-sheet-statement-as-reported/{symbol}", {"limit": 5}),
)


def redact_url(url: str) -> str:
    """Hide API keys in a URL before it is logged."""
    return _SECRET_QUERY.sub(lambda m: f"{m.group(1)}=API_KEY_HIDDEN", url)


def is_retryable(exc: BaseException) -> bool:
    """Retry transport failures, rate limiting and 5xx answers only."""
    if isinstance(exc, ProviderError):
        return exc.retryable
    return isinstance(exc, httpx.TransportError)


def parse_amount_range(amount: Optional[str]) -> Tuple[float, float]:
    """
    Parse a disclosure amount such as "$15,001 - $50,000".

    A single amount gives the same lower and upper bound; anything
    unparseable gives (0, 0).
    """
    if not amount:
        return 0.0, 0.0
    values = [float(m.replace(",", "")) for m in _AMOUNT.findall(str(amount))]
    if not values:
        return 0.0, 0.0
    low = values[0]
    high = values[1] if len(values) > 1 else low
    return low, high


def normalize_fmp_trade(trade: Dict[str, Any]) -> Dict[str, Any]:
    """Map an FMP Senate/House disclosure onto the shared trade schema."""
    amount_from, amount_to = parse_amount_range(trade.get("amount"))
    name = trade.get("representative")
    if not name:
        name = f"{trade.get('firstName') or ''} {trade.get('lastName') or ''}".strip()
    position = f"{trade.get('office') or ''} {trade.get('district') or ''}".strip()
    return {
        "name": name,
        "position": position,
        "assetName": trade.get("assetDescription"),
        "amountFrom": amount_from,
        "amountTo": amount_to,
        "transactionDate": trade.get("transactionDate"),
        "filingDate": trade.get("disclosureDate"),
        "transactionType": "Sale" if trade.get("type") == "Sale" else "Purchase",
        "ownerType": trade.get("owner"),
        "symbol": trade.get("symbol"),
        "link": trade.get("link"),
        "comment": trade.get("comment"),
    }


def normalize_finnhub_trade(trade: Dict[str, Any]) -> Dict[str, Any]:
    """Finnhub already uses the shared field names; keep those and fill the gaps."""
    record = {name: trade.get(name) for name in TRADE_FIELDS}
    for bound in ("amountFrom", "amountTo"):
        try:
            record[bound] = float(record[bound]) if record[bound] is not None else 0.0
        except (TypeError, ValueError):
            record[bound] = 0.0
    return record


def _first_row(data: Any) -> Optional[Dict[str, Any]]:
    if isinstance(data, list):
        return data[0] if data and isinstance(data[0], dict) else None
    if isinstance(data, dict) and data:
        return data
    return None


def _as_list(data: Any) -> List[Any]:
    return data if isinstance(data, list) else []


class ProviderClient:
    """
    Shared plumbing for one upstream provider.

    Every GET goes through the retry policy (transport errors, 429 and 5xx
    only) and, when a cache family is given, the response cache. API keys
    are sent as query parameters and redacted from every log line.
    """

    provider = "provider"

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str,
        http: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        retry: Optional[ResilientCall] = None,
        cache: Optional[ResponseCache] = None,
        cache_ttls: Optional[CacheTTLs] = None
    ) -> None:
        if not api_key:
            raise ConfigurationError(f"{self.provider} API key is not configured")
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=timeout)
        self._retry = retry or ResilientCall(retry_on=is_retryable)
        self._cache = cache
        self._ttls = cache_ttls or CacheTTLs()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def _auth_params(self) -> Dict[str, str]:
        raise NotImplementedError

    async def _request(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """One GET attempt. Raises ProviderError on any failure; 404 means no data."""
        url = f"{self._base_url}/{path.lstrip('/')}"
        query = {k: v for k, v in (params or {}).items() if v is not None}
        query.update(self._auth_params())
        logger.info(f"Calling {self.provider}: {redact_url(str(httpx.URL(url, params=query)))}")

        try:
            response = await self._http.get(url, params=query)
        except httpx.TransportError as e:
            raise ProviderError(self.provider, f"{path}: {type(e).__name__}: {redact_url(str(e))}") from e

        if response.status_code == 404:
            logger.info(f"{self.provider} {path}: not found")
            return None
        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After", "unknown")
            logger.warning(f"{self.provider} rate limit hit on {path} (Retry-After: {retry_after})")
            raise ProviderError(self.provider, f"{path}: rate limited", 429)
        if response.status_code >= 400:
            raise ProviderError(self.provider, f"{path}: {response.reason_phrase}", response.status_code)

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(self.provider, f"{path}: invalid JSON", response.status_code) from e

        if isinstance(data, dict) and data.get("Error Message"):
            raise ProviderError(self.provider, f"{path}: {data['Error Message']}", response.status_code)
        return data

    async def get_json(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        cache_family: Optional[str] = None,
        abort: Optional[asyncio.Event] = None
    ) -> Any:
        """
        GET `path` with retries, serving from the cache when a family is given.

        Args:
            path: Path relative to the provider base URL
            params: Query parameters (API key excluded)
            cache_family: CacheTTLs field deciding the TTL, or None to bypass the cache
            abort: Cooperative cancellation signal

        Returns:
            Decoded JSON, or None when the provider has no such resource
        """
        async def load() -> Any:
            return await self._retry(
                lambda: self._request(path, params),
                description=f"{self.provider} {path}",
                abort=abort,
            )

        if self._cache is None or cache_family is None:
            return await load()

        key = make_cache_key(self.provider, path, params)
        ttl = getattr(self._ttls, cache_family, self._ttls.default)
        return await self._cache.cached(key, ttl, load)


class FMPClient(ProviderClient):
    """Financial Modeling Prep: profiles, quotes, statements, news and disclosures."""

    provider = "fmp"

    def __init__(self, api_key: Optional[str], base_url: str = "https://financialmodelingprep.com/api", **kwargs) -> None:
        super().__init__(api_key, base_url, **kwargs)

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "FMPClient":
        return cls(settings.fmp_api_key, settings.fmp_base_url, timeout=settings.http_timeout, **kwargs)

    def _auth_params(self) -> Dict[str, str]:
        return {"apikey": self._api_key}

    async def profile(self, symbol: str, abort: Optional[asyncio.Event] = None) -> Optional[Dict[str, Any]]:
        data = await self.get_json(f"v3/profile/{symbol}", cache_family="profile", abort=abort)
        return _first_row(data)

    async def quote(self, symbol: str, abort: Optional[asyncio.Event] = None) -> Optional[Dict[str, Any]]:
        data = await self.get_json(f"v3/quote/{symbol}", cache_family="quote", abort=abort)
        return _first_row(data)

    async def statements(
        self,
        symbol: str,
        kind: str,
        limit: int = 5,
        abort: Optional[asyncio.Event] = None
    ) -> List[Dict[str, Any]]:
        """
        Annual statement rows, newest first.

        Args:
            kind: One of STATEMENT_KINDS; balance sheets go through balance_sheet()
        """
        if kind not in STATEMENT_KINDS:
            raise ValueError(f"Unsupported statement kind: {kind}")
        data = await self.get_json(
            f"v3/{kind}/{symbol}", {"limit": limit}, cache_family="financials", abort=abort
        )
        return _as_list(data)

    async def balance_sheet(self, symbol: str, abort: Optional[asyncio.Event] = None) -> List[Dict[str, Any]]:
        """
        Balance sheet rows from the first endpoint that returns any.

        Returns [] when every endpoint answers without data; re-raises the
        last ProviderError when every endpoint failed outright.
        """
        last_error: Optional[ProviderError] = None
        failures = 0
        for template, params in BALANCE_SHEET_ENDPOINTS:
            path = template.format(symbol=symbol)
            try:
                data = await self.get_json(path, params or None, cache_family="financials", abort=abort)
            except ProviderError as e:
                logger.warning(f"Balance sheet endpoint {path} failed: {e}")
                last_error = e
                failures += 1
                continue
            rows = _as_list(data)
            if rows:
                logger.info(f"Balance sheet for {symbol} served by {path}")
                return rows
            logger.info(f"Balance sheet endpoint {path} returned no data, trying next")

        if last_error is not None and failures == len(BALANCE_SHEET_ENDPOINTS):
            raise last_error
        return []

    async def ttm(self, symbol: str, kind: str, abort: Optional[asyncio.Event] = None) -> List[Dict[str, Any]]:
        """Trailing-twelve-month figures for a statement kind."""
        if kind not in TTM_KINDS:
            raise ValueError(f"Unsupported TTM kind: {kind}")
        data = await self.get_json(f"v3/{kind}-ttm/{symbol}", cache_family="financials", abort=abort)
        return _as_list(data)

    async def news(self, symbol: str, limit: int = 10, abort: Optional[asyncio.Event] = None) -> List[Dict[str, Any]]:
        data = await self.get_json(
            "v3/stock_news", {"tickers": symbol, "limit": limit}, cache_family="news", abort=abort
        )
        return _as_list(data)

    async def peers(self, symbol: str, abort: Optional[asyncio.Event] = None) -> List[str]:
        data = await self.get_json("v4/stock_peers", {"symbol": symbol}, cache_family="profile", abort=abort)
        row = _first_row(data)
        if row is None:
            return []
        return [p for p in row.get("peersList") or [] if isinstance(p, str)]

    async def transcripts(self, symbol: str, abort: Optional[asyncio.Event] = None) -> List[Dict[str, Any]]:
        data = await self.get_json(f"v3/earning_call_transcript/{symbol}", cache_family="default", abort=abort)
        return _as_list(data)

    async def filings(self, symbol: str, limit: int = 20, abort: Optional[asyncio.Event] = None) -> List[Dict[str, Any]]:
        data = await self.get_json(
            f"v3/sec_filings/{symbol}", {"limit": limit}, cache_family="default", abort=abort
        )
        return _as_list(data)

    async def senate_trades(self, symbol: str, abort: Optional[asyncio.Event] = None) -> List[Dict[str, Any]]:
        data = await self.get_json("v3/senate-trading", {"symbol": symbol}, cache_family="default", abort=abort)
        return [normalize_fmp_trade(t) for t in _as_list(data) if isinstance(t, dict)]

    async def house_trades(self, symbol: str, abort: Optional[asyncio.Event] = None) -> List[Dict[str, Any]]:
        data = await self.get_json(
            "v3/stock/house-trading", {"symbol": symbol}, cache_family="default", abort=abort
        )
        return [normalize_fmp_trade(t) for t in _as_list(data) if isinstance(t, dict)]

    async def insider_trading(
        self,
        symbol: str,
        limit: int = 100,
        abort: Optional[asyncio.Event] = None
    ) -> List[Dict[str, Any]]:
        """Insider transactions, falling back to the transactions endpoint when the primary has none."""
        params = {"symbol": symbol, "limit": limit}
        try:
            rows = _as_list(await self.get_json("v4/insider-trading", params, cache_family="default", abort=abort))
        except ProviderError as e:
            logger.warning(f"Primary insider endpoint failed for {symbol}: {e}")
            rows = []
        if rows:
            return rows
        data = await self.get_json("v4/insider-trading-transactions", params, cache_family="default", abort=abort)
        return _as_list(data)

    async def acquisition_ownership(
        self,
        symbol: str,
        limit: int = 100,
        abort: Optional[asyncio.Event] = None
    ) -> List[Dict[str, Any]]:
        data = await self.get_json(
            "v4/acquisition-of-beneficial-ownership",
            {"symbol": symbol, "limit": limit},
            cache_family="default",
            abort=abort,
        )
        return _as_list(data)


class FinnhubClient(ProviderClient):
    """Finnhub: company news, social sentiment and congressional trading."""

    provider = "finnhub"

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://finnhub.io/api/v1",
        lookback_days: int = 3 * 365,
        today: Callable[[], date] = date.today,
        **kwargs
    ) -> None:
        super().__init__(api_key, base_url, **kwargs)
        self._lookback = timedelta(days=lookback_days)
        self._today = today

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "FinnhubClient":
        return cls(
            settings.finnhub_api_key,
            settings.finnhub_base_url,
            lookback_days=settings.congressional_lookback_days,
            timeout=settings.http_timeout,
            **kwargs,
        )

    def _auth_params(self) -> Dict[str, str]:
        return {"token": self._api_key}

    def _window(
        self,
        from_date: Optional[str],
        to_date: Optional[str],
        default_span: timedelta
    ) -> Tuple[str, str]:
        today = self._today()
        return (
            from_date or (today - default_span).isoformat(),
            to_date or today.isoformat(),
        )

    async def company_news(
        self,
        symbol: str,
        from_date: Optional[str] = None,
        to_date: Optional[str] = None,
        abort: Optional[asyncio.Event] = None
    ) -> List[Dict[str, Any]]:
        start, end = self._window(from_date, to_date, timedelta(days=30))
        data = await self.get_json(
            "company-news", {"symbol": symbol, "from": start, "to": end}, cache_family="news", abort=abort
        )
        return _as_list(data)

    async def social_sentiment(
        self,
        symbol: str,
        from_date: Optional[str] = None,
        to_date: Optional[str] = None,
        abort: Optional[asyncio.Event] = None
    ) -> List[Dict[str, Any]]:
        params = {"symbol": symbol, "from": from_date, "to": to_date}
        data = await self.get_json("stock/social-sentiment", params, cache_family="news", abort=abort)
        if not isinstance(data, dict):
            return []
        return _as_list(data.get("data"))

    async def congressional_trading(
        self,
        symbol: str,
        from_date: Optional[str] = None,
        to_date: Optional[str] = None,
        abort: Optional[asyncio.Event] = None
    ) -> List[Dict[str, Any]]:
        """Congressional disclosures in the window (default: the lookback period up to today)."""
        start, end = self._window(from_date, to_date, self._lookback)
        data = await self.get_json(
            "stock/congressional-trading",
            {"symbol": symbol, "from": start, "to": end},
            cache_family="default",
            abort=abort,
        )
        if not isinstance(data, dict):
            return []
        return [normalize_finnhub_trade(t) for t in _as_list(data.get("data")) if isinstance(t, dict)]
