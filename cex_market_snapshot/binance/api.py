from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

import aiohttp
import pandas as pd

from ..errors import ExchangeError
from ..exchange import ExchangeClient
from ..types import Instrument, Kline, LsrPoint, LsrScope, RequestRange, Symbol, Timeframe


logger = logging.getLogger(__name__)

BINANCE_FAPI = "https://fapi.binance.com"
BINANCE_API = "https://api.binance.com"

_KLINES_PATH = {
    Instrument.PERP: (BINANCE_FAPI, "/fapi/v1/klines", 1500),
    Instrument.SPOT: (BINANCE_API, "/api/v3/klines", 1000),
}
_EXCHANGE_INFO_PATH = {
    Instrument.PERP: (BINANCE_FAPI, "/fapi/v1/exchangeInfo"),
    Instrument.SPOT: (BINANCE_API, "/api/v3/exchangeInfo"),
}
_LSR_PATH = {
    LsrScope.GLOBAL: "/futures/data/globalLongShortAccountRatio",
    LsrScope.TOP_ACCOUNTS: "/futures/data/topLongShortAccountRatio",
    LsrScope.TOP_POSITIONS: "/futures/data/topLongShortPositionRatio",
}
LSR_MAX_LIMIT = 500
LSR_PERIODS = frozenset({"5m", "15m", "30m", "1h", "2h", "4h", "6h", "12h", "1d"})

# 418 is Binance's IP ban after ignoring 429s
_RETRYABLE_STATUS = frozenset({418, 429, 500, 502, 503, 504})


def parse_exchange_info(payload: Dict[str, Any], instrument: Instrument) -> List[Symbol]:
    """Map an exchangeInfo payload to the symbols that are currently trading."""
    out: List[Symbol] = []
    for row in payload.get("symbols", []):
        if row.get("status") != "TRADING":
            continue
        if instrument is Instrument.PERP and row.get("contractType") != "PERPETUAL":
            continue
        base, quote = row.get("baseAsset"), row.get("quoteAsset")
        if not base or not quote:
            continue
        out.append(Symbol(str(base).upper(), str(quote).upper()))
    return out


def parse_klines(payload: List[List[Any]]) -> List[Kline]:
    klines: List[Kline] = []
    for row in payload:
        # Row format per Binance docs
        # [ openTime, open, high, low, close, volume, closeTime, quoteAssetVolume,
        #   numberOfTrades, takerBuyBaseAssetVolume, takerBuyQuoteAssetVolume, ignore ]
        klines.append(
            Kline(
                open_time_ms=int(row[0]),
                open=str(row[1]),
                high=str(row[2]),
                low=str(row[3]),
                close=str(row[4]),
                volume=str(row[5]),
                close_time_ms=int(row[6]),
                quote_volume=str(row[7]) if len(row) > 7 else "0",
            )
        )
    return klines


def parse_lsr(payload: List[Dict[str, Any]]) -> List[LsrPoint]:
    points: List[LsrPoint] = []
    for row in payload:
        long_share = row.get("longAccount", row.get("longPosition"))
        short_share = row.get("shortAccount", row.get("shortPosition"))
        points.append(
            LsrPoint(
                timestamp_ms=int(row["timestamp"]),
                long_share=float(long_share),
                short_share=float(short_share),
                long_short_ratio=float(row["longShortRatio"]),
            )
        )
    points.sort(key=lambda p: p.timestamp_ms)
    return points


def klines_to_dataframe(klines: List[Kline]) -> pd.DataFrame:
    """Map raw klines into canonical DataFrame: timestamp, open, high, low, close, volume, quote_volume.

    - timestamp: pandas datetime64[ns] (UTC, naive by convention)
    - open_time_ms kept as int64 for lossless persistence
    - numerical columns: float64
    - sorted ascending by timestamp
    """
    cols = ["timestamp", "open_time_ms", "open", "high", "low", "close", "volume", "quote_volume"]
    if not klines:
        return pd.DataFrame(columns=cols).astype(
            {
                "timestamp": "datetime64[ns]",
                "open_time_ms": "int64",
                "open": float,
                "high": float,
                "low": float,
                "close": float,
                "volume": float,
                "quote_volume": float,
            }
        )
    df = pd.DataFrame(
        [
            {
                "timestamp": pd.to_datetime(k.open_time_ms, unit="ms", utc=True).tz_convert(None),
                "open_time_ms": int(k.open_time_ms),
                "open": float(k.open),
                "high": float(k.high),
                "low": float(k.low),
                "close": float(k.close),
                "volume": float(k.volume),
                "quote_volume": float(k.quote_volume),
            }
            for k in klines
        ]
    )
    df = df.sort_values("timestamp", kind="mergesort").reset_index(drop=True)
    return df


class BinanceClient(ExchangeClient):
    """Async Binance REST client over a single shared aiohttp session."""

    name = "Binance"

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        max_tries: int = 3,
        request_timeout_s: float = 60.0,
        backoff_s: float = 0.5,
    ):
        if max_tries < 1:
            raise ValueError("max_tries must be >= 1")
        self._session = session
        self._owns_session = session is None
        self.max_tries = max_tries
        self.request_timeout_s = request_timeout_s
        self.backoff_s = backoff_s

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.request_timeout_s)
            self._session = aiohttp.ClientSession(
                timeout=timeout, headers={"User-Agent": "cex-market-snapshot/0.1"}
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _get_once(self, url: str, params: Dict[str, Any]) -> Any:
        session = self._get_session()
        try:
            async with session.get(url, params=params) as resp:
                if resp.status != 200:
                    code = None
                    msg = resp.reason or "http error"
                    try:
                        body = await resp.json(content_type=None)
                        if isinstance(body, dict):
                            code = body.get("code")
                            msg = body.get("msg", msg)
                    except (aiohttp.ContentTypeError, ValueError):
                        pass
                    raise ExchangeError(
                        f"GET {url} rejected: {msg}",
                        status=resp.status,
                        code=code,
                        retryable=resp.status in _RETRYABLE_STATUS,
                    )
                try:
                    return await resp.json(content_type=None)
                except ValueError as e:
                    raise ExchangeError(f"GET {url} returned undecodable body: {e}") from e
        except aiohttp.ClientError as e:
            raise ExchangeError(f"network error on GET {url}: {e}", retryable=True) from e
        except asyncio.TimeoutError as e:
            raise ExchangeError(f"timeout on GET {url}", retryable=True) from e

    async def _get(self, url: str, params: Dict[str, Any]) -> Any:
        last: Optional[ExchangeError] = None
        for attempt in range(self.max_tries):
            if attempt > 0:
                await asyncio.sleep(self.backoff_s * (2 ** (attempt - 1)))
            try:
                return await self._get_once(url, params)
            except ExchangeError as e:
                last = e
                if not e.retryable:
                    raise
                logger.debug("attempt %d/%d failed: %s", attempt + 1, self.max_tries, e)
        assert last is not None
        raise last

    async def exchange_info(self, instrument: Instrument) -> List[Symbol]:
        base, path = _EXCHANGE_INFO_PATH[instrument]
        payload = await self._get(f"{base}{path}", {})
        if not isinstance(payload, dict):
            raise ExchangeError("exchangeInfo payload is not an object")
        return parse_exchange_info(payload, instrument)

    async def klines(
        self, symbol: Symbol, timeframe: Timeframe, range: RequestRange, instrument: Instrument
    ) -> List[Kline]:
        """Fetch the most recent ``range.bars`` klines, paging backwards past the per-request limit."""
        base, path, max_limit = _KLINES_PATH[instrument]
        remaining = range.bars
        end_time: Optional[int] = None
        out: List[Kline] = []
        while remaining > 0:
            params: Dict[str, Any] = {
                "symbol": symbol.exchange_symbol,
                "interval": timeframe.name,
                "limit": min(remaining, max_limit),
            }
            if end_time is not None:
                params["endTime"] = end_time
            payload = await self._get(f"{base}{path}", params)
            if not isinstance(payload, list):
                raise ExchangeError(f"klines payload for {symbol} is not a list")
            try:
                page = parse_klines(payload)
            except (IndexError, TypeError, ValueError) as e:
                raise ExchangeError(f"malformed klines payload for {symbol}: {e}") from e
            if not page:
                break
            out = page + out
            remaining -= len(page)
            if len(page) < params["limit"]:
                break
            end_time = page[0].open_time_ms - 1
        return out

    async def long_short_ratio(
        self, symbol: Symbol, timeframe: Timeframe, range: RequestRange, scope: LsrScope
    ) -> List[LsrPoint]:
        """Most recent ``range.bars`` ratio points, paging backwards like ``klines``."""
        if timeframe.name not in LSR_PERIODS:
            raise ValueError(f"timeframe {timeframe} not supported for long/short ratio")
        url = f"{BINANCE_FAPI}{_LSR_PATH[scope]}"
        remaining = range.bars
        end_time: Optional[int] = None
        out: List[LsrPoint] = []
        while remaining > 0:
            params: Dict[str, Any] = {
                "symbol": symbol.exchange_symbol,
                "period": timeframe.name,
                "limit": min(remaining, LSR_MAX_LIMIT),
            }
            if end_time is not None:
                params["endTime"] = end_time
            payload = await self._get(url, params)
            if not isinstance(payload, list):
                raise ExchangeError(f"long/short payload for {symbol} is not a list")
            try:
                page = parse_lsr(payload)
            except (KeyError, TypeError, ValueError) as e:
                raise ExchangeError(f"malformed long/short payload for {symbol}: {e}") from e
            if not page:
                break
            out = page + out
            remaining -= len(page)
            if len(page) < params["limit"]:
                break
            end_time = page[0].timestamp_ms - 1
        if out and remaining > 0:
            # the exchange keeps a limited ratio history
            logger.debug("Got %d of %d long/short points for %s", len(out), range.bars, symbol)
        return out
