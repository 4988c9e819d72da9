"""File-backed instrument feeder implementing fetch-by-symbol-and-timeframe."""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
from collections import OrderedDict
from pathlib import Path

import pandas as pd

from core.market_metadata import normalize_market, normalize_symbol, normalize_timeframe

from .errors import DataError
from .indicators import compute_indicators
from .models import Instrument

logger = logging.getLogger(__name__)

_REQUIRED_CANDLE_COLUMNS = {"time", "open", "high", "low", "close"}


def _read_candles_csv(path: Path, symbol: str, time_frame: str, market: str) -> Instrument:
    try:
        frame = pd.read_csv(path)
    except (OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as exc:
        raise DataError(f"Unable to read candle file {path}: {exc}") from exc
    missing = sorted(_REQUIRED_CANDLE_COLUMNS.difference(frame.columns))
    if missing:
        raise DataError(f"Candle schema validation failed for {path}: missing columns {missing}")
    if frame.empty:
        raise DataError(f"Candle file has no rows: {path}")

    frame = frame.assign(time=pd.to_datetime(frame["time"], utc=True))
    frame = frame.sort_values("time", kind="mergesort").drop_duplicates("time", keep="last").reset_index(drop=True)
    return Instrument.from_dataframe(
        frame,
        symbol,
        time_frame,
        market=market,
        indicators=compute_indicators(frame),
    )


def _read_instrument_json(path: Path) -> Instrument:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise DataError(f"Invalid instrument JSON in {path}: {exc}") from exc
    return Instrument.from_record(payload)


class InstrumentFeeder:
    """Load instruments stored as ``<root>/<TF>/<SYMBOL>.json`` records or ``.csv`` candles.

    Loaded instruments are cached; concurrent requests for the same key wait on the
    first loader instead of reading the file twice, for at most ``load_timeout``
    seconds when it is set.
    """

    def __init__(
        self,
        data_root: str | Path,
        market: str = "FOREX",
        max_cached: int = 64,
        load_timeout: float | None = None,
    ):
        self.data_root = Path(data_root)
        self.load_timeout = load_timeout
        self.market = normalize_market(market)
        self.max_cached = max(1, int(max_cached))
        self._instruments: OrderedDict[tuple[str, str], Instrument] = OrderedDict()
        self._loading_keys: set[tuple[str, str]] = set()
        self._lock = threading.RLock()
        self._cv = threading.Condition(self._lock)

    def _paths(self, symbol: str, time_frame: str) -> tuple[Path, Path]:
        folder = self.data_root / time_frame
        return folder / f"{symbol}.json", folder / f"{symbol}.csv"

    def _promote_cached_locked(self, key: tuple[str, str]) -> Instrument | None:
        cached = self._instruments.get(key)
        if cached is None:
            return None
        self._instruments.move_to_end(key)
        return cached

    def _read(self, symbol: str, time_frame: str) -> Instrument:
        json_path, csv_path = self._paths(symbol, time_frame)
        if json_path.exists():
            instrument = _read_instrument_json(json_path)
        elif csv_path.exists():
            instrument = _read_candles_csv(csv_path, symbol, time_frame, self.market)
        else:
            raise DataError(f"No instrument data for {symbol} {time_frame} under {self.data_root}")
        if instrument.symbol != symbol or instrument.time_frame != time_frame:
            raise DataError(
                f"Instrument file for {symbol} {time_frame} holds {instrument.symbol} {instrument.time_frame}"
            )
        return instrument

    def load_instrument(self, symbol: str, time_frame: str) -> Instrument:
        key = (normalize_symbol(symbol), normalize_timeframe(time_frame))

        with self._cv:
            cached = self._promote_cached_locked(key)
            if cached is not None:
                return cached
            deadline = None if self.load_timeout is None else time.monotonic() + self.load_timeout
            while key in self._loading_keys:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    raise DataError(f"Timed out waiting for {key[0]} {key[1]} to load")
                self._cv.wait(remaining)
                cached = self._promote_cached_locked(key)
                if cached is not None:
                    return cached
            self._loading_keys.add(key)

        try:
            instrument = self._read(*key)
            logger.debug("Loaded instrument %s/%s rows=%s", key[0], key[1], instrument.rows)
        except Exception:
            with self._cv:
                self._loading_keys.discard(key)
                self._cv.notify_all()
            raise

        with self._cv:
            self._instruments[key] = instrument
            while len(self._instruments) > self.max_cached:
                self._instruments.popitem(last=False)
            self._loading_keys.discard(key)
            self._cv.notify_all()
            return instrument

    async def fetch_instrument(self, symbol: str, time_frame: str) -> Instrument:
        """Async form of ``load_instrument``, usable as a companion fetcher."""
        return await asyncio.to_thread(self.load_instrument, symbol, time_frame)

    def list_symbols(self, time_frame: str) -> list[str]:
        folder = self.data_root / normalize_timeframe(time_frame)
        if not folder.is_dir():
            return []
        symbols = {path.stem.upper() for path in folder.iterdir() if path.suffix.lower() in {".json", ".csv"}}
        return sorted(symbols)

    def evict(self, symbol: str | None = None) -> None:
        with self._cv:
            if symbol is None:
                self._instruments.clear()
            else:
                target = normalize_symbol(symbol)
                for key in [key for key in self._instruments if key[0] == target]:
                    self._instruments.pop(key, None)
            self._cv.notify_all()
