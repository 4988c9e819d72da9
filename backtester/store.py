"""JSON document store for backtest results with idempotent upserts."""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any

from .errors import DataError
from .results import BacktestResult, StrategySummary, _json_default

logger = logging.getLogger(__name__)

INSTRUMENT_KEY_FIELDS: tuple[str, ...] = ("strategy", "strategy_type", "time_frame", "higher_time_frame", "market", "symbol")
STRATEGY_KEY_FIELDS: tuple[str, ...] = ("strategy", "strategy_type", "time_frame", "higher_time_frame", "market")


def _key(document: dict[str, Any], fields: tuple[str, ...]) -> tuple[Any, ...]:
    return tuple(document.get(name) for name in fields)


def _by_net_profit(documents: list[dict[str, Any]], profit_field: str) -> list[dict[str, Any]]:
    return sorted(documents, key=lambda item: float(item.get(profit_field) or 0.0), reverse=True)


class ResultStore:
    """Stores one document per result key. Re-running a backtest replaces its document."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read_locked(self) -> dict[str, list[dict[str, Any]]]:
        if not self.path.exists():
            return {"instruments": [], "strategies": []}
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise DataError(f"Results store {self.path} is not valid JSON: {exc}") from exc
        return {
            "instruments": list(payload.get("instruments") or []),
            "strategies": list(payload.get("strategies") or []),
        }

    def _write_locked(self, payload: dict[str, list[dict[str, Any]]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(payload, indent=2, default=_json_default), encoding="utf-8")
        os.replace(tmp_path, self.path)

    def _upsert(self, collection: str, document: dict[str, Any], fields: tuple[str, ...]) -> bool:
        """Returns True when an existing document was replaced."""
        key = _key(document, fields)
        with self._lock:
            payload = self._read_locked()
            documents = payload[collection]
            replaced = False
            for position, existing in enumerate(documents):
                if _key(existing, fields) == key:
                    documents[position] = document
                    replaced = True
                    break
            if not replaced:
                documents.append(document)
            self._write_locked(payload)
        logger.info("Upserted %s result %s (replaced=%s)", collection, "/".join(str(item) for item in key), replaced)
        return replaced

    def upsert_instrument_result(self, result: BacktestResult) -> bool:
        return self._upsert("instruments", result.to_dict(include_trades=True), INSTRUMENT_KEY_FIELDS)

    def upsert_strategy_result(self, summary: StrategySummary) -> bool:
        return self._upsert("strategies", summary.to_dict(), STRATEGY_KEY_FIELDS)

    def find_instrument_results(self, strategy: str | None = None, symbol: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            documents = self._read_locked()["instruments"]
        if strategy is not None:
            documents = [item for item in documents if item.get("strategy") == strategy]
        if symbol is not None:
            documents = [item for item in documents if item.get("symbol") == symbol]
        return _by_net_profit(documents, "net_profit_per")

    def find_strategy_results(self, strategy: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            documents = self._read_locked()["strategies"]
        if strategy is not None:
            documents = [item for item in documents if item.get("strategy") == strategy]
        return _by_net_profit(documents, "avg_net_profit_per")
