from __future__ import annotations

import pytest

from backtester.models import Instrument, Pricing

START_NS = 1_704_067_200_000_000_000  # 2024-01-01T00:00:00Z
HOUR_NS = 3_600_000_000_000


def build_instrument(
    closes,
    *,
    highs=None,
    lows=None,
    opens=None,
    symbol="EURUSD",
    time_frame="H1",
    step_ns=HOUR_NS,
    indicators=None,
    market="FOREX",
):
    closes = [float(value) for value in closes]
    opens = list(opens) if opens is not None else list(closes)
    highs = list(highs) if highs is not None else [max(o, c) + 0.5 for o, c in zip(opens, closes)]
    lows = list(lows) if lows is not None else [min(o, c) - 0.5 for o, c in zip(opens, closes)]
    return Instrument.from_columns(
        symbol,
        time_frame,
        time_ns=[START_NS + index * step_ns for index in range(len(closes))],
        open=opens,
        high=highs,
        low=lows,
        close=closes,
        indicators=indicators,
        market=market,
    )


@pytest.fixture
def make_instrument():
    return build_instrument


@pytest.fixture
def zero_spread():
    return Pricing(symbol="EURUSD", pip_size=0.0001, spread=0.0)
