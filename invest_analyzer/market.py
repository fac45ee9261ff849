"""Market conditions derived from Bitcoin on-chain signals and Fed rates."""

import logging
from dataclasses import dataclass, field
from typing import Sequence

import numpy as np
import pandas as pd

from invest_analyzer.models import MarketConditions

logger = logging.getLogger(__name__)

BULLISH = "bullish"
BEARISH = "bearish"
NEUTRAL = "neutral"


@dataclass
class MarketState:
    """Overall Bitcoin market condition and the signal votes behind it."""

    condition: str
    confidence: float  # percent
    signals: dict[str, str] = field(default_factory=dict)


def _vote(value: float | None, bullish_below: float, bearish_above: float) -> str | None:
    if value is None:
        return None
    if value < bullish_below:
        return BULLISH
    if value > bearish_above:
        return BEARISH
    return NEUTRAL


def classify_bitcoin_state(
    aviv_ratio: float | None = None,
    volatility: float | None = None,
    mvrv_z_score: float | None = None,
    drawdown: float | None = None,
) -> MarketState:
    """Classify the Bitcoin market from four independent signals.

    Each available signal votes bullish, bearish or neutral:

    - AVIV ratio: below 0.7 bullish, above 2.5 bearish.
    - Realised volatility (percent): below 30 bullish, above 90 bearish.
    - MVRV Z-score: below -1 bullish, above 6 bearish.
    - Drawdown from the peak (fraction): above 0.5 bullish, below 0.1
      bearish.

    Three or more votes in one direction decide the condition; anything
    else is neutral. Missing signals do not vote.

    Args:
        aviv_ratio: Active value to investor value ratio.
        volatility: Annualised realised volatility in percent.
        mvrv_z_score: MVRV Z-score.
        drawdown: Current drawdown from the running peak, as a fraction.

    Returns:
        MarketState with condition, confidence and per-signal votes.
    """
    votes = {
        "aviv": _vote(aviv_ratio, 0.7, 2.5),
        "volatility": _vote(volatility, 30, 90),
        "mvrv": _vote(mvrv_z_score, -1.0, 6.0),
        # A deep drawdown is a buying opportunity, a shallow one a possible top
        "drawdown": _vote(
            None if drawdown is None else -drawdown, -0.5, -0.1
        ),
    }
    signals = {name: vote for name, vote in votes.items() if vote is not None}

    bullish = sum(1 for v in signals.values() if v == BULLISH)
    bearish = sum(1 for v in signals.values() if v == BEARISH)

    if bullish >= 3:
        condition = BULLISH
        confidence = min(95, 70 + bullish * 8)
    elif bearish >= 3:
        condition = BEARISH
        confidence = min(95, 70 + bearish * 8)
    else:
        condition = NEUTRAL
        confidence = 50 + abs(bullish - bearish) * 10

    logger.info(
        "Bitcoin market %s (%d%% confidence, %d bullish / %d bearish of %d signals)",
        condition, confidence, bullish, bearish, len(signals),
    )
    return MarketState(condition=condition, confidence=float(confidence), signals=signals)


def calculate_drawdown(prices: Sequence[float]) -> float:
    """Current drawdown from the running peak, as a fraction (0.25 = 25% below)."""
    values = np.asarray(prices, dtype=float)
    values = values[np.isfinite(values) & (values > 0)]
    if len(values) == 0:
        return 0.0
    peak = values.max()
    return float((peak - values[-1]) / peak)


def calculate_fed_rate_change(rates: pd.DataFrame, lookback_days: int = 90) -> float:
    """Change of the Fed funds rate over a lookback window.

    Args:
        rates: DataFrame with 'date' and 'value' columns, values in percent.
        lookback_days: Window length in calendar days.

    Returns:
        Latest rate minus the last rate on or before the window start, in
        percentage points. 0.0 when the series is empty.
    """
    if rates is None or rates.empty:
        logger.warning("No Fed rate data, assuming unchanged rates")
        return 0.0

    series = rates[["date", "value"]].copy()
    series["date"] = pd.to_datetime(series["date"])
    series["value"] = pd.to_numeric(series["value"], errors="coerce")
    series = series.dropna().sort_values("date")
    if series.empty:
        return 0.0

    latest = series.iloc[-1]
    window_start = latest["date"] - pd.Timedelta(days=lookback_days)
    earlier = series[series["date"] <= window_start]
    reference = earlier.iloc[-1] if not earlier.empty else series.iloc[0]

    change = float(latest["value"] - reference["value"])
    logger.debug(
        "Fed funds %.2f%% -> %.2f%% over %d days",
        reference["value"], latest["value"], lookback_days,
    )
    return round(change, 4)


def build_market_conditions(
    aviv_ratio: float | None = None,
    volatility: float | None = None,
    mvrv_z_score: float | None = None,
    btc_prices: Sequence[float] | None = None,
    fed_rates: pd.DataFrame | None = None,
    active_supply: float | None = None,
    vaulted_supply: float | None = None,
    smart_money_activity: bool = False,
) -> MarketConditions:
    """Assemble MarketConditions from raw market and on-chain inputs."""
    drawdown = calculate_drawdown(btc_prices) if btc_prices is not None else None
    state = classify_bitcoin_state(aviv_ratio, volatility, mvrv_z_score, drawdown)
    fed_change = calculate_fed_rate_change(fed_rates) if fed_rates is not None else 0.0

    return MarketConditions(
        bitcoin_state=state.condition,
        sentiment_score=state.confidence,
        smart_money_activity=smart_money_activity,
        fed_rate_change=fed_change,
        aviv_ratio=aviv_ratio,
        active_supply=active_supply,
        vaulted_supply=vaulted_supply,
    )
