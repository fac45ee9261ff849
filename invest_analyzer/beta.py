"""CAPM beta of a coin against its benchmark.

Bitcoin is measured against the S&P 500; every other coin is measured
against Bitcoin. Prices are aligned on common dates (strict inner join, no
forward fill), turned into simple daily returns, and beta is the sample
covariance of coin and benchmark returns over the sample variance of the
benchmark returns. The result is clipped to the plausible range of the
coin's basket.
"""

import logging
import math
from dataclasses import dataclass
from typing import Sequence

import numpy as np
import pandas as pd

from invest_analyzer.config import (
    BETA_RANGES,
    HIGH_CONFIDENCE_OBSERVATIONS,
    MIN_BETA_OBSERVATIONS,
    PERIODS_PER_YEAR,
    RISK_FREE_RATE,
    SP500_VOLATILITY,
)
from invest_analyzer.financial import get_estimated_beta
from invest_analyzer.models import CoinData

logger = logging.getLogger(__name__)

SP500_BENCHMARK = "S&P 500"
BTC_BENCHMARK = "BTC"


@dataclass
class BetaResult:
    """Outcome of a beta calculation or estimate."""

    beta: float
    confidence: str  # 'low', 'medium' or 'high'
    source: str  # 'calculated', 'database' or 'estimated'
    benchmark: str
    data_points: int = 0
    beta_unclipped: float | None = None
    correlation: float | None = None
    r_squared: float | None = None
    covariance: float | None = None
    benchmark_variance: float | None = None
    volatility: float | None = None  # annualised coin volatility, percent
    start_date: str | None = None
    end_date: str | None = None


def determine_benchmark(symbol: str) -> str:
    """Pick the benchmark for a coin: S&P 500 for Bitcoin, BTC otherwise."""
    if symbol.upper() in ("BTC", "BITCOIN"):
        return SP500_BENCHMARK
    return BTC_BENCHMARK


def _prepare_prices(df: pd.DataFrame) -> pd.DataFrame:
    prices = df[["date", "price"]].copy()
    prices["date"] = (
        pd.to_datetime(prices["date"], utc=True).dt.tz_localize(None).dt.normalize()
    )
    prices["price"] = pd.to_numeric(prices["price"], errors="coerce")
    prices = prices[prices["price"] > 0]
    return prices.drop_duplicates(subset=["date"], keep="last")


def align_prices(coin_prices: pd.DataFrame, benchmark_prices: pd.DataFrame) -> pd.DataFrame:
    """Align coin and benchmark prices on dates present in both.

    Args:
        coin_prices: DataFrame with 'date' and 'price' columns.
        benchmark_prices: DataFrame with 'date' and 'price' columns.

    Returns:
        DataFrame with columns date, coin_price, benchmark_price sorted by
        date. Rows with missing or non-positive prices are dropped.
    """
    coin = _prepare_prices(coin_prices)
    benchmark = _prepare_prices(benchmark_prices)

    aligned = coin.merge(benchmark, on="date", how="inner", suffixes=("_coin", "_benchmark"))
    aligned = aligned.rename(
        columns={"price_coin": "coin_price", "price_benchmark": "benchmark_price"}
    )
    aligned = aligned.sort_values("date").reset_index(drop=True)

    logger.debug(
        "Aligned %d coin and %d benchmark prices into %d rows",
        len(coin), len(benchmark), len(aligned),
    )
    return aligned


def calculate_returns(prices: Sequence[float]) -> list[float]:
    """Simple period-over-period returns, skipping non-finite values."""
    values = np.asarray(prices, dtype=float)
    if len(values) < 2:
        return []
    with np.errstate(divide="ignore", invalid="ignore"):
        returns = values[1:] / values[:-1] - 1
    return [float(r) for r in returns if math.isfinite(r)]


def calculate_beta(
    asset_returns: Sequence[float], benchmark_returns: Sequence[float]
) -> tuple[float, float, float]:
    """Beta as sample covariance over sample benchmark variance.

    Args:
        asset_returns: Coin returns.
        benchmark_returns: Benchmark returns over the same periods.

    Returns:
        Tuple of (beta, covariance, benchmark_variance).

    Raises:
        ValueError: If the series differ in length, hold fewer than two
            observations, or the benchmark does not move.
    """
    asset = np.asarray(asset_returns, dtype=float)
    bench = np.asarray(benchmark_returns, dtype=float)

    if len(asset) != len(bench):
        raise ValueError(
            f"Asset and benchmark returns differ in length: {len(asset)} vs {len(bench)}"
        )
    if len(asset) < 2:
        raise ValueError("Need at least 2 returns to calculate beta")

    covariance = float(np.cov(asset, bench, ddof=1)[0, 1])
    variance = float(np.var(bench, ddof=1))
    if variance <= 0:
        raise ValueError("Benchmark variance is zero; cannot calculate beta")

    return covariance / variance, covariance, variance


def calculate_correlation(x: Sequence[float], y: Sequence[float]) -> float:
    """Pearson correlation, 0 when either series is constant."""
    a = np.asarray(x, dtype=float)
    b = np.asarray(y, dtype=float)
    if len(a) < 2 or a.std() == 0 or b.std() == 0:
        return 0.0
    return float(np.corrcoef(a, b)[0, 1])


def calculate_volatility(
    returns: Sequence[float], periods_per_year: int = PERIODS_PER_YEAR
) -> float:
    """Annualised volatility of returns, in percent."""
    values = np.asarray(returns, dtype=float)
    if len(values) < 2:
        return 0.0
    return float(values.std(ddof=1) * math.sqrt(periods_per_year) * 100)


def calculate_return_sharpe(
    returns: Sequence[float],
    volatility_pct: float,
    risk_free_rate: float = RISK_FREE_RATE,
    periods_per_year: int = PERIODS_PER_YEAR,
) -> float:
    """Sharpe ratio from periodic returns and their annualised volatility."""
    values = np.asarray(returns, dtype=float)
    if len(values) == 0 or volatility_pct <= 0:
        return 0.0
    annual_return = float(values.mean()) * periods_per_year
    return (annual_return - risk_free_rate) / (volatility_pct / 100)


def clip_beta(beta: float, basket: str) -> float:
    """Clamp beta to the plausible range of the basket."""
    low, high = BETA_RANGES.get(basket, (-3.0, 5.0))
    return max(low, min(high, beta))


def assess_confidence(data_points: int, beta: float, covariance: float) -> str:
    """Confidence label for a calculated beta."""
    if data_points < MIN_BETA_OBSERVATIONS:
        return "low"
    if data_points < HIGH_CONFIDENCE_OBSERVATIONS:
        return "medium"
    if abs(beta) > 10:
        logger.warning("Beta %.3f is outside the typical range", beta)
        return "low"
    if abs(covariance) < 1e-8:
        logger.warning("Covariance %.2e is negligible", covariance)
        return "low"
    return "high"


def estimate_beta_from_volatility(coin_id: str, volatility_pct: float) -> float:
    """Beta from an assumed correlation when no benchmark series is at hand.

    Bitcoin is assumed to correlate 0.35 with the S&P 500, other coins 0.25,
    and the S&P 500 is assumed to run at 16% annual volatility.
    """
    correlation = 0.35 if coin_id.lower() in ("bitcoin", "btc") else 0.25
    return correlation * (volatility_pct / 100) / SP500_VOLATILITY


def compute_beta(
    coin_prices: pd.DataFrame,
    benchmark_prices: pd.DataFrame,
    basket: str,
    coin_id: str = "",
    benchmark: str = "",
) -> BetaResult:
    """Calculate beta from two price histories.

    Args:
        coin_prices: Coin prices with 'date' and 'price' columns.
        benchmark_prices: Benchmark prices with 'date' and 'price' columns.
        basket: Coin basket, selects the clipping range.
        coin_id: Coin identifier, for logging.
        benchmark: Benchmark name stored on the result.

    Returns:
        BetaResult with source 'calculated'.

    Raises:
        ValueError: If fewer than MIN_BETA_OBSERVATIONS aligned returns are
            available or the benchmark variance is zero.
    """
    aligned = align_prices(coin_prices, benchmark_prices)

    coin = aligned["coin_price"].to_numpy(dtype=float)
    bench = aligned["benchmark_price"].to_numpy(dtype=float)
    if len(coin) >= 2:
        coin_returns = coin[1:] / coin[:-1] - 1
        bench_returns = bench[1:] / bench[:-1] - 1
        mask = np.isfinite(coin_returns) & np.isfinite(bench_returns)
        coin_returns = coin_returns[mask]
        bench_returns = bench_returns[mask]
    else:
        coin_returns = bench_returns = np.array([])

    n_returns = len(coin_returns)
    if n_returns < MIN_BETA_OBSERVATIONS:
        raise ValueError(
            f"Insufficient aligned returns for {coin_id or 'coin'}: "
            f"{n_returns}, need at least {MIN_BETA_OBSERVATIONS}"
        )

    raw_beta, covariance, variance = calculate_beta(coin_returns, bench_returns)
    correlation = calculate_correlation(coin_returns, bench_returns)
    beta = clip_beta(raw_beta, basket)
    if beta != raw_beta:
        logger.warning(
            "Beta for %s clipped from %.3f to %.3f (%s range)",
            coin_id, raw_beta, beta, basket,
        )

    result = BetaResult(
        beta=beta,
        confidence=assess_confidence(n_returns, raw_beta, covariance),
        source="calculated",
        benchmark=benchmark,
        data_points=n_returns,
        beta_unclipped=raw_beta,
        correlation=correlation,
        r_squared=correlation ** 2,
        covariance=covariance,
        benchmark_variance=variance,
        volatility=calculate_volatility(coin_returns),
        start_date=aligned["date"].iloc[0].strftime("%Y-%m-%d"),
        end_date=aligned["date"].iloc[-1].strftime("%Y-%m-%d"),
    )
    logger.info(
        "Beta for %s vs %s: %.3f (%s confidence, %d returns)",
        coin_id, benchmark, result.beta, result.confidence, n_returns,
    )
    return result


def get_beta(
    coin: CoinData,
    coin_prices: pd.DataFrame | None,
    benchmark_prices: pd.DataFrame | None,
) -> BetaResult:
    """Beta for a coin, falling back to stored or estimated values.

    Calculates beta when both price histories are usable. Otherwise uses
    the beta stored on the coin, and failing that a rule-of-thumb estimate.
    """
    benchmark = determine_benchmark(coin.symbol or coin.coin_id)

    if coin_prices is not None and benchmark_prices is not None:
        try:
            return compute_beta(
                coin_prices, benchmark_prices, coin.basket, coin.coin_id, benchmark
            )
        except ValueError as e:
            logger.warning("Beta calculation failed for %s: %s", coin.coin_id, e)

    if coin.beta is not None:
        return BetaResult(
            beta=clip_beta(coin.beta, coin.basket),
            confidence="medium",
            source="database",
            benchmark=benchmark,
        )

    estimate = get_estimated_beta(coin.coin_id, coin.basket)
    logger.warning("Using estimated beta %.2f for %s", estimate, coin.coin_id)
    return BetaResult(
        beta=estimate,
        confidence="low",
        source="estimated",
        benchmark=benchmark,
    )
