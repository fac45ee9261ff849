"""Real data pipeline: fetch prices and on-chain data, compute metrics, score quality.

For each coin the pipeline runs three independent steps:

1. Download 36 months of daily prices from the exchange.
2. Pull on-chain metrics (AVIV, liquid/illiquid supply) from Glassnode.
3. Calculate beta, volatility, Sharpe ratio and CAGR from the prices.

A failing step is logged and recorded, the remaining steps still run. The
coin's data-quality score is the best score any step achieved, and a quality
record is stored per coin so the overall data status can be summarised.
"""

import argparse
import logging
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import ccxt
import pandas as pd
from tqdm import tqdm

from invest_analyzer.beta import (
    BTC_BENCHMARK,
    calculate_return_sharpe,
    calculate_returns,
    calculate_volatility,
    compute_beta,
    determine_benchmark,
    estimate_beta_from_volatility,
)
from invest_analyzer.config import (
    DATABASE_PATH,
    EXPECTED_DATA_POINTS,
    HIGH_QUALITY_THRESHOLD,
    MEDIUM_QUALITY_THRESHOLD,
    MIN_SUCCESS_QUALITY,
    PIPELINE_COIN_LIMIT,
    PIPELINE_DELAY,
    QUOTE_CURRENCY,
    SP500_SERIES,
)
from invest_analyzer.data_fetcher import (
    create_exchange,
    fetch_fred_series,
    fetch_glassnode_metric,
    fetch_historical_data,
    get_top_coins,
    save_metrics_to_sqlite,
    save_to_sqlite,
    setup_logging,
    validate_data,
)
from invest_analyzer.financial import calculate_cagr
from invest_analyzer.models import CoinData, basket_for_symbol

logger = logging.getLogger(__name__)

QUALITY_TABLE = "coin_quality"
METRICS_TABLE = "calculated_metrics"


@dataclass
class RealDataResult:
    """Outcome of running the pipeline for one coin."""

    coin_id: str
    success: bool = False
    data_quality_score: int = 0
    metrics_stored: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    real_beta: float | None = None
    real_volatility: float | None = None
    real_aviv_ratio: float | None = None
    real_sharpe_ratio: float | None = None


def calculate_data_quality(
    data_points: int,
    expected_points: int = EXPECTED_DATA_POINTS,
    freshness_hours: float = 0.0,
    api_status: str = "healthy",
    is_real_data: bool = True,
) -> int:
    """Score the data behind a calculation from 0 to 100.

    Completeness counts for 40 points, freshness (linear decay to zero
    over 24 hours) for 30, a healthy API for 20 (10 when degraded) and
    real rather than estimated data for 10 (5 otherwise).

    Args:
        data_points: Observations actually available.
        expected_points: Observations a complete history would have.
        freshness_hours: Age of the newest observation in hours.
        api_status: 'healthy' or anything else for a degraded source.
        is_real_data: Whether the data came from a live source.

    Returns:
        Integer quality score, capped at 100.
    """
    completeness = min(data_points / expected_points, 1.0) if expected_points > 0 else 0.0
    freshness = max(0.0, 1 - freshness_hours / 24)
    api_score = 1.0 if api_status == "healthy" else 0.5
    real_bonus = 10 if is_real_data else 5

    score = completeness * 40 + freshness * 30 + api_score * 20 + real_bonus
    return int(min(score, 100) + 0.5)


def confidence_level(quality_score: float) -> str:
    """Map a quality score to 'high', 'medium' or 'low'."""
    if quality_score >= HIGH_QUALITY_THRESHOLD:
        return "high"
    if quality_score >= MEDIUM_QUALITY_THRESHOLD:
        return "medium"
    return "low"


def glassnode_quality(confidence: float) -> int:
    """Quality score of an on-chain fetch from the share of metrics retrieved."""
    if confidence >= 80:
        return 95
    if confidence >= 60:
        return 75
    return 50


def hours_since(date: Any) -> float:
    """Hours between a date and now, never negative."""
    ts = pd.Timestamp(date)
    if ts.tzinfo is None:
        ts = ts.tz_localize("UTC")
    delta = datetime.now(timezone.utc) - ts.to_pydatetime()
    return max(0.0, delta.total_seconds() / 3600)


def coin_from_symbol(symbol: str) -> CoinData:
    symbol = symbol.upper()
    return CoinData(
        coin_id=symbol, symbol=symbol, name=symbol, basket=basket_for_symbol(symbol)
    )


def _fetch_prices(
    coin: CoinData, exchange: ccxt.Exchange, db_path: Path | str | None
) -> tuple[pd.DataFrame, int]:
    pair = f"{coin.symbol}/{QUOTE_CURRENCY}"
    df = fetch_historical_data(exchange, pair)
    if df.empty:
        raise ValueError(f"No price data returned for {pair}")
    df = validate_data(df)

    stored = df.copy()
    stored["coin_id"] = coin.coin_id
    stored["coin_name"] = coin.name
    stored["symbol"] = coin.symbol
    save_to_sqlite(stored, db_path)

    score = calculate_data_quality(
        len(df), EXPECTED_DATA_POINTS, hours_since(df["date"].iloc[-1]), "healthy", True
    )
    return df, score


def _fetch_onchain(coin: CoinData) -> dict[str, float]:
    """Latest AVIV ratio and supply split; confidence is the share of metrics retrieved."""
    values: dict[str, float] = {}
    requested = ("aviv", "liquid_supply", "illiquid_supply")
    for metric in requested:
        try:
            df = fetch_glassnode_metric(metric, coin.symbol)
        except RuntimeError as e:
            logger.warning("Glassnode %s unavailable for %s: %s", metric, coin.coin_id, e)
            continue
        if not df.empty:
            values[metric] = float(df["value"].iloc[-1])

    if not values:
        raise ValueError(f"No on-chain metrics available for {coin.coin_id}")

    values["confidence"] = len(values) / len(requested) * 100
    liquid = values.get("liquid_supply")
    illiquid = values.get("illiquid_supply")
    if liquid is not None and illiquid is not None and liquid + illiquid > 0:
        values["active_supply"] = liquid / (liquid + illiquid) * 100
        values["vaulted_supply"] = illiquid / (liquid + illiquid) * 100
    return values


def _calculate_metrics(
    coin: CoinData,
    prices: pd.DataFrame,
    benchmark_prices: pd.DataFrame | None,
) -> dict[str, Any]:
    prices = prices.sort_values("date")
    returns = calculate_returns(prices["price"])
    if len(returns) < 2:
        raise ValueError(f"Not enough prices to calculate metrics for {coin.coin_id}")

    volatility = calculate_volatility(returns)
    benchmark = determine_benchmark(coin.symbol)
    beta_source = "calculated"
    data_points = len(returns)

    try:
        if benchmark_prices is None:
            raise ValueError(f"No {benchmark} prices available")
        beta_result = compute_beta(prices, benchmark_prices, coin.basket, coin.coin_id, benchmark)
        beta = beta_result.beta
        confidence = beta_result.confidence
        data_points = beta_result.data_points
    except ValueError as e:
        logger.warning("Estimating beta for %s from volatility: %s", coin.coin_id, e)
        beta = estimate_beta_from_volatility(coin.coin_id, volatility)
        confidence = "low"
        beta_source = "estimated"

    first, last = float(prices["price"].iloc[0]), float(prices["price"].iloc[-1])
    days = (pd.Timestamp(prices["date"].iloc[-1]) - pd.Timestamp(prices["date"].iloc[0])).days
    cagr = calculate_cagr(first, last, days / 365) if days > 0 else 0.0

    quality = calculate_data_quality(
        data_points,
        EXPECTED_DATA_POINTS,
        hours_since(prices["date"].iloc[-1]),
        "healthy",
        beta_source == "calculated",
    )
    return {
        "coin_id": coin.coin_id,
        "beta": beta,
        "beta_confidence": confidence,
        "beta_source": beta_source,
        "benchmark": benchmark,
        "volatility": volatility,
        "sharpe_ratio": calculate_return_sharpe(returns, volatility),
        "cagr_36m": cagr,
        "data_points": data_points,
        "quality_score": quality,
        "calculated_at": datetime.now(timezone.utc).isoformat(),
    }


def process_coin(
    coin: CoinData,
    exchange: ccxt.Exchange,
    benchmark_prices: pd.DataFrame | None = None,
    db_path: Path | str | None = None,
) -> RealDataResult:
    """Run the price, on-chain and metrics steps for one coin.

    Args:
        coin: Coin to process.
        exchange: CCXT exchange used for price history.
        benchmark_prices: Benchmark prices ('date', 'price') for beta: the
            S&P 500 for Bitcoin, Bitcoin for everything else.
        db_path: SQLite database for prices, metrics and quality records.

    Returns:
        RealDataResult. success requires at least one stored metric and a
        quality score above MIN_SUCCESS_QUALITY.
    """
    result = RealDataResult(coin_id=coin.coin_id)
    logger.info("Processing real data for %s", coin.coin_id)

    prices = None
    try:
        prices, score = _fetch_prices(coin, exchange, db_path)
        result.metrics_stored.append(f"real_price_history_{len(prices)}_points")
        result.data_quality_score = max(result.data_quality_score, score)
    except Exception as e:
        logger.error("Price history failed for %s: %s", coin.coin_id, e)
        result.errors.append(f"Price history failed: {e}")

    try:
        onchain = _fetch_onchain(coin)
        result.metrics_stored.append("real_glassnode_metrics")
        result.data_quality_score = max(
            result.data_quality_score, glassnode_quality(onchain["confidence"])
        )
        result.real_aviv_ratio = onchain.get("aviv")
    except Exception as e:
        logger.warning("On-chain metrics failed for %s: %s", coin.coin_id, e)
        result.errors.append(f"On-chain metrics failed: {e}")

    beta_source = "estimated"
    if prices is not None:
        try:
            metrics = _calculate_metrics(coin, prices, benchmark_prices)
            if result.real_aviv_ratio is not None:
                metrics["aviv_ratio"] = result.real_aviv_ratio
            save_metrics_to_sqlite([metrics], METRICS_TABLE, db_path)
            result.metrics_stored.append("real_calculated_metrics")
            result.data_quality_score = max(result.data_quality_score, metrics["quality_score"])
            result.real_beta = metrics["beta"]
            result.real_volatility = metrics["volatility"]
            result.real_sharpe_ratio = metrics["sharpe_ratio"]
            beta_source = metrics["beta_source"]
        except Exception as e:
            logger.error("Metric calculation failed for %s: %s", coin.coin_id, e)
            result.errors.append(f"Metric calculation failed: {e}")
    else:
        result.errors.append("Metric calculation skipped: no price history")

    update_coin_quality(
        coin.coin_id, result.data_quality_score, result.metrics_stored, beta_source, db_path
    )

    result.success = bool(result.metrics_stored) and result.data_quality_score > MIN_SUCCESS_QUALITY
    logger.info(
        "Processed %s: %d metrics, quality %d%% (%s)",
        coin.coin_id, len(result.metrics_stored), result.data_quality_score,
        "ok" if result.success else "partial",
    )
    return result


def update_coin_quality(
    coin_id: str,
    quality_score: int,
    metrics_stored: list[str],
    beta_source: str = "estimated",
    db_path: Path | str | None = None,
) -> dict[str, Any]:
    """Persist the data-quality record of a coin.

    Returns:
        The stored record.
    """
    is_real = any("real_" in m for m in metrics_stored)
    now = datetime.now(timezone.utc).isoformat()
    record = {
        "coin_id": coin_id,
        "api_status": "healthy" if is_real else "degraded",
        "beta_data_source": beta_source if is_real else "estimated",
        "beta_confidence": confidence_level(quality_score),
        "data_quality_score": quality_score,
        "calculation_data_source": "real" if is_real else "estimated",
        "metrics_stored": ",".join(metrics_stored),
        "last_calculation_update": now,
    }
    save_metrics_to_sqlite([record], QUALITY_TABLE, db_path)
    logger.debug("Stored quality record for %s: %s", coin_id, record)
    return record


def get_data_quality_status(db_path: Path | str | None = None) -> dict[str, int]:
    """Summarise stored quality records across all coins.

    Real-data coins are those with a calculated beta or a healthy API
    status. The average quality is an estimate, 20 plus 80 times the
    real-data share, and 30 when no coin has real data.

    Returns:
        Dict with total_coins, real_data_coins, estimated_data_coins,
        average_quality and high_quality_coins. All zero when nothing is
        stored yet.
    """
    empty = {
        "total_coins": 0,
        "real_data_coins": 0,
        "estimated_data_coins": 0,
        "average_quality": 0,
        "high_quality_coins": 0,
    }
    db_path = Path(db_path) if db_path else DATABASE_PATH
    if not db_path.exists():
        return empty

    conn = sqlite3.connect(str(db_path))
    try:
        exists = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?",
            (QUALITY_TABLE,),
        ).fetchone()
        if not exists:
            return empty
        df = pd.read_sql(f"SELECT * FROM {QUALITY_TABLE}", conn)
    finally:
        conn.close()

    if df.empty:
        return empty

    healthy = df["api_status"] == "healthy"
    real = df["beta_data_source"].str.contains("calculated", na=False) | healthy
    total = len(df)
    real_count = int(real.sum())
    high_count = int(((df["beta_confidence"] == "high") & healthy).sum())
    average = real_count / total * 80 + 20 if real_count > 0 else 30

    status = {
        "total_coins": total,
        "real_data_coins": real_count,
        "estimated_data_coins": total - real_count,
        "average_quality": int(average + 0.5),
        "high_quality_coins": high_count,
    }
    logger.info(
        "Data quality: %d/%d coins on real data, estimated quality %d%%",
        real_count, total, status["average_quality"],
    )
    return status


def load_benchmarks(exchange: ccxt.Exchange) -> dict[str, pd.DataFrame | None]:
    """Benchmark price histories keyed by benchmark name, None where unavailable."""
    benchmarks: dict[str, pd.DataFrame | None] = {}

    try:
        btc = fetch_historical_data(exchange, f"BTC/{QUOTE_CURRENCY}")
        benchmarks[BTC_BENCHMARK] = btc[["date", "price"]] if not btc.empty else None
    except RuntimeError as e:
        logger.error("Could not load BTC benchmark: %s", e)
        benchmarks[BTC_BENCHMARK] = None

    sp500_name = determine_benchmark("BTC")
    try:
        sp500 = fetch_fred_series(SP500_SERIES)
        benchmarks[sp500_name] = sp500.rename(columns={"value": "price"})
    except (ValueError, RuntimeError) as e:
        logger.warning("Could not load S&P 500 benchmark: %s", e)
        benchmarks[sp500_name] = None

    return benchmarks


def run_pipeline(
    coins: list[CoinData] | None = None,
    exchange: ccxt.Exchange | None = None,
    db_path: Path | str | None = None,
    limit: int = PIPELINE_COIN_LIMIT,
    delay: float = PIPELINE_DELAY,
) -> list[RealDataResult]:
    """Process a list of coins, by default the top coins by volume.

    Args:
        coins: Coins to process (defaults to the top ``limit`` by volume).
        exchange: CCXT exchange (defaults to the configured exchange).
        db_path: SQLite database (defaults to DATABASE_PATH).
        limit: Number of coins when none are given.
        delay: Seconds to wait between coins.

    Returns:
        One RealDataResult per coin that could be processed.
    """
    exchange = exchange or create_exchange()
    if coins is None:
        coins = [coin_from_symbol(c["symbol"]) for c in get_top_coins(exchange, limit)]

    logger.info("Starting real data pipeline for %d coins", len(coins))
    benchmarks = load_benchmarks(exchange)

    results = []
    for coin in tqdm(coins, desc="Processing coins"):
        benchmark = benchmarks.get(determine_benchmark(coin.symbol))
        try:
            results.append(process_coin(coin, exchange, benchmark, db_path))
        except Exception as e:
            logger.error("Failed to process %s: %s", coin.coin_id, e)
        time.sleep(delay)

    succeeded = sum(1 for r in results if r.success)
    logger.info("Pipeline complete: %d/%d coins processed successfully", succeeded, len(coins))
    return results


def main(coins: list[str] | None = None, limit: int = PIPELINE_COIN_LIMIT,
         status_only: bool = False) -> None:
    """Run the pipeline from the command line and print the data-quality status."""
    setup_logging()

    if not status_only:
        coin_list = [coin_from_symbol(c) for c in coins] if coins else None
        run_pipeline(coin_list, limit=limit)

    status = get_data_quality_status()
    print(f"\nCoins tracked:       {status['total_coins']}")
    print(f"Real data coins:     {status['real_data_coins']}")
    print(f"Estimated coins:     {status['estimated_data_coins']}")
    print(f"High quality coins:  {status['high_quality_coins']}")
    print(f"Average quality:     {status['average_quality']}%")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run the real data pipeline")
    parser.add_argument("--coins", nargs="+",
                        help="Specific coin symbols to process (e.g., BTC ETH)")
    parser.add_argument("--limit", type=int, default=PIPELINE_COIN_LIMIT,
                        help="Number of top coins by volume to process")
    parser.add_argument("--status", action="store_true",
                        help="Only print the stored data-quality status")
    args = parser.parse_args()
    main(coins=args.coins, limit=args.limit, status_only=args.status)
