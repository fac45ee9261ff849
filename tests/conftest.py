"""Test fixtures for investment analyzer tests."""

import sqlite3
from datetime import datetime, timezone
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from invest_analyzer.models import CoinData, InvestmentInputs, MarketConditions


@pytest.fixture
def sample_coin_list() -> list[dict]:
    """Sample coin list as returned by get_top_coins."""
    return [
        {"id": "BTC", "symbol": "BTC", "name": "BTC"},
        {"id": "ETH", "symbol": "ETH", "name": "ETH"},
        {"id": "SOL", "symbol": "SOL", "name": "SOL"},
        {"id": "PEPE", "symbol": "PEPE", "name": "PEPE"},
    ]


@pytest.fixture
def sample_ohlcv_response() -> list[list]:
    """Sample CCXT OHLCV response (list of [timestamp, open, high, low, close, volume])."""
    base_ts = int(datetime(2025, 1, 1, tzinfo=timezone.utc).timestamp() * 1000)
    day_ms = 86_400_000

    candles = []
    for i in range(60):
        ts = base_ts + i * day_ms
        if i <= 30:
            close_p = 100 + i * 5  # 100 -> 250
        else:
            close_p = 250 - (i - 30) * 3  # 250 -> 160

        open_p = close_p - 1
        high_p = close_p + 2
        low_p = close_p - 3
        volume = close_p * 500_000

        candles.append([ts, open_p, high_p, low_p, close_p, volume])

    return candles


@pytest.fixture
def sample_tickers_response() -> dict:
    """Sample CCXT fetch_tickers response."""
    return {
        "BTC/USDT": {"symbol": "BTC/USDT", "quoteVolume": 10_000_000_000},
        "ETH/USDT": {"symbol": "ETH/USDT", "quoteVolume": 5_000_000_000},
        "SOL/USDT": {"symbol": "SOL/USDT", "quoteVolume": 2_000_000_000},
        "ADA/USDT": {"symbol": "ADA/USDT", "quoteVolume": 1_000_000_000},
        "PEPE/USDT": {"symbol": "PEPE/USDT", "quoteVolume": 800_000_000},
        "USDC/USDT": {"symbol": "USDC/USDT", "quoteVolume": 3_000_000_000},
        "SOL/BTC": {"symbol": "SOL/BTC", "quoteVolume": 100_000},
    }


def _price_path(start: float, returns: np.ndarray) -> np.ndarray:
    return start * np.concatenate([[1.0], np.cumprod(1 + returns)])


@pytest.fixture
def benchmark_returns() -> np.ndarray:
    """200 daily benchmark returns, reproducible."""
    rng = np.random.default_rng(42)
    return rng.normal(0.001, 0.02, 200)


@pytest.fixture
def benchmark_prices(benchmark_returns: np.ndarray) -> pd.DataFrame:
    """Benchmark price history built from benchmark_returns."""
    dates = pd.date_range("2024-01-01", periods=len(benchmark_returns) + 1, freq="D")
    return pd.DataFrame({"date": dates, "price": _price_path(40_000, benchmark_returns)})


@pytest.fixture
def coin_prices(benchmark_returns: np.ndarray) -> pd.DataFrame:
    """Coin whose returns are exactly 1.5x the benchmark returns (beta 1.5)."""
    dates = pd.date_range("2024-01-01", periods=len(benchmark_returns) + 1, freq="D")
    return pd.DataFrame({"date": dates, "price": _price_path(100, 1.5 * benchmark_returns)})


@pytest.fixture
def sample_prices_df() -> pd.DataFrame:
    """Stored price data for BTC, ETH and PEPE over 120 days."""
    rng = np.random.default_rng(7)
    base_date = datetime(2025, 1, 1)
    btc_returns = rng.normal(0.002, 0.03, 119)

    coins = [
        ("BTC", "Bitcoin", "BTC", 40_000, btc_returns),
        ("ETH", "Ethereum", "ETH", 2_000, 1.3 * btc_returns + rng.normal(0, 0.01, 119)),
        ("PEPE", "Pepe", "PEPE", 0.001, 2.0 * btc_returns + rng.normal(0, 0.03, 119)),
    ]

    rows = []
    for coin_id, name, symbol, start, returns in coins:
        prices = _price_path(start, returns)
        for day, price in enumerate(prices):
            rows.append({
                "date": base_date + pd.Timedelta(days=day),
                "coin_id": coin_id,
                "coin_name": name,
                "symbol": symbol,
                "price": float(price),
                "volume": float(price) * 500_000,
                "high": float(price) * 1.02,
                "low": float(price) * 0.98,
            })

    return pd.DataFrame(rows)


@pytest.fixture
def sample_prices_csv(tmp_path: Path, sample_prices_df: pd.DataFrame) -> Path:
    """Write sample prices to a CSV file."""
    filepath = tmp_path / "price_history.csv"
    sample_prices_df.to_csv(filepath, index=False)
    return filepath


@pytest.fixture
def sample_sqlite_db(tmp_path: Path, sample_prices_df: pd.DataFrame) -> Path:
    """Create a sample SQLite database with price data."""
    db_path = tmp_path / "test.db"
    conn = sqlite3.connect(str(db_path))
    sample_prices_df.to_sql("prices", conn, index=False)
    conn.close()
    return db_path


@pytest.fixture
def bitcoin() -> CoinData:
    return CoinData(
        coin_id="bitcoin", symbol="BTC", name="Bitcoin", basket="Bitcoin",
        current_price=50_000, cagr_36m=30.0, volatility=55.0,
        fundamentals_score=9, aviv_ratio=1.2,
    )


@pytest.fixture
def blue_chip() -> CoinData:
    return CoinData(
        coin_id="ethereum", symbol="ETH", name="Ethereum", basket="Blue Chip",
        current_price=2_500, cagr_36m=40.0, volatility=70.0,
        fundamentals_score=8, staking_yield=4.0,
    )


@pytest.fixture
def small_cap() -> CoinData:
    return CoinData(
        coin_id="pepe", symbol="PEPE", name="Pepe", basket="Small-Cap",
        current_price=0.00001, cagr_36m=80.0, volatility=120.0,
        fundamentals_score=3,
    )


@pytest.fixture
def neutral_market() -> MarketConditions:
    return MarketConditions()


@pytest.fixture
def bearish_market() -> MarketConditions:
    return MarketConditions(bitcoin_state="bearish", aviv_ratio=2.8, fed_rate_change=0.5)


@pytest.fixture
def investment_inputs() -> InvestmentInputs:
    return InvestmentInputs(
        coin_id="bitcoin", investment_amount=1_000, total_portfolio=10_000,
        investment_horizon=3,
    )
