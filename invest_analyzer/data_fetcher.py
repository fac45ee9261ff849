"""Fetch market, macro and on-chain data.

This module handles all data collection for the analyzer, including:
- Ranking coins by USDT trading volume on the configured exchange
- Downloading 36 months of daily OHLCV data via CCXT
- Pulling S&P 500 and Fed funds series from FRED
- Pulling on-chain metrics (AVIV, supply) from Glassnode
- Saving data to both CSV and SQLite formats
"""

import argparse
import csv
import logging
import sqlite3
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import ccxt
import pandas as pd
import requests
from tqdm import tqdm

from invest_analyzer.config import (
    CANDLE_LIMIT,
    DATA_DIR,
    DATABASE_PATH,
    EXCHANGE_ID,
    EXCLUDE_SYMBOLS,
    FRED_API_KEY,
    FRED_BASE_URL,
    GLASSNODE_API_KEY,
    GLASSNODE_BASE_URL,
    GLASSNODE_METRICS,
    HISTORY_MONTHS,
    LOG_DIR,
    MAX_RETRIES,
    PRICES_CSV,
    QUOTE_CURRENCY,
    RATE_LIMIT_DELAY,
    REQUEST_TIMEOUT,
    RETRY_BACKOFF_BASE,
)

logger = logging.getLogger(__name__)


def setup_logging() -> None:
    """Configure logging to both console and file."""
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    log_file = LOG_DIR / "invest_analyzer.log"

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    file_handler = logging.FileHandler(log_file)
    file_handler.setFormatter(formatter)
    file_handler.setLevel(logging.DEBUG)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.setLevel(logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    # Avoid duplicate handlers on repeated calls
    if not root_logger.handlers:
        root_logger.addHandler(file_handler)
        root_logger.addHandler(console_handler)


def create_exchange(exchange_id: str = EXCHANGE_ID) -> ccxt.Exchange:
    """Instantiate a rate-limited CCXT exchange by id."""
    exchange_class = getattr(ccxt, exchange_id)
    return exchange_class({"enableRateLimit": True})


def default_start_date(months: int = HISTORY_MONTHS) -> str:
    """Start date covering the last ``months`` months, as YYYY-MM-DD."""
    start = datetime.now(timezone.utc) - timedelta(days=round(months * 30.44))
    return start.strftime("%Y-%m-%d")


def get_top_coins(exchange: ccxt.Exchange, limit: int = 10) -> list[dict[str, str]]:
    """Fetch top coins by USDT trading volume, excluding stablecoins.

    Args:
        exchange: CCXT exchange instance.
        limit: Number of coins to return.

    Returns:
        List of dicts with keys: id, symbol, name.
    """
    logger.info("Fetching all tickers to find top %d coins by volume...", limit)
    tickers = exchange.fetch_tickers()

    suffix = f"/{QUOTE_CURRENCY}"
    candidates = []
    for ticker_symbol, ticker in tickers.items():
        if not ticker_symbol.endswith(suffix):
            continue
        base = ticker_symbol.split("/")[0]
        if base in EXCLUDE_SYMBOLS:
            continue
        quote_volume = ticker.get("quoteVolume") or 0
        candidates.append((base, quote_volume))

    candidates.sort(key=lambda x: x[1], reverse=True)

    coins = [{"id": base, "symbol": base, "name": base} for base, _ in candidates[:limit]]
    logger.info("Found %d coins", len(coins))
    return coins


def fetch_historical_data(
    exchange: ccxt.Exchange,
    symbol: str,
    start_date: str | None = None,
    end_date: str | None = None,
) -> pd.DataFrame:
    """Fetch daily OHLCV data for a trading pair.

    Args:
        exchange: CCXT exchange instance.
        symbol: Trading pair symbol (e.g., "SOL/USDT").
        start_date: Start date in YYYY-MM-DD format (defaults to 36 months ago).
        end_date: End date in YYYY-MM-DD format (defaults to today).

    Returns:
        DataFrame with columns: date, price, volume, high, low.

    Raises:
        RuntimeError: If a page still fails after MAX_RETRIES attempts.
    """
    start_date = start_date or default_start_date()
    from_dt = datetime.strptime(start_date, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    since_ms = int(from_dt.timestamp() * 1000)

    if end_date:
        to_dt = datetime.strptime(end_date, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    else:
        to_dt = datetime.now(timezone.utc)
    end_ms = int(to_dt.timestamp() * 1000)
    end_str = end_date or to_dt.strftime("%Y-%m-%d")

    all_candles: list[list] = []
    current_since = since_ms

    while current_since < end_ms:
        for attempt in range(MAX_RETRIES):
            try:
                candles = exchange.fetch_ohlcv(
                    symbol, "1d", since=current_since, limit=CANDLE_LIMIT
                )
                break
            except (ccxt.NetworkError, ccxt.ExchangeNotAvailable) as e:
                wait = RETRY_BACKOFF_BASE ** attempt * 5
                logger.warning(
                    "CCXT error fetching %s: %s. Retrying in %ds (attempt %d/%d)",
                    symbol, e, wait, attempt + 1, MAX_RETRIES,
                )
                time.sleep(wait)
        else:
            raise RuntimeError(
                f"Failed after {MAX_RETRIES} retries fetching {symbol}"
            )

        if not candles:
            break

        all_candles.extend(candles)

        # Move past the last candle we received
        last_ts = candles[-1][0]
        if last_ts <= current_since:
            break
        current_since = last_ts + 86_400_000  # next day

        time.sleep(RATE_LIMIT_DELAY)

    if not all_candles:
        return pd.DataFrame()

    rows = []
    seen_dates: set[str] = set()

    for candle in all_candles:
        ts_ms, _open, high_p, low_p, close_p, volume = candle
        d = datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d")
        if d in seen_dates or d < start_date or d > end_str:
            continue
        seen_dates.add(d)
        rows.append({
            "date": d,
            "price": close_p,
            "volume": volume,
            "high": high_p,
            "low": low_p,
        })

    return pd.DataFrame(rows)


def _get_json(url: str, params: dict[str, Any], source: str) -> Any:
    """GET a JSON document, retrying with exponential backoff."""
    last_err: Exception | None = None
    for attempt in range(MAX_RETRIES):
        try:
            response = requests.get(url, params=params, timeout=REQUEST_TIMEOUT)
            response.raise_for_status()
            return response.json()
        except requests.RequestException as e:
            last_err = e
            wait = RETRY_BACKOFF_BASE ** attempt
            logger.warning(
                "%s request failed: %s. Retrying in %ds (attempt %d/%d)",
                source, e, wait, attempt + 1, MAX_RETRIES,
            )
            time.sleep(wait)

    raise RuntimeError(
        f"{source} request failed after {MAX_RETRIES} retries: {last_err}"
    )


def fetch_fred_series(
    series_id: str,
    start_date: str | None = None,
    api_key: str | None = None,
) -> pd.DataFrame:
    """Fetch a FRED series such as the S&P 500 or the Fed funds rate.

    Args:
        series_id: FRED series id (e.g., "SP500", "DFF").
        start_date: First observation date, YYYY-MM-DD (defaults to 36
            months ago).
        api_key: FRED API key (defaults to FRED_API_KEY).

    Returns:
        DataFrame with columns date (datetime64) and value (float), sorted
        by date. Missing observations ('.') are skipped.

    Raises:
        ValueError: If no API key is configured.
        RuntimeError: If the request keeps failing.
    """
    if api_key is None:
        api_key = FRED_API_KEY
    if not api_key:
        raise ValueError("FRED_API_KEY is not set")

    params = {
        "series_id": series_id,
        "api_key": api_key,
        "file_type": "json",
        "observation_start": start_date or default_start_date(),
    }
    logger.info("Fetching FRED series %s from %s", series_id, params["observation_start"])
    payload = _get_json(FRED_BASE_URL, params, "FRED")

    rows = []
    for obs in payload.get("observations", []):
        value = obs.get("value")
        if value is None or value == ".":
            continue
        try:
            rows.append({"date": obs["date"], "value": float(value)})
        except (KeyError, ValueError):
            continue

    df = pd.DataFrame(rows, columns=["date", "value"])
    df["date"] = pd.to_datetime(df["date"])
    df = df.sort_values("date").reset_index(drop=True)
    logger.info("FRED %s: %d observations", series_id, len(df))
    return df


def fetch_glassnode_metric(
    metric: str,
    asset: str = "BTC",
    api_key: str | None = None,
    since: str | None = None,
) -> pd.DataFrame:
    """Fetch a daily on-chain metric from Glassnode.

    Args:
        metric: Key of GLASSNODE_METRICS (e.g., "aviv") or a raw metric
            path such as "supply/liquid_sum".
        asset: Asset symbol.
        api_key: Glassnode API key (defaults to GLASSNODE_API_KEY).
        since: Optional first date, YYYY-MM-DD.

    Returns:
        DataFrame with columns date (datetime64) and value (float).

    Raises:
        ValueError: If no API key is configured.
        RuntimeError: If the request keeps failing.
    """
    if api_key is None:
        api_key = GLASSNODE_API_KEY
    if not api_key:
        raise ValueError("GLASSNODE_API_KEY is not set")

    path = GLASSNODE_METRICS.get(metric, metric)
    params: dict[str, Any] = {"a": asset, "api_key": api_key, "i": "24h"}
    if since:
        params["s"] = int(
            datetime.strptime(since, "%Y-%m-%d").replace(tzinfo=timezone.utc).timestamp()
        )

    logger.info("Fetching Glassnode %s for %s", path, asset)
    payload = _get_json(f"{GLASSNODE_BASE_URL}/{path}", params, "Glassnode")

    rows = [
        {"date": datetime.fromtimestamp(p["t"], tz=timezone.utc).strftime("%Y-%m-%d"),
         "value": float(p["v"])}
        for p in payload or []
        if p.get("v") is not None
    ]
    df = pd.DataFrame(rows, columns=["date", "value"])
    df["date"] = pd.to_datetime(df["date"])
    return df.sort_values("date").reset_index(drop=True)


def save_to_csv(df: pd.DataFrame, filepath: Path | str | None = None) -> None:
    """Save DataFrame to CSV file, appending if file exists.

    Args:
        df: Data to save.
        filepath: Target CSV path (defaults to PRICES_CSV).
    """
    filepath = Path(filepath) if filepath else PRICES_CSV
    filepath.parent.mkdir(parents=True, exist_ok=True)

    write_header = not filepath.exists() or filepath.stat().st_size == 0
    df.to_csv(filepath, mode="a", header=write_header, index=False)
    logger.info("Saved %d rows to %s", len(df), filepath)


def save_to_sqlite(df: pd.DataFrame, db_path: Path | str | None = None) -> None:
    """Save price DataFrame to the SQLite ``prices`` table.

    Args:
        df: Data to save.
        db_path: Database file path (defaults to DATABASE_PATH).
    """
    db_path = Path(db_path) if db_path else DATABASE_PATH
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(str(db_path))
    try:
        df.to_sql("prices", conn, if_exists="append", index=False)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_prices_coin_date "
            "ON prices(coin_id, date)"
        )
        conn.commit()
        logger.info("Saved %d rows to SQLite: %s", len(df), db_path)
    finally:
        conn.close()


def save_metrics_to_sqlite(
    records: list[dict[str, Any]] | pd.DataFrame,
    table: str = "calculated_metrics",
    db_path: Path | str | None = None,
) -> None:
    """Upsert per-coin records, replacing any existing row for the same coin_id.

    Args:
        records: Records with a 'coin_id' key.
        table: Target table name.
        db_path: Database file path (defaults to DATABASE_PATH).
    """
    df = records if isinstance(records, pd.DataFrame) else pd.DataFrame(records)
    if df.empty:
        return
    if "coin_id" not in df.columns:
        raise ValueError("records must have a 'coin_id' column")

    db_path = Path(db_path) if db_path else DATABASE_PATH
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(str(db_path))
    try:
        exists = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (table,)
        ).fetchone()
        if exists:
            existing = pd.read_sql(f'SELECT * FROM "{table}"', conn)
            existing = existing[~existing["coin_id"].isin(df["coin_id"])]
            df = pd.concat([existing, df], ignore_index=True)
        df.to_sql(table, conn, if_exists="replace", index=False)
        conn.commit()
        logger.info("Upserted %d records into %s", len(df), table)
    finally:
        conn.close()


def load_existing_data(filepath: Path | str | None = None) -> dict[str, set[str]]:
    """Load already-fetched (coin_id, date) pairs for resumable downloads.

    Args:
        filepath: CSV file to check (defaults to PRICES_CSV).

    Returns:
        Dict mapping coin_id to set of date strings.
    """
    filepath = Path(filepath) if filepath else PRICES_CSV
    fetched: dict[str, set[str]] = {}
    if not filepath.exists():
        return fetched

    with open(filepath, newline="") as f:
        reader = csv.DictReader(f)
        for row in reader:
            fetched.setdefault(row["coin_id"], set()).add(row["date"])

    return fetched


def validate_data(df: pd.DataFrame) -> pd.DataFrame:
    """Validate and clean price data.

    Args:
        df: Raw price data.

    Returns:
        Cleaned DataFrame with invalid rows removed.
    """
    initial_len = len(df)

    df = df[df["price"] > 0].copy()
    df = df.dropna(subset=["date"])
    df = df.drop_duplicates(subset=["date"])

    removed = initial_len - len(df)
    if removed > 0:
        logger.info("Validation removed %d invalid rows", removed)

    return df


def main(update: bool = False, coins: list[str] | None = None,
         num_coins: int = 10) -> None:
    """Price history fetch pipeline.

    Args:
        update: If True, only keep dates not already downloaded.
        coins: Optional list of specific coin symbols to fetch (e.g., ["BTC", "SOL"]).
        num_coins: Number of top coins by volume to fetch.
    """
    setup_logging()
    DATA_DIR.mkdir(parents=True, exist_ok=True)

    exchange = create_exchange()
    start_date = default_start_date()

    logger.info("Starting price fetch (%s via CCXT)", EXCHANGE_ID)
    logger.info("Date range: %s to now", start_date)

    if coins:
        coin_list = [{"id": c.upper(), "symbol": c.upper(), "name": c.upper()}
                     for c in coins]
        logger.info("Fetching %d specified coins", len(coin_list))
    else:
        coin_list = get_top_coins(exchange, num_coins)

    existing = load_existing_data() if update else {}

    all_rows: list[pd.DataFrame] = []

    for coin in tqdm(coin_list, desc="Fetching coins"):
        cid = coin["id"]
        pair = f"{cid}/{QUOTE_CURRENCY}"
        already = existing.get(cid, set())

        try:
            df = fetch_historical_data(exchange, pair, start_date)
        except Exception as e:
            logger.error("Failed to fetch %s: %s", pair, e)
            continue

        if df.empty:
            logger.warning("No data returned for %s", pair)
            continue

        df = validate_data(df)

        if already:
            df = df[~df["date"].isin(already)]

        if df.empty:
            continue

        df["coin_id"] = cid
        df["coin_name"] = coin["name"]
        df["symbol"] = coin["symbol"]

        df = df[["date", "coin_id", "coin_name", "symbol", "price",
                 "volume", "high", "low"]]

        all_rows.append(df)
        time.sleep(RATE_LIMIT_DELAY)

    if all_rows:
        combined = pd.concat(all_rows, ignore_index=True)
        save_to_csv(combined)
        save_to_sqlite(combined)
        logger.info("Fetch complete. Total new rows: %d", len(combined))
    else:
        logger.info("No new data to save")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Fetch crypto price history")
    parser.add_argument("--update", action="store_true",
                        help="Only fetch new data since last download")
    parser.add_argument("--coins", nargs="+",
                        help="Specific coin symbols to fetch (e.g., BTC SOL)")
    parser.add_argument("--num-coins", type=int, default=10,
                        help="Number of top coins by volume to fetch")
    args = parser.parse_args()
    main(update=args.update, coins=args.coins, num_coins=args.num_coins)
