"""Analyze prospective crypto investments from stored price data.

This module ties the calculation modules together:
- Computing NPV, IRR, CAGR, ROI, beta, Sharpe ratio and risk factor for an
  investment in a coin
- Checking the purchase against the basket allocation limits
- Producing a Buy / Buy Less / Do Not Buy / Sell recommendation
- Projecting the position with a Monte Carlo simulation
- Loading stored price data and exporting results to CSV and JSON
"""

import argparse
import dataclasses
import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pandas as pd

from invest_analyzer.beta import calculate_returns, calculate_volatility, get_beta
from invest_analyzer.config import (
    BASE_DISCOUNT_RATE,
    CRYPTO_MARKET_RETURN,
    DATA_DIR,
    DATABASE_PATH,
    DEFAULT_FUNDAMENTALS_SCORE,
    DEFAULT_HORIZON_YEARS,
    DEFAULT_VOLATILITY,
    FED_FUNDS_SERIES,
    MARKET_RISK_PREMIUM,
    MONTE_CARLO_PATHS,
    PRICES_CSV,
    RESULTS_CSV,
    RISK_FREE_RATE,
)
from invest_analyzer.data_fetcher import fetch_fred_series
from invest_analyzer.financial import (
    calculate_adjusted_discount_rate,
    calculate_beta_impact,
    calculate_cagr,
    calculate_enhanced_risk_factor,
    calculate_expected_price,
    calculate_expected_return,
    calculate_irr,
    calculate_npv,
    calculate_risk_adjusted_npv,
    calculate_roi,
    calculate_sharpe_ratio,
    calculate_volatility_breakdown,
    check_allocation,
    generate_cash_flows,
    validate_cash_flows,
)
from invest_analyzer.market import build_market_conditions
from invest_analyzer.models import (
    CoinData,
    InvestmentInputs,
    MarketConditions,
    basket_for_symbol,
)
from invest_analyzer.monte_carlo import monte_carlo_cash_flows, simulate_terminal_values
from invest_analyzer.recommendation import generate_recommendation

logger = logging.getLogger(__name__)


@dataclass
class FinancialMetrics:
    """Investment metrics for one coin. Percentages are in percent."""

    npv: float
    irr: float
    cagr: float  # price appreciation only
    total_return_cagr: float  # including staking
    roi: float
    price_roi: float
    staking_roi: float
    beta: float
    beta_confidence: str
    sharpe_ratio: float
    risk_factor: int
    risk_adjusted_npv: float
    expected_return: float  # CAPM
    volatility: float
    discount_rate: float  # decimal
    expected_price: float
    current_price: float
    cash_flows: list[float]
    beta_source: str = "estimated"
    data_points: int = 0


def _clean_history(price_history: pd.DataFrame | None) -> pd.DataFrame:
    if price_history is None or price_history.empty:
        return pd.DataFrame(columns=["date", "price"])
    history = price_history[["date", "price"]].copy()
    history["date"] = pd.to_datetime(history["date"])
    history["price"] = pd.to_numeric(history["price"], errors="coerce")
    history = history[history["price"] > 0]
    return history.sort_values("date").reset_index(drop=True)


def compute_investment_metrics(
    inputs: InvestmentInputs,
    coin: CoinData,
    price_history: pd.DataFrame | None,
    market_conditions: MarketConditions,
    benchmark_history: pd.DataFrame | None = None,
) -> FinancialMetrics:
    """Compute the financial metrics of investing in a coin.

    The latest price in the history is the entry price. Historical prices
    also provide the coin's CAGR and volatility when the coin record has
    none. The expected exit price comes from the inputs or is projected
    from the CAGR and market conditions, and the cash flows are discounted
    at the base rate adjusted for the latest Fed move.

    Args:
        inputs: Investment amount, portfolio size, horizon and overrides.
        coin: Coin being analysed.
        price_history: Daily prices with 'date' and 'price' columns.
        market_conditions: Market backdrop.
        benchmark_history: Benchmark prices for beta (S&P 500 for Bitcoin,
            Bitcoin otherwise).

    Returns:
        FinancialMetrics for the investment.

    Raises:
        ValueError: If no positive current price is available.
    """
    history = _clean_history(price_history)

    if not history.empty:
        current_price = float(history["price"].iloc[-1])
    else:
        current_price = coin.current_price
    if current_price <= 0:
        raise ValueError(f"No positive price available for {coin.coin_id}")

    returns = calculate_returns(history["price"])
    if len(returns) >= 2:
        volatility = calculate_volatility(returns)
    elif coin.volatility is not None:
        volatility = coin.volatility
    else:
        volatility = DEFAULT_VOLATILITY

    projected = coin
    if coin.cagr_36m is None and len(history) >= 2:
        days = (history["date"].iloc[-1] - history["date"].iloc[0]).days
        if days > 0:
            historical_cagr = calculate_cagr(
                float(history["price"].iloc[0]), current_price, days / 365
            )
            projected = dataclasses.replace(coin, cagr_36m=historical_cagr)

    beta_result = get_beta(
        coin, history if not history.empty else None, benchmark_history
    )
    beta = beta_result.beta

    horizon = inputs.investment_horizon or DEFAULT_HORIZON_YEARS
    staking_yield = (
        inputs.staking_yield if inputs.staking_yield is not None else coin.staking_yield
    )
    expected_price = calculate_expected_price(
        projected, inputs, market_conditions, current_price
    )

    cash_flows = generate_cash_flows(
        inputs.investment_amount, expected_price, current_price, horizon, staking_yield
    )
    if not validate_cash_flows(cash_flows):
        raise ValueError(f"Invalid cash flows for {coin.coin_id}: {cash_flows}")
    discount_rate = calculate_adjusted_discount_rate(
        BASE_DISCOUNT_RATE, market_conditions.fed_rate_change, coin.basket
    )

    npv = calculate_npv(cash_flows, discount_rate)
    irr = calculate_irr(cash_flows)

    price_cagr = calculate_cagr(current_price, expected_price, horizon)
    total_return_cagr = calculate_cagr(inputs.investment_amount, cash_flows[-1], horizon)

    coin_quantity = inputs.investment_amount / current_price
    price_roi = calculate_roi(inputs.investment_amount, coin_quantity * expected_price)
    total_roi = calculate_roi(inputs.investment_amount, cash_flows[-1])

    risk_factor = calculate_enhanced_risk_factor(
        coin.basket,
        volatility,
        coin.fundamentals_score if coin.fundamentals_score is not None
        else DEFAULT_FUNDAMENTALS_SCORE,
        beta,
        coin.aviv_ratio if coin.aviv_ratio is not None else market_conditions.aviv_ratio,
        coin.active_supply if coin.active_supply is not None
        else market_conditions.active_supply,
        coin.vaulted_supply if coin.vaulted_supply is not None
        else market_conditions.vaulted_supply,
        market_conditions.fed_rate_change,
        market_conditions.smart_money_activity,
    )

    metrics = FinancialMetrics(
        npv=npv,
        irr=irr,
        cagr=price_cagr,
        total_return_cagr=total_return_cagr,
        roi=total_roi,
        price_roi=price_roi,
        staking_roi=total_roi - price_roi,
        beta=beta,
        beta_confidence=beta_result.confidence,
        sharpe_ratio=calculate_sharpe_ratio(
            total_return_cagr, RISK_FREE_RATE * 100, volatility
        ),
        risk_factor=risk_factor,
        risk_adjusted_npv=calculate_risk_adjusted_npv(
            cash_flows, RISK_FREE_RATE, MARKET_RISK_PREMIUM, beta
        ),
        expected_return=calculate_expected_return(
            RISK_FREE_RATE, CRYPTO_MARKET_RETURN, beta
        ) * 100,
        volatility=volatility,
        discount_rate=discount_rate,
        expected_price=expected_price,
        current_price=current_price,
        cash_flows=cash_flows,
        beta_source=beta_result.source,
        data_points=len(history),
    )

    logger.info(
        "%s: NPV %.2f at %.1f%%, IRR %.2f%%, beta %.2f (%s), risk %d/5",
        coin.coin_id, npv, discount_rate * 100, irr, beta,
        beta_result.confidence, risk_factor,
    )
    return metrics


def analyze_investment(
    inputs: InvestmentInputs,
    coin: CoinData,
    price_history: pd.DataFrame | None,
    market_conditions: MarketConditions,
    benchmark_history: pd.DataFrame | None = None,
    current_breakdown: dict[str, float] | None = None,
    n_paths: int = MONTE_CARLO_PATHS,
    seed: int | None = None,
) -> dict[str, Any]:
    """Full analysis of a prospective investment.

    Args:
        inputs: Investment amount, portfolio size, horizon and overrides.
        coin: Coin being analysed.
        price_history: Daily prices with 'date' and 'price' columns.
        market_conditions: Market backdrop.
        benchmark_history: Benchmark prices for beta.
        current_breakdown: Current holdings per basket, in currency.
        n_paths: Monte Carlo paths.
        seed: Monte Carlo random seed.

    Returns:
        Dict with metrics, allocation, beta_impact, recommendation,
        monte_carlo, monte_carlo_npv and volatility_breakdown.
    """
    metrics = compute_investment_metrics(
        inputs, coin, price_history, market_conditions, benchmark_history
    )

    allocation = check_allocation(
        inputs.investment_amount, inputs.total_portfolio, coin.basket, current_breakdown
    )
    recommendation = generate_recommendation(
        metrics.npv,
        metrics.irr,
        metrics.discount_rate * 100,
        coin,
        allocation,
        market_conditions,
    )

    horizon = inputs.investment_horizon
    staking_yield = (
        inputs.staking_yield if inputs.staking_yield is not None else coin.staking_yield
    )
    projection = simulate_terminal_values(
        inputs.investment_amount,
        metrics.cagr / 100,
        metrics.volatility / 100,
        horizon,
        n_paths=n_paths,
        seed=seed,
        aviv_ratio=coin.aviv_ratio if coin.aviv_ratio is not None
        else market_conditions.aviv_ratio,
        vaulted_supply=coin.vaulted_supply if coin.vaulted_supply is not None
        else market_conditions.vaulted_supply,
    )
    mc_cash_flows = monte_carlo_cash_flows(
        inputs.investment_amount, projection, horizon, staking_yield
    )

    return {
        "coin_id": coin.coin_id,
        "basket": coin.basket,
        "metrics": metrics,
        "allocation": allocation,
        "beta_impact": calculate_beta_impact(
            inputs.investment_amount, inputs.total_portfolio, metrics.beta, current_breakdown
        ),
        "recommendation": recommendation,
        "monte_carlo": projection,
        "monte_carlo_npv": calculate_npv(mc_cash_flows, metrics.discount_rate),
        "volatility_breakdown": calculate_volatility_breakdown(metrics.beta, metrics.volatility),
    }


def load_data(source: str = "csv") -> pd.DataFrame:
    """Load price data from CSV or SQLite.

    Args:
        source: Data source, either 'csv' or 'sqlite'.

    Returns:
        DataFrame with price data sorted by coin_id and date.

    Raises:
        FileNotFoundError: If the data source does not exist.
    """
    if source == "sqlite" and DATABASE_PATH.exists():
        conn = sqlite3.connect(str(DATABASE_PATH))
        try:
            df = pd.read_sql("SELECT * FROM prices", conn, parse_dates=["date"])
        finally:
            conn.close()
    elif PRICES_CSV.exists():
        df = pd.read_csv(PRICES_CSV, parse_dates=["date"])
    else:
        raise FileNotFoundError(
            f"No data found. Run the data fetcher first. "
            f"Checked: {PRICES_CSV}, {DATABASE_PATH}"
        )

    df.sort_values(["coin_id", "date"], inplace=True)
    df.reset_index(drop=True, inplace=True)
    logger.info("Loaded %d rows for %d coins", len(df), df["coin_id"].nunique())
    return df


def get_price_history(df: pd.DataFrame, coin_id: str) -> pd.DataFrame:
    """Date-sorted 'date'/'price' history of one coin, duplicates dropped."""
    coin_data = df[df["coin_id"] == coin_id]
    if coin_data.empty:
        return pd.DataFrame(columns=["date", "price"])
    history = coin_data[["date", "price"]].drop_duplicates(subset=["date"], keep="last")
    return history.sort_values("date").reset_index(drop=True)


def export_results(
    results_df: pd.DataFrame,
    fmt: str = "csv",
    filepath: Path | str | None = None,
) -> Path:
    """Export analysis results to file.

    Args:
        results_df: Results DataFrame.
        fmt: Export format ('csv' or 'json').
        filepath: Output path (auto-generated if None).

    Returns:
        Path to the exported file.
    """
    DATA_DIR.mkdir(parents=True, exist_ok=True)

    if filepath is None:
        filepath = RESULTS_CSV if fmt == "csv" else DATA_DIR / "analysis_results.json"
    filepath = Path(filepath)

    if fmt == "json":
        results_df.to_json(filepath, orient="records", indent=2)
    else:
        results_df.to_csv(filepath, index=False)

    logger.info("Exported results to %s", filepath)
    return filepath


def summarize(analysis: dict[str, Any]) -> dict[str, Any]:
    """Flatten an analysis into one row for export."""
    metrics: FinancialMetrics = analysis["metrics"]
    projection = analysis["monte_carlo"]
    return {
        "coin_id": analysis["coin_id"],
        "basket": analysis["basket"],
        "current_price": metrics.current_price,
        "expected_price": round(metrics.expected_price, 6),
        "npv": round(metrics.npv, 2),
        "irr": round(metrics.irr, 2),
        "cagr": round(metrics.cagr, 2),
        "roi": round(metrics.roi, 2),
        "beta": round(metrics.beta, 3),
        "beta_confidence": metrics.beta_confidence,
        "sharpe_ratio": round(metrics.sharpe_ratio, 3),
        "volatility": round(metrics.volatility, 2),
        "risk_factor": metrics.risk_factor,
        "allocation_pct": analysis["allocation"]["portfolio_percentage"],
        "recommendation": analysis["recommendation"]["recommendation"],
        "mc_expected": round(projection.expected_value, 2),
        "mc_p5": round(projection.percentile_5, 2),
        "mc_p95": round(projection.percentile_95, 2),
    }


def run(
    investment_amount: float = 1000.0,
    total_portfolio: float = 10000.0,
    horizon: int = DEFAULT_HORIZON_YEARS,
    source: str = "csv",
    coins: list[str] | None = None,
    seed: int | None = None,
) -> pd.DataFrame:
    """Analyse an investment in every stored coin and export the results.

    Bitcoin prices in the same data set serve as the beta benchmark for
    the other coins and drive the Bitcoin market state.

    Returns:
        DataFrame with one summary row per analysed coin.
    """
    logger.info("Starting investment analysis")

    df = load_data(source)
    coin_ids = coins or list(df["coin_id"].unique())

    btc_history = get_price_history(df, "BTC")
    btc_history = btc_history if not btc_history.empty else None
    btc_volatility = None
    if btc_history is not None:
        btc_volatility = calculate_volatility(calculate_returns(btc_history["price"]))

    try:
        fed_rates = fetch_fred_series(FED_FUNDS_SERIES)
    except (ValueError, RuntimeError) as e:
        logger.warning("Fed funds rate unavailable, assuming no change: %s", e)
        fed_rates = None

    market_conditions = build_market_conditions(
        volatility=btc_volatility,
        btc_prices=btc_history["price"] if btc_history is not None else None,
        fed_rates=fed_rates,
    )

    rows = []
    for coin_id in coin_ids:
        history = get_price_history(df, coin_id)
        if history.empty:
            logger.warning("No price data for %s", coin_id)
            continue
        symbol = str(coin_id).upper()
        coin = CoinData(
            coin_id=coin_id, symbol=symbol, name=symbol, basket=basket_for_symbol(symbol)
        )
        inputs = InvestmentInputs(
            coin_id=coin_id,
            investment_amount=investment_amount,
            total_portfolio=total_portfolio,
            investment_horizon=horizon,
        )
        benchmark = None if coin.basket == "Bitcoin" else btc_history
        try:
            analysis = analyze_investment(
                inputs, coin, history, market_conditions, benchmark, seed=seed
            )
        except ValueError as e:
            logger.error("Analysis failed for %s: %s", coin_id, e)
            continue
        rows.append(summarize(analysis))

    results = pd.DataFrame(rows)
    if results.empty:
        logger.warning("No coins could be analysed")
        return results

    results.sort_values("npv", ascending=False, inplace=True)
    results.reset_index(drop=True, inplace=True)
    export_results(results, "csv")
    export_results(results, "json")

    print(f"\nInvestment analysis ({market_conditions.bitcoin_state} Bitcoin market):")
    for _, row in results.iterrows():
        print(f"  {row['coin_id']:>8s}  NPV {row['npv']:>10.2f}  IRR {row['irr']:>7.1f}%  "
              f"beta {row['beta']:.2f}  risk {row['risk_factor']}/5  {row['recommendation']}")

    return results


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    parser = argparse.ArgumentParser(description="Analyse crypto investments")
    parser.add_argument("--amount", type=float, default=1000.0,
                        help="Amount to invest per coin")
    parser.add_argument("--portfolio", type=float, default=10000.0,
                        help="Total portfolio value including the investment")
    parser.add_argument("--horizon", type=int, default=DEFAULT_HORIZON_YEARS,
                        help="Investment horizon in years")
    parser.add_argument("--source", choices=["csv", "sqlite"], default="csv",
                        help="Where to load price data from")
    parser.add_argument("--coins", nargs="+", help="Specific coin ids to analyse")
    parser.add_argument("--seed", type=int, help="Monte Carlo random seed")
    args = parser.parse_args()
    run(args.amount, args.portfolio, args.horizon, args.source, args.coins, args.seed)
