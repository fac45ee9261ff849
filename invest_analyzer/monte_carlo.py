"""Monte Carlo projection of an investment's terminal value.

Prices follow a geometric random walk. Each step draws a log return of
``(ln(1 + drift) - vol**2 / 2) * dt + vol * sqrt(dt) * Z`` so that the mean
terminal value equals ``initial * (1 + drift) ** horizon``. On-chain
signals nudge the parameters: a low AVIV ratio moves the drift up by a
fifth of its size and a high one moves it down. A large vaulted supply
damps volatility.
"""

import logging
import math
from dataclasses import dataclass

import numpy as np

from invest_analyzer.config import (
    MONTE_CARLO_BATCH_SIZE,
    MONTE_CARLO_PATHS,
    MONTE_CARLO_STEPS_PER_YEAR,
)

logger = logging.getLogger(__name__)

MIN_ADJUSTED_DRIFT = -0.99


@dataclass
class MonteCarloResult:
    """Terminal-value distribution of a simulation."""

    expected_value: float
    median: float
    percentile_5: float
    percentile_95: float
    value_at_risk: float  # initial value minus the 5th percentile
    probability_of_loss: float  # fraction of paths ending below the start
    max_drawdown: float  # worst peak-to-trough fall over all paths, fraction
    avg_max_drawdown: float
    n_paths: int
    horizon_years: float
    drift: float  # annual, decimal, after on-chain adjustments
    volatility: float  # annual, decimal, after on-chain adjustments


def adjust_parameters(
    annual_drift: float,
    annual_volatility: float,
    aviv_ratio: float | None = None,
    vaulted_supply: float | None = None,
) -> tuple[float, float]:
    """Apply on-chain valuation and holder signals to drift and volatility."""
    drift = annual_drift
    volatility = annual_volatility

    if aviv_ratio is not None:
        # Shift by a fifth of the drift's size so negative drifts move the same way
        if aviv_ratio < 0.8:
            drift += 0.2 * abs(drift)
        elif aviv_ratio > 2.0:
            drift -= 0.2 * abs(drift)
        drift = max(drift, MIN_ADJUSTED_DRIFT)
    if vaulted_supply is not None and vaulted_supply > 70:
        volatility *= 0.9

    return drift, volatility


def simulate_terminal_values(
    initial_value: float,
    annual_drift: float,
    annual_volatility: float,
    horizon_years: float,
    n_paths: int = MONTE_CARLO_PATHS,
    steps_per_year: int = MONTE_CARLO_STEPS_PER_YEAR,
    seed: int | None = None,
    aviv_ratio: float | None = None,
    vaulted_supply: float | None = None,
    batch_size: int = MONTE_CARLO_BATCH_SIZE,
) -> MonteCarloResult:
    """Simulate price paths and summarise the terminal values.

    Args:
        initial_value: Value of the position at t=0.
        annual_drift: Expected annual growth as a decimal (0.2 = 20%).
        annual_volatility: Annual volatility as a decimal.
        horizon_years: Projection horizon in years.
        n_paths: Number of simulated paths.
        steps_per_year: Time steps per simulated year.
        seed: Random seed for reproducible runs.
        aviv_ratio: Optional AVIV ratio used to adjust the drift.
        vaulted_supply: Optional vaulted supply share (percent) used to
            adjust the volatility.
        batch_size: Paths simulated at once, bounds memory use.

    Returns:
        MonteCarloResult with mean, median, 5th/95th percentiles and risk
        statistics of the terminal value.

    Raises:
        ValueError: On non-positive initial value, horizon or path count,
            negative volatility, or a drift at or below -100%.
    """
    if initial_value <= 0:
        raise ValueError("initial_value must be positive")
    if horizon_years <= 0:
        raise ValueError("horizon_years must be positive")
    if n_paths < 1:
        raise ValueError("n_paths must be at least 1")
    if annual_volatility < 0:
        raise ValueError("annual_volatility cannot be negative")
    if annual_drift <= -1:
        raise ValueError("annual_drift must be greater than -100%")

    drift, volatility = adjust_parameters(
        annual_drift, annual_volatility, aviv_ratio, vaulted_supply
    )

    n_steps = max(1, int(round(horizon_years * steps_per_year)))
    dt = horizon_years / n_steps
    step_drift = (math.log1p(drift) - 0.5 * volatility ** 2) * dt
    step_vol = volatility * math.sqrt(dt)

    logger.info(
        "Running %d Monte Carlo paths over %.1f years (%d steps, drift %.2f%%, vol %.2f%%)",
        n_paths, horizon_years, n_steps, drift * 100, volatility * 100,
    )

    rng = np.random.default_rng(seed)
    terminal = np.empty(n_paths)
    drawdowns = np.empty(n_paths)

    for start in range(0, n_paths, batch_size):
        size = min(batch_size, n_paths - start)
        shocks = rng.standard_normal((size, n_steps))
        paths = initial_value * np.exp(np.cumsum(step_drift + step_vol * shocks, axis=1))

        running_max = np.maximum(np.maximum.accumulate(paths, axis=1), initial_value)
        drawdowns[start:start + size] = ((running_max - paths) / running_max).max(axis=1)
        terminal[start:start + size] = paths[:, -1]

    percentile_5 = float(np.percentile(terminal, 5))
    result = MonteCarloResult(
        expected_value=float(terminal.mean()),
        median=float(np.median(terminal)),
        percentile_5=percentile_5,
        percentile_95=float(np.percentile(terminal, 95)),
        value_at_risk=initial_value - percentile_5,
        probability_of_loss=float(np.mean(terminal < initial_value)),
        max_drawdown=float(drawdowns.max()),
        avg_max_drawdown=float(drawdowns.mean()),
        n_paths=n_paths,
        horizon_years=horizon_years,
        drift=drift,
        volatility=volatility,
    )

    logger.info(
        "Monte Carlo expected %.2f, 90%% interval %.2f - %.2f, P(loss) %.1f%%",
        result.expected_value, result.percentile_5, result.percentile_95,
        result.probability_of_loss * 100,
    )
    return result


def monte_carlo_cash_flows(
    initial_investment: float,
    projection: MonteCarloResult,
    investment_horizon: int,
    staking_yield: float = 0.0,
) -> list[float]:
    """Yearly cash flows whose final year carries the simulated expected value."""
    yearly_yield = initial_investment * (staking_yield / 100)
    cash_flows = [-initial_investment]
    for year in range(1, investment_horizon + 1):
        if year < investment_horizon:
            cash_flows.append(yearly_yield)
        else:
            cash_flows.append(yearly_yield + projection.expected_value)
    return cash_flows
