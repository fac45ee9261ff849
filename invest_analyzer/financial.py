"""Investment calculations: cash flows, discounting and return metrics.

Every function here is pure arithmetic over floats and lists of floats.
Percentages are returned as percentages (12.5 means 12.5%) unless the
name says otherwise; rates passed in are decimals (0.15 means 15%).
"""

import logging
import math
from typing import Any

from invest_analyzer.config import (
    ALLOCATION_RULES,
    BASKET_DEFAULT_BETA,
    BASKET_GROWTH_MULTIPLIER,
    BASKET_RATE_SENSITIVITY,
    DEFAULT_CAGR,
    ESTIMATED_BETAS,
    FED_RATE_SENSITIVITY,
    MARKET_STATE_MULTIPLIER,
    MARKET_VOLATILITY,
    MAX_DISCOUNT_RATE,
    MAX_GROWTH_RATE,
    MIN_DISCOUNT_RATE,
    MIN_GROWTH_RATE,
)
from invest_analyzer.models import CoinData, InvestmentInputs, MarketConditions

logger = logging.getLogger(__name__)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def generate_cash_flows(
    investment_amount: float,
    expected_price: float,
    current_price: float,
    investment_horizon: int,
    staking_yield: float = 0.0,
) -> list[float]:
    """Project yearly cash flows for buying, holding and selling a coin.

    Args:
        investment_amount: Amount invested at t=0.
        expected_price: Expected coin price at the end of the horizon.
        current_price: Coin price at t=0.
        investment_horizon: Holding period in whole years.
        staking_yield: Yearly staking yield in percent, paid on the
            invested amount.

    Returns:
        List of horizon + 1 cash flows, the first one negative.

    Raises:
        ValueError: If the current price is not positive or the horizon is
            shorter than one year.
    """
    if current_price <= 0:
        raise ValueError("current_price must be positive")
    if investment_horizon < 1:
        raise ValueError("investment_horizon must be at least 1 year")

    yearly_yield = investment_amount * (staking_yield / 100)
    cash_flows = [-investment_amount]
    cash_flows.extend(yearly_yield for _ in range(1, investment_horizon))

    final_value = investment_amount * expected_price / current_price
    cash_flows.append(final_value + yearly_yield)
    return cash_flows


def validate_cash_flows(cash_flows: list[float]) -> bool:
    """Check that a cash-flow vector starts with an outflow and is finite."""
    if len(cash_flows) < 2:
        return False
    if cash_flows[0] >= 0:
        return False
    return all(math.isfinite(cf) for cf in cash_flows)


def calculate_npv(cash_flows: list[float], discount_rate: float) -> float:
    """Net present value of cash flows, the first one at t=0."""
    return sum(cf / (1 + discount_rate) ** t for t, cf in enumerate(cash_flows))


def calculate_irr(
    cash_flows: list[float],
    max_iterations: int = 100,
    precision: float = 0.0001,
) -> float:
    """Internal rate of return by Newton-Raphson, starting from 10%.

    Args:
        cash_flows: Cash flows, the first one at t=0.
        max_iterations: Iteration cap.
        precision: NPV tolerance at which the rate is accepted.

    Returns:
        IRR in percent. When the iteration does not converge the last
        estimate is returned.
    """
    rate = 0.1

    for _ in range(max_iterations):
        npv = 0.0
        d_npv = 0.0
        for t, cf in enumerate(cash_flows):
            npv += cf / (1 + rate) ** t
            d_npv -= t * cf / (1 + rate) ** (t + 1)

        if abs(npv) < precision:
            return rate * 100

        if d_npv == 0:
            break
        rate -= npv / d_npv

        # Keep the next step away from the pole at -100%
        if rate < -0.99:
            rate = -0.99
        if not math.isfinite(rate) or rate > 1e6:
            logger.warning("IRR iteration diverged for cash flows %s", cash_flows)
            break

    return rate * 100


def calculate_cagr(beginning_value: float, ending_value: float, periods: float) -> float:
    """Compound annual growth rate in percent, 0 for non-positive inputs."""
    if beginning_value <= 0 or ending_value <= 0 or periods <= 0:
        return 0.0
    return ((ending_value / beginning_value) ** (1 / periods) - 1) * 100


def calculate_roi(beginning_value: float, ending_value: float) -> float:
    """Return on investment in percent, 0 for a non-positive start."""
    if beginning_value <= 0:
        return 0.0
    return (ending_value - beginning_value) / beginning_value * 100


def adjust_discount_rate(
    base_rate: float,
    fed_rate_change: float,
    sensitivity: float = FED_RATE_SENSITIVITY,
    basket_multiplier: float = 1.0,
) -> float:
    """Shift a discount rate by the latest Fed move.

    Args:
        base_rate: Base discount rate as a decimal.
        fed_rate_change: Fed funds change in percentage points.
        sensitivity: How strongly crypto discount rates follow the Fed.
        basket_multiplier: Extra sensitivity of the coin's basket.

    Returns:
        Adjusted rate as a decimal, clamped to the configured bounds.
    """
    adjusted = base_rate + (fed_rate_change / 100) * sensitivity * basket_multiplier
    return max(MIN_DISCOUNT_RATE, min(MAX_DISCOUNT_RATE, adjusted))


def calculate_adjusted_discount_rate(
    base_rate_pct: float,
    fed_rate_change: float,
    basket: str = "Bitcoin",
) -> float:
    """Discount rate for a basket, from a base rate given in percent."""
    return adjust_discount_rate(
        base_rate_pct / 100,
        fed_rate_change,
        FED_RATE_SENSITIVITY,
        BASKET_RATE_SENSITIVITY.get(basket, 1.0),
    )


def calculate_expected_price(
    coin: CoinData,
    inputs: InvestmentInputs,
    market_conditions: MarketConditions,
    current_price: float | None = None,
) -> float:
    """Expected price at the end of the horizon.

    An explicit expected price on the inputs always wins. Otherwise the
    coin's 36-month CAGR is scaled by the market state, Fed hikes and the
    basket's growth potential, then compounded over the horizon.
    """
    if inputs.expected_price:
        return inputs.expected_price

    price = current_price if current_price is not None else coin.current_price
    cagr = coin.cagr_36m if coin.cagr_36m is not None else DEFAULT_CAGR
    growth_rate = cagr / 100

    growth_rate *= MARKET_STATE_MULTIPLIER[market_conditions.bitcoin_state]
    if market_conditions.fed_rate_change > 0:
        growth_rate *= 1 - market_conditions.fed_rate_change * 0.1
    growth_rate *= BASKET_GROWTH_MULTIPLIER.get(coin.basket, 1.0)

    growth_rate = max(MIN_GROWTH_RATE, min(MAX_GROWTH_RATE, growth_rate))
    return price * (1 + growth_rate) ** inputs.investment_horizon


def calculate_expected_return(
    risk_free_rate: float, market_return: float, beta: float
) -> float:
    """CAPM expected return as a decimal."""
    return risk_free_rate + beta * (market_return - risk_free_rate)


def calculate_risk_adjusted_npv(
    cash_flows: list[float],
    risk_free_rate: float,
    market_risk_premium: float,
    beta: float,
) -> float:
    """NPV discounted at the CAPM cost of capital rf + beta * MRP."""
    return calculate_npv(cash_flows, risk_free_rate + beta * market_risk_premium)


def calculate_sharpe_ratio(
    return_pct: float, risk_free_pct: float, volatility_pct: float
) -> float:
    """Sharpe ratio from an annual return, risk-free rate and volatility in percent."""
    if volatility_pct <= 0:
        return 0.0
    return (return_pct - risk_free_pct) / volatility_pct


def calculate_risk_factor(
    basket: str,
    volatility: float,
    fundamentals_score: float | None,
    aviv_ratio: float | None = None,
) -> int:
    """Basic 1-5 risk score for a coin.

    Args:
        basket: Coin basket.
        volatility: Annualised volatility in percent.
        fundamentals_score: 0-10 fundamentals score.
        aviv_ratio: Bitcoin AVIV ratio, only used for the Bitcoin basket.

    Returns:
        Integer risk score between 1 (lowest) and 5 (highest).
    """
    if basket == "Bitcoin":
        score = 3
        if aviv_ratio is not None and aviv_ratio > 2.5:
            score += 1
        if aviv_ratio is not None and aviv_ratio < 0.55:
            score -= 1
    elif basket == "Blue Chip":
        score = 4
        if fundamentals_score is not None and fundamentals_score > 8:
            score -= 1
    elif basket == "Small-Cap":
        score = 5
        if fundamentals_score is not None and fundamentals_score > 9:
            score -= 1
    else:
        score = 3

    if volatility > 80:
        score += 1
    elif volatility < 30:
        score -= 1

    return max(1, min(5, score))


def calculate_enhanced_risk_factor(
    basket: str,
    volatility: float,
    fundamentals_score: float | None,
    beta: float,
    aviv_ratio: float | None = None,
    active_supply: float | None = None,
    vaulted_supply: float | None = None,
    fed_rate_change: float = 0.0,
    smart_money_activity: bool = False,
) -> int:
    """Risk score refined with beta, supply dynamics and macro signals."""
    score = float(calculate_risk_factor(basket, volatility, fundamentals_score, aviv_ratio))

    if beta > 2.0:
        score += 1
    elif beta < 0.8:
        score -= 0.5

    if active_supply is not None and active_supply > 80:
        score += 0.5
    if vaulted_supply is not None and vaulted_supply > 70:
        score -= 0.5

    if fed_rate_change > 0.25:
        score += 0.5
    elif fed_rate_change < -0.25:
        score -= 0.5

    if smart_money_activity:
        score += 0.5

    return max(1, min(5, _round_half_up(score)))


def get_estimated_beta(coin_id: str, basket: str) -> float:
    """Rule-of-thumb beta when none can be calculated."""
    estimate = ESTIMATED_BETAS.get(coin_id.lower())
    if estimate is not None:
        return estimate
    return BASKET_DEFAULT_BETA.get(basket, 1.5)


def check_allocation(
    investment_amount: float,
    total_portfolio: float,
    basket: str,
    current_breakdown: dict[str, float] | None = None,
) -> dict[str, Any]:
    """Check a purchase against the basket allocation limits.

    Args:
        investment_amount: Amount about to be invested.
        total_portfolio: Total portfolio value including the new investment.
        basket: Basket of the coin being bought.
        current_breakdown: Current holdings per basket, in currency.

    Returns:
        Dict with the resulting basket percentage, the limits, a status
        ('underexposed', 'optimal', 'overexposed'), an action and a message.

    Raises:
        ValueError: If the portfolio value is not positive.
    """
    if total_portfolio <= 0:
        raise ValueError("total_portfolio must be positive")

    current = (current_breakdown or {}).get(basket, 0.0)
    percentage = (current + investment_amount) / total_portfolio * 100
    min_pct, max_pct = ALLOCATION_RULES.get(basket, (0.0, 100.0))

    if percentage < min_pct:
        status, action = "underexposed", "increase"
        message = (
            f"{basket} allocation {percentage:.1f}% is below the "
            f"{min_pct:.0f}% minimum"
        )
    elif percentage > max_pct:
        status, action = "overexposed", "reduce"
        message = (
            f"{basket} allocation {percentage:.1f}% exceeds the "
            f"{max_pct:.0f}% maximum"
        )
    else:
        status, action = "optimal", "maintain"
        message = (
            f"{basket} allocation {percentage:.1f}% is within "
            f"{min_pct:.0f}-{max_pct:.0f}%"
        )

    return {
        "basket": basket,
        "portfolio_percentage": round(percentage, 2),
        "min_percentage": min_pct,
        "max_percentage": max_pct,
        "status": status,
        "recommendation": action,
        "message": message,
    }


def calculate_portfolio_beta(breakdown: dict[str, float] | None) -> float:
    """Weighted average of basket betas for a holdings breakdown."""
    if not breakdown:
        return 1.2
    total = sum(breakdown.get(b, 0.0) for b in BASKET_DEFAULT_BETA)
    if total <= 0:
        return 1.2
    return sum(
        breakdown.get(b, 0.0) / total * beta for b, beta in BASKET_DEFAULT_BETA.items()
    )


def calculate_beta_impact(
    investment_amount: float,
    total_portfolio: float,
    beta: float,
    current_breakdown: dict[str, float] | None = None,
) -> dict[str, float]:
    """How a purchase moves the portfolio beta."""
    current_beta = calculate_portfolio_beta(current_breakdown)
    weight = investment_amount / total_portfolio if total_portfolio > 0 else 0.0
    return {
        "portfolio_beta": current_beta * (1 - weight) + beta * weight,
        "diversification_benefit": max(0.0, (1.5 - beta) * 0.2),
        "concentration_risk": max(0.0, (beta - 1.0) * weight * 100),
    }


def calculate_volatility_breakdown(
    beta: float,
    asset_volatility: float,
    market_volatility: float = MARKET_VOLATILITY,
) -> dict[str, float]:
    """Split total volatility into systematic and idiosyncratic parts."""
    systematic = beta * market_volatility
    idiosyncratic = math.sqrt(max(0.0, asset_volatility ** 2 - systematic ** 2))
    return {
        "systematic": systematic,
        "idiosyncratic": idiosyncratic,
        "total": asset_volatility,
    }
