"""Buy / Buy Less / Do Not Buy / Sell recommendations per coin basket.

Bitcoin is the portfolio foundation (60-80%), blue chips may take up to
40% and small caps up to 15%. The basket rules run first; a bearish
Bitcoin market then overrides them.
"""

import logging
from typing import Any

from invest_analyzer.models import CoinData, MarketConditions

logger = logging.getLogger(__name__)

BUY = "Buy"
BUY_LESS = "Buy Less"
DO_NOT_BUY = "Do Not Buy"
SELL = "Sell"

BASKET_BASE_RISK = {"Bitcoin": 2, "Blue Chip": 3, "Small-Cap": 4}


def calculate_basket_risk_factor(basket: str, portfolio_percentage: float) -> int:
    """1-5 risk of holding a basket at the given portfolio share."""
    risk = BASKET_BASE_RISK.get(basket, 3)
    if basket == "Bitcoin" and portfolio_percentage > 80:
        risk += 1
    if basket == "Blue Chip" and portfolio_percentage > 40:
        risk += 2
    if basket == "Small-Cap" and portfolio_percentage > 15:
        risk += 2
    return min(5, risk)


def _basket_decision(
    npv: float,
    irr: float,
    hurdle_rate: float,
    basket: str,
    pct: float,
    state: str,
) -> tuple[str, str, str]:
    """Recommendation, conditions and risks from the basket rules alone."""
    if basket == "Bitcoin":
        if pct < 60:
            return (
                BUY,
                f"Bitcoin allocation ({pct:.1f}%) below minimum 60%. "
                "Increase for portfolio stability.",
                "",
            )
        if pct > 80:
            return (
                DO_NOT_BUY,
                f"Bitcoin allocation ({pct:.1f}%) exceeds maximum 80%. Over-concentrated.",
                "Excessive Bitcoin concentration reduces diversification benefits. ",
            )
        if npv > 0 and irr > hurdle_rate and state != "bearish":
            return (
                BUY,
                f"Bitcoin allocation optimal ({pct:.1f}%). "
                "Strong fundamentals support investment.",
                "",
            )
        return BUY_LESS, "Bitcoin allocation acceptable but market conditions uncertain.", ""

    if basket == "Blue Chip":
        if pct > 40:
            return (
                DO_NOT_BUY,
                f"Blue-chip allocation ({pct:.1f}%) exceeds maximum 40%. Reduce exposure.",
                "Over-allocation to blue-chips reduces portfolio Bitcoin foundation. ",
            )
        if npv > 0 and irr > hurdle_rate:
            return (
                BUY,
                f"Blue-chip allocation within limits ({pct:.1f}%). "
                "Good diversification opportunity.",
                "",
            )
        return BUY_LESS, "Blue-chip investment acceptable but monitor systematic risk.", ""

    # Small-Cap
    if pct > 15:
        return (
            SELL,
            f"Small-cap allocation ({pct:.1f}%) exceeds maximum 15%. High risk exposure.",
            "Excessive small-cap allocation. Risk of major losses in bear market. ",
        )
    # Small caps need 5 points above the hurdle and a bullish Bitcoin
    if npv > 0 and irr > hurdle_rate + 5 and state == "bullish":
        return (
            BUY_LESS,
            "Small-cap shows potential but limit position size. High-risk, high-reward.",
            "Small-cap investments carry 80%+ volatility. "
            "Only invest what you can afford to lose. ",
        )
    return (
        DO_NOT_BUY,
        "Small-cap doesn't meet risk-adjusted return requirements "
        "or market conditions unfavorable.",
        "",
    )


def generate_recommendation(
    npv: float,
    irr: float,
    hurdle_rate: float,
    coin: CoinData,
    allocation: dict[str, Any],
    market_conditions: MarketConditions,
) -> dict[str, Any]:
    """Recommend what to do with a prospective purchase.

    Args:
        npv: Net present value of the investment.
        irr: Internal rate of return in percent.
        hurdle_rate: Minimum acceptable return in percent.
        coin: Coin being analysed.
        allocation: Result of financial.check_allocation for the purchase.
        market_conditions: Current market backdrop.

    Returns:
        Dict with the recommendation, boolean verdicts, the basket risk
        factor, explanatory text and rebalancing actions.
    """
    basket = coin.basket
    pct = allocation["portfolio_percentage"]
    state = market_conditions.bitcoin_state
    aviv = (
        f"{market_conditions.aviv_ratio:.2f}"
        if market_conditions.aviv_ratio is not None
        else "N/A"
    )

    recommendation, conditions, risks = _basket_decision(
        npv, irr, hurdle_rate, basket, pct, state
    )

    if state == "bearish":
        market_analysis = f"Bitcoin bearish (AVIV: {aviv}). All crypto carries elevated risk."
        if market_conditions.smart_money_activity:
            recommendation = SELL
            conditions = (
                "Smart money selling detected. "
                "Consider exiting positions to preserve capital."
            )
            risks += "Major price correction likely. Protect against 50-70% drawdowns. "
        elif recommendation == BUY:
            recommendation = DO_NOT_BUY
            conditions += " Bear market conditions override positive fundamentals."
            risks += "Bitcoin bearish state increases all crypto risk. Wait for AVIV < 0.55. "
    elif state == "bullish":
        market_analysis = (
            f"Bitcoin bullish (AVIV: {aviv}). Favorable environment for crypto investments."
        )
    else:
        market_analysis = (
            f"Bitcoin neutral (AVIV: {aviv}). Mixed signals require careful position sizing."
        )

    fed_change = market_conditions.fed_rate_change
    if abs(fed_change) > 0.25:
        direction = "hiking" if fed_change > 0 else "cutting"
        impact = "increases" if fed_change > 0 else "decreases"
        market_analysis += f" Fed {direction} rates {impact} crypto attractiveness."
        if fed_change > 0.5:
            risks += "Aggressive Fed rate hikes create headwinds for crypto investments. "

    volatility = coin.volatility if coin.volatility is not None else 50.0
    volatility_risk = f"High volatility ({volatility:.0f}%). " if volatility > 70 else ""
    risks = volatility_risk + "Regulatory uncertainty remains. " + risks

    rebalancing_actions = []
    if allocation["status"] == "overexposed":
        rebalancing_actions.append(f"Reduce {basket} allocation from {pct:.1f}%")
    if allocation["status"] == "underexposed" and basket == "Bitcoin":
        rebalancing_actions.append("Increase Bitcoin allocation to at least 60%")
    if state == "bearish":
        rebalancing_actions.append("Consider reducing crypto allocation by 10-20%")
        rebalancing_actions.append("Increase stablecoin allocation until Bitcoin AVIV <1.0")

    logger.info(
        "Recommendation for %s (%s, %.1f%% of portfolio): %s",
        coin.coin_id, basket, pct, recommendation,
    )

    return {
        "recommendation": recommendation,
        "worth_investing": npv > 0 and state != "bearish",
        "good_timing": state == "bullish",
        "appropriate_amount": allocation["status"] == "optimal",
        "risk_factor": calculate_basket_risk_factor(basket, pct),
        "should_diversify": basket != "Bitcoin" or pct > 80,
        "conditions": conditions,
        "risks": risks,
        "rebalancing_actions": rebalancing_actions,
        "market_analysis": market_analysis,
    }
