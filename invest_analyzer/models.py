"""Input records shared by the calculation modules."""

from dataclasses import dataclass

from invest_analyzer.config import (
    BASKETS,
    BITCOIN_STATES,
    BLUE_CHIP_SYMBOLS,
    DEFAULT_HORIZON_YEARS,
)


@dataclass
class CoinData:
    """Static and on-chain attributes of a coin."""

    coin_id: str
    symbol: str
    name: str
    basket: str
    current_price: float = 0.0
    cagr_36m: float | None = None
    volatility: float | None = None  # annualised, percent
    fundamentals_score: float | None = None
    aviv_ratio: float | None = None
    active_supply: float | None = None  # percent of supply
    vaulted_supply: float | None = None  # percent of supply
    staking_yield: float = 0.0  # percent per year
    beta: float | None = None

    def __post_init__(self) -> None:
        if self.basket not in BASKETS:
            raise ValueError(
                f"Unknown basket {self.basket!r}; expected one of {BASKETS}"
            )


@dataclass
class InvestmentInputs:
    """What the investor wants to analyse."""

    coin_id: str
    investment_amount: float
    total_portfolio: float
    investment_horizon: int = DEFAULT_HORIZON_YEARS
    expected_price: float | None = None
    staking_yield: float | None = None

    def __post_init__(self) -> None:
        if self.investment_amount <= 0:
            raise ValueError("investment_amount must be positive")
        if self.investment_horizon < 1:
            raise ValueError("investment_horizon must be at least 1 year")


@dataclass
class MarketConditions:
    """Macro and Bitcoin market backdrop for an analysis."""

    bitcoin_state: str = "neutral"
    sentiment_score: float = 50.0
    smart_money_activity: bool = False
    fed_rate_change: float = 0.0  # percentage points
    aviv_ratio: float | None = None
    active_supply: float | None = None
    vaulted_supply: float | None = None

    def __post_init__(self) -> None:
        if self.bitcoin_state not in BITCOIN_STATES:
            raise ValueError(
                f"Unknown bitcoin_state {self.bitcoin_state!r}; "
                f"expected one of {BITCOIN_STATES}"
            )


def basket_for_symbol(symbol: str) -> str:
    """Basket a coin belongs to when none is stored for it."""
    symbol = symbol.upper()
    if symbol in ("BTC", "BITCOIN"):
        return "Bitcoin"
    if symbol in BLUE_CHIP_SYMBOLS:
        return "Blue Chip"
    return "Small-Cap"
