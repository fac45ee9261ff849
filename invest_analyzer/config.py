"""Configuration and constants for the investment analyzer."""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Paths
PROJECT_ROOT = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR", PROJECT_ROOT / "data"))
LOG_DIR = PROJECT_ROOT / "logs"
DATABASE_PATH = Path(os.getenv("DATABASE_PATH", DATA_DIR / "invest_analyzer.db"))
PRICES_CSV = DATA_DIR / "price_history.csv"
RESULTS_CSV = DATA_DIR / "analysis_results.csv"

# Exchange via CCXT
EXCHANGE_ID = os.getenv("EXCHANGE_ID", "binance")
RATE_LIMIT_DELAY = 0.1  # seconds between requests
MAX_RETRIES = 3
RETRY_BACKOFF_BASE = 2  # exponential backoff multiplier
QUOTE_CURRENCY = "USDT"
HISTORY_MONTHS = 36
CANDLE_LIMIT = 500  # max candles per OHLCV request

# Stablecoins are never analysed as investments
EXCLUDE_SYMBOLS = frozenset({
    "USDT", "USDC", "DAI", "BUSD", "TUSD", "USDD", "FRAX",
    "USDP", "FDUSD", "USDE", "USD", "PYUSD",
})

# External APIs
GLASSNODE_API_KEY = os.getenv("GLASSNODE_API_KEY", "")
GLASSNODE_BASE_URL = "https://api.glassnode.com/v1/metrics"
FRED_API_KEY = os.getenv("FRED_API_KEY", "")
FRED_BASE_URL = "https://api.stlouisfed.org/fred/series/observations"
SP500_SERIES = "SP500"
FED_FUNDS_SERIES = "DFF"
REQUEST_TIMEOUT = 30
GLASSNODE_METRICS = {
    "aviv": "indicators/aviv",
    "mvrv_z_score": "market/mvrv_z_score",
    "liquid_supply": "supply/liquid_sum",
    "illiquid_supply": "supply/illiquid_sum",
    "price": "market/price_usd_close",
}

# Capital market assumptions (annual, decimal)
RISK_FREE_RATE = 0.045
MARKET_RISK_PREMIUM = 0.15
CRYPTO_MARKET_RETURN = 0.25
BASE_DISCOUNT_RATE = 15.0  # percent
MIN_DISCOUNT_RATE = 0.01
MAX_DISCOUNT_RATE = 0.50
FED_RATE_SENSITIVITY = 2.0
MARKET_VOLATILITY = 50.0  # crypto market baseline, percent
SP500_VOLATILITY = 0.16

# Investment defaults
DEFAULT_HORIZON_YEARS = 2
DEFAULT_CAGR = 20.0  # percent, used when a coin has no history
DEFAULT_VOLATILITY = 50.0  # percent
DEFAULT_FUNDAMENTALS_SCORE = 5
MIN_GROWTH_RATE = -0.8
MAX_GROWTH_RATE = 3.0

BASKETS = ("Bitcoin", "Blue Chip", "Small-Cap")
BITCOIN_STATES = ("bullish", "neutral", "bearish")
BLUE_CHIP_SYMBOLS = frozenset({
    "ETH", "BNB", "SOL", "XRP", "ADA", "DOGE", "TRX", "DOT", "LINK", "LTC", "AVAX",
})

# Rate sensitivity to Fed changes
BASKET_RATE_SENSITIVITY = {"Bitcoin": 1.0, "Blue Chip": 1.2, "Small-Cap": 1.5}
# Growth potential relative to Bitcoin
BASKET_GROWTH_MULTIPLIER = {"Bitcoin": 1.0, "Blue Chip": 1.2, "Small-Cap": 1.5}
MARKET_STATE_MULTIPLIER = {"bullish": 1.3, "neutral": 0.8, "bearish": 0.4}

# Allocation limits, percent of total portfolio
ALLOCATION_RULES = {
    "Bitcoin": (60.0, 80.0),
    "Blue Chip": (0.0, 40.0),
    "Small-Cap": (0.0, 15.0),
}

# Beta
BASKET_DEFAULT_BETA = {"Bitcoin": 1.0, "Blue Chip": 1.5, "Small-Cap": 2.5}
ESTIMATED_BETAS = {
    "bitcoin": 1.0, "btc": 1.0,
    "ethereum": 1.4, "eth": 1.4,
    "solana": 1.6, "sol": 1.6,
    "cardano": 1.3, "ada": 1.3,
    "litecoin": 1.1, "ltc": 1.1,
}
# Plausible beta range per basket: Bitcoin is measured against the S&P 500,
# everything else against Bitcoin.
BETA_RANGES = {
    "Bitcoin": (0.0, 3.0),
    "Blue Chip": (0.3, 3.0),
    "Small-Cap": (0.3, 5.0),
}
MIN_BETA_OBSERVATIONS = 30
HIGH_CONFIDENCE_OBSERVATIONS = 900
PERIODS_PER_YEAR = 365  # crypto trades every day

# Monte Carlo
MONTE_CARLO_PATHS = 10_000
MONTE_CARLO_STEPS_PER_YEAR = 365
MONTE_CARLO_BATCH_SIZE = 1_000

# Data quality
EXPECTED_DATA_POINTS = 1080  # ~36 months of daily closes
MIN_SUCCESS_QUALITY = 50
HIGH_QUALITY_THRESHOLD = 70
MEDIUM_QUALITY_THRESHOLD = 40
PIPELINE_COIN_LIMIT = 10
PIPELINE_DELAY = 1.0  # seconds between coins
