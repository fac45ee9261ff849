"""Unit tests for analyzer module."""

from pathlib import Path

import pandas as pd
import pytest

from invest_analyzer.analyzer import (
    FinancialMetrics,
    analyze_investment,
    compute_investment_metrics,
    export_results,
    get_price_history,
    load_data,
    summarize,
)
from invest_analyzer.market import build_market_conditions
from invest_analyzer.models import CoinData, InvestmentInputs, MarketConditions


def _no_fred(*args, **kwargs):
    raise ValueError("FRED_API_KEY is not set")


def _flat_history(prices: list[float]) -> pd.DataFrame:
    dates = pd.date_range("2025-01-01", periods=len(prices), freq="D")
    return pd.DataFrame({"date": dates, "price": prices})


class TestComputeInvestmentMetrics:
    """Tests for compute_investment_metrics function."""

    def test_requires_positive_price(self, investment_inputs, neutral_market) -> None:
        """Test that no history and no stored price raises."""
        coin = CoinData("newcoin", "NEW", "New", "Small-Cap")
        with pytest.raises(ValueError, match="No positive price"):
            compute_investment_metrics(investment_inputs, coin, None, neutral_market)

    def test_falls_back_to_stored_price(self, investment_inputs, bitcoin, neutral_market) -> None:
        """Test using the coin's price when there is no history."""
        metrics = compute_investment_metrics(investment_inputs, bitcoin, None, neutral_market)

        assert metrics.current_price == 50_000
        assert metrics.volatility == 55.0
        assert metrics.data_points == 0
        assert metrics.beta_source == "estimated"

    def test_latest_price_is_entry(self, investment_inputs, bitcoin, neutral_market) -> None:
        """Test that the last price in the history is the entry price."""
        history = _flat_history([100.0, 105.0, 110.0, 121.0])
        metrics = compute_investment_metrics(investment_inputs, bitcoin, history, neutral_market)

        # 30% CAGR scaled by 0.8 in a neutral market, over 3 years
        assert metrics.current_price == 121.0
        assert metrics.expected_price == pytest.approx(121.0 * 1.24 ** 3)
        assert metrics.cagr == pytest.approx(24.0)
        assert metrics.data_points == 4

    def test_cash_flows_and_npv(self, investment_inputs, bitcoin, neutral_market) -> None:
        """Test cash flows, discount rate and NPV."""
        metrics = compute_investment_metrics(investment_inputs, bitcoin, None, neutral_market)

        final = 1000 * 1.24 ** 3
        assert metrics.cash_flows == pytest.approx([-1000, 0, 0, final])
        assert metrics.discount_rate == pytest.approx(0.15)
        assert metrics.npv == pytest.approx(-1000 + final / 1.15 ** 3)
        assert metrics.irr == pytest.approx(24.0, abs=0.01)
        assert metrics.roi == pytest.approx((final - 1000) / 10)
        assert metrics.staking_roi == pytest.approx(0.0)

    def test_explicit_expected_price(self, bitcoin, neutral_market) -> None:
        """Test that an expected price on the inputs is used as-is."""
        inputs = InvestmentInputs("bitcoin", 1000, 10_000, investment_horizon=3,
                                  expected_price=100_000)
        metrics = compute_investment_metrics(inputs, bitcoin, None, neutral_market)

        assert metrics.expected_price == 100_000
        assert metrics.price_roi == pytest.approx(100.0)
        assert metrics.cagr == pytest.approx((2 ** (1 / 3) - 1) * 100)

    def test_staking_yield_paid_yearly(self, blue_chip, neutral_market) -> None:
        """Test that the coin's staking yield adds yearly cash flows."""
        inputs = InvestmentInputs("ethereum", 1000, 10_000, investment_horizon=3)
        metrics = compute_investment_metrics(inputs, blue_chip, None, neutral_market)

        assert metrics.cash_flows[1] == pytest.approx(40.0)
        assert metrics.cash_flows[2] == pytest.approx(40.0)
        assert metrics.staking_roi == pytest.approx(4.0)
        assert metrics.total_return_cagr > metrics.cagr

    def test_input_staking_overrides_coin(self, blue_chip, neutral_market) -> None:
        """Test that a staking yield on the inputs wins over the coin's."""
        inputs = InvestmentInputs("ethereum", 1000, 10_000, staking_yield=0.0)
        metrics = compute_investment_metrics(inputs, blue_chip, None, neutral_market)

        assert metrics.staking_roi == pytest.approx(0.0)

    def test_beta_from_benchmark(
        self, blue_chip, coin_prices, benchmark_prices, neutral_market
    ) -> None:
        """Test that a benchmark history yields a calculated beta."""
        inputs = InvestmentInputs("ethereum", 1000, 10_000)
        metrics = compute_investment_metrics(
            inputs, blue_chip, coin_prices, neutral_market, benchmark_prices
        )

        assert metrics.beta == pytest.approx(1.5, rel=1e-6)
        assert metrics.beta_source == "calculated"
        assert metrics.data_points == 201
        assert metrics.current_price == pytest.approx(coin_prices["price"].iloc[-1])
        assert metrics.expected_return == pytest.approx((0.045 + 1.5 * 0.205) * 100)
        assert metrics.volatility > 0

    def test_historical_cagr_used_without_stored_cagr(self, neutral_market) -> None:
        """Test that the price history supplies the CAGR when none is stored."""
        coin = CoinData("solana", "SOL", "Solana", "Blue Chip")
        history = pd.DataFrame({
            "date": pd.to_datetime(["2024-01-01", "2024-12-31"]),
            "price": [100.0, 150.0],
        })
        inputs = InvestmentInputs("solana", 1000, 10_000, investment_horizon=1)
        metrics = compute_investment_metrics(inputs, coin, history, neutral_market)

        # ~50% historical CAGR, x0.8 neutral, x1.2 blue chip
        assert metrics.cagr == pytest.approx(48.0, abs=0.5)

    def test_fed_hike_raises_discount_rate(self, bitcoin) -> None:
        """Test the discount rate reacting to a Fed hike."""
        inputs = InvestmentInputs("bitcoin", 1000, 10_000)
        market = MarketConditions(fed_rate_change=1.0)
        metrics = compute_investment_metrics(inputs, bitcoin, None, market)

        assert metrics.discount_rate == pytest.approx(0.17)

    def test_risk_factor_in_range(self, small_cap, neutral_market) -> None:
        """Test the risk factor scale."""
        inputs = InvestmentInputs("pepe", 100, 10_000)
        metrics = compute_investment_metrics(inputs, small_cap, None, neutral_market)

        assert 1 <= metrics.risk_factor <= 5


class TestAnalyzeInvestment:
    """Tests for analyze_investment function."""

    def test_result_keys(self, investment_inputs, bitcoin, neutral_market) -> None:
        """Test that every part of the analysis is present."""
        analysis = analyze_investment(
            investment_inputs, bitcoin, None, neutral_market, n_paths=200, seed=1
        )

        assert set(analysis) == {
            "coin_id", "basket", "metrics", "allocation", "beta_impact",
            "recommendation", "monte_carlo", "monte_carlo_npv", "volatility_breakdown",
        }
        assert isinstance(analysis["metrics"], FinancialMetrics)
        assert analysis["basket"] == "Bitcoin"
        assert analysis["allocation"]["portfolio_percentage"] == 10.0
        assert analysis["monte_carlo"].n_paths == 200

    def test_underweight_bitcoin_is_bought(self, investment_inputs, bitcoin, neutral_market) -> None:
        """Test the recommendation for an underweight Bitcoin basket."""
        analysis = analyze_investment(
            investment_inputs, bitcoin, None, neutral_market, n_paths=100, seed=1
        )

        assert analysis["recommendation"]["recommendation"] == "Buy"
        assert analysis["allocation"]["status"] == "underexposed"

    def test_current_holdings_counted(self, blue_chip, neutral_market) -> None:
        """Test that existing holdings shift the allocation."""
        inputs = InvestmentInputs("ethereum", 1000, 10_000)
        analysis = analyze_investment(
            inputs, blue_chip, None, neutral_market,
            current_breakdown={"Bitcoin": 5000, "Blue Chip": 3500},
            n_paths=100, seed=1,
        )

        assert analysis["allocation"]["status"] == "overexposed"
        assert analysis["recommendation"]["recommendation"] == "Do Not Buy"

    def test_seed_reproducible(self, investment_inputs, bitcoin, neutral_market) -> None:
        """Test that the Monte Carlo part is reproducible with a seed."""
        first = analyze_investment(
            investment_inputs, bitcoin, None, neutral_market, n_paths=100, seed=7
        )
        second = analyze_investment(
            investment_inputs, bitcoin, None, neutral_market, n_paths=100, seed=7
        )
        assert first["monte_carlo_npv"] == second["monte_carlo_npv"]

    def test_summarize_flattens(self, investment_inputs, bitcoin, neutral_market) -> None:
        """Test the flat export row."""
        analysis = analyze_investment(
            investment_inputs, bitcoin, None, neutral_market, n_paths=100, seed=1
        )
        row = summarize(analysis)

        assert row["coin_id"] == "bitcoin"
        assert row["recommendation"] == analysis["recommendation"]["recommendation"]
        assert row["mc_p5"] <= row["mc_p95"]
        assert row["allocation_pct"] == 10.0

    def test_steep_decline_with_low_aviv(self, neutral_market) -> None:
        """Test that a steep projected fall in an undervalued market still simulates."""
        coin = CoinData("bitcoin", "BTC", "Bitcoin", "Bitcoin", current_price=100, aviv_ratio=0.5)
        # Price falls 98% over two years, roughly -86% a year
        inputs = InvestmentInputs("bitcoin", 1000, 2000, investment_horizon=2, expected_price=2.0)

        analysis = analyze_investment(inputs, coin, None, neutral_market, n_paths=50, seed=1)

        assert analysis["metrics"].cagr < -80
        drift = analysis["monte_carlo"].drift
        assert drift > analysis["metrics"].cagr / 100
        assert drift > -1


class TestGetPriceHistory:
    """Tests for get_price_history function."""

    def test_filters_coin(self, sample_prices_df: pd.DataFrame) -> None:
        """Test that one coin's prices are returned in date order."""
        history = get_price_history(sample_prices_df, "ETH")

        assert list(history.columns) == ["date", "price"]
        assert len(history) == 120
        assert history["date"].is_monotonic_increasing

    def test_unknown_coin(self, sample_prices_df: pd.DataFrame) -> None:
        """Test empty history for a coin with no data."""
        assert get_price_history(sample_prices_df, "nonexistent").empty

    def test_drops_duplicate_dates(self) -> None:
        """Test that the last row for a date wins."""
        df = pd.DataFrame({
            "date": ["2025-01-01", "2025-01-01", "2025-01-02"],
            "coin_id": ["X", "X", "X"],
            "price": [1.0, 2.0, 3.0],
        })
        history = get_price_history(df, "X")
        assert history["price"].tolist() == [2.0, 3.0]


class TestExportResults:
    """Tests for export_results function."""

    @pytest.fixture
    def results(self) -> pd.DataFrame:
        return pd.DataFrame([
            {"coin_id": "BTC", "npv": 120.5, "recommendation": "Buy"},
            {"coin_id": "ETH", "npv": -10.0, "recommendation": "Buy Less"},
        ])

    def test_export_csv(self, tmp_path: Path, results: pd.DataFrame) -> None:
        """Test CSV export."""
        filepath = tmp_path / "results.csv"
        export_results(results, "csv", filepath)
        assert filepath.exists()
        loaded = pd.read_csv(filepath)
        assert len(loaded) == len(results)

    def test_export_json(self, tmp_path: Path, results: pd.DataFrame) -> None:
        """Test JSON export."""
        filepath = tmp_path / "results.json"
        export_results(results, "json", filepath)
        assert filepath.exists()
        assert len(pd.read_json(filepath)) == 2

    def test_export_returns_path(self, tmp_path: Path, results: pd.DataFrame) -> None:
        """Test that export returns the filepath."""
        filepath = tmp_path / "results.csv"
        assert export_results(results, "csv", filepath) == filepath


class TestRun:
    """Tests for the run() function."""

    def test_run_produces_results(
        self, sample_prices_csv: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test that run() analyses every coin and exports the results."""
        from invest_analyzer.analyzer import run

        monkeypatch.setattr("invest_analyzer.analyzer.PRICES_CSV", sample_prices_csv)
        monkeypatch.setattr("invest_analyzer.analyzer.DATABASE_PATH", tmp_path / "nonexistent.db")
        monkeypatch.setattr("invest_analyzer.analyzer.RESULTS_CSV", tmp_path / "results.csv")
        monkeypatch.setattr("invest_analyzer.analyzer.DATA_DIR", tmp_path)
        monkeypatch.setattr("invest_analyzer.analyzer.fetch_fred_series", _no_fred)

        results = run(seed=1)

        assert set(results["coin_id"]) == {"BTC", "ETH", "PEPE"}
        assert results["npv"].is_monotonic_decreasing
        assert (tmp_path / "results.csv").exists()
        assert (tmp_path / "analysis_results.json").exists()
        baskets = dict(zip(pd.read_csv(tmp_path / "results.csv")["coin_id"],
                           pd.read_csv(tmp_path / "results.csv")["basket"]))
        assert baskets == {"BTC": "Bitcoin", "ETH": "Blue Chip", "PEPE": "Small-Cap"}

    def test_run_selected_coins(
        self, sample_prices_csv: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test restricting the run to some coins."""
        from invest_analyzer.analyzer import run

        monkeypatch.setattr("invest_analyzer.analyzer.PRICES_CSV", sample_prices_csv)
        monkeypatch.setattr("invest_analyzer.analyzer.DATABASE_PATH", tmp_path / "nonexistent.db")
        monkeypatch.setattr("invest_analyzer.analyzer.RESULTS_CSV", tmp_path / "results.csv")
        monkeypatch.setattr("invest_analyzer.analyzer.DATA_DIR", tmp_path)
        monkeypatch.setattr("invest_analyzer.analyzer.fetch_fred_series", _no_fred)

        results = run(coins=["ETH", "MISSING"], seed=1)

        assert results["coin_id"].tolist() == ["ETH"]

    def test_run_uses_fed_rates(
        self, sample_prices_csv: Path, bitcoin, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test that a Fed hike from FRED reaches the market conditions and discount rate."""
        from invest_analyzer.analyzer import run

        rates = pd.DataFrame({
            "date": pd.date_range("2025-01-01", periods=120, freq="D"),
            "value": [4.0] * 60 + [5.0] * 60,
        })
        captured = []

        def _capture(**kwargs):
            conditions = build_market_conditions(**kwargs)
            captured.append(conditions)
            return conditions

        monkeypatch.setattr("invest_analyzer.analyzer.PRICES_CSV", sample_prices_csv)
        monkeypatch.setattr("invest_analyzer.analyzer.DATABASE_PATH", tmp_path / "nonexistent.db")
        monkeypatch.setattr("invest_analyzer.analyzer.RESULTS_CSV", tmp_path / "results.csv")
        monkeypatch.setattr("invest_analyzer.analyzer.DATA_DIR", tmp_path)
        monkeypatch.setattr("invest_analyzer.analyzer.build_market_conditions", _capture)
        monkeypatch.setattr("invest_analyzer.analyzer.fetch_fred_series", lambda *a, **kw: rates)
        hiked = run(coins=["BTC"], seed=1)

        monkeypatch.setattr("invest_analyzer.analyzer.fetch_fred_series", _no_fred)
        flat = run(coins=["BTC"], seed=1)

        assert captured[0].fed_rate_change == pytest.approx(1.0)
        assert captured[1].fed_rate_change == 0.0
        assert hiked.iloc[0]["npv"] != flat.iloc[0]["npv"]

        # Bitcoin basket: 15% base rate plus 2% per point of hike
        inputs = InvestmentInputs("bitcoin", 1000, 10_000)
        hiked_rate = compute_investment_metrics(inputs, bitcoin, None, captured[0]).discount_rate
        flat_rate = compute_investment_metrics(inputs, bitcoin, None, captured[1]).discount_rate
        assert hiked_rate == pytest.approx(0.17)
        assert flat_rate == pytest.approx(0.15)


class TestLoadData:
    """Tests for load_data function."""

    def test_load_from_csv(
        self, sample_prices_csv: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test loading data from CSV."""
        monkeypatch.setattr("invest_analyzer.analyzer.PRICES_CSV", sample_prices_csv)
        monkeypatch.setattr("invest_analyzer.analyzer.DATABASE_PATH", tmp_path / "missing.db")

        df = load_data(source="csv")
        assert not df.empty
        assert "coin_id" in df.columns
        assert pd.api.types.is_datetime64_any_dtype(df["date"])

    def test_load_from_sqlite(
        self, sample_sqlite_db: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test loading data from SQLite."""
        monkeypatch.setattr("invest_analyzer.analyzer.DATABASE_PATH", sample_sqlite_db)
        monkeypatch.setattr("invest_analyzer.analyzer.PRICES_CSV", tmp_path / "missing.csv")

        df = load_data(source="sqlite")
        assert len(df) == 360
        assert df["coin_id"].iloc[0] == "BTC"

    def test_file_not_found(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test FileNotFoundError when no data exists."""
        monkeypatch.setattr("invest_analyzer.analyzer.PRICES_CSV", tmp_path / "nonexistent.csv")
        monkeypatch.setattr("invest_analyzer.analyzer.DATABASE_PATH", tmp_path / "nonexistent.db")

        with pytest.raises(FileNotFoundError):
            load_data()
