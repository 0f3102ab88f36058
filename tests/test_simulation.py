from dataclasses import replace

import numpy as np
import pytest

from core import (
    _advance_year,
    _rmd_divisor_array,
    EngineConfig,
    SurvivalForecast,
    effective_dividend_yield,
    milestone_ages,
    simulate,
    target_cash_buffer,
    target_cash_years,
)


def _make_config(**overrides) -> EngineConfig:
    params = dict(number_of_simulations=400)
    params.update(overrides)
    return EngineConfig(**params)


@pytest.mark.parametrize(
    "start_age, expected",
    [
        (74, [75, 80, 85, 90, 95, 100]),
        (75, [80, 85, 90, 95, 100]),
        (96, [100]),
        (100, []),
        (104, []),
    ],
)
def test_milestone_ages(start_age, expected):
    assert milestone_ages(start_age, EngineConfig()) == expected


@pytest.mark.parametrize("age, years", [(60, 3), (74, 3), (75, 4), (84, 4), (85, 5), (99, 5)])
def test_target_cash_years(age, years):
    assert target_cash_years(age) == years


def test_target_cash_buffer_grows_with_inflation():
    cfg = EngineConfig()
    assert target_cash_buffer(10_000, 70, cfg) == pytest.approx(10_000 * (1 + 1.03 + 1.03 ** 2))
    assert target_cash_buffer(10_000, 80, cfg) == pytest.approx(
        sum(10_000 * 1.03 ** k for k in range(4))
    )
    assert target_cash_buffer(0, 90, cfg) == 0.0


@pytest.mark.parametrize(
    "live, expected",
    [(0.02, 0.02), (0.0999, 0.0999), (0.0, 0.015), (-0.01, 0.015), (0.10, 0.015), (0.25, 0.015)],
)
def test_effective_dividend_yield(live, expected):
    assert effective_dividend_yield(live, EngineConfig()) == expected


def test_same_seed_same_forecast():
    cfg = _make_config()
    args = (600_000, 100_000, 60_000, 70, 75, 0.013, cfg)
    first = simulate(*args, seed=42)
    second = simulate(*args, seed=42)
    assert first.probabilities == second.probabilities


def test_survival_never_increases_with_age():
    cfg = _make_config()
    forecast = simulate(500_000, 50_000, 45_000, 66, 75, 0.013, cfg, seed=7)
    values = [pct for _, pct in forecast.items()]
    assert values == sorted(values, reverse=True)
    assert all(0.0 <= v <= 100.0 for v in values)


def test_probabilities_are_fractions_of_trajectories():
    cfg = _make_config(number_of_simulations=250)
    forecast = simulate(500_000, 50_000, 45_000, 66, 75, 0.013, cfg, seed=3)
    assert forecast.simulations == 250
    for _, pct in forecast.items():
        assert (pct * 250 / 100) == pytest.approx(round(pct * 250 / 100))


def test_wealthy_portfolio_always_survives():
    forecast = simulate(50_000_000, 5_000_000, 40_000, 65, 75, 0.013, _make_config(), seed=1)
    assert list(forecast.probabilities) == [70, 75, 80, 85, 90, 95, 100]
    assert all(pct == 100.0 for _, pct in forecast.items())


def test_empty_portfolio_never_survives():
    forecast = simulate(0, 0, 10_000, 65, 75, 0.013, _make_config(), seed=1)
    assert all(pct == 0.0 for _, pct in forecast.items())


def test_no_spending_never_depletes():
    forecast = simulate(100_000, 0, 0, 60, 75, 0.013, _make_config(), seed=5)
    assert all(pct == 100.0 for _, pct in forecast.items())


def test_cash_only_path_depletes_on_schedule():
    cfg = _make_config(
        number_of_simulations=10,
        historical_returns=(0.0,),
        annual_inflation=0.0,
    )
    # Six withdrawals of 10,000 from ages 60-65 leave exactly one dollar at 65
    forecast = simulate(0, 60_001, 10_000, 60, 75, 0.013, cfg, seed=0)
    assert forecast.probabilities == {
        65: 100.0,
        70: 0.0,
        75: 0.0,
        80: 0.0,
        85: 0.0,
        90: 0.0,
        95: 0.0,
        100: 0.0,
    }


def test_zero_balance_after_withdrawal_counts_as_depleted():
    cfg = _make_config(
        number_of_simulations=10,
        historical_returns=(0.0,),
        annual_inflation=0.0,
    )
    forecast = simulate(0, 60_000, 10_000, 60, 75, 0.013, cfg, seed=0)
    assert forecast.get(65) == 0.0


RMD_FIRST_AGE, RMD_DIVISORS = _rmd_divisor_array(EngineConfig())


def _year(stocks, cash, withdrawal, total_return, age=60, rmd_start_age=75, dividend_yield=0.02):
    return _advance_year(
        float(stocks),
        float(cash),
        float(withdrawal),
        age,
        rmd_start_age,
        float(total_return),
        float(dividend_yield),
        0.0,
        RMD_FIRST_AGE,
        RMD_DIVISORS,
    )


def test_down_year_keeps_stock_and_pays_dividends_to_cash():
    stocks, cash, solvent = _year(100_000, 10_000, 5_000, -0.10)
    assert solvent
    # 100,000 * (1 - 0.10 - 0.02); no stock is sold to refill cash
    assert stocks == pytest.approx(88_000.0)
    assert cash == pytest.approx(5_000.0 + 88_000.0 * 0.02)


def test_up_year_refills_cash_to_target():
    stocks, cash, solvent = _year(100_000, 10_000, 5_000, 0.20)
    assert solvent
    # Target is three years of 5,000; dividends cover 2,360 of the 10,000 gap
    assert cash == pytest.approx(15_000.0)
    assert stocks == pytest.approx(118_000.0 - (15_000.0 - 7_360.0))


def test_up_year_with_full_buffer_sells_nothing():
    stocks, cash, _ = _year(100_000, 40_000, 5_000, 0.20)
    assert stocks == pytest.approx(118_000.0)
    assert cash == pytest.approx(35_000.0 + 2_360.0)


def test_rmd_forces_larger_withdrawal_from_stock():
    # Age 80 divisor is 20.2, so the RMD of 10,000 exceeds the 1,000 spend
    stocks, cash, solvent = _year(
        202_000, 0, 1_000, 0.0, age=80, rmd_start_age=73, dividend_yield=0.0
    )
    assert solvent
    assert stocks == pytest.approx(192_000.0)
    assert cash == 0.0


def test_withdrawal_that_empties_portfolio_is_insolvent():
    stocks, cash, solvent = _year(0, 1_000, 1_000, 0.30)
    assert not solvent
    assert stocks + cash == 0.0


def test_returns_advance_one_year_at_a_time():
    cfg = _make_config(
        number_of_simulations=40,
        historical_returns=(0.0, -0.9),
        annual_inflation=0.0,
        terminal_age=66,
        milestone_step=1,
    )
    # Starting at index 0 survives a flat year then dies after the crash;
    # starting at index 1 dies immediately
    forecast = simulate(1_000, 0, 100, 64, 75, 0.0, cfg, seed=12)
    starts = np.random.default_rng(12).integers(0, 2, size=40)
    expected = float((starts == 0).sum()) / 40 * 100.0
    assert 0.0 < expected < 100.0
    assert forecast.probabilities == {65: expected, 66: 0.0}


def test_withdrawal_grows_with_inflation():
    cfg = _make_config(
        number_of_simulations=5,
        historical_returns=(0.0,),
        annual_inflation=0.5,
        terminal_age=66,
        milestone_step=1,
    )
    # Withdrawals of 100, 150 and 225 against 350 of cash
    forecast = simulate(0, 350, 100, 64, 75, 0.013, cfg, seed=0)
    assert forecast.probabilities == {65: 100.0, 66: 0.0}

    flat = simulate(0, 350, 100, 64, 75, 0.013, replace(cfg, annual_inflation=0.0), seed=0)
    assert flat.probabilities == {65: 100.0, 66: 100.0}


def test_no_milestones_past_terminal_age():
    forecast = simulate(100_000, 10_000, 5_000, 100, 75, 0.013, _make_config())
    assert len(forecast) == 0
    assert forecast.assessment() == "strong"


@pytest.mark.parametrize(
    "probabilities, expected",
    [
        ({80: 95.0, 90: 80.0}, "strong"),
        ({80: 75.0, 90: 55.0}, "adequate"),
        ({80: 92.0, 90: 60.0}, "adequate"),
        ({80: 50.0, 90: 20.0}, "high_risk"),
        ({90: 40.0}, "high_risk"),
        ({}, "strong"),
    ],
)
def test_forecast_assessment(probabilities, expected):
    assert SurvivalForecast(probabilities, 100).assessment() == expected


@pytest.mark.parametrize("pct, label", [(99.0, "Safe"), (85.0, "Caution"), (51.0, "Caution"), (50.0, "RISK")])
def test_status_label(pct, label):
    assert SurvivalForecast.status_label(pct) == label
