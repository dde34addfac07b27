import random

import numpy as np
import pytest

from swr_core import (
    Allocation,
    ConfigurationError,
    MEDIAN_INDEX_OFFSET,
    Rebalancing,
    Results,
    RunCounter,
    compute_terminal_values,
    needs_rebalance,
    rebalance,
    simulate,
    simulations_ran,
    withdraw,
)
from swr_data import DataRangeError, series_from_arrays


FIRST_YEAR = 1900
LAST_YEAR = 1960


def _flat(value, first_year=FIRST_YEAR, last_year=LAST_YEAR, name=""):
    months = (last_year - first_year + 1) * 12
    return series_from_arrays(first_year, 1, [value] * months, name=name)


@pytest.fixture(scope="module")
def market():
    """Three assets and an inflation series with noisy but positive returns."""
    rng = np.random.RandomState(42)
    months = (LAST_YEAR - FIRST_YEAR + 1) * 12
    params = {"stocks": (0.006, 0.045), "bonds": (0.003, 0.012), "gold": (0.004, 0.05)}
    assets = [
        series_from_arrays(
            FIRST_YEAR, 1, np.clip(1 + rng.normal(mu, sigma, months), 0.5, None), name
        )
        for name, (mu, sigma) in params.items()
    ]
    inflation = series_from_arrays(
        FIRST_YEAR, 1, 1 + rng.normal(0.0025, 0.004, months), "inflation"
    )
    portfolio = [
        Allocation("stocks", 60.0),
        Allocation("bonds", 30.0),
        Allocation("gold", 10.0),
    ]
    return portfolio, assets, inflation


def _reference_window(
    portfolio, assets, inflation, year, month, years, rate, monthly, policy, threshold,
    fees=(0.005, 0.01, 0.01),
):
    """Straightforward month-by-month drawdown used to check the compiled kernel."""
    monthly_fee, yearly_fee, threshold_fee = fees
    targets = [p.allocation / 100.0 for p in portfolio]
    values = [1000.0 * t for t in targets]
    withdrawal = 1000.0 * rate / 100.0
    start = [s.locate(year, month) for s in assets]
    infl_start = inflation.locate(year, month)
    months = years * 12

    def reallocate(fee):
        for i in range(len(values)):
            values[i] *= 1.0 - fee / 100.0
        total = sum(values)
        for i in range(len(values)):
            values[i] = total * targets[i]

    def take(amount):
        total = sum(values)
        if total <= 0.0:
            return
        for i in range(len(values)):
            values[i] = max(0.0, values[i] - values[i] / total * amount)

    for k in range(months):
        for i, series in enumerate(assets):
            values[i] *= series.values[start[i] + k]
        if policy == Rebalancing.MONTHLY:
            reallocate(monthly_fee)
        elif policy == Rebalancing.THRESHOLD:
            total = sum(values)
            if total > 0 and any(
                abs(t - v / total) >= threshold for t, v in zip(targets, values)
            ):
                reallocate(threshold_fee)
        withdrawal *= inflation.values[infl_start + k]
        if monthly:
            take(withdrawal / 12.0)
        if (month - 1 + k) % 12 == 11 or k == months - 1:
            if policy == Rebalancing.YEARLY:
                reallocate(yearly_fee)
            if not monthly:
                take(withdrawal)
    return sum(values)


def _reference(portfolio, assets, inflation, years, rate, start_year, end_year,
               monthly, policy, threshold, **kwargs):
    return [
        _reference_window(
            portfolio, assets, inflation, year, month, years, rate, monthly,
            policy, threshold, **kwargs,
        )
        for year in range(start_year, end_year - years + 1)
        for month in range(1, 13)
    ]


def test_flat_market_four_percent_fails_every_window():
    portfolio = [Allocation("cash", 100.0)]
    res = simulate(
        portfolio, _flat(1.0), [_flat(1.0)], 30, 4.0, 1900, 1930,
        False, Rebalancing.NONE, 0.0,
    )
    assert res.successes == 0
    assert res.failures == 12
    assert res.success_rate == 0.0
    assert res.terminal_values == [0.0] * 12
    assert res.tv_maximum == 0.0


def test_two_assets_compound_without_withdrawals():
    portfolio = [Allocation("a", 50.0), Allocation("b", 50.0)]
    res = simulate(
        portfolio, _flat(1.0), [_flat(1.01), _flat(1.01)], 1, 0.0, 1900, 1901,
        False, Rebalancing.NONE, 0.0,
    )
    expected = 1000 * 1.01 ** 12
    assert res.successes == 12
    assert res.failures == 0
    assert res.success_rate == 100.0
    assert res.terminal_values == pytest.approx([expected] * 12)
    assert res.tv_median == pytest.approx(expected)
    assert res.tv_average == pytest.approx(expected)


def test_monthly_withdrawal_adjusted_for_inflation():
    portfolio = [Allocation("cash", 100.0)]
    res = simulate(
        portfolio, _flat(1.01), [_flat(1.0)], 1, 12.0, 1900, 1901,
        True, Rebalancing.NONE, 0.0,
    )
    expected = 1000 - 10 * sum(1.01 ** k for k in range(1, 13))
    assert res.terminal_values == pytest.approx([expected] * 12)


def test_yearly_withdrawal_on_each_calendar_year_close():
    # A window that does not start in January spans two calendar years.
    portfolio = [Allocation("cash", 100.0)]
    res = simulate(
        portfolio, _flat(1.0), [_flat(1.0)], 1, 12.0, 1900, 1901,
        False, Rebalancing.NONE, 0.0,
    )
    assert res.terminal_values[0] == pytest.approx(880.0)
    assert res.terminal_values[1:] == pytest.approx([760.0] * 11)


@pytest.mark.parametrize(
    "start_year, end_year, years",
    [(1900, 1960, 30), (1900, 1960, 10), (1910, 1950, 40), (1920, 1921, 1)],
)
def test_window_count(market, start_year, end_year, years):
    portfolio, assets, inflation = market
    res = simulate(
        portfolio, inflation, assets, years, 4.0, start_year, end_year,
        False, Rebalancing.YEARLY, 0.0,
    )
    assert res.successes + res.failures == (end_year - start_year - years + 1) * 12
    assert len(res.terminal_values) == res.successes + res.failures
    assert 0.0 <= res.success_rate <= 100.0


@pytest.mark.parametrize(
    "policy, threshold, monthly",
    [
        (Rebalancing.NONE, 0.0, False),
        (Rebalancing.NONE, 0.0, True),
        (Rebalancing.MONTHLY, 0.0, False),
        (Rebalancing.YEARLY, 0.0, True),
        (Rebalancing.YEARLY, 0.0, False),
        (Rebalancing.THRESHOLD, 0.05, False),
        (Rebalancing.THRESHOLD, 0.02, True),
    ],
)
def test_matches_month_by_month_reference(market, policy, threshold, monthly):
    portfolio, assets, inflation = market
    res = simulate(
        portfolio, inflation, assets, 20, 5.0, 1930, 1955,
        monthly, policy, threshold,
    )
    expected = _reference(
        portfolio, assets, inflation, 20, 5.0, 1930, 1955, monthly, policy, threshold
    )
    assert res.terminal_values == pytest.approx(expected, rel=1e-9, abs=1e-9)
    assert res.successes == sum(1 for v in expected if v > 0)


def test_no_rebalancing_never_pays_fees(market):
    portfolio, assets, inflation = market
    res = simulate(
        portfolio, inflation, assets, 25, 4.5, 1900, 1960,
        False, Rebalancing.NONE, 0.0,
    )
    expected = _reference(
        portfolio, assets, inflation, 25, 4.5, 1900, 1960, False,
        Rebalancing.NONE, 0.0, fees=(50.0, 50.0, 50.0),
    )
    assert res.terminal_values == pytest.approx(expected, rel=1e-9, abs=1e-9)


def test_unreachable_threshold_matches_no_rebalancing(market):
    portfolio, assets, inflation = market
    args = (portfolio, inflation, assets, 30, 4.0, 1900, 1960, False)
    never = simulate(*args, Rebalancing.THRESHOLD, 1.5)
    none = simulate(*args, Rebalancing.NONE, 0.0)
    assert never.terminal_values == pytest.approx(none.terminal_values)


@pytest.mark.parametrize("policy", [Rebalancing.NONE, Rebalancing.YEARLY, Rebalancing.MONTHLY])
def test_success_rate_does_not_increase_with_withdrawal_rate(market, policy):
    portfolio, assets, inflation = market
    rates = [0.0, 2.0, 3.0, 4.0, 5.0, 6.0, 8.0, 12.0]
    success = [
        simulate(
            portfolio, inflation, assets, 30, rate, 1900, 1960, False, policy, 0.0
        ).success_rate
        for rate in rates
    ]
    assert success[0] == 100.0
    assert all(a >= b for a, b in zip(success, success[1:]))


def test_aggregation_independent_of_window_order(market):
    portfolio, assets, inflation = market
    res = simulate(
        portfolio, inflation, assets, 30, 4.0, 1900, 1960,
        True, Rebalancing.YEARLY, 0.0,
    )
    shuffled = list(res.terminal_values)
    random.Random(7).shuffle(shuffled)
    other = Results()
    other.compute_terminal_values(shuffled)
    assert other.tv_minimum == res.tv_minimum
    assert other.tv_maximum == res.tv_maximum
    assert other.tv_average == res.tv_average
    assert other.tv_median == res.tv_median


@pytest.mark.parametrize("fee", [0.0, 0.005, 0.01])
def test_rebalance_restores_target_fractions(fee):
    values = np.array([700.0, 150.0, 250.0])
    targets = np.array([0.6, 0.3, 0.1])
    total = values.sum()
    rebalance(values, targets, fee)
    assert list(values / values.sum()) == pytest.approx(list(targets))
    assert values.sum() == pytest.approx(total * (1 - fee / 100))


def test_needs_rebalance_uses_raw_fraction():
    targets = np.array([0.5, 0.5])
    assert not needs_rebalance(np.array([524.0, 476.0]), targets, 0.025)
    assert needs_rebalance(np.array([525.0, 475.0]), targets, 0.025)
    assert not needs_rebalance(np.array([0.0, 0.0]), targets, 0.0)


def test_withdraw_is_pro_rata_and_floored_at_zero():
    values = np.array([300.0, 100.0])
    withdraw(values, 100.0)
    assert list(values) == pytest.approx([225.0, 75.0])
    withdraw(values, 1000.0)
    assert list(values) == [0.0, 0.0]
    withdraw(values, 10.0)
    assert list(values) == [0.0, 0.0]


def test_compute_terminal_values():
    values = [float(v) for v in range(12, 0, -1)]
    median, minimum, maximum, average = compute_terminal_values(values)
    assert median == values[::-1][12 // 2 + MEDIAN_INDEX_OFFSET]
    assert median == 8.0
    assert minimum == 1.0
    assert maximum == 12.0
    assert average == pytest.approx(6.5)


def test_compute_terminal_values_single_and_empty():
    assert compute_terminal_values([5.0]) == (5.0, 5.0, 5.0, 5.0)
    with pytest.raises(ValueError):
        compute_terminal_values([])


def test_run_counter_accumulates(market):
    portfolio, assets, inflation = market
    counter = RunCounter()
    before = simulations_ran()
    for _ in range(2):
        simulate(
            portfolio, inflation, assets, 30, 4.0, 1900, 1960,
            False, Rebalancing.NONE, 0.0, counter=counter,
        )
    assert counter.total == 2 * 31 * 12
    assert simulations_ran() == before

    simulate(
        portfolio, inflation, assets, 50, 4.0, 1900, 1960,
        False, Rebalancing.NONE, 0.0,
    )
    assert simulations_ran() == before + 11 * 12


@pytest.mark.parametrize(
    "kwargs",
    [
        {"years": 30, "start_year": 1940, "end_year": 1960},
        {"years": 0},
        {"withdrawal_rate": -1.0},
    ],
)
def test_invalid_parameters(market, kwargs):
    portfolio, assets, inflation = market
    params = dict(
        portfolio=portfolio, inflation_data=inflation, asset_data=assets,
        years=30, withdrawal_rate=4.0, start_year=1900, end_year=1960,
        monthly_withdrawal=False, policy=Rebalancing.NONE, threshold=0.0,
    )
    params.update(kwargs)
    with pytest.raises(ConfigurationError):
        simulate(**params)


def test_asset_count_must_match_portfolio(market):
    portfolio, assets, inflation = market
    with pytest.raises(ConfigurationError):
        simulate(
            portfolio, inflation, assets[:2], 30, 4.0, 1900, 1960,
            False, Rebalancing.NONE, 0.0,
        )


def test_short_series_rejected_before_simulating():
    portfolio = [Allocation("cash", 100.0)]
    counter = RunCounter()
    with pytest.raises(DataRangeError):
        simulate(
            portfolio, _flat(1.0), [_flat(1.0, last_year=1950)], 30, 4.0, 1900, 1960,
            False, Rebalancing.NONE, 0.0, counter=counter,
        )
    assert counter.total == 0
