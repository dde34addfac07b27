"""Core functionality for historical safe withdrawal rate simulations."""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, field, fields
from enum import IntEnum
from typing import Optional, Sequence

import numpy as np
from numba import njit

from swr_data import MonthlySeries


logger = logging.getLogger(__name__)

# Nominal value of the portfolio at the start of every window
START_VALUE = 1000.0

# Rebalancing fees, in percent of each asset's value
MONTHLY_REBALANCING_COST = 0.005
YEARLY_REBALANCING_COST = 0.01
THRESHOLD_REBALANCING_COST = 0.01

# The median is read at n // 2 + MEDIAN_INDEX_OFFSET of the sorted terminal
# values. Set to 0 for the conventional upper-middle element.
MEDIAN_INDEX_OFFSET = 1

CONFIG_FILE = "swr_config.json"


class ConfigurationError(ValueError):
    """Raised when simulation parameters cannot describe any valid window."""


class Rebalancing(IntEnum):
    NONE = 0
    MONTHLY = 1
    YEARLY = 2
    THRESHOLD = 3

    def __str__(self) -> str:
        return format_rebalance(self)


_REBALANCE_NAMES = {
    "none": Rebalancing.NONE,
    "monthly": Rebalancing.MONTHLY,
    "yearly": Rebalancing.YEARLY,
    "threshold": Rebalancing.THRESHOLD,
}


def parse_rebalance(text: str) -> Rebalancing:
    """Map a policy name to a Rebalancing value; unknown names mean THRESHOLD."""
    return _REBALANCE_NAMES.get(text, Rebalancing.THRESHOLD)


def parse_rebalance_strict(text: str) -> Rebalancing:
    """Like :func:`parse_rebalance` but reject names that are not a policy."""
    try:
        return _REBALANCE_NAMES[text]
    except KeyError as exc:
        raise ValueError(
            f"Invalid rebalancing policy: {text!r} "
            f"(expected one of {', '.join(_REBALANCE_NAMES)})"
        ) from exc


def format_rebalance(policy) -> str:
    for name, value in _REBALANCE_NAMES.items():
        if isinstance(policy, (int, np.integer)) and policy == value:
            return name
    return "Unknown rebalancing"


@dataclass(frozen=True)
class Allocation:
    name: str
    allocation: float  # percent of the portfolio, 0..100


@dataclass
class Results:
    successes: int = 0
    failures: int = 0
    success_rate: float = 0.0
    tv_median: float = 0.0
    tv_minimum: float = 0.0
    tv_maximum: float = 0.0
    tv_average: float = 0.0
    # Terminal value of every window, in order of start date
    terminal_values: list[float] = field(default_factory=list, repr=False)

    def compute_terminal_values(self, terminal_values: Sequence[float]) -> None:
        """Fill in the terminal value statistics from every window's final value."""
        (
            self.tv_median,
            self.tv_minimum,
            self.tv_maximum,
            self.tv_average,
        ) = compute_terminal_values(terminal_values)


def compute_terminal_values(terminal_values: Sequence[float]) -> tuple:
    """Return ``(median, minimum, maximum, average)`` of the terminal values."""
    if len(terminal_values) == 0:
        raise ValueError("No terminal values to aggregate")
    ordered = sorted(terminal_values)
    n = len(ordered)
    median = ordered[min(n // 2 + MEDIAN_INDEX_OFFSET, n - 1)]
    average = sum(ordered) / n
    return float(median), float(ordered[0]), float(ordered[-1]), float(average)


class RunCounter:
    """Thread-safe running total of simulated windows."""

    def __init__(self):
        self._total = 0
        self._lock = threading.Lock()

    def add(self, windows: int) -> None:
        with self._lock:
            self._total += windows

    @property
    def total(self) -> int:
        return self._total


_default_counter = RunCounter()


def simulations_ran() -> int:
    """Return the number of windows simulated by calls using the default counter."""
    return _default_counter.total


_MONTHLY = int(Rebalancing.MONTHLY)
_YEARLY = int(Rebalancing.YEARLY)
_THRESHOLD = int(Rebalancing.THRESHOLD)


@njit(cache=True)
def rebalance(values: np.ndarray, targets: np.ndarray, fee: float) -> None:
    """Pay ``fee`` percent on every asset, then reset the assets to ``targets``."""
    for i in range(len(values)):
        values[i] *= 1.0 - fee / 100.0
    total = values.sum()
    for i in range(len(values)):
        values[i] = total * targets[i]


@njit(cache=True)
def needs_rebalance(values: np.ndarray, targets: np.ndarray, threshold: float) -> bool:
    """Return True if any asset has drifted at least ``threshold`` from its target."""
    total = values.sum()
    if total <= 0.0:
        return False
    for i in range(len(values)):
        if abs(targets[i] - values[i] / total) >= threshold:
            return True
    return False


@njit(cache=True)
def withdraw(values: np.ndarray, amount: float) -> None:
    """Take ``amount`` from the assets pro rata, never leaving one negative."""
    total = values.sum()
    if total <= 0.0:
        return
    for i in range(len(values)):
        remaining = values[i] - (values[i] / total) * amount
        values[i] = remaining if remaining > 0.0 else 0.0


@njit(cache=True)
def _simulate_window(
    returns: np.ndarray,  # (n_assets, months) gross multipliers
    inflation: np.ndarray,  # (months,) gross multipliers
    targets: np.ndarray,  # (n_assets,) target fractions
    start_month: int,
    withdrawal: float,  # initial yearly withdrawal
    monthly_withdrawal: bool,
    policy: int,
    threshold: float,
) -> float:
    """Run one drawdown window and return the terminal portfolio value."""
    n_assets, months = returns.shape
    values = START_VALUE * targets

    for k in range(months):
        for i in range(n_assets):
            values[i] *= returns[i, k]

        if policy == _MONTHLY:
            rebalance(values, targets, MONTHLY_REBALANCING_COST)
        elif policy == _THRESHOLD:
            if needs_rebalance(values, targets, threshold):
                rebalance(values, targets, THRESHOLD_REBALANCING_COST)

        withdrawal *= inflation[k]

        if monthly_withdrawal:
            withdraw(values, withdrawal / 12.0)

        # Close of a calendar year, or of the window's last (partial) year
        if (start_month - 1 + k) % 12 == 11 or k == months - 1:
            if policy == _YEARLY:
                rebalance(values, targets, YEARLY_REBALANCING_COST)
            if not monthly_withdrawal:
                withdraw(values, withdrawal)

    return values.sum()


def _validate(
    portfolio: Sequence[Allocation],
    asset_data: Sequence[MonthlySeries],
    years: int,
    withdrawal_rate: float,
    start_year: int,
    end_year: int,
) -> None:
    if not portfolio:
        raise ConfigurationError("Portfolio has no assets")
    if len(asset_data) != len(portfolio):
        raise ConfigurationError(
            f"Portfolio has {len(portfolio)} asset(s) but {len(asset_data)} data series"
        )
    for position in portfolio:
        if not 0 <= position.allocation <= 100:
            raise ConfigurationError(
                f"Allocation for {position.name!r} must be between 0 and 100"
            )
    if years <= 0:
        raise ConfigurationError("Number of years must be positive")
    if withdrawal_rate < 0:
        raise ConfigurationError("Withdrawal rate cannot be negative")
    if end_year - years < start_year:
        raise ConfigurationError(
            f"No {years}-year window fits between {start_year} and {end_year}"
        )


def simulate(
    portfolio: Sequence[Allocation],
    inflation_data: MonthlySeries,
    asset_data: Sequence[MonthlySeries],
    years: int,
    withdrawal_rate: float,
    start_year: int,
    end_year: int,
    monthly_withdrawal: bool,
    policy: Rebalancing,
    threshold: float,
    counter: Optional[RunCounter] = None,
) -> Results:
    """Replay every historical start month in ``start_year..end_year - years``.

    ``withdrawal_rate`` is a yearly percentage of the starting value (4 for 4%).
    ``threshold`` is a raw fraction (0.05 rebalances once any asset drifts five
    percentage points from its target), unlike the percentage allocations.
    Windows are counted on ``counter``, or on the process-wide counter read by
    :func:`simulations_ran` when none is given.
    """
    _validate(portfolio, asset_data, years, withdrawal_rate, start_year, end_year)

    months = years * 12
    targets = np.array([p.allocation / 100.0 for p in portfolio], dtype=np.float64)
    initial_withdrawal = START_VALUE * withdrawal_rate / 100.0

    # Fail before running anything if a series is too short for the last window
    for series in [inflation_data, *asset_data]:
        series.cursor(start_year, 1).read((end_year - years - start_year) * 12 + 11 + months)

    logger.debug(
        "Simulating %d-year windows %d..%d, %s rebalancing, %s withdrawals",
        years,
        start_year,
        end_year,
        format_rebalance(policy),
        "monthly" if monthly_withdrawal else "yearly",
    )

    res = Results()
    terminal_values = []

    for current_year in range(start_year, end_year - years + 1):
        for current_month in range(1, 13):
            returns = np.vstack(
                [s.cursor(current_year, current_month).read(months) for s in asset_data]
            )
            inflation = inflation_data.cursor(current_year, current_month).read(months)

            final_value = float(
                _simulate_window(
                    returns,
                    inflation,
                    targets,
                    current_month,
                    initial_withdrawal,
                    bool(monthly_withdrawal),
                    int(policy),
                    float(threshold),
                )
            )

            if final_value > 0.0:
                res.successes += 1
            else:
                res.failures += 1

            terminal_values.append(final_value)

    res.success_rate = 100.0 * res.successes / (res.successes + res.failures)
    res.terminal_values = terminal_values
    res.compute_terminal_values(terminal_values)

    (counter or _default_counter).add(len(terminal_values))

    logger.info(
        "%d windows: %.2f%% success, median terminal value %.2f",
        len(terminal_values),
        res.success_rate,
        res.tv_median,
    )
    return res


def parse_percent(val: str) -> float:
    """Convert a percentage string like '4%' or '4' to 4.0 (percent units)."""

    try:
        pct = float(val.strip().rstrip("%"))
    except ValueError as exc:  # pragma: no cover - error path simple
        raise ValueError(f"Invalid percentage: {val!r}") from exc
    if not 0 <= pct <= 100:
        raise ValueError("Percentage must be between 0% and 100%")
    return pct


def parse_portfolio(val: str) -> list[Allocation]:
    """Convert 'us_stocks:60,us_bonds:40' to a list of Allocation."""

    portfolio = []
    for item in val.split(","):
        name, sep, alloc = item.strip().partition(":")
        if not sep or not name:
            raise ValueError(f"Invalid portfolio entry: {item!r} (expected name:percent)")
        portfolio.append(Allocation(name.strip(), parse_percent(alloc)))
    return portfolio


@dataclass
class SimulationConfig:
    portfolio: list[Allocation]
    years: int = 30
    withdrawal_rate: float = 4.0
    start_year: int = 1871
    end_year: int = 2023
    monthly_withdrawal: bool = False
    rebalance: str = "none"
    threshold: float = 0.0
    data_dir: str = "data"
    inflation: str = "us_inflation"
    data_kind: str = "returns"
    policy: Rebalancing = field(default=Rebalancing.NONE, init=False)
    months: int = field(default=0, init=False)

    def __post_init__(self) -> None:
        self.portfolio = [
            p if isinstance(p, Allocation) else Allocation(p["name"], float(p["allocation"]))
            for p in self.portfolio
        ]
        if not self.portfolio:
            raise ValueError("Portfolio must contain at least one asset")
        if self.years <= 0:
            raise ValueError("Number of years must be positive")
        if self.end_year - self.years < self.start_year:
            raise ValueError(
                f"No {self.years}-year window fits between {self.start_year} and {self.end_year}"
            )
        if self.threshold < 0:
            raise ValueError("Rebalancing threshold cannot be negative")
        self.policy = parse_rebalance_strict(self.rebalance)
        self.months = self.years * 12

        total = sum(p.allocation for p in self.portfolio)
        if abs(total - 100.0) > 1e-6:
            logger.warning("Portfolio allocations sum to %.2f%%, not 100%%", total)

    def to_dict(self) -> dict:
        return {
            "portfolio": [
                {"name": p.name, "allocation": p.allocation} for p in self.portfolio
            ],
            "years": self.years,
            "withdrawal_rate": self.withdrawal_rate,
            "start_year": self.start_year,
            "end_year": self.end_year,
            "monthly_withdrawal": self.monthly_withdrawal,
            "rebalance": self.rebalance,
            "threshold": self.threshold,
            "data_dir": self.data_dir,
            "inflation": self.inflation,
            "data_kind": self.data_kind,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SimulationConfig":
        unknown = set(data) - {f.name for f in fields(cls) if f.init}
        if unknown:
            raise ValueError(f"Unknown configuration key(s): {', '.join(sorted(unknown))}")
        return cls(**data)


def run_config(
    cfg: SimulationConfig,
    inflation_data: MonthlySeries,
    asset_data: Sequence[MonthlySeries],
    counter: Optional[RunCounter] = None,
) -> Results:
    """Run :func:`simulate` with the parameters held by ``cfg``."""
    return simulate(
        cfg.portfolio,
        inflation_data,
        asset_data,
        cfg.years,
        cfg.withdrawal_rate,
        cfg.start_year,
        cfg.end_year,
        cfg.monthly_withdrawal,
        cfg.policy,
        cfg.threshold,
        counter=counter,
    )


def load_config(path: str = CONFIG_FILE) -> dict:
    """Load saved configuration if available."""

    if os.path.exists(path):
        with open(path) as f:
            return json.load(f)
    return {}


def save_config(cfg: SimulationConfig, path: str = CONFIG_FILE) -> None:
    """Persist the provided configuration to disk."""

    with open(path, "w") as f:
        json.dump(cfg.to_dict(), f, indent=2)
