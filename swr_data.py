"""Monthly historical data series and the loaders that build them."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

import numpy as np
import pandas as pd


logger = logging.getLogger(__name__)

SERIES_KINDS = ("returns", "prices", "inflation")


class DataError(ValueError):
    """Raised when a monthly series is malformed."""


class DataRangeError(DataError):
    """Raised when a lookup or read falls outside a series' populated range."""


@dataclass(frozen=True)
class MonthlyData:
    year: int
    month: int
    value: float


def _next_month(year: int, month: int) -> tuple:
    if month == 12:
        return year + 1, 1
    return year, month + 1


class MonthlySeries:
    """Calendar-ordered, gap-free sequence of monthly multipliers.

    Records are stored as parallel numpy arrays so that a window of values can
    be handed to the simulation kernel without copying record by record.
    """

    def __init__(self, records: Iterable[MonthlyData], name: str = ""):
        records = list(records)
        if not records:
            raise DataError(f"Series {name!r} has no records")

        prev = None
        for rec in records:
            if not 1 <= rec.month <= 12:
                raise DataError(
                    f"Series {name!r}: invalid month {rec.month} in {rec.year}"
                )
            if prev is not None and (rec.year, rec.month) != _next_month(*prev):
                raise DataError(
                    f"Series {name!r}: {rec.year}-{rec.month:02d} does not follow "
                    f"{prev[0]}-{prev[1]:02d}"
                )
            prev = (rec.year, rec.month)

        self.name = name
        self.years = np.array([r.year for r in records], dtype=np.int64)
        self.months = np.array([r.month for r in records], dtype=np.int64)
        self.values = np.array([r.value for r in records], dtype=np.float64)

    def __len__(self) -> int:
        return len(self.values)

    def __getitem__(self, index: int) -> MonthlyData:
        return MonthlyData(
            int(self.years[index]), int(self.months[index]), float(self.values[index])
        )

    def __repr__(self) -> str:
        first, last = self.first, self.last
        return (
            f"MonthlySeries({self.name!r}, {first.year}-{first.month:02d}.."
            f"{last.year}-{last.month:02d})"
        )

    @property
    def first(self) -> MonthlyData:
        return self[0]

    @property
    def last(self) -> MonthlyData:
        return self[len(self) - 1]

    def locate(self, year: int, month: int) -> int:
        """Return the index of the record for ``(year, month)``."""
        # Contiguity makes the position a direct offset from the first record.
        first = self.first
        index = (year - first.year) * 12 + (month - first.month)
        if not 1 <= month <= 12 or not 0 <= index < len(self):
            raise DataRangeError(
                f"Series {self.name!r} has no record for {year}-{month:02d}"
            )
        return index

    def cursor(self, year: int, month: int) -> "SeriesCursor":
        return SeriesCursor(self, self.locate(year, month))


class SeriesCursor:
    """Forward-only reader over a series with explicit bounds checks."""

    def __init__(self, series: MonthlySeries, position: int = 0):
        self.series = series
        self.position = position

    def has_more(self) -> bool:
        return self.position < len(self.series)

    @property
    def value(self) -> float:
        if not self.has_more():
            raise DataRangeError(f"Read past the end of series {self.series.name!r}")
        return float(self.series.values[self.position])

    def advance(self) -> None:
        self.position += 1

    def read(self, count: int) -> np.ndarray:
        """Return the next ``count`` values and move past them."""
        end = self.position + count
        if end > len(self.series):
            last = self.series.last
            raise DataRangeError(
                f"Series {self.series.name!r} ends at {last.year}-{last.month:02d}; "
                f"{end - len(self.series)} more month(s) needed"
            )
        window = self.series.values[self.position:end]
        self.position = end
        return window


def series_from_arrays(
    start_year: int, start_month: int, values: Sequence[float], name: str = ""
) -> MonthlySeries:
    """Build a series of consecutive months beginning at ``start_year-start_month``."""
    records = []
    year, month = start_year, start_month
    for value in values:
        records.append(MonthlyData(year, month, float(value)))
        year, month = _next_month(year, month)
    return MonthlySeries(records, name=name)


def _levels_to_multipliers(df: pd.DataFrame) -> pd.DataFrame:
    """Convert a level column (price index or CPI) to month-over-month multipliers."""
    out = df.copy()
    out["value"] = out["value"] / out["value"].shift(1)
    return out.iloc[1:]


def load_series_csv(
    path: str, name: Optional[str] = None, kind: str = "returns"
) -> MonthlySeries:
    """Load a monthly series from a CSV with ``year``, ``month`` and ``value`` columns.

    ``kind`` selects how ``value`` is read: ``"returns"`` takes it as a gross
    monthly multiplier, ``"prices"`` and ``"inflation"`` take it as a level
    (price index or CPI) and convert consecutive levels to multipliers.
    """
    if kind not in SERIES_KINDS:
        raise ValueError(f"Unknown series kind: {kind!r}")
    if name is None:
        name = os.path.splitext(os.path.basename(path))[0]

    df = pd.read_csv(path)
    df.columns = [c.strip().lower() for c in df.columns]
    missing = {"year", "month", "value"} - set(df.columns)
    if missing:
        raise DataError(f"{path}: missing column(s) {', '.join(sorted(missing))}")

    df = df.sort_values(["year", "month"]).reset_index(drop=True)
    if kind != "returns":
        if (df["value"] <= 0).any():
            raise DataError(f"{path}: level values must be positive")
        df = _levels_to_multipliers(df)

    records = [
        MonthlyData(int(row.year), int(row.month), float(row.value))
        for row in df.itertuples(index=False)
    ]
    series = MonthlySeries(records, name=name)
    logger.debug("Loaded %s (%s) with %d months from %s", name, kind, len(series), path)
    return series


def load_portfolio_data(
    data_dir: str, names: Sequence[str], kind: str = "returns"
) -> list:
    """Load one series per asset name from ``data_dir/<name>.csv``."""
    return [
        load_series_csv(os.path.join(data_dir, f"{name}.csv"), name=name, kind=kind)
        for name in names
    ]
