"""Command line front end for the historical withdrawal rate simulator."""

from __future__ import annotations

import argparse
import logging
import os
import sys

from swr_core import (
    CONFIG_FILE,
    ConfigurationError,
    Rebalancing,
    Results,
    SimulationConfig,
    format_rebalance,
    load_config,
    parse_percent,
    parse_portfolio,
    run_config,
    save_config,
    simulations_ran,
)
from swr_data import SERIES_KINDS, load_portfolio_data, load_series_csv


logger = logging.getLogger(__name__)


def format_results(cfg: SimulationConfig, res: Results) -> str:
    """Render a results record as a short text report."""
    portfolio = ", ".join(f"{p.name} {p.allocation:g}%" for p in cfg.portfolio)
    cadence = "monthly" if cfg.monthly_withdrawal else "yearly"
    lines = [
        f"Portfolio: {portfolio}",
        f"Withdrawal rate: {cfg.withdrawal_rate:g}% ({cadence}) over {cfg.years} years, "
        f"{cfg.start_year}-{cfg.end_year}",
        f"Rebalancing: {format_rebalance(cfg.policy)}"
        + (f" (threshold {cfg.threshold:g})" if cfg.policy is Rebalancing.THRESHOLD else ""),
        f"Success rate: {res.success_rate:.2f}% "
        f"({res.successes} successes, {res.failures} failures)",
        f"Terminal value: median {res.tv_median:,.2f}, min {res.tv_minimum:,.2f}, "
        f"max {res.tv_maximum:,.2f}, average {res.tv_average:,.2f}",
        f"Simulations ran: {simulations_ran()}",
    ]
    return "\n".join(lines)


def plot_terminal_values(cfg: SimulationConfig, res: Results):
    """Plot the terminal value of every window against its start date."""
    import matplotlib.pyplot as plt

    starts = [
        year + (month - 1) / 12
        for year in range(cfg.start_year, cfg.end_year - cfg.years + 1)
        for month in range(1, 13)
    ]
    colors = ["tab:green" if v > 0 else "tab:red" for v in res.terminal_values]

    fig, ax = plt.subplots(figsize=(10, 5))
    ax.scatter(starts, res.terminal_values, c=colors, s=6)
    ax.axhline(1000.0, color="gray", linestyle="--", linewidth=0.8)
    ax.set_xlabel("Retirement start")
    ax.set_ylabel("Terminal value")
    ax.set_title(
        f"{cfg.withdrawal_rate:g}% over {cfg.years} years: "
        f"{res.success_rate:.1f}% success"
    )
    fig.tight_layout()
    return fig


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Backtest a fixed withdrawal rate against every historical start month.",
    )
    parser.add_argument("--config", "-c", default=CONFIG_FILE,
                        help="JSON configuration file (default: %(default)s)")
    parser.add_argument("--save-config", action="store_true",
                        help="Write the effective configuration back to --config")
    parser.add_argument("--portfolio", "-p", type=parse_portfolio,
                        help="Assets and allocations, e.g. us_stocks:60,us_bonds:40")
    parser.add_argument("--data-dir", "-d", help="Directory holding <asset>.csv files")
    parser.add_argument("--inflation", help="Name of the inflation series in --data-dir")
    parser.add_argument("--kind", choices=[k for k in SERIES_KINDS if k != "inflation"],
                        help="Whether the CSV values are monthly returns or price levels")
    parser.add_argument("--years", "-y", type=int, help="Length of retirement in years")
    parser.add_argument("--rate", "-r", type=parse_percent,
                        help="Yearly withdrawal rate, e.g. 4 or 4%%")
    parser.add_argument("--start", type=int, help="First year of historical data to use")
    parser.add_argument("--end", type=int, help="Last year of historical data to use")
    parser.add_argument("--monthly", action=argparse.BooleanOptionalAction, default=None,
                        help="Withdraw every month (--no-monthly: once a year)")
    parser.add_argument("--rebalance", choices=["none", "monthly", "yearly", "threshold"],
                        help="Rebalancing policy")
    parser.add_argument("--threshold", type=float,
                        help="Drift that triggers threshold rebalancing, as a fraction (0.05)")
    parser.add_argument("--plot", action="store_true", help="Plot terminal values")
    parser.add_argument("--verbose", "-v", action="count", default=0)
    return parser


_ARG_FIELDS = {
    "portfolio": "portfolio",
    "data_dir": "data_dir",
    "inflation": "inflation",
    "kind": "data_kind",
    "years": "years",
    "rate": "withdrawal_rate",
    "start": "start_year",
    "end": "end_year",
    "monthly": "monthly_withdrawal",
    "rebalance": "rebalance",
    "threshold": "threshold",
}


def config_from_args(args: argparse.Namespace) -> SimulationConfig:
    """Merge command line options over the saved configuration file."""
    data = load_config(args.config)
    for arg, key in _ARG_FIELDS.items():
        value = getattr(args, arg)
        if value is not None:
            data[key] = value
    if "portfolio" not in data:
        raise ConfigurationError("No portfolio given (use --portfolio or a config file)")
    return SimulationConfig.from_dict(data)


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.WARNING - 10 * min(args.verbose, 2),
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        cfg = config_from_args(args)
        asset_data = load_portfolio_data(
            cfg.data_dir, [p.name for p in cfg.portfolio], kind=cfg.data_kind
        )
        inflation_data = load_series_csv(
            os.path.join(cfg.data_dir, f"{cfg.inflation}.csv"),
            name=cfg.inflation,
            kind="returns" if cfg.data_kind == "returns" else "inflation",
        )
        res = run_config(cfg, inflation_data, asset_data)
    except (ValueError, OSError) as exc:
        logger.debug("Simulation failed", exc_info=True)
        print(f"error: {exc}", file=sys.stderr)
        return 2

    print(format_results(cfg, res))

    if args.save_config:
        save_config(cfg, args.config)

    if args.plot:  # pragma: no cover - manual run only
        import matplotlib.pyplot as plt

        plot_terminal_values(cfg, res)
        plt.show()

    return 0


if __name__ == "__main__":  # pragma: no cover - manual run only
    sys.exit(main())
