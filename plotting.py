import os
import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from loguru import logger
from matplotlib.ticker import FuncFormatter
from typing import Dict, Optional

from config import ScenarioConfig
from constants import BUCKET_KEYS, TEXT_INPUT_COLOR, TEXT_OUTPUT_COLOR


def _millions_formatter(x_val, pos):
    return f"{x_val:.1f}M" if x_val != 0 else "0"


def _save(filename: str, dpi_setting: int, what: str) -> None:
    try:
        file_directory = os.path.dirname(filename)
        if file_directory:
            os.makedirs(file_directory, exist_ok=True)
        plt.savefig(filename, dpi=dpi_setting)
        logger.info(f"{what} saved to {filename} (DPI: {dpi_setting})")
    except Exception as e:
        logger.opt(exception=True).error(f"Error saving {what.lower()} '{filename}': {e}")
    finally:
        plt.close()


def plot_portfolio_projection(
    projection_df: pd.DataFrame,
    monte_carlo,
    config: ScenarioConfig,
    filename: str,
    dpi_setting: int = 150,
):
    """
    Plots the Monte Carlo p10-p90 band and median against the deterministic
    bucket projection and the single-portfolio benchmark.

    Args:
        projection_df: Output of ``simulation.records_to_dataframe``.
        monte_carlo: ``MonteCarloResult`` for the same plan.
        config: Scenario being reported; used for the title and text box.
        filename: Path of the PNG to write.
        dpi_setting: The DPI for the saved image.
    """
    if projection_df is None or projection_df.empty or not monte_carlo.data:
        logger.warning(f"No projection data to plot for '{filename}'. Skipping.")
        return

    plt.figure(figsize=(12, 7))
    ax = plt.gca()

    years = np.array([y.year for y in monte_carlo.data])
    p10 = np.array([y.p10 for y in monte_carlo.data]) / 1e6
    median = np.array([y.median for y in monte_carlo.data]) / 1e6
    p90 = np.array([y.p90 for y in monte_carlo.data]) / 1e6

    ax.fill_between(
        years, p10, p90, color="orangered", alpha=0.15, label="10th-90th Percentile Range", interpolate=True
    )
    ax.plot(years, median, color="blue", linewidth=1.8, label="Monte Carlo Median")
    ax.plot(
        projection_df["Year"],
        projection_df["End Balance"] / 1e6,
        color="black",
        linestyle="--",
        linewidth=1.2,
        label="Bucket Plan (Expected Returns)",
    )
    ax.plot(
        projection_df["Year"],
        projection_df["Benchmark"] / 1e6,
        color="grey",
        linestyle=":",
        linewidth=1.2,
        label="Single-Portfolio Benchmark",
    )

    for year in projection_df.loc[projection_df["Rebalanced"], "Year"]:
        ax.axvline(x=year, color="green", alpha=0.15, linewidth=0.8, label="_nolegend_")

    inputs = config.inputs
    text_lines = [
        (f"Portfolio: ${inputs.total_portfolio:,.0f}", TEXT_INPUT_COLOR),
        (f"Spending: ${inputs.monthly_spending:,.0f}/mo", TEXT_INPUT_COLOR),
        (f"Rebalance: every {config.rebalance_freq} yrs ({config.rebalance_policy})", TEXT_INPUT_COLOR),
        (f"Success: {monte_carlo.success_rate:.1f}% of {monte_carlo.iterations:,} paths", TEXT_OUTPUT_COLOR),
    ]
    for i, (line_text, color) in enumerate(text_lines):
        ax.text(
            0.98,
            0.98 - i * 0.04,
            line_text,
            transform=ax.transAxes,
            ha="right",
            va="top",
            fontsize=7,
            color=color,
            bbox=dict(facecolor="white", alpha=0.85, pad=2, edgecolor="lightgrey", boxstyle="round,pad=0.3"),
        )

    ax.set_xlabel("Simulation Year", fontsize=9)
    ax.set_ylabel("Portfolio Balance (Millions of $)", fontsize=9)
    ax.set_title(f"Bucket Portfolio Projection - Scenario: {config.nickname}", fontsize=11)
    ax.tick_params(axis="both", which="major", labelsize=7)
    ax.grid(True, linestyle=":", alpha=0.6)
    ax.yaxis.set_major_formatter(FuncFormatter(_millions_formatter))
    ax.set_xlim(left=years[0], right=years[-1])
    ax.set_ylim(bottom=0)
    ax.legend(fontsize=7.5, loc="upper left")
    plt.tight_layout()

    _save(filename, dpi_setting, "Projection plot")


def plot_bucket_balances(
    projection_df: pd.DataFrame,
    config: ScenarioConfig,
    filename: str,
    dpi_setting: int = 150,
):
    """Stacked per-bucket balances of the deterministic projection."""
    if projection_df is None or projection_df.empty:
        logger.warning(f"No projection data to plot for '{filename}'. Skipping.")
        return

    plt.figure(figsize=(12, 6))
    ax = plt.gca()
    labels = [f"{key.upper()} {config.assumptions.bucket(key).name}" for key in BUCKET_KEYS]
    ax.stackplot(
        projection_df["Year"],
        *[projection_df[f"{key.upper()} Balance"] / 1e6 for key in BUCKET_KEYS],
        labels=labels,
        alpha=0.8,
    )
    ax.set_xlabel("Simulation Year", fontsize=9)
    ax.set_ylabel("Bucket Balance (Millions of $)", fontsize=9)
    ax.set_title(f"Bucket Balances - Scenario: {config.nickname}", fontsize=11)
    ax.yaxis.set_major_formatter(FuncFormatter(_millions_formatter))
    ax.grid(True, linestyle=":", alpha=0.6)
    ax.legend(fontsize=7.5, loc="upper right")
    plt.tight_layout()

    _save(filename, dpi_setting, "Bucket plot")


def plot_strategy_comparison(
    optimizer_results: Optional[Dict],
    config: ScenarioConfig,
    filename: str,
    dpi_setting: int = 150,
):
    """Success rate and median legacy for each alternative allocation."""
    if not optimizer_results:
        logger.warning(f"No strategy results to plot for '{filename}'. Skipping.")
        return

    names = list(optimizer_results)
    success = [optimizer_results[n].success_rate for n in names]
    legacy = [optimizer_results[n].median_legacy / 1e6 for n in names]
    x = np.arange(len(names))

    fig, ax = plt.subplots(figsize=(12, 6))
    bars = ax.bar(x - 0.2, success, width=0.4, color="skyblue", edgecolor="black", label="Success Rate (%)")
    ax.set_ylabel("Success Rate (%)", fontsize=9)
    ax.set_ylim(0, 105)
    ax.bar_label(bars, fmt="%.1f", fontsize=7)

    ax2 = ax.twinx()
    ax2.bar(x + 0.2, legacy, width=0.4, color="salmon", edgecolor="black", label="Median Legacy")
    ax2.set_ylabel("Median Legacy (Millions of $)", fontsize=9)
    ax2.yaxis.set_major_formatter(FuncFormatter(_millions_formatter))

    ax.set_xticks(x)
    ax.set_xticklabels(names, fontsize=8, rotation=15)
    ax.set_title(f"Allocation Strategy Comparison - Scenario: {config.nickname}", fontsize=11)
    handles = ax.get_legend_handles_labels()[0] + ax2.get_legend_handles_labels()[0]
    ax.legend(handles, [h.get_label() for h in handles], fontsize=7.5, loc="lower right")
    ax.grid(True, axis="y", linestyle=":", alpha=0.6)
    fig.tight_layout()

    _save(filename, dpi_setting, "Strategy comparison plot")
