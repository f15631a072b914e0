"""Figures for the fitness report (matplotlib, Agg backend).

Every function takes plain arrays / polars frames from the summary and
diagnostics modules, writes one PNG into ``out_dir``, and returns its path.
"""

from __future__ import annotations

from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import polars as pl
from scipy.stats import gaussian_kde

from sexlimited.config import PARETO_K_THRESHOLD, TREATMENT_LEVELS

TREATMENT_COLORS = {
    "Control": "#7F7F7F",
    "Female_limited": "#C2185B",
    "Male_limited": "#1565C0",
}
CONTRAST_COLORS = {
    "female_minus_control": "#C2185B",
    "male_minus_control": "#1565C0",
    "female_minus_male": "#6A1B9A",
    "female_over_control": "#C2185B",
    "male_over_control": "#1565C0",
}
SEX_MARKERS = {"Female": "o", "Male": "s"}


def save_fig(fig: plt.Figure, path: Path, dpi: int = 150) -> Path:
    fig.savefig(path, dpi=dpi, bbox_inches="tight", facecolor="white")
    plt.close(fig)
    print(f"  Saved: {path.name}")
    return path


def _density(ax: plt.Axes, values: np.ndarray, color: str, label: str) -> None:
    """KDE curve with a shaded 95% interval; histogram when the draws are constant."""
    values = values[np.isfinite(values)]
    if values.size == 0:
        return
    lo, hi = np.percentile(values, [2.5, 97.5])
    if np.ptp(values) == 0:
        ax.axvline(values[0], color=color, linewidth=2, label=label)
        return
    kde = gaussian_kde(values)
    pad = 0.1 * np.ptp(values)
    x = np.linspace(values.min() - pad, values.max() + pad, 400)
    y = kde(x)
    ax.plot(x, y, color=color, linewidth=2, label=label)
    inside = (x >= lo) & (x <= hi)
    ax.fill_between(x[inside], y[inside], color=color, alpha=0.2)


def _tidy(ax: plt.Axes) -> None:
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)


def plot_treatment_posteriors(
    probs: dict[str, np.ndarray],
    sex: str,
    out_dir: Path,
) -> Path:
    """Posterior densities of the per-treatment focal-offspring probability."""
    fig, ax = plt.subplots(figsize=(10, 5.5))
    for level in TREATMENT_LEVELS:
        _density(ax, np.asarray(probs[level]), TREATMENT_COLORS[level], level.replace("_", "-"))
    ax.set_xlabel("Probability that an offspring is sired / laid by the focal fly")
    ax.set_ylabel("Posterior density")
    ax.set_title(
        f"{sex} Fitness by Selection Treatment\n"
        "Shaded band = 95% credible interval; reference block and marker",
        fontsize=12,
        fontweight="bold",
    )
    ax.legend(fontsize=9)
    _tidy(ax)
    fig.tight_layout()
    return save_fig(fig, out_dir / f"treatment_posteriors_{sex.lower()}.png")


def plot_contrast_posteriors(
    contrasts: dict,
    sex: str,
    out_dir: Path,
) -> Path:
    """Two panels: differences (reference 0) and ratios (reference 1)."""
    fig, (ax_d, ax_r) = plt.subplots(1, 2, figsize=(14, 5.5))

    for name, draws in contrasts["differences"].items():
        _density(ax_d, np.asarray(draws), CONTRAST_COLORS[name], name.replace("_", " "))
    ax_d.axvline(0, color="black", linestyle="--", linewidth=0.8)
    ax_d.set_xlabel("Difference in probability")
    ax_d.set_ylabel("Posterior density")
    ax_d.set_title("Differences", fontsize=11, fontweight="bold")
    ax_d.legend(fontsize=9)
    _tidy(ax_d)

    for name, draws in contrasts["ratios"].items():
        n_excl = contrasts["n_excluded"][name]
        label = name.replace("_", " ") + (f" ({n_excl} draws excluded)" if n_excl else "")
        _density(ax_r, np.asarray(draws), CONTRAST_COLORS[name], label)
    ax_r.axvline(1, color="black", linestyle="--", linewidth=0.8)
    ax_r.set_xlabel("Ratio of probabilities")
    ax_r.set_title("Ratios", fontsize=11, fontweight="bold")
    ax_r.legend(fontsize=9)
    _tidy(ax_r)

    fig.suptitle(f"{sex} — Treatment Contrasts (per-draw)", fontsize=12, fontweight="bold")
    fig.tight_layout()
    return save_fig(fig, out_dir / f"contrast_posteriors_{sex.lower()}.png")


def plot_ppc(ppc: dict, sex: str, out_dir: Path) -> Path:
    """Replicated test statistics vs observed, plus per-vial predictive intervals."""
    stats = list(ppc["observed"])
    fig, axes = plt.subplots(1, len(stats) + 1, figsize=(5 * (len(stats) + 1), 4.5))

    labels = {
        "mean_prop": "Mean focal proportion",
        "sd_prop": "SD of focal proportion",
        "zero_frac": "Fraction of vials with no focal offspring",
    }
    for ax, stat in zip(axes[:-1], stats, strict=True):
        rep = np.asarray(ppc["replicated"][stat])
        ax.hist(rep, bins=30, color="#90A4AE", edgecolor="white")
        ax.axvline(ppc["observed"][stat], color="#D32F2F", linewidth=2, label="Observed")
        ax.set_title(
            f"{labels.get(stat, stat)}\np = {ppc['p_values'][stat]:.3f}",
            fontsize=10,
        )
        ax.legend(fontsize=8)
        _tidy(ax)

    ax = axes[-1]
    order = np.argsort(ppc["y_obs"] / np.maximum(ppc["y_rep"].mean(axis=0), 1e-9))
    x = np.arange(ppc["n_obs"])
    ax.vlines(x, ppc["lower"][order], ppc["upper"][order], color="#B0BEC5", linewidth=1.5)
    covered = (ppc["y_obs"] >= ppc["lower"]) & (ppc["y_obs"] <= ppc["upper"])
    ax.scatter(
        x,
        ppc["y_obs"][order],
        s=8,
        c=np.where(covered[order], "#37474F", "#D32F2F"),
        zorder=3,
    )
    ax.set_xlabel("Vial (sorted)")
    ax.set_ylabel("Focal offspring")
    ax.set_title(f"95% predictive intervals\ncoverage = {ppc['coverage']:.1%}", fontsize=10)
    _tidy(ax)

    fig.suptitle(
        f"{sex} — Posterior Predictive Checks ({ppc['n_reps']} replicates)",
        fontsize=12,
        fontweight="bold",
    )
    fig.tight_layout()
    return save_fig(fig, out_dir / f"ppc_{sex.lower()}.png")


def plot_pareto_k(
    k_table: pl.DataFrame,
    sex: str,
    out_dir: Path,
    threshold: float = PARETO_K_THRESHOLD,
) -> Path:
    """Pareto k per vial in data order, with the reliability threshold."""
    fig, ax = plt.subplots(figsize=(10, 4.5))
    ordered = k_table.sort("vial_id")
    k = ordered["pareto_k"].to_numpy()
    flagged = k > threshold
    x = np.arange(len(k))
    ax.scatter(x[~flagged], k[~flagged], s=12, color="#546E7A", label="k <= threshold")
    ax.scatter(x[flagged], k[flagged], s=24, color="#D32F2F", label="k > threshold")
    for i in np.flatnonzero(flagged):
        ax.annotate(
            ordered["vial_id"][int(i)],
            (x[i], k[i]),
            fontsize=7,
            xytext=(4, 2),
            textcoords="offset points",
        )
    ax.axhline(threshold, color="#D32F2F", linestyle="--", linewidth=1)
    ax.axhline(0.5, color="#FFA000", linestyle=":", linewidth=1)
    ax.set_xlabel("Vial")
    ax.set_ylabel("Pareto k")
    ax.set_title(
        f"{sex} — PSIS-LOO Pareto k ({int(flagged.sum())} of {len(k)} above {threshold})",
        fontsize=12,
        fontweight="bold",
    )
    ax.legend(fontsize=9)
    _tidy(ax)
    fig.tight_layout()
    return save_fig(fig, out_dir / f"pareto_k_{sex.lower()}.png")


def plot_cross_sex_contrasts(contrast_tables: dict[str, pl.DataFrame], out_dir: Path) -> Path:
    """Forest plot of the difference contrasts, one marker per sex."""
    fig, ax = plt.subplots(figsize=(9, 4.5))
    names: list[str] = []
    for table in contrast_tables.values():
        for name in table.filter(pl.col("kind") == "difference")["contrast"].to_list():
            if name not in names:
                names.append(name)

    offsets = np.linspace(-0.15, 0.15, max(len(contrast_tables), 1))
    for offset, (sex, table) in zip(offsets, contrast_tables.items(), strict=False):
        diffs = table.filter(pl.col("kind") == "difference")
        for row in diffs.iter_rows(named=True):
            y = names.index(row["contrast"]) + offset
            ax.plot([row["ci_lower"], row["ci_upper"]], [y, y], color="#455A64", linewidth=2)
            ax.plot(
                row["mean"],
                y,
                marker=SEX_MARKERS.get(sex, "o"),
                color=CONTRAST_COLORS.get(row["contrast"], "#455A64"),
                markersize=8,
                linestyle="none",
            )
    for sex, marker in SEX_MARKERS.items():
        if sex in contrast_tables:
            ax.plot([], [], marker=marker, color="#455A64", linestyle="none", label=sex)

    ax.axvline(0, color="black", linestyle="--", linewidth=0.8)
    ax.set_yticks(range(len(names)))
    ax.set_yticklabels([n.replace("_", " ") for n in names])
    ax.set_xlabel("Difference in focal-offspring probability (95% CI)")
    ax.set_title(
        "Sexually Antagonistic Signature: Contrasts by Sex",
        fontsize=12,
        fontweight="bold",
    )
    ax.legend(fontsize=9)
    _tidy(ax)
    fig.tight_layout()
    return save_fig(fig, out_dir / "contrasts_by_sex.png")
