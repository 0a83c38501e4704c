# rimi/interpret.py

import logging
import matplotlib.pyplot as plt
import numpy as np
import torch
from .utils import get_feature_names

logger = logging.getLogger(__name__)

SCHEMES = {
    "rsq": ("RI.Rsq", "SE.Rsq", "Relative Importance sum to $R^2$"),
    "one": ("RI.1", "SE.RI1", "Relative Importance sum to 1"),
}


def plot_relative_importance(
    summary,
    scheme: str = "rsq",
    ax=None,
    title: str = None
):
    """
    Bar chart of mean relative importance per term with +/- SE error bars.
    The mean sum of MGW is written above each bar.

    Args:
        summary: A SummaryTable.
        scheme: "rsq" for shares summing to R squared, "one" for shares summing to 1.
        ax: Optional matplotlib Axes object to plot on.
        title: Plot title.
    """
    if scheme not in SCHEMES:
        raise ValueError(f"scheme must be one of {sorted(SCHEMES)}")
    mean_col, se_col, default_title = SCHEMES[scheme]
    table = summary.table
    means = table[mean_col].to_numpy()
    errors = table[se_col].to_numpy()
    labels = list(table.index)

    if ax is None:
        fig, ax = plt.subplots(figsize=(max(6, len(labels) * 0.8), 5))

    colors = plt.cm.tab20(np.linspace(0, 1, len(labels)))
    x = np.arange(len(labels))
    ax.bar(x, means, color=colors)
    ax.errorbar(x, means, yerr=errors, fmt='none', ecolor='black', capsize=4)

    tops = means + errors
    for xi, top, mgw in zip(x, tops, table["MGW.Sum"].to_numpy()):
        ax.text(xi, top * 1.01, f"{mgw:.2f}", ha="center", va="bottom",
                color="red", fontweight="bold", fontsize=9)

    ax.set_xticks(x)
    ax.set_xticklabels(labels, rotation=30, ha="right", color="blue")
    ax.set_xlabel("Main effects and interactions")
    ax.set_ylabel("Relative Importance")
    ax.set_title(title or default_title)
    ax.grid(True, axis='y', linestyle='--')
    plt.tight_layout()
    return ax


def plot_relative_importance_report(summary, axes=None):
    """Both charts side by side: shares summing to R squared and to 1."""
    if axes is None:
        n_terms = len(summary.table)
        fig, axes = plt.subplots(1, 2, figsize=(max(12, n_terms * 1.6), 5))
    for ax, scheme in zip(axes, ("rsq", "one")):
        plot_relative_importance(summary, scheme=scheme, ax=ax)
    return axes


def plot_generalized_weights(
    effects,
    term_names: list[str] = None,
    ax=None,
    title: str = "Per-sample Modified Generalized Weights"
):
    """
    Box plot of the per-sample effect columns of one run
    (main effects followed by interactions).
    """
    if isinstance(effects, torch.Tensor):
        effects = effects.detach().cpu().numpy()
    effects = np.asarray(effects)
    if effects.ndim != 2 or effects.shape[1] == 0:
        logger.info("No effect columns to plot.")
        return None

    if term_names is None:
        term_names = get_feature_names(effects.shape[1], "Term_")

    if ax is None:
        fig, ax = plt.subplots(figsize=(max(6, effects.shape[1] * 0.7), 5))

    ax.boxplot([effects[:, i] for i in range(effects.shape[1])])
    ax.axhline(0.0, color='grey', linewidth=0.8)
    ax.set_xticks(np.arange(1, effects.shape[1] + 1))
    ax.set_xticklabels(term_names, rotation=45, ha="right")
    ax.set_ylabel("MGW")
    ax.set_title(title)
    ax.grid(True, axis='y', linestyle='--')
    plt.tight_layout()
    return ax
