# rimi/importance.py

import logging
import warnings
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
import numpy as np
import pandas as pd
import torch
from .data import DECIMALS, PARTITION_RATIO, load_dataset, split_dataset, validate_dataset
from .errors import (
    DegenerateVarianceError,
    InsufficientSamplesError,
    ShapeMismatchError,
    TrainingFailedError
)
from .interpret import plot_relative_importance_report
from .layers import decompose
from .models import hidden_units_for, train_network
from .utils import build_input_matrix, get_term_names

logger = logging.getLogger(__name__)

ROW_LABELS = ("Rel.Imp. based on R Sq.", "Rel.Imp. based on 100%", "Variance of MGW", "Sum of MGW")
SUMMARY_COLUMNS = ("RI.Rsq", "SE.Rsq", "RI.1", "SE.RI1", "MGW.Var", "MGW.Sum")
TOTAL_LABELS = ("Total.M.E", "Total.I.E")


def r_squared(predictions, actuals) -> float:
    """Squared Pearson correlation between predictions and actual outputs."""
    predictions = np.asarray(predictions, dtype=np.float64).ravel()
    actuals = np.asarray(actuals, dtype=np.float64).ravel()
    if predictions.shape != actuals.shape:
        raise ShapeMismatchError(
            f"{predictions.shape[0]} predictions for {actuals.shape[0]} actual values"
        )
    if predictions.shape[0] < 2:
        raise InsufficientSamplesError("R squared needs at least 2 held-out rows")
    if not np.isfinite(predictions).all():
        raise TrainingFailedError("Model produced non-finite predictions")
    if np.ptp(predictions) == 0 or np.ptp(actuals) == 0:
        raise InsufficientSamplesError(
            "R squared is undefined: predictions or actual values are constant on the held-out rows"
        )
    return float(np.corrcoef(predictions, actuals)[0, 1] ** 2)


@dataclass
class ImportanceRow:
    """
    One run's importance statistics, one value per term (main effects first,
    then pairs in canonical order).
    """
    term_names: list[str]
    num_inputs: int
    share_r2: np.ndarray
    share: np.ndarray
    variance: np.ndarray
    total: np.ndarray
    r_squared: float

    def stats(self) -> np.ndarray:
        """(4, terms): R2 share, share to 1, variance, sum."""
        return np.vstack([self.share_r2, self.share, self.variance, self.total])

    def totals(self) -> np.ndarray:
        """(4, 2): each statistic summed over main-effect and interaction terms."""
        stats = self.stats()
        main = stats[:, :self.num_inputs].sum(axis=1)
        interaction = stats[:, self.num_inputs:].sum(axis=1)
        return np.stack([main, interaction], axis=1)

    def as_frame(self, decimals: int = None) -> pd.DataFrame:
        frame = pd.DataFrame(
            np.hstack([self.stats(), self.totals()]),
            index=list(ROW_LABELS),
            columns=list(self.term_names) + list(TOTAL_LABELS)
        )
        return frame.round(decimals) if decimals is not None else frame


class ImportanceAggregator:
    """
    Turns per-sample effect columns into one run's relative importances.

    Column sums are normalized by the sum of their absolute values (shares sum
    to 1) and rescaled by the held-out R squared (shares sum to R squared).
    """
    def __init__(self, feature_names: list[str]):
        self.feature_names = list(feature_names)
        self.num_inputs = len(self.feature_names)
        self.term_names = get_term_names(self.feature_names)

    def aggregate(self, effects, predictions, actuals) -> ImportanceRow:
        if isinstance(effects, torch.Tensor):
            effects = effects.detach().cpu().numpy()
        effects = np.asarray(effects, dtype=np.float64)
        if effects.ndim != 2 or effects.shape[1] != len(self.term_names):
            raise ShapeMismatchError(
                f"Expected (samples, {len(self.term_names)}) effect columns for terms "
                f"{self.term_names}, got shape {effects.shape}"
            )
        if effects.shape[0] < 2:
            raise InsufficientSamplesError("Variance of MGW needs at least 2 training rows")

        total = effects.sum(axis=0)
        variance = effects.var(axis=0, ddof=1)
        magnitude = np.abs(total).sum()
        if magnitude == 0:
            raise InsufficientSamplesError("All MGW column sums are zero; shares are undefined")
        share = np.abs(total) / magnitude
        rsq = r_squared(predictions, actuals)

        return ImportanceRow(
            term_names=self.term_names,
            num_inputs=self.num_inputs,
            share_r2=share * rsq,
            share=share,
            variance=variance,
            total=total,
            r_squared=rsq
        )


class RunningMoments:
    """Streaming count, mean and sum of squared deviations (Welford)."""
    def __init__(self, shape):
        self.count = 0
        self.mean = np.zeros(shape, dtype=np.float64)
        self.m2 = np.zeros(shape, dtype=np.float64)

    def update(self, values):
        values = np.asarray(values, dtype=np.float64)
        if values.shape != self.mean.shape:
            raise ShapeMismatchError(f"Expected shape {self.mean.shape}, got {values.shape}")
        self.count += 1
        delta = values - self.mean
        self.mean = self.mean + delta / self.count
        self.m2 = self.m2 + delta * (values - self.mean)

    @property
    def variance(self) -> np.ndarray:
        if self.count < 2:
            raise InsufficientSamplesError("Variance across runs needs at least 2 runs")
        return np.maximum(self.m2, 0.0) / (self.count - 1)

    @property
    def std_error(self) -> np.ndarray:
        return np.sqrt(self.variance / self.count)


@dataclass
class SummaryTable:
    """
    Mean and standard error of the relative importances across runs.

    table:  one row per term, columns RI.Rsq, SE.Rsq, RI.1, SE.RI1, MGW.Var, MGW.Sum.
    totals: the same columns for Total.M.E and Total.I.E.
    """
    table: pd.DataFrame
    totals: pd.DataFrame
    r_squared: float
    r_squared_se: float
    n_runs: int
    run_rows: list = field(default_factory=list, repr=False)

    @property
    def term_names(self) -> list[str]:
        return list(self.table.index)

    def to_string(self, decimals: int = DECIMALS) -> str:
        lines = [
            f"Relative importance over {self.n_runs} runs "
            f"(RI sum to R.sq = {self.table['RI.Rsq'].sum():.3f}, "
            f"mean R.sq = {self.r_squared:.3f} +/- {self.r_squared_se:.3f})",
            self.table.round(decimals).to_string(),
            "",
            self.totals.round(decimals).to_string(),
        ]
        return "\n".join(lines)

    def __str__(self) -> str:
        return self.to_string()


def _summary_frame(stats: RunningMoments, index: list[str]) -> pd.DataFrame:
    mean = stats.mean
    se = stats.std_error
    return pd.DataFrame(
        np.column_stack([mean[0], se[0], mean[1], se[1], mean[2], mean[3]]),
        index=index,
        columns=list(SUMMARY_COLUMNS)
    )


class RepeatedRunAggregator:
    """
    Repeats split -> train -> decompose -> aggregate and reduces the runs to
    mean and standard error per term.

    Args:
        data: Dataset whose last column is the output.
        n_runs: Number of repetitions. Defaults to the number of terms.
        ratio: Share of rows used for training in each run.
        trainer: Callable (train_inputs, train_targets, hidden_units, generator)
            returning a model with `input_hidden`, `hidden_output` and `predict`.
            Defaults to `train_network`.
        hidden_units: Hidden layer size. Defaults to round(inputs * 1.6).
        seed: Seed for the per-run seed sequence.
        n_jobs: Number of worker threads. Runs are folded in run order either way.
        max_retries: Fresh-seed retries for a run whose training failed.
        keep_runs: Keep each run's ImportanceRow on the summary.
    """
    def __init__(self,
                 data: pd.DataFrame,
                 n_runs: int = None,
                 ratio: float = PARTITION_RATIO,
                 trainer=None,
                 hidden_units: int = None,
                 seed: int = None,
                 n_jobs: int = 1,
                 max_retries: int = 0,
                 keep_runs: bool = False,
                 decimals: int = DECIMALS):
        self.data = validate_dataset(data)
        self.feature_names = list(self.data.columns[:-1])
        self.aggregator = ImportanceAggregator(self.feature_names)
        self.term_names = self.aggregator.term_names
        self.n_runs = len(self.term_names) if n_runs is None else n_runs
        if self.n_runs < 2:
            raise ValueError(f"n_runs must be at least 2 to estimate a standard error, got {self.n_runs}")
        if max_retries < 0:
            raise ValueError(f"max_retries must be non-negative, got {max_retries}")
        self.ratio = ratio
        self.trainer = train_network if trainer is None else trainer
        self.hidden_units = hidden_units_for(len(self.feature_names)) if hidden_units is None else hidden_units
        self.seed = seed
        self.n_jobs = max(1, n_jobs)
        self.max_retries = max_retries
        self.keep_runs = keep_runs
        self.decimals = decimals

    def _attempt(self, seed_seq: np.random.SeedSequence) -> ImportanceRow:
        rng = np.random.default_rng(seed_seq)
        generator = torch.Generator().manual_seed(int(seed_seq.generate_state(1)[0]))
        partition = split_dataset(self.data, self.ratio, rng, self.decimals)

        train_inputs = partition.train_inputs()
        model = self.trainer(train_inputs, partition.train_targets(), self.hidden_units, generator)
        if model is None:
            raise TrainingFailedError("Trainer returned no model")

        effects = decompose(model.input_hidden, model.hidden_output, build_input_matrix(train_inputs))['effects']
        predictions = model.predict(partition.test_inputs())
        return self.aggregator.aggregate(effects, predictions, partition.test_targets())

    def run_once(self, run: int, seed_seq: np.random.SeedSequence) -> ImportanceRow:
        """One repetition, retried with fresh seeds when training fails."""
        attempts = seed_seq.spawn(self.max_retries + 1)
        for attempt, attempt_seq in enumerate(attempts):
            try:
                row = self._attempt(attempt_seq)
            except TrainingFailedError as e:
                if attempt == self.max_retries:
                    raise TrainingFailedError(
                        f"Run {run + 1}/{self.n_runs} failed after {attempt + 1} attempt(s): {e}"
                    ) from e
                logger.warning(f"Run {run + 1}/{self.n_runs}: training failed ({e}), retrying with a fresh seed")
                continue
            logger.info(f"Run {run + 1}/{self.n_runs}: R2={row.r_squared:.4f}")
            return row

    def _rows(self, seeds: list[np.random.SeedSequence]):
        if self.n_jobs == 1:
            for run, seed_seq in enumerate(seeds):
                yield self.run_once(run, seed_seq)
            return
        with ThreadPoolExecutor(max_workers=self.n_jobs) as executor:
            futures = [executor.submit(self.run_once, run, s) for run, s in enumerate(seeds)]
            try:
                for future in futures:
                    yield future.result()
            except BaseException:
                for future in futures:
                    future.cancel()
                raise

    def run(self) -> SummaryTable:
        seeds = np.random.SeedSequence(self.seed).spawn(self.n_runs)
        term_stats = RunningMoments((4, len(self.term_names)))
        total_stats = RunningMoments((4, 2))
        rsq_stats = RunningMoments(())
        kept = []

        for row in self._rows(seeds):
            term_stats.update(row.stats())
            total_stats.update(row.totals())
            rsq_stats.update(row.r_squared)
            if self.keep_runs:
                kept.append(row)

        for name, var in zip(self.term_names, term_stats.variance[0]):
            if var == 0:
                warnings.warn(DegenerateVarianceError(
                    f"Relative importance of '{name}' did not vary across {self.n_runs} runs; its SE is 0"
                ))

        return SummaryTable(
            table=_summary_frame(term_stats, self.term_names),
            totals=_summary_frame(total_stats, list(TOTAL_LABELS)),
            r_squared=float(rsq_stats.mean),
            r_squared_se=float(rsq_stats.std_error),
            n_runs=self.n_runs,
            run_rows=kept
        )


def rimi(data,
         n_runs: int = None,
         seed: int = None,
         trainer=None,
         n_jobs: int = 1,
         max_retries: int = 0,
         ratio: float = PARTITION_RATIO,
         plot: bool = False) -> SummaryTable:
    """
    Relative importance of main and two-way interaction effects of the inputs
    of a single-hidden-layer network, averaged over repeated random splits.

    Args:
        data: A DataFrame or a path to a CSV file; the last column is the output.
        n_runs: Number of repetitions, by default one per term.
        seed: Seed for reproducible splits and initial weights.
        trainer: Replacement for the default backpropagation trainer (`train_network`).
        n_jobs: Worker threads for the repetitions.
        max_retries: Fresh-seed retries per run when training fails.
        ratio: Training share of each split.
        plot: Also draw both relative-importance bar charts.

    Returns:
        The SummaryTable.
    """
    if not isinstance(data, pd.DataFrame):
        data = load_dataset(data)
    summary = RepeatedRunAggregator(
        data,
        n_runs=n_runs,
        ratio=ratio,
        trainer=trainer,
        seed=seed,
        n_jobs=n_jobs,
        max_retries=max_retries
    ).run()
    if plot:
        plot_relative_importance_report(summary)
    return summary
