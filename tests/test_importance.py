# tests/test_importance.py

import numpy as np
import pandas as pd
import pytest
import torch
from rimi.errors import (
    DegenerateVarianceError,
    InsufficientSamplesError,
    ShapeMismatchError,
    TrainingFailedError
)
from rimi.importance import (
    ImportanceAggregator,
    RepeatedRunAggregator,
    RunningMoments,
    SummaryTable,
    r_squared,
    rimi
)
from rimi.models import SigmoidMLP

ROWS = 60
N_RUNS = 5
TOL = 1e-3


def untrained_trainer(train_inputs, train_targets, hidden_units, generator):
    """Stands in for training: a randomly initialized network is a valid model."""
    return SigmoidMLP(train_inputs.shape[1], hidden_units, generator=generator)


def make_frame(num_inputs, rows=ROWS, seed=0):
    rng = np.random.default_rng(seed)
    x = rng.normal(size=(rows, num_inputs))
    y = x[:, 0] + x[:, 1] * x[:, -1] + rng.normal(scale=0.1, size=rows)
    columns = {f"x{i + 1}": x[:, i] for i in range(num_inputs)}
    columns["y"] = y
    return pd.DataFrame(columns)


@pytest.fixture
def four_input_frame():
    return make_frame(4)


@pytest.fixture
def two_input_frame():
    return make_frame(2)


def test_r_squared():
    actual = np.array([0.1, 0.4, 0.35, 0.8, 0.9])
    assert r_squared(actual, actual) == pytest.approx(1.0)
    assert r_squared(2 * actual + 1, actual) == pytest.approx(1.0)
    assert r_squared(-actual, actual) == pytest.approx(1.0)
    expected = np.corrcoef([0.3, 0.1, 0.5, 0.7, 0.2], actual)[0, 1] ** 2
    assert r_squared([0.3, 0.1, 0.5, 0.7, 0.2], actual) == pytest.approx(expected)


def test_r_squared_undefined_cases():
    with pytest.raises(InsufficientSamplesError):
        r_squared([0.5], [0.5])
    with pytest.raises(InsufficientSamplesError):
        r_squared([0.5, 0.5, 0.5], [0.1, 0.2, 0.3])
    with pytest.raises(ShapeMismatchError):
        r_squared([0.1, 0.2], [0.1, 0.2, 0.3])
    with pytest.raises(TrainingFailedError):
        r_squared([np.nan, 0.2], [0.1, 0.2])


def test_importance_aggregator_shares():
    aggregator = ImportanceAggregator(["a", "b", "c"])
    rng = np.random.default_rng(2)
    effects = rng.normal(size=(30, 6))
    predictions = rng.uniform(size=10)
    actuals = predictions + rng.normal(scale=0.1, size=10)
    row = aggregator.aggregate(effects, predictions, actuals)

    assert row.term_names == ["a", "b", "c", "a*b", "a*c", "b*c"]
    np.testing.assert_allclose(row.total, effects.sum(axis=0))
    np.testing.assert_allclose(row.variance, effects.var(axis=0, ddof=1))
    assert row.share.sum() == pytest.approx(1.0, abs=TOL)
    assert row.share_r2.sum() == pytest.approx(row.r_squared, abs=TOL)
    assert np.all(row.share >= 0)

    totals = row.totals()
    assert totals.shape == (4, 2)
    assert totals[1].sum() == pytest.approx(1.0)
    assert totals[3, 0] == pytest.approx(row.total[:3].sum())

    frame = row.as_frame(decimals=4)
    assert list(frame.columns)[-2:] == ["Total.M.E", "Total.I.E"]
    assert frame.shape == (4, 8)


def test_importance_aggregator_accepts_tensors():
    aggregator = ImportanceAggregator(["a", "b"])
    effects = torch.tensor([[1.0, -2.0, 0.5], [0.5, -1.0, 0.25]], dtype=torch.float64)
    row = aggregator.aggregate(effects, [0.1, 0.9], [0.2, 0.7])
    np.testing.assert_allclose(row.share, [1.5 / 5.25, 3.0 / 5.25, 0.75 / 5.25])
    assert row.r_squared == pytest.approx(1.0)


def test_importance_aggregator_errors():
    aggregator = ImportanceAggregator(["a", "b"])
    with pytest.raises(ShapeMismatchError, match="a\\*b"):
        aggregator.aggregate(np.ones((5, 2)), [0.1, 0.2], [0.1, 0.3])
    with pytest.raises(InsufficientSamplesError):
        aggregator.aggregate(np.ones((1, 3)), [0.1, 0.2], [0.1, 0.3])
    with pytest.raises(InsufficientSamplesError):
        aggregator.aggregate(np.zeros((5, 3)), [0.1, 0.2], [0.1, 0.3])


def test_running_moments_matches_batch_statistics():
    rng = np.random.default_rng(4)
    values = rng.normal(size=(7, 3, 2))
    moments = RunningMoments((3, 2))
    for v in values:
        moments.update(v)
    np.testing.assert_allclose(moments.mean, values.mean(axis=0))
    np.testing.assert_allclose(moments.variance, values.var(axis=0, ddof=1))
    np.testing.assert_allclose(moments.std_error, values.std(axis=0, ddof=1) / np.sqrt(7))
    with pytest.raises(ShapeMismatchError):
        moments.update(np.zeros(3))


def test_running_moments_needs_two_updates():
    moments = RunningMoments(())
    moments.update(1.0)
    with pytest.raises(InsufficientSamplesError):
        moments.std_error


def test_four_inputs_summary_table(four_input_frame):
    summary = RepeatedRunAggregator(
        four_input_frame, n_runs=N_RUNS, trainer=untrained_trainer, seed=1, keep_runs=True
    ).run()

    assert isinstance(summary, SummaryTable)
    assert len(summary.table) == 4 + 6
    assert summary.term_names[:4] == ["x1", "x2", "x3", "x4"]
    assert summary.term_names[4:] == ["x1*x2", "x1*x3", "x1*x4", "x2*x3", "x2*x4", "x3*x4"]
    assert list(summary.table.columns) == ["RI.Rsq", "SE.Rsq", "RI.1", "SE.RI1", "MGW.Var", "MGW.Sum"]
    assert np.isfinite(summary.table.to_numpy()).all()
    assert (summary.table["MGW.Var"] >= 0).all()
    assert (summary.table[["SE.Rsq", "SE.RI1"]] >= 0).all().all()
    assert summary.n_runs == N_RUNS
    assert list(summary.totals.index) == ["Total.M.E", "Total.I.E"]

    assert len(summary.run_rows) == N_RUNS
    for row in summary.run_rows:
        assert row.share.sum() == pytest.approx(1.0, abs=TOL)
        assert row.share_r2.sum() == pytest.approx(row.r_squared, abs=TOL)

    # means of shares keep their sums
    assert summary.table["RI.1"].sum() == pytest.approx(1.0, abs=TOL)
    assert summary.table["RI.Rsq"].sum() == pytest.approx(summary.r_squared, abs=TOL)
    assert summary.totals.loc["Total.M.E", "RI.1"] + summary.totals.loc["Total.I.E", "RI.1"] == pytest.approx(1.0, abs=TOL)


def test_two_inputs_summary_table(two_input_frame):
    summary = RepeatedRunAggregator(two_input_frame, trainer=untrained_trainer, seed=3).run()
    # one run per term by default
    assert summary.n_runs == 3
    assert summary.term_names == ["x1", "x2", "x1*x2"]
    assert np.isfinite(summary.table.to_numpy()).all()


def test_runs_are_reproducible_and_order_independent(four_input_frame):
    kwargs = dict(n_runs=4, trainer=untrained_trainer, seed=123)
    sequential = RepeatedRunAggregator(four_input_frame, **kwargs).run()
    again = RepeatedRunAggregator(four_input_frame, **kwargs).run()
    threaded = RepeatedRunAggregator(four_input_frame, n_jobs=3, **kwargs).run()
    pd.testing.assert_frame_equal(sequential.table, again.table)
    pd.testing.assert_frame_equal(sequential.table, threaded.table)
    other = RepeatedRunAggregator(four_input_frame, n_runs=4, trainer=untrained_trainer, seed=124).run()
    assert not sequential.table.equals(other.table)


def test_two_row_partitions_give_finite_results():
    frame = pd.DataFrame({
        "a": [0.1, 0.5, 0.9, 0.3],
        "b": [1.0, 3.0, 2.0, 5.0],
        "y": [2.0, 4.0, 1.0, 3.0],
    })
    summary = RepeatedRunAggregator(frame, n_runs=3, ratio=0.5, trainer=untrained_trainer, seed=0).run()
    assert np.isfinite(summary.table.to_numpy()).all()
    assert np.isfinite(summary.r_squared)


def test_too_few_rows_fail_explicitly():
    frame = make_frame(2, rows=3)
    with pytest.raises(InsufficientSamplesError):
        RepeatedRunAggregator(frame, n_runs=2, trainer=untrained_trainer, seed=0).run()


def test_training_failure_aborts_the_sequence(four_input_frame):
    def failing_trainer(*args):
        raise TrainingFailedError("no convergence")

    with pytest.raises(TrainingFailedError, match="Run 1/3"):
        RepeatedRunAggregator(four_input_frame, n_runs=3, trainer=failing_trainer, seed=0).run()
    with pytest.raises(TrainingFailedError):
        RepeatedRunAggregator(four_input_frame, n_runs=3, trainer=failing_trainer, seed=0, n_jobs=2).run()


def test_training_failure_is_retried_with_fresh_seed(four_input_frame):
    calls = []

    def flaky_trainer(train_inputs, train_targets, hidden_units, generator):
        calls.append(hidden_units)
        if len(calls) == 1:
            raise TrainingFailedError("no convergence")
        return untrained_trainer(train_inputs, train_targets, hidden_units, generator)

    summary = RepeatedRunAggregator(
        four_input_frame, n_runs=2, trainer=flaky_trainer, seed=0, max_retries=1
    ).run()
    assert len(calls) == 3
    assert calls[0] == 6
    assert len(summary.table) == 10


def test_non_finite_weights_count_as_training_failure(four_input_frame):
    def broken_trainer(train_inputs, train_targets, hidden_units, generator):
        model = untrained_trainer(train_inputs, train_targets, hidden_units, generator)
        with torch.no_grad():
            model.hidden.weight.fill_(float('nan'))
        return model

    with pytest.raises(TrainingFailedError):
        RepeatedRunAggregator(four_input_frame, n_runs=2, trainer=broken_trainer, seed=0).run()


def test_constant_term_is_flagged(four_input_frame):
    def blind_trainer(train_inputs, train_targets, hidden_units, generator):
        model = untrained_trainer(train_inputs, train_targets, hidden_units, generator)
        with torch.no_grad():
            # the first input never reaches the hidden layer
            model.hidden.weight[:, 0] = 0.0
        return model

    with pytest.warns(DegenerateVarianceError, match="'x1'"):
        summary = RepeatedRunAggregator(four_input_frame, n_runs=3, trainer=blind_trainer, seed=0).run()
    assert summary.table.loc["x1", "RI.1"] == pytest.approx(0.0, abs=1e-12)
    assert summary.table.loc["x1*x2", "RI.1"] == pytest.approx(0.0, abs=1e-12)


def test_invalid_settings(four_input_frame):
    with pytest.raises(ValueError):
        RepeatedRunAggregator(four_input_frame, n_runs=1)
    with pytest.raises(ValueError):
        RepeatedRunAggregator(four_input_frame, max_retries=-1)


def test_rimi_entry_point(four_input_frame, tmp_path):
    path = tmp_path / "data.csv"
    four_input_frame.to_csv(path, index=False)
    from_path = rimi(path, n_runs=2, seed=5, trainer=untrained_trainer)
    from_frame = rimi(four_input_frame, n_runs=2, seed=5, trainer=untrained_trainer)
    assert from_path.term_names == from_frame.term_names
    np.testing.assert_allclose(from_path.table.to_numpy(), from_frame.table.to_numpy(), atol=1e-9)
    text = from_frame.to_string()
    assert "RI.Rsq" in text
    assert "Total.I.E" in text
