"""
Tests for the numpy sequence model
"""
import numpy as np
import pytest

from glucocast.ml.sequence_model import GATES, SequenceModel


class TestSequenceModel:
    """Tests for SequenceModel."""

    def test_seed_is_deterministic(self):
        """Equal seeds give equal weights and forecasts."""
        a = SequenceModel(seed=3)
        b = SequenceModel(seed=3)

        for g in GATES:
            np.testing.assert_array_equal(a.W[g], b.W[g])
            np.testing.assert_array_equal(a.U[g], b.U[g])
        assert a.forecast([0.1, 0.2, 0.3], 4) == b.forecast([0.1, 0.2, 0.3], 4)

    def test_weight_shapes(self):
        """Gate weights match the configured sizes."""
        model = SequenceModel(input_size=1, hidden_size=5, seed=1)
        assert model.W["f"].shape == (5, 1)
        assert model.U["o"].shape == (5, 5)
        assert model.Why.shape == (1, 5)
        assert np.all(model.b["i"] == 0)

    def test_forward_shapes(self):
        """Forward keeps one hidden state per step plus the initial one."""
        model = SequenceModel(hidden_size=4, seed=1)
        cache = model.forward(np.array([0.1, 0.2, 0.3]))
        assert cache.outputs.shape == (3, 1)
        assert cache.h.shape == (4, 4)
        assert len(cache.gates) == 3

    def test_loss_decreases(self):
        """Repeated training on one sequence lowers the loss."""
        model = SequenceModel(hidden_size=4, learning_rate=0.05, seed=0)
        sequence = np.full(8, 0.5)

        losses = [model.train(sequence[:-1], sequence[1:]) for _ in range(100)]
        assert losses[-1] < losses[0]

    def test_gradients_clipped(self):
        """A single update moves no weight by more than lr * clip."""
        model = SequenceModel(hidden_size=4, learning_rate=0.01, clip=1.0, seed=0)
        before = {g: model.W[g].copy() for g in GATES}
        by_before = model.by.copy()

        model.train(np.ones(5), np.full(5, 100.0))

        for g in GATES:
            assert np.max(np.abs(model.W[g] - before[g])) <= 0.01 + 1e-12
        assert np.max(np.abs(model.by - by_before)) == pytest.approx(0.01)

    def test_forecast_range(self):
        """Forecast values are clipped to the normalized range."""
        model = SequenceModel(seed=2)
        model.by[:] = 5.0

        forecast = model.forecast([0.0, 0.1], 6)
        assert len(forecast) == 6
        assert all(-1.0 <= v <= 1.0 for v in forecast)
        assert forecast[0] == 1.0

    def test_forecast_empty_history(self):
        """No history means no forecast."""
        assert SequenceModel(seed=0).forecast([], 6) == []

    def test_fit_marks_trained(self):
        """Fitting usable sequences marks the model trained."""
        model = SequenceModel(hidden_size=4, seed=0)
        loss = model.fit([np.linspace(-0.5, 0.5, 12), np.linspace(0.5, -0.5, 12)], epochs=2)

        assert model.is_trained
        assert np.isfinite(loss)

    def test_fit_needs_two_values(self):
        """Sequences shorter than two values are not usable."""
        model = SequenceModel(seed=0)
        assert model.fit([[0.1], []]) == 0.0
        assert not model.is_trained
