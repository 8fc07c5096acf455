"""
test_perceptron.py
~~~~~~~~~~~~~~~~~~

Unit tests for single perceptrons and layers.
"""

import math

import numpy as np
import pytest

from digitnet.exceptions import DimensionMismatch, EmptyLayer
from digitnet.perceptron import Activation, Layer, Perceptron, sigmoid, softmax


@pytest.fixture
def unit():
    """A unit with known weights."""
    return Perceptron.from_parameters([0.5, -1.0, 2.0], bias=0.25, learning_rate=0.1)


@pytest.mark.unit
class TestPerceptron:
    """Test the weighted sum, activation and update of one unit."""

    def test_random_init_in_range(self):
        """Test that random weights and bias are drawn from [-1, 1]."""
        p = Perceptron(50, rng=np.random.default_rng(3))
        assert p.weights.shape == (50,)
        assert np.all(p.weights >= -1.0) and np.all(p.weights <= 1.0)
        assert -1.0 <= p.bias <= 1.0

    def test_zero_init(self):
        """Test that zero_init leaves weights and bias at zero."""
        p = Perceptron(4, learning_rate=0.3, zero_init=True)
        assert np.all(p.weights == 0.0)
        assert p.bias == 0.0
        assert p.learning_rate == 0.3

    def test_compute_raw(self, unit):
        """Test that the raw output is bias plus the dot product."""
        assert unit.compute_raw(np.array([1.0, 2.0, 3.0])) == pytest.approx(
            0.25 + 0.5 - 2.0 + 6.0
        )

    def test_compute_activated(self, unit):
        """Test that the activated output is the sigmoid of the raw output."""
        x = np.array([1.0, 0.0, 0.0])
        assert unit.compute_activated(x) == pytest.approx(
            1.0 / (1.0 + math.exp(-0.75))
        )

    def test_compute_raw_wrong_width(self, unit):
        """Test that a mismatched input raises DimensionMismatch."""
        with pytest.raises(DimensionMismatch):
            unit.compute_raw(np.array([1.0, 2.0]))

    def test_apply_gradient(self, unit):
        """Test one gradient descent step on weights and bias."""
        x = np.array([1.0, 2.0, -1.0])
        unit.apply_gradient(x, delta=0.5)

        np.testing.assert_allclose(unit.weights, [0.45, -1.1, 2.05])
        assert unit.bias == pytest.approx(0.2)

    def test_from_parameters_copies(self):
        """Test that from_parameters doesn't alias the caller's array."""
        weights = np.array([1.0, 2.0])
        p = Perceptron.from_parameters(weights, 0.0, 0.1)
        p.apply_gradient(np.array([1.0, 1.0]), 1.0)
        assert weights.tolist() == [1.0, 2.0]


@pytest.mark.unit
class TestActivations:

    def test_sigmoid_extremes(self):
        """Test that sigmoid saturates without overflowing."""
        assert sigmoid(0.0) == 0.5
        assert sigmoid(1000.0) == pytest.approx(1.0)
        assert sigmoid(-1000.0) == pytest.approx(0.0)

    def test_softmax_large_logits(self):
        """Test that softmax stays finite for very large scores."""
        probs = softmax([1000.0, 1001.0, 1002.0])
        assert np.all(np.isfinite(probs))
        assert probs.sum() == pytest.approx(1.0, abs=1e-12)
        np.testing.assert_allclose(probs, softmax([0.0, 1.0, 2.0]))


@pytest.mark.unit
class TestLayer:
    """Test layer construction and evaluation."""

    def test_empty_layer_rejected(self):
        """Test that a layer without units raises EmptyLayer."""
        with pytest.raises(EmptyLayer):
            Layer([])
        with pytest.raises(EmptyLayer):
            Layer.create(0, 3, 0.1)

    def test_mixed_widths_rejected(self):
        """Test that units of different widths can't share a layer."""
        with pytest.raises(DimensionMismatch):
            Layer([Perceptron(2), Perceptron(3)])

    def test_compute_outputs_sigmoid(self):
        """Test that every unit's activated output is returned in order."""
        layer = Layer([
            Perceptron.from_parameters([1.0, 0.0], 0.0, 0.1),
            Perceptron.from_parameters([0.0, 1.0], 0.0, 0.1),
        ])
        out = layer.compute_outputs(np.array([0.0, 2.0]))
        np.testing.assert_allclose(out, [0.5, sigmoid(2.0)])

    def test_compute_outputs_identity(self):
        """Test that IDENTITY returns raw weighted sums."""
        layer = Layer([Perceptron.from_parameters([2.0, 3.0], 1.0, 0.1)])
        out = layer.compute_outputs(np.array([1.0, 1.0]), Activation.IDENTITY)
        np.testing.assert_allclose(out, [6.0])

    def test_compute_outputs_wrong_width(self):
        """Test that a mismatched input raises DimensionMismatch."""
        layer = Layer.create(3, 4, 0.1)
        with pytest.raises(DimensionMismatch):
            layer.compute_outputs(np.zeros(5))

    def test_compute_outputs_after_units_removed(self):
        """Test that evaluating a layer emptied after construction fails."""
        layer = Layer.create(1, 2, 0.1)
        layer.units.clear()
        with pytest.raises(EmptyLayer):
            layer.compute_outputs(np.zeros(2))
