"""
perceptron.py
~~~~~~~~~~~~~

Single perceptron units and the layers built from them.

A unit holds a weight vector, a bias and its own learning rate. A layer is an
ordered list of units that all read the same input vector; units never look
at each other, so a layer's outputs are just the per-unit outputs in order.
"""

import enum
import math
from typing import List, Optional, Sequence

import numpy as np

from digitnet.exceptions import DimensionMismatch, EmptyLayer


class Activation(enum.Enum):
    """Activation applied to a unit's weighted sum."""

    SIGMOID = 'sigmoid'
    IDENTITY = 'identity'


def sigmoid(x: float) -> float:
    """Logistic function 1 / (1 + e^-x), safe for large negative x."""
    if x >= 0:
        return 1.0 / (1.0 + math.exp(-x))
    z = math.exp(x)
    return z / (1.0 + z)


def softmax(values: Sequence[float]) -> np.ndarray:
    """
    Turn raw scores into a probability distribution.

    The maximum is subtracted before exponentiation so large logits
    cannot overflow.

    Args:
        values: Raw output-layer scores

    Returns:
        np.ndarray: Probabilities, same length as ``values``, summing to 1
    """
    scores = np.asarray(values, dtype=np.float64)
    exps = np.exp(scores - np.max(scores))
    return exps / np.sum(exps)


def as_vector(values: Sequence[float]) -> np.ndarray:
    """
    Coerce ``values`` to a float64 vector.

    Raises:
        DimensionMismatch: If ``values`` is not one-dimensional
    """
    vector = np.asarray(values, dtype=np.float64)
    if vector.ndim != 1:
        raise DimensionMismatch(
            f"Expected a one-dimensional vector, got shape {vector.shape}"
        )
    return vector


class Perceptron:
    """
    One unit of a layer: ``bias + weights . inputs`` followed by an activation.

    Weights and bias are drawn uniformly from [-1, 1]. Pass ``rng`` to make
    the draw reproducible; ``zero_init=True`` skips the draw entirely, which
    is what model loading wants before it overwrites every value.
    """

    def __init__(
        self,
        n_inputs: int,
        learning_rate: float = 0.1,
        rng: Optional[np.random.Generator] = None,
        zero_init: bool = False
    ):
        if n_inputs < 1:
            raise DimensionMismatch(
                f"A unit needs at least one input, got {n_inputs}"
            )
        self.learning_rate = float(learning_rate)
        if zero_init:
            self.weights = np.zeros(n_inputs, dtype=np.float64)
            self.bias = 0.0
        else:
            rng = rng if rng is not None else np.random.default_rng()
            self.weights = rng.uniform(-1.0, 1.0, size=n_inputs)
            self.bias = float(rng.uniform(-1.0, 1.0))

    @classmethod
    def from_parameters(
        cls,
        weights: Sequence[float],
        bias: float,
        learning_rate: float
    ) -> 'Perceptron':
        """Build a unit from explicit parameters (used when loading)."""
        vector = as_vector(weights)
        unit = cls(len(vector), learning_rate, zero_init=True)
        unit.weights = vector.copy()
        unit.bias = float(bias)
        return unit

    @property
    def n_inputs(self) -> int:
        return len(self.weights)

    def compute_raw(self, inputs: np.ndarray) -> float:
        """Weighted sum plus bias, without activation."""
        if len(inputs) != len(self.weights):
            raise DimensionMismatch(
                f"Unit expects {len(self.weights)} inputs, got {len(inputs)}"
            )
        return self.bias + float(np.dot(self.weights, inputs))

    def compute_activated(self, inputs: np.ndarray) -> float:
        return sigmoid(self.compute_raw(inputs))

    def apply_gradient(self, inputs: np.ndarray, delta: float) -> None:
        """
        Take one gradient-descent step.

        ``delta`` is the error signal already multiplied by the activation
        derivative (or ``output - target`` for softmax with cross-entropy).
        """
        step = self.learning_rate * delta
        self.weights -= step * np.asarray(inputs, dtype=np.float64)
        self.bias -= step

    def __repr__(self) -> str:
        return (
            f"Perceptron(n_inputs={self.n_inputs}, bias={self.bias:.4f}, "
            f"learning_rate={self.learning_rate})"
        )


class Layer:
    """An ordered, non-empty group of units that share one input width."""

    def __init__(self, units: Sequence[Perceptron]):
        units = list(units)
        if not units:
            raise EmptyLayer("A layer needs at least one unit")
        width = units[0].n_inputs
        for unit in units[1:]:
            if unit.n_inputs != width:
                raise DimensionMismatch(
                    f"All units of a layer must share one input width: "
                    f"{unit.n_inputs} != {width}"
                )
        self.units: List[Perceptron] = units

    @classmethod
    def create(
        cls,
        n_units: int,
        n_inputs: int,
        learning_rate: float,
        rng: Optional[np.random.Generator] = None
    ) -> 'Layer':
        """Create ``n_units`` randomly initialised units of width ``n_inputs``."""
        if n_units < 1:
            raise EmptyLayer(f"A layer needs at least one unit, got {n_units}")
        return cls([
            Perceptron(n_inputs, learning_rate, rng=rng)
            for _ in range(n_units)
        ])

    @property
    def input_size(self) -> int:
        return self.units[0].n_inputs

    def __len__(self) -> int:
        return len(self.units)

    def __iter__(self):
        return iter(self.units)

    def __getitem__(self, index: int) -> Perceptron:
        return self.units[index]

    def compute_outputs(
        self,
        inputs: np.ndarray,
        activation: Activation = Activation.SIGMOID
    ) -> np.ndarray:
        """
        Evaluate every unit of the layer on the same input vector.

        Args:
            inputs: Vector of length ``input_size``
            activation: ``SIGMOID`` for hidden layers, ``IDENTITY`` for the
                raw scores fed into softmax

        Returns:
            np.ndarray: One output per unit, in unit order

        Raises:
            EmptyLayer: If the layer has lost all of its units
            DimensionMismatch: If ``inputs`` has the wrong length
        """
        if not self.units:
            raise EmptyLayer("Cannot evaluate a layer without units")
        if len(inputs) != self.input_size:
            raise DimensionMismatch(
                f"Layer expects {self.input_size} inputs, got {len(inputs)}"
            )

        if activation is Activation.IDENTITY:
            outputs = [unit.compute_raw(inputs) for unit in self.units]
        else:
            outputs = [unit.compute_activated(inputs) for unit in self.units]
        return np.array(outputs, dtype=np.float64)
