"""
network.py
~~~~~~~~~~

Multilayer perceptron trained with online backpropagation.

A network is zero or more sigmoid hidden layers followed by one output
layer. In ``SOFTMAX_CROSS_ENTROPY`` mode the output layer's raw scores go
through softmax and the output delta is ``output - target``; in
``SIGMOID_MSE`` mode the output layer is sigmoid and the delta carries the
sigmoid derivative.

Example:
    >>> net = Network(784, [128, 64], 10, learning_rate=0.01, seed=1)
    >>> probabilities = net.forward(image)
    >>> result = net.start_training(train_x, train_y, val_x, val_y, epochs=100)
    >>> net.save('models/mnist.bin')
"""

import enum
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from digitnet import model_io, training
from digitnet.exceptions import DimensionMismatch
from digitnet.perceptron import Activation, Layer, as_vector, softmax
from digitnet.training import StoppingMetric, TrainingResult

# Configure module logger
logger = logging.getLogger(__name__)


class OutputMode(enum.Enum):
    """Output activation and the matching output-layer delta."""

    SIGMOID_MSE = 'sigmoid_mse'
    SOFTMAX_CROSS_ENTROPY = 'softmax_cross_entropy'


DEFAULT_STOPPING_METRIC = {
    OutputMode.SIGMOID_MSE: StoppingMetric.MINIMIZE_LOSS,
    OutputMode.SOFTMAX_CROSS_ENTROPY: StoppingMetric.MAXIMIZE_ACCURACY,
}


class Network:
    """
    A feed-forward network that owns its layers.

    Args:
        input_size: Width of the input vector
        hidden_sizes: Unit count of each hidden layer, may be empty
        output_size: Number of output units (classes)
        learning_rate: Learning rate given to every unit
        output_mode: Softmax with cross-entropy, or sigmoid with MSE
        stopping_metric: Signal early stopping watches; defaults to accuracy
            for softmax and loss for sigmoid output
        seed: Seed for weight initialisation. Randomness is only used here,
            so a seeded network trains deterministically.
    """

    def __init__(
        self,
        input_size: int,
        hidden_sizes: Sequence[int] = (),
        output_size: int = 10,
        learning_rate: float = 0.1,
        output_mode: OutputMode = OutputMode.SOFTMAX_CROSS_ENTROPY,
        stopping_metric: Optional[StoppingMetric] = None,
        seed: Optional[int] = None
    ):
        if input_size < 1:
            raise DimensionMismatch(
                f"input_size must be a positive integer, got {input_size}"
            )

        self.output_mode = OutputMode(output_mode)
        self.stopping_metric = (
            StoppingMetric(stopping_metric) if stopping_metric is not None
            else DEFAULT_STOPPING_METRIC[self.output_mode]
        )

        rng = np.random.default_rng(seed)
        self.hidden_layers: List[Layer] = []
        previous_size = input_size
        for size in hidden_sizes:
            self.hidden_layers.append(
                Layer.create(size, previous_size, learning_rate, rng=rng)
            )
            previous_size = size
        self.output_layer = Layer.create(
            output_size, previous_size, learning_rate, rng=rng
        )

        logger.debug(
            f"Created network {self.sizes} ({self.output_mode.value}, "
            f"learning_rate={learning_rate})"
        )

    @classmethod
    def from_layers(
        cls,
        hidden_layers: Sequence[Layer],
        output_layer: Layer,
        output_mode: OutputMode = OutputMode.SOFTMAX_CROSS_ENTROPY,
        stopping_metric: Optional[StoppingMetric] = None
    ) -> 'Network':
        """Wrap already-built layers in a network without drawing weights."""
        net = cls.__new__(cls)
        net.output_mode = OutputMode(output_mode)
        net.stopping_metric = (
            StoppingMetric(stopping_metric) if stopping_metric is not None
            else DEFAULT_STOPPING_METRIC[net.output_mode]
        )
        net.hidden_layers = list(hidden_layers)
        net.output_layer = output_layer
        return net

    @classmethod
    def from_file(cls, path: str, **kwargs) -> 'Network':
        """Load a network saved with :meth:`save`."""
        hidden_layers, output_layer = model_io.load_layers(path)
        return cls.from_layers(hidden_layers, output_layer, **kwargs)

    @classmethod
    def from_bytes(cls, data: bytes, **kwargs) -> 'Network':
        hidden_layers, output_layer = model_io.loads(data)
        return cls.from_layers(hidden_layers, output_layer, **kwargs)

    # ------------------------------------------------------------------
    # Topology
    # ------------------------------------------------------------------

    @property
    def layers(self) -> List[Layer]:
        return self.hidden_layers + [self.output_layer]

    @property
    def input_size(self) -> int:
        return self.layers[0].input_size

    @property
    def output_size(self) -> int:
        return len(self.output_layer)

    @property
    def sizes(self) -> List[int]:
        """Layer widths, input first: ``[784, 128, 64, 10]``."""
        return [self.input_size] + [len(layer) for layer in self.layers]

    # ------------------------------------------------------------------
    # Forward pass
    # ------------------------------------------------------------------

    def _check_input(self, inputs: Sequence[float]) -> np.ndarray:
        vector = as_vector(inputs)
        if len(vector) != self.input_size:
            raise DimensionMismatch(
                f"Network expects {self.input_size} inputs, got {len(vector)}"
            )
        return vector

    def _output_activation(self) -> Activation:
        if self.output_mode is OutputMode.SOFTMAX_CROSS_ENTROPY:
            return Activation.IDENTITY
        return Activation.SIGMOID

    def _feedforward(self, inputs: np.ndarray) -> List[np.ndarray]:
        """Activations of every layer; index 0 is the input itself."""
        activations = [inputs]
        for layer in self.hidden_layers:
            activations.append(
                layer.compute_outputs(activations[-1], Activation.SIGMOID)
            )

        output = self.output_layer.compute_outputs(
            activations[-1], self._output_activation()
        )
        if self.output_mode is OutputMode.SOFTMAX_CROSS_ENTROPY:
            output = softmax(output)
        activations.append(output)
        return activations

    def forward(self, inputs: Sequence[float]) -> np.ndarray:
        """
        Run ``inputs`` through the network.

        Returns:
            np.ndarray: One value per output unit. In softmax mode these are
            probabilities that sum to 1.

        Raises:
            DimensionMismatch: If ``inputs`` doesn't have ``input_size`` values
        """
        return self._feedforward(self._check_input(inputs))[-1]

    def predict(self, inputs: Sequence[float]) -> int:
        """Index of the most probable class."""
        return training.argmax(self.forward(inputs))

    # ------------------------------------------------------------------
    # Backpropagation
    # ------------------------------------------------------------------

    def _output_deltas(self, output: np.ndarray, targets: np.ndarray) -> np.ndarray:
        if self.output_mode is OutputMode.SOFTMAX_CROSS_ENTROPY:
            return output - targets
        return (output - targets) * output * (1.0 - output)

    def backprop(
        self,
        inputs: Sequence[float],
        targets: Sequence[float]
    ) -> Tuple[List[np.ndarray], List[np.ndarray]]:
        """
        Compute every layer's deltas for one sample without updating weights.

        Returns:
            tuple: (activations, deltas). ``activations[i]`` is the vector fed
            into ``self.layers[i]``; ``deltas[i]`` holds one delta per unit of
            ``self.layers[i]``.
        """
        x = self._check_input(inputs)
        y = as_vector(targets)
        if len(y) != self.output_size:
            raise DimensionMismatch(
                f"Network has {self.output_size} outputs, got {len(y)} targets"
            )

        activations = self._feedforward(x)
        layers = self.layers
        deltas: List[np.ndarray] = [None] * len(layers)
        deltas[-1] = self._output_deltas(activations[-1], y)

        # Hidden deltas are propagated through the next layer's current
        # weights; nothing is updated until every delta is known.
        for index in range(len(self.hidden_layers) - 1, -1, -1):
            next_layer = layers[index + 1]
            next_deltas = deltas[index + 1]
            activation = activations[index + 1]
            errors = np.zeros(len(layers[index]), dtype=np.float64)
            for unit, delta in zip(next_layer, next_deltas):
                errors += delta * unit.weights
            deltas[index] = errors * activation * (1.0 - activation)

        return activations[:-1], deltas

    def train(self, inputs: Sequence[float], targets: Sequence[float]) -> None:
        """
        One online gradient-descent step on a single sample.

        Raises:
            DimensionMismatch: If ``inputs`` or ``targets`` have the wrong width
        """
        activations, deltas = self.backprop(inputs, targets)
        for layer, layer_input, layer_deltas in zip(self.layers, activations, deltas):
            for unit, delta in zip(layer, layer_deltas):
                unit.apply_gradient(layer_input, float(delta))

    # ------------------------------------------------------------------
    # Training loop
    # ------------------------------------------------------------------

    def evaluate(
        self,
        inputs: Sequence[Sequence[float]],
        targets: Sequence[Sequence[float]]
    ) -> Tuple[float, float, int]:
        """Return (mean squared error, accuracy, correct count) over a dataset."""
        return training.evaluate(self, inputs, targets)

    def start_training(
        self,
        training_inputs: Sequence[Sequence[float]],
        training_targets: Sequence[Sequence[float]],
        validation_inputs: Optional[Sequence[Sequence[float]]] = None,
        validation_targets: Optional[Sequence[Sequence[float]]] = None,
        epochs: int = 100,
        patience: int = 5,
        minimal_improvement: Optional[float] = None,
        callback: Optional[Callable[[Dict[str, Any]], None]] = None,
        yield_func: Optional[Callable[[], None]] = None
    ) -> TrainingResult:
        """
        Train with early stopping on this network's stopping metric.

        See :func:`digitnet.training.run_training` for the arguments.
        """
        return training.run_training(
            self,
            training_inputs,
            training_targets,
            validation_inputs=validation_inputs,
            validation_targets=validation_targets,
            epochs=epochs,
            patience=patience,
            minimal_improvement=minimal_improvement,
            stopping_metric=self.stopping_metric,
            callback=callback,
            yield_func=yield_func,
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, path: str) -> None:
        """
        Write the network's layers to ``path`` in the binary model format.

        Raises:
            OSError: If ``path`` cannot be opened for writing
        """
        model_io.save_layers(path, self.hidden_layers, self.output_layer)
        logger.info(f"Saved network {self.sizes} to {path}")

    def load(self, path: str) -> None:
        """
        Replace this network's layers with the ones stored at ``path``.

        The stored topology wins; a warning is logged when it differs from
        the topology the network had before.

        Raises:
            OSError: If ``path`` cannot be opened for reading
            CorruptModel: If the file is truncated or inconsistent
        """
        hidden_layers, output_layer = model_io.load_layers(path)
        self._replace_layers(hidden_layers, output_layer)
        logger.info(f"Loaded network {self.sizes} from {path}")

    def to_bytes(self) -> bytes:
        return model_io.dumps(self.hidden_layers, self.output_layer)

    def load_bytes(self, data: bytes) -> None:
        """Like :meth:`load`, from an in-memory model."""
        hidden_layers, output_layer = model_io.loads(data)
        self._replace_layers(hidden_layers, output_layer)

    def _replace_layers(self, hidden_layers: List[Layer], output_layer: Layer) -> None:
        previous_sizes = self.sizes
        self.hidden_layers = hidden_layers
        self.output_layer = output_layer
        if self.sizes != previous_sizes:
            logger.warning(
                f"Loaded topology {self.sizes} replaces {previous_sizes}"
            )

    def __repr__(self) -> str:
        return f"Network(sizes={self.sizes}, output_mode={self.output_mode.value})"
