"""
training.py
~~~~~~~~~~~

Epoch loop, metrics and early stopping for online (per-sample) SGD.

Samples are visited in dataset order every epoch; there is no shuffling, so
two runs starting from the same weights end with the same weights.
"""

import enum
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from digitnet.exceptions import DimensionMismatch

# Configure module logger
logger = logging.getLogger(__name__)


class StoppingMetric(enum.Enum):
    """Signal watched by early stopping."""

    MINIMIZE_LOSS = 'minimize_loss'
    MAXIMIZE_ACCURACY = 'maximize_accuracy'


DEFAULT_MINIMAL_IMPROVEMENT = {
    StoppingMetric.MINIMIZE_LOSS: 1e-4,
    StoppingMetric.MAXIMIZE_ACCURACY: 1e-3,
}


def mean_squared_error(outputs: Sequence[float], targets: Sequence[float]) -> float:
    """Mean of the squared differences between one output and its target."""
    outputs = np.asarray(outputs, dtype=np.float64)
    targets = np.asarray(targets, dtype=np.float64)
    if outputs.shape != targets.shape:
        raise DimensionMismatch(
            f"Output size {len(outputs)} doesn't match target size {len(targets)}"
        )
    return float(np.mean((outputs - targets) ** 2))


def argmax(values: Sequence[float]) -> int:
    """Index of the largest value; the first one wins on ties."""
    return int(np.argmax(values))


@dataclass
class EpochMetrics:
    """Metrics collected at the end of one epoch."""

    epoch: int
    loss: float
    accuracy: float
    correct: int
    total: int
    validation_loss: Optional[float] = None
    validation_accuracy: Optional[float] = None
    improved: bool = False
    elapsed_time: float = 0.0


@dataclass
class TrainingResult:
    """Outcome of :func:`run_training`."""

    epochs_run: int
    stopped_early: bool
    best_value: float
    stopping_metric: StoppingMetric
    history: List[EpochMetrics] = field(default_factory=list)

    @property
    def final(self) -> Optional[EpochMetrics]:
        return self.history[-1] if self.history else None


class EarlyStopping:
    """
    Patience counter over a single tracked value.

    ``update`` returns True when the value improved by more than
    ``minimal_improvement`` over the best value seen so far.
    """

    def __init__(
        self,
        metric: StoppingMetric,
        patience: int = 5,
        minimal_improvement: Optional[float] = None
    ):
        if patience < 1:
            raise ValueError(f"patience must be a positive integer, got {patience}")
        if minimal_improvement is None:
            minimal_improvement = DEFAULT_MINIMAL_IMPROVEMENT[metric]
        if minimal_improvement < 0:
            raise ValueError(
                f"minimal_improvement must be non-negative, got {minimal_improvement}"
            )

        self.metric = metric
        self.patience = patience
        self.minimal_improvement = minimal_improvement
        self.epochs_without_improvement = 0
        if metric is StoppingMetric.MINIMIZE_LOSS:
            self.best = math.inf
        else:
            self.best = -math.inf

    def update(self, value: float) -> bool:
        if self.metric is StoppingMetric.MINIMIZE_LOSS:
            improved = value < self.best - self.minimal_improvement
        else:
            improved = value > self.best + self.minimal_improvement

        if improved:
            self.best = value
            self.epochs_without_improvement = 0
        else:
            self.epochs_without_improvement += 1
        return improved

    @property
    def should_stop(self) -> bool:
        return self.epochs_without_improvement >= self.patience


def evaluate(network, inputs: Sequence, targets: Sequence) -> Tuple[float, float, int]:
    """
    Score ``network`` on a dataset without changing it.

    Returns:
        tuple: (mean squared error, accuracy, number of correct predictions)
    """
    _check_dataset(inputs, targets)
    if len(inputs) == 0:
        return 0.0, 0.0, 0

    total_mse = 0.0
    correct = 0
    for x, y in zip(inputs, targets):
        output = network.forward(x)
        total_mse += mean_squared_error(output, y)
        if argmax(output) == argmax(y):
            correct += 1

    return total_mse / len(inputs), correct / len(inputs), correct


def _check_dataset(inputs: Sequence, targets: Sequence) -> None:
    if len(inputs) != len(targets):
        raise DimensionMismatch(
            f"Got {len(inputs)} inputs but {len(targets)} targets"
        )


def run_training(
    network,
    training_inputs: Sequence,
    training_targets: Sequence,
    validation_inputs: Optional[Sequence] = None,
    validation_targets: Optional[Sequence] = None,
    epochs: int = 100,
    patience: int = 5,
    minimal_improvement: Optional[float] = None,
    stopping_metric: StoppingMetric = StoppingMetric.MAXIMIZE_ACCURACY,
    callback: Optional[Callable[[Dict[str, Any]], None]] = None,
    yield_func: Optional[Callable[[], None]] = None
) -> TrainingResult:
    """
    Train ``network`` sample by sample until early stopping or ``epochs``.

    The tracked value is the validation metric when a validation set is
    given, the training metric otherwise.

    Args:
        network: Object with ``train(x, y)`` and ``forward(x)``
        training_inputs: Input vectors, visited in order every epoch
        training_targets: One-hot targets matching ``training_inputs``
        validation_inputs: Optional held-out inputs
        validation_targets: Targets matching ``validation_inputs``
        epochs: Maximum number of epochs
        patience: Consecutive epochs without improvement before stopping
        minimal_improvement: Margin a value must beat the best by
        stopping_metric: Which signal early stopping watches
        callback: Called with a dict of epoch metrics after every epoch
        yield_func: Called after every sample (cooperative multitasking)

    Returns:
        TrainingResult: Epoch count, stop reason and per-epoch history

    Raises:
        ValueError: If the training set is empty or epochs/patience < 1
        DimensionMismatch: If inputs and targets differ in length or width
    """
    _check_dataset(training_inputs, training_targets)
    if len(training_inputs) == 0:
        raise ValueError("Training set is empty")
    if epochs < 1:
        raise ValueError(f"epochs must be a positive integer, got {epochs}")

    has_validation = validation_inputs is not None
    if has_validation:
        if validation_targets is None:
            raise ValueError("validation_inputs given without validation_targets")
        _check_dataset(validation_inputs, validation_targets)
        has_validation = len(validation_inputs) > 0

    stopper = EarlyStopping(stopping_metric, patience, minimal_improvement)
    history: List[EpochMetrics] = []
    stopped_early = False
    start_time = time.time()

    logger.info(
        f"Starting training: {len(training_inputs)} samples, "
        f"{len(validation_inputs) if has_validation else 0} validation samples, "
        f"max {epochs} epochs, patience {patience}, "
        f"tracking {stopping_metric.value}"
    )

    for epoch in range(1, epochs + 1):
        for x, y in zip(training_inputs, training_targets):
            network.train(x, y)
            if yield_func:
                yield_func()

        loss, accuracy, correct = evaluate(
            network, training_inputs, training_targets
        )
        metrics = EpochMetrics(
            epoch=epoch,
            loss=loss,
            accuracy=accuracy,
            correct=correct,
            total=len(training_inputs),
        )
        if has_validation:
            metrics.validation_loss, metrics.validation_accuracy, _ = evaluate(
                network, validation_inputs, validation_targets
            )

        if stopping_metric is StoppingMetric.MINIMIZE_LOSS:
            tracked = metrics.validation_loss if has_validation else loss
        else:
            tracked = metrics.validation_accuracy if has_validation else accuracy
        metrics.improved = stopper.update(tracked)
        metrics.elapsed_time = time.time() - start_time
        history.append(metrics)

        message = (
            f"Epoch {epoch}/{epochs} - loss: {loss:.6f}, "
            f"accuracy: {accuracy:.2%}"
        )
        if has_validation:
            message += (
                f", val_loss: {metrics.validation_loss:.6f}, "
                f"val_accuracy: {metrics.validation_accuracy:.2%}"
            )
        logger.info(message)
        if not metrics.improved:
            logger.debug(
                f"No improvement this epoch "
                f"({stopper.epochs_without_improvement}/{patience})"
            )

        if callback:
            callback({
                'epoch': epoch,
                'total_epochs': epochs,
                'loss': loss,
                'accuracy': accuracy,
                'validation_loss': metrics.validation_loss,
                'validation_accuracy': metrics.validation_accuracy,
                'elapsed_time': metrics.elapsed_time,
                'correct': correct,
                'total': len(training_inputs),
            })

        if stopper.should_stop:
            stopped_early = True
            logger.info(f"Early stopping triggered after {epoch} epochs")
            break

    return TrainingResult(
        epochs_run=len(history),
        stopped_early=stopped_early,
        best_value=stopper.best,
        stopping_metric=stopping_metric,
        history=history,
    )
