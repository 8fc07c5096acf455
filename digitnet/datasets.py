"""
datasets.py
~~~~~~~~~~~

MNIST loading in CSV form (``label,p0,p1,...,p783`` per row).

Pixels are scaled from 0..255 to [0, 1] and labels are one-hot encoded, which
is the shape ``Network.start_training`` consumes.
"""

import logging
import os
from typing import List, Optional, Sequence, Tuple

import numpy as np

# Configure module logger
logger = logging.getLogger(__name__)

NUM_CLASSES = 10
IMAGE_SIZE = 28 * 28

Sample = Tuple[np.ndarray, np.ndarray]


def normalize_pixels(pixels: Sequence[float]) -> np.ndarray:
    """Scale raw 0..255 pixel values to float64 values in [0, 1]."""
    return np.asarray(pixels, dtype=np.float64) / 255.0


def one_hot_encode(label: int, num_classes: int = NUM_CLASSES) -> np.ndarray:
    """
    Encode a class label as a one-hot vector.

    Raises:
        ValueError: If ``label`` is not in ``[0, num_classes)``
    """
    if not 0 <= label < num_classes:
        raise ValueError(
            f"Label {label} out of range for one-hot encoding "
            f"with {num_classes} classes"
        )
    encoded = np.zeros(num_classes, dtype=np.float64)
    encoded[label] = 1.0
    return encoded


def _has_header(path: str) -> bool:
    """True if the first row of ``path`` is not numeric."""
    try:
        np.loadtxt(path, delimiter=',', max_rows=1)
    except ValueError:
        return True
    return False


def load_csv(
    path: str,
    limit: Optional[int] = None,
    header: Optional[bool] = None
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Read an MNIST CSV file.

    Args:
        path: Path to the CSV file
        limit: Maximum number of rows to read
        header: Whether the first row is a header; detected when None

    Returns:
        tuple: (inputs of shape (n, pixels) scaled to [0, 1], int labels (n,))

    Raises:
        OSError: If the file cannot be opened
        ValueError: If a row is malformed
    """
    if header is None:
        header = _has_header(path)

    try:
        data = np.loadtxt(
            path,
            delimiter=',',
            skiprows=1 if header else 0,
            max_rows=limit,
            ndmin=2
        )
    except ValueError as e:
        raise ValueError(f"{path}: {e}") from e

    if data.size == 0:
        logger.warning(f"No samples in {path}")
        return np.zeros((0, 0), dtype=np.float64), np.zeros(0, dtype=int)
    if data.shape[1] < 2:
        raise ValueError(f"{path}: expected a label and pixels on every row")

    labels = data[:, 0]
    if not np.array_equal(labels, np.floor(labels)):
        raise ValueError(f"{path}: labels must be integers")

    logger.info(f"Loaded {len(data)} samples from {path}")
    return normalize_pixels(data[:, 1:]), labels.astype(int)


def to_samples(
    inputs: np.ndarray,
    labels: np.ndarray,
    num_classes: int = NUM_CLASSES
) -> List[Sample]:
    """Pair each input vector with its one-hot target."""
    return [
        (x, one_hot_encode(int(label), num_classes))
        for x, label in zip(inputs, labels)
    ]


def split_pairs(samples: Sequence[Sample]) -> Tuple[List[np.ndarray], List[np.ndarray]]:
    """Split ``(input, target)`` pairs into separate input and target lists."""
    inputs = [x for x, _ in samples]
    targets = [y for _, y in samples]
    return inputs, targets


def load_data_wrapper(
    data_dir: str = 'data',
    training_samples: Optional[int] = None,
    validation_size: int = 10000,
    train_file: str = 'mnist_train.csv',
    test_file: str = 'mnist_test.csv'
) -> Tuple[List[Sample], List[Sample], List[Sample]]:
    """
    Load training, validation and test data.

    Validation samples are taken from the end of the training file, so the
    first ``len - validation_size`` rows are trained on.

    Returns:
        tuple: (training_data, validation_data, test_data), each a list of
        ``(input, one_hot_target)`` pairs
    """
    train_inputs, train_labels = load_csv(
        os.path.join(data_dir, train_file),
        limit=None if training_samples is None
        else training_samples + validation_size
    )
    test_inputs, test_labels = load_csv(os.path.join(data_dir, test_file))

    split = max(len(train_inputs) - validation_size, 0)
    if training_samples is not None:
        split = min(split, training_samples)

    training_data = to_samples(train_inputs[:split], train_labels[:split])
    validation_data = to_samples(train_inputs[split:], train_labels[split:])
    test_data = to_samples(test_inputs, test_labels)
    return training_data, validation_data, test_data
