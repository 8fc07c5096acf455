"""
model_io.py
~~~~~~~~~~~

Binary encoding of a network's layers.

Layout (little-endian, no magic number, no version field)::

    hidden_layer_count : uint64
    per hidden layer   : unit_count : uint64, then unit_count unit records
    output layer       : unit_count : uint64, then unit_count unit records

    unit record        : weight_count : uint64
                         weights      : float64 * weight_count
                         bias         : float64
                         learning_rate: float64

Reads that run short, trailing bytes, empty layers and layers whose widths
don't chain together all raise :class:`CorruptModel`.
"""

import io
import logging
import struct
from typing import BinaryIO, List, Sequence, Tuple

import numpy as np

from digitnet.exceptions import CorruptModel
from digitnet.perceptron import Layer, Perceptron

# Configure module logger
logger = logging.getLogger(__name__)

_COUNT = struct.Struct('<Q')
_FLOAT = struct.Struct('<d')
_WEIGHT_DTYPE = np.dtype('<f8')

Layers = Tuple[List[Layer], Layer]


def _write_unit(stream: BinaryIO, unit: Perceptron) -> None:
    stream.write(_COUNT.pack(unit.n_inputs))
    stream.write(unit.weights.astype(_WEIGHT_DTYPE).tobytes())
    stream.write(_FLOAT.pack(unit.bias))
    stream.write(_FLOAT.pack(unit.learning_rate))


def _write_layer(stream: BinaryIO, layer: Layer) -> None:
    stream.write(_COUNT.pack(len(layer)))
    for unit in layer:
        _write_unit(stream, unit)


def write_layers(
    stream: BinaryIO,
    hidden_layers: Sequence[Layer],
    output_layer: Layer
) -> None:
    """Encode ``hidden_layers`` followed by ``output_layer`` into ``stream``."""
    stream.write(_COUNT.pack(len(hidden_layers)))
    for layer in hidden_layers:
        _write_layer(stream, layer)
    _write_layer(stream, output_layer)


def _read_exact(stream: BinaryIO, size: int, what: str) -> bytes:
    try:
        data = stream.read(size)
    except (OverflowError, MemoryError) as e:
        raise CorruptModel(f"Implausible size {size} for {what}") from e
    if len(data) != size:
        raise CorruptModel(
            f"Unexpected end of model data while reading {what}: "
            f"wanted {size} bytes, got {len(data)}"
        )
    return data


def _read_count(stream: BinaryIO, what: str) -> int:
    return _COUNT.unpack(_read_exact(stream, _COUNT.size, what))[0]


def _read_float(stream: BinaryIO, what: str) -> float:
    return _FLOAT.unpack(_read_exact(stream, _FLOAT.size, what))[0]


def _read_unit(stream: BinaryIO) -> Perceptron:
    weight_count = _read_count(stream, 'weight count')
    if weight_count == 0:
        raise CorruptModel("Unit record has no weights")
    raw = _read_exact(stream, weight_count * _FLOAT.size, 'weights')
    weights = np.frombuffer(raw, dtype=_WEIGHT_DTYPE).astype(np.float64)
    bias = _read_float(stream, 'bias')
    learning_rate = _read_float(stream, 'learning rate')
    return Perceptron.from_parameters(weights, bias, learning_rate)


def _read_layer(stream: BinaryIO, name: str) -> Layer:
    unit_count = _read_count(stream, f'{name} unit count')
    if unit_count == 0:
        raise CorruptModel(f"{name} has no units")

    units = [_read_unit(stream) for _ in range(unit_count)]
    widths = {unit.n_inputs for unit in units}
    if len(widths) != 1:
        raise CorruptModel(
            f"{name} mixes units of different widths: {sorted(widths)}"
        )
    return Layer(units)


def read_layers(stream: BinaryIO) -> Layers:
    """
    Decode a model from ``stream``.

    Returns:
        tuple: (list of hidden layers, output layer)

    Raises:
        CorruptModel: If the data is truncated or inconsistent
    """
    hidden_count = _read_count(stream, 'hidden layer count')
    hidden_layers = [
        _read_layer(stream, f'hidden layer {i}') for i in range(hidden_count)
    ]
    output_layer = _read_layer(stream, 'output layer')

    previous = hidden_layers[0] if hidden_layers else None
    for i, layer in enumerate(hidden_layers[1:] + [output_layer], start=1):
        if previous is not None and layer.input_size != len(previous):
            raise CorruptModel(
                f"Layer {i} expects {layer.input_size} inputs but the layer "
                f"before it has {len(previous)} units"
            )
        previous = layer

    return hidden_layers, output_layer


def dumps(hidden_layers: Sequence[Layer], output_layer: Layer) -> bytes:
    """Encode layers to bytes."""
    buffer = io.BytesIO()
    write_layers(buffer, hidden_layers, output_layer)
    return buffer.getvalue()


def loads(data: bytes) -> Layers:
    """Decode layers from bytes; trailing bytes are an error."""
    buffer = io.BytesIO(data)
    layers = read_layers(buffer)
    _check_exhausted(buffer)
    return layers


def _check_exhausted(stream: BinaryIO) -> None:
    if stream.read(1):
        raise CorruptModel("Trailing bytes after the output layer")


def save_layers(
    path: str,
    hidden_layers: Sequence[Layer],
    output_layer: Layer
) -> None:
    """
    Write layers to ``path``.

    Raises:
        OSError: If the file cannot be opened for writing
    """
    with open(path, 'wb') as f:
        write_layers(f, hidden_layers, output_layer)
    logger.debug(f"Wrote model with {len(hidden_layers)} hidden layer(s) to {path}")


def load_layers(path: str) -> Layers:
    """
    Read layers from ``path``.

    Raises:
        OSError: If the file cannot be opened for reading
        CorruptModel: If the file is truncated or inconsistent
    """
    with open(path, 'rb') as f:
        layers = read_layers(f)
        _check_exhausted(f)
    logger.debug(f"Read model with {len(layers[0])} hidden layer(s) from {path}")
    return layers
