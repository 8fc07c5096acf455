"""
digitnet package
~~~~~~~~~~~~~~~~

Multilayer perceptron for MNIST digit recognition, built from single
perceptron units. Contains the network core, the training loop with early
stopping, binary model persistence, data loading, and the API server.
"""

from digitnet.exceptions import (
    CorruptModel,
    DimensionMismatch,
    EmptyLayer,
    NetworkError,
)
from digitnet.network import Network, OutputMode
from digitnet.perceptron import Activation, Layer, Perceptron
from digitnet.training import StoppingMetric, TrainingResult

__version__ = "1.0.0"

__all__ = [
    "Activation",
    "CorruptModel",
    "DimensionMismatch",
    "EmptyLayer",
    "Layer",
    "Network",
    "NetworkError",
    "OutputMode",
    "Perceptron",
    "StoppingMetric",
    "TrainingResult",
]
