"""
neuro_net package
~~~~~~~~~~~~~~~~~

One-hidden-layer neural network trained by stochastic backpropagation
with momentum, for dense or sparse inputs. Contains the network, its
JSON persistence, a SQLite model store and an API server.
"""

__version__ = "1.0.0"

from neuro_net.exceptions import (
    NetworkError,
    InputSizeMismatch,
    OutputSizeMismatch,
    IOFailure
)
from neuro_net.network import Network, sigmoid, dsigmoid

__all__ = [
    'Network',
    'sigmoid',
    'dsigmoid',
    'NetworkError',
    'InputSizeMismatch',
    'OutputSizeMismatch',
    'IOFailure',
]
