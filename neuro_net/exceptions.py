"""
exceptions.py
~~~~~~~~~~~~~

Error types raised by the network and its persistence layer.
"""


class NetworkError(Exception):
    """Base class for all errors raised by neuro_net."""


class InputSizeMismatch(NetworkError, ValueError):
    """Raised when an input sample does not fit the network's input layer."""

    def __init__(self, expected: int, actual, message: str = None):
        self.expected = expected
        self.actual = actual
        if message is None:
            message = (
                f"amount of input variables doesn't match: "
                f"expected {expected}, got {actual}"
            )
        super().__init__(message)


class OutputSizeMismatch(NetworkError, ValueError):
    """Raised when a target vector does not fit the network's output layer."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"amount of output variables doesn't match: "
            f"expected {expected}, got {actual}"
        )


class IOFailure(NetworkError, OSError):
    """
    Raised when a network cannot be written to or read from a byte sink.

    Covers both an unusable sink (missing file, permissions) and a sink
    whose contents do not decode into a network.
    """
