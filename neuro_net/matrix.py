"""
matrix.py
~~~~~~~~~

Matrix constructors used by the network: uniform random initialisation
and constant-filled allocation. Matrices are 2-D ``float64`` numpy arrays.
"""

import numpy as np


def random_matrix(
    rows: int,
    cols: int,
    low: float,
    high: float,
    rng: np.random.Generator
) -> np.ndarray:
    """
    Create a matrix of independent uniform values in ``[low, high)``.

    Args:
        rows: Number of rows
        cols: Number of columns
        low: Lower bound of the distribution
        high: Upper bound of the distribution
        rng: Random source the values are drawn from

    Returns:
        np.ndarray: Array of shape ``(rows, cols)``
    """
    return rng.uniform(low, high, size=(rows, cols))


def new_matrix(rows: int, cols: int, value: float = 0.0) -> np.ndarray:
    """Create a ``rows x cols`` matrix filled with ``value``."""
    return np.full((rows, cols), value, dtype=np.float64)
