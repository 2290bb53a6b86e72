"""
Latent factor math

Account and vehicle embeddings whose dot product, passed through the
logistic function, approximates the probability of winning a battle. The
embeddings are trained online, one battle at a time, with a regularized SGD
step (Funk-style matrix factorization).
"""

from __future__ import annotations

import math
from typing import Optional

import numpy as np

# Stored vectors are raw little-endian float64
VECTOR_DTYPE = np.dtype("<f8")


class FactorDecodeError(ValueError):
    """Raised when stored bytes do not hold a factor vector."""


def pack_vector(x: np.ndarray) -> bytes:
    return np.asarray(x, dtype=VECTOR_DTYPE).tobytes()


def unpack_vector(data: bytes) -> np.ndarray:
    if len(data) % VECTOR_DTYPE.itemsize != 0:
        raise FactorDecodeError(f"{len(data)} bytes is not a whole number of factors")
    x = np.frombuffer(data, dtype=VECTOR_DTYPE).astype(np.float64)
    if not np.all(np.isfinite(x)):
        raise FactorDecodeError("stored factors are not finite")
    return x


def initialize_factors(
    x: Optional[np.ndarray],
    n_factors: int,
    std: float,
    rng: Optional[np.random.Generator] = None,
) -> tuple[np.ndarray, bool]:
    """
    Ensure a factor vector has the expected length.

    Args:
        x: Stored vector, or None if there is none
        n_factors: Expected length
        std: Standard deviation of the initial values
        rng: Random generator, a fresh default one if omitted

    Returns:
        Tuple of (vector, whether it was reinitialized)
    """
    if x is not None and len(x) == n_factors:
        return x, False
    rng = rng or np.random.default_rng()
    return rng.normal(0.0, std, size=n_factors), True


def logistic(x: float) -> float:
    if x >= 0.0:
        return 1.0 / (1.0 + math.exp(-x))
    exp_x = math.exp(x)
    return exp_x / (1.0 + exp_x)


def predict_win_rate(vehicle_factors: np.ndarray, account_factors: np.ndarray) -> float:
    return logistic(float(np.dot(vehicle_factors, account_factors)))


def sgd_step(
    x: np.ndarray,
    y: np.ndarray,
    error: float,
    learning_rate: float,
    regularization: float,
) -> None:
    """
    Update both vectors in place from one residual.

    ``x += lr * (error * y - reg * x)`` and
    ``y += lr * (error * x_old - reg * y)``, each using the other vector's
    value from before the step.

    Raises:
        ValueError: If the update produces a non-finite value
    """
    x_old = x.copy()
    x += learning_rate * (error * y - regularization * x)
    y += learning_rate * (error * x_old - regularization * y)
    if not (np.all(np.isfinite(x)) and np.all(np.isfinite(y))):
        raise ValueError("the learning rate is too big")


def make_targets(
    n_battles: int,
    n_wins: int,
    rng: Optional[np.random.Generator] = None,
) -> np.ndarray:
    """Expand a tally into shuffled per-battle labels, 1.0 for a win."""
    targets = np.zeros(n_battles, dtype=np.float64)
    targets[:n_wins] = 1.0
    (rng or np.random.default_rng()).shuffle(targets)
    return targets


class BCELoss:
    """Running binary cross-entropy."""

    EPSILON = 1e-15

    def __init__(self):
        self.loss = 0.0
        self.n = 0

    def push(self, prediction: float, label: float) -> None:
        prediction = min(max(prediction, self.EPSILON), 1.0 - self.EPSILON)
        if label != 0.0:
            self.loss -= label * math.log(prediction)
        if label != 1.0:
            self.loss -= (1.0 - label) * math.log(1.0 - prediction)
        self.n += 1

    @property
    def average(self) -> float:
        return self.loss / max(self.n, 1)
