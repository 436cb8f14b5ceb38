"""
Running State Normalizer
========================

Neural networks train best when every input feature has roughly zero mean
and unit variance. The simulator's state vector is already squashed into
[0, 1], but the features live in very different parts of that range (the
thermal storage efficiency is a constant 0.85, rack temperatures hover
around 0.35, the fan speed wanders between 0.2 and 1.0).

This normalizer keeps per-dimension running statistics using Welford's
online algorithm, so we never need to store the history:

    count += 1
    delta  = x - mean
    mean  += delta / count
    m2    += delta * (x - mean)        # sum of squared deviations
    std    = sqrt(m2 / count)

When a dimension has (almost) no variance, dividing by its std would blow
up, so we fall back to min-max scaling over the observed range instead.
"""

import json
from pathlib import Path
from typing import Any

import numpy as np


class StateNormalizer:
    """
    Per-dimension running mean/std with a min-max fallback.

    Attributes:
        means: Running mean of each dimension
        stds: Running (population) standard deviation of each dimension
        count: Number of state vectors folded in so far
        min_values / max_values: Observed range of each dimension

    Example Usage:
        >>> normalizer = StateNormalizer(state_size=20)
        >>> normalizer.update(state)
        >>> x = normalizer.normalize(state)
    """

    def __init__(self, state_size: int, epsilon: float = 1e-7):
        self.state_size = state_size
        self.epsilon = epsilon
        self.count = 0
        self.means = np.zeros(state_size, dtype=np.float64)
        self._m2 = np.zeros(state_size, dtype=np.float64)
        self.min_values = np.full(state_size, np.inf, dtype=np.float64)
        self.max_values = np.full(state_size, -np.inf, dtype=np.float64)

    @property
    def stds(self) -> np.ndarray:
        if self.count == 0:
            return np.zeros(self.state_size, dtype=np.float64)
        return np.sqrt(self._m2 / self.count)

    def update(self, state: np.ndarray) -> None:
        x = np.asarray(state, dtype=np.float64).reshape(-1)
        if x.shape[0] != self.state_size:
            raise ValueError(f"expected state of length {self.state_size}, got {x.shape[0]}")

        self.min_values = np.minimum(self.min_values, x)
        self.max_values = np.maximum(self.max_values, x)

        self.count += 1
        delta = x - self.means
        self.means += delta / self.count
        self._m2 += delta * (x - self.means)

    def normalize(self, state: np.ndarray) -> np.ndarray:
        """Normalize one state (1-D) or a batch of states (2-D). Does not mutate statistics."""
        x = np.asarray(state, dtype=np.float64)
        stds = self.stds
        degenerate = stds < self.epsilon

        value_range = self.max_values - self.min_values
        has_range = np.isfinite(value_range) & (value_range > 0)
        safe_range = np.where(has_range, value_range, 1.0)
        safe_min = np.where(np.isfinite(self.min_values), self.min_values, 0.0)
        min_max = np.where(has_range, (x - safe_min) / safe_range, 0.0)

        safe_std = np.where(degenerate, 1.0, stds)
        z_score = (x - self.means) / safe_std
        return np.where(degenerate, min_max, z_score).astype(np.float32)

    def state_dict(self) -> dict[str, Any]:
        return {
            "means": self.means.tolist(),
            "stds": self.stds.tolist(),
            "count": self.count,
            "min_values": [float(v) if np.isfinite(v) else None for v in self.min_values],
            "max_values": [float(v) if np.isfinite(v) else None for v in self.max_values],
        }

    def load_state_dict(self, data: dict[str, Any]) -> None:
        means = np.asarray(data["means"], dtype=np.float64)
        if means.shape[0] != self.state_size:
            raise ValueError(f"normalizer snapshot has {means.shape[0]} dims, expected {self.state_size}")
        self.count = int(data["count"])
        self.means = means
        stds = np.asarray(data["stds"], dtype=np.float64)
        self._m2 = stds ** 2 * self.count
        self.min_values = np.array([np.inf if v is None else v for v in data["min_values"]], dtype=np.float64)
        self.max_values = np.array([-np.inf if v is None else v for v in data["max_values"]], dtype=np.float64)

    def save(self, filepath: str | Path) -> None:
        with open(filepath, "w", encoding="utf-8") as fh:
            json.dump(self.state_dict(), fh, indent=2)

    @classmethod
    def load(cls, filepath: str | Path) -> "StateNormalizer":
        with open(filepath, encoding="utf-8") as fh:
            data = json.load(fh)
        normalizer = cls(len(data["means"]))
        normalizer.load_state_dict(data)
        return normalizer
