"""
Environment helpers for the data-center simulator.
"""

import logging
from collections.abc import Sequence

import numpy as np

from coolinglib.datacenter_sim import DataCenterSimulator, StateIndex

from .config import EnvironmentConfig

_log = logging.getLogger(__name__)


def state_size(rack_count: int) -> int:
    return StateIndex.size(rack_count)


def sanitize_state(state: Sequence[float] | np.ndarray | None, rack_count: int) -> np.ndarray:
    """Return a copy of ``state`` that is safe to feed to the networks.

    A vector of the wrong length is replaced by zeros, non-finite entries
    become 0 and every entry is clamped to the normalized range [0, 1].
    """
    expected = state_size(rack_count)
    try:
        arr = np.asarray(state, dtype=np.float64).reshape(-1)
    except (TypeError, ValueError):
        _log.error('Invalid state format. Expected length %d, got %r', expected, type(state))
        return np.zeros(expected, dtype=np.float32)
    if arr.shape[0] != expected:
        _log.error('Invalid state format. Expected length %d, got %d', expected, arr.shape[0])
        return np.zeros(expected, dtype=np.float32)

    arr = np.where(np.isfinite(arr), arr, 0.0)
    return np.clip(arr, 0.0, 1.0).astype(np.float32)


def create_datacenter(config: EnvironmentConfig | None = None, debug: bool = False) -> DataCenterSimulator:
    """Create a simulator instance from ``config`` with optional debug output."""
    config = config or EnvironmentConfig()
    return DataCenterSimulator(
        rack_count=config.rack_count,
        seed=config.seed,
        debug=debug,
        critical_risk=config.critical_risk,
        danger_risk=config.danger_risk,
        base_price=config.base_energy_price,
        extreme_price=config.extreme_energy_price,
    )

