"""
Shared fixtures for the cooling controller tests.

 - seeded simulators and random generators
 - a fixed-output Q-function stub (no torch involved)
 - a failing Q-function stub for backend-error paths
 - a slow stub that counts overlapping backend calls
 - small configs so that torch-backed tests stay fast
"""

import logging
import threading
import time

import numpy as np
import pytest

from coolinglib.datacenter_sim import NUM_ACTIONS, DataCenterSimulator
from RL_cooling.config import CoolingConfig, EnvironmentConfig, ModelConfig, TrainingConfig
from RL_cooling.DQN.q_network import QFunctionApproximator


class FixedQFunction(QFunctionApproximator):
    """Returns the same Q-vector for every state and records train() calls."""

    def __init__(self, q_values, shape=(4, 4), loss=0.5):
        self.q_values = np.asarray(q_values, dtype=np.float64)
        self.shape = shape
        self.loss = loss
        self.params = {"w": np.zeros(shape, dtype=np.float32)}
        self.train_calls = []
        self.train_actions = []
        self.noise_settings = []
        self.resets = 0

    def predict(self, states):
        states = np.asarray(states)
        return np.tile(self.q_values, (len(states), 1))

    def train(self, states, targets, weights=None, actions=None):
        self.train_calls.append((np.array(states), np.array(targets), None if weights is None else np.array(weights)))
        self.train_actions.append(None if actions is None else np.array(actions))
        return self.loss

    def set_noise(self, enabled):
        self.noise_settings.append(enabled)

    def get_parameters(self):
        return {k: v.copy() for k, v in self.params.items()}

    def set_parameters(self, params):
        if {k: np.shape(v) for k, v in params.items()} != {k: v.shape for k, v in self.params.items()}:
            raise ValueError("shape mismatch")
        self.params = {k: np.array(v, copy=True) for k, v in params.items()}

    def clone_architecture(self):
        return FixedQFunction(self.q_values, self.shape, self.loss)

    def reset(self):
        self.resets += 1


class FailingQFunction(FixedQFunction):
    """Every predict/train call raises."""

    def predict(self, states):
        raise RuntimeError("backend unavailable")

    def train(self, states, targets, weights=None, actions=None):
        raise RuntimeError("backend unavailable")

    def clone_architecture(self):
        return FailingQFunction(self.q_values, self.shape, self.loss)


class SlowQFunction(FixedQFunction):
    """Sleeps inside every predict/train and records how many calls overlap.

    ``tracker`` is shared between the online and target copies.
    """

    def __init__(self, q_values, shape=(4, 4), loss=0.5, tracker=None, delay=0.01):
        super().__init__(q_values, shape, loss)
        self.tracker = tracker if tracker is not None else {"lock": threading.Lock(), "in_flight": 0,
                                                            "max_in_flight": 0, "calls": 0}
        self.delay = delay

    def _enter(self):
        t = self.tracker
        with t["lock"]:
            t["in_flight"] += 1
            t["calls"] += 1
            t["max_in_flight"] = max(t["max_in_flight"], t["in_flight"])
        time.sleep(self.delay)
        with t["lock"]:
            t["in_flight"] -= 1

    def predict(self, states):
        self._enter()
        return super().predict(states)

    def train(self, states, targets, weights=None, actions=None):
        self._enter()
        return super().train(states, targets, weights, actions)

    def clone_architecture(self):
        return SlowQFunction(self.q_values, self.shape, self.loss, self.tracker, self.delay)


@pytest.fixture(autouse=True, scope="session")
def quiet_simulator_logs():
    logging.getLogger("coolinglib.datacenter_sim").setLevel(logging.ERROR)
    yield


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


@pytest.fixture
def simulator():
    return DataCenterSimulator(rack_count=10, seed=42)


@pytest.fixture
def q_stub_factory():
    def _make(q_values=None, shape=(4, 4), loss=0.5, failing=False):
        if q_values is None:
            q_values = np.arange(NUM_ACTIONS, dtype=np.float64)
        cls = FailingQFunction if failing else FixedQFunction
        return cls(q_values, shape, loss)
    return _make


@pytest.fixture
def slow_q_stub():
    return SlowQFunction(np.arange(NUM_ACTIONS, dtype=np.float64))


@pytest.fixture
def small_training_config():
    return TrainingConfig(batch_size=4, memory_capacity=64, target_update_freq=5,
                          save_model_freq=1_000, epsilon_start=0.0, epsilon_min=0.0,
                          exploration="epsilon_greedy")


@pytest.fixture
def small_config():
    return CoolingConfig(
        training=TrainingConfig(batch_size=4, memory_capacity=64, target_update_freq=5, save_model_freq=1_000),
        environment=EnvironmentConfig(rack_count=4, seed=7, action_interval=0.0, passive_tick_every=3),
        model=ModelConfig(hidden_units=16, device="cpu"),
    )
