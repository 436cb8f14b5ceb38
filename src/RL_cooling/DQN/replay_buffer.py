"""
Prioritized Experience Replay Buffer
====================================

## Why Do We Need a Replay Buffer?

Consecutive control ticks are highly correlated - if the hottest rack is at
27°C now it will be at ~27.1°C a second later. Training a neural network on
correlated data makes it overfit to recent experiences and forget older
ones. The replay buffer stores thousands of past transitions and samples
mini-batches from them, which breaks the correlation and lets rare but
important experiences (a near-overheat) be reused many times.

## Why Prioritized?

Uniform sampling wastes most of the batch on transitions the network already
predicts well. Prioritized replay samples transition ``i`` with probability

    P(i) = p_i^alpha / sum_k p_k^alpha

where ``p_i`` is the magnitude of its last TD-error. ``alpha`` controls how
strongly we prioritize (0 = uniform).

Biased sampling biases the gradient, so every sampled transition carries an
importance-sampling weight

    w_i = (N * P(i))^(-beta) / max_j w_j

The division by the batch maximum keeps every weight <= 1 so that extreme
priorities can never make the effective learning rate spike. ``beta`` is
annealed towards 1 on every ``sample`` call: early on the bias matters
little, late in training we want the unbiased gradient.

## What is a "Transition"?

    (state, action, reward, next_state, done)

Example:
    state = [energy=0.10, workload=0.50, ambient=0.67, ..., racks..., storage=0.30, 0.85]
    action = 3 (COOL_INCREMENT_LARGE)
    reward = -1.42
    next_state = [energy=0.14, workload=0.50, ambient=0.64, ...]
    done = False (failure risk stayed below the terminal threshold)

## Technical Implementation:

A fixed-size circular buffer. When full, ``add`` overwrites the oldest slot.
Priorities live in a numpy array parallel-indexed to the transitions.
"""

from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True)
class Experience:
    """One stored transition. State arrays are private read-only copies."""
    state: np.ndarray
    action: int
    reward: float
    next_state: np.ndarray
    done: bool

    @classmethod
    def create(cls, state, action: int, reward: float, next_state, done: bool) -> "Experience":
        s = np.array(state, dtype=np.float32, copy=True)
        ns = np.array(next_state, dtype=np.float32, copy=True)
        s.setflags(write=False)
        ns.setflags(write=False)
        return cls(s, int(action), float(reward), ns, bool(done))


@dataclass
class SampledBatch:
    experiences: list[Experience]
    indices: np.ndarray
    weights: np.ndarray

    def __len__(self) -> int:
        return len(self.experiences)

    @property
    def states(self) -> np.ndarray:
        return np.stack([e.state for e in self.experiences])

    @property
    def actions(self) -> np.ndarray:
        return np.array([e.action for e in self.experiences], dtype=np.int64)

    @property
    def rewards(self) -> np.ndarray:
        return np.array([e.reward for e in self.experiences], dtype=np.float32)

    @property
    def next_states(self) -> np.ndarray:
        return np.stack([e.next_state for e in self.experiences])

    @property
    def dones(self) -> np.ndarray:
        return np.array([e.done for e in self.experiences], dtype=np.float32)


class PrioritizedReplayBuffer:
    """
    Fixed-capacity circular buffer with priority-weighted sampling.

    Example Usage:
        >>> buffer = PrioritizedReplayBuffer(capacity=10_000)
        >>> buffer.push(state, action, reward, next_state, done)
        >>> batch = buffer.sample(batch_size=32)
        >>> if batch is not None:
        ...     buffer.update_priorities(batch.indices, td_errors)
    """

    def __init__(
        self,
        capacity: int = 10_000,
        alpha: float = 0.6,
        beta: float = 0.4,
        beta_increment: float = 0.001,
        epsilon: float = 1e-6,
        rng: np.random.Generator | None = None
    ):
        """
        Args:
            capacity: Maximum number of transitions to store.
            alpha: Prioritization exponent (0 = uniform sampling).
            beta: Initial importance-sampling exponent, annealed to 1.
            beta_increment: Added to beta on every sample() call.
            epsilon: Floor for priorities so nothing becomes unsampleable.
            rng: Random generator (seed it for reproducible sampling).
        """
        if capacity < 1:
            raise ValueError("capacity must be positive")
        if epsilon <= 0:
            raise ValueError("epsilon must be strictly positive")
        self.capacity = capacity
        self.alpha = alpha
        self.beta = beta
        self.beta_increment = beta_increment
        self.epsilon = epsilon
        self.rng = rng if rng is not None else np.random.default_rng()

        self.memory: list[Experience | None] = [None] * capacity
        self.priorities = np.zeros(capacity, dtype=np.float64)
        self.position = 0
        self.size = 0
        self.max_priority = 1.0
        self._priority_sum = 0.0

    @property
    def priority_sum(self) -> float:
        return self._priority_sum

    def add(self, experience: Experience, priority: float | None = None) -> int:
        """
        Store a transition, overwriting the oldest one when full.

        New transitions default to the current maximum priority so that
        they are sampled at least as often as anything already stored.

        Returns:
            The slot index the transition was written to.
        """
        if priority is None:
            priority = self.max_priority
        priority = max(abs(float(priority)), self.epsilon)

        idx = self.position
        self._priority_sum += priority - self.priorities[idx]
        self.memory[idx] = experience
        self.priorities[idx] = priority
        self.position = (self.position + 1) % self.capacity
        self.size = min(self.size + 1, self.capacity)
        self.max_priority = max(self.max_priority, priority)
        return idx

    def push(self, state, action: int, reward: float, next_state, done: bool) -> int:
        """Copy the given arrays into a new Experience and store it."""
        return self.add(Experience.create(state, action, reward, next_state, done))

    def probabilities(self) -> np.ndarray:
        scaled = self.priorities[:self.size] ** self.alpha
        return scaled / scaled.sum()

    def sample(self, batch_size: int) -> SampledBatch | None:
        """
        Draw ``batch_size`` transitions (with replacement) by priority.

        Returns:
            A SampledBatch, or None when the buffer is empty.
        """
        if self.size == 0:
            return None

        self.beta = min(1.0, self.beta + self.beta_increment)

        probs = self.probabilities()
        # inverse-CDF sampling
        cdf = np.cumsum(probs)
        draws = self.rng.random(batch_size) * cdf[-1]
        indices = np.searchsorted(cdf, draws, side="right")
        indices = np.minimum(indices, self.size - 1)

        weights = (self.size * probs[indices]) ** (-self.beta)
        weights = weights / weights.max()

        experiences = [self.memory[i] for i in indices]
        return SampledBatch(experiences=experiences, indices=indices,
                            weights=weights.astype(np.float32))

    def update_priorities(self, indices, priorities) -> None:
        """Set new priorities (usually |TD-error|) for previously sampled slots."""
        for idx, priority in zip(np.asarray(indices, dtype=np.int64), np.asarray(priorities, dtype=np.float64)):
            if not 0 <= idx < self.size:
                raise IndexError(f"replay index {idx} out of range (size {self.size})")
            if not np.isfinite(priority):
                priority = self.max_priority
            priority = max(abs(float(priority)), self.epsilon)
            self._priority_sum += priority - self.priorities[idx]
            self.priorities[idx] = priority
            self.max_priority = max(self.max_priority, priority)

    def __len__(self) -> int:
        """Number of transitions currently stored (never exceeds capacity)."""
        return self.size
