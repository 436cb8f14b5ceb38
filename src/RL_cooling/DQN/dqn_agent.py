"""
DQN Agent: The Cooling Controller
=================================

## Overview

This module implements the agent that learns to run the cooling plant of a
server hall. The agent:
1. Observes the hall (power draw, temperatures, fans, thermal storage)
2. Decides what action to take (cool more/less, boost fans, use storage)
3. Learns from the results to make better decisions

## Key Concepts Implemented:

### 1. Double DQN with Target Network

Standard DQN overestimates Q-values because it uses the same network to both
SELECT and EVALUATE the next action. Double DQN decouples them:
- Online network: selects which next action is best
- Target network: evaluates how good that action actually is

    target = r + gamma^k * Q_target(s', argmax_a Q_online(s', a))

The target network is a frozen copy, hard-synced from the online network
every ``target_update_freq`` training steps.

### 2. Prioritized Experience Replay

Transitions are sampled by TD-error priority and the gradient is corrected
with importance-sampling weights (see replay_buffer.py).

### 3. Exploration

Two mechanisms work together:
- A noisy hidden layer perturbs the Q-values on every forward pass.
- With probability epsilon a random *valid* action is taken; otherwise the
  agent samples from a softmax over the Q-values whose temperature anneals
  with the step count (or takes the argmax in "epsilon_greedy" mode).

Invalid actions (discharging an empty store, boosting a fan at 100%) are
never considered, whether exploring or exploiting.

### 4. One Model Lock

``act`` and ``train_step`` are coroutines. Both touch the network weights,
so every backend call (predict, train, parameter copy) happens while holding
a single ``asyncio.Lock`` owned by the agent. ``predict`` can therefore
never read weights in the middle of an optimizer step.

### 5. Failure Handling

A backend call that raises does not kill the control loop. Action selection
falls back to MAINTAIN, the training step is abandoned, and the backend is
reset before the next call.

## Control Loop (conceptual):

    while running:
        state = env.get_normalized_state()
        action = await agent.act(state, env.thermal_storage)
        applied = env.execute_action(action)
        next_state = env.get_normalized_state()
        reward = rewards.compute(state, next_state, applied, ctx).total
        agent.remember(state, applied, reward, next_state, done)
        loss = await agent.train_step()
"""

import asyncio
import json
import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import numpy as np
import torch

from coolinglib.datacenter_sim import NUM_ACTIONS, Action, StateIndex, ThermalStorage, valid_actions
from RL_cooling.config import ModelConfig, TrainingConfig
from RL_cooling.DQN.normalizer import StateNormalizer
from RL_cooling.DQN.q_network import QFunctionApproximator, TorchQFunction
from RL_cooling.DQN.replay_buffer import Experience, PrioritizedReplayBuffer
from RL_cooling.environment import sanitize_state

_log = logging.getLogger(__name__)


class BackendError(RuntimeError):
    """An approximator call (predict/train/parameter copy) failed."""


class CheckpointError(OSError):
    """A checkpoint could not be written or read."""


def double_dqn_targets(
    rewards: np.ndarray,
    dones: np.ndarray,
    online_next_q: np.ndarray,
    target_next_q: np.ndarray,
    discount: float
) -> np.ndarray:
    """
    Double DQN bootstrap targets.

    The online network picks the next action, the target network scores it.
    Terminal transitions get the bare reward.

    Args:
        rewards: shape (batch,)
        dones: shape (batch,), 1.0 for terminal transitions
        online_next_q: online network Q-values for next states, (batch, actions)
        target_next_q: target network Q-values for next states, (batch, actions)
        discount: gamma^k
    """
    best_next = np.argmax(online_next_q, axis=1)
    next_values = target_next_q[np.arange(len(best_next)), best_next]
    dones = np.asarray(dones, dtype=np.float64)
    return np.asarray(rewards, dtype=np.float64) + discount * next_values * (1.0 - dones)


class DQNAgent:
    """
    Double DQN agent with prioritized replay, a noisy network and a model lock.

    Key Components:
        online: Approximator that learns Q-values (trained every step)
        target: Independent copy of online (hard-synced periodically)
        replay_buffer: Prioritized memory of past transitions
        normalizer: Running statistics used to standardize network inputs

    Example Usage:
        >>> agent = DQNAgent(rack_count=10)
        >>> action = await agent.act(env.get_normalized_state(), env.thermal_storage)
    """

    def __init__(
        self,
        rack_count: int = 10,
        config: TrainingConfig | None = None,
        model_config: ModelConfig | None = None,
        online: QFunctionApproximator | None = None,
        target: QFunctionApproximator | None = None,
        checkpoint_root: str | Path | None = None,
        max_checkpoints: int = 5,
        seed: int | None = None
    ):
        """
        Args:
            rack_count: Number of racks; fixes the state vector length
            config: Training hyperparameters (gamma, epsilon schedule, batch size, ...)
            model_config: Network shape for the default torch backend
            online / target: Custom approximators (both or neither)
            checkpoint_root: Directory for periodic checkpoints (None disables them)
            max_checkpoints: Number of checkpoint directories to keep
            seed: Seed for exploration and replay sampling
        """
        self.config = config or TrainingConfig()
        self.model_config = model_config or ModelConfig()
        self.rack_count = rack_count
        self.state_size = StateIndex.size(rack_count)
        self.action_size = NUM_ACTIONS

        # Hyperparameters
        self.gamma = self.config.gamma
        self.discount = self.config.gamma ** self.config.n_step_returns
        self.batch_size = self.config.batch_size
        self.target_update_freq = self.config.target_update_freq
        self.save_model_freq = self.config.save_model_freq

        # Exploration
        self.epsilon = self.config.epsilon_start
        self.epsilon_min = self.config.epsilon_min
        self.epsilon_decay = self.config.epsilon_decay

        self.rng = np.random.default_rng(seed)

        # ==== NETWORKS ====
        if (online is None) != (target is None):
            raise ValueError("pass both online and target approximators, or neither")
        if online is None:
            online = TorchQFunction(
                self.state_size,
                self.action_size,
                hidden_size=self.model_config.hidden_units,
                noise_scale=self.model_config.noise_scale,
                activation=self.model_config.activation,
                learning_rate=self.config.learning_rate,
                grad_clip_value=self.config.grad_clip_value,
                validation_split=self.config.validation_split,
                device=self.model_config.device,
            )
            target = online.clone_architecture()
        self.online: QFunctionApproximator = online
        self.target: QFunctionApproximator = target

        # ==== MEMORY ====
        self.normalizer = StateNormalizer(self.state_size)
        self.replay_buffer = PrioritizedReplayBuffer(
            capacity=self.config.memory_capacity,
            alpha=self.config.alpha,
            beta=self.config.beta,
            beta_increment=self.config.beta_increment,
            epsilon=self.config.priority_epsilon,
            rng=self.rng,
        )

        # ==== BOOKKEEPING ====
        self.steps_done = 0
        self.last_loss: float | None = None
        self.best_validation_loss = float("inf")
        self.is_training = False
        self._needs_reset = False
        self._model_lock = asyncio.Lock()

        self.checkpoint_root = Path(checkpoint_root) if checkpoint_root is not None else None
        self.max_checkpoints = max_checkpoints
        self.checkpoint_metadata: dict[str, Any] = {}

        self._sync_target()

    # ------------------------------------------------------------------
    # Backend access
    # ------------------------------------------------------------------

    async def _call(self, fn, *args):
        """Run one approximator call off the event loop; wraps failures in BackendError."""
        try:
            return await asyncio.to_thread(fn, *args)
        except Exception as e:  # pylint: disable=broad-except
            raise BackendError(f"{getattr(fn, '__name__', fn)} failed: {e}") from e

    async def reset_backend(self) -> None:
        async with self._model_lock:
            for approximator in (self.online, self.target):
                try:
                    approximator.reset()
                except Exception:  # pylint: disable=broad-except
                    _log.error("backend reset failed for %r", approximator, exc_info=True)
            self._needs_reset = False

    def _sync_target(self) -> None:
        """Hard copy online -> target, rebuilding the target on shape mismatch. Caller holds the lock."""
        online_shapes = self.online.parameter_shapes()
        if online_shapes != self.target.parameter_shapes():
            _log.error("Model architecture mismatch between online and target network; rebuilding target")
            self.target = self.online.clone_architecture()
        try:
            self.target.set_parameters(self.online.get_parameters())
        except ValueError:
            _log.error("Target update failed, rebuilding target network", exc_info=True)
            self.target = self.online.clone_architecture()
            self.target.set_parameters(self.online.get_parameters())

    async def update_target_network(self) -> None:
        """Copy online weights into the target network under the model lock."""
        async with self._model_lock:
            self._sync_target()

    # ------------------------------------------------------------------
    # Acting
    # ------------------------------------------------------------------

    def sanitize(self, state) -> np.ndarray:
        return sanitize_state(state, self.rack_count)

    def softmax_temperature(self) -> float:
        cfg = self.config
        return max(cfg.min_softmax_temperature, 1.0 - self.steps_done / cfg.softmax_anneal_steps)

    def _softmax_choice(self, q_values: np.ndarray, candidates: list[Action]) -> Action:
        scaled = q_values[candidates] / self.softmax_temperature()
        scaled = scaled - scaled.max()
        probs = np.exp(scaled)
        probs /= probs.sum()
        return candidates[int(self.rng.choice(len(candidates), p=probs))]

    async def act(self, state, storage: ThermalStorage, training: bool = True) -> Action:
        """
        Select an action for ``state`` (the simulator's normalized state).

        Returns:
            A valid Action; MAINTAIN if the backend fails.
        """
        if self._needs_reset:
            await self.reset_backend()

        clean_state = self.sanitize(state)
        candidates = valid_actions(clean_state, storage)
        if not candidates:
            return Action.MAINTAIN

        if training and self.rng.random() < self.epsilon:
            return candidates[int(self.rng.integers(len(candidates)))]

        net_input = self.normalizer.normalize(clean_state)[np.newaxis, :]
        try:
            async with self._model_lock:
                # evaluation reads the mean weights
                self.online.set_noise(training)
                q_values = await self._call(self.online.predict, net_input)
        except BackendError:
            _log.error("Action selection failed", exc_info=True)
            self._needs_reset = True
            return Action.MAINTAIN

        q_values = np.asarray(q_values, dtype=np.float64)[0]
        if training and self.config.exploration == "softmax":
            return self._softmax_choice(q_values, candidates)
        best = max(candidates, key=lambda a: q_values[a])
        return Action(best)

    # ------------------------------------------------------------------
    # Learning
    # ------------------------------------------------------------------

    def remember(self, state, action: int, reward: float, next_state, done: bool) -> None:
        """
        Sanitize, fold into the normalizer, and store one transition.

        The normalizer sees both states before anything is trained on them.
        """
        clean_state = self.sanitize(state)
        clean_next = self.sanitize(next_state)
        self.normalizer.update(clean_state)
        self.normalizer.update(clean_next)
        self.replay_buffer.add(Experience.create(clean_state, int(action), reward, clean_next, done))

    def decay_epsilon(self) -> None:
        self.epsilon = max(self.epsilon_min, self.epsilon * self.epsilon_decay)

    async def train_step(self) -> float | None:
        """
        Sample a prioritized batch and take one gradient step.

        Returns:
            Training loss, or None when training was skipped (not enough
            data, already training, or a backend failure).
        """
        if self.is_training or len(self.replay_buffer) < self.batch_size:
            return None
        if self._needs_reset:
            await self.reset_backend()

        self.is_training = True
        try:
            batch = self.replay_buffer.sample(self.batch_size)
            if batch is None:
                return None

            states = self.normalizer.normalize(batch.states)
            next_states = self.normalizer.normalize(batch.next_states)
            actions = batch.actions
            rows = np.arange(len(batch))

            try:
                async with self._model_lock:
                    self.online.set_noise(True)
                    online_next = np.asarray(await self._call(self.online.predict, next_states))
                    target_next = np.asarray(await self._call(self.target.predict, next_states))
                    current = np.asarray(await self._call(self.online.predict, states), dtype=np.float64)

                    targets = double_dqn_targets(batch.rewards, batch.dones, online_next, target_next,
                                                 self.discount)
                    td_errors = targets - current[rows, actions]

                    # only the taken action moves; the rest stay at their prediction
                    target_q = current.copy()
                    target_q[rows, actions] = targets
                    loss = await self._call(self.online.train, states, target_q.astype(np.float32),
                                            batch.weights, actions)
            except BackendError:
                _log.error("Training error", exc_info=True)
                self._needs_reset = True
                return None

            self.replay_buffer.update_priorities(batch.indices, np.abs(td_errors))
            self.last_loss = float(loss)
            val_loss = getattr(self.online, "last_validation_loss", None)
            if val_loss is not None:
                self.best_validation_loss = min(self.best_validation_loss, float(val_loss))

            self.decay_epsilon()
            self.steps_done += 1
            if self.steps_done % self.target_update_freq == 0:
                await self.update_target_network()
            if self.checkpoint_root is not None and self.steps_done % self.save_model_freq == 0:
                try:
                    self.save_checkpoint()
                except CheckpointError:
                    _log.error("Failed to save model", exc_info=True)
            return self.last_loss
        finally:
            self.is_training = False

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def hyperparameters(self) -> dict[str, Any]:
        return {
            "gamma": self.gamma,
            "n_step_returns": self.config.n_step_returns,
            "learning_rate": self.config.learning_rate,
            "batch_size": self.batch_size,
            "memory_capacity": self.config.memory_capacity,
            "target_update_freq": self.target_update_freq,
            "epsilon_min": self.epsilon_min,
            "epsilon_decay": self.epsilon_decay,
        }

    def metadata(self) -> dict[str, Any]:
        best = self.best_validation_loss
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "training_steps": self.steps_done,
            "epsilon": self.epsilon,
            "last_loss": self.last_loss,
            "best_validation_loss": best if np.isfinite(best) else None,
            "hyperparameters": self.hyperparameters(),
            "model_config": {
                "hidden_units": self.model_config.hidden_units,
                "activation": self.model_config.activation,
                "noise_scale": self.model_config.noise_scale,
            },
            **self.checkpoint_metadata,
        }

    def save_checkpoint(self, directory: str | Path | None = None) -> Path:
        """
        Save parameters, normalizer statistics and run metadata.

        Args:
            directory: Target directory. Defaults to a new timestamped
                       directory under ``checkpoint_root``.

        Returns:
            The directory that was written.
        """
        if directory is None:
            if self.checkpoint_root is None:
                raise CheckpointError("no checkpoint directory given and no checkpoint_root configured")
            stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%f")
            directory = self.checkpoint_root / f"model-{stamp}"
        directory = Path(directory)

        try:
            directory.mkdir(parents=True, exist_ok=True)
            payload: dict[str, Any] = {
                "online_parameters": {k: torch.as_tensor(v) for k, v in self.online.get_parameters().items()},
                "target_parameters": {k: torch.as_tensor(v) for k, v in self.target.get_parameters().items()},
            }
            if isinstance(self.online, TorchQFunction):
                payload["optimizer_state_dict"] = self.online.optimizer.state_dict()
            torch.save(payload, directory / "model.pt")
            self.normalizer.save(directory / "normalizer.json")
            with open(directory / "metadata.json", "w", encoding="utf-8") as fh:
                json.dump(self.metadata(), fh, indent=2, default=str)
        except (OSError, RuntimeError) as e:
            raise CheckpointError(f"Failed to save checkpoint to {directory}: {e}") from e

        print(f"Model saved to {directory}")
        if directory.parent == self.checkpoint_root:
            self._prune_checkpoints()
        return directory

    def _prune_checkpoints(self) -> None:
        if self.checkpoint_root is None or self.max_checkpoints < 1:
            return
        checkpoints = sorted(p for p in self.checkpoint_root.glob("model-*") if p.is_dir())
        for old in checkpoints[:-self.max_checkpoints]:
            shutil.rmtree(old, ignore_errors=True)
            _log.debug("removed old checkpoint %s", old)

    @staticmethod
    def latest_checkpoint(root: str | Path) -> Path | None:
        checkpoints = sorted(p for p in Path(root).glob("model-*") if p.is_dir())
        return checkpoints[-1] if checkpoints else None

    def load_checkpoint(self, directory: str | Path) -> dict[str, Any]:
        """
        Restore parameters, normalizer statistics and counters.

        Returns:
            The metadata record stored with the checkpoint.
        """
        directory = Path(directory)
        try:
            payload = torch.load(directory / "model.pt", map_location="cpu")
            with open(directory / "metadata.json", encoding="utf-8") as fh:
                metadata = json.load(fh)
            normalizer = StateNormalizer.load(directory / "normalizer.json")
        except (OSError, RuntimeError, ValueError, KeyError) as e:
            raise CheckpointError(f"Failed to load checkpoint from {directory}: {e}") from e

        if normalizer.state_size != self.state_size:
            raise CheckpointError(
                f"checkpoint state size {normalizer.state_size} does not match agent state size {self.state_size}")

        online_params = {k: v.numpy() for k, v in payload["online_parameters"].items()}
        try:
            self.online.set_parameters(online_params)
        except ValueError as e:
            raise CheckpointError(f"checkpoint parameters do not fit the online network: {e}") from e
        if isinstance(self.online, TorchQFunction) and "optimizer_state_dict" in payload:
            self.online.optimizer.load_state_dict(payload["optimizer_state_dict"])

        target_params = {k: v.numpy() for k, v in payload["target_parameters"].items()}
        try:
            self.target.set_parameters(target_params)
        except ValueError:
            _log.error("stored target parameters do not fit; re-syncing target from online network")
            self._sync_target()

        self.normalizer = normalizer
        self.steps_done = int(metadata.get("training_steps", 0))
        self.epsilon = float(metadata.get("epsilon", self.epsilon))
        self.last_loss = metadata.get("last_loss")
        best = metadata.get("best_validation_loss")
        self.best_validation_loss = float(best) if best is not None else float("inf")
        print(f"Model loaded from {directory}")
        return metadata
