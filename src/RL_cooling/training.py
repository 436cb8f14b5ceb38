"""
Control loop tying the simulator, the reward function and the DQN agent together.

One tick of the loop walks through the phases

    IDLE -> ACTING -> OBSERVING -> (TRAINING | SKIP_TRAINING) -> IDLE

and a tick that raises is logged and skipped; the loop itself keeps going.
"""

import asyncio
import json
import logging
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path

import numpy as np

from coolinglib.datacenter_sim import Action, DataCenterSimulator

from .config import CoolingConfig
from .DQN.dqn_agent import CheckpointError, DQNAgent
from .environment import create_datacenter
from .rewards import RewardCalculator

_log = logging.getLogger(__name__)


class LoopPhase(Enum):
    IDLE = "idle"
    ACTING = "acting"
    OBSERVING = "observing"
    TRAINING = "training"
    SKIP_TRAINING = "skip_training"


@dataclass
class StepRecord:
    step: int
    action: str
    applied_action: str
    reward: float
    loss: float | None
    epsilon: float
    risk: float
    energy: float
    avg_rack_temp: float
    done: bool


class CoolingSimulation:
    """
    Owns one simulator, one agent and one reward calculator.

    Example Usage:
        >>> sim = CoolingSimulation(CoolingConfig())
        >>> asyncio.run(sim.run(max_steps=1_000, interval=0))
    """

    def __init__(
        self,
        config: CoolingConfig | None = None,
        env: DataCenterSimulator | None = None,
        agent: DQNAgent | None = None,
        training: bool = True,
        checkpoint_root: str | Path | None = None,
        debug: bool = False
    ):
        self.config = config or CoolingConfig()
        env_cfg = self.config.environment
        self.env = env or create_datacenter(env_cfg, debug=debug)
        self.agent = agent or DQNAgent(
            rack_count=self.env.rack_count,
            config=self.config.training,
            model_config=self.config.model,
            checkpoint_root=checkpoint_root,
            max_checkpoints=env_cfg.max_models_to_keep,
            seed=env_cfg.seed,
        )
        self.rewards = RewardCalculator(self.config.reward, rack_count=self.env.rack_count)
        self.training = training

        self.phase = LoopPhase.IDLE
        self.running = False
        self.step_count = 0
        self.failed_steps = 0
        self.training_log: list[StepRecord] = []
        self._resume = asyncio.Event()

        self.agent.checkpoint_metadata["environment_config"] = asdict(env_cfg)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        self.running = True
        self._resume.set()

    def pause(self) -> None:
        """Stop issuing new ticks; a tick already in flight completes."""
        self._resume.clear()

    def resume(self) -> None:
        self._resume.set()

    def stop(self) -> None:
        self.running = False
        self._resume.set()

    @property
    def paused(self) -> bool:
        return not self._resume.is_set()

    # ------------------------------------------------------------------
    # One tick
    # ------------------------------------------------------------------

    async def step(self) -> StepRecord:
        env = self.env
        terminal_risk = self.config.environment.terminal_risk

        if self.step_count and self.step_count % self.config.environment.passive_tick_every == 0:
            env.tick()

        state = env.get_normalized_state()
        risk_before = env.failure_risk

        self.phase = LoopPhase.ACTING
        action = await self.agent.act(state, env.thermal_storage, training=self.training)

        self.phase = LoopPhase.OBSERVING
        applied = env.execute_action(action)
        next_state = env.get_normalized_state()
        risk_after = env.failure_risk
        done = risk_after > terminal_risk

        ctx = self.rewards.context(env.energy_price, risk_before, risk_after)
        reward = self.rewards.compute(state, next_state, applied, ctx).total

        loss = None
        if self.training:
            self.agent.remember(state, applied, reward, next_state, done)
            self.agent.checkpoint_metadata["reward_stats"] = self.rewards.stats_snapshot()

        if self.training and len(self.agent.replay_buffer) >= self.agent.batch_size:
            self.phase = LoopPhase.TRAINING
            loss = await self.agent.train_step()
        else:
            self.phase = LoopPhase.SKIP_TRAINING

        self.step_count += 1
        record = StepRecord(
            step=self.step_count,
            action=Action(action).name,
            applied_action=Action(applied).name,
            reward=float(reward),
            loss=loss,
            epsilon=float(self.agent.epsilon),
            risk=float(risk_after),
            energy=float(env.energy.value),
            avg_rack_temp=float(env.average_rack_temperature()),
            done=done,
        )
        self.training_log.append(record)
        self.phase = LoopPhase.IDLE
        return record

    async def safe_step(self) -> StepRecord | None:
        """Run one tick; a failing tick is logged and yields None."""
        try:
            return await self.step()
        except Exception:  # pylint: disable=broad-except
            self.failed_steps += 1
            self.phase = LoopPhase.IDLE
            _log.exception("Simulation step failed")
            return None

    async def run(self, max_steps: int | None = None, interval: float | None = None) -> list[StepRecord]:
        """
        Tick until stopped or ``max_steps`` ticks were attempted.

        Args:
            max_steps: Number of ticks (None runs until ``stop()``)
            interval: Seconds between ticks (defaults to the configured action interval)
        """
        if interval is None:
            interval = self.config.environment.action_interval
        if not self.running:
            self.start()
        attempted = 0
        records = []
        while self.running and (max_steps is None or attempted < max_steps):
            await self._resume.wait()
            if not self.running:
                break
            record = await self.safe_step()
            attempted += 1
            if record is not None:
                records.append(record)
            if interval:
                await asyncio.sleep(interval)
        self.running = False
        return records

    def save_training_log(self, filepath: str | Path) -> None:
        path = Path(filepath)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as fh:
            json.dump([asdict(r) for r in self.training_log], fh, indent=2)
        _log.info("Training log saved to %s", path)


def train(
    config: CoolingConfig | None = None,
    num_steps: int = 10_000,
    render_interval: int = 100,
    checkpoint_root: str | Path = "saved_models",
    log_path: str | Path | None = "training_log.json",
    resume_from: str | Path | None = None,
    verbose: bool = False
) -> list[float]:
    """
    Train the DQN agent on the data-center simulator.

    The agent controls chillers, fans and the thermal store of a simulated
    server hall. The action space has 9 discrete actions (small/large
    cooling steps, fan boosts, maintain, storage charge/discharge).

    Args:
        config: Full configuration (defaults for anything not given)
        num_steps: Number of control ticks to simulate
        render_interval: Ticks between progress prints
        checkpoint_root: Directory for rotated checkpoints
        log_path: Where the per-step training log is written (None to skip)
        resume_from: Checkpoint directory to load before training
        verbose: Whether to show simulator debug output

    Returns:
        List of per-tick rewards (for plotting learning curves)
    """
    if not verbose:
        logging.getLogger('coolinglib.datacenter_sim').setLevel(logging.WARNING)

    config = config or CoolingConfig()
    simulation = CoolingSimulation(config, checkpoint_root=checkpoint_root, debug=verbose)
    agent = simulation.agent
    if resume_from is not None:
        agent.load_checkpoint(resume_from)

    rewards: list[float] = []
    losses: list[float] = []
    best_reward = float('-inf')

    print(f"Training DQN Agent on {getattr(agent.online, 'device', 'custom backend')}")
    print(f"Racks: {simulation.env.rack_count}, Steps: {num_steps}")
    print("-" * 60)

    async def _loop() -> None:
        nonlocal best_reward
        simulation.start()
        for step in range(num_steps):
            record = await simulation.safe_step()
            if record is None:
                continue
            rewards.append(record.reward)
            if record.loss is not None:
                losses.append(record.loss)
            best_reward = max(best_reward, record.reward)

            if step % render_interval == 0:
                recent = rewards[-render_interval:]
                avg_loss = float(np.mean(losses[-render_interval:])) if losses else 0.0
                print(
                    f"Step {step:6d} | "
                    f"Reward: {record.reward:8.2f} | "
                    f"Avg: {float(np.mean(recent)):8.2f} | "
                    f"Epsilon: {agent.epsilon:.3f} | "
                    f"Risk: {record.risk:.3f} | "
                    f"Avg Loss: {avg_loss:.4f}"
                )
        simulation.stop()

    try:
        asyncio.run(_loop())
    finally:
        # also reached on Ctrl-C, so an interrupted run keeps its progress
        try:
            agent.save_checkpoint()
        except CheckpointError:
            _log.error("Final checkpoint save failed", exc_info=True)
        if log_path is not None:
            simulation.save_training_log(log_path)
        print("-" * 60)
        print(f"Training complete! Steps: {simulation.step_count}, Best reward: {best_reward:.2f}")

    return rewards
