"""
Configuration for the cooling agent, its simulator and the training loop.

Every tunable number lives in one of the dataclasses below. The reward
weights are configuration, not a contract: they can be overridden from a
JSON file without touching code.

    >>> cfg = load_config("cooling.json")
    >>> cfg.training.batch_size
    32
"""

import json
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any


@dataclass
class TrainingConfig:
    gamma: float = 0.95
    epsilon_start: float = 1.0
    epsilon_min: float = 0.01
    epsilon_decay: float = 0.995
    learning_rate: float = 1e-3
    batch_size: int = 32
    memory_capacity: int = 10_000
    target_update_freq: int = 200
    save_model_freq: int = 1_000
    validation_split: float = 0.2
    grad_clip_value: float = 1.0
    n_step_returns: int = 3
    # prioritized replay
    alpha: float = 0.6
    beta: float = 0.4
    beta_increment: float = 0.001
    priority_epsilon: float = 1e-6
    # "softmax" (temperature annealed) or "epsilon_greedy"
    exploration: str = "softmax"
    softmax_anneal_steps: int = 10_000
    min_softmax_temperature: float = 0.1

    def __post_init__(self) -> None:
        if not 0.0 <= self.gamma <= 1.0:
            raise ValueError(f"gamma must be in [0, 1], got {self.gamma}")
        if self.batch_size < 1 or self.memory_capacity < self.batch_size:
            raise ValueError("memory_capacity must hold at least one batch")
        if self.exploration not in ("softmax", "epsilon_greedy"):
            raise ValueError(f"unknown exploration mode {self.exploration!r}")
        if not 0.0 <= self.validation_split < 1.0:
            raise ValueError("validation_split must be in [0, 1)")


@dataclass
class EnvironmentConfig:
    rack_count: int = 10
    action_interval: float = 1.0   # seconds between control ticks
    passive_tick_every: int = 60   # control ticks per passive sensor update
    critical_risk: float = 0.9
    danger_risk: float = 0.7
    terminal_risk: float = 0.8
    base_energy_price: float = 0.08
    extreme_energy_price: float = 0.20
    max_models_to_keep: int = 5
    seed: int | None = None

    def __post_init__(self) -> None:
        if self.rack_count < 1:
            raise ValueError("rack_count must be at least 1")
        if self.passive_tick_every < 1:
            raise ValueError("passive_tick_every must be at least 1")


@dataclass
class ModelConfig:
    hidden_units: int = 256
    activation: str = "relu"
    noise_scale: float = 0.1
    device: str | None = None


@dataclass
class RewardConfig:
    """Base weight per reward term plus the contextual multipliers."""
    energy_cost: float = 1.0
    temperature_tracking: float = 1.5
    rack_safety: float = 2.0
    temperature_uniformity: float = 0.8
    efficiency: float = 0.7
    fan_wear: float = 0.5
    storage_usage: float = 0.7
    workload_balance: float = 0.5
    risk_escalation: float = 3.5
    action_penalty: float = 1.0

    # normalized rack temperature above which the multipliers kick in
    rack_safety_boost_threshold: float = 0.7
    rack_safety_multiplier: float = 3.0
    tracking_boost_threshold: float = 0.67
    tracking_multiplier: float = 2.0

    safe_rack_ceiling: float = 0.55
    risk_escalation_threshold: float = 0.6
    stats_log_every: int = 100


@dataclass
class CoolingConfig:
    training: TrainingConfig = field(default_factory=TrainingConfig)
    environment: EnvironmentConfig = field(default_factory=EnvironmentConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    reward: RewardConfig = field(default_factory=RewardConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CoolingConfig":
        sections = {f.name: f.type for f in fields(cls)}
        unknown = set(data) - set(sections)
        if unknown:
            raise ValueError(f"unknown config sections: {sorted(unknown)}")
        kwargs = {}
        for name, section_cls in (("training", TrainingConfig),
                                  ("environment", EnvironmentConfig),
                                  ("model", ModelConfig),
                                  ("reward", RewardConfig)):
            kwargs[name] = section_cls(**data.get(name, {}))
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def load_config(path: str | Path) -> CoolingConfig:
    """Read a JSON config file; missing keys keep their defaults."""
    with open(path, encoding="utf-8") as fh:
        return CoolingConfig.from_dict(json.load(fh))
