"""
Reward Function for the Cooling Agent
=====================================

The reward is a weighted sum of a fixed set of terms. Each term is a pure
function of ``(old_state, new_state, action, context)`` and returns a
scalar (most terms are penalties, i.e. <= 0).

    reward = sum(weight(term, new_state) * term(old_state, new_state, action, context))

Weights are two-tier: a base weight from ``RewardConfig`` times a
contextual multiplier. The rack-safety weight, for example, triples once
the hottest rack crosses 70% of its normalized range, so the incentive to
cool sharpens exactly when the hall is in trouble.

## Terms

    ENERGY_COST             price-sensitive, super-linear in power draw
    TEMPERATURE_TRACKING    room temperature vs. operator set-point
    RACK_SAFETY             cubic in overshoot above the safe rack ceiling
    TEMPERATURE_UNIFORMITY  spread between hottest and coolest rack
    EFFICIENCY              distance of PUE from its sweet spot
    FAN_WEAR                cubic in fan speed
    STORAGE_USAGE           bonus/penalty for thermal storage use
    WORKLOAD_BALANCE        distance of workload from 50%
    RISK_ESCALATION         failure risk above a threshold, worse if rising
    ACTION_PENALTY          flat cost scaled by the action's magnitude
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

import numpy as np

from coolinglib.datacenter_sim import (ACTION_MAGNITUDE, AMBIENT_TEMP_RANGE, TARGET_TEMP_RANGE, Action,
                                       StateIndex)

from .config import RewardConfig

_log = logging.getLogger(__name__)

REFERENCE_PRICE = 0.20


class RewardTerm(Enum):
    ENERGY_COST = "energy_cost"
    TEMPERATURE_TRACKING = "temperature_tracking"
    RACK_SAFETY = "rack_safety"
    TEMPERATURE_UNIFORMITY = "temperature_uniformity"
    EFFICIENCY = "efficiency"
    FAN_WEAR = "fan_wear"
    STORAGE_USAGE = "storage_usage"
    WORKLOAD_BALANCE = "workload_balance"
    RISK_ESCALATION = "risk_escalation"
    ACTION_PENALTY = "action_penalty"


@dataclass(frozen=True)
class RewardContext:
    """Signals that are not part of the state vector."""
    rack_count: int
    energy_price: float = 0.08
    risk_before: float = 0.0
    risk_after: float = 0.0
    config: RewardConfig = field(default_factory=RewardConfig)

    @property
    def price_factor(self) -> float:
        return 1.0 + self.energy_price / REFERENCE_PRICE


def _denormalize(value: float, bounds: tuple[float, float]) -> float:
    low, high = bounds
    return low + value * (high - low)


def rack_temperatures(state: np.ndarray, rack_count: int) -> np.ndarray:
    return state[StateIndex.RACK_TEMPS:StateIndex.RACK_TEMPS + rack_count]


def energy_cost(old: np.ndarray, new: np.ndarray, action: Action, ctx: RewardContext) -> float:
    return -min(3.0, (float(new[StateIndex.ENERGY]) * ctx.price_factor) ** 1.5)


def temperature_tracking(old: np.ndarray, new: np.ndarray, action: Action, ctx: RewardContext) -> float:
    ambient = _denormalize(float(new[StateIndex.AMBIENT_TEMP]), AMBIENT_TEMP_RANGE)
    target = _denormalize(float(new[StateIndex.TARGET_TEMP]), TARGET_TEMP_RANGE)
    max_rack = float(rack_temperatures(new, ctx.rack_count).max())
    error = abs(ambient - target) / 10.0 * 0.7 + abs(max_rack - 0.5) * 0.3
    return -min(1.0, error * (1.0 + float(new[StateIndex.WORKLOAD])))


def rack_safety(old: np.ndarray, new: np.ndarray, action: Action, ctx: RewardContext) -> float:
    ceiling = ctx.config.safe_rack_ceiling
    overshoot = max(0.0, float(rack_temperatures(new, ctx.rack_count).max()) - ceiling)
    return -min(3.0, 3.0 * (overshoot / (1.0 - ceiling)) ** 3)


def temperature_uniformity(old: np.ndarray, new: np.ndarray, action: Action, ctx: RewardContext) -> float:
    racks = rack_temperatures(new, ctx.rack_count)
    return -min(1.0, float(racks.max() - racks.min()) * 3.0)


def efficiency(old: np.ndarray, new: np.ndarray, action: Action, ctx: RewardContext) -> float:
    # 0.25 on the normalized scale is a PUE of 1.5
    return -min(1.0, abs(float(new[StateIndex.PUE]) - 0.25))


def fan_wear(old: np.ndarray, new: np.ndarray, action: Action, ctx: RewardContext) -> float:
    return -min(1.5, float(new[StateIndex.FAN_SPEED]) ** 3)


def storage_usage(old: np.ndarray, new: np.ndarray, action: Action, ctx: RewardContext) -> float:
    level = float(new[StateIndex.storage_level(ctx.rack_count)])
    max_rack = float(rack_temperatures(new, ctx.rack_count).max())
    pf = ctx.price_factor

    value = 0.0
    if level > 0.8 and pf > 1.5:
        value = 0.2
    elif level < 0.2 and max_rack > 0.5:
        value = -0.2

    if action == Action.THERMAL_STORAGE_DISCHARGE and max_rack > 0.7:
        value += 0.5 * (1.0 - level)
    elif action == Action.THERMAL_STORAGE_CHARGE and pf < 1.2:
        value += 0.3 * level
    return value


def workload_balance(old: np.ndarray, new: np.ndarray, action: Action, ctx: RewardContext) -> float:
    return -min(1.0, abs(float(new[StateIndex.WORKLOAD]) - 0.5))


def risk_escalation(old: np.ndarray, new: np.ndarray, action: Action, ctx: RewardContext) -> float:
    threshold = ctx.config.risk_escalation_threshold
    excess = max(0.0, ctx.risk_after - threshold)
    if excess == 0.0:
        return 0.0
    rising = max(0.0, ctx.risk_after - ctx.risk_before)
    return -min(5.0, 3.0 * excess ** 2 + 2.0 * rising)


def action_penalty(old: np.ndarray, new: np.ndarray, action: Action, ctx: RewardContext) -> float:
    return -0.02 * ACTION_MAGNITUDE.get(action, 1.0)


TermFn = Callable[[np.ndarray, np.ndarray, Action, RewardContext], float]

REWARD_TERMS: dict[RewardTerm, TermFn] = {
    RewardTerm.ENERGY_COST: energy_cost,
    RewardTerm.TEMPERATURE_TRACKING: temperature_tracking,
    RewardTerm.RACK_SAFETY: rack_safety,
    RewardTerm.TEMPERATURE_UNIFORMITY: temperature_uniformity,
    RewardTerm.EFFICIENCY: efficiency,
    RewardTerm.FAN_WEAR: fan_wear,
    RewardTerm.STORAGE_USAGE: storage_usage,
    RewardTerm.WORKLOAD_BALANCE: workload_balance,
    RewardTerm.RISK_ESCALATION: risk_escalation,
    RewardTerm.ACTION_PENALTY: action_penalty,
}


def reward_weights(new: np.ndarray, ctx: RewardContext) -> dict[RewardTerm, float]:
    """Base weight times contextual multiplier, per term."""
    cfg = ctx.config
    weights = {term: float(getattr(cfg, term.value)) for term in RewardTerm}
    max_rack = float(rack_temperatures(new, ctx.rack_count).max())
    if max_rack > cfg.rack_safety_boost_threshold:
        weights[RewardTerm.RACK_SAFETY] *= cfg.rack_safety_multiplier
    if max_rack > cfg.tracking_boost_threshold:
        weights[RewardTerm.TEMPERATURE_TRACKING] *= cfg.tracking_multiplier
    return weights


@dataclass
class TermStats:
    sum: float = 0.0
    count: int = 0

    @property
    def mean(self) -> float:
        return self.sum / self.count if self.count else 0.0


@dataclass
class RewardBreakdown:
    total: float
    components: dict[RewardTerm, float]
    weights: dict[RewardTerm, float]


class RewardCalculator:
    """Combines the reward terms and keeps running per-term averages."""

    def __init__(self, config: RewardConfig | None = None, rack_count: int = 10) -> None:
        self.config = config or RewardConfig()
        self.rack_count = rack_count
        self.stats: dict[RewardTerm, TermStats] = {term: TermStats() for term in RewardTerm}
        self.calls = 0

    def context(self, energy_price: float, risk_before: float, risk_after: float) -> RewardContext:
        return RewardContext(rack_count=self.rack_count, energy_price=energy_price,
                             risk_before=risk_before, risk_after=risk_after, config=self.config)

    def compute(self, old_state: np.ndarray, new_state: np.ndarray, action: int,
                ctx: RewardContext) -> RewardBreakdown:
        action = Action(action)
        old = np.asarray(old_state, dtype=np.float64)
        new = np.asarray(new_state, dtype=np.float64)

        components = {term: float(fn(old, new, action, ctx)) for term, fn in REWARD_TERMS.items()}
        weights = reward_weights(new, ctx)
        total = 0.0
        for term, value in components.items():
            weighted = value * weights[term]
            self.stats[term].sum += weighted
            self.stats[term].count += 1
            total += weighted

        self.calls += 1
        if self.config.stats_log_every and self.calls % self.config.stats_log_every == 0:
            self.log_stats()
        return RewardBreakdown(total=total, components=components, weights=weights)

    def log_stats(self) -> None:
        _log.info('Reward component averages:')
        for term, stats in self.stats.items():
            if stats.count:
                _log.info('  %-22s: %.3f (n=%d)', term.value, stats.mean, stats.count)

    def stats_snapshot(self) -> dict[str, dict[str, float]]:
        return {term.value: {'sum': s.sum, 'count': s.count} for term, s in self.stats.items()}
