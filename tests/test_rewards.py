import logging

import numpy as np
import pytest

from coolinglib.datacenter_sim import AMBIENT_TEMP_RANGE, TARGET_TEMP_RANGE, Action, DataCenterSimulator, StateIndex
from RL_cooling.config import RewardConfig
from RL_cooling.rewards import (
    RewardCalculator,
    RewardContext,
    RewardTerm,
    action_penalty,
    energy_cost,
    rack_safety,
    reward_weights,
    risk_escalation,
    storage_usage,
    temperature_tracking,
)

RACKS = 4


def _state(rack=0.4, energy=0.1, level=0.3):
    state = np.full(StateIndex.size(RACKS), 0.3)
    state[StateIndex.ENERGY] = energy
    state[StateIndex.RACK_TEMPS:StateIndex.RACK_TEMPS + RACKS] = rack
    state[StateIndex.storage_level(RACKS)] = level
    return state


def _ctx(**kwargs):
    return RewardContext(rack_count=RACKS, **kwargs)


def test_rack_safety_zero_below_ceiling_and_cubic_above():
    ctx = _ctx()
    assert rack_safety(None, _state(rack=0.5), Action.MAINTAIN, ctx) == 0.0
    values = [rack_safety(None, _state(rack=r), Action.MAINTAIN, ctx) for r in (0.6, 0.7, 0.8, 1.0)]
    assert all(b < a for a, b in zip(values, values[1:]))
    assert values[-1] == pytest.approx(-3.0)


def test_rack_safety_weight_triples_when_hot():
    cfg = RewardConfig()
    cool = reward_weights(_state(rack=0.5), _ctx())
    hot = reward_weights(_state(rack=0.75), _ctx())
    assert cool[RewardTerm.RACK_SAFETY] == cfg.rack_safety
    assert hot[RewardTerm.RACK_SAFETY] == pytest.approx(cfg.rack_safety * 3.0)
    assert hot[RewardTerm.TEMPERATURE_TRACKING] == pytest.approx(cfg.temperature_tracking * 2.0)
    assert hot[RewardTerm.ENERGY_COST] == cfg.energy_cost


def test_energy_cost_is_price_sensitive():
    cheap = energy_cost(None, _state(energy=0.4), Action.MAINTAIN, _ctx(energy_price=0.08))
    dear = energy_cost(None, _state(energy=0.4), Action.MAINTAIN, _ctx(energy_price=0.20))
    assert dear < cheap < 0.0
    assert energy_cost(None, _state(energy=1.0), Action.MAINTAIN, _ctx(energy_price=10.0)) == -3.0


def test_risk_escalation_punishes_rising_risk():
    assert risk_escalation(None, None, Action.MAINTAIN, _ctx(risk_before=0.2, risk_after=0.5)) == 0.0
    steady = risk_escalation(None, None, Action.MAINTAIN, _ctx(risk_before=0.8, risk_after=0.8))
    rising = risk_escalation(None, None, Action.MAINTAIN, _ctx(risk_before=0.6, risk_after=0.8))
    assert rising < steady < 0.0


def test_action_penalty_scales_with_magnitude():
    large = action_penalty(None, None, Action.COOL_INCREMENT_LARGE, _ctx())
    small = action_penalty(None, None, Action.COOL_INCREMENT_SMALL, _ctx())
    idle = action_penalty(None, None, Action.MAINTAIN, _ctx())
    assert large < small < idle < 0.0


def test_storage_discharge_bonus_when_racks_hot():
    hot = _state(rack=0.8, level=0.5)
    assert storage_usage(None, hot, Action.THERMAL_STORAGE_DISCHARGE, _ctx()) == pytest.approx(0.25)
    assert storage_usage(None, hot, Action.MAINTAIN, _ctx()) == 0.0
    empty_and_hot = _state(rack=0.8, level=0.1)
    assert storage_usage(None, empty_and_hot, Action.MAINTAIN, _ctx()) == pytest.approx(-0.2)


def test_total_is_weighted_sum_and_stats_accumulate():
    calc = RewardCalculator(rack_count=RACKS)
    ctx = calc.context(energy_price=0.08, risk_before=0.0, risk_after=0.0)
    result = calc.compute(_state(), _state(rack=0.75), Action.COOL_INCREMENT_SMALL, ctx)

    expected = sum(result.components[t] * result.weights[t] for t in RewardTerm)
    assert result.total == pytest.approx(expected)
    assert set(result.components) == set(RewardTerm)
    assert all(s["count"] == 1 for s in calc.stats_snapshot().values())


def test_component_stats_logged_periodically(caplog):
    calc = RewardCalculator(RewardConfig(stats_log_every=2), rack_count=RACKS)
    ctx = calc.context(0.08, 0.0, 0.0)
    with caplog.at_level(logging.INFO, logger="RL_cooling.rewards"):
        calc.compute(_state(), _state(), Action.MAINTAIN, ctx)
        assert "Reward component averages" not in caplog.text
        calc.compute(_state(), _state(), Action.MAINTAIN, ctx)
    assert "Reward component averages" in caplog.text
    assert "rack_safety" in caplog.text


def test_weights_come_from_config():
    calc = RewardCalculator(RewardConfig(fan_wear=0.0), rack_count=RACKS)
    result = calc.compute(_state(), _state(), Action.MAINTAIN, calc.context(0.08, 0.0, 0.0))
    assert result.weights[RewardTerm.FAN_WEAR] == 0.0


def test_temperature_tracking_reads_simulator_degrees():
    sim = DataCenterSimulator(rack_count=RACKS, seed=3)
    assert (sim.ambient_temperature.min, sim.ambient_temperature.max) == AMBIENT_TEMP_RANGE
    assert (sim.target_temperature.min, sim.target_temperature.max) == TARGET_TEMP_RANGE

    sim.ambient_temperature.set(22.0)
    sim.target_temperature.set(22.0)
    for rack in sim.rack_temperatures:
        rack.set(25.0)
    state = sim.get_normalized_state()
    assert temperature_tracking(state, state, Action.MAINTAIN, _ctx()) == pytest.approx(0.0, abs=1e-6)

    sim.ambient_temperature.set(27.0)
    state = sim.get_normalized_state()
    assert temperature_tracking(state, state, Action.MAINTAIN, _ctx()) < -0.3
