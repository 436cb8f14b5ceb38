#!/usr/bin/env python3

# ABOUT
# Data-center cooling simulator for reinforcement learning experiments

# This device is designed to build simulations of a cooled server hall
# (HVAC set-point, fans, rack temperatures and a thermal energy store)
# to allow people experiment with cooling control policies

# LICENSE
# This program or module is free software: you can redistribute it and/or
# modify it under the terms of the GNU General Public License as published
# by the Free Software Foundation, either version 2 of the License, or
# version 3 of the License, or (at your option) any later version. It is
# provided for educational purposes and is distributed in the hope that
# it will be useful, but WITHOUT ANY WARRANTY; without even the implied
# warranty of MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See
# the GNU General Public License for more details.

import asyncio
import logging
from collections import deque
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from enum import IntEnum
from typing import Final, Any

import numpy as np

_log: Final[logging.Logger] = logging.getLogger(__name__)


class Action(IntEnum):
    COOL_INCREMENT_SMALL = 0
    COOL_DECREMENT_SMALL = 1
    FAN_INCREMENT_SMALL = 2
    COOL_INCREMENT_LARGE = 3
    COOL_DECREMENT_LARGE = 4
    FAN_INCREMENT_LARGE = 5
    MAINTAIN = 6
    THERMAL_STORAGE_CHARGE = 7
    THERMAL_STORAGE_DISCHARGE = 8


NUM_ACTIONS: Final[int] = len(Action)


@dataclass(frozen=True)
class ActionEffect:
    temp: float    # °C applied to the supply air
    fan: float     # percentage points
    energy: float  # kW


ACTION_EFFECTS: Final[dict[Action, ActionEffect]] = {
    Action.COOL_INCREMENT_SMALL: ActionEffect(temp=-0.2, fan=5, energy=2),
    Action.COOL_DECREMENT_SMALL: ActionEffect(temp=0.2, fan=-5, energy=-2),
    Action.FAN_INCREMENT_SMALL: ActionEffect(temp=-0.1, fan=10, energy=3),
    Action.COOL_INCREMENT_LARGE: ActionEffect(temp=-0.5, fan=10, energy=6),
    Action.COOL_DECREMENT_LARGE: ActionEffect(temp=0.5, fan=-10, energy=-6),
    Action.FAN_INCREMENT_LARGE: ActionEffect(temp=-0.2, fan=20, energy=5),
    Action.MAINTAIN: ActionEffect(temp=0.0, fan=0, energy=0),
    Action.THERMAL_STORAGE_CHARGE: ActionEffect(temp=0.5, fan=0, energy=5),
    Action.THERMAL_STORAGE_DISCHARGE: ActionEffect(temp=-0.5, fan=0, energy=-3),
}

# relative physical size of each action, used by the per-action penalty
ACTION_MAGNITUDE: Final[dict[Action, float]] = {
    Action.COOL_INCREMENT_SMALL: 0.5,
    Action.COOL_DECREMENT_SMALL: 0.5,
    Action.FAN_INCREMENT_SMALL: 0.5,
    Action.COOL_INCREMENT_LARGE: 1.0,
    Action.COOL_DECREMENT_LARGE: 1.0,
    Action.FAN_INCREMENT_LARGE: 1.0,
    Action.MAINTAIN: 0.1,
    Action.THERMAL_STORAGE_CHARGE: 0.8,
    Action.THERMAL_STORAGE_DISCHARGE: 0.8,
}

# share of the supply-air delta that reaches the room, per action kind
AMBIENT_COUPLING: Final[dict[Action, float]] = {
    Action.COOL_INCREMENT_SMALL: 0.8,
    Action.COOL_INCREMENT_LARGE: 0.8,
    Action.COOL_DECREMENT_SMALL: 0.8,
    Action.COOL_DECREMENT_LARGE: 0.8,
    Action.FAN_INCREMENT_SMALL: 0.3,
    Action.FAN_INCREMENT_LARGE: 0.3,
    Action.THERMAL_STORAGE_DISCHARGE: 0.6,
}

FAN_BOOST_ACTIONS: Final[frozenset[Action]] = frozenset({
    Action.FAN_INCREMENT_SMALL,
    Action.FAN_INCREMENT_LARGE,
})


class StateIndex:
    """Positions inside the normalized state vector.

    The first eight entries are the core metrics, then one entry per rack,
    then the thermal storage level and efficiency.
    """
    ENERGY = 0
    WORKLOAD = 1
    AMBIENT_TEMP = 2
    HUMIDITY = 3
    TARGET_TEMP = 4
    FAN_SPEED = 5
    AIRFLOW = 6
    PUE = 7
    RACK_TEMPS = 8
    CORE_SIZE = 8

    @staticmethod
    def storage_level(rack_count: int) -> int:
        return StateIndex.RACK_TEMPS + rack_count

    @staticmethod
    def storage_efficiency(rack_count: int) -> int:
        return StateIndex.RACK_TEMPS + rack_count + 1

    @staticmethod
    def size(rack_count: int) -> int:
        return StateIndex.CORE_SIZE + rack_count + 2


class Sensor:
    """A bounded reading that drifts by a small random walk on every update."""

    HISTORY_LENGTH = 100

    def __init__(self, initial_value: float, min_value: float = 0.0, max_value: float = 100.0,
                 variation: float = 1.0, name: str = '') -> None:
        if max_value <= min_value:
            raise ValueError(f'Sensor {name!r}: max {max_value} must exceed min {min_value}')
        self.value: float = float(initial_value)
        self.min: float = float(min_value)
        self.max: float = float(max_value)
        self.variation: float = float(variation)
        self.name: str = name
        self.history: deque[float] = deque(maxlen=self.HISTORY_LENGTH)

    def update(self, rng: np.random.Generator) -> None:
        self.value = self.clamp(self.value + (rng.random() - 0.5) * self.variation)
        self.history.append(self.value)

    def set(self, value: float) -> None:
        self.value = self.clamp(value)

    def clamp(self, value: float) -> float:
        return float(min(self.max, max(self.min, value)))

    def get(self) -> float:
        return self.value

    def normalized(self) -> float:
        return (self.value - self.min) / (self.max - self.min)


@dataclass
class ThermalStorage:
    capacity: float = 1000.0
    current: float = 300.0
    charge_rate: float = 50.0
    discharge_rate: float = 100.0
    efficiency: float = 0.85

    @property
    def level(self) -> float:
        return self.current / self.capacity

    def charge(self) -> float:
        """Store up to one charge-rate unit; returns the energy actually stored."""
        amount = min(self.capacity - self.current, self.charge_rate)
        stored = amount * self.efficiency
        self.current = min(self.capacity, self.current + stored)
        return stored

    def discharge(self) -> float:
        """Release up to one discharge-rate unit; returns the energy released."""
        amount = min(self.current, self.discharge_rate)
        self.current = max(0.0, self.current - amount)
        return amount


@dataclass
class OutsideConditions:
    temperature: float = 15.0
    humidity: float = 50.0
    forecast: str = 'sunny'
    energy_price: float = 0.08


@dataclass(frozen=True)
class RiskInputs:
    rack_temperatures: Sequence[float]
    humidity: float
    fan_speed: float
    workload: float
    fan_stress: float = 0.0
    danger_steps: int = 0


SAFE_RACK_TEMP: Final[float] = 25.0
RACK_GRADIENT_TOLERANCE: Final[float] = 3.0
HUMIDITY_LIMIT: Final[float] = 60.0
FAN_STRESS_LIMIT: Final[float] = 80.0
WORKLOAD_LIMIT: Final[float] = 0.8

# sensor bounds, also used to undo state normalization
AMBIENT_TEMP_RANGE: Final[tuple[float, float]] = (15.0, 30.0)
TARGET_TEMP_RANGE: Final[tuple[float, float]] = (18.0, 28.0)


def compute_failure_risk(inputs: RiskInputs, danger_threshold: float = 0.7) -> float:
    """Composite failure probability in [0, 1].

    Above ``danger_threshold`` the raw risk is amplified by the number of
    consecutive steps already spent in danger (up to 10).
    """
    temps = np.asarray(inputs.rack_temperatures, dtype=np.float64)
    max_temp = float(temps.max())
    min_temp = float(temps.min())

    overshoot = max(0.0, max_temp - SAFE_RACK_TEMP)
    temp_penalty = 0.6 * (overshoot / 10.0) ** 1.5
    gradient_penalty = 0.05 * max(0.0, (max_temp - min_temp) - RACK_GRADIENT_TOLERANCE)
    # humid air only matters once the hall is running hot
    humidity_penalty = 0.01 * max(0.0, inputs.humidity - HUMIDITY_LIMIT) if overshoot > 0 else 0.0
    fan_penalty = 0.005 * max(0.0, inputs.fan_speed - FAN_STRESS_LIMIT) + min(0.2, 0.001 * inputs.fan_stress)
    workload_penalty = 0.5 * max(0.0, inputs.workload - WORKLOAD_LIMIT)

    risk = temp_penalty + gradient_penalty + humidity_penalty + fan_penalty + workload_penalty
    if risk > danger_threshold:
        risk *= 1.0 + 0.1 * min(inputs.danger_steps, 10)
    return float(np.clip(risk, 0.0, 1.0))


def is_valid_action(action: int, state: Sequence[float], storage: ThermalStorage,
                    rack_count: int | None = None) -> bool:
    """Physical feasibility of ``action`` for a normalized ``state``."""
    action = Action(action)
    if rack_count is None:
        rack_count = len(state) - StateIndex.CORE_SIZE - 2
    stored = float(state[StateIndex.storage_level(rack_count)]) * storage.capacity
    tolerance = 1e-6 * storage.capacity  # float32 state precision

    if action == Action.THERMAL_STORAGE_DISCHARGE:
        return stored + tolerance >= storage.discharge_rate
    if action == Action.THERMAL_STORAGE_CHARGE:
        return (storage.capacity - stored) + tolerance >= storage.charge_rate
    if action in FAN_BOOST_ACTIONS:
        return float(state[StateIndex.FAN_SPEED]) < 1.0
    return True


def valid_actions(state: Sequence[float], storage: ThermalStorage) -> list[Action]:
    return [a for a in Action if is_valid_action(a, state, storage)]


StatusListener = Callable[[dict[str, Any]], None]


class DataCenterSimulator:
    CRITICAL_RISK = 0.9
    DANGER_RISK = 0.7
    EXTREME_PRICE = 0.20
    BASE_PRICE = 0.08

    def __init__(self, rack_count: int = 10, seed: int | None = None, debug: bool = False,
                 critical_risk: float = CRITICAL_RISK, danger_risk: float = DANGER_RISK,
                 base_price: float = BASE_PRICE, extreme_price: float = EXTREME_PRICE,
                 agent_id: str = 'data_center') -> None:
        if rack_count < 1:
            raise ValueError('rack_count must be at least 1')
        self.DEBUG = debug
        self.agent_id = agent_id
        self.rack_count = rack_count
        self.critical_risk = critical_risk
        self.danger_risk = danger_risk
        self.base_price = base_price
        self.extreme_price = extreme_price
        self.rng = np.random.default_rng(seed)
        self._listeners: list[StatusListener] = []

        # per-rack thermal response to room temperature changes
        self.hotspot_factors = np.array([1.0 + (i % 3) * 0.1 for i in range(rack_count)])
        self.thermal_inertia = 0.7

        self.reset()

    def reset(self) -> None:
        self.energy = Sensor(20, 0, 200, 5, 'Energy')
        self.workload = Sensor(0.5, 0, 1, 0.1, 'Workload')
        self.ambient_temperature = Sensor(25, *AMBIENT_TEMP_RANGE, 1, 'Ambient Temp')
        self.humidity = Sensor(50, 10, 90, 5, 'Humidity')
        self.target_temperature = Sensor(22, *TARGET_TEMP_RANGE, 0, 'Target Temp')
        self.fan_speed = Sensor(30, 0, 100, 5, 'Fan Speed')
        self.airflow = Sensor(300, 100, 500, 20, 'Airflow')
        self.pue = Sensor(1.5, 1.0, 3.0, 0.05, 'PUE')
        self.rack_temperatures = [
            Sensor(22, 15, 35, 0.5, f'Rack {i + 1} Temp') for i in range(self.rack_count)
        ]
        self.thermal_storage = ThermalStorage()
        self.outside = OutsideConditions(energy_price=self.base_price)

        self.failure_risk: float = 0.0
        self.fan_stress: float = 0.0
        self.danger_steps: int = 0
        self.last_action: Action | None = None
        self.__dbg('reset')

    def __dbg(self, msg: str) -> None:
        _log.debug('DataCenter: %s', msg)
        if self.DEBUG:
            try:
                print('DataCenterSimulator: ' + msg)
            except OSError:
                pass

    # --- observers -------------------------------------------------------

    def add_status_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def remove_status_listener(self, listener: StatusListener) -> None:
        self._listeners.remove(listener)

    def emit_status(self, action: Action | str = 'UPDATE') -> dict[str, Any]:
        """Build the status record and hand it to every listener.

        Listeners must not block. Inside a running event loop they are
        scheduled with ``call_soon`` and run after the current tick yields;
        without a loop they are called directly.
        """
        status = self.status_record(action)
        self.__dbg(
            f"{status['action']} | Energy:{self.energy.get():.2f}kW | "
            f"Temp:{self.ambient_temperature.get():.2f}°C/{self.target_temperature.get():.2f}°C | "
            f"Fans:{self.fan_speed.get():.2f}% | Risk:{self.failure_risk * 100:.2f}% | "
            f"Storage:{self.thermal_storage.current:.1f}kWh")
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        for listener in list(self._listeners):
            if loop is None:
                self._deliver_status(listener, status)
            else:
                loop.call_soon(self._deliver_status, listener, status)
        return status

    @staticmethod
    def _deliver_status(listener: StatusListener, status: dict[str, Any]) -> None:
        try:
            listener(status)
        except Exception:  # pylint: disable=broad-except
            _log.warning('status listener %r failed', listener, exc_info=True)

    def status_record(self, action: Action | str = 'UPDATE') -> dict[str, Any]:
        return {
            'from': self.agent_id,
            'action': action.name if isinstance(action, Action) else action,
            'energy': round(self.energy.get(), 2),
            'workload': round(self.workload.get(), 2),
            'ambient_temp': round(self.ambient_temperature.get(), 2),
            'humidity': round(self.humidity.get(), 2),
            'target_temp': round(self.target_temperature.get(), 2),
            'fan_speed': round(self.fan_speed.get(), 2),
            'airflow': round(self.airflow.get(), 2),
            'pue': round(self.pue.get(), 3),
            'failure_risk': round(self.failure_risk, 4),
            'rack_temperatures': [round(r.get(), 2) for r in self.rack_temperatures],
            'thermal_storage': round(self.thermal_storage.current, 1),
            'outside_temperature': round(self.outside.temperature, 2),
            'outside_humidity': round(self.outside.humidity, 2),
            'energy_price': self.outside.energy_price,
            'weather_adjustment': round(self.weather_adjustment, 3),
        }

    # --- external inputs -------------------------------------------------

    def apply_weather(self, reading: Mapping[str, Any]) -> None:
        """Fold an outside weather reading into the simulation."""
        if 'temperature' not in reading:
            _log.debug('ignoring weather reading without temperature: %s', reading)
            return
        self.outside.temperature = float(reading['temperature'])
        self.outside.humidity = float(reading.get('humidity', self.outside.humidity))
        self.outside.forecast = str(reading.get('forecast', self.outside.forecast))
        if self.outside.temperature < 5 or self.outside.temperature > 25:
            self.outside.energy_price = self.extreme_price
        else:
            self.outside.energy_price = self.base_price
        self.__dbg(f'weather {self.outside.temperature:.1f}°C, price {self.outside.energy_price:.2f}')

    def apply_operator_override(self, target_temperature: float | None = None,
                                workload: float | None = None) -> None:
        if target_temperature is not None:
            self.target_temperature.set(float(target_temperature))
            self.__dbg(f'operator target {self.target_temperature.get():.2f}')
        if workload is not None:
            self.workload.set(float(workload))
            self.__dbg(f'operator workload {self.workload.get():.2f}')

    @property
    def energy_price(self) -> float:
        return self.outside.energy_price

    @property
    def weather_adjustment(self) -> float:
        return float(np.clip((self.outside.temperature - self.ambient_temperature.get()) * 0.1, -5, 5))

    # --- dynamics --------------------------------------------------------

    def tick(self) -> None:
        """Advance all sensors by one passive step."""
        old_ambient = self.ambient_temperature.get()
        for sensor in (self.energy, self.workload, self.ambient_temperature,
                       self.humidity, self.fan_speed, self.airflow):
            sensor.update(self.rng)
        ambient_change = self.ambient_temperature.get() - old_ambient

        workload_drift = (self.workload.get() - 0.5) * 0.2
        for rack, hotspot in zip(self.rack_temperatures, self.hotspot_factors):
            rack.set(rack.value + (ambient_change * self.thermal_inertia + workload_drift) * hotspot)
            rack.update(self.rng)

        self.pue.value = 1.2 + (self.energy.get() / self.energy.max) * 0.8
        self.pue.update(self.rng)

        self._accumulate_fan_stress()
        self.update_failure_risk()
        self.emit_status('UPDATE')

    def load_scale(self) -> float:
        """Multiplier applied to action effects at the current IT power draw."""
        return 1.0 + self.energy.get() / self.energy.max

    def emergency_action(self) -> Action:
        if self.ambient_temperature.get() > self.ambient_temperature.min:
            return Action.COOL_INCREMENT_LARGE
        state = self.get_normalized_state()
        for candidate in (Action.THERMAL_STORAGE_DISCHARGE, Action.FAN_INCREMENT_LARGE):
            if is_valid_action(candidate, state, self.thermal_storage, self.rack_count):
                return candidate
        return Action.MAINTAIN

    def execute_action(self, action: int) -> Action:
        """Apply one control action and return the action actually applied."""
        requested = Action(action)
        if self.failure_risk > self.critical_risk:
            applied = self.emergency_action()
            _log.warning('risk %.3f above %.2f, overriding %s with %s',
                         self.failure_risk, self.critical_risk, requested.name, applied.name)
        else:
            applied = requested

        effect = ACTION_EFFECTS[applied]
        scale = self.load_scale()

        if applied == Action.THERMAL_STORAGE_CHARGE:
            self.thermal_storage.charge()
        elif applied == Action.THERMAL_STORAGE_DISCHARGE:
            self.thermal_storage.discharge()
        else:
            self.fan_speed.set(self.fan_speed.value + effect.fan)
        self.energy.set(self.energy.value + effect.energy * scale)

        ambient_effect = effect.temp * AMBIENT_COUPLING.get(applied, 0.0) * scale
        old_ambient = self.ambient_temperature.value
        self.ambient_temperature.set(old_ambient + ambient_effect)
        ambient_change = self.ambient_temperature.value - old_ambient

        workload_drift = (self.workload.get() - 0.5) * 0.1
        for rack, hotspot in zip(self.rack_temperatures, self.hotspot_factors):
            change = ambient_change * self.thermal_inertia + workload_drift
            rack.set(rack.value + change * hotspot + (self.rng.random() - 0.5) * 0.2)

        self.airflow.set(self.fan_speed.value * 5)
        self.last_action = applied

        self._accumulate_fan_stress()
        self.update_failure_risk()
        self.emit_status(applied)
        return applied

    def _accumulate_fan_stress(self) -> None:
        excess = max(0.0, self.fan_speed.get() - FAN_STRESS_LIMIT)
        self.fan_stress = self.fan_stress * 0.99 + excess

    def risk_inputs(self) -> RiskInputs:
        return RiskInputs(
            rack_temperatures=[r.get() for r in self.rack_temperatures],
            humidity=self.humidity.get(),
            fan_speed=self.fan_speed.get(),
            workload=self.workload.get(),
            fan_stress=self.fan_stress,
            danger_steps=self.danger_steps,
        )

    def update_failure_risk(self) -> float:
        self.failure_risk = compute_failure_risk(self.risk_inputs(), self.danger_risk)
        if self.failure_risk > self.danger_risk:
            self.danger_steps += 1
        else:
            self.danger_steps = 0
        return self.failure_risk

    # --- observation -----------------------------------------------------

    def max_rack_temperature(self) -> float:
        return max(r.get() for r in self.rack_temperatures)

    def average_rack_temperature(self) -> float:
        return sum(r.get() for r in self.rack_temperatures) / self.rack_count

    def get_normalized_state(self) -> np.ndarray:
        core = [
            self.energy.normalized(),
            self.workload.normalized(),
            self.ambient_temperature.normalized(),
            self.humidity.normalized(),
            self.target_temperature.normalized(),
            self.fan_speed.normalized(),
            self.airflow.normalized(),
            self.pue.normalized(),
        ]
        racks = [r.normalized() for r in self.rack_temperatures]
        storage = [self.thermal_storage.level, self.thermal_storage.efficiency]
        return np.array(core + racks + storage, dtype=np.float32)


if __name__ == '__main__':
    import time
    logging.basicConfig(level=logging.DEBUG)
    dc = DataCenterSimulator(debug=True)
    try:
        step = 0
        while True:
            step += 1
            dc.execute_action(Action.MAINTAIN)
            if step % 10 == 0:
                dc.tick()
            print(f"Step {step}: Ambient {dc.ambient_temperature.get():.1f}°C, "
                  f"Max rack {dc.max_rack_temperature():.1f}°C, "
                  f"Fan {dc.fan_speed.get():.0f}%, Risk {dc.failure_risk:.3f}")
            time.sleep(1)
    except KeyboardInterrupt:
        print('\nExiting...')
