"""
DQN (Deep Q-Network) Module for Data-Center Cooling Control
===========================================================

This module implements a Deep Q-Network reinforcement learning agent
designed to learn how to run the cooling plant of a server hall.

## What is Reinforcement Learning (RL)?

RL is a type of machine learning where an "agent" learns to make decisions
by interacting with an "environment". The agent:
1. Observes the current STATE of the environment
2. Takes an ACTION based on that state
3. Receives a REWARD signal (positive or negative)
4. Observes the new state
5. Learns from this experience to maximize future rewards

## What is DQN?

DQN (Deep Q-Network) is a specific RL algorithm that uses a neural network
to approximate the "Q-function" - a function that predicts how good each
action is in a given state.

Key components:
- **Q-Network**: Neural network that estimates Q-values for each action
- **Prioritized Replay Buffer**: Memory that replays surprising experiences more often
- **Target Network**: A stable copy of the Q-network used for computing targets
- **State Normalizer**: Running statistics that standardize network inputs

## In Data-Center Context:

- **State** (8 + racks + 2 elements): power draw, workload, room temperature,
                          humidity, set-point, fan speed, airflow, PUE,
                          one temperature per rack, storage level and efficiency
- **Actions** (9 options): small/large cooling increments and decrements,
                          small/large fan boosts, maintain, charge or
                          discharge the thermal store
- **Rewards**: Weighted penalties for energy cost, hot racks, uneven
              temperatures, fan wear and rising failure risk
- **Goal**: Keep every rack safe while spending as little energy as possible

Module Components:
    DQNAgent: The main agent that learns and makes decisions
    QNetwork / NoisyLinear: The neural network architecture
    TorchQFunction: PyTorch implementation of the approximator contract
    PrioritizedReplayBuffer: Memory for storing and sampling experiences
    StateNormalizer: Running mean/std of observed states
"""

from RL_cooling.DQN.dqn_agent import BackendError, CheckpointError, DQNAgent
from RL_cooling.DQN.normalizer import StateNormalizer
from RL_cooling.DQN.q_network import NoisyLinear, QFunctionApproximator, QNetwork, TorchQFunction
from RL_cooling.DQN.replay_buffer import Experience, PrioritizedReplayBuffer

__all__ = [
    "BackendError",
    "CheckpointError",
    "DQNAgent",
    "Experience",
    "NoisyLinear",
    "PrioritizedReplayBuffer",
    "QFunctionApproximator",
    "QNetwork",
    "StateNormalizer",
    "TorchQFunction",
]
