"""
Q-Network: Neural Network for Q-Value Approximation
====================================================

## What is a Q-Value?

Q(s, a) is the expected total future reward if you take action 'a' in
state 's' and then follow the best policy forever after.

Example in the server hall:
    State: energy=0.12, ambient=0.66, racks≈0.40, fan=0.30, storage=0.30, ...

    Q-values for all 9 actions:
    Q(state, COOL_INCREMENT_SMALL)      = -4.1
    Q(state, COOL_DECREMENT_SMALL)      = -4.9
    Q(state, FAN_INCREMENT_SMALL)       = -4.4
    Q(state, COOL_INCREMENT_LARGE)      = -3.8   <- BEST
    Q(state, COOL_DECREMENT_LARGE)      = -5.6
    Q(state, FAN_INCREMENT_LARGE)       = -4.7
    Q(state, MAINTAIN)                  = -4.0
    Q(state, THERMAL_STORAGE_CHARGE)    = -4.6
    Q(state, THERMAL_STORAGE_DISCHARGE) = -3.9

## Network Architecture:

    Input Layer (8 + racks + 2 neurons)
         │
         ▼
    Hidden Layer (256 neurons) + ReLU
         │
         ▼
    Noisy Hidden Layer (256 neurons) + ReLU
         │
         │  weights = mu + sigma * N(0, 1), resampled on EVERY forward pass
         ▼
    Output Layer (9 neurons)
         │
         └──► [Q(s,a0), Q(s,a1), ..., Q(s,a8)]

## Why a Noisy Layer?

Epsilon-greedy explores by occasionally ignoring the network and picking a
random action. A noisy layer explores *inside* the network instead: its
weights and bias are perturbed by Gaussian noise on every forward pass, so
the Q-values themselves wobble and the argmax occasionally changes. The
noise magnitude ``sigma`` is a learned parameter, so the network can
shrink it where it is confident and keep it large where it is not.

## The Approximator Contract

The agent never touches torch directly. It talks to a
``QFunctionApproximator``:

    predict(states)                  -> q_values           (batch, actions)
    train(states, targets, weights, actions) -> loss
    get_parameters() / set_parameters(params)

``TorchQFunction`` is the PyTorch implementation. Any other backend (an
out-of-process service, a pure numpy model) only needs the same methods.
"""

import logging
import math
from abc import ABC, abstractmethod
import numpy as np
import torch
import torch.nn as nn
import torch.nn.functional as F
import torch.optim as optim

_log = logging.getLogger(__name__)

ACTIVATIONS = {
    "relu": torch.relu,
    "tanh": torch.tanh,
    "sigmoid": torch.sigmoid,
    "linear": lambda x: x,
}


class NoisyLinear(nn.Module):
    """
    Linear layer with Gaussian weight noise.

        y = x @ (W_mu + W_sigma * eps_W)^T + (b_mu + b_sigma * eps_b)

    eps is drawn fresh from N(0, 1) on every forward pass while
    ``noisy`` is True. With ``noisy`` False the layer is a plain linear
    layer using the mean weights (useful for deterministic evaluation).
    """

    def __init__(self, in_features: int, out_features: int, noise_scale: float = 0.1):
        super(NoisyLinear, self).__init__()
        self.in_features = in_features
        self.out_features = out_features
        self.noise_scale = noise_scale
        self.noisy = True

        self.weight_mu = nn.Parameter(torch.empty(out_features, in_features))
        self.weight_sigma = nn.Parameter(torch.empty(out_features, in_features))
        self.bias_mu = nn.Parameter(torch.empty(out_features))
        self.bias_sigma = nn.Parameter(torch.empty(out_features))
        self.reset_parameters()

    def reset_parameters(self) -> None:
        bound = 1.0 / math.sqrt(self.in_features)
        nn.init.uniform_(self.weight_mu, -bound, bound)
        nn.init.uniform_(self.bias_mu, -bound, bound)
        nn.init.constant_(self.weight_sigma, self.noise_scale * bound)
        nn.init.constant_(self.bias_sigma, self.noise_scale * bound)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        if x.dim() != 2:
            raise ValueError(f"NoisyLinear expects a 2D input, got shape {tuple(x.shape)}")
        if not self.noisy:
            return F.linear(x, self.weight_mu, self.bias_mu)
        weight = self.weight_mu + self.weight_sigma * torch.randn_like(self.weight_sigma)
        bias = self.bias_mu + self.bias_sigma * torch.randn_like(self.bias_sigma)
        return F.linear(x, weight, bias)

    def extra_repr(self) -> str:
        return f"in_features={self.in_features}, out_features={self.out_features}, noise_scale={self.noise_scale}"


class QNetwork(nn.Module):
    """
    Feedforward Q-network with one noisy hidden layer.

    Architecture:
        Input  -> [state_size] neurons
        Hidden -> [hidden_size] neurons with activation
        Noisy  -> [hidden_size] neurons with activation
        Output -> [action_size] neurons (no activation - Q-values can be any real number)

    Example:
        >>> net = QNetwork(state_size=20, action_size=9)
        >>> q_values = net(torch.zeros(1, 20))  # shape (1, 9)
    """

    def __init__(self, state_size: int, action_size: int, hidden_size: int = 256,
                 noise_scale: float = 0.1, activation: str = "relu"):
        super(QNetwork, self).__init__()
        if activation not in ACTIVATIONS:
            _log.warning("Invalid activation function: %s. Using 'linear' as default.", activation)
            activation = "linear"
        self.activation = activation
        self._act = ACTIVATIONS[activation]

        self.fc1 = nn.Linear(state_size, hidden_size)
        self.noisy = NoisyLinear(hidden_size, hidden_size, noise_scale)
        self.out = nn.Linear(hidden_size, action_size)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        x = self._act(self.fc1(x))
        x = self._act(self.noisy(x))
        return self.out(x)

    def set_noise(self, enabled: bool) -> None:
        self.noisy.noisy = enabled


class QFunctionApproximator(ABC):
    """Whatever the agent uses to estimate Q-values."""

    @abstractmethod
    def predict(self, states: np.ndarray) -> np.ndarray:
        """Q-values for a batch of states, shape (batch, actions)."""

    @abstractmethod
    def train(self, states: np.ndarray, targets: np.ndarray, weights: np.ndarray | None = None,
              actions: np.ndarray | None = None) -> float:
        """
        One weighted gradient step towards ``targets``; returns the training loss.

        With ``actions`` given, only the output of the taken action per row
        contributes to the loss.
        """

    @abstractmethod
    def get_parameters(self) -> dict[str, np.ndarray]:
        ...

    @abstractmethod
    def set_parameters(self, params: dict[str, np.ndarray]) -> None:
        ...

    @abstractmethod
    def clone_architecture(self) -> "QFunctionApproximator":
        """A fresh, untrained approximator with the same architecture."""

    def parameter_shapes(self) -> dict[str, tuple[int, ...]]:
        return {name: tuple(p.shape) for name, p in self.get_parameters().items()}

    def set_noise(self, enabled: bool) -> None:
        """Switch exploration noise on or off. No-op for backends without noise."""

    def reset(self) -> None:
        """Recover the backend after a failed call. No-op by default."""

    last_validation_loss: float | None = None


class TorchQFunction(QFunctionApproximator):
    """PyTorch backend: QNetwork + Adam + Huber loss with importance weights."""

    def __init__(
        self,
        state_size: int,
        action_size: int,
        hidden_size: int = 256,
        noise_scale: float = 0.1,
        activation: str = "relu",
        learning_rate: float = 1e-3,
        grad_clip_value: float = 1.0,
        validation_split: float = 0.2,
        device: str | None = None
    ):
        self.state_size = state_size
        self.action_size = action_size
        self.hidden_size = hidden_size
        self.noise_scale = noise_scale
        self.activation = activation
        self.learning_rate = learning_rate
        self.grad_clip_value = grad_clip_value
        self.validation_split = validation_split
        self.last_validation_loss = None

        if device is None:
            self.device = torch.device("cuda" if torch.cuda.is_available() else "cpu")
        else:
            self.device = torch.device(device)

        self.net = QNetwork(state_size, action_size, hidden_size, noise_scale, activation).to(self.device)
        self.optimizer = optim.Adam(self.net.parameters(), lr=learning_rate)

    def _tensor(self, array: np.ndarray) -> torch.Tensor:
        return torch.as_tensor(np.asarray(array, dtype=np.float32), device=self.device)

    def predict(self, states: np.ndarray) -> np.ndarray:
        with torch.no_grad():
            states_t = self._tensor(states)
            q_values = self.net(states_t).cpu().numpy()
        del states_t
        return q_values

    def _weighted_loss(self, states: torch.Tensor, targets: torch.Tensor, weights: torch.Tensor,
                       actions: torch.Tensor | None = None) -> torch.Tensor:
        q_values = self.net(states)
        if actions is not None:
            # only the taken action moves
            q_values = q_values.gather(1, actions.unsqueeze(1))
            targets = targets.gather(1, actions.unsqueeze(1))
        per_sample = F.smooth_l1_loss(q_values, targets, reduction="none").mean(dim=1)
        return (per_sample * weights).mean()

    def train(self, states: np.ndarray, targets: np.ndarray, weights: np.ndarray | None = None,
              actions: np.ndarray | None = None) -> float:
        n = len(states)
        if weights is None:
            weights = np.ones(n, dtype=np.float32)

        # hold out the tail of the batch for validation
        n_val = int(n * self.validation_split) if n >= 5 else 0
        n_train = n - n_val

        states_t = self._tensor(states)
        targets_t = self._tensor(targets)
        weights_t = self._tensor(weights)
        actions_t = None
        if actions is not None:
            actions_t = torch.as_tensor(np.asarray(actions, dtype=np.int64), device=self.device)
        train_actions = actions_t[:n_train] if actions_t is not None else None
        val_actions = actions_t[n_train:] if actions_t is not None else None
        try:
            self.net.train()
            loss = self._weighted_loss(states_t[:n_train], targets_t[:n_train], weights_t[:n_train],
                                       train_actions)
            self.optimizer.zero_grad()
            loss.backward()
            torch.nn.utils.clip_grad_value_(self.net.parameters(), self.grad_clip_value)
            self.optimizer.step()
            loss_value = loss.item()

            if n_val:
                with torch.no_grad():
                    self.last_validation_loss = self._weighted_loss(
                        states_t[n_train:], targets_t[n_train:], weights_t[n_train:], val_actions).item()
                if self.last_validation_loss > 2 * loss_value:
                    _log.debug("validation loss %.4f more than twice training loss %.4f",
                               self.last_validation_loss, loss_value)
            else:
                self.last_validation_loss = None
        finally:
            del states_t, targets_t, weights_t, actions_t
        return loss_value

    def get_parameters(self) -> dict[str, np.ndarray]:
        return {name: t.detach().cpu().numpy().copy() for name, t in self.net.state_dict().items()}

    def set_parameters(self, params: dict[str, np.ndarray]) -> None:
        expected = self.parameter_shapes()
        given = {name: tuple(np.shape(v)) for name, v in params.items()}
        if expected != given:
            raise ValueError(f"parameter shape mismatch: expected {expected}, got {given}")
        self.net.load_state_dict({name: torch.as_tensor(v) for name, v in params.items()})

    def parameter_shapes(self) -> dict[str, tuple[int, ...]]:
        return {name: tuple(t.shape) for name, t in self.net.state_dict().items()}

    def clone_architecture(self) -> "TorchQFunction":
        return TorchQFunction(
            self.state_size, self.action_size, self.hidden_size, self.noise_scale,
            self.activation, self.learning_rate, self.grad_clip_value,
            self.validation_split, str(self.device),
        )

    def set_noise(self, enabled: bool) -> None:
        self.net.set_noise(enabled)

    def reset(self) -> None:
        """Drop optimizer state and cached device memory after a backend error."""
        _log.info("Resetting torch backend...")
        self.optimizer = optim.Adam(self.net.parameters(), lr=self.learning_rate)
        if self.device.type == "cuda":
            torch.cuda.empty_cache()
        _log.info("Backend reset complete")
