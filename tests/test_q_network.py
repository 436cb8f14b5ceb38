import numpy as np
import pytest
import torch

from RL_cooling.DQN.q_network import NoisyLinear, QNetwork, TorchQFunction


@pytest.fixture(autouse=True)
def seeded_torch():
    torch.manual_seed(0)


def test_noisy_layer_resamples_noise_every_forward_pass():
    layer = NoisyLinear(6, 4, noise_scale=0.5)
    x = torch.ones(2, 6)
    assert not torch.allclose(layer(x), layer(x))


def test_noise_off_is_deterministic():
    layer = NoisyLinear(6, 4)
    layer.noisy = False
    x = torch.ones(3, 6)
    assert torch.equal(layer(x), layer(x))


def test_noise_sigma_is_learned():
    layer = NoisyLinear(8, 2, noise_scale=0.1)
    assert layer.weight_sigma.requires_grad
    assert torch.allclose(layer.weight_sigma, torch.full((2, 8), 0.1 / np.sqrt(8)))


def test_noisy_layer_rejects_non_batched_input():
    with pytest.raises(ValueError):
        NoisyLinear(3, 2)(torch.ones(3))


def test_qnetwork_output_shape_and_unknown_activation():
    net = QNetwork(state_size=20, action_size=9, hidden_size=16, activation="swishy")
    assert net.activation == "linear"
    assert net(torch.zeros(5, 20)).shape == (5, 9)


def test_predict_returns_numpy_batch():
    fn = TorchQFunction(6, 9, hidden_size=8, device="cpu")
    q = fn.predict(np.zeros((3, 6), dtype=np.float32))
    assert isinstance(q, np.ndarray)
    assert q.shape == (3, 9)


def test_train_returns_float_and_tracks_validation_loss(rng):
    fn = TorchQFunction(6, 9, hidden_size=8, device="cpu", validation_split=0.2)
    states = rng.normal(size=(10, 6)).astype(np.float32)
    targets = rng.normal(size=(10, 9)).astype(np.float32)
    loss = fn.train(states, targets, np.ones(10, dtype=np.float32))
    assert isinstance(loss, float)
    assert loss >= 0.0
    assert fn.last_validation_loss is not None


def test_training_reduces_loss_on_fixed_batch(rng):
    fn = TorchQFunction(4, 3, hidden_size=16, noise_scale=0.0, device="cpu", learning_rate=1e-2,
                        validation_split=0.0)
    states = rng.normal(size=(16, 4)).astype(np.float32)
    targets = np.tile(np.array([1.0, -1.0, 0.5], dtype=np.float32), (16, 1))
    first = fn.train(states, targets)
    for _ in range(200):
        last = fn.train(states, targets)
    assert last < first


def test_zero_weights_produce_zero_loss(rng):
    fn = TorchQFunction(4, 3, hidden_size=8, device="cpu", validation_split=0.0)
    loss = fn.train(rng.normal(size=(6, 4)), rng.normal(size=(6, 3)), np.zeros(6))
    assert loss == 0.0


def test_parameters_round_trip_and_shape_check():
    a = TorchQFunction(6, 9, hidden_size=8, device="cpu")
    b = a.clone_architecture()
    b.set_parameters(a.get_parameters())
    for name, value in a.get_parameters().items():
        np.testing.assert_array_equal(value, b.get_parameters()[name])

    wider = TorchQFunction(6, 9, hidden_size=12, device="cpu")
    assert wider.parameter_shapes() != a.parameter_shapes()
    with pytest.raises(ValueError):
        a.set_parameters(wider.get_parameters())


def test_get_parameters_returns_copies():
    fn = TorchQFunction(3, 2, hidden_size=4, device="cpu")
    params = fn.get_parameters()
    params["fc1.weight"][:] = 100.0
    assert not np.any(fn.get_parameters()["fc1.weight"] == 100.0)


def test_reset_rebuilds_optimizer():
    fn = TorchQFunction(3, 2, hidden_size=4, device="cpu")
    old = fn.optimizer
    fn.reset()
    assert fn.optimizer is not old


def test_set_noise_toggles_network_noise():
    fn = TorchQFunction(6, 9, hidden_size=8, noise_scale=0.5, device="cpu")
    states = np.ones((2, 6), dtype=np.float32)
    fn.set_noise(False)
    np.testing.assert_array_equal(fn.predict(states), fn.predict(states))
    fn.set_noise(True)
    assert not np.array_equal(fn.predict(states), fn.predict(states))


def test_action_mask_ignores_other_outputs(rng):
    fn = TorchQFunction(4, 3, hidden_size=8, device="cpu", validation_split=0.0)
    fn.set_noise(False)
    states = rng.normal(size=(6, 4)).astype(np.float32)
    actions = np.array([0, 1, 2, 0, 1, 2])
    rows = np.arange(len(actions))

    targets = np.full((6, 3), 1e6, dtype=np.float32)
    targets[rows, actions] = fn.predict(states)[rows, actions]

    assert fn.train(states, targets, actions=actions) == pytest.approx(0.0, abs=1e-6)
    assert fn.train(states, targets) > 1.0
