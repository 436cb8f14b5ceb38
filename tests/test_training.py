import asyncio
import json

import pytest

from coolinglib.datacenter_sim import Action
from RL_cooling.DQN.dqn_agent import CheckpointError, DQNAgent
from RL_cooling.train import main
from RL_cooling.training import CoolingSimulation, LoopPhase, train


@pytest.fixture
def simulation(small_config):
    return CoolingSimulation(small_config)


def test_run_trains_once_a_batch_is_stored(simulation, small_config):
    records = asyncio.run(simulation.run(max_steps=8, interval=0))

    assert len(records) == 8
    assert simulation.step_count == 8
    batch = small_config.training.batch_size
    assert all(r.loss is None for r in records[:batch - 1])
    assert all(r.loss is not None for r in records[batch - 1:])
    assert simulation.agent.steps_done == 8 - batch + 1
    assert simulation.phase == LoopPhase.IDLE
    assert not simulation.running


def test_step_records_applied_action(simulation):
    record = asyncio.run(simulation.step())
    assert record.step == 1
    assert record.applied_action in Action.__members__
    assert 0.0 <= record.risk <= 1.0
    assert len(simulation.agent.replay_buffer) == 1


def test_evaluation_mode_skips_memory_and_training(small_config):
    sim = CoolingSimulation(small_config, training=False)
    records = asyncio.run(sim.run(max_steps=6, interval=0))
    assert len(records) == 6
    assert len(sim.agent.replay_buffer) == 0
    assert all(r.loss is None for r in records)


def test_failing_tick_does_not_stop_the_loop(simulation, monkeypatch):
    original = simulation.env.execute_action
    calls = {"n": 0}

    def flaky(action):
        calls["n"] += 1
        if calls["n"] == 2:
            raise RuntimeError("actuator timeout")
        return original(action)

    monkeypatch.setattr(simulation.env, "execute_action", flaky)
    records = asyncio.run(simulation.run(max_steps=4, interval=0))

    assert len(records) == 3
    assert simulation.failed_steps == 1
    assert simulation.phase == LoopPhase.IDLE


def test_pause_and_resume(simulation):
    async def scenario():
        simulation.start()
        simulation.pause()
        assert simulation.paused
        task = asyncio.create_task(simulation.run(max_steps=3, interval=0))
        await asyncio.sleep(0.05)
        assert simulation.step_count == 0
        simulation.resume()
        return await task

    records = asyncio.run(scenario())
    assert len(records) == 3


def test_stop_ends_an_unbounded_run(simulation):
    async def scenario():
        task = asyncio.create_task(simulation.run(max_steps=None, interval=0.001))
        while simulation.step_count < 2:
            await asyncio.sleep(0.001)
        simulation.stop()
        return await task

    records = asyncio.run(scenario())
    assert len(records) >= 2


def test_passive_tick_cadence(simulation, monkeypatch):
    ticks = []
    original = simulation.env.tick
    monkeypatch.setattr(simulation.env, "tick", lambda: (ticks.append(simulation.step_count), original()))
    asyncio.run(simulation.run(max_steps=7, interval=0))
    # passive_tick_every=3 in the small config
    assert ticks == [3, 6]


def test_training_log_saved_as_json(simulation, tmp_path):
    asyncio.run(simulation.run(max_steps=3, interval=0))
    path = tmp_path / "logs" / "training_log.json"
    simulation.save_training_log(path)
    entries = json.loads(path.read_text())
    assert [e["step"] for e in entries] == [1, 2, 3]
    assert {"action", "reward", "loss", "epsilon", "risk", "energy", "avg_rack_temp"} <= set(entries[0])


def test_checkpoint_metadata_carries_environment_and_reward_stats(simulation, tmp_path):
    asyncio.run(simulation.run(max_steps=2, interval=0))
    directory = simulation.agent.save_checkpoint(tmp_path / "ckpt")
    metadata = json.loads((directory / "metadata.json").read_text())
    assert metadata["environment_config"]["rack_count"] == 4
    assert metadata["reward_stats"]["rack_safety"]["count"] == 2


def test_train_function(small_config, tmp_path, capsys):
    log_path = tmp_path / "log.json"
    rewards = train(small_config, num_steps=6, render_interval=3,
                    checkpoint_root=tmp_path / "models", log_path=log_path)

    assert len(rewards) == 6
    assert log_path.exists()
    assert len(list((tmp_path / "models").glob("model-*"))) == 1
    out = capsys.readouterr().out
    assert "Training complete!" in out
    assert "Step      0 |" in out


def _failing_save(self, directory=None):
    raise CheckpointError("disk full")


def test_final_save_failure_does_not_mask_loop_error(small_config, tmp_path, monkeypatch):
    async def exploding_step(self):
        raise RuntimeError("boom")

    monkeypatch.setattr(DQNAgent, "save_checkpoint", _failing_save)
    monkeypatch.setattr(CoolingSimulation, "safe_step", exploding_step)

    with pytest.raises(RuntimeError, match="boom"):
        train(small_config, num_steps=3, checkpoint_root=tmp_path / "models", log_path=None)


def test_final_save_failure_is_logged(small_config, tmp_path, monkeypatch, caplog):
    monkeypatch.setattr(DQNAgent, "save_checkpoint", _failing_save)

    rewards = train(small_config, num_steps=3, checkpoint_root=tmp_path / "models", log_path=None)

    assert len(rewards) == 3
    assert "Final checkpoint save failed" in caplog.text


def test_cli_main(tmp_path):
    config_path = tmp_path / "cooling.json"
    config_path.write_text(json.dumps({
        "training": {"batch_size": 2, "memory_capacity": 16},
        "environment": {"rack_count": 3, "seed": 1},
        "model": {"hidden_units": 8, "device": "cpu"},
    }))
    models = tmp_path / "models"
    code = main(["--config", str(config_path), "--steps", "4", "--checkpoint-dir", str(models),
                 "--log-path", str(tmp_path / "log.json"), "--log-level", "WARNING"])
    assert code == 0
    assert len(list(models.glob("model-*"))) == 1

    code = main(["--config", str(config_path), "--steps", "2", "--checkpoint-dir", str(models),
                 "--log-path", str(tmp_path / "log2.json"), "--resume-latest", "--log-level", "WARNING"])
    assert code == 0
