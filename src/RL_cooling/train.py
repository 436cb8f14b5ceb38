"""
Command-line entry point for training the cooling agent.

    dc-cooling-train --steps 20000 --config cooling.json
    python -m RL_cooling.train --resume saved_models/model-2026-10-19T12-00-00-000000
"""

import argparse
import logging
from pathlib import Path

from .config import CoolingConfig, load_config
from .DQN.dqn_agent import DQNAgent
from .training import train


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Train a DQN agent to run a simulated data-center cooling plant.")
    parser.add_argument("--config", type=Path, help="JSON config file (missing keys keep their defaults)")
    parser.add_argument("--steps", type=int, default=10_000, help="number of control ticks to simulate")
    parser.add_argument("--render-interval", type=int, default=100, help="ticks between progress lines")
    parser.add_argument("--checkpoint-dir", type=Path, default=Path("saved_models"))
    parser.add_argument("--log-path", type=Path, default=Path("training_log.json"))
    parser.add_argument("--resume", type=Path, help="checkpoint directory to start from")
    parser.add_argument("--resume-latest", action="store_true",
                        help="start from the newest checkpoint under --checkpoint-dir")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--verbose", action="store_true", help="show simulator debug output")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    config = load_config(args.config) if args.config else CoolingConfig()

    resume_from = args.resume
    if resume_from is None and args.resume_latest:
        resume_from = DQNAgent.latest_checkpoint(args.checkpoint_dir)
        if resume_from is None:
            logging.getLogger(__name__).warning("no checkpoint found under %s, starting fresh", args.checkpoint_dir)

    try:
        train(
            config=config,
            num_steps=args.steps,
            render_interval=args.render_interval,
            checkpoint_root=args.checkpoint_dir,
            log_path=args.log_path,
            resume_from=resume_from,
            verbose=args.verbose,
        )
    except KeyboardInterrupt:
        print("\nInterrupted, progress saved.")
        return 130
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
