"""
Run a short training benchmark to measure steps/sec and estimate full-run time.
Uses the same trainer as train.py but runs only N steps and prints no samples.

Examples:
  python scripts/benchmark_train.py --scenario tiny --steps 5
  python scripts/benchmark_train.py --scenario names --steps 20
"""

import argparse
import os
import sys
import time

# Project root
_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _ROOT not in sys.path:
    sys.path.insert(0, _ROOT)

from config import load_config, load_dataset_text, trainer_config
from train import _format_eta
from trainer import create_trainer


def main():
    parser = argparse.ArgumentParser(description="Benchmark training for a scenario.")
    parser.add_argument("--scenario", "-s", default="tiny", help="Scenario name (default: tiny)")
    parser.add_argument("--steps", "-n", type=int, default=5, help="Number of steps to run (default: 5)")
    args = parser.parse_args()

    try:
        config = load_config(args.scenario)
        dataset_text = load_dataset_text(config)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    cfg = trainer_config(config)
    t0 = time.perf_counter()
    trainer = create_trainer(dataset_text, cfg)
    t_init = time.perf_counter() - t0

    steps = min(args.steps, trainer.max_steps)
    t0 = time.perf_counter()
    for _ in range(steps):
        trainer.train_step()
    elapsed = time.perf_counter() - t0

    steps_per_sec = steps / elapsed if elapsed > 0 else 0
    remaining = trainer.max_steps - steps
    full_eta = _format_eta(remaining / steps_per_sec) if steps_per_sec > 0 and remaining > 0 else "N/A"
    print(f"init (incl. first eval): {t_init:.2f}s")
    print(
        f"Benchmark: {steps} steps in {elapsed:.2f}s ({steps_per_sec:.4f} step/s). "
        f"Full run ({trainer.max_steps} steps) would take ~{full_eta} more"
    )


if __name__ == "__main__":
    main()
