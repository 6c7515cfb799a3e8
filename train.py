"""
Train micro GPT by scenario and print samples. Loads config from
configs/<scenario>.json, reads (or downloads) the dataset, drives the trainer
one step at a time, and reports losses as it goes.

Run: python train.py --scenario tiny
     python train.py --scenario names --steps 500 --sparkline
     python train.py --config configs/custom.json --samples 5
"""

import argparse
import math
import sys
import time

from config import load_config, load_config_file, load_dataset_text, trainer_config
from model import sparkline
from trainer import create_trainer


def _format_eta(seconds: float) -> str:
    """Format seconds as human-readable ETA (e.g. 26h 23m or 1m 30s)."""
    if seconds <= 0 or not math.isfinite(seconds):
        return "?"
    s = int(round(seconds))
    if s >= 3600:
        h, rest = divmod(s, 3600)
        m = rest // 60
        return f"{h}h {m}m"
    if s >= 60:
        m, sec = divmod(s, 60)
        return f"{m}m {sec}s"
    return f"{s}s"


def run_training(
    dataset_text: str,
    trainer_cfg: dict,
    show_eta: bool = True,
    show_sparkline: bool = False,
    quiet: bool = False,
):
    """Create a trainer and run it to completion. Returns the trainer.
    Progress is printed every eval_every steps and on the last step."""
    trainer = create_trainer(dataset_text, trainer_cfg)
    print(f"num docs: train {trainer.train_size} | dev {trainer.dev_size} | test {trainer.test_size}")
    print(f"vocab size: {trainer.vocab_size}")
    print(f"num params: {trainer.num_params}")

    steps_limit = trainer.max_steps
    start_time = time.perf_counter()
    min_steps_for_eta = 2

    for _ in range(steps_limit):
        trainer.train_step()
        steps_done = trainer.step
        if quiet or not (steps_done % trainer.eval_every == 0 or steps_done == steps_limit):
            continue
        elapsed = time.perf_counter() - start_time
        steps_per_sec = steps_done / elapsed if elapsed > 0 else 0
        remaining = steps_limit - steps_done
        eta_str = _format_eta(remaining / steps_per_sec) if (show_eta and steps_done >= min_steps_for_eta and steps_per_sec > 0) else ""
        line = (
            f"step {steps_done:4d} / {steps_limit:4d} | loss {trainer.latest_batch_loss:.4f}"
            f" | train {trainer.train_loss:.4f} dev {trainer.dev_loss:.4f} test {trainer.test_loss:.4f}"
        )
        if steps_per_sec > 0:
            line += f" | {steps_per_sec:.4f} step/s"
        if eta_str:
            line += f" | ETA {eta_str}"
        print(line)
        if show_sparkline:
            print(sparkline(trainer.losses, 80))
            print(f"sample: {trainer.sample}")

    elapsed_total = time.perf_counter() - start_time
    print(f"trained {trainer.step} steps in {elapsed_total:.2f}s")
    return trainer


def main():
    parser = argparse.ArgumentParser(
        description="Train micro GPT by scenario and print generated samples.",
        epilog="Scenarios: tiny (bundled), names (downloaded on first use).",
    )
    parser.add_argument("--scenario", "-s", default="tiny", help="Scenario name (configs/<scenario>.json)")
    parser.add_argument("--config", "-c", help="Path to config JSON (overrides --scenario)")
    parser.add_argument("--steps", "-n", type=int, help="Override training.max_steps")
    parser.add_argument("--eval-every", type=int, help="Override training.eval_every")
    parser.add_argument("--seed", type=int, help="Override training.seed")
    parser.add_argument("--samples", type=int, default=12, help="Number of samples to print after training")
    parser.add_argument("--temperature", "-t", type=float, default=0.5, help="Sampling temperature")
    parser.add_argument("--max-tokens", type=int, default=60, help="Max characters per sample")
    parser.add_argument("--no-eta", action="store_true", help="Do not show ETA in progress")
    parser.add_argument("--sparkline", action="store_true", help="Print loss sparkline and current sample at each eval")
    parser.add_argument("--quiet", "-q", action="store_true", help="Only print the final samples")
    args = parser.parse_args()

    if args.temperature <= 0:
        print("Error: --temperature must be positive", file=sys.stderr)
        sys.exit(1)

    try:
        config = load_config_file(args.config) if args.config else load_config(args.scenario)
        dataset_text = load_dataset_text(config)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    cfg = trainer_config(config, max_steps=args.steps, eval_every=args.eval_every, seed=args.seed)
    try:
        trainer = run_training(
            dataset_text,
            cfg,
            show_eta=not args.no_eta,
            show_sparkline=args.sparkline,
            quiet=args.quiet,
        )
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    print("--- samples ---")
    for sample_idx in range(args.samples):
        print(f"sample {sample_idx+1:2d}: {trainer.generate(args.max_tokens, args.temperature)}")


if __name__ == "__main__":
    main()
