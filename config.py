"""
Load scenario configs from configs/<scenario>.json.
Resolve paths relative to project root (directory containing configs/).
"""

import json
import os
import urllib.request

# Project root: directory containing configs/
_ROOT = os.path.dirname(os.path.abspath(__file__))

DEFAULT_TRAINER_CONFIG = {
    "block_size": 16,
    "n_embd": 16,
    "max_steps": 1000,
    "eval_every": 25,
    "seed": 42,
}


def _config_path(scenario: str) -> str:
    return os.path.join(_ROOT, "configs", f"{scenario}.json")


def load_config(scenario: str) -> dict:
    """Load config for a scenario. Raises FileNotFoundError if config does not exist."""
    path = _config_path(scenario)
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Config not found: {path}")
    with open(path) as f:
        return json.load(f)


def load_config_file(path: str) -> dict:
    """Load a config from an explicit JSON path."""
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Config file not found: {path}")
    with open(path) as f:
        return json.load(f)


def resolve_data_path(config: dict) -> str:
    """Return absolute path for data path in config."""
    return os.path.join(_ROOT, config["data"]["path"])


def load_dataset_text(config: dict) -> str:
    """Read the scenario's dataset, downloading it first if missing and a download_url is set."""
    path = resolve_data_path(config)
    if not os.path.isfile(path):
        url = config["data"].get("download_url")
        if not url:
            raise FileNotFoundError(f"Data file not found: {path}")
        os.makedirs(os.path.dirname(path), exist_ok=True)
        urllib.request.urlretrieve(url, path)
    with open(path, encoding="utf-8") as f:
        return f.read()


def trainer_config(config: dict, **overrides) -> dict:
    """Flatten model/training sections into create_trainer() keywords.
    Overrides that are None are ignored."""
    out = dict(DEFAULT_TRAINER_CONFIG)
    for section in ("model", "training"):
        for key, value in config.get(section, {}).items():
            if key in out:
                out[key] = value
    for key, value in overrides.items():
        if value is not None:
            out[key] = value
    return out
