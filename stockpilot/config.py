"""Central configuration loader for stockpilot."""

import copy
import os
from pathlib import Path

import yaml
from dotenv import load_dotenv

# Project root is the parent of the stockpilot/ directory
PROJECT_ROOT = Path(__file__).resolve().parent.parent

load_dotenv(PROJECT_ROOT / ".env")

# Built-in values used for any key missing from settings.yaml
DEFAULT_SETTINGS: dict = {
    "app": {"name": "stockpilot", "log_level": "INFO"},
    "llm": {
        "model": "claude-sonnet-4-5-20250929",
        "max_tokens": 1024,
        "timeout_seconds": 30,
    },
    "data": {"price_period": "2y", "price_interval": "1d"},
    "pipeline": {
        "max_workers": 4,
        "price_timeout_seconds": 30,
        "fundamentals_timeout_seconds": 30,
        "sentiment_timeout_seconds": 45,
        "run_timeout_seconds": 300,
        "macro_score": 0.5,
    },
    "recommendation": {
        "weights": {
            "technical": 0.25,
            "fundamental": 0.35,
            "sentiment": 0.20,
            "macro": 0.20,
        },
    },
    "backtest": {
        "initial_capital": 100_000,
        "commission": 0.001,
        "slippage": 0.0005,
    },
    "fundamental": {
        "industry_averages": {
            "pe_ratio": 15.5,
            "pb_ratio": 2.1,
            "roe": 12.5,
            "debt_to_equity": 0.6,
            "profit_margin": 8.2,
            "revenue_growth": 5.8,
            "earnings_growth": 6.2,
        },
    },
    "output": {"analyses_file": "data/analyses.jsonl"},
}


def _merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_settings(path: str | Path | None = None) -> dict:
    """Load settings from configs/settings.yaml (or ``STOCKPILOT_SETTINGS``).

    Keys absent from the file fall back to ``DEFAULT_SETTINGS``; a missing
    file yields the defaults unchanged.
    """
    settings_path = Path(
        path
        or os.getenv("STOCKPILOT_SETTINGS")
        or PROJECT_ROOT / "configs" / "settings.yaml"
    )
    if not settings_path.exists():
        return copy.deepcopy(DEFAULT_SETTINGS)
    with open(settings_path) as f:
        return _merge(DEFAULT_SETTINGS, yaml.safe_load(f) or {})


SETTINGS = load_settings()


# --- API Keys ---
class Keys:
    ANTHROPIC = os.getenv("ANTHROPIC_API_KEY", "")


# --- Paths ---
class Paths:
    ROOT = PROJECT_ROOT
    CONFIGS = PROJECT_ROOT / "configs"
    DATA = PROJECT_ROOT / "data"
    ANALYSES = PROJECT_ROOT / SETTINGS["output"]["analyses_file"]
