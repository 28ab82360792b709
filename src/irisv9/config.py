"""
Configuration loading for the iris v9 analysis pipeline.

Settings live in config/config.json at the repository root. Values missing
from the file fall back to DEFAULT_CONFIG, and IRISV9_CONFIG may point at a
different file.
"""

import copy
import json
import os

from dotenv import load_dotenv

load_dotenv()

CONFIG_ENV_VAR = "IRISV9_CONFIG"

DEFAULT_CONFIG = {
    "version": "9.0.0",
    "model": {
        "provider": "openai",
        "name": "gpt-4o",
        "api_url": "https://api.openai.com/v1/chat/completions",
        "max_tokens": 4096,
        "temperature": 0.1,
        "timeout": 120
    },
    "pipeline": {
        "retries": 2,
        "retry_backoff": 2.0,
        "request_delay": 1.0,
        "concurrent_detection": True,
        "side_failure": "abort",
        "steps": []
    },
    "scoring": {
        "artifact_min_confidence": 0.6,
        "concern_confidence": 0.8,
        "max_artifacts": 5,
        "text_limit": 60,
        "base_score": 85,
        "concern_penalty": 15,
        "attention_penalty": 8,
        "overall_concern_penalty": 5,
        "overall_attention_penalty": 2,
        "min_score": 30,
        "max_score": 100
    },
    "image_processing": {
        "resize_width": 1024,
        "resize_height": 1024,
        "jpg_quality": 90
    },
    "data": {
        "results_directory": "results",
        "store_directory": "results/store"
    }
}


def default_config_path():
    """Path of config/config.json at the repository root"""
    root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    return os.path.join(root, 'config', 'config.json')


def _merge(base, override):
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path=None):
    """
    Load configuration from a JSON file, layered over DEFAULT_CONFIG.

    Args:
        config_path: Explicit path to a config file. Defaults to $IRISV9_CONFIG,
            then config/config.json.

    Returns:
        Dictionary with every section of DEFAULT_CONFIG present.
    """
    path = config_path or os.environ.get(CONFIG_ENV_VAR) or default_config_path()

    try:
        with open(path, 'r') as f:
            loaded = json.load(f)
    except FileNotFoundError:
        print(f"Config file not found at {path}, using default configuration")
        return copy.deepcopy(DEFAULT_CONFIG)
    except json.JSONDecodeError as e:
        print(f"Error loading config file {path}: {e}")
        print("Using default configuration")
        return copy.deepcopy(DEFAULT_CONFIG)

    return _merge(DEFAULT_CONFIG, loaded)


def get_api_key(provider):
    """Read the LLM API key from the environment (.env files are loaded on import)"""
    key = os.environ.get("IRISV9_API_KEY")
    if key:
        return key
    if provider == "gemini":
        return os.environ.get("GEMINI_API_KEY")
    return os.environ.get("OPENAI_API_KEY")
