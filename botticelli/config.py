"""Engine configuration: defaults, merged with {data_dir}/config.json, then env.

Environment variables override stored values (app.py loads .env first):

    BOTTICELLI_DATA_DIR          base directory for config.json and tables
    BOTTICELLI_PROVIDER_URL      model backend base URL ("" selects the echo driver)
    BOTTICELLI_API_KEY           bearer token for the backend
    BOTTICELLI_PROVIDER_FORMAT   "openai" or "koboldcpp"
    BOTTICELLI_MODEL             default model name
    BOTTICELLI_LOG_LEVEL         root log level for the HTTP app

The HTTP app reads HOST and PORT when started with `python -m botticelli.app`.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from botticelli.bots import BotRegistry
from botticelli.executor import NarrativeExecutor
from botticelli.llm import Driver, EchoDriver, HttpDriver
from botticelli.loader import NarrativeLibrary
from botticelli.processors import ContentGenerationProcessor, ProcessorRegistry
from botticelli.storage import Repository

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path("data")

_CONFIG_DEFAULTS: dict[str, Any] = {
    "llm": {
        "provider_url": "",
        "api_key": "",
        "provider_format": "openai",
        "model": "",
        "timeout": 120.0,
    },
    "defaults": {
        "model": None,
        "temperature": None,
        "max_tokens": None,
    },
    "history_summary_threshold": 10 * 1024,
    "max_composition_depth": 5,
    "content_gate": "iteration",
    "log_level": "INFO",
}

_ENV_OVERRIDES: dict[str, tuple[str, ...]] = {
    "BOTTICELLI_PROVIDER_URL": ("llm", "provider_url"),
    "BOTTICELLI_API_KEY": ("llm", "api_key"),
    "BOTTICELLI_PROVIDER_FORMAT": ("llm", "provider_format"),
    "BOTTICELLI_MODEL": ("llm", "model"),
    "BOTTICELLI_LOG_LEVEL": ("log_level",),
}


def data_dir() -> Path:
    return Path(os.getenv("BOTTICELLI_DATA_DIR", str(DEFAULT_DATA_DIR)))


def _config_path(base: Path | None) -> Path:
    return (base or data_dir()) / "config.json"


def get_config(base: Path | None = None) -> dict[str, Any]:
    """Read config, returning defaults merged with stored values and env overrides."""
    config: dict[str, Any] = json.loads(json.dumps(_CONFIG_DEFAULTS))
    path = _config_path(base)
    if path.is_file():
        stored = json.loads(path.read_text())
        for key, value in stored.items():
            if key not in config:
                logger.warning("ignoring unknown config key %r in %s", key, path)
                continue
            if isinstance(config[key], dict) and isinstance(value, dict):
                config[key].update(value)
            else:
                config[key] = value

    for env_name, keys in _ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value is None:
            continue
        target = config
        for key in keys[:-1]:
            target = target[key]
        target[keys[-1]] = value
    return config


def update_config(fields: dict[str, Any], base: Path | None = None) -> dict[str, Any]:
    """Merge fields into the stored config and persist. Returns the full config."""
    path = _config_path(base)
    stored: dict[str, Any] = json.loads(path.read_text()) if path.is_file() else {}
    for key, value in fields.items():
        if key not in _CONFIG_DEFAULTS:
            raise KeyError(f"unknown config key '{key}'")
        if isinstance(_CONFIG_DEFAULTS[key], dict) and isinstance(value, dict):
            stored.setdefault(key, {}).update(value)
        else:
            stored[key] = value
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(stored, indent=2))
    return get_config(base)


def build_driver(config: dict[str, Any]) -> Driver:
    """HttpDriver for the configured backend, or EchoDriver when none is set."""
    llm = config["llm"]
    if not llm["provider_url"]:
        logger.info("no provider_url configured, using EchoDriver")
        return EchoDriver()
    return HttpDriver(
        provider_url=llm["provider_url"],
        api_key=llm["api_key"],
        provider_format=llm["provider_format"],
        model=llm["model"],
        timeout=float(llm["timeout"]),
    )


def build_executor(
    config: dict[str, Any],
    repository: Repository,
    *,
    driver: Driver | None = None,
    bots: BotRegistry | None = None,
    library: NarrativeLibrary | None = None,
) -> NarrativeExecutor:
    """Wire an executor with content generation writing into `repository`."""
    processors = ProcessorRegistry()
    processors.register(ContentGenerationProcessor(repository, gate=config["content_gate"]))
    defaults = config["defaults"]
    return NarrativeExecutor(
        driver or build_driver(config),
        processors=processors,
        bots=bots,
        tables=repository,
        library=library,
        default_model=defaults["model"] or config["llm"]["model"] or None,
        default_temperature=defaults["temperature"],
        default_max_tokens=defaults["max_tokens"],
        max_composition_depth=int(config["max_composition_depth"]),
        summary_threshold=int(config["history_summary_threshold"]),
    )
