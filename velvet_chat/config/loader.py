"""
Configuration management and loading.

Handles rate-limit policy, retry policy, error markers and model
settings. Every section is optional; missing values fall back to the
defaults below.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Tuple

import yaml

DEFAULT_QUOTA_MARKERS = ("quota", "RESOURCE_EXHAUSTED", "429")
DEFAULT_TRANSIENT_MARKERS = (
    "503", "500", "fetch failed", "REQUEST_TIMEOUT",
    "APIConnectionError", "APITimeoutError",
)


@dataclass(frozen=True)
class UsageLimits:
    """Local approximation of the provider's rate limits."""
    requests_per_minute: int = 15
    requests_per_day: int = 1500
    cooldown_seconds: int = 60

    def __post_init__(self):
        """Validate limits are positive."""
        if self.requests_per_minute <= 0:
            raise ValueError("requests_per_minute must be > 0")
        if self.requests_per_day <= 0:
            raise ValueError("requests_per_day must be > 0")
        if self.cooldown_seconds <= 0:
            raise ValueError("cooldown_seconds must be > 0")


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and timing for a single logical request."""
    max_attempts: int = 4
    timeout_seconds: float = 20.0
    base_delay_seconds: float = 1.0

    def __post_init__(self):
        """Validate retry values."""
        if self.max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be >= 0")

    @property
    def timeout_ms(self) -> int:
        return int(self.timeout_seconds * 1000)


@dataclass(frozen=True)
class ErrorMarkers:
    """Substrings used to classify opaque provider errors."""
    quota: Tuple[str, ...] = DEFAULT_QUOTA_MARKERS
    transient: Tuple[str, ...] = DEFAULT_TRANSIENT_MARKERS

    def __post_init__(self):
        """Validate marker lists are non-empty."""
        if not self.quota:
            raise ValueError("quota markers cannot be empty")
        if not self.transient:
            raise ValueError("transient markers cannot be empty")


@dataclass(frozen=True)
class HistoryConfig:
    """Conversation history retention."""
    limit: int = 50

    def __post_init__(self):
        if self.limit <= 0:
            raise ValueError("history limit must be > 0")


@dataclass(frozen=True)
class ModelConfig:
    """Remote model selection."""
    name: str = "gpt-4o-mini"
    temperature: float = 0.85
    image_model: str = "dall-e-3"

    def __post_init__(self):
        if not self.name or not self.name.strip():
            raise ValueError("model name is required and cannot be empty")
        if not 0 <= self.temperature <= 2:
            raise ValueError("temperature must be between 0 and 2")
        if not self.image_model or not self.image_model.strip():
            raise ValueError("image_model is required and cannot be empty")


@dataclass(frozen=True)
class AppConfig:
    """Complete pipeline configuration."""
    limits: UsageLimits = field(default_factory=UsageLimits)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    markers: ErrorMarkers = field(default_factory=ErrorMarkers)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    model: ModelConfig = field(default_factory=ModelConfig)


def default_config() -> AppConfig:
    """Return the built-in configuration."""
    return AppConfig()


_SECTION_KEYS = {
    "limits": {"requests_per_minute", "requests_per_day", "cooldown_seconds"},
    "retry": {"max_attempts", "timeout_seconds", "base_delay_seconds"},
    "markers": {"quota", "transient"},
    "history": {"limit"},
    "model": {"name", "temperature", "image_model"},
}


def load_config(path: str) -> AppConfig:
    """Load and validate pipeline configuration from a YAML file.

    Unknown keys are rejected so a typo never silently falls back to a
    default limit.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated AppConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return default_config()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    unknown_keys = set(raw_config.keys()) - set(_SECTION_KEYS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {
        name: _section(raw_config, name) for name in _SECTION_KEYS
    }

    limits = sections["limits"]
    retry = sections["retry"]
    markers = sections["markers"]
    history = sections["history"]
    model = sections["model"]

    return AppConfig(
        limits=UsageLimits(
            requests_per_minute=_int(limits, "requests_per_minute", "limits", 15),
            requests_per_day=_int(limits, "requests_per_day", "limits", 1500),
            cooldown_seconds=_int(limits, "cooldown_seconds", "limits", 60),
        ),
        retry=RetryPolicy(
            max_attempts=_int(retry, "max_attempts", "retry", 4),
            timeout_seconds=_number(retry, "timeout_seconds", "retry", 20.0),
            base_delay_seconds=_number(retry, "base_delay_seconds", "retry", 1.0),
        ),
        markers=ErrorMarkers(
            quota=_markers(markers, "quota", DEFAULT_QUOTA_MARKERS),
            transient=_markers(markers, "transient", DEFAULT_TRANSIENT_MARKERS),
        ),
        history=HistoryConfig(limit=_int(history, "limit", "history", 50)),
        model=ModelConfig(
            name=_string(model, "name", "model", "gpt-4o-mini"),
            temperature=_number(model, "temperature", "model", 0.85),
            image_model=_string(model, "image_model", "model", "dall-e-3"),
        ),
    )


def _section(raw_config: Dict, name: str) -> Dict[str, Any]:
    """Extract one optional section and reject unknown keys in it."""
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - _SECTION_KEYS[name]
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")
    return data


def _int(data: Dict, key: str, path: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{key}' in {path} must be an integer")
    return value


def _number(data: Dict, key: str, path: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    return float(value)


def _string(data: Dict, key: str, path: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str):
        raise ValueError(f"'{key}' in {path} must be a string")
    return value


def _markers(data: Dict, key: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    value = data.get(key, list(default))
    if not isinstance(value, list) or not all(isinstance(v, str) and v for v in value):
        raise ValueError(f"'{key}' in markers must be a list of non-empty strings")
    return tuple(value)
