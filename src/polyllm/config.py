"""Configuration for polyllm.

Config discovery (first match wins):
  1. explicit ``path`` argument
  2. ``./polyllm.yaml``
  3. ``~/.config/polyllm/config.yaml``
  4. Built-in defaults

Example::

    profile: claude
    profiles:
      claude:
        provider: anthropic
        model: claude-3-5-haiku-20241022
        api_key_env: ANTHROPIC_API_KEY
        options:
          temperature: 0.2
          retries: 3
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from polyllm.llm.dispatcher import ModelHandle
from polyllm.llm.providers import create_provider
from polyllm.llm.streaming import SIMULATED_INTERVAL
from polyllm.types import ChatOptions

_logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Config data structures
# ---------------------------------------------------------------------------

@dataclass
class ProfileSpec:
    """A named provider + model pairing with default chat options."""

    provider: str = "ollama"
    model: str = "qwen3-8b"
    api_key: str = ""
    api_key_env: str = ""
    base_url: str | None = None
    timeout: float = 120
    options: dict[str, Any] = field(default_factory=dict)

    def resolve_api_key(self) -> str:
        """Explicit key first, then the named environment variable."""
        if self.api_key:
            return self.api_key
        if self.api_key_env:
            key = os.environ.get(self.api_key_env, "")
            if not key:
                _logger.warning(
                    "Environment variable %s is not set", self.api_key_env,
                )
            return key
        return ""

    @property
    def chat_options(self) -> ChatOptions:
        return ChatOptions.from_dict(self.options)


@dataclass
class PolyConfig:
    """Top-level config for polyllm."""

    # Active profile name
    profile: str = "local"

    # Named profiles
    profiles: dict[str, ProfileSpec] = field(
        default_factory=lambda: {"local": ProfileSpec()}
    )

    # Pacing for providers without incremental transport
    simulate_interval: float = SIMULATED_INTERVAL

    @property
    def active_profile(self) -> ProfileSpec:
        return self.profiles.get(self.profile, ProfileSpec())


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_SEARCH_PATHS = [
    Path("./polyllm.yaml"),
    Path.home() / ".config" / "polyllm" / "config.yaml",
]


def _parse_profile(raw: dict[str, Any]) -> ProfileSpec:
    return ProfileSpec(
        provider=raw.get("provider", "ollama"),
        model=raw.get("model", "qwen3-8b"),
        api_key=raw.get("api_key", ""),
        api_key_env=raw.get("api_key_env", ""),
        base_url=raw.get("base_url"),
        timeout=raw.get("timeout", 120),
        options=raw.get("options") or {},
    )


def load_config(path: str | Path | None = None) -> PolyConfig:
    """Load configuration from YAML.

    Parameters
    ----------
    path:
        Explicit config path.  If *None*, search default locations.

    Returns
    -------
    PolyConfig
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            _logger.warning("Config file not found: %s, using defaults", path)
            return PolyConfig()
    else:
        for candidate in _SEARCH_PATHS:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None:
        _logger.info("No config file found, using defaults")
        return PolyConfig()

    _logger.info("Loading config from %s", config_path)
    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    profiles: dict[str, ProfileSpec] = {}
    for name, praw in (raw.get("profiles") or {}).items():
        profiles[name] = _parse_profile(praw or {})

    if not profiles:
        profiles["local"] = ProfileSpec()

    return PolyConfig(
        profile=raw.get("profile", next(iter(profiles))),
        profiles=profiles,
        simulate_interval=raw.get("simulate_interval", SIMULATED_INTERVAL),
    )


def open_model(config: PolyConfig, profile: str | None = None) -> ModelHandle:
    """Build a ``ModelHandle`` for *profile* (default: the active one).

    The handle owns its HTTP client; close it with ``await handle.close()``
    or use it as an async context manager.
    """
    if profile is not None and profile not in config.profiles:
        raise KeyError(f"Unknown profile: {profile}")
    spec = config.profiles[profile] if profile else config.active_profile
    provider = create_provider(
        spec.provider,
        api_key=spec.resolve_api_key(),
        base_url=spec.base_url,
        timeout=spec.timeout,
    )
    return provider.create_model(
        spec.model,
        defaults=spec.chat_options,
        simulate_interval=config.simulate_interval,
        owns_transport=True,
    )
