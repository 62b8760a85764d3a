# MelodyHub
# Copyright (C) 2024-2026 MelodyHub contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Shared configuration loader for MelodyHub.

Loads a single JSON config file.  Search order:
  1. $MELODYHUB_CONFIG             (explicit override)
  2. /etc/melodyhub/config.json    (deployed install)
  3. config.json                   (CWD — handy for local dev)
  4. ../../config/default.json     (repo fallback)

Usage:
    from melodyhub.config import cfg

    owner     = cfg("content", "owner", default="toyfer")
    attempts  = cfg("content", "attempts", default=3)
    strategy  = cfg("player", "strategy", default="buffer")
    player    = cfg("player")  # returns the whole dict
"""

import json
import logging
import os

logger = logging.getLogger(__name__)

_config: dict | None = None

_SEARCH_PATHS = [
    "/etc/melodyhub/config.json",
    "config.json",
    os.path.join(os.path.dirname(__file__), "..", "..", "config", "default.json"),
]

STRATEGIES = ("buffer", "stream")


def _search_paths() -> list[str]:
    override = os.getenv("MELODYHUB_CONFIG")
    return [override, *_SEARCH_PATHS] if override else list(_SEARCH_PATHS)


def _validate(config: dict, path: str) -> None:
    """Warn about missing or suspicious config values."""
    content = config.get("content") or {}
    if not content.get("host") and not (content.get("owner") and content.get("repo")):
        logger.warning("Config %s: no content.host or content.owner/repo — using built-in repository", path)
    for key in ("attempts", "timeout", "backoff"):
        val = content.get(key)
        if val is not None and (not isinstance(val, (int, float)) or val < 0):
            logger.warning("Config %s: content.%s must be a non-negative number, got %r", path, key, val)
    if content.get("attempts") == 0:
        logger.warning("Config %s: content.attempts is 0 — listings will always fail", path)

    player = config.get("player") or {}
    strategy = player.get("strategy", "buffer")
    if strategy not in STRATEGIES:
        logger.warning("Config %s: unknown player.strategy '%s'", path, strategy)
    volume = player.get("volume")
    if volume is not None and not (isinstance(volume, (int, float)) and 0 <= volume <= 1):
        logger.warning("Config %s: player.volume should be between 0 and 1, got %r", path, volume)
    tick = player.get("tick_interval")
    if tick is not None and (not isinstance(tick, (int, float)) or tick <= 0):
        logger.warning("Config %s: player.tick_interval must be positive, got %r", path, tick)


def load_config() -> dict:
    """Load config from the first JSON file found. Cached after first call."""
    global _config
    if _config is not None:
        return _config

    for path in _search_paths():
        try:
            with open(path) as f:
                _config = json.load(f)
                logger.info("Config loaded from %s", path)
                _validate(_config, path)
                return _config
        except FileNotFoundError:
            continue
        except json.JSONDecodeError as e:
            logger.error("Invalid JSON in %s: %s", path, e)
            continue

    logger.warning("No config.json found — using empty config")
    _config = {}
    return _config


def cfg(section: str, key: str | None = None, *, default=None):
    """Read a config value.

    cfg("content")                     → config["content"]
    cfg("content", "owner")            → config["content"]["owner"]
    cfg("player", "volume", default=0.7)  → config["player"]["volume"] or 0.7
    """
    config = load_config()
    val = config.get(section)
    if key is None:
        return val if val is not None else default
    if isinstance(val, dict):
        return val.get(key, default)
    return default


def reload_config():
    """Force re-read from disk (for testing or hot-reload)."""
    global _config
    _config = None
    return load_config()
