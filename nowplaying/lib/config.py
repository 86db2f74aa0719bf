# Plex Now Playing Widget
# Copyright (C) 2026 The plex-now-playing contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Shared configuration loader for the Plex now-playing widget.

Loads a single JSON config file.  Search order:
  1. $PLEX_WIDGET_CONFIG            (explicit override)
  2. ~/.plex-widget/config.json     (written by `plex-now-playing configure`)
  3. config.json                    (CWD — handy for local dev)

Secrets can stay in environment variables instead: PLEX_TOKEN and
PLEX_SERVER_URL take precedence over the file.

Usage:
    from nowplaying.lib.config import cfg, ConfigStore

    server_url = cfg("plex", "server_url")
    interval   = cfg("widget", "poll_interval", default=2.0)
    creds      = ConfigStore().load()   # Credentials or None
"""

import json
import logging
import os

from .models import Credentials

log = logging.getLogger(__name__)

_config: dict | None = None

USER_CONFIG_PATH = os.path.join(os.path.expanduser("~"), ".plex-widget", "config.json")

ARTIST_PRIORITIES = ("original_title", "grandparent_title")
REFRESH_POLICIES = ("delayed", "immediate", "none")


def _search_paths() -> list[str]:
    paths = []
    override = os.environ.get("PLEX_WIDGET_CONFIG")
    if override:
        paths.append(override)
    paths.append(USER_CONFIG_PATH)
    paths.append("config.json")
    return paths


def _section(config: dict, name: str) -> dict:
    value = config.get(name)
    return value if isinstance(value, dict) else {}


def _validate(config: dict, path: str) -> None:
    """Warn about missing or suspicious config values."""
    if not isinstance(config, dict):
        log.error("Config %s: top level must be an object", path)
        return
    plex = _section(config, "plex")
    if not (plex.get("server_url") or config.get("plexServerUrl")):
        log.warning("Config %s: missing plex.server_url", path)
    widget = _section(config, "widget")
    priority = widget.get("artist_priority", "original_title")
    if priority not in ARTIST_PRIORITIES:
        log.warning("Config %s: unknown widget.artist_priority '%s'", path, priority)
    policy = widget.get("refresh_after_command", "delayed")
    if policy not in REFRESH_POLICIES:
        log.warning("Config %s: unknown widget.refresh_after_command '%s'", path, policy)


def load_config() -> dict:
    """Load config from the first JSON file found. Cached after first call."""
    global _config
    if _config is not None:
        return _config

    for path in _search_paths():
        try:
            with open(path) as f:
                loaded = json.load(f)
        except FileNotFoundError:
            continue
        except json.JSONDecodeError as e:
            log.error("Invalid JSON in %s: %s", path, e)
            continue
        except OSError as e:
            log.error("Could not read %s: %s", path, e)
            continue
        log.info("Config loaded from %s", path)
        _validate(loaded, path)
        _config = loaded if isinstance(loaded, dict) else {}
        return _config

    log.warning("No config.json found — using empty config")
    _config = {}
    return _config


def cfg(section: str, key: str | None = None, *, default=None):
    """Read a config value.

    cfg("plex")                               → config["plex"]
    cfg("plex", "server_url")                 → config["plex"]["server_url"]
    cfg("widget", "poll_interval", default=2) → config["widget"]["poll_interval"] or 2
    """
    config = load_config()
    val = config.get(section)
    if key is None:
        return val if val is not None else default
    if isinstance(val, dict):
        return val.get(key, default)
    return default


def reload_config():
    """Force re-read from disk (for testing or after `configure`)."""
    global _config
    _config = None
    return load_config()


class ConfigStore:
    """Reads and writes the two strings the widget needs: server URL and token."""

    def __init__(self, path: str | None = None):
        self._explicit = path is not None
        self.path = path or os.environ.get("PLEX_WIDGET_CONFIG") or USER_CONFIG_PATH

    def _read(self) -> dict:
        if not self._explicit:
            return load_config()
        try:
            with open(self.path) as f:
                config = json.load(f)
        except FileNotFoundError:
            log.warning("Config %s not found", self.path)
            return {}
        except (OSError, json.JSONDecodeError) as e:
            log.error("Could not read %s: %s", self.path, e)
            return {}
        return config if isinstance(config, dict) else {}

    def load(self) -> Credentials | None:
        config = self._read()
        plex = _section(config, "plex")

        server_url = (os.environ.get("PLEX_SERVER_URL")
                      or plex.get("server_url")
                      or config.get("plexServerUrl")
                      or "")
        token = (os.environ.get("PLEX_TOKEN")
                 or plex.get("token")
                 or config.get("plexToken")
                 or "")

        if not server_url or not token:
            log.error("Plex server URL and token are required "
                         "(run `plex-now-playing configure` or set PLEX_TOKEN)")
            return None
        if not server_url.startswith(("http://", "https://")):
            log.warning("Plex server URL %s has no http:// or https:// scheme", server_url)
        return Credentials(server_url=server_url.strip(), token=token.strip())

    def save(self, server_url: str, token: str) -> bool:
        server_url = (server_url or "").strip().rstrip("/")
        token = (token or "").strip()
        if not server_url or not token:
            log.error("Refusing to save empty server URL or token")
            return False

        existing = {}
        try:
            with open(self.path) as f:
                existing = json.load(f)
            if not isinstance(existing, dict):
                existing = {}
        except FileNotFoundError:
            pass
        except (OSError, json.JSONDecodeError) as e:
            log.warning("Overwriting unreadable config %s: %s", self.path, e)

        plex = _section(existing, "plex")
        plex.update({"server_url": server_url, "token": token})
        existing["plex"] = plex
        existing.pop("plexServerUrl", None)
        existing.pop("plexToken", None)

        try:
            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            tmp_path = self.path + ".tmp"
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w") as f:
                json.dump(existing, f, indent=2)
            os.replace(tmp_path, self.path)
            os.chmod(self.path, 0o600)
        except OSError as e:
            log.error("Could not save config to %s: %s", self.path, e)
            return False

        log.info("Saved Plex server %s to %s", server_url, self.path)
        reload_config()
        return True
