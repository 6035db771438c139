"""
Settings for a karafriends session, stored in the SQLite config table.

Every value is kept as text. ConfigManager fills in defaults on first run
and converts values on the way out. CONFIG_SCHEMA describes each editable
key so a settings page can be built from it.
"""

import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar

from .database import ConfigRepository, Database

T = TypeVar("T")

CONFIG_GROUPS = {
    "queue": {"label": "Queue & Admins", "order": 1},
    "media": {"label": "Media & Storage", "order": 2},
    "api": {"label": "API Keys", "order": 3},
}

CONFIG_SCHEMA = {
    "pax_song_queue_limit": {
        "group": "queue",
        "label": "Songs Per Guest",
        "description": "How many songs each guest may have queued or downloading at once. 0 means unlimited.",
        "control": "number",
        "min": 0,
    },
    "admin_nicks": {
        "group": "queue",
        "label": "Admin Nicknames",
        "description": "Comma-separated nicknames that skip the per-guest limit and may queue songs next.",
        "control": "csv",
    },
    "admin_device_ids": {
        "group": "queue",
        "label": "Admin Device IDs",
        "description": "Comma-separated device IDs with the same privileges as admin nicknames.",
        "control": "csv",
    },
    "use_low_bitrate_url": {
        "group": "media",
        "label": "Low Bitrate DAM Streams",
        "description": "Prefer the low bitrate stream for DAM songs.",
        "control": "checkbox",
    },
    "video_max_resolution": {
        "group": "media",
        "label": "Max Video Height",
        "description": "Tallest video yt-dlp may pick for YouTube downloads.",
        "control": "select",
        "options": [
            {"value": "360", "label": "360p"},
            {"value": "480", "label": "480p"},
            {"value": "720", "label": "720p"},
            {"value": "1080", "label": "1080p"},
        ],
    },
    "max_concurrent_downloads": {
        "group": "media",
        "label": "Parallel Downloads",
        "description": "How many songs may download at the same time. Applies after a restart.",
        "control": "number",
        "min": 1,
    },
    "data_directory": {
        "group": "media",
        "label": "Data Directory",
        "description": "Where downloaded media and the queue snapshot are stored. Leave empty for ~/.karafriends.",
        "control": "path",
        "placeholder": "~/.karafriends",
    },
    "remocon_port": {
        "group": "media",
        "label": "Remote Control Port",
        "description": "Port the HTTP API listens on. Applies after a restart.",
        "control": "number",
        "min": 1,
    },
    "youtube_api_key": {
        "group": "api",
        "label": "YouTube Data API Key",
        "description": "Only needed for search; queuing by video id works without it.",
        "control": "password",
    },
}

MASKED_VALUE = "********"


class ConfigManager:
    """Typed access to the session settings."""

    DEFAULTS: Dict[str, Optional[str]] = {
        "pax_song_queue_limit": "0",
        "admin_nicks": "",
        "admin_device_ids": "",
        "use_low_bitrate_url": "false",
        "data_directory": None,  # ~/.karafriends
        "youtube_api_key": None,
        "video_max_resolution": "720",
        "max_concurrent_downloads": "2",
        "remocon_port": "8080",
    }

    def __init__(self, database: Database):
        """
        Args:
            database: Database holding the config table
        """
        self.database = database
        self.repository = ConfigRepository(database)
        self.logger = logging.getLogger(__name__)
        self.repository.initialize_defaults(self.DEFAULTS)

    def get(self, key: str, default: Any = None) -> Optional[str]:
        """
        Look up the raw text of a setting.

        An unset or empty value falls back to default, and then to DEFAULTS.
        """
        fallback = default if default is not None else self.DEFAULTS.get(key)
        entry = self.repository.get(key)
        if entry is None or not entry.value:
            return fallback
        return entry.value

    def _get_converted(
        self, key: str, default: Optional[T], convert: Callable[[str], T]
    ) -> Optional[T]:
        raw = self.get(key)
        if not raw:
            return default
        try:
            return convert(raw)
        except ValueError:
            self.logger.warning(
                "Ignoring %s=%r: not a valid %s", key, raw, getattr(convert, "__name__", convert)
            )
            return default

    def get_int(self, key: str, default: Optional[int] = None) -> Optional[int]:
        return self._get_converted(key, default, int)

    def get_float(self, key: str, default: Optional[float] = None) -> Optional[float]:
        return self._get_converted(key, default, float)

    def get_bool(self, key: str, default: Optional[bool] = None) -> Optional[bool]:
        """Read a flag. "true", "1", "yes" and "on" count as set, in any case."""
        raw = self.get(key)
        if not raw:
            return default
        return raw.strip().lower() in {"true", "1", "yes", "on"}

    def get_list(self, key: str) -> List[str]:
        """Read a comma-separated setting, skipping blank entries."""
        raw = self.get(key) or ""
        return [part.strip() for part in raw.split(",") if part.strip()]

    def set(self, key: str, value: Any) -> bool:
        """Store a setting. Non-string values are stored as their str()."""
        self.logger.debug("Setting %s", key)
        return self.repository.set(key, str(value))

    def get_all(self) -> Dict[str, Optional[str]]:
        """Every stored setting, with DEFAULTS filling in anything missing."""
        values = dict(self.DEFAULTS)
        values.update((entry.key, entry.value) for entry in self.repository.get_all())
        return values

    @property
    def data_directory(self) -> Path:
        """Base directory for media and the session snapshot, created if needed."""
        configured = self.get("data_directory")
        path = Path(configured).expanduser() if configured else Path.home() / ".karafriends"
        path.mkdir(parents=True, exist_ok=True)
        return path

    # Queue policy

    @property
    def pax_song_queue_limit(self) -> int:
        return self.get_int("pax_song_queue_limit", 0)

    @property
    def admin_nicks(self) -> List[str]:
        return self.get_list("admin_nicks")

    @property
    def admin_device_ids(self) -> List[str]:
        return self.get_list("admin_device_ids")

    def get_full_config(self) -> dict:
        """
        Settings, schema and groups for a settings page.

        Password-type values are masked.
        """
        values = self.get_all()
        for key, definition in CONFIG_SCHEMA.items():
            if definition["control"] == "password" and values.get(key):
                values[key] = MASKED_VALUE
        return {"values": values, "schema": CONFIG_SCHEMA, "groups": CONFIG_GROUPS}
