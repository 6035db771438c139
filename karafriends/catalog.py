"""
Karaoke catalog interfaces for karafriends.

The DAM and Joysound backends are external services. This module defines
what the rest of the application needs from them, and the fetchers that
use them to acquire media. Concrete API clients implement DamCatalog or
JoysoundCatalog and are handed to CatalogResolver at startup.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from . import ytdl
from .exceptions import AcquisitionError, CatalogUnavailableError
from .media_library import MediaFetcher, ProgressCallback
from .models import StreamingUrl

if TYPE_CHECKING:
    from .config_manager import ConfigManager

JOYSOUND_DATA_FILENAME = "song.json"
SCORING_DATA_FILENAME = "scoring.bin"


class DamCatalog(ABC):
    """Commercial karaoke-machine catalog."""

    @abstractmethod
    def search_songs(self, name: str, first: int, after: int) -> Dict[str, Any]:
        """
        Search songs by name.

        Returns:
            {"songs": [...], "total_count": int}
        """
        ...

    @abstractmethod
    def get_song(self, song_id: str) -> Optional[Dict[str, Any]]:
        """Song details (name, artist_name, playtime, ...), or None if unknown."""
        ...

    @abstractmethod
    def get_streaming_urls(self, song_id: str) -> List[StreamingUrl]:
        """Streaming URL candidates for a song, in catalog order."""
        ...

    @abstractmethod
    def get_scoring_data(self, song_id: str) -> bytes:
        """Raw scoring data for a song."""
        ...


class JoysoundCatalog(ABC):
    """Lyrics-subscription catalog."""

    @abstractmethod
    def search_songs(self, keyword: str, first: int, after: int) -> Dict[str, Any]:
        """
        Search songs by keyword.

        Returns:
            {"songs": [...], "total_count": int}
        """
        ...

    @abstractmethod
    def get_song(self, song_id: str) -> Optional[Dict[str, Any]]:
        """Song details, or None if unknown."""
        ...

    @abstractmethod
    def get_song_data(self, song_id: str) -> Dict[str, Any]:
        """Full song and lyric timing data needed to play the song."""
        ...


class CatalogResolver:
    """Holds whichever catalog clients are configured."""

    def __init__(
        self,
        dam: Optional[DamCatalog] = None,
        joysound: Optional[JoysoundCatalog] = None,
    ):
        self.dam = dam
        self.joysound = joysound

    def require_dam(self) -> DamCatalog:
        if self.dam is None:
            raise CatalogUnavailableError("DAM catalog is not configured")
        return self.dam

    def require_joysound(self) -> JoysoundCatalog:
        if self.joysound is None:
            raise CatalogUnavailableError("Joysound catalog is not configured")
        return self.joysound


class DamStreamFetcher(MediaFetcher):
    """
    Downloads a DAM stream and its scoring data ahead of play time.

    options: song_id, streaming_url_idx
    """

    def __init__(self, catalogs: CatalogResolver, config_manager: "ConfigManager"):
        self.logger = logging.getLogger(__name__)
        self.catalogs = catalogs
        self.config_manager = config_manager

    @property
    def source_id(self) -> str:
        return "dam"

    def is_configured(self) -> bool:
        return self.catalogs.dam is not None

    def fetch(
        self,
        media_id: str,
        output_dir: Path,
        on_progress: ProgressCallback,
        options: Dict[str, Any],
    ) -> Path:
        dam = self.catalogs.require_dam()
        song_id = options["song_id"]
        idx = int(options.get("streaming_url_idx", 0))

        urls = dam.get_streaming_urls(song_id)
        if not 0 <= idx < len(urls):
            raise AcquisitionError(
                f"DAM song {song_id} has no streaming URL #{idx}",
                details={"song_id": song_id, "candidates": len(urls)},
            )
        url = urls[idx].select(self.config_manager.get_bool("use_low_bitrate_url", False))

        path = ytdl.download(url, output_dir, on_progress)
        (output_dir / SCORING_DATA_FILENAME).write_bytes(dam.get_scoring_data(song_id))
        return path


class JoysoundDataFetcher(MediaFetcher):
    """Stores Joysound song data as JSON so the player can render lyrics."""

    def __init__(self, catalogs: CatalogResolver):
        self.logger = logging.getLogger(__name__)
        self.catalogs = catalogs

    @property
    def source_id(self) -> str:
        return "joysound"

    def is_configured(self) -> bool:
        return self.catalogs.joysound is not None

    def fetch(
        self,
        media_id: str,
        output_dir: Path,
        on_progress: ProgressCallback,
        options: Dict[str, Any],
    ) -> Path:
        data = self.catalogs.require_joysound().get_song_data(media_id)
        on_progress(0.5)
        path = output_dir / JOYSOUND_DATA_FILENAME
        path.write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")
        return path

    def find_existing(
        self, media_id: str, output_dir: Path, options: Dict[str, Any]
    ) -> Optional[Path]:
        path = output_dir / JOYSOUND_DATA_FILENAME
        return path if path.exists() else None
