"""
Media library for karafriends.

Provides a unified interface for acquiring media (videos, captions, lyric
data) from the registered fetchers and storing it under the data directory.

Each piece of media lives in its own directory, <data>/media/<source>/<media_id>/.
Fetches run on background threads; the number of concurrent fetches is
bounded by the max_concurrent_downloads setting.
"""

from __future__ import annotations

import logging
import re
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple

if TYPE_CHECKING:
    from .config_manager import ConfigManager

# Supported media file extensions
MEDIA_EXTENSIONS = [".mp4", ".mkv", ".webm", ".m4a"]

# Name fetchers give their finished media file, before the extension
MEDIA_STEM = "video"

StatusCallback = Callable[[str, Optional[str], Optional[str]], None]
ProgressCallback = Callable[[float], None]

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def find_media_file(directory: Path) -> Optional[Path]:
    """
    Return the finished media file in directory, or None.

    Only the final video.<ext> counts. yt-dlp writes each format to its own
    file first (video.f137.mp4, video.f251.webm) and merges them into
    video.<ext>, so those and .part files mean the download is incomplete.
    """
    for ext in MEDIA_EXTENSIONS:
        path = directory / f"{MEDIA_STEM}{ext}"
        if path.is_file():
            return path
    return None


class MediaFetcher(ABC):
    """
    Abstract base class for media fetchers.

    A MediaFetcher is a pure fetcher - it downloads one piece of media into a
    directory provided by the MediaLibrary and knows nothing about the queue.
    """

    @property
    @abstractmethod
    def source_id(self) -> str:
        """Unique identifier for this fetcher (e.g., 'youtube')."""
        ...

    def is_configured(self) -> bool:
        """Check if this fetcher is ready to use."""
        return True

    @abstractmethod
    def fetch(
        self,
        media_id: str,
        output_dir: Path,
        on_progress: ProgressCallback,
        options: Dict[str, Any],
    ) -> Path:
        """
        Download media into output_dir (synchronous).

        Args:
            media_id: Source-specific identifier
            output_dir: Directory to download into (already created)
            on_progress: Called with a fraction between 0 and 1 as data arrives
            options: Fetcher-specific options (caption language, stream URL, ...)

        Returns:
            Path to the primary downloaded file

        Raises:
            Exception: If the fetch fails
        """
        ...

    def find_existing(
        self, media_id: str, output_dir: Path, options: Dict[str, Any]
    ) -> Optional[Path]:
        """Return the already-downloaded file for this request, if complete."""
        return find_media_file(output_dir)


class MediaLibrary:
    """
    Unified interface for media acquisition and storage.

    The library handles:
    - Routing fetch requests to the registered fetchers
    - Managing per-media storage directories
    - Running fetches in the background with bounded concurrency
    """

    def __init__(self, config_manager: "ConfigManager"):
        """
        Initialize MediaLibrary.

        Fetchers must be registered separately via register_fetcher().

        Args:
            config_manager: ConfigManager for runtime config access
        """
        self.logger = logging.getLogger(__name__)
        self.config_manager = config_manager
        self._fetchers: Dict[str, MediaFetcher] = {}
        max_downloads = config_manager.get_int("max_concurrent_downloads", 2) or 1
        self._download_semaphore = threading.Semaphore(max(1, max_downloads))
        self._in_flight: Dict[Tuple[str, str], _InFlightFetch] = {}
        self._in_flight_lock = threading.Lock()

        self.logger.info("MediaLibrary initialized")

    def register_fetcher(self, fetcher: MediaFetcher) -> None:
        self._fetchers[fetcher.source_id] = fetcher
        self.logger.info("Registered media fetcher: %s", fetcher.source_id)

    def get_fetcher(self, source: str) -> Optional[MediaFetcher]:
        return self._fetchers.get(source)

    # =========================================================================
    # Storage
    # =========================================================================

    @property
    def base_directory(self) -> Path:
        """Get base media directory, creating it if needed."""
        path = self.config_manager.data_directory / "media"
        path.mkdir(parents=True, exist_ok=True)
        return path

    def get_media_directory(self, source: str, media_id: str) -> Path:
        """
        Get the storage directory for a piece of media.

        Returns:
            Path like <data>/media/youtube/abc123/
        """
        return self.base_directory / source / _UNSAFE_CHARS.sub("_", media_id)

    def get_path(
        self, source: str, media_id: str, options: Optional[Dict[str, Any]] = None
    ) -> Optional[Path]:
        """Get path to already-acquired media, or None."""
        fetcher = self._fetchers.get(source)
        if not fetcher:
            return None
        media_dir = self.get_media_directory(source, media_id)
        if not media_dir.exists():
            return None
        return fetcher.find_existing(media_id, media_dir, options or {})

    # =========================================================================
    # Acquisition
    # =========================================================================

    def request(
        self,
        source: str,
        media_id: str,
        callback: Optional[StatusCallback] = None,
        on_progress: Optional[ProgressCallback] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> Optional[threading.Thread]:
        """
        Request media be made available.

        If it is already stored, the callback fires immediately with "ready".
        If the same media is already being fetched, the request waits on that
        fetch instead of starting another one into the same directory.
        Otherwise a background fetch starts. Either way the callback fires
        with "ready" or "error" when the fetch finishes.

        Args:
            source: Fetcher identifier
            media_id: Source-specific identifier
            callback: Status callback function(status, path, error)
            on_progress: Progress callback function(fraction)
            options: Fetcher-specific options

        Returns:
            The fetch thread the request waits on, or None if no fetch was
            needed or possible
        """
        options = options or {}
        waiter = _Waiter(callback, on_progress, options)

        fetcher = self._fetchers.get(source)
        if not fetcher:
            self.logger.error("Unknown media source: %s", source)
            waiter.finish("error", None, f"Unknown media source: {source}")
            return None

        key = (source, media_id)
        path = None
        with self._in_flight_lock:
            in_flight = self._in_flight.get(key)
            joined = in_flight is not None
            if joined:
                in_flight.waiters.append(waiter)
                progress = in_flight.progress
            else:
                path = self.get_path(source, media_id, options)
                if not path:
                    in_flight = _InFlightFetch(options, waiter)
                    in_flight.thread = threading.Thread(
                        target=self._run_fetch,
                        args=(fetcher, key, in_flight),
                        daemon=True,
                        name=f"fetch-{source}-{media_id}",
                    )
                    self._in_flight[key] = in_flight
                    in_flight.thread.start()

        if path:
            self.logger.info("%s:%s already available at %s", source, media_id, path)
            waiter.finish("ready", str(path), None)
            return None

        if joined:
            self.logger.info("%s:%s is already being fetched, waiting on it", source, media_id)
            if progress and on_progress:
                on_progress(progress)

        return in_flight.thread

    def _run_fetch(
        self, fetcher: MediaFetcher, key: Tuple[str, str], in_flight: "_InFlightFetch"
    ) -> None:
        source, media_id = key
        media_dir = self.get_media_directory(source, media_id)

        def report_progress(fraction: float) -> None:
            fraction = min(max(fraction, 0.0), 1.0)
            with self._in_flight_lock:
                in_flight.progress = fraction
                waiters = list(in_flight.waiters)
            for waiter in waiters:
                if waiter.on_progress:
                    waiter.on_progress(fraction)

        with self._download_semaphore:
            try:
                media_dir.mkdir(parents=True, exist_ok=True)
                downloaded_path = fetcher.fetch(
                    media_id, media_dir, report_progress, in_flight.options
                )
            except Exception as e:
                self.logger.error("Fetch failed for %s:%s: %s", source, media_id, e, exc_info=True)
                self._finish(key, in_flight, "error", None, str(e))
                return

        self.logger.info("Fetched %s:%s to %s", source, media_id, downloaded_path)
        self._finish(key, in_flight, "ready", str(downloaded_path), None)

    def _finish(
        self,
        key: Tuple[str, str],
        in_flight: "_InFlightFetch",
        status: str,
        path: Optional[str],
        error: Optional[str],
    ) -> None:
        with self._in_flight_lock:
            del self._in_flight[key]
            waiters = list(in_flight.waiters)

        source, media_id = key
        for waiter in waiters:
            if status == "ready" and waiter.options != in_flight.options:
                # Fetched with other options (e.g. without captions); ask again
                self.request(source, media_id, waiter.callback, waiter.on_progress, waiter.options)
            else:
                waiter.finish(status, path, error)


class _Waiter:
    """Callbacks of one request for a piece of media."""

    def __init__(
        self,
        callback: Optional[StatusCallback],
        on_progress: Optional[ProgressCallback],
        options: Dict[str, Any],
    ):
        self.callback = callback
        self.on_progress = on_progress
        self.options = options

    def finish(self, status: str, path: Optional[str], error: Optional[str]) -> None:
        if status == "ready" and self.on_progress:
            self.on_progress(1.0)
        if self.callback:
            self.callback(status, path, error)


class _InFlightFetch:
    """A running fetch and every request waiting on it. The first waiter started it."""

    def __init__(self, options: Dict[str, Any], first: _Waiter):
        self.options = options
        self.waiters: List[_Waiter] = [first]
        self.progress = 0.0
        self.thread: Optional[threading.Thread] = None
