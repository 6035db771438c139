"""
YouTube source for karafriends.

Handles YouTube search via Data API v3, and video info and downloads
(including manual caption tracks) via yt-dlp.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from . import ytdl
from .media_library import MediaFetcher, ProgressCallback, find_media_file

if TYPE_CHECKING:
    from .config_manager import ConfigManager

_ISO_DURATION = re.compile(r"^PT(?:(\d+)H)?(?:(\d+)M)?(?:(\d+)S)?$")

# yt-dlp exposes no loudness data, so videos play at unit gain
DEFAULT_GAIN_VALUE = 1.0


def parse_duration(duration_str: str) -> Optional[int]:
    """
    Parse an ISO 8601 duration such as "PT4M13S" to seconds.

    Returns:
        Duration in seconds, or None if the string is not a PT duration
    """
    match = _ISO_DURATION.match(duration_str or "")
    if not match or duration_str == "PT":
        return None
    hours, minutes, seconds = (int(part) if part else 0 for part in match.groups())
    return hours * 3600 + minutes * 60 + seconds


def watch_url(video_id: str) -> str:
    return f"https://www.youtube.com/watch?v={video_id}"


class YouTubeSource(MediaFetcher):
    """YouTube fetcher and catalog adapter."""

    def __init__(self, config_manager: "ConfigManager"):
        """
        Initialize YouTubeSource.

        Args:
            config_manager: ConfigManager for runtime config access
        """
        self.logger = logging.getLogger(__name__)
        self.config_manager = config_manager

        # Lazy-initialized YouTube API client
        self._youtube = None
        self._last_api_key: Optional[str] = None

    @property
    def source_id(self) -> str:
        return "youtube"

    def _get_youtube_client(self):
        """
        Get or create the YouTube API client.

        Returns None if the API key is not configured. The client is rebuilt
        when the key changes so it can be updated at runtime.
        """
        api_key = self.config_manager.get("youtube_api_key")

        if not api_key:
            self._youtube = None
            self._last_api_key = None
            return None

        if api_key != self._last_api_key:
            try:
                self._youtube = build("youtube", "v3", developerKey=api_key)
                self._last_api_key = api_key
                self.logger.info("YouTube API client initialized")
            except Exception as e:
                self.logger.error("Failed to initialize YouTube API client: %s", e)
                self._youtube = None
                self._last_api_key = None

        return self._youtube

    def is_search_configured(self) -> bool:
        return self._get_youtube_client() is not None

    # =========================================================================
    # Catalog
    # =========================================================================

    def search(self, query: str, max_results: int = 10) -> List[Dict[str, Any]]:
        """
        Search YouTube for videos.

        Returns:
            List of video dictionaries, or an empty list if the API key is
            not configured or the API call fails
        """
        youtube = self._get_youtube_client()
        if not youtube:
            self.logger.warning("YouTube API key not configured, search unavailable")
            return []

        try:
            response = (
                youtube.search()
                .list(part="snippet", q=query, type="video", maxResults=max_results)
                .execute()
            )
            video_ids = [item["id"]["videoId"] for item in response.get("items", [])]
            if not video_ids:
                return []

            videos_response = (
                youtube.videos().list(part="contentDetails,snippet", id=",".join(video_ids)).execute()
            )
        except HttpError as e:
            self.logger.error("YouTube API error: %s", e)
            return []

        results = []
        for item in videos_response.get("items", []):
            snippet = item["snippet"]
            results.append(
                {
                    "id": item["id"],
                    "title": snippet.get("title", ""),
                    "channel": snippet.get("channelTitle", ""),
                    "thumbnail": snippet.get("thumbnails", {}).get("default", {}).get("url", ""),
                    "length_seconds": parse_duration(
                        item.get("contentDetails", {}).get("duration", "")
                    ),
                }
            )

        self.logger.info("Found %d videos for query: %s", len(results), query)
        return results

    def get_video_info(self, video_id: str) -> Optional[Dict[str, Any]]:
        """
        Get details for one video, including its manual caption tracks.

        Auto-generated captions are not offered.

        Returns:
            Video dictionary, or None if the video is not playable
        """
        info = ytdl.extract_info(watch_url(video_id))
        if not info:
            return None

        caption_languages = [
            {"code": code, "name": (tracks[0].get("name") if tracks else None) or code}
            for code, tracks in (info.get("subtitles") or {}).items()
            if code != "live_chat"
        ]

        return {
            "id": video_id,
            "author": info.get("uploader") or "",
            "channel_id": info.get("channel_id") or "",
            "length_seconds": int(info.get("duration") or 0),
            "description": info.get("description") or "",
            "title": info.get("title") or "",
            "view_count": int(info.get("view_count") or 0),
            "keywords": info.get("tags") or [],
            "caption_languages": caption_languages,
            "gain_value": DEFAULT_GAIN_VALUE,
        }

    # =========================================================================
    # Fetching
    # =========================================================================

    def fetch(
        self,
        media_id: str,
        output_dir: Path,
        on_progress: ProgressCallback,
        options: Dict[str, Any],
    ) -> Path:
        """
        Download a video and, if caption_code is set, that caption track.

        Raises:
            AcquisitionError: If the download fails
        """
        max_res = self.config_manager.get_int("video_max_resolution", 720)
        extra_opts: Dict[str, Any] = {
            "format": f"bestvideo[height<={max_res}]+bestaudio/best[height<={max_res}]/best",
        }

        caption_code = options.get("caption_code")
        if caption_code:
            extra_opts.update(
                {
                    "writesubtitles": True,
                    "subtitleslangs": [caption_code],
                    "subtitlesformat": "vtt",
                    "outtmpl": {
                        "default": str(output_dir / "video.%(ext)s"),
                        "subtitle": str(output_dir / "captions.%(ext)s"),
                    },
                }
            )

        self.logger.info("Downloading YouTube video %s (captions: %s)", media_id, caption_code)
        return ytdl.download(watch_url(media_id), output_dir, on_progress, extra_opts)

    def find_existing(
        self, media_id: str, output_dir: Path, options: Dict[str, Any]
    ) -> Optional[Path]:
        path = find_media_file(output_dir)
        caption_code = options.get("caption_code")
        if path and caption_code and not self.get_captions_path(output_dir, caption_code):
            return None
        return path

    @staticmethod
    def get_captions_path(output_dir: Path, caption_code: str) -> Optional[Path]:
        for path in output_dir.glob(f"captions.{caption_code}.*"):
            return path
        return None
