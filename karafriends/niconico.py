"""
niconico source for karafriends.

Video info and downloads go through yt-dlp's niconico extractor.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional

from . import ytdl
from .media_library import MediaFetcher, ProgressCallback


def watch_url(video_id: str) -> str:
    return f"https://www.nicovideo.jp/watch/{video_id}"


class NicoSource(MediaFetcher):
    """niconico fetcher and video info adapter."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    @property
    def source_id(self) -> str:
        return "nico"

    def get_video_info(self, video_id: str) -> Optional[Dict[str, Any]]:
        """Returns None for an invalid or unavailable video id."""
        info = ytdl.extract_info(watch_url(video_id))
        if not info:
            return None

        return {
            "id": video_id,
            "author": info.get("uploader") or "",
            "channel_id": str(info.get("uploader_id") or ""),
            "length_seconds": int(info.get("duration") or 0),
            "description": info.get("description") or "",
            "title": info.get("title") or "",
            "thumbnail_url": info.get("thumbnail") or "",
            "view_count": int(info.get("view_count") or 0),
        }

    def fetch(
        self,
        media_id: str,
        output_dir: Path,
        on_progress: ProgressCallback,
        options: Dict[str, Any],
    ) -> Path:
        self.logger.info("Downloading niconico video %s", media_id)
        return ytdl.download(watch_url(media_id), output_dir, on_progress)
