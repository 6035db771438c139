"""
yt-dlp helpers shared by the video fetchers.

Wraps option building, progress reporting and error translation so that
every fetcher downloads the same way.
"""

import logging
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import yt_dlp

from .exceptions import AcquisitionError
from .media_library import find_media_file

logger = logging.getLogger(__name__)


class ProgressHook:
    """
    yt-dlp progress hook reporting overall progress as a fraction.

    When yt-dlp downloads video and audio separately and merges them, each
    part counts for an equal share of the total.
    """

    def __init__(self, on_progress: Callable[[float], None]):
        self.on_progress = on_progress
        self.finished_parts = 0
        self.last_reported = 0.0

    def _report(self, fraction: float) -> None:
        fraction = min(fraction, 1.0)
        # Never go backwards when yt-dlp restarts a fragment
        if fraction >= self.last_reported:
            self.last_reported = fraction
            self.on_progress(fraction)

    def __call__(self, d: Dict[str, Any]) -> None:
        info = d.get("info_dict") or {}
        parts = len(info.get("requested_formats") or ()) or 1
        status = d.get("status")

        if status == "downloading":
            total = d.get("total_bytes") or d.get("total_bytes_estimate")
            if not total:
                return
            downloaded = d.get("downloaded_bytes") or 0
            self._report((self.finished_parts + downloaded / total) / parts)
        elif status == "finished":
            self.finished_parts = min(self.finished_parts + 1, parts)
            self._report(self.finished_parts / parts)


def friendly_error(error_msg: str) -> str:
    """Turn common yt-dlp failures into something a guest can understand."""
    if "403" in error_msg or "Forbidden" in error_msg:
        return "The site blocked the download (403 Forbidden). Try updating yt-dlp."
    if "Private video" in error_msg:
        return "Video is private or unavailable"
    if "Video unavailable" in error_msg:
        return "Video is unavailable or has been removed"
    return error_msg


def download(
    url: str,
    output_dir: Path,
    on_progress: Callable[[float], None],
    extra_opts: Optional[Dict[str, Any]] = None,
) -> Path:
    """
    Download url into output_dir as video.<ext>.

    Returns:
        Path to the downloaded media file

    Raises:
        AcquisitionError: If yt-dlp fails or produces no media file
    """
    ydl_opts: Dict[str, Any] = {
        "outtmpl": str(output_dir / "video.%(ext)s"),
        "quiet": True,
        "no_warnings": True,
        "noplaylist": True,
        "retries": 3,
        "fragment_retries": 3,
        "merge_output_format": "mp4",
        "progress_hooks": [ProgressHook(on_progress)],
    }
    if extra_opts:
        ydl_opts.update(extra_opts)

    try:
        with yt_dlp.YoutubeDL(ydl_opts) as ydl:
            ydl.download([url])
    except yt_dlp.utils.DownloadError as e:
        raise AcquisitionError(friendly_error(str(e)), details={"url": url}) from e

    path = find_media_file(output_dir)
    if path is None:
        raise AcquisitionError("Downloaded file not found", details={"url": url})
    return path


def extract_info(url: str) -> Optional[Dict[str, Any]]:
    """Fetch metadata for url without downloading. Returns None on failure."""
    ydl_opts = {"quiet": True, "no_warnings": True, "skip_download": True, "noplaylist": True}
    try:
        with yt_dlp.YoutubeDL(ydl_opts) as ydl:
            return ydl.extract_info(url, download=False)
    except yt_dlp.utils.DownloadError as e:
        logger.warning("Could not get info for %s: %s", url, e)
        return None
