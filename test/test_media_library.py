"""
Tests for MediaLibrary storage and background fetching.
"""

import threading
import time
from unittest.mock import Mock

import pytest

from karafriends.media_library import MediaFetcher, MediaLibrary, find_media_file
from karafriends.models import UserIdentity

ALICE = UserIdentity(device_id="alice-device", nickname="Alice")
BOB = UserIdentity(device_id="bob-device", nickname="Bob")


def wait_for(condition, timeout=2.0):
    """Poll until condition() is truthy."""
    iterations = int(timeout / 0.01)
    for _ in range(iterations):
        if condition():
            return True
        time.sleep(0.01)
    return bool(condition())


def run_request(library, source, media_id, **kwargs):
    """Issue a request and wait for its fetch thread, if any."""
    callback = Mock()
    thread = library.request(source, media_id, callback=callback, **kwargs)
    if thread is not None:
        thread.join(timeout=5)
    return callback


@pytest.fixture
def library(system):
    return system.library


def test_media_directory_layout(library, temp_storage_dir):
    path = library.get_media_directory("youtube", "abc123")
    assert path == temp_storage_dir / "media" / "youtube" / "abc123"


def test_media_directory_sanitizes_ids(library):
    path = library.get_media_directory("dam", "../../etc/passwd")
    assert path.parent == library.base_directory / "dam"
    assert "/" not in path.name


def test_find_media_file_ignores_partial_downloads(temp_storage_dir):
    (temp_storage_dir / "video.mp4.part").write_bytes(b"partial")
    (temp_storage_dir / "captions.en.vtt").write_text("WEBVTT")
    assert find_media_file(temp_storage_dir) is None

    (temp_storage_dir / "video.webm").write_bytes(b"done")
    assert find_media_file(temp_storage_dir) == temp_storage_dir / "video.webm"


def test_find_media_file_ignores_format_files(temp_storage_dir):
    # yt-dlp's per-format files, left behind before (or instead of) the merge
    (temp_storage_dir / "video.f137.mp4").write_bytes(b"video only")
    (temp_storage_dir / "video.f251.webm").write_bytes(b"audio only")
    assert find_media_file(temp_storage_dir) is None

    (temp_storage_dir / "video.mp4").write_bytes(b"merged")
    assert find_media_file(temp_storage_dir) == temp_storage_dir / "video.mp4"


def test_format_files_do_not_count_as_stored(system, library):
    media_dir = library.get_media_directory("youtube", "vid")
    media_dir.mkdir(parents=True)
    (media_dir / "video.f137.mp4").write_bytes(b"video only")

    system.queue.queue_youtube_song(ALICE, "vid", "Video", "Artist")

    assert wait_for(lambda: system.queue.get_queue())
    assert [media_id for media_id, _ in system.fetchers["youtube"].calls] == ["vid"]


def test_request_fetches_in_background(system, library):
    progress = []
    callback = run_request(library, "nico", "sm9", on_progress=progress.append)

    status, path, error = callback.call_args[0]
    assert status == "ready"
    assert path.endswith("video.mp4")
    assert error is None
    assert progress == [0.5, 1.0]
    assert library.get_path("nico", "sm9") is not None


def test_request_reuses_stored_media(system, library):
    run_request(library, "nico", "sm9")
    progress = []

    callback = Mock()
    thread = library.request("nico", "sm9", callback=callback, on_progress=progress.append)

    assert thread is None
    callback.assert_called_once()
    assert callback.call_args[0][0] == "ready"
    assert progress == [1.0]
    assert len(system.fetchers["nico"].calls) == 1


def test_request_reports_fetch_errors(system, library):
    system.fetchers["youtube"].set_fail("nope")
    callback = run_request(library, "youtube", "vid")
    callback.assert_called_once_with("error", None, "nope")
    assert library.get_path("youtube", "vid") is None


def test_request_unknown_source(library):
    callback = Mock()
    assert library.request("cassette", "tape", callback=callback) is None
    callback.assert_called_once_with("error", None, "Unknown media source: cassette")


def test_concurrent_fetches_are_bounded(config_manager, system):
    config_manager.set("max_concurrent_downloads", "1")
    library = MediaLibrary(config_manager)
    fetcher = system.fetchers["youtube"]
    library.register_fetcher(fetcher)
    gate = fetcher.hold()

    first = library.request("youtube", "one")
    second = library.request("youtube", "two")
    first.join(timeout=0.2)

    # Only one fetch got past the semaphore
    assert len(fetcher.calls) == 1

    gate.set()
    first.join(timeout=5)
    second.join(timeout=5)
    assert sorted(media_id for media_id, _ in fetcher.calls) == ["one", "two"]


def test_fetcher_registry(library):
    assert library.get_fetcher("youtube") is not None
    assert library.get_fetcher("cassette") is None


# =============================================================================
# Requests for media that is already being fetched
# =============================================================================


class CaptionFetcher(MediaFetcher):
    """Writes a caption file when asked for one, and only reuses media that has it."""

    source_id = "youtube"

    def __init__(self):
        self.calls = []
        self.gate = threading.Event()

    def fetch(self, media_id, output_dir, on_progress, options):
        self.calls.append(dict(options))
        self.gate.wait(timeout=5)
        caption_code = options.get("caption_code")
        if caption_code:
            (output_dir / f"captions.{caption_code}.vtt").write_text("WEBVTT")
        path = output_dir / "video.mp4"
        path.write_bytes(b"video")
        return path

    def find_existing(self, media_id, output_dir, options):
        caption_code = options.get("caption_code")
        if caption_code and not (output_dir / f"captions.{caption_code}.vtt").exists():
            return None
        return find_media_file(output_dir)


def test_same_media_is_fetched_once(system, library):
    fetcher = system.fetchers["nico"]
    gate = fetcher.hold()
    first_callback, second_callback = Mock(), Mock()
    second_progress = []

    first = library.request("nico", "sm9", callback=first_callback)
    assert wait_for(lambda: fetcher.calls)
    second = library.request(
        "nico", "sm9", callback=second_callback, on_progress=second_progress.append
    )

    assert second is first
    gate.set()
    first.join(timeout=5)

    assert len(fetcher.calls) == 1
    first_callback.assert_called_once()
    assert first_callback.call_args == second_callback.call_args
    assert second_callback.call_args[0][0] == "ready"
    assert second_progress == [0.5, 1.0]


def test_waiting_requests_share_fetch_errors(system, library):
    fetcher = system.fetchers["nico"]
    fetcher.set_fail("gone")
    gate = fetcher.hold()
    first_callback, second_callback = Mock(), Mock()

    thread = library.request("nico", "sm9", callback=first_callback)
    library.request("nico", "sm9", callback=second_callback)
    gate.set()
    thread.join(timeout=5)

    assert len(fetcher.calls) == 1
    first_callback.assert_called_once_with("error", None, "gone")
    second_callback.assert_called_once_with("error", None, "gone")


def test_waiting_request_with_other_options_fetches_after(system, library):
    fetcher = CaptionFetcher()
    library.register_fetcher(fetcher)
    plain_callback, captions_callback = Mock(), Mock()

    library.request("youtube", "vid", callback=plain_callback, options={"caption_code": None})
    library.request("youtube", "vid", callback=captions_callback, options={"caption_code": "en"})
    fetcher.gate.set()

    assert wait_for(lambda: captions_callback.called)
    assert fetcher.calls == [
        {"caption_code": None},
        {"caption_code": "en"},
    ]
    assert plain_callback.call_args[0][0] == "ready"
    assert captions_callback.call_args[0][0] == "ready"


def test_two_guests_queue_the_same_video(system):
    fetcher = system.fetchers["youtube"]
    gate = fetcher.hold()

    system.queue.queue_youtube_song(ALICE, "same", "Video", "Artist")
    system.queue.queue_youtube_song(BOB, "same", "Video", "Artist")
    assert len(system.queue.get_download_queue()) == 2

    gate.set()
    assert wait_for(lambda: len(system.queue.get_queue()) == 2)
    assert len(fetcher.calls) == 1
    assert system.queue.get_download_queue() == []
