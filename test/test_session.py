"""
Unit tests for the session model and its JSON snapshots.
"""

import json
import shutil
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest

from karafriends.models import (
    AdhocLyricsEntry,
    DamQueueItem,
    DownloadQueueItem,
    DownloadType,
    NicoQueueItem,
    PlaybackState,
    QueueItem,
    SongHistoryItem,
    UserIdentity,
    YoutubeQueueItem,
)
from karafriends.session import SNAPSHOT_FILENAME, Session, SessionStore

ALICE = UserIdentity(device_id="alice-device", nickname="Alice")


def make_item(cls=YoutubeQueueItem, song_id="song", timestamp="1", **kwargs):
    return cls(
        song_id=song_id,
        name=f"Name {song_id}",
        artist_name="Artist",
        timestamp=timestamp,
        user_identity=ALICE,
        **kwargs,
    )


@pytest.fixture
def temp_storage_dir():
    """Create a temporary storage directory."""
    temp_dir = tempfile.mkdtemp()
    yield Path(temp_dir)
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def snapshot_path(temp_storage_dir):
    return temp_storage_dir / SNAPSHOT_FILENAME


def test_queue_item_dict_is_tagged():
    item = make_item(DamQueueItem, streaming_url_idx="1", playtime=200)
    data = item.to_dict()

    assert data["source_type"] == "dam"
    assert data["user_identity"] == {"device_id": "alice-device", "nickname": "Alice"}

    decoded = QueueItem.from_dict(data)
    assert isinstance(decoded, DamQueueItem)
    assert decoded == item


def test_queue_item_unknown_tag_rejected():
    data = make_item().to_dict()
    data["source_type"] = "cassette"
    with pytest.raises(ValueError):
        QueueItem.from_dict(data)


def test_identity_includes_variant():
    youtube = make_item(YoutubeQueueItem, song_id="x", timestamp="5")
    nico = make_item(NicoQueueItem, song_id="x", timestamp="5")
    assert youtube.identity() != nico.identity()
    assert youtube.identity() == make_item(YoutubeQueueItem, song_id="x", timestamp="5").identity()


def test_snapshot_reduction():
    """The current song goes back to the front and transient state is reset."""
    current = make_item(song_id="current", timestamp="1")
    queued = make_item(song_id="queued", timestamp="2")
    session = Session(
        current_song=current,
        current_song_adhoc_lyrics=[AdhocLyricsEntry("la la", 0)],
        song_id_to_adhoc_lyric_lines={"current": ["la la"]},
        pitch_shift_semis=3,
        playback_state=PlaybackState.PLAYING,
        song_queue=[queued],
        download_queue=[DownloadQueueItem(DownloadType.NICO, ALICE, "sm9")],
        song_history=[SongHistoryItem(current)],
    )

    snapshot = session.to_snapshot()

    assert snapshot["current_song"] is None
    assert snapshot["current_song_adhoc_lyrics"] == []
    assert snapshot["pitch_shift_semis"] == 0
    assert snapshot["download_queue"] == []
    assert snapshot["playback_state"] == "PLAYING"
    assert [item["song_id"] for item in snapshot["song_queue"]] == ["current", "queued"]
    assert snapshot["song_id_to_adhoc_lyric_lines"] == {"current": ["la la"]}
    # Snapshotting leaves the live session alone
    assert session.current_song is current
    assert session.song_queue == [queued]


def test_snapshot_without_current_song():
    session = Session(song_queue=[make_item(song_id="a")])
    snapshot = session.to_snapshot()
    assert [item["song_id"] for item in snapshot["song_queue"]] == ["a"]


def test_from_snapshot_merges_over_defaults():
    session = Session.from_snapshot({"song_queue": [make_item(song_id="a").to_dict()]})

    assert session.current_song is None
    assert session.playback_state == PlaybackState.WAITING
    assert session.pitch_shift_semis == 0
    assert [item.song_id for item in session.song_queue] == ["a"]
    assert session.song_history == []


def test_from_snapshot_skips_empty_queue_entries():
    session = Session.from_snapshot({"song_queue": [None, make_item(song_id="a").to_dict()]})
    assert [item.song_id for item in session.song_queue] == ["a"]


def test_missing_snapshot_is_first_run(snapshot_path):
    store = SessionStore(snapshot_path)
    assert store.session == Session()


def test_save_and_restore(snapshot_path):
    store = SessionStore(snapshot_path)
    current = make_item(DamQueueItem, song_id="dam-1", timestamp="1", playtime=100)
    store.session.current_song = current
    store.session.song_queue.append(make_item(song_id="yt-1", timestamp="2", has_captions=True))
    store.session.song_history.insert(0, SongHistoryItem(current))
    store.session.playback_state = PlaybackState.PAUSED
    store.session.pitch_shift_semis = -2

    assert store.save() is True

    restored = SessionStore(snapshot_path).session
    assert restored.current_song is None
    assert restored.pitch_shift_semis == 0
    assert restored.playback_state == PlaybackState.PAUSED
    assert [type(item) for item in restored.song_queue] == [DamQueueItem, YoutubeQueueItem]
    assert restored.song_queue[0] == current
    assert restored.song_queue[1].has_captions is True
    assert restored.song_history[0].song == current


def test_save_leaves_no_temp_files(snapshot_path):
    store = SessionStore(snapshot_path)
    store.save()
    store.save()
    assert sorted(p.name for p in snapshot_path.parent.iterdir()) == [SNAPSHOT_FILENAME]


def test_save_failure_is_logged_and_skipped(snapshot_path, caplog):
    store = SessionStore(snapshot_path)
    store.session.song_queue.append(make_item())

    with patch("karafriends.session.os.replace", side_effect=OSError("disk full")):
        assert store.save() is False

    assert "Failed to save session snapshot" in caplog.text
    # In-memory state is untouched
    assert len(store.session.song_queue) == 1
    assert not snapshot_path.exists()


def test_corrupt_snapshot_is_moved_aside(snapshot_path):
    snapshot_path.write_text("{not json", encoding="utf-8")

    store = SessionStore(snapshot_path)

    assert store.session == Session()
    assert not snapshot_path.exists()
    corrupt = snapshot_path.with_name(SNAPSHOT_FILENAME + ".corrupt")
    assert corrupt.read_text(encoding="utf-8") == "{not json"


def test_snapshot_with_unknown_variant_is_corrupt(snapshot_path):
    snapshot_path.write_text(
        json.dumps({"song_queue": [{"source_type": "cassette"}]}), encoding="utf-8"
    )
    store = SessionStore(snapshot_path)
    assert store.session.song_queue == []
    assert snapshot_path.with_name(SNAPSHOT_FILENAME + ".corrupt").exists()
