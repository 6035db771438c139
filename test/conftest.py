"""
Shared fixtures for karafriends tests.

The system fixture wires the real session, queue and acquisition code to
FakeFetchers, which simulate downloads without touching the network.
"""

import os
import shutil
import tempfile
import threading
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Tuple

import pytest

from karafriends.acquisition import AcquisitionPipeline
from karafriends.admission import AdmissionControl
from karafriends.config_manager import ConfigManager
from karafriends.database import Database
from karafriends.events import EventBus
from karafriends.media_library import MediaFetcher, MediaLibrary, ProgressCallback
from karafriends.queue import QueueManager
from karafriends.session import SNAPSHOT_FILENAME, SessionStore

SOURCES = ("dam", "joysound", "youtube", "nico")


class FakeFetcher(MediaFetcher):
    """
    Fake media fetcher.

    Reports half progress, then optionally blocks on a gate so tests can
    look at in-flight state, then writes a small file or fails.
    """

    def __init__(self, source_id: str):
        self._source_id = source_id
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.gate: Optional[threading.Event] = None
        self.fail_message: Optional[str] = None

    @property
    def source_id(self) -> str:
        return self._source_id

    def hold(self) -> threading.Event:
        """Make fetches wait until the returned event is set."""
        self.gate = threading.Event()
        return self.gate

    def set_fail(self, message: str = "Simulated download error") -> None:
        self.fail_message = message

    def fetch(
        self,
        media_id: str,
        output_dir: Path,
        on_progress: ProgressCallback,
        options: Dict[str, Any],
    ) -> Path:
        self.calls.append((media_id, dict(options)))
        on_progress(0.5)
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.fail_message:
            raise RuntimeError(self.fail_message)

        video_file = output_dir / "video.mp4"
        video_file.write_bytes(b"fake video content for " + media_id.encode())
        return video_file


@pytest.fixture
def temp_db():
    """Create a temporary database."""
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    db = Database(db_path=path)
    yield db
    db.close()
    os.unlink(path)


@pytest.fixture
def temp_storage_dir():
    """Create a temporary storage directory."""
    temp_dir = tempfile.mkdtemp()
    yield Path(temp_dir)
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def config_manager(temp_db, temp_storage_dir):
    config_manager = ConfigManager(temp_db)
    config_manager.set("data_directory", str(temp_storage_dir))
    config_manager.set("max_concurrent_downloads", "4")
    return config_manager


@pytest.fixture
def system(config_manager, temp_storage_dir):
    """All session components, with a FakeFetcher registered for every source."""
    store = SessionStore(temp_storage_dir / SNAPSHOT_FILENAME)
    event_bus = EventBus()
    admission = AdmissionControl(config_manager, store)

    library = MediaLibrary(config_manager)
    fetchers = {source: FakeFetcher(source) for source in SOURCES}
    for fetcher in fetchers.values():
        library.register_fetcher(fetcher)

    pipeline = AcquisitionPipeline(store, event_bus, library)
    queue_manager = QueueManager(store, event_bus, admission, pipeline)

    yield SimpleNamespace(
        config=config_manager,
        store=store,
        bus=event_bus,
        admission=admission,
        library=library,
        fetchers=fetchers,
        pipeline=pipeline,
        queue=queue_manager,
    )

    # Let any held fetch threads finish before the directory goes away
    for fetcher in fetchers.values():
        if fetcher.gate is not None:
            fetcher.gate.set()
