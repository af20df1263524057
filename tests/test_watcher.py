"""
Unit tests for the local library watcher.
"""

import pytest
import time
from pathlib import Path
from unittest.mock import Mock

from davsync.watcher import DebouncedHandler, LibraryWatcher


def make_event(path: Path, is_directory: bool = False, dest: Path = None) -> Mock:
    event = Mock()
    event.is_directory = is_directory
    event.src_path = str(path)
    if dest is not None:
        event.dest_path = str(dest)
    return event


class TestDebouncedHandler:
    """Tests for the debounced event handler."""

    @pytest.fixture
    def callback(self):
        return Mock()

    @pytest.fixture
    def handler(self, callback):
        """Create a handler with short debounce for testing."""
        handler = DebouncedHandler(on_changes=callback, debounce_seconds=0.1)
        yield handler
        handler.stop()

    def test_should_handle_media_files(self, handler):
        assert handler._should_handle("DCIM/IMG_0001.JPG") is True
        assert handler._should_handle("clips/holiday.mov") is True

    def test_should_not_handle_other_files(self, handler):
        assert handler._should_handle("notes/todo.txt") is False
        assert handler._should_handle("DCIM/.pending-IMG_0001.jpg") is False

    def test_created_triggers_callback(self, handler, callback, temp_dir):
        handler.on_created(make_event(temp_dir / "a.jpg"))

        time.sleep(0.3)

        callback.assert_called_once()
        changes = callback.call_args[0][0]
        assert changes[str(temp_dir / "a.jpg")]["type"] == "created"

    def test_directories_ignored(self, handler, callback, temp_dir):
        handler.on_created(make_event(temp_dir / "album.jpg", is_directory=True))

        time.sleep(0.3)

        callback.assert_not_called()

    def test_burst_is_coalesced(self, handler, callback, temp_dir):
        """Many events inside the window produce one callback."""
        for i in range(5):
            handler.on_created(make_event(temp_dir / f"{i}.jpg"))
            time.sleep(0.02)

        time.sleep(0.3)

        callback.assert_called_once()
        assert len(callback.call_args[0][0]) == 5

    def test_modify_does_not_hide_delete(self, handler, callback, temp_dir):
        path = temp_dir / "a.jpg"
        handler.on_deleted(make_event(path))
        handler.on_modified(make_event(path))

        time.sleep(0.3)

        assert callback.call_args[0][0][str(path)]["type"] == "deleted"

    def test_move_is_delete_plus_create(self, handler, callback, temp_dir):
        old, new = temp_dir / "old.jpg", temp_dir / "new.jpg"
        handler.on_moved(make_event(old, dest=new))

        time.sleep(0.3)

        changes = callback.call_args[0][0]
        assert changes[str(old)]["type"] == "deleted"
        assert changes[str(new)]["type"] == "created"

    def test_callback_errors_are_contained(self, temp_dir):
        failing = Mock(side_effect=RuntimeError("boom"))
        handler = DebouncedHandler(on_changes=failing, debounce_seconds=0.05)

        handler.on_created(make_event(temp_dir / "a.jpg"))
        time.sleep(0.2)

        failing.assert_called_once()

    def test_stop_drops_pending(self, callback, temp_dir):
        handler = DebouncedHandler(on_changes=callback, debounce_seconds=0.1)
        handler.on_created(make_event(temp_dir / "a.jpg"))
        handler.stop()

        time.sleep(0.3)

        callback.assert_not_called()


class TestLibraryWatcher:
    """Tests for the watcher lifecycle."""

    def test_start_and_stop(self, temp_dir):
        watcher = LibraryWatcher(roots=[temp_dir], debounce_seconds=0.1)

        watcher.start()
        assert watcher.is_running
        watcher.stop()
        assert not watcher.is_running

    def test_missing_roots_do_not_start(self, temp_dir):
        watcher = LibraryWatcher(roots=[temp_dir / "missing"])

        watcher.start()

        assert not watcher.is_running

    def test_real_file_change_reaches_callback(self, temp_dir):
        received = []
        watcher = LibraryWatcher(roots=[temp_dir], on_changes=received.append, debounce_seconds=0.1)
        watcher.start()
        try:
            (temp_dir / "IMG_0001.jpg").write_bytes(b"jpeg")
            deadline = time.time() + 5
            while not received and time.time() < deadline:
                time.sleep(0.05)
        finally:
            watcher.stop()

        assert received
        assert any(path.endswith("IMG_0001.jpg") for path in received[0])
