"""Filesystem watcher that reports pipeline definition changes."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Callable

from watchdog.events import FileSystemEvent, PatternMatchingEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver

ChangeCallback = Callable[[Path], None]


class PipelineEventHandler(PatternMatchingEventHandler):
    """Forward events for the pipeline file only; editors often replace files via rename."""

    def __init__(self, path: Path, callback: ChangeCallback) -> None:
        super().__init__(
            patterns=[path.name],
            ignore_directories=True,
            case_sensitive=True,
        )
        self.path = path
        self.callback = callback

    def on_created(self, event: FileSystemEvent) -> None:  # pragma: no cover - requires filesystem
        self.callback(self.path)

    def on_modified(self, event: FileSystemEvent) -> None:  # pragma: no cover - requires filesystem
        self.callback(self.path)

    def on_moved(self, event: FileSystemEvent) -> None:  # pragma: no cover - requires filesystem
        if Path(event.dest_path).name == self.path.name:
            self.callback(self.path)


class PipelineWatcher:
    """Wrapper around a watchdog observer on the pipeline file's directory."""

    def __init__(self, path: Path, callback: ChangeCallback) -> None:
        self.path = path.expanduser().resolve()
        self.callback = callback
        self._observer: BaseObserver | None = None
        self._lock = threading.Lock()

    @property
    def started(self) -> bool:
        return self._observer is not None

    def start(self) -> bool:
        """Begin watching; returns False when the directory does not exist."""
        with self._lock:
            if self._observer is not None:
                return True
            if not self.path.parent.is_dir():
                return False
            observer = Observer()
            observer.schedule(
                PipelineEventHandler(self.path, self.callback),
                str(self.path.parent),
                recursive=False,
            )
            observer.start()
            self._observer = observer
            return True

    def stop(self) -> None:
        with self._lock:
            if self._observer is None:
                return
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None


__all__ = ["PipelineWatcher", "PipelineEventHandler", "ChangeCallback"]
