import logging
import os
import threading
from abc import ABC, abstractmethod
from typing import Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)


class FileWatcher(ABC):
    """Blocks until a watched file is modified or removed"""

    @abstractmethod
    def wait(self, path: str) -> bool:
        """Block until `path` changes. Returns False once the watcher has been closed.

        Changes that happen between two calls are not lost, the next call returns at once."""

    @abstractmethod
    def close(self) -> None:
        """Wake up any pending `wait` and release the watch"""


def _same_store(event_path: str, target: str) -> bool:
    # sqlite writes land in the -wal / -journal side files first
    return event_path == target or event_path.startswith(target + "-")


class _StoreEventHandler(FileSystemEventHandler):
    def __init__(self, target: str, changed: threading.Event) -> None:
        self.target = target
        self.changed = changed

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type in ("opened", "closed_no_write"):
            return
        paths = [os.fsdecode(event.src_path)]
        if getattr(event, "dest_path", ""):
            paths.append(os.fsdecode(event.dest_path))
        if any(_same_store(os.path.abspath(path), self.target) for path in paths):
            self.changed.set()


class WatchdogFileWatcher(FileWatcher):
    """`FileWatcher` backed by a watchdog observer on the store's directory"""

    def __init__(self) -> None:
        self.__changed = threading.Event()
        self.__closed = False
        self.__lock = threading.Lock()
        self.__observer: Optional[Observer] = None
        self.__target: Optional[str] = None

    def __arm(self, path: str) -> None:
        target = os.path.abspath(path)
        with self.__lock:
            if self.__closed or target == self.__target:
                return
            if self.__observer is not None:
                self.__observer.unschedule_all()
            else:
                self.__observer = Observer()
                self.__observer.daemon = True
                self.__observer.start()
            # watching the directory keeps working when the browser replaces the file
            self.__observer.schedule(
                _StoreEventHandler(target, self.__changed), os.path.dirname(target), recursive=False
            )
            self.__target = target
            logger.debug("Watching %s", target)

    def wait(self, path: str) -> bool:
        if self.__closed:
            return False
        self.__arm(path)
        self.__changed.wait()
        if self.__closed:
            return False
        self.__changed.clear()
        return True

    def close(self) -> None:
        with self.__lock:
            self.__closed = True
            observer, self.__observer = self.__observer, None
        self.__changed.set()
        if observer is not None:
            observer.stop()
            if observer is not threading.current_thread():
                observer.join(timeout=5)
