from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Protocol

from helpdesk.client.scheduler import ScheduledTask
from helpdesk.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class StorageChange:
    key: str
    old_value: Optional[str]
    new_value: Optional[str]

    @property
    def removed(self) -> bool:
        return self.old_value is not None and self.new_value is None


StorageListener = Callable[[StorageChange], None]


class ClientStorage(Protocol):
    """Key/value state shared by every execution context of one client.

    Listeners only hear about changes made by *other* contexts, the way a
    browser's storage event never fires in the tab that wrote the value.
    """

    def get(self, key: str) -> Optional[str]: ...

    def set_many(self, values: Mapping[str, str]) -> None: ...

    def remove_many(self, keys: Iterable[str]) -> None: ...

    def subscribe(self, listener: StorageListener) -> Callable[[], None]: ...

    async def start(self) -> None: ...

    async def stop(self) -> None: ...


def _diff(before: Mapping[str, str], after: Mapping[str, str]) -> List[StorageChange]:
    changes = []
    for key in sorted(set(before) | set(after)):
        old, new = before.get(key), after.get(key)
        if old != new:
            changes.append(StorageChange(key, old, new))
    return changes


class _ListenerMixin:
    def _init_listeners(self) -> None:
        self._listeners: List[StorageListener] = []

    def subscribe(self, listener: StorageListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _emit(self, changes: Iterable[StorageChange]) -> None:
        for change in changes:
            for listener in list(self._listeners):
                try:
                    listener(change)
                except Exception as exc:
                    logger.error(
                        "storage_listener_failed",
                        key=change.key,
                        error=str(exc),
                        exc_info=True,
                    )


class SharedMemoryStorage:
    """Backing dictionary shared by several in-process contexts."""

    def __init__(self) -> None:
        self.data: Dict[str, str] = {}
        self._contexts: List["MemoryStorage"] = []

    def context(self) -> "MemoryStorage":
        return MemoryStorage(self)

    def _attach(self, context: "MemoryStorage") -> None:
        self._contexts.append(context)

    def _detach(self, context: "MemoryStorage") -> None:
        if context in self._contexts:
            self._contexts.remove(context)

    def _apply(self, origin: "MemoryStorage", updates: Mapping[str, Optional[str]]) -> None:
        before = dict(self.data)
        for key, value in updates.items():
            if value is None:
                self.data.pop(key, None)
            else:
                self.data[key] = value
        changes = _diff(before, self.data)
        if not changes:
            return
        for context in list(self._contexts):
            if context is not origin:
                context._emit(changes)


class MemoryStorage(_ListenerMixin):
    """One context's view of a ``SharedMemoryStorage``."""

    def __init__(self, shared: Optional[SharedMemoryStorage] = None) -> None:
        self._init_listeners()
        self.shared = shared or SharedMemoryStorage()
        self.shared._attach(self)

    def get(self, key: str) -> Optional[str]:
        return self.shared.data.get(key)

    def set_many(self, values: Mapping[str, str]) -> None:
        self.shared._apply(self, dict(values))

    def remove_many(self, keys: Iterable[str]) -> None:
        self.shared._apply(self, {key: None for key in keys})

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        self.shared._detach(self)


class FileStorage(_ListenerMixin):
    """JSON file shared between processes, watched by polling.

    Writes go to a temp file that is renamed over the original, so a reader
    never sees a partially written document. Each instance remembers the
    last content it saw or wrote; a poll reports the difference as changes
    made elsewhere.
    """

    def __init__(self, path: os.PathLike | str, *, poll_interval: float = 1.0) -> None:
        self._init_listeners()
        self.path = Path(path)
        self.poll_interval = poll_interval
        self._snapshot: Dict[str, str] = {}
        self._watcher: Optional[ScheduledTask] = None

    def _read(self) -> Dict[str, str]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        if not raw.strip():
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.warning("client_storage_corrupt", path=str(self.path), error=str(exc))
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(k): str(v) for k, v in data.items() if v is not None}

    def _write(self, data: Mapping[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.path.parent), prefix=f".{self.path.name}_", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(dict(data), handle, sort_keys=True)
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _update(self, updates: Mapping[str, Optional[str]]) -> None:
        data = self._read()
        for key, value in updates.items():
            if value is None:
                data.pop(key, None)
            else:
                data[key] = value
        self._write(data)
        self._snapshot = data

    def get(self, key: str) -> Optional[str]:
        return self._read().get(key)

    def set_many(self, values: Mapping[str, str]) -> None:
        self._update(dict(values))

    def remove_many(self, keys: Iterable[str]) -> None:
        self._update({key: None for key in keys})

    def poll(self) -> List[StorageChange]:
        """Compare the file with the last seen content and notify listeners."""
        current = self._read()
        changes = _diff(self._snapshot, current)
        self._snapshot = current
        if changes:
            logger.debug("client_storage_changed", keys=[c.key for c in changes])
            self._emit(changes)
        return changes

    async def _poll_once(self) -> None:
        self.poll()

    async def start(self) -> None:
        self._snapshot = self._read()
        if self._watcher is None:
            self._watcher = ScheduledTask(
                "client-storage-watch", self._poll_once, self.poll_interval
            ).start()

    async def stop(self) -> None:
        if self._watcher is not None:
            self._watcher.cancel()
            self._watcher = None
