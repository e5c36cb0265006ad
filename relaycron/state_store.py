"""Durable per-group storage for sessions and task due dates."""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from threading import RLock
from typing import Any, Callable, Dict, Optional

from filelock import FileLock
import yaml

from .models import SessionRecord, TaskKey, TaskRuntimeRecord

logger = logging.getLogger(__name__)


class StateStoreError(RuntimeError):
    """Raised when a record cannot be read or written."""


class StateStore:
    """YAML document holding session and task records of one task group.

    Every write re-reads the document under a file lock, replaces only the
    addressed record and atomically swaps the file, so a failed write never
    corrupts other records and a returned write is on disk.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = FileLock(str(self.path) + ".lock")
        self._mutex = RLock()
        self._data: Dict[str, Any] = self._load()

    @classmethod
    def for_group(cls, name: str, directory: str | Path) -> "StateStore":
        return cls(Path(directory) / f"{name}-state.yml")

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {"sessions": {}, "callback_entities": {}}
        try:
            with open(self.path, "r") as fh:
                data = yaml.safe_load(fh) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise StateStoreError(f"Cannot read {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise StateStoreError(f"{self.path}: document must be a mapping")
        data.setdefault("sessions", {})
        data.setdefault("callback_entities", {})
        return data

    def _write(self, data: Dict[str, Any]) -> None:
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp, "w") as fh:
            yaml.safe_dump(data, fh, sort_keys=True, allow_unicode=True)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, self.path)

    def _update(self, mutate: Callable[[Dict[str, Any]], None]) -> None:
        with self._mutex:
            try:
                with self._lock:
                    current = self._load()
                    mutate(current)
                    self._write(current)
            except StateStoreError:
                raise
            except (OSError, yaml.YAMLError) as exc:
                raise StateStoreError(f"Cannot write {self.path}: {exc}") from exc
            self._data = current

    # ------------------------------------------------------------------
    # Sessions

    def get_session(self, identity: str) -> Optional[SessionRecord]:
        with self._mutex:
            entry = self._data["sessions"].get(str(identity)) or {}
        wrapper = entry.get("headers_wrapper")
        if not wrapper:
            return None
        try:
            return SessionRecord.from_dict(wrapper)
        except (KeyError, TypeError, ValueError) as exc:
            raise StateStoreError(
                f"{self.path}: malformed session for {identity!r}: {exc}"
            ) from exc

    def set_session(self, identity: str, record: SessionRecord) -> None:
        def mutate(data: Dict[str, Any]) -> None:
            entry = data["sessions"].setdefault(str(identity), {})
            entry["headers_wrapper"] = record.to_dict()

        self._update(mutate)
        logger.debug(
            "Session stored path=%s identity=%s expires=%s",
            self.path,
            identity,
            record.expiration_date.isoformat(),
        )

    # ------------------------------------------------------------------
    # Task records

    def get_task_record(self, identity: str, key: TaskKey) -> Optional[TaskRuntimeRecord]:
        with self._mutex:
            entries = self._data["callback_entities"].get(str(identity)) or {}
            raw = entries.get(str(key))
        if raw is None:
            return None
        try:
            return TaskRuntimeRecord.from_dict(raw)
        except (KeyError, TypeError, ValueError) as exc:
            raise StateStoreError(
                f"{self.path}: malformed record for {key} ({identity!r}): {exc}"
            ) from exc

    def set_task_record(
        self, identity: str, key: TaskKey, record: TaskRuntimeRecord
    ) -> None:
        def mutate(data: Dict[str, Any]) -> None:
            entries = data["callback_entities"].setdefault(str(identity), {})
            entries[str(key)] = record.to_dict()

        self._update(mutate)

    def snapshot(self) -> Dict[str, Any]:
        with self._mutex:
            return copy.deepcopy(self._data)
