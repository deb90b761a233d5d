from __future__ import annotations

import logging
import os
import tempfile
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

import yaml

from autospec.errors import AutospecError

logger = logging.getLogger(__name__)

HISTORY_FILE_NAME = "history.yaml"
BACKUP_SUFFIX = ".backup"
STALE_LOCK_SECONDS = 60.0

STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"


class HistoryError(AutospecError):
    """Raised when the history file cannot be read or written."""


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class ExecutionRecord:
    command: str
    feature: str
    started_at: str
    duration_seconds: float
    success: bool
    status: str = STATUS_COMPLETED
    exit_code: int = 0
    id: str = ""

    def __post_init__(self) -> None:
        if not self.id:
            self.id = uuid4().hex[:12]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ExecutionRecord:
        return cls(
            command=str(payload.get("command", "")),
            feature=str(payload.get("feature") or ""),
            started_at=str(payload.get("started_at", "")),
            duration_seconds=float(payload.get("duration_seconds", 0.0)),
            success=bool(payload.get("success", False)),
            status=str(payload.get("status", STATUS_COMPLETED)),
            exit_code=int(payload.get("exit_code", 0)),
            id=str(payload.get("id", "")),
        )


class HistoryWriter:
    """Append-only command history with oldest-first eviction."""

    def __init__(self, state_dir: Path, max_entries: int = 500) -> None:
        self.state_dir = state_dir
        self.max_entries = max_entries

    @property
    def path(self) -> Path:
        return self.state_dir / HISTORY_FILE_NAME

    @property
    def lock_file(self) -> Path:
        return self.state_dir / ".history.lock"

    @contextmanager
    def _history_lock(self, timeout_seconds: float = 3.0):
        self.state_dir.mkdir(parents=True, exist_ok=True)
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if self._lock_is_stale():
                    logger.warning("Removing stale history lock %s", self.lock_file)
                    self._release_lock()
                    continue
                if time.monotonic() - start > timeout_seconds:
                    raise HistoryError("Timed out waiting for history lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            self._release_lock()

    def _release_lock(self) -> None:
        try:
            self.lock_file.unlink()
        except FileNotFoundError:
            pass

    def _lock_is_stale(self) -> bool:
        """A lock is stale when its owner is gone or it outlived any real write."""
        try:
            owner = self.lock_file.read_text(encoding="utf-8").strip()
            age = time.time() - self.lock_file.stat().st_mtime
        except FileNotFoundError:
            return False
        if age > STALE_LOCK_SECONDS:
            return True
        if not owner.isdigit():
            return False
        try:
            os.kill(int(owner), 0)
        except ProcessLookupError:
            return True
        except PermissionError:
            return False
        return False

    def _backup_corrupted(self) -> None:
        backup = self.path.with_name(self.path.name + BACKUP_SUFFIX)
        os.replace(self.path, backup)
        logger.warning("History file was corrupted; moved it to %s", backup)

    def load(self) -> list[ExecutionRecord]:
        if not self.path.exists():
            return []
        try:
            payload = yaml.safe_load(self.path.read_text(encoding="utf-8"))
        except yaml.YAMLError:
            self._backup_corrupted()
            return []
        if payload is None:
            return []
        entries = payload.get("entries") if isinstance(payload, dict) else None
        if not isinstance(entries, list):
            self._backup_corrupted()
            return []
        try:
            return [ExecutionRecord.from_dict(item) for item in entries if isinstance(item, dict)]
        except (TypeError, ValueError):
            self._backup_corrupted()
            return []

    def _save(self, records: list[ExecutionRecord]) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        serialized = yaml.safe_dump(
            {"entries": [record.to_dict() for record in records]},
            sort_keys=False,
            allow_unicode=True,
        )
        with tempfile.NamedTemporaryFile(
            mode="w",
            encoding="utf-8",
            dir=self.state_dir,
            prefix=".history-",
            suffix=".tmp",
            delete=False,
        ) as temp_file:
            temp_file.write(serialized)
            temp_path = temp_file.name
        try:
            os.replace(temp_path, self.path)
        except OSError:
            os.unlink(temp_path)
            raise

    def append(self, record: ExecutionRecord) -> None:
        with self._history_lock():
            records = self.load()
            records.append(record)
            if self.max_entries > 0 and len(records) > self.max_entries:
                records = records[len(records) - self.max_entries :]
            self._save(records)

    def log_command(
        self,
        command: str,
        feature: str,
        started_at: str,
        duration_seconds: float,
        success: bool,
        *,
        status: str | None = None,
        exit_code: int | None = None,
    ) -> ExecutionRecord:
        resolved_status = status or (STATUS_COMPLETED if success else STATUS_FAILED)
        record = ExecutionRecord(
            command=command,
            feature=feature,
            started_at=started_at or _utcnow_iso(),
            duration_seconds=round(duration_seconds, 3),
            success=success,
            status=resolved_status,
            exit_code=(0 if success else 1) if exit_code is None else exit_code,
        )
        self.append(record)
        return record

    def clear(self) -> None:
        with self._history_lock():
            self._save([])
