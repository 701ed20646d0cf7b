"""Audit trail helpers: rotating JSONL files and atomically replaced JSON state surfaces."""

from __future__ import annotations

import dataclasses
import datetime as _dt
import enum
import gzip
import json
import logging
import os
import shutil
import socket
import tempfile
import threading
from decimal import Decimal
from fractions import Fraction
from pathlib import Path
from typing import Any, Mapping, MutableMapping

REPO_ROOT = Path(__file__).resolve().parent.parent
_HOSTNAME = socket.gethostname()
LOG = logging.getLogger("treasury.log_utils")


def _generation(path: Path, index: int) -> Path:
    """``events.jsonl`` -> ``events.2.jsonl`` for index 2; index 0 is the live file."""
    if index == 0:
        return path
    return path.with_name(f"{path.stem}.{index}{path.suffix}")


def _gzip_away(path: Path, archive_dir: Path) -> None:
    stamp = _dt.datetime.now(tz=_dt.timezone.utc).strftime("%Y%m%dT%H%M%S%f")
    archive_dir.mkdir(parents=True, exist_ok=True)
    target = archive_dir / f"{path.name}.{stamp}.gz"
    try:
        with path.open("rb") as src, gzip.open(target, "wb") as dst:
            shutil.copyfileobj(src, dst)
    except OSError as exc:
        LOG.warning("[log_utils] archive failed for %s: %s", path, exc)
        return
    path.unlink(missing_ok=True)


def rotate_generations(path: Path, keep: int) -> None:
    """Shift live -> .1 -> .2 ... -> .keep; the generation pushed past ``keep`` is gzipped."""
    oldest = _generation(path, keep)
    if oldest.exists():
        _gzip_away(oldest, path.parent / "archive")
    for index in range(keep, 0, -1):
        newer = _generation(path, index - 1)
        if newer.exists():
            os.replace(newer, _generation(path, index))


class JsonlLogger:
    """One JSON object per line; rotates by size before a write would overflow."""

    def __init__(self, path: Path, max_bytes: int, backup_count: int) -> None:
        self._path = Path(path)
        self.max_bytes = max_bytes
        self.backup_count = backup_count
        self._lock = threading.RLock()

    @property
    def path(self) -> Path:
        return self._path

    def write(self, record: Mapping[str, Any] | None) -> None:
        line = json.dumps(safe_dump(record), ensure_ascii=False) + "\n"
        data = line.encode("utf-8")
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            if self._should_rotate(len(data)):
                rotate_generations(self._path, self.backup_count)
            fd = os.open(self._path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o644)
            try:
                os.write(fd, data)
                os.fsync(fd)
            finally:
                os.close(fd)

    def _should_rotate(self, incoming: int) -> bool:
        if self.max_bytes <= 0 or self.backup_count <= 0:
            return False
        try:
            size = self._path.stat().st_size
        except FileNotFoundError:
            return False
        return size + incoming > self.max_bytes


def get_logger(path: str | Path, max_bytes: int = 10_000_000, backup_count: int = 5) -> JsonlLogger:
    """Relative paths resolve against the repository root so cwd does not matter."""
    target = Path(path)
    if not target.is_absolute():
        target = REPO_ROOT / target
    return JsonlLogger(target, max_bytes=max_bytes, backup_count=backup_count)


def log_event(logger: JsonlLogger, event_type: str, payload: Mapping[str, Any] | None) -> None:
    record = safe_dump(payload)
    record.setdefault("ts", _dt.datetime.now(tz=_dt.timezone.utc).isoformat())
    record["event_type"] = event_type
    record["pid"] = os.getpid()
    record["hostname"] = _HOSTNAME
    logger.write(record)


def atomic_write_json(path: str | Path, payload: Any) -> None:
    """Readers see either the previous surface or the new one, never a partial file."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=".tmp_", dir=target.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(safe_dump(payload), handle, indent=2, sort_keys=True)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, target)
    finally:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)


def _jsonable(value: Any) -> Any:
    # amounts are arbitrary-precision ints and pass through untouched
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (Decimal, Fraction)):
        return str(value)
    if isinstance(value, enum.Enum):
        return _jsonable(value.value)
    if isinstance(value, _dt.datetime):
        aware = value if value.tzinfo else value.replace(tzinfo=_dt.timezone.utc)
        return aware.astimezone(_dt.timezone.utc).isoformat()
    if isinstance(value, _dt.date):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(v) for v in value]
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return _jsonable(dataclasses.asdict(value))
    if hasattr(value, "__dict__"):
        return _jsonable(vars(value))
    return repr(value)


def safe_dump(obj: Any) -> MutableMapping[str, Any]:
    """Coerce a record into a JSON-ready dict; Decimal and Fraction become strings."""
    if obj is None:
        return {}
    converted = _jsonable(obj)
    if isinstance(converted, dict):
        return converted
    return {"value": converted}


__all__ = [
    "JsonlLogger",
    "get_logger",
    "log_event",
    "rotate_generations",
    "atomic_write_json",
    "safe_dump",
]
