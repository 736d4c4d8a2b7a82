"""
Append-only journal of committed transaction changes.

Properties:
- Append-only, newline-delimited JSON (NDJSON): one entry per line.
- CRC32 checksum per line for corruption detection.
- Explicit flush + fsync after every append.
- Thread-safe via lock.
- Timestamps from the injected clock.

The store holds the current document; the journal holds how it got there.
Every entry carries event_type and transaction_id.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import zlib
from dataclasses import asdict, is_dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Union

from dealdesk.logging import get_logger, LogStream
from dealdesk.time import Clock, RealTimeClock, ensure_utc


class TransactionLogError(RuntimeError):
    pass


class TransactionLogCorruptionError(TransactionLogError):
    """Raised when a journal line fails checksum or JSON validation."""
    pass


EventLike = Union[dict, Any]

REQUIRED_FIELDS = ("event_type", "transaction_id")


class TransactionLog:
    """
    Append-only journal.

    USAGE:
        journal = TransactionLog(Path("data/deals/transitions.log"), clock=clock)
        journal.append({"event_type": "TRANSITION", "transaction_id": "abc", ...})
        for entry in journal.history_for("abc"):
            ...
    """

    def __init__(
        self,
        path: Union[str, Path],
        *,
        clock: Optional[Clock] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.log_path: Path = Path(path)
        self.clock: Clock = clock or RealTimeClock()
        self.logger: logging.Logger = logger or get_logger(LogStream.STORE)

        self._lock = threading.Lock()
        self._file = None  # type: Optional[Any]
        self._open_file()

    def _open_file(self) -> None:
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            self._file = open(self.log_path, mode="a", encoding="utf-8", buffering=1)
        except OSError as e:
            raise TransactionLogError(f"Failed to open transaction log at {self.log_path}: {e}") from e

    # ------------------------
    # Write path
    # ------------------------

    def append(self, event: EventLike) -> None:
        """
        Append one entry as a single checksummed JSON line.

        The entry may be a dict, a dataclass instance, or an object with to_dict().

        Raises:
            ValueError: entry lacks event_type or transaction_id
            TransactionLogError: write failed
        """
        event_dict = self._to_dict(event)
        missing = [k for k in REQUIRED_FIELDS if not event_dict.get(k)]
        if missing:
            raise ValueError(f"TransactionLog entry missing required fields: {missing}")

        with self._lock:
            if self._file is None:
                self._open_file()

            try:
                event_dict["_logged_at"] = ensure_utc(self.clock.now())
                event_dict = self._normalize_json(event_dict)

                line = json.dumps(event_dict, separators=(",", ":"), ensure_ascii=False)
                checksum = zlib.crc32(line.encode("utf-8")) & 0xFFFFFFFF

                self._file.write(f"{checksum:08x}:{line}\n")
                self._file.flush()
                os.fsync(self._file.fileno())
            except (OSError, TypeError, ValueError) as e:
                self.logger.error("Failed to append to transaction log", extra={"error": str(e)}, exc_info=True)
                raise TransactionLogError(f"Failed to append to transaction log: {e}") from e

    # ------------------------
    # Read path
    # ------------------------

    def read_all(self) -> List[Dict[str, Any]]:
        return list(self.iter_events())

    def iter_events(self) -> Iterator[Dict[str, Any]]:
        """
        Iterate entries without loading everything into memory.

        Raises TransactionLogCorruptionError on checksum or JSON mismatch.
        """
        path = self.log_path
        if not path.exists():
            return iter(())

        def _gen() -> Iterator[Dict[str, Any]]:
            with open(path, mode="r", encoding="utf-8") as f:
                for line_num, line in enumerate(f, start=1):
                    line = line.strip()
                    if not line:
                        continue

                    checksum_str, sep, json_str = line.partition(":")
                    if not sep or len(checksum_str) != 8:
                        raise TransactionLogCorruptionError(
                            f"TransactionLog corruption detected at {path}:{line_num}: missing checksum"
                        )
                    try:
                        expected_checksum = int(checksum_str, 16)
                    except ValueError as e:
                        raise TransactionLogCorruptionError(
                            f"TransactionLog corruption detected at {path}:{line_num}: bad checksum {checksum_str!r}"
                        ) from e

                    actual_checksum = zlib.crc32(json_str.encode("utf-8")) & 0xFFFFFFFF
                    if actual_checksum != expected_checksum:
                        raise TransactionLogCorruptionError(
                            f"TransactionLog corruption detected at {path}:{line_num}: "
                            f"checksum mismatch (expected={expected_checksum:08x}, actual={actual_checksum:08x})"
                        )

                    try:
                        yield json.loads(json_str)
                    except json.JSONDecodeError as e:
                        raise TransactionLogCorruptionError(
                            f"TransactionLog corruption detected at {path}:{line_num}: "
                            f"invalid JSON after checksum validation: {e}"
                        ) from e

        return _gen()

    def history_for(self, transaction_id: str) -> List[Dict[str, Any]]:
        """All entries for one transaction, oldest first."""
        return [ev for ev in self.iter_events() if ev.get("transaction_id") == transaction_id]

    def filter_since(self, since: datetime) -> List[Dict[str, Any]]:
        """Return entries with _logged_at > since."""
        since = ensure_utc(since)
        out: List[Dict[str, Any]] = []
        for ev in self.iter_events():
            ts = ev.get("_logged_at")
            if ts and datetime.fromisoformat(ts.replace("Z", "+00:00")) > since:
                out.append(ev)
        return out

    def replay(self, handler: Callable[[Dict[str, Any]], Any]) -> int:
        """
        Replay all entries through handler(entry).

        Returns number of entries replayed.
        """
        n = 0
        for ev in self.iter_events():
            handler(ev)
            n += 1
        return n

    # ------------------------
    # Lifecycle
    # ------------------------

    def close(self) -> None:
        with self._lock:
            try:
                if self._file is not None:
                    self._file.flush()
                    self._file.close()
            finally:
                self._file = None
        self.logger.info("TransactionLog closed", extra={"log_path": str(self.log_path)})

    def __enter__(self) -> "TransactionLog":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------
    # Helpers
    # ------------------------

    @staticmethod
    def _to_dict(event: EventLike) -> Dict[str, Any]:
        if isinstance(event, dict):
            return dict(event)
        to_dict = getattr(event, "to_dict", None)
        if callable(to_dict):
            return dict(to_dict())
        if is_dataclass(event):
            return asdict(event)
        raise TypeError(f"Unsupported event type for TransactionLog.append(): {type(event)!r}")

    @staticmethod
    def _normalize_json(obj: Any) -> Any:
        """Recursively convert common non-JSON types to JSON-serializable values."""
        if obj is None:
            return None

        if isinstance(obj, dict):
            return {str(k.value if isinstance(k, Enum) else k): TransactionLog._normalize_json(v)
                    for k, v in obj.items()}

        if isinstance(obj, (list, tuple, set, frozenset)):
            return [TransactionLog._normalize_json(v) for v in obj]

        if isinstance(obj, Enum):
            return obj.value

        # Decimal -> string (preserves precision)
        if isinstance(obj, Decimal):
            return str(obj)

        if isinstance(obj, datetime):
            dt = obj if obj.tzinfo is not None else obj.replace(tzinfo=timezone.utc)
            return dt.isoformat().replace("+00:00", "Z")

        if isinstance(obj, Path):
            return str(obj)

        to_dict = getattr(obj, "to_dict", None)
        if callable(to_dict):
            return TransactionLog._normalize_json(to_dict())

        if is_dataclass(obj):
            return TransactionLog._normalize_json(asdict(obj))

        return obj
