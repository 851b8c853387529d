"""File-based session store.

One JSON record per session, named `<session_id>.json`, in a single
directory. Saves go through a temp file in the same directory followed by
`os.replace`, so a crash mid-write leaves the previous record intact.

Each save also writes a small `<session_id>.summary` index holding the
listing projection, stamped with the record file's inode, size and mtime.
Listing reads the index and only falls back to parsing the full record when
the stamp no longer matches (older records, a failed index write).

Operations on the same session id are serialized with a per-id lock;
different ids never contend.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from chiron.exceptions import CorruptSessionError, SessionNotFoundError, StorageIOError
from chiron.models.session import Session, SessionSummary

logger = logging.getLogger(__name__)

RECORD_SUFFIX = ".json"
SUMMARY_SUFFIX = ".summary"
_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_\-]*$")


class SessionStore:
    """Durable, resumable storage of sessions keyed by id."""

    def __init__(self, storage_dir: Path):
        """Initialize the store.

        Args:
            storage_dir: Directory holding one record file per session

        Raises:
            StorageIOError: If the directory cannot be created
        """
        self.storage_dir = Path(storage_dir)
        try:
            self.storage_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageIOError("initialize storage for", str(storage_dir), e) from e

        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def create(self) -> Session:
        """Allocate a new session. Nothing is written until the first save."""
        session = Session.new()
        logger.debug(f"Created session {session.id}")
        return session

    def save(self, session: Session) -> None:
        """Persist the full session, replacing any prior record atomically.

        Raises:
            ValueError: If the session has no messages
            StorageIOError: If the record could not be written
        """
        if not session.messages:
            raise ValueError(f"Refusing to save session {session.id} with no messages")

        path = self._record_path(session.id)
        record = session.to_dict()
        payload = json.dumps(record, indent=2, ensure_ascii=False)
        summary = SessionSummary.from_record(record)

        with self._lock_for(session.id):
            try:
                self._write_atomic(path, payload, prefix=f".{session.id}.")
            except OSError as e:
                logger.error(f"Failed to save session {session.id}: {e}")
                raise StorageIOError("save", session.id, e) from e

            try:
                index = {"stamp": _stamp(path), "summary": summary.to_dict()}
                self._write_atomic(
                    self._summary_path(session.id), json.dumps(index), prefix=f".{session.id}."
                )
            except OSError as e:
                # The record is durable; a stale index fails its stamp check on read
                logger.warning(f"Failed to write summary index for session {session.id}: {e}")

        logger.debug(f"Saved session {session.id} ({len(session.messages)} messages)")

    def load(self, session_id: str) -> Session:
        """Load a session by id.

        Raises:
            SessionNotFoundError: If no record exists for the id
            CorruptSessionError: If the record cannot be parsed into a valid Session
            StorageIOError: If the record could not be read
        """
        with self._lock_for(session_id):
            data = self._read_record(session_id)

        try:
            session = Session.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptSessionError(session_id, str(e)) from e

        if session.id != session_id:
            raise CorruptSessionError(
                session_id, f"record holds session id {session.id}"
            )
        return session

    def exists(self, session_id: str) -> bool:
        return self._record_path(session_id).exists()

    def summary(self, session_id: str) -> SessionSummary:
        """Read the summary projection of a single session.

        Served from the summary index when its stamp matches the record;
        otherwise the full record is parsed.

        Raises:
            SessionNotFoundError, CorruptSessionError, StorageIOError
        """
        with self._lock_for(session_id):
            indexed = self._read_summary_index(session_id)
            if indexed is not None:
                return indexed
            data = self._read_record(session_id)
        try:
            return SessionSummary.from_record(data)
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptSessionError(session_id, str(e)) from e

    def list(self) -> list[SessionSummary]:
        """List session summaries, most recently updated first.

        Unreadable records are skipped with a warning.
        """
        summaries = []
        for session_id in self.session_ids():
            try:
                summaries.append(self.summary(session_id))
            except SessionNotFoundError:
                # Deleted between directory scan and read
                continue
            except (CorruptSessionError, StorageIOError) as e:
                logger.warning(f"Skipping unreadable session {session_id}: {e}")

        summaries.sort(key=lambda s: (s.last_updated, s.id), reverse=True)
        return summaries

    def session_ids(self) -> list[str]:
        """Return the ids of all persisted records (sorted, unvalidated)."""
        try:
            return sorted(
                path.stem
                for path in self.storage_dir.glob(f"*{RECORD_SUFFIX}")
                if path.is_file() and _SESSION_ID_RE.match(path.stem)
            )
        except OSError as e:
            raise StorageIOError("list", str(self.storage_dir), e) from e

    def delete(self, session_id: str) -> None:
        """Remove a persisted session.

        Raises:
            SessionNotFoundError: If no record exists (a second delete fails)
            StorageIOError: If the record could not be removed
        """
        path = self._record_path(session_id)
        with self._lock_for(session_id):
            try:
                path.unlink()
            except FileNotFoundError as e:
                raise SessionNotFoundError(session_id) from e
            except OSError as e:
                raise StorageIOError("delete", session_id, e) from e
            try:
                self._summary_path(session_id).unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Failed to remove summary index for session {session_id}: {e}")
        logger.info(f"Deleted session {session_id}")

    def _write_atomic(self, path: Path, payload: str, prefix: str) -> None:
        tmp_name: Optional[str] = None
        try:
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=str(self.storage_dir),
                prefix=prefix,
                suffix=".tmp",
                delete=False,
            ) as tmp:
                tmp_name = tmp.name
                tmp.write(payload)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_name, path)
        except OSError:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)
            raise

    def _read_summary_index(self, session_id: str) -> Optional[SessionSummary]:
        """Return the indexed summary, or None when it is missing or stale."""
        try:
            with open(self._summary_path(session_id), "r", encoding="utf-8") as f:
                index = json.load(f)
            if not isinstance(index, dict) or index.get("stamp") != _stamp(
                self._record_path(session_id)
            ):
                return None
            summary = SessionSummary.from_dict(index.get("summary"))
        except FileNotFoundError:
            return None
        except (OSError, KeyError, TypeError, ValueError) as e:
            logger.debug(f"Ignoring summary index for session {session_id}: {e}")
            return None
        if summary.id != session_id:
            return None
        return summary

    def _read_record(self, session_id: str) -> dict:
        path = self._record_path(session_id)
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError as e:
            raise SessionNotFoundError(session_id) from e
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise CorruptSessionError(session_id, f"unparseable record: {e}") from e
        except OSError as e:
            raise StorageIOError("load", session_id, e) from e

    def _record_path(self, session_id: str) -> Path:
        if not isinstance(session_id, str) or not _SESSION_ID_RE.match(session_id):
            raise SessionNotFoundError(str(session_id))
        return self.storage_dir / f"{session_id}{RECORD_SUFFIX}"

    def _summary_path(self, session_id: str) -> Path:
        return self._record_path(session_id).with_suffix(SUMMARY_SUFFIX)

    @contextmanager
    def _lock_for(self, session_id: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks.setdefault(session_id, threading.Lock())
        with lock:
            yield


def _stamp(path: Path) -> list[int]:
    """Identify one version of a record file; os.replace gives each save a new inode."""
    stat = path.stat()
    return [stat.st_ino, stat.st_size, stat.st_mtime_ns]
