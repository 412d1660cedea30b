"""
storage.py
-----------
Session persistence for issued authorization requests.

A session joins an issued request to its later callback. Each session is
single-use: the first callback consumes it, whatever the verification
outcome, and issued sessions expire after a TTL.

Backends:
- MemorySessionStore : dict guarded by a lock (tests, single process)
- SQLiteSessionStore : sqlite3 file (survives restarts)
"""

import json
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

ISSUED = "issued"
VERIFYING = "verifying"
VERIFIED = "verified"
FAILED = "failed"

STATES = (ISSUED, VERIFYING, VERIFIED, FAILED)


class SessionError(RuntimeError):
    """Base class for session lookup failures."""

    def __init__(self, session_id: str, message: str = ""):
        self.session_id = session_id
        super().__init__(message or f"{self.__class__.__name__}: {session_id}")


class SessionNotFound(SessionError):
    """Raised when no request was ever issued for a session id."""


class SessionExpired(SessionError):
    """Raised when the session's TTL ran out before the callback."""


class SessionAlreadyConsumed(SessionError):
    """Raised when a callback arrives for a session that already had one."""


@dataclass
class Session:
    session_id: str
    request: dict
    created_at: int
    expires_at: int
    state: str = ISSUED

    def is_expired(self, now: Optional[int] = None) -> bool:
        now = int(time.time()) if now is None else now
        return now > self.expires_at


class SessionStore:
    """
    Storage contract for sessions.

    put() replaces whatever was stored under the id. consume() atomically
    moves an issued, unexpired session to VERIFYING and returns it; every
    other caller racing on the same id gets SessionAlreadyConsumed.
    set_state() with a request_id only touches the session if it still holds
    that request.
    """

    def __init__(self, ttl: int):
        self.ttl = ttl

    def put(self, session_id: str, request: dict) -> Session:
        raise NotImplementedError

    def get(self, session_id: str) -> Optional[Session]:
        raise NotImplementedError

    def delete(self, session_id: str) -> None:
        raise NotImplementedError

    def consume(self, session_id: str) -> Session:
        raise NotImplementedError

    def set_state(self, session_id: str, state: str, request_id: Optional[str] = None) -> None:
        raise NotImplementedError

    def purge_expired(self) -> int:
        raise NotImplementedError

    def _new_session(self, session_id: str, request: dict) -> Session:
        now = int(time.time())
        return Session(session_id, request, now, now + self.ttl)


class MemorySessionStore(SessionStore):

    def __init__(self, ttl: int):
        super().__init__(ttl)
        self._sessions = {}
        self._lock = threading.Lock()

    def put(self, session_id, request):
        session = self._new_session(session_id, request)
        with self._lock:
            if session_id in self._sessions:
                logger.info("Replacing stored request for session %s", session_id)
            self._sessions[session_id] = session
        return session

    def get(self, session_id):
        with self._lock:
            return self._sessions.get(session_id)

    def delete(self, session_id):
        with self._lock:
            self._sessions.pop(session_id, None)

    def consume(self, session_id):
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFound(session_id)
            if session.state != ISSUED:
                raise SessionAlreadyConsumed(session_id)
            if session.is_expired():
                raise SessionExpired(session_id)
            session.state = VERIFYING
            return session

    def set_state(self, session_id, state, request_id=None):
        if state not in STATES:
            raise ValueError(f"Unknown session state: {state}")
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFound(session_id)
            if request_id is not None and session.request.get("id") != request_id:
                logger.info("Session %s was reissued, leaving new request untouched", session_id)
                return
            session.state = state

    def purge_expired(self):
        now = int(time.time())
        with self._lock:
            stale = [k for k, s in self._sessions.items() if s.is_expired(now)]
            for k in stale:
                del self._sessions[k]
        return len(stale)


class SQLiteSessionStore(SessionStore):
    """Sessions in a sqlite3 file; one short-lived connection per call."""

    def __init__(self, db_path: str, ttl: int):
        super().__init__(ttl)
        self.db_path = db_path
        self.init_db()

    def _get_conn(self):
        return sqlite3.connect(self.db_path, timeout=10)

    def init_db(self):
        conn = self._get_conn()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS sessions (
                    session_id TEXT PRIMARY KEY,
                    request_id TEXT,
                    request TEXT NOT NULL,
                    created_at INTEGER NOT NULL,
                    expires_at INTEGER NOT NULL,
                    state TEXT NOT NULL DEFAULT 'issued'
                );
            """)
            conn.commit()
        finally:
            conn.close()

    def put(self, session_id, request):
        session = self._new_session(session_id, request)
        conn = self._get_conn()
        try:
            conn.execute(
                "INSERT OR REPLACE INTO sessions (session_id, request_id, request, created_at, expires_at, state) "
                "VALUES (?, ?, ?, ?, ?, ?);",
                (session_id, request.get("id"), json.dumps(request), session.created_at,
                 session.expires_at, ISSUED)
            )
            conn.commit()
        finally:
            conn.close()
        return session

    def get(self, session_id):
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT session_id, request, created_at, expires_at, state "
                "FROM sessions WHERE session_id=?;",
                (session_id,)
            ).fetchone()
        finally:
            conn.close()
        if not row:
            return None
        return Session(row[0], json.loads(row[1]), row[2], row[3], row[4])

    def delete(self, session_id):
        conn = self._get_conn()
        try:
            conn.execute("DELETE FROM sessions WHERE session_id=?;", (session_id,))
            conn.commit()
        finally:
            conn.close()

    def consume(self, session_id):
        now = int(time.time())
        conn = self._get_conn()
        try:
            # UPDATE and SELECT share one write transaction
            cur = conn.execute(
                "UPDATE sessions SET state=? WHERE session_id=? AND state=? AND expires_at>=?;",
                (VERIFYING, session_id, ISSUED, now)
            )
            claimed = cur.rowcount == 1
            row = conn.execute(
                "SELECT session_id, request, created_at, expires_at, state "
                "FROM sessions WHERE session_id=?;",
                (session_id,)
            ).fetchone()
            conn.commit()
        finally:
            conn.close()

        if row is None:
            raise SessionNotFound(session_id)
        session = Session(row[0], json.loads(row[1]), row[2], row[3], row[4])
        if not claimed:
            if session.state != ISSUED:
                raise SessionAlreadyConsumed(session_id)
            raise SessionExpired(session_id)
        return session

    def set_state(self, session_id, state, request_id=None):
        if state not in STATES:
            raise ValueError(f"Unknown session state: {state}")
        conn = self._get_conn()
        try:
            exists = conn.execute(
                "SELECT 1 FROM sessions WHERE session_id=?;", (session_id,)
            ).fetchone()
            cur = conn.execute(
                "UPDATE sessions SET state=? WHERE session_id=? AND (? IS NULL OR request_id=?);",
                (state, session_id, request_id, request_id)
            )
            conn.commit()
            updated = cur.rowcount == 1
        finally:
            conn.close()
        if not exists:
            raise SessionNotFound(session_id)
        if not updated:
            logger.info("Session %s was reissued, leaving new request untouched", session_id)

    def purge_expired(self):
        conn = self._get_conn()
        try:
            cur = conn.execute(
                "DELETE FROM sessions WHERE expires_at<?;", (int(time.time()),)
            )
            conn.commit()
            return cur.rowcount
        finally:
            conn.close()


def make_store(db_path: str, ttl: int) -> SessionStore:
    if db_path:
        return SQLiteSessionStore(db_path, ttl)
    return MemorySessionStore(ttl)
