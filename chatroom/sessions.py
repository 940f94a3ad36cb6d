"""
Per-session state for the chat service.

A SessionRecord holds what the service remembers about one browser session:
the anti-forgery token issued on first contact and the time of the last
accepted post. Records live in a SessionRegistry keyed by an opaque session
id; the HTTP layer carries that id in a signed cookie.

SessionGuard applies the two write-side checks against a record: token
validation and the per-session posting interval.
"""

import hmac
import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from chatroom.errors import Forbidden, RateLimited

logger = logging.getLogger(__name__)


def new_csrf_token() -> str:
    """256 bits from the OS CSPRNG, hex encoded."""
    return secrets.token_hex(32)


@dataclass
class SessionRecord:
    session_id: str
    csrf_token: str = field(default_factory=new_csrf_token)
    last_post_ts: float = 0.0
    last_seen: float = 0.0
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)


class SessionRegistry:
    """
    Thread-safe map of session id to SessionRecord.

    Records idle for longer than ttl_seconds are dropped the next time the
    registry is touched. A record's token is fixed for its whole lifetime.
    """

    def __init__(self, ttl_seconds: float = 86400.0, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._records: Dict[str, SessionRecord] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def get(self, session_id: Optional[str]) -> Optional[SessionRecord]:
        if not session_id:
            return None
        now = self.clock()
        with self._lock:
            self._prune(now)
            record = self._records.get(session_id)
            if record is not None:
                record.last_seen = now
            return record

    def create(self) -> SessionRecord:
        now = self.clock()
        record = SessionRecord(session_id=secrets.token_urlsafe(32), last_seen=now)
        with self._lock:
            self._prune(now)
            self._records[record.session_id] = record
        logger.debug("Issued new chat session")
        return record

    def get_or_create(self, session_id: Optional[str]) -> SessionRecord:
        record = self.get(session_id)
        if record is None:
            record = self.create()
        return record

    def _prune(self, now: float) -> None:
        expired = [
            sid for sid, record in self._records.items()
            if now - record.last_seen > self.ttl_seconds
        ]
        for sid in expired:
            del self._records[sid]
        if expired:
            logger.debug(f"Expired {len(expired)} idle chat sessions")


class SessionGuard:
    """Anti-forgery token check and per-session rate limit."""

    def __init__(self, min_interval: float = 1.0, clock: Callable[[], float] = time.time):
        self.min_interval = min_interval
        self.clock = clock

    def validate_token(self, record: SessionRecord, supplied: Optional[str]) -> None:
        """Raise Forbidden unless supplied matches the session's token."""
        if not supplied or not record.csrf_token:
            raise Forbidden()
        if not hmac.compare_digest(supplied.encode("utf-8"), record.csrf_token.encode("utf-8")):
            logger.warning("Anti-forgery token mismatch")
            raise Forbidden()

    def acquire_post_slot(self, record: SessionRecord) -> float:
        """
        Claim the session's next posting slot.

        The check and the timestamp update happen under the record's lock, so
        two concurrent posts of one session cannot both pass. A rejected
        attempt leaves the window where it was.

        Returns:
            The timestamp recorded for the accepted post
        """
        with record.lock:
            now = self.clock()
            if now - record.last_post_ts < self.min_interval:
                raise RateLimited()
            record.last_post_ts = now
            return now
