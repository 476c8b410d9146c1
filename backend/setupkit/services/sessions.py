"""Operator session context.

Everything a browser would otherwise stash in local/session storage lives
here, explicitly: the last connectivity test, whether the backup-failed
fallback has been offered, interim progress messages and the cancellation
signal that stops readiness polling when the operator leaves.
"""

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime

from setupkit.services.connection_string import DatabaseProvider
from setupkit.services.connectivity import ConnectivityTestResult

logger = logging.getLogger(__name__)

MAX_PROGRESS_MESSAGES = 50


@dataclass(frozen=True)
class RecordedTest:
    provider: DatabaseProvider
    connection_string: str
    result: ConnectivityTestResult

    def matches(self, provider: DatabaseProvider, connection_string: str) -> bool:
        return self.provider == provider and self.connection_string == connection_string


@dataclass
class SetupSession:
    session_id: str
    operator: str
    created_at: datetime = field(default_factory=datetime.utcnow)
    latest_test: RecordedTest | None = None
    backup_fallback_offered: bool = False
    progress_messages: deque = field(default_factory=lambda: deque(maxlen=MAX_PROGRESS_MESSAGES))
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    def record_test(self, provider: DatabaseProvider, connection_string: str, result: ConnectivityTestResult) -> None:
        self.latest_test = RecordedTest(provider, connection_string, result)

    def has_successful_test(self, provider: DatabaseProvider, connection_string: str) -> bool:
        return (
            self.latest_test is not None
            and self.latest_test.result.success
            and self.latest_test.matches(provider, connection_string)
        )

    def report(self, message: str) -> None:
        self.progress_messages.append(
            {"at": datetime.utcnow().isoformat(), "message": message}
        )

    @property
    def closed(self) -> bool:
        return self.cancel_event.is_set()


class SessionRegistry:
    """Process-wide registry of open operator sessions."""

    def __init__(self):
        self._sessions: dict[str, SetupSession] = {}

    def open(self, operator: str) -> SetupSession:
        session = SetupSession(session_id=str(uuid.uuid4()), operator=operator)
        self._sessions[session.session_id] = session
        logger.info("Setup session opened for %s", operator)
        return session

    def get(self, session_id: str | None) -> SetupSession | None:
        if not session_id:
            return None
        return self._sessions.get(session_id)

    def close(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is not None:
            session.cancel_event.set()
            logger.info("Setup session closed for %s", session.operator)

    def clear(self) -> None:
        for session_id in list(self._sessions):
            self.close(session_id)


registry = SessionRegistry()
