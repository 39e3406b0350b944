"""
Session persistence.

The engine only talks to the SessionStore protocol; InMemorySessionStore is
the default backing used by the CLI and the tests. A durable store (database,
redis, ...) implements the same coroutines.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Protocol

from buildloop.core.config import settings
from buildloop.core.logging_config import logger
from buildloop.schemas.session import (
    ChatMessage,
    FileChange,
    Framework,
    MessageRole,
    SessionPhase,
    SessionPlan,
)


class SessionStore(Protocol):
    """Get/set operations keyed by session id"""

    async def get_history(self, session_id: str) -> List[ChatMessage]: ...

    async def add_message(self, session_id: str, role: MessageRole, content: str) -> ChatMessage: ...

    async def set_plan(self, session_id: str, plan: SessionPlan) -> SessionPlan: ...

    async def get_plan(self, session_id: str) -> Optional[SessionPlan]: ...

    async def approve_plan(self, session_id: str) -> Optional[SessionPlan]: ...

    async def get_phase(self, session_id: str) -> SessionPhase: ...

    async def set_phase(self, session_id: str, phase: SessionPhase) -> None: ...

    async def get_framework(self, session_id: str) -> Framework: ...

    async def set_framework(self, session_id: str, framework: Framework) -> None: ...

    async def track_file_change(self, session_id: str, path: str, action: str) -> None: ...

    async def get_changed_files(self, session_id: str) -> List[FileChange]: ...

    async def clear_changed_files(self, session_id: str) -> None: ...


@dataclass
class _SessionRecord:
    phase: SessionPhase = SessionPhase.IDLE
    framework: Optional[Framework] = None
    history: List[ChatMessage] = field(default_factory=list)
    plans: List[SessionPlan] = field(default_factory=list)
    changed_files: Dict[str, FileChange] = field(default_factory=dict)
    updated_at: datetime = field(default_factory=datetime.utcnow)


class InMemorySessionStore:
    """
    Process-local SessionStore.

    Holds at most one pending plan per session: storing a new plan drops any
    plan that was never approved.
    """

    def __init__(self):
        self._sessions: Dict[str, _SessionRecord] = {}
        self._lock = threading.Lock()

    def _record(self, session_id: str) -> _SessionRecord:
        record = self._sessions.get(session_id)
        if record is None:
            record = _SessionRecord()
            self._sessions[session_id] = record
        return record

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def get_history(self, session_id: str) -> List[ChatMessage]:
        with self._lock:
            return list(self._record(session_id).history)

    async def add_message(self, session_id: str, role: MessageRole, content: str) -> ChatMessage:
        message = ChatMessage(role=role, content=content)
        with self._lock:
            record = self._record(session_id)
            record.history.append(message)
            record.updated_at = datetime.utcnow()
        return message

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------

    async def set_plan(self, session_id: str, plan: SessionPlan) -> SessionPlan:
        with self._lock:
            record = self._record(session_id)
            superseded = [p for p in record.plans if not p.approved]
            record.plans = [p for p in record.plans if p.approved]
            record.plans.append(plan)
            record.updated_at = datetime.utcnow()

        if superseded:
            logger.info(f"[Store:{session_id}] Plan {plan.id} supersedes {len(superseded)} pending plan(s)")
        return plan

    async def get_plan(self, session_id: str) -> Optional[SessionPlan]:
        """Newest plan still waiting for approval"""
        with self._lock:
            pending = [p for p in self._record(session_id).plans if not p.approved]
            return pending[-1] if pending else None

    async def approve_plan(self, session_id: str) -> Optional[SessionPlan]:
        with self._lock:
            pending = [p for p in self._record(session_id).plans if not p.approved]
            if not pending:
                return None
            plan = pending[-1]
            plan.approved = True
            plan.approved_at = datetime.utcnow()
            return plan

    # ------------------------------------------------------------------
    # Phase / framework
    # ------------------------------------------------------------------

    async def get_phase(self, session_id: str) -> SessionPhase:
        with self._lock:
            return self._record(session_id).phase

    async def set_phase(self, session_id: str, phase: SessionPhase) -> None:
        with self._lock:
            record = self._record(session_id)
            record.phase = phase
            record.updated_at = datetime.utcnow()

    async def get_framework(self, session_id: str) -> Framework:
        with self._lock:
            framework = self._record(session_id).framework
        return framework or Framework(settings.DEFAULT_FRAMEWORK)

    async def set_framework(self, session_id: str, framework: Framework) -> None:
        with self._lock:
            self._record(session_id).framework = Framework(framework)

    # ------------------------------------------------------------------
    # Changed files
    # ------------------------------------------------------------------

    async def track_file_change(self, session_id: str, path: str, action: str) -> None:
        with self._lock:
            changes = self._record(session_id).changed_files
            previous = changes.get(path)
            # A file created in this run stays "created" through later edits
            if previous is not None and previous.action == "created" and action == "modified":
                action = "created"
            changes[path] = FileChange(path=path, action=action)

    async def get_changed_files(self, session_id: str) -> List[FileChange]:
        with self._lock:
            return list(self._record(session_id).changed_files.values())

    async def clear_changed_files(self, session_id: str) -> None:
        with self._lock:
            self._record(session_id).changed_files.clear()
