"""
Session phase state machine.

    idle → planning → awaiting_approval → coding → verifying → complete

Fast mode and repair enter coding directly from any phase. A failure leaves
the phase where it was; the caller decides whether to retry (any entry
transition is allowed again) or reset to idle.

The phase itself lives in the SessionStore so it survives restarts; this
module validates and logs changes and keeps a short transition history.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional, Set

from buildloop.core.exceptions import InvalidPhaseTransitionError
from buildloop.core.logging_config import logger
from buildloop.schemas.session import SessionPhase
from buildloop.services.persistence import SessionStore


PHASE_TRANSITIONS: Dict[SessionPhase, Set[SessionPhase]] = {
    SessionPhase.IDLE: {SessionPhase.PLANNING, SessionPhase.CODING},
    SessionPhase.PLANNING: {
        SessionPhase.AWAITING_APPROVAL, SessionPhase.PLANNING,
        SessionPhase.CODING, SessionPhase.IDLE,
    },
    SessionPhase.AWAITING_APPROVAL: {SessionPhase.CODING, SessionPhase.PLANNING, SessionPhase.IDLE},
    SessionPhase.CODING: {
        SessionPhase.VERIFYING, SessionPhase.COMPLETE, SessionPhase.CODING,
        SessionPhase.PLANNING, SessionPhase.IDLE,
    },
    SessionPhase.VERIFYING: {
        SessionPhase.COMPLETE, SessionPhase.PLANNING, SessionPhase.CODING, SessionPhase.IDLE,
    },
    SessionPhase.COMPLETE: {SessionPhase.PLANNING, SessionPhase.CODING, SessionPhase.IDLE},
}


@dataclass
class PhaseTransition:
    """Record of a phase transition"""
    from_phase: str
    to_phase: str
    timestamp: datetime = field(default_factory=datetime.utcnow)
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from": self.from_phase,
            "to": self.to_phase,
            "timestamp": self.timestamp.isoformat(),
            "reason": self.reason,
        }


class SessionStateMachine:
    """Validated phase changes for all sessions, persisted through the store"""

    def __init__(self, store: SessionStore, max_history: int = 50):
        self.store = store
        self.max_history = max_history
        self._history: Dict[str, Deque[PhaseTransition]] = {}

    async def current(self, session_id: str) -> SessionPhase:
        return await self.store.get_phase(session_id)

    @staticmethod
    def can_transition(from_phase: SessionPhase, to_phase: SessionPhase) -> bool:
        return to_phase in PHASE_TRANSITIONS.get(from_phase, set())

    async def transition(
        self,
        session_id: str,
        to_phase: SessionPhase,
        reason: Optional[str] = None,
        expected: Optional[SessionPhase] = None
    ) -> bool:
        """
        Move a session to a new phase.

        Args:
            session_id: Session to update
            to_phase: Target phase
            reason: Why the transition is happening (logged)
            expected: Only transition if the session is currently in this
                phase; returns False instead of raising when it is not

        Raises:
            InvalidPhaseTransitionError: if the transition is not allowed
        """
        from_phase = await self.store.get_phase(session_id)

        if expected is not None and from_phase != expected:
            logger.debug(
                f"[Phase:{session_id}] Skipping {to_phase.value}: "
                f"expected {expected.value}, found {from_phase.value}"
            )
            return False

        if not self.can_transition(from_phase, to_phase):
            allowed = PHASE_TRANSITIONS.get(from_phase, set())
            logger.warning(
                f"[Phase:{session_id}] Invalid transition: {from_phase.value} → {to_phase.value}. "
                f"Allowed: {sorted(p.value for p in allowed)}"
            )
            raise InvalidPhaseTransitionError(session_id, from_phase.value, to_phase.value)

        await self.store.set_phase(session_id, to_phase)
        history = self._history.setdefault(session_id, deque(maxlen=self.max_history))
        history.append(PhaseTransition(from_phase.value, to_phase.value, reason=reason))

        logger.info(
            f"[Phase:{session_id}] State transition: {from_phase.value} → {to_phase.value}"
            + (f" ({reason})" if reason else "")
        )
        return True

    async def reset(self, session_id: str, reason: str = "reset") -> None:
        """Return a session to idle after the caller abandons a failed run"""
        if await self.current(session_id) == SessionPhase.IDLE:
            return
        await self.transition(session_id, SessionPhase.IDLE, reason=reason)

    def get_history(self, session_id: str, limit: int = 10) -> List[PhaseTransition]:
        return list(self._history.get(session_id, ()))[-limit:]
