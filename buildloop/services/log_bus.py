"""
Runtime log bus - per-session buffers of errors reported by the live preview.

The preview page carries ERROR_CAPTURE_SCRIPT, which posts uncaught
exceptions, unhandled promise rejections and console errors back to the
transport layer; the transport calls RuntimeLogBus.add_runtime_error.

Each session buffer:
- is capped at RUNTIME_LOG_LIMIT entries, oldest dropped first
- ignores an error whose text is already buffered
- is mutated only under its own lock
"""

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Deque, Dict, List, Optional

from buildloop.core.config import settings
from buildloop.core.logging_config import logger


RUNTIME_ERROR_TYPES = ("Uncaught Exception", "Unhandled Rejection", "Console Error")

# Injected into preview pages; reports errors to the ingestion endpoint.
ERROR_CAPTURE_SCRIPT = """
<script>
(function () {
  var endpoint = window.__BUILDLOOP_LOG_ENDPOINT__ || '/api/preview/logs';
  function report(type, message, stack) {
    try {
      fetch(endpoint, {
        method: 'POST',
        headers: { 'Content-Type': 'application/json' },
        body: JSON.stringify({ type: type, message: String(message), stack: stack || null })
      });
    } catch (e) {}
  }
  window.addEventListener('error', function (event) {
    report('Uncaught Exception', event.message, event.error && event.error.stack);
  });
  window.addEventListener('unhandledrejection', function (event) {
    var reason = event.reason || {};
    report('Unhandled Rejection', reason.message || reason, reason.stack);
  });
  var originalError = console.error;
  console.error = function () {
    var args = Array.prototype.slice.call(arguments);
    report('Console Error', args.map(String).join(' '), new Error().stack);
    originalError.apply(console, args);
  };
})();
</script>
"""


@dataclass
class DiagnosticEntry:
    """One error block, either parsed from build output or reported at runtime"""
    text: str
    source: str  # build | runtime
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def format(self) -> str:
        if self.source == "runtime":
            return f"[{self.timestamp.isoformat()}Z] {self.text}"
        return self.text

    def to_dict(self) -> Dict[str, str]:
        return {
            "text": self.text,
            "source": self.source,
            "timestamp": self.timestamp.isoformat(),
        }


def format_runtime_error(message: str, stack: Optional[str] = None,
                         error_type: Optional[str] = None) -> str:
    """Body of a runtime entry; the timestamp is added when rendered"""
    return f"{error_type or 'Error'}: {message}\nStack: {stack or 'N/A'}"


class RuntimeLogBuffer:
    """Bounded, deduplicated runtime error log for one session"""

    def __init__(self, session_id: str, limit: int = None):
        self.session_id = session_id
        self.limit = limit or settings.RUNTIME_LOG_LIMIT
        self._entries: Deque[DiagnosticEntry] = deque()
        self._lock = threading.Lock()

    def append(self, text: str) -> bool:
        """Buffer text unless already present. Returns True if it was added."""
        with self._lock:
            if any(entry.text == text for entry in self._entries):
                return False
            self._entries.append(DiagnosticEntry(text=text, source="runtime"))
            while len(self._entries) > self.limit:
                self._entries.popleft()
            return True

    def entries(self) -> List[DiagnosticEntry]:
        with self._lock:
            return list(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RuntimeLogBus:
    """
    Registry of runtime log buffers, one per session.

    The registry lock only guards buffer creation; appends serialize on the
    session buffer's own lock.
    """

    def __init__(self, limit: int = None):
        self.limit = limit or settings.RUNTIME_LOG_LIMIT
        self._buffers: Dict[str, RuntimeLogBuffer] = {}
        self._lock = threading.Lock()

    def _buffer(self, session_id: str) -> RuntimeLogBuffer:
        with self._lock:
            buffer = self._buffers.get(session_id)
            if buffer is None:
                buffer = RuntimeLogBuffer(session_id, self.limit)
                self._buffers[session_id] = buffer
            return buffer

    def add_runtime_error(
        self,
        session_id: str,
        message: str,
        stack: Optional[str] = None,
        error_type: Optional[str] = None
    ) -> bool:
        """Ingest one error reported by the preview page"""
        text = format_runtime_error(message, stack, error_type)
        added = self._buffer(session_id).append(text)
        if added:
            logger.info(f"[RuntimeLogs:{session_id}] {error_type or 'Error'}: {message[:200]}")
        else:
            logger.debug(f"[RuntimeLogs:{session_id}] Duplicate runtime error ignored")
        return added

    def get_entries(self, session_id: str) -> List[DiagnosticEntry]:
        return self._buffer(session_id).entries()

    def get_runtime_logs(self, session_id: str) -> List[str]:
        """Rendered entries, oldest first"""
        return [entry.format() for entry in self.get_entries(session_id)]

    def clear_runtime_logs(self, session_id: str) -> None:
        self._buffer(session_id).clear()
        logger.debug(f"[RuntimeLogs:{session_id}] Cleared")
