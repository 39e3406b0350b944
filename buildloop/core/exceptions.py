"""
Custom Exceptions for buildloop
===============================

Every error raised by the engine derives from BuildLoopError so callers can
catch one type and still read a stable ``code`` for the failure.

Usage:
    from buildloop.core.exceptions import PlanNotFoundError

    plan = await store.get_plan(session_id)
    if plan is None:
        raise PlanNotFoundError(session_id)
"""

from typing import Optional, Any, Dict


class BuildLoopError(Exception):
    """Base exception for all buildloop errors"""

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details
        }


# ============================================
# Workspace Errors
# ============================================

class WorkspaceError(BuildLoopError):
    """Base class for workspace failures"""


class ProjectNotFoundError(WorkspaceError):
    """Session workspace does not exist"""

    def __init__(self, session_id: str):
        super().__init__(
            f"Project not found: {session_id}",
            code="PROJECT_NOT_FOUND",
            details={"session_id": session_id}
        )


class ProjectExistsError(WorkspaceError):
    """Session workspace already exists"""

    def __init__(self, session_id: str):
        super().__init__(
            f"Project already exists: {session_id}",
            code="PROJECT_EXISTS",
            details={"session_id": session_id}
        )


class TemplateNotFoundError(WorkspaceError):
    """No scaffold for the requested framework"""

    def __init__(self, framework: str):
        super().__init__(
            f"Template not found for framework: {framework}",
            code="TEMPLATE_NOT_FOUND",
            details={"framework": framework}
        )


class WorkspaceFileNotFoundError(WorkspaceError):
    """File not found in project"""

    def __init__(self, file_path: str, session_id: str = ""):
        super().__init__(
            f"File not found: {file_path}",
            code="FILE_NOT_FOUND",
            details={"file_path": file_path, "session_id": session_id}
        )


class PathTraversalError(WorkspaceError):
    """Path resolves outside the session workspace"""

    def __init__(self, file_path: str):
        super().__init__(
            "Invalid path: path traversal detected",
            code="PATH_TRAVERSAL",
            details={"file_path": file_path}
        )


class SearchStringNotFoundError(WorkspaceError):
    """edit_file search string is absent from the file"""

    def __init__(self, file_path: str):
        super().__init__(
            "Search string not found in file",
            code="SEARCH_STRING_NOT_FOUND",
            details={"file_path": file_path}
        )


# ============================================
# Command Errors
# ============================================

class CommandNotAllowedError(BuildLoopError):
    """Command matched a blocked pattern"""

    def __init__(self, command: str, reason: str = "Command not allowed for security reasons"):
        super().__init__(reason, code="COMMAND_NOT_ALLOWED", details={"command": command})


class CommandRateLimitError(BuildLoopError):
    """Too many commands issued for one session"""

    def __init__(self, session_id: str, limit: int, window: int):
        super().__init__(
            f"Command rate limit exceeded: {limit} commands per {window}s",
            code="COMMAND_RATE_LIMITED",
            details={"session_id": session_id, "limit": limit, "window": window}
        )


# ============================================
# Workflow Errors
# ============================================

class PlanNotFoundError(BuildLoopError):
    """Coding requested without a pending plan"""

    def __init__(self, session_id: str = ""):
        super().__init__(
            "No plan found. Run planning phase first.",
            code="PLAN_NOT_FOUND",
            details={"session_id": session_id}
        )


class InvalidPhaseTransitionError(BuildLoopError):
    """Phase change not permitted from the current phase"""

    def __init__(self, session_id: str, from_phase: str, to_phase: str):
        super().__init__(
            f"Invalid phase transition: {from_phase} -> {to_phase}",
            code="INVALID_PHASE_TRANSITION",
            details={"session_id": session_id, "from": from_phase, "to": to_phase}
        )


# ============================================
# Preview Process Errors
# ============================================

class PortAllocationError(BuildLoopError):
    """No free port in the probe window"""

    def __init__(self, base_port: int, window: int):
        super().__init__(
            "No available ports",
            code="NO_AVAILABLE_PORTS",
            details={"base_port": base_port, "window": window}
        )


class PreviewProcessError(BuildLoopError):
    """Preview process could not be spawned"""

    def __init__(self, message: str, session_id: str = ""):
        super().__init__(message, code="PREVIEW_PROCESS_ERROR", details={"session_id": session_id})


# ============================================
# Generation Errors
# ============================================

class GenerationError(BuildLoopError):
    """Model provider call failed"""

    def __init__(self, message: str, provider_error: Optional[str] = None):
        super().__init__(message, code="GENERATION_FAILED")
        if provider_error:
            self.details["provider_error"] = provider_error


class GenerationRateLimitError(GenerationError):
    """Provider kept rate limiting after all retries"""

    def __init__(self, attempts: int):
        super().__init__(f"Rate limited by model provider after {attempts} attempts")
        self.code = "GENERATION_RATE_LIMITED"
        self.details["attempts"] = attempts


def error_response(error: Exception) -> Dict[str, Any]:
    """Convert any exception to the payload carried by error events"""
    if isinstance(error, BuildLoopError):
        return error.to_dict()
    return {
        "code": "INTERNAL_ERROR",
        "message": str(error) or type(error).__name__,
        "details": {"type": type(error).__name__}
    }
