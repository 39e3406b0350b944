from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime
from enum import Enum
from uuid import uuid4


class Framework(str, Enum):
    """Scaffold variants a session can be built on"""
    REACT = "react"
    NEXTJS = "nextjs"


class SessionPhase(str, Enum):
    """Workflow phase of a session"""
    IDLE = "idle"
    PLANNING = "planning"
    AWAITING_APPROVAL = "awaiting_approval"
    CODING = "coding"
    VERIFYING = "verifying"
    COMPLETE = "complete"


class MessageRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ChatMessage(BaseModel):
    role: MessageRole
    content: str
    created_at: datetime = Field(default_factory=datetime.utcnow)


class SessionPlan(BaseModel):
    id: str = Field(default_factory=lambda: uuid4().hex)
    request: str
    plan_text: str
    components: List[str] = Field(default_factory=list)
    files: List[str] = Field(default_factory=list)
    steps: List[str] = Field(default_factory=list)
    approved: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)
    approved_at: Optional[datetime] = None


class PlanResult(BaseModel):
    plan_text: str
    phase: SessionPhase
    plan: Optional[SessionPlan] = None


class FileChange(BaseModel):
    path: str
    action: str = Field(..., pattern="^(created|modified|deleted)$")
    changed_at: datetime = Field(default_factory=datetime.utcnow)
