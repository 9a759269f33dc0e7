"""Application layer."""

from agent_runtime.application.models import (
    Message,
    Role,
    ToolCall,
    UserDecision,
)
from agent_runtime.application.permission import (
    Decision,
    MergedSettings,
    PermissionDecision,
    PermissionEngine,
    PermissionRule,
)
from agent_runtime.application.session import Session, SessionStateError
from agent_runtime.application.tools import ToolDispatcher, ToolKind, ToolOutput

__all__ = [
    "Decision",
    "MergedSettings",
    "Message",
    "PermissionDecision",
    "PermissionEngine",
    "PermissionRule",
    "Role",
    "Session",
    "SessionStateError",
    "ToolCall",
    "ToolDispatcher",
    "ToolKind",
    "ToolOutput",
    "UserDecision",
]
