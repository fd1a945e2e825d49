"""Model provider adapters and the provider-agnostic types they share."""

from .types import (
    CancelledException,
    CancelToken,
    ChatRequest,
    FunctionCall,
    Message,
    Part,
    Role,
    ToolChoice,
    ToolSchema,
)

__all__ = [
    "CancelledException",
    "CancelToken",
    "ChatRequest",
    "FunctionCall",
    "Message",
    "Part",
    "Role",
    "ToolChoice",
    "ToolSchema",
]
