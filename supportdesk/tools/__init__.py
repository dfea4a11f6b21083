from __future__ import annotations

from .base import SupportTool, ToolCall, ToolContext
from .billing import billing_tools
from .executor import AuditTrail, ToolExecutor, ToolResult
from .idempotency import IdempotencyStore
from .orders import order_tools
from .registry import ToolRegistry, normalize_tool_name
from .support import support_tools


def build_tool_registry() -> ToolRegistry:
    """Registry holding every tool the specialists can be bound to."""
    return ToolRegistry([*order_tools(), *billing_tools(), *support_tools()])


__all__ = [
    "AuditTrail",
    "IdempotencyStore",
    "SupportTool",
    "ToolCall",
    "ToolContext",
    "ToolExecutor",
    "ToolRegistry",
    "ToolResult",
    "build_tool_registry",
    "normalize_tool_name",
]
