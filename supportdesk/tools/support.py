from __future__ import annotations

from typing import Any, Mapping

from ..core.errors import BusinessRuleError
from .base import SupportTool, ToolContext


class GetConversationHistoryTool(SupportTool):
    name = "getConversationHistory"
    description = "Fetch earlier messages of the current conversation, including compacted ones."
    aliases = ("support.history",)
    input_schema = {
        "type": "object",
        "properties": {
            "conversation_id": {"type": "string", "minLength": 1},
            "limit": {"type": "integer", "minimum": 1, "maximum": 50},
            "include_archived": {"type": "boolean"},
        },
        "required": ["conversation_id"],
        "additionalProperties": False,
    }

    async def execute(self, params: Mapping[str, Any], context: ToolContext) -> dict[str, Any]:
        if params["conversation_id"] != context.conversation_id:
            raise BusinessRuleError("History is only available for the current conversation")
        messages = await context.repository.list_messages(
            params["conversation_id"],
            include_archived=bool(params.get("include_archived", True)),
        )
        limit = int(params.get("limit", 10))
        selected = messages[-limit:]
        return {
            "messages": [
                {
                    "id": message.id,
                    "role": message.role.value,
                    "content": message.content,
                    "archived": message.archived,
                    "created_at": message.created_at.isoformat(),
                }
                for message in selected
            ],
            "count": len(selected),
            "total": len(messages),
        }


def support_tools() -> list[SupportTool]:
    return [GetConversationHistoryTool()]


__all__ = ["GetConversationHistoryTool", "support_tools"]
