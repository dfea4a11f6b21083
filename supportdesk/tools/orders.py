from __future__ import annotations

from typing import Any, Mapping

from ..core.errors import BusinessRuleError
from ..schemas.models import OrderStatus
from .base import SupportTool, ToolContext, dump_model

ORDER_ID_PATTERN = "^ORD-[0-9]+$"


class GetOrderDetailsTool(SupportTool):
    name = "getOrderDetails"
    description = "Look up an order's status, items, total and shipment tracking."
    aliases = ("order.details",)
    input_schema = {
        "type": "object",
        "properties": {"order_id": {"type": "string", "pattern": ORDER_ID_PATTERN}},
        "required": ["order_id"],
        "additionalProperties": False,
    }

    async def execute(self, params: Mapping[str, Any], context: ToolContext) -> dict[str, Any]:
        order = await context.repository.get_order(params["order_id"])
        if order is None or order.user_id != context.user_id:
            raise BusinessRuleError(f"Order {params['order_id']} was not found")
        return dump_model(order)


class ListOrdersTool(SupportTool):
    name = "listOrders"
    description = "List the customer's most recent orders."
    aliases = ("order.list",)
    input_schema = {
        "type": "object",
        "properties": {
            "user_id": {"type": "string", "minLength": 1},
            "limit": {"type": "integer", "minimum": 1, "maximum": 20},
        },
        "required": ["user_id"],
        "additionalProperties": False,
    }

    async def execute(self, params: Mapping[str, Any], context: ToolContext) -> dict[str, Any]:
        if params["user_id"] != context.user_id:
            raise BusinessRuleError("Orders can only be listed for the requesting customer")
        orders = await context.repository.list_orders(params["user_id"], limit=int(params.get("limit", 5)))
        return {"orders": [dump_model(order) for order in orders], "count": len(orders)}


class UpdateOrderStatusTool(SupportTool):
    name = "updateOrderStatus"
    description = "Move an order to a new status, e.g. cancel it. Rejects transitions the order cannot make."
    aliases = ("order.update_status",)
    mutating = True
    input_schema = {
        "type": "object",
        "properties": {
            "order_id": {"type": "string", "pattern": ORDER_ID_PATTERN},
            "status": {"type": "string", "enum": [status.value for status in OrderStatus]},
        },
        "required": ["order_id", "status"],
        "additionalProperties": False,
    }

    async def execute(self, params: Mapping[str, Any], context: ToolContext) -> dict[str, Any]:
        order = await context.repository.get_order(params["order_id"])
        if order is None or order.user_id != context.user_id:
            raise BusinessRuleError(f"Order {params['order_id']} was not found")
        target = OrderStatus(params["status"])
        if not order.can_transition_to(target):
            if order.is_terminal:
                raise BusinessRuleError(
                    f"Order {order.id} is already {order.status.value} and can no longer be changed"
                )
            raise BusinessRuleError(
                f"Order {order.id} cannot move from {order.status.value} to {target.value}"
            )
        updated = await context.repository.update_order_status(order.id, target)
        return {"order": dump_model(updated), "previous_status": order.status.value}


def order_tools() -> list[SupportTool]:
    return [GetOrderDetailsTool(), ListOrdersTool(), UpdateOrderStatusTool()]


__all__ = ["GetOrderDetailsTool", "ListOrdersTool", "UpdateOrderStatusTool", "order_tools"]
