from __future__ import annotations

from typing import Any, Mapping

from ..core.errors import BusinessRuleError
from ..schemas.models import InvoiceStatus, Refund, RefundStatus
from .base import SupportTool, ToolContext, dump_model

INVOICE_ID_PATTERN = "^INV-[0-9]+$"


class GetInvoiceTool(SupportTool):
    name = "getInvoice"
    description = "Look up an invoice's amount, status and refunded total."
    aliases = ("billing.invoice",)
    input_schema = {
        "type": "object",
        "properties": {"invoice_id": {"type": "string", "pattern": INVOICE_ID_PATTERN}},
        "required": ["invoice_id"],
        "additionalProperties": False,
    }

    async def execute(self, params: Mapping[str, Any], context: ToolContext) -> dict[str, Any]:
        invoice = await context.repository.get_invoice(params["invoice_id"])
        if invoice is None or invoice.user_id != context.user_id:
            raise BusinessRuleError(f"Invoice {params['invoice_id']} was not found")
        payload = dump_model(invoice)
        payload["refundable_balance"] = invoice.refundable_balance
        return payload


class ListInvoicesTool(SupportTool):
    name = "listInvoices"
    description = "List the customer's invoices."
    aliases = ("billing.list",)
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
            raise BusinessRuleError("Invoices can only be listed for the requesting customer")
        invoices = await context.repository.list_invoices(params["user_id"], limit=int(params.get("limit", 5)))
        return {"invoices": [dump_model(invoice) for invoice in invoices], "count": len(invoices)}


class ProcessRefundTool(SupportTool):
    name = "processRefund"
    description = (
        "Refund part or all of a paid invoice. Large refunds are accepted but held for approval."
    )
    aliases = ("billing.refund",)
    mutating = True
    input_schema = {
        "type": "object",
        "properties": {
            "invoice_id": {"type": "string", "pattern": INVOICE_ID_PATTERN},
            "amount": {"type": "number", "exclusiveMinimum": 0},
            "reason": {"type": "string", "maxLength": 500},
        },
        "required": ["invoice_id", "amount"],
        "additionalProperties": False,
    }

    async def execute(self, params: Mapping[str, Any], context: ToolContext) -> dict[str, Any]:
        invoice = await context.repository.get_invoice(params["invoice_id"])
        if invoice is None or invoice.user_id != context.user_id:
            raise BusinessRuleError(f"Invoice {params['invoice_id']} was not found")
        if invoice.status is not InvoiceStatus.PAID:
            raise BusinessRuleError(
                f"Invoice {invoice.id} is {invoice.status.value}; only paid invoices can be refunded"
            )
        amount = round(float(params["amount"]), 2)
        if amount > invoice.amount:
            raise BusinessRuleError(
                f"Refund of {amount:.2f} exceeds the invoice amount of {invoice.amount:.2f}"
            )
        if amount > invoice.refundable_balance:
            raise BusinessRuleError(
                f"Refund of {amount:.2f} exceeds the remaining refundable balance of {invoice.refundable_balance:.2f}"
            )

        requires_approval = amount > context.settings.refund_approval_threshold
        refund = await context.repository.create_refund(
            Refund(
                invoice_id=invoice.id,
                amount=amount,
                reason=params.get("reason"),
                status=RefundStatus.PENDING_APPROVAL if requires_approval else RefundStatus.COMPLETED,
                requires_approval=requires_approval,
            )
        )
        return {"refund": dump_model(refund), "currency": invoice.currency}


def billing_tools() -> list[SupportTool]:
    return [GetInvoiceTool(), ListInvoicesTool(), ProcessRefundTool()]


__all__ = ["GetInvoiceTool", "ListInvoicesTool", "ProcessRefundTool", "billing_tools"]
