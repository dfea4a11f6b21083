from __future__ import annotations

from datetime import datetime, timedelta, timezone

from ..schemas.models import Invoice, InvoiceStatus, Order, OrderStatus
from .repository import InMemoryRepository

DEMO_USER_ID = "user-demo"


def demo_orders() -> list[Order]:
    now = datetime.now(timezone.utc)
    return [
        Order(
            id="ORD-12345",
            user_id=DEMO_USER_ID,
            status=OrderStatus.SHIPPED,
            items=[{"sku": "KB-201", "name": "Mechanical keyboard", "quantity": 1}],
            total=129.0,
            tracking_number="1Z999AA10123456784",
            carrier="UPS",
            updated_at=now - timedelta(days=1),
        ),
        Order(
            id="ORD-12346",
            user_id=DEMO_USER_ID,
            status=OrderStatus.DELIVERED,
            items=[{"sku": "MS-110", "name": "Wireless mouse", "quantity": 2}],
            total=58.0,
            tracking_number="1Z999AA10123456785",
            carrier="UPS",
            updated_at=now - timedelta(days=9),
        ),
        Order(
            id="ORD-12347",
            user_id=DEMO_USER_ID,
            status=OrderStatus.PENDING,
            items=[{"sku": "MN-270", "name": "27in monitor", "quantity": 1}],
            total=749.0,
            updated_at=now - timedelta(hours=3),
        ),
    ]


def demo_invoices() -> list[Invoice]:
    return [
        Invoice(id="INV-1001", user_id=DEMO_USER_ID, order_id="ORD-12345", amount=129.0, status=InvoiceStatus.PAID),
        Invoice(id="INV-1002", user_id=DEMO_USER_ID, order_id="ORD-12346", amount=58.0, status=InvoiceStatus.PAID),
        Invoice(id="INV-1003", user_id=DEMO_USER_ID, order_id="ORD-12347", amount=749.0, status=InvoiceStatus.PAID),
        Invoice(id="INV-1004", user_id=DEMO_USER_ID, amount=40.0, status=InvoiceStatus.ISSUED),
    ]


def seed_demo_data(repository: InMemoryRepository) -> InMemoryRepository:
    repository.seed(orders=demo_orders(), invoices=demo_invoices())
    return repository


__all__ = ["DEMO_USER_ID", "demo_invoices", "demo_orders", "seed_demo_data"]
