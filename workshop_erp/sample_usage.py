"""Demonstration script for the workshop order and billing engine."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from pprint import pprint

from . import BudgetItem, ExtraCharge, WorkshopService
from .logging_config import configure_logging


def main() -> WorkshopService:
    configure_logging("INFO")
    workshop = WorkshopService()
    monday = datetime(2024, 3, 4, 8, 0, tzinfo=timezone.utc)

    # Order opened from the approved budget, and its tasks
    order = workshop.create_order_from_budget(
        client_id="client-metalurgica",
        client_name="Metalúrgica Horizonte Ltda.",
        description="Stainless steel counter with sink cut-out",
        items=[
            BudgetItem("Counter fabrication", Decimal("2"), Decimal("120.00")),
            BudgetItem("Sink cut-out", Decimal("1"), Decimal("60.00")),
        ],
        budget_id="ORC-2024-031",
        urgency="high",
        deadline=date(2024, 3, 15),
    )
    cutting = workshop.create_task(order.id, "Cut and bend sheets", assigned_worker_id="ana")
    welding = workshop.create_task(order.id, "Weld and polish seams", assigned_worker_id="bruno")

    # Materials
    sheet = workshop.register_inventory_item(
        "Stainless sheet 2mm", quantity=10, unit_price=Decimal("85.00"), unit_of_measure="sheet"
    )
    workshop.consume(cutting.id, sheet.id, 2, consumed_by="ana")

    # Shop floor time
    ana = workshop.start_session(cutting.id, "ana", at=monday)
    workshop.stop_session(ana.id, note="Sheets cut", at=monday + timedelta(hours=2, minutes=30))
    bruno = workshop.start_session(welding.id, "bruno", at=monday + timedelta(hours=3))
    workshop.stop_session(bruno.id, note="Seams welded", at=monday + timedelta(hours=4))
    workshop.complete_task(cutting.id, at=monday + timedelta(hours=4))
    workshop.complete_task(welding.id, at=monday + timedelta(hours=4))

    # Quality and delivery
    workshop.approve_quality(order.id)
    workshop.confirm_pickup(order.id)

    invoice = workshop.generate_invoice(
        [order.id],
        period_start=date(2024, 3, 1),
        period_end=date(2024, 3, 31),
        extras=[ExtraCharge("Delivery", Decimal("50.00"))],
    )

    print("Order summary:")
    pprint(workshop.get_order_summary(order.id))
    print("\nInvoice:")
    pprint(workshop.get_invoice_detail(invoice.id))
    print("\nHours per worker:")
    pprint(workshop.worker_hours_report(date(2024, 3, 1), date(2024, 3, 31)))
    return workshop


if __name__ == "__main__":
    main()
