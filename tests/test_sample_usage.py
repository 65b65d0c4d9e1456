from decimal import Decimal

from workshop_erp import OrderStatus
from workshop_erp.sample_usage import main


def test_demo_runs_end_to_end(capsys):
    workshop = main()
    [order] = workshop.list_orders()
    assert order.status is OrderStatus.INVOICED
    [invoice] = workshop.list_invoices()
    assert invoice.total_value == Decimal("350.00")
    assert invoice.total_time == Decimal("3.5")
    assert "Invoice:" in capsys.readouterr().out
    assert order.budget_id == "ORC-2024-031"
    assert len(workshop.list_order_items(order.id)) == 2
