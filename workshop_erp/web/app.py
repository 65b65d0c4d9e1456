"""FastAPI-based HTTP interface for the workshop engine."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Form, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from ..config import Settings, get_settings
from ..domain import ExtraCharge, OrderStatus
from ..exceptions import (
    InvalidInvoiceRequest,
    SessionNotFound,
    WorkshopError,
)
from ..logging_config import configure_logging
from ..repository import DuplicateRecordError, RecordNotFoundError
from ..services import WorkflowOptions, WorkshopService
from ..storage import WorkshopDatabase

logger = logging.getLogger(__name__)


def to_json(payload: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse(
        jsonable_encoder(payload, custom_encoder={Decimal: str}),
        status_code=status_code,
    )


def error_response(code: str, detail: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": code, "detail": detail}, status_code=status_code)


def create_app(
    database_path: Optional[str] = None,
    *,
    service: Optional[WorkshopService] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.LOG_LEVEL)
    database: Optional[WorkshopDatabase] = None
    if service is None:
        database = WorkshopDatabase(database_path or settings.DATABASE_PATH)
        logger.info("Opened workshop database at %s", database_path or settings.DATABASE_PATH)
        service = WorkshopService(
            database, options=WorkflowOptions.from_settings(settings)
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):  # pragma: no cover - framework hook
        yield
        if database is not None:
            database.close()

    app = FastAPI(title="Workshop Orders", lifespan=lifespan)
    app.state.workshop_service = service
    app.state.database = database

    @app.exception_handler(WorkshopError)
    async def workshop_error(request: Request, exc: WorkshopError):
        if isinstance(exc, SessionNotFound):
            status_code = 404
        elif isinstance(exc, InvalidInvoiceRequest):
            status_code = 422
        else:
            status_code = 409
        return error_response(exc.code, str(exc), status_code)

    @app.exception_handler(RecordNotFoundError)
    async def not_found(request: Request, exc: RecordNotFoundError):
        return error_response("NOT_FOUND", str(exc), 404)

    @app.exception_handler(DuplicateRecordError)
    async def duplicate(request: Request, exc: DuplicateRecordError):
        return error_response("DUPLICATE_RECORD", str(exc), 409)

    @app.exception_handler(ValueError)
    async def invalid_value(request: Request, exc: ValueError):
        return error_response("INVALID_VALUE", str(exc), 422)

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------
    @app.get("/orders")
    async def list_orders(request: Request, status: Optional[str] = None, client_id: Optional[str] = None):
        service: WorkshopService = request.app.state.workshop_service
        orders = service.list_orders(
            status=OrderStatus(status) if status else None, client_id=client_id
        )
        return to_json(orders)

    @app.post("/orders")
    async def create_order(
        request: Request,
        client_id: str = Form(...),
        client_name: str = Form(...),
        description: str = Form(...),
        sale_value: str = Form(...),
        urgency: str = Form("medium"),
        assigned_worker_id: Optional[str] = Form(None),
        deadline: Optional[str] = Form(None),
    ):
        service: WorkshopService = request.app.state.workshop_service
        order = service.create_order(
            client_id,
            client_name,
            description,
            sale_value,
            urgency=urgency,
            assigned_worker_id=assigned_worker_id or None,
            deadline=parse_date(deadline),
        )
        return to_json(order, status_code=201)

    @app.get("/orders/{order_id}")
    async def order_summary(order_id: str, request: Request):
        service: WorkshopService = request.app.state.workshop_service
        return to_json(service.get_order_summary(order_id))

    @app.post("/orders/{order_id}/revisions")
    async def revise_order(
        order_id: str,
        request: Request,
        description: Optional[str] = Form(None),
        sale_value: Optional[str] = Form(None),
    ):
        service: WorkshopService = request.app.state.workshop_service
        order = service.revise_order(
            order_id, description=description, sale_value=sale_value or None
        )
        return to_json(order, status_code=201)

    @app.post("/budgets/orders")
    async def create_order_from_budget(
        request: Request,
        client_id: str = Form(...),
        client_name: str = Form(...),
        description: str = Form(...),
        items: str = Form(...),
        budget_id: Optional[str] = Form(None),
        urgency: str = Form("medium"),
        deadline: Optional[str] = Form(None),
    ):
        service: WorkshopService = request.app.state.workshop_service
        order = service.create_order_from_budget(
            client_id,
            client_name,
            description,
            parse_budget_items(items),
            budget_id=budget_id or None,
            urgency=urgency,
            deadline=parse_date(deadline),
        )
        return to_json(order, status_code=201)

    @app.get("/orders/{order_id}/items")
    async def list_order_items(order_id: str, request: Request):
        service: WorkshopService = request.app.state.workshop_service
        return to_json(service.list_order_items(order_id))

    @app.post("/orders/{order_id}/items")
    async def add_order_item(
        order_id: str,
        request: Request,
        service_name: str = Form(...),
        quantity: str = Form("1"),
        unit_price: str = Form(...),
        description: str = Form(""),
    ):
        service: WorkshopService = request.app.state.workshop_service
        item = service.add_order_item(
            order_id, service_name, quantity, unit_price, description=description
        )
        return to_json(item, status_code=201)

    @app.delete("/items/{item_id}")
    async def remove_order_item(item_id: str, request: Request):
        service: WorkshopService = request.app.state.workshop_service
        return to_json(service.remove_order_item(item_id))

    @app.post("/orders/{order_id}/actions/{action}")
    async def order_action(
        order_id: str,
        action: str,
        request: Request,
        reason: str = Form(""),
        installation_date: Optional[str] = Form(None),
        actor_id: Optional[str] = Form(None),
    ):
        service: WorkshopService = request.app.state.workshop_service
        order = service.perform_action(
            order_id,
            action,
            reason=reason,
            installation_date=parse_date(installation_date),
            actor_id=actor_id or None,
        )
        return to_json(order)

    @app.delete("/orders/{order_id}")
    async def delete_order(order_id: str, request: Request):
        service: WorkshopService = request.app.state.workshop_service
        service.delete_order(order_id)
        return to_json({"deleted": order_id})

    # ------------------------------------------------------------------
    # Tasks and time sessions
    # ------------------------------------------------------------------
    @app.get("/orders/{order_id}/tasks")
    async def list_tasks(order_id: str, request: Request):
        service: WorkshopService = request.app.state.workshop_service
        return to_json(service.list_tasks(order_id))

    @app.post("/orders/{order_id}/tasks")
    async def create_task(
        order_id: str,
        request: Request,
        title: str = Form(...),
        description: str = Form(""),
        assigned_worker_id: Optional[str] = Form(None),
        priority: str = Form("medium"),
        estimated_hours: Optional[str] = Form(None),
    ):
        service: WorkshopService = request.app.state.workshop_service
        task = service.create_task(
            order_id,
            title,
            description=description,
            assigned_worker_id=assigned_worker_id or None,
            priority=priority,
            estimated_hours=estimated_hours or None,
        )
        return to_json(task, status_code=201)

    @app.post("/tasks/{task_id}")
    async def update_task(
        task_id: str,
        request: Request,
        title: Optional[str] = Form(None),
        description: Optional[str] = Form(None),
        priority: Optional[str] = Form(None),
        estimated_hours: Optional[str] = Form(None),
        status: Optional[str] = Form(None),
    ):
        service: WorkshopService = request.app.state.workshop_service
        task = service.update_task(
            task_id,
            title=title,
            description=description,
            priority=priority or None,
            estimated_hours=estimated_hours or None,
            status=status or None,
        )
        return to_json(task)

    @app.delete("/tasks/{task_id}")
    async def delete_task(task_id: str, request: Request, force: bool = False):
        service: WorkshopService = request.app.state.workshop_service
        return to_json(service.delete_task(task_id, force_close_sessions=force))

    @app.post("/tasks/{task_id}/sessions")
    async def start_session(task_id: str, request: Request, worker_id: str = Form(...)):
        service: WorkshopService = request.app.state.workshop_service
        return to_json(service.start_session(task_id, worker_id), status_code=201)

    @app.post("/sessions/{session_id}/stop")
    async def stop_session(session_id: str, request: Request, note: str = Form("")):
        service: WorkshopService = request.app.state.workshop_service
        return to_json(service.stop_session(session_id, note=note))

    @app.get("/workers/{worker_id}/tasks")
    async def worker_tasks(worker_id: str, request: Request):
        service: WorkshopService = request.app.state.workshop_service
        return to_json(service.list_worker_tasks(worker_id))

    # ------------------------------------------------------------------
    # Inventory
    # ------------------------------------------------------------------
    @app.get("/inventory")
    async def list_inventory(request: Request):
        service: WorkshopService = request.app.state.workshop_service
        return to_json(service.list_inventory())

    @app.post("/inventory")
    async def register_item(
        request: Request,
        name: str = Form(...),
        quantity: int = Form(0),
        unit_price: str = Form("0"),
        unit_of_measure: str = Form("pcs"),
    ):
        service: WorkshopService = request.app.state.workshop_service
        item = service.register_inventory_item(
            name, quantity=quantity, unit_price=unit_price, unit_of_measure=unit_of_measure
        )
        return to_json(item, status_code=201)

    @app.post("/inventory/{item_id}/restock")
    async def restock(
        item_id: str,
        request: Request,
        quantity: int = Form(...),
        reason: str = Form("Restock"),
    ):
        service: WorkshopService = request.app.state.workshop_service
        return to_json(service.restock(item_id, quantity, reason=reason))

    @app.post("/tasks/{task_id}/consumption")
    async def consume(
        task_id: str,
        request: Request,
        item_id: str = Form(...),
        quantity: int = Form(...),
        consumed_by: Optional[str] = Form(None),
    ):
        service: WorkshopService = request.app.state.workshop_service
        record = service.consume(task_id, item_id, quantity, consumed_by=consumed_by or None)
        return to_json(record, status_code=201)

    # ------------------------------------------------------------------
    # Invoices and reports
    # ------------------------------------------------------------------
    @app.post("/invoices")
    async def generate_invoice(
        request: Request,
        order_ids: str = Form(...),
        period_start: str = Form(...),
        period_end: str = Form(...),
        extras: str = Form(""),
    ):
        service: WorkshopService = request.app.state.workshop_service
        invoice = service.generate_invoice(
            split_csv(order_ids),
            period_start=require_date(period_start),
            period_end=require_date(period_end),
            extras=parse_extra_charges(extras),
        )
        return to_json(invoice, status_code=201)

    @app.get("/invoices/{invoice_id}")
    async def invoice_detail(invoice_id: str, request: Request):
        service: WorkshopService = request.app.state.workshop_service
        return to_json(service.get_invoice_detail(invoice_id))

    @app.delete("/invoices/{invoice_id}")
    async def delete_invoice(invoice_id: str, request: Request):
        service: WorkshopService = request.app.state.workshop_service
        service.delete_invoice(invoice_id)
        return to_json({"deleted": invoice_id})

    @app.get("/reports/worker-hours")
    async def worker_hours(request: Request, start: str, end: str):
        service: WorkshopService = request.app.state.workshop_service
        return to_json(service.worker_hours_report(require_date(start), require_date(end)))

    return app


def split_csv(values: str) -> List[str]:
    return [value.strip() for value in values.split(",") if value.strip()]


def parse_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    return datetime.strptime(value, "%Y-%m-%d").date()


def require_date(value: str) -> date:
    parsed = parse_date(value)
    if parsed is None:
        raise ValueError("A date in YYYY-MM-DD format is required")
    return parsed


def parse_extra_charges(definitions: str) -> List[ExtraCharge]:
    """Parse ``description|value`` lines; blank lines are skipped."""

    charges: List[ExtraCharge] = []
    for line in definitions.splitlines():
        if not line.strip():
            continue
        description, separator, value = line.rpartition("|")
        if not separator:
            raise ValueError(f"Extra charge {line!r} must look like 'description|value'")
        try:
            amount = Decimal(value.strip())
        except InvalidOperation as exc:
            raise ValueError(f"Extra charge value {value.strip()!r} is not a number") from exc
        charges.append(ExtraCharge(description=description.strip(), value=amount))
    return charges


def parse_budget_items(definitions: str) -> List[Dict[str, str]]:
    """Parse ``service|quantity|unit_price`` lines into budget item fields."""

    items: List[Dict[str, str]] = []
    for line in definitions.splitlines():
        if not line.strip():
            continue
        parts = [part.strip() for part in line.split("|")]
        if len(parts) != 3:
            raise ValueError(f"Budget item {line!r} must look like 'service|quantity|unit_price'")
        service_name, quantity, unit_price = parts
        items.append(
            {"service_name": service_name, "quantity": quantity, "unit_price": unit_price}
        )
    return items
