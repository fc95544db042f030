from __future__ import annotations
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import httpx
import redis.asyncio as redis
from fastapi import Depends, FastAPI, Form, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncEngine
from starlette.middleware.sessions import SessionMiddleware

from .config import Settings
from .delivery.alerts import AlertChannel, NullChannel, WhatsAppChannel
from .delivery.buffer_processor import BufferProcessor
from .delivery.dispatch import Dispatcher
from .delivery.jobs import NotificationJob
from .delivery.mailer import EmailTransport, Mailer, transport_from_settings
from .delivery.notifier import Notifier
from .delivery.queue import NotificationQueue
from .errors import (
    AlreadyProcessed,
    AlreadyUsed,
    DomainError,
    ErrorCode,
    RateLimited,
    Unauthorized,
    ValidationError,
)
from .gateways import GatewayAdapter, OPay, Paystack
from .helpers import client_ip, ct_equal, to_iso
from .infra.sql import create_schema, engine_from_settings
from .infra.timings import Timings
from .model.notificationbuffer import new_buffer
from .model.sale import TICKET_TIERS, TicketSale
from .model.store import SaleStore
from .payments import PaymentService, RenderQR
from .qr import render_data_url
from .ratelimit import TransferRateLimiter
from .reminders import ReminderScheduler
from .verification import TicketVerifier

logger = logging.getLogger(__name__)


# ----------------------------
# Service container
# ----------------------------
@dataclass
class Services:
    settings: Settings
    engine: AsyncEngine
    store: SaleStore
    buffer: Any
    queue: NotificationQueue
    processor: BufferProcessor
    notifier: Notifier
    payments: PaymentService
    verifier: TicketVerifier
    reminders: ReminderScheduler
    transport: EmailTransport
    timings: Timings
    paystack: GatewayAdapter
    opay: GatewayAdapter
    redis: Optional[redis.Redis] = None
    http: Optional[httpx.AsyncClient] = None


def get_svc(request: Request) -> Services:
    return request.app.state.svc


# ----------------------------
# Request bodies
# ----------------------------
class BankTransferRequest(BaseModel):
    # validated by PaymentService
    ticketType: Any = None
    quantity: Any = None
    email: Optional[str] = None
    phone: Optional[str] = None
    fullName: Optional[str] = None


class TransferCompletedRequest(BaseModel):
    reference: Optional[str] = None


class LegacyApproveRequest(BaseModel):
    reference: str
    adminKey: Optional[str] = None
    approvedBy: Optional[str] = None


class LegacyRejectRequest(BaseModel):
    reference: str
    adminKey: Optional[str] = None
    rejectedBy: Optional[str] = None
    reason: Optional[str] = None


class RejectRequest(BaseModel):
    reason: Optional[str] = None


class RefundRequest(BaseModel):
    note: Optional[str] = None


class VerifyRequest(BaseModel):
    ticketId: Optional[str] = None
    verifiedBy: Optional[str] = None


class CustomerIn(BaseModel):
    firstName: str
    lastName: str = ""
    email: str
    phone: str


class PurchaseRequest(BaseModel):
    ticketType: str
    quantity: int
    customerInfo: CustomerIn
    gateway: str
    paymentReference: str


# ----------------------------
# Helpers
# ----------------------------
def ok(message: str, data: Any = None, **extra) -> Dict[str, Any]:
    return {"success": True, "message": message, "data": data, **extra}


def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def require_admin(request: Request) -> str:
    user = request.session.get("admin_user")
    if not user:
        raise Unauthorized("Admin login required")
    return user


def check_admin_key(request: Request, svc: Services,
                    admin_key: Optional[str]) -> str:
    """Legacy endpoints accept a shared admin key or an admin session."""
    if is_admin(request):
        return request.session["admin_user"]
    secret = svc.settings.admin_secret
    if not secret or not admin_key or not ct_equal(admin_key, secret):
        raise Unauthorized()
    return "admin"


def request_ip(request: Request, svc: Services) -> str:
    peer = request.client.host if request.client else None
    return client_ip(
        peer,
        request.headers.get("x-forwarded-for"),
        svc.settings.trusted_proxy_hops,
    )


def _parse_date(value: Optional[str], name: str) -> Optional[float]:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        raise ValidationError(f"Invalid {name}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def _sale_summary(sale: TicketSale) -> Dict[str, Any]:
    p = sale.payment
    return {
        "reference": sale.reference,
        "status": p.status.value,
        "saleStatus": sale.status.value,
        "customerName": sale.customer.full_name,
        "email": sale.customer.email,
        "phone": sale.customer.phone,
        "ticketType": sale.ticket.type_id.value,
        "ticketTypeName": sale.ticket.type_name,
        "quantity": sale.ticket.quantity,
        "amount": p.amount,
        "currency": p.currency,
        "method": p.method.value,
        "transferMarkedAt": to_iso(p.transfer_marked_at),
        "transferClickCount": p.transfer_click_count,
        "createdAt": to_iso(sale.created_at),
    }


def _error_body(exc: DomainError, production: bool) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "success": False,
        "message": exc.message,
        "reason": exc.code.value,
    }
    if isinstance(exc, RateLimited):
        body.update(
            rateLimited=True, waitTime=exc.wait_seconds, scope=exc.scope
        )
    elif isinstance(exc, AlreadyUsed):
        body["data"] = {
            "ticketId": exc.ticket_id,
            "usedAt": to_iso(exc.used_at),
            "verifiedBy": exc.verified_by,
        }
    elif isinstance(exc, AlreadyProcessed) and exc.status:
        body["data"] = {"reference": exc.reference, "status": exc.status}
    if not production and exc.detail:
        body["error"] = exc.detail
    return body


# ----------------------------
# App factory
# ----------------------------
def create_app(
    settings: Optional[Settings] = None,
    *,
    transport: Optional[EmailTransport] = None,
    alerts: Optional[AlertChannel] = None,
    clock: Callable[[], float] = time.time,
    render_qr: RenderQR = render_data_url,
    start_workers: bool = True,
) -> FastAPI:
    settings = settings or Settings.from_env()

    engine, SessionAsync, _, gated = engine_from_settings(settings)
    store = SaleStore(SessionAsync, gated)
    timings = Timings()

    r = None
    if settings.buffer_backend == "redis":
        r = redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )
    buffer = new_buffer(
        settings.buffer_backend, directory=settings.buffer_dir, r=r
    )

    transport = transport or transport_from_settings(settings)
    dispatcher = Dispatcher(Mailer(transport, settings.event))

    async def deliver(job: NotificationJob):
        async with timings.timeit(f"email.{job.type}"):
            return await dispatcher(job)

    queue = NotificationQueue(
        deliver, buffer,
        max_retries=settings.queue_max_retries,
        retry_base=settings.queue_retry_base,
        pause=settings.queue_pause,
        send_timeout=settings.email_timeout,
        clock=clock,
    )
    processor = BufferProcessor(
        deliver, buffer,
        interval=settings.buffer_sweep_interval,
        send_timeout=settings.email_timeout,
        clock=clock,
    )
    notifier = Notifier(
        queue, dispatcher, alerts or NullChannel(),
        settings.admin_whatsapp_numbers,
        send_timeout=settings.email_timeout,
        clock=clock,
    )
    limiter = TransferRateLimiter(
        store,
        reference_window=settings.reference_window,
        ticket_type_window=settings.ticket_type_window,
    )
    svc = Services(
        settings=settings,
        engine=engine,
        store=store,
        buffer=buffer,
        queue=queue,
        processor=processor,
        notifier=notifier,
        payments=PaymentService(
            store, notifier, limiter, settings,
            clock=clock, render_qr=render_qr,
        ),
        verifier=TicketVerifier(store, clock=clock),
        reminders=ReminderScheduler(
            store, notifier,
            at=settings.reminder_time,
            timezone=settings.reminder_timezone,
            after_hours=settings.reminder_after_hours,
            suspicious_hours=settings.suspicious_after_hours,
            clock=clock,
        ),
        transport=transport,
        timings=timings,
        paystack=Paystack(settings.paystack_secret),
        opay=OPay(settings.opay_private_key),
        redis=r,
    )

    app = FastAPI(
        title="ticketdesk",
        default_response_class=ORJSONResponse,
    )
    app.add_middleware(SessionMiddleware, secret_key=settings.session_secret)
    app.state.svc = svc

    # ---
    # errors -> envelope
    # ---
    @app.exception_handler(DomainError)
    async def _domain_error(request: Request, exc: DomainError):
        if exc.http_status >= 500:
            logger.error("%s %s failed: %s", request.method,
                         request.url.path, exc)
        return ORJSONResponse(
            status_code=exc.http_status,
            content=_error_body(exc, settings.is_production),
        )

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        body = {
            "success": False,
            "message": "Invalid request",
            "reason": ErrorCode.VALIDATION_ERROR.value,
        }
        if not settings.is_production:
            body["error"] = str(exc)
        return ORJSONResponse(status_code=400, content=body)

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        logger.exception("unhandled error on %s %s", request.method,
                         request.url.path)
        body = {
            "success": False,
            "message": "Internal server error",
            "reason": "INTERNAL_ERROR",
        }
        if not settings.is_production:
            body["error"] = str(exc)
        return ORJSONResponse(status_code=500, content=body)

    # ---
    # startup / shutdown
    # ---
    @app.on_event("startup")
    async def _say_hello():
        print('\n' * 3)
        print('=' * 50)
        print('ticketdesk is starting up...')
        print(f'   - Database: {engine.url.get_backend_name()}')
        print(f'   - Email backend: {settings.email_backend}')
        print(f'   - Notification buffer: {settings.buffer_backend}')
        print(f'   - Approval email mode: {settings.approval_email_mode}')
        print('=' * 50)
        print('\n' * 3)

    @app.on_event("startup")
    async def _db_init():
        await create_schema(engine)

    @app.on_event("startup")
    async def _http_client_start():
        svc.http = httpx.AsyncClient(
            timeout=10.0,
            limits=httpx.Limits(max_connections=32,
                                max_keepalive_connections=16),
        )
        if alerts is None and settings.whatsapp_enabled:
            notifier.alerts = WhatsAppChannel(svc.http, settings)

    @app.on_event("startup")
    async def _email_start():
        if not await transport.verify():
            logger.warning("email transport not verified; sends will retry")

    @app.on_event("startup")
    async def _workers_start():
        if start_workers:
            queue.start()
            processor.start()
            svc.reminders.start()

    @app.on_event("shutdown")
    async def _workers_stop():
        await svc.reminders.stop()
        await processor.stop()
        await queue.stop()
        await notifier.drain()

    @app.on_event("shutdown")
    async def _clients_stop():
        await transport.close()
        if svc.http is not None:
            await svc.http.aclose()
            svc.http = None
        if svc.redis is not None:
            await svc.redis.aclose()
        await engine.dispose()

    # ----------------------------
    # Public: catalogue, purchase, status
    # ----------------------------
    @app.get("/api/health")
    async def health():
        return ok("OK", {"time": to_iso(clock())})

    @app.get("/tickets/types")
    async def ticket_types(svc: Services = Depends(get_svc)):
        avail = await svc.payments.availability()
        items = []
        for tt, tier in TICKET_TIERS.items():
            items.append({
                "id": tt.value,
                "name": tier.name,
                "price": tier.price,
                "currency": settings.currency,
                "capacity": tier.capacity,
                "maxPerPurchase": tier.max_per_purchase,
                "sold": avail[tt]["sold"],
                "available": avail[tt]["available"],
            })
        return ok("Ticket types", items)

    @app.post("/tickets/purchase", status_code=201)
    async def purchase(req: PurchaseRequest,
                       svc: Services = Depends(get_svc)):
        sale = await svc.payments.purchase(
            ticket_type=req.ticketType,
            quantity=req.quantity,
            first_name=req.customerInfo.firstName,
            last_name=req.customerInfo.lastName,
            email=req.customerInfo.email,
            phone=req.customerInfo.phone,
            gateway=req.gateway,
            reference=req.paymentReference,
        )
        return ok("Ticket purchase created successfully", {
            "saleId": sale.id,
            "paymentReference": sale.reference,
            "totalAmount": sale.ticket.total_amount,
            "ticketCount": sale.ticket.quantity,
            "ticketIds": [t.ticket_id for t in sale.tickets],
        })

    @app.get("/tickets/details/{reference}")
    async def ticket_details(reference: str,
                             svc: Services = Depends(get_svc)):
        sale = await svc.store.find_by_reference(reference)
        return ok("Ticket details", sale.to_dict())

    @app.post("/tickets/verify")
    async def verify_ticket(req: VerifyRequest,
                            svc: Services = Depends(get_svc)):
        async with svc.timings.timeit("tickets.verify"):
            data = await svc.verifier.verify(req.ticketId, req.verifiedBy)
        data["usedAt"] = to_iso(data["usedAt"])
        return ok("Ticket verified successfully", data)

    # ----------------------------
    # Bank transfer flow
    # ----------------------------
    @app.post("/payments/bank-transfer")
    async def bank_transfer(req: BankTransferRequest,
                            svc: Services = Depends(get_svc)):
        sale = await svc.payments.initiate_bank_transfer(
            ticket_type=req.ticketType,
            quantity=req.quantity,
            full_name=req.fullName or "",
            email=req.email or "",
            phone=req.phone or "",
        )
        return ok("Payment reference generated successfully.", {
            "reference": sale.reference,
            "customerName": sale.customer.full_name,
            "amount": sale.ticket.total_amount,
            "ticketType": sale.ticket.type_id.value,
            "quantity": sale.ticket.quantity,
        })

    @app.post("/payments/transfer-completed")
    async def transfer_completed(req: TransferCompletedRequest,
                                 request: Request,
                                 svc: Services = Depends(get_svc)):
        ip = request_ip(request, svc)
        async with svc.timings.timeit("payments.transfer_completed"):
            sale = await svc.payments.mark_transfer_completed(
                (req.reference or "").strip(), ip
            )
        return ok(
            "Transfer marked as completed. We will verify your payment "
            "and email your tickets.",
            {
                "reference": sale.reference,
                "status": sale.payment.status.value,
                "transferClickCount": sale.payment.transfer_click_count,
            },
            rateLimited=False,
        )

    @app.get("/payments/status/{reference}")
    async def payment_status(reference: str,
                             svc: Services = Depends(get_svc)):
        sale = await svc.store.find_by_reference(reference)
        return ok("Payment status", {
            "reference": sale.reference,
            "status": sale.payment.status.value,
            "saleStatus": sale.status.value,
            "amount": sale.payment.amount,
            "paidAt": to_iso(sale.payment.paid_at),
            "ticketId": sale.ticket_id,
        })

    @app.get("/payments/pending-transfers")
    async def pending_transfers_legacy(request: Request,
                                       adminKey: Optional[str] = None,
                                       svc: Services = Depends(get_svc)):
        check_admin_key(request, svc, adminKey)
        sales = await svc.store.list_pending_approval()
        return ok("Pending transfers", [_sale_summary(s) for s in sales])

    @app.post("/payments/approve-transfer")
    async def approve_transfer_legacy(req: LegacyApproveRequest,
                                      request: Request,
                                      svc: Services = Depends(get_svc)):
        who = check_admin_key(request, svc, req.adminKey)
        async with svc.timings.timeit("payments.approve"):
            sale = await svc.payments.approve(
                req.reference, req.approvedBy or who, legacy=True
            )
        return ok("Payment approved and ticket sent",
                  _sale_summary(sale))

    @app.post("/payments/reject-transfer")
    async def reject_transfer_legacy(req: LegacyRejectRequest,
                                     request: Request,
                                     svc: Services = Depends(get_svc)):
        who = check_admin_key(request, svc, req.adminKey)
        async with svc.timings.timeit("payments.reject"):
            sale = await svc.payments.reject(
                req.reference, req.rejectedBy or who, req.reason
            )
        return ok("Payment rejected and customer notified",
                  _sale_summary(sale))

    # ----------------------------
    # Gateway webhooks
    # ----------------------------
    @app.post("/payments/paystack/webhook")
    async def paystack_webhook(request: Request,
                               svc: Services = Depends(get_svc)):
        payload = await request.body()
        result = await svc.payments.handle_webhook(
            svc.paystack, payload, dict(request.headers)
        )
        return ok("Paystack webhook processed successfully", result)

    @app.post("/payments/opay/webhook")
    async def opay_webhook(request: Request,
                           svc: Services = Depends(get_svc)):
        payload = await request.body()
        result = await svc.payments.handle_webhook(
            svc.opay, payload, dict(request.headers)
        )
        return ok("OPay webhook processed successfully", result)

    # ----------------------------
    # Admin session
    # ----------------------------
    @app.post("/api/admin/login")
    async def admin_login(
        request: Request,
        username: str = Form(...),
        password: str = Form(...),
    ):
        ok_user = ct_equal(username.strip(), settings.admin_username)
        ok_pass = ct_equal(password, settings.admin_password)
        if not (ok_user and ok_pass):
            raise Unauthorized("Invalid credentials.")
        request.session["admin_user"] = username.strip()
        return ok("Logged in", {"username": username.strip()})

    @app.post("/api/admin/logout")
    async def admin_logout(request: Request):
        request.session.clear()
        return ok("Logged out")

    @app.get("/api/admin/payments/pending")
    async def admin_pending(limit: int = 200,
                            admin: str = Depends(require_admin),
                            svc: Services = Depends(get_svc)):
        sales = await svc.store.list_pending_approval(max(1, min(limit, 500)))
        return ok("Pending transfers", [_sale_summary(s) for s in sales])

    @app.post("/api/admin/payments/{reference}/approve")
    async def admin_approve(reference: str,
                            admin: str = Depends(require_admin),
                            svc: Services = Depends(get_svc)):
        async with svc.timings.timeit("payments.approve"):
            sale = await svc.payments.approve(reference, admin)
        return ok("Payment approved and ticket sent", _sale_summary(sale))

    @app.post("/api/admin/payments/{reference}/reject")
    async def admin_reject(reference: str,
                           req: RejectRequest,
                           admin: str = Depends(require_admin),
                           svc: Services = Depends(get_svc)):
        async with svc.timings.timeit("payments.reject"):
            sale = await svc.payments.reject(reference, admin, req.reason)
        return ok("Payment rejected and customer notified",
                  _sale_summary(sale))

    @app.post("/api/admin/sales/{reference}/refund")
    async def admin_refund(reference: str,
                           req: RefundRequest,
                           admin: str = Depends(require_admin),
                           svc: Services = Depends(get_svc)):
        sale = await svc.payments.refund(reference, admin, req.note)
        return ok("Payment refunded", _sale_summary(sale))

    # ----------------------------
    # Admin analytics
    # ----------------------------
    @app.get("/api/admin/dashboard")
    async def admin_dashboard(admin: str = Depends(require_admin),
                              svc: Services = Depends(get_svc)):
        return ok("Dashboard", await svc.store.dashboard(clock()))

    @app.get("/api/admin/sales")
    async def admin_sales(
        page: int = 1,
        limit: int = 20,
        status: Optional[str] = None,
        ticketType: Optional[str] = None,
        search: Optional[str] = None,
        startDate: Optional[str] = None,
        endDate: Optional[str] = None,
        sortBy: str = "createdAt",
        sortOrder: str = "desc",
        admin: str = Depends(require_admin),
        svc: Services = Depends(get_svc),
    ):
        page = max(1, page)
        limit = max(1, min(limit, 200))
        total, sales = await svc.store.list_sales(
            page=page,
            limit=limit,
            status=status,
            ticket_type=ticketType,
            search=search,
            date_from=_parse_date(startDate, "startDate"),
            date_to=_parse_date(endDate, "endDate"),
            sort_by=sortBy,
            sort_order=sortOrder,
        )
        pages = (total + limit - 1) // limit
        return ok("Sales", {
            "sales": [_sale_summary(s) for s in sales],
            "pagination": {
                "currentPage": page,
                "totalPages": pages,
                "totalCount": total,
                "hasNext": page < pages,
                "hasPrev": page > 1,
            },
        })

    @app.get("/api/admin/verifications")
    async def admin_verifications(limit: int = 100,
                                  admin: str = Depends(require_admin),
                                  svc: Services = Depends(get_svc)):
        items = await svc.store.list_verifications(max(1, min(limit, 500)))
        for it in items:
            it["usedAt"] = to_iso(it["usedAt"])
        return ok("Verification log", items)

    @app.get("/api/admin/system/stats")
    async def admin_system_stats(admin: str = Depends(require_admin),
                                 svc: Services = Depends(get_svc)):
        return ok("System stats", {
            "queue": svc.queue.status(),
            "buffer": {
                **(await svc.buffer.counts()),
                "lastSweep": svc.processor.last_sweep,
            },
            "reminders": svc.reminders.last_run,
            "timings": svc.timings.snapshot(),
        })

    @app.post("/api/admin/reminders/run")
    async def admin_run_reminders(admin: str = Depends(require_admin),
                                  svc: Services = Depends(get_svc)):
        return ok("Reminder sweep finished", await svc.reminders.run_once())

    return app
