# api/server.py
# ============================================================================
# BILLING ENGINE — FASTAPI SERVER
# ============================================================================
# Payment links, provider webhooks, refunds, reminders, late fees and
# automation rules over HTTP. Every BillingError maps to its own status.
# ============================================================================

import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

import structlog
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from schemas.automation_rules import AutomationRule, AutomationRuleUpdate
from schemas.billing_models import (
    CreatePaymentLinkParams,
    Invoice,
    LateFeeRule,
    PaymentLink,
    PaymentStatus,
    RefundResult,
    ReminderMethod,
)
from schemas.errors import BillingError
from services.container import BillingContainer

# Configure structured logging
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
)

logger = structlog.get_logger().bind(component="server")


# =============================================================================
# CONFIGURATION
# =============================================================================

class ServerConfig:
    """Server configuration from environment"""

    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", "8000"))
    ENV = os.getenv("ENV", "development")
    DEBUG = ENV == "development"

    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")


config = ServerConfig()

VERSION = "1.0.0"


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreatePaymentLinkRequest(CreatePaymentLinkParams):
    """Link parameters plus the gateway to create it on."""
    gateway: str = Field(min_length=1)


class RefundRequest(CamelModel):
    gateway: str = Field(min_length=1)
    payment_id: str = Field(min_length=1)
    amount: Optional[float] = Field(default=None, gt=0)


class ManualPaymentRequest(CamelModel):
    invoice_id: str = Field(min_length=1)
    amount: float = Field(gt=0)
    method: str = "manual"
    reference: Optional[str] = None


class PaymentReminderRequest(CamelModel):
    invoice_id: str = Field(min_length=1)
    type: Literal["before_due", "on_due", "after_due"]
    days_offset: int = Field(default=0, ge=0)
    template: str = Field(min_length=1)
    method: ReminderMethod = ReminderMethod.EMAIL


class LateFeeRuleRequest(CamelModel):
    name: str = Field(min_length=1)
    type: Literal["percentage", "fixed"]
    amount: float = Field(ge=0)
    grace_period_days: int = Field(ge=0)
    max_amount: Optional[float] = Field(default=None, ge=0)
    compounding_frequency: Optional[Literal["daily", "weekly", "monthly"]] = None
    is_active: bool = True


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float
    gateways: List[str]


# =============================================================================
# LIFESPAN MANAGEMENT
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic"""
    container: BillingContainer = app.state.container
    logger.info("server_starting", version=VERSION, env=config.ENV)
    await container.startup()

    yield

    logger.info("server_shutting_down")
    await container.shutdown()


def get_container(request: Request) -> BillingContainer:
    return request.app.state.container


# =============================================================================
# ERROR HANDLERS
# =============================================================================

async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    log = logger.warning if exc.status_code < 500 else logger.error
    log("request_failed", path=request.url.path, code=exc.code, message=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = "; ".join(
        f"{'.'.join(str(part) for part in err['loc'][1:]) or 'body'}: {err['msg']}" for err in exc.errors()
    )
    return JSONResponse(status_code=400, content={"error": "validation_error", "message": problems})


# =============================================================================
# PAYMENT ENDPOINTS
# =============================================================================

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request, container: BillingContainer = Depends(get_container)):
    """Health check endpoint"""
    uptime = (datetime.now(timezone.utc) - request.app.state.started_at).total_seconds()
    return HealthResponse(
        status="healthy",
        version=VERSION,
        uptime_seconds=uptime,
        gateways=container.registry.available(),
    )


@router.get("/payments/gateways")
async def list_gateways(container: BillingContainer = Depends(get_container)):
    return {"gateways": container.registry.available()}


@router.post("/payments/links", status_code=201, response_model=PaymentLink)
async def create_payment_link(
    body: CreatePaymentLinkRequest, container: BillingContainer = Depends(get_container)
):
    params = CreatePaymentLinkParams.model_validate(body.model_dump(exclude={"gateway"}))
    return await container.orchestrator.create_link(body.gateway, params)


@router.get("/payments/status/{gateway}/{payment_id}", response_model=PaymentStatus)
async def get_payment_status(
    gateway: str, payment_id: str, container: BillingContainer = Depends(get_container)
):
    return await container.orchestrator.get_status(gateway, payment_id)


@router.post("/payments/refund", response_model=RefundResult)
async def refund_payment(body: RefundRequest, container: BillingContainer = Depends(get_container)):
    return await container.orchestrator.refund(body.gateway, body.payment_id, body.amount)


@router.post("/payments/webhooks/{gateway}")
async def payment_webhook(
    gateway: str, request: Request, container: BillingContainer = Depends(get_container)
):
    """
    Provider callback. Answers 200 for anything short of a signature
    failure so providers do not retry events we cannot use.
    """
    adapter = container.registry.get(gateway)
    payload = await request.body()
    signature = request.headers.get(adapter.signature_header) if adapter.signature_header else None

    try:
        result = await container.orchestrator.ingest_webhook(
            gateway, payload, signature, dict(request.headers)
        )
    except BillingError as e:
        if e.status_code == 401:
            raise
        logger.warning("webhook_not_processed", gateway=gateway, code=e.code, message=e.message)
        return {"received": True, "handled": False}
    except (ValueError, KeyError, TypeError) as e:
        logger.warning("webhook_parse_failed", gateway=gateway, error=str(e))
        return {"received": True, "handled": False}

    if result is None:
        return {"received": True, "handled": False}
    return {"received": True, "handled": True, "eventType": result.event_type.value}


@router.get("/payments/analytics")
async def payment_analytics(
    gateway: Optional[str] = None,
    start_date: Optional[datetime] = Query(default=None, alias="startDate"),
    end_date: Optional[datetime] = Query(default=None, alias="endDate"),
    container: BillingContainer = Depends(get_container),
):
    report = await container.orchestrator.analytics(gateway, start_date, end_date)
    return {"analytics": [entry.model_dump(mode="json", by_alias=False) for entry in report]}


@router.post("/payments/manual", response_model=Invoice)
async def record_manual_payment(
    body: ManualPaymentRequest, container: BillingContainer = Depends(get_container)
):
    return await container.orchestrator.record_manual_payment(
        body.invoice_id, body.amount, body.method, body.reference
    )


# =============================================================================
# SCHEDULER / SWEEPER ENDPOINTS
# =============================================================================

@router.post("/payments/reminders", status_code=201)
async def create_payment_reminder(
    body: PaymentReminderRequest, container: BillingContainer = Depends(get_container)
):
    schedule = await container.scheduler.create_payment_reminder(
        body.invoice_id, body.type, body.days_offset, body.template, body.method
    )
    return {"id": schedule.id, "scheduledAt": schedule.scheduled_at.isoformat()}


@router.post("/payments/reminders/process")
async def process_reminders(container: BillingContainer = Depends(get_container)):
    processed = await container.scheduler.process_due_reminders()
    return {"message": "Reminders processed successfully", "processed": processed}


@router.post("/payments/late-fee-rules", status_code=201)
async def create_late_fee_rule(
    body: LateFeeRuleRequest, container: BillingContainer = Depends(get_container)
):
    rule = await container.late_fees.create_late_fee_rule(LateFeeRule(**body.model_dump()))
    return {"id": rule.id}


@router.post("/payments/late-fees/process")
async def process_late_fees(container: BillingContainer = Depends(get_container)):
    applied = await container.late_fees.process_late_fees()
    return {"message": "Late fees processed successfully", "applied": len(applied)}


# =============================================================================
# AUTOMATION ENDPOINTS
# =============================================================================

@router.get("/automation/rules", response_model=List[AutomationRule])
async def list_automation_rules(container: BillingContainer = Depends(get_container)):
    return await container.engine.list_rules()


@router.post("/automation/rules", status_code=201, response_model=AutomationRule)
async def create_automation_rule(
    body: AutomationRule, container: BillingContainer = Depends(get_container)
):
    return await container.engine.create_rule(body)


@router.patch("/automation/rules/{rule_id}", response_model=AutomationRule)
async def update_automation_rule(
    rule_id: str, body: AutomationRuleUpdate, container: BillingContainer = Depends(get_container)
):
    return await container.engine.update_rule(rule_id, body)


@router.get("/automation/analytics")
async def automation_analytics(
    start_date: Optional[datetime] = Query(default=None, alias="startDate"),
    end_date: Optional[datetime] = Query(default=None, alias="endDate"),
    container: BillingContainer = Depends(get_container),
) -> Dict[str, Any]:
    end = end_date or container.clock.now()
    start = start_date or end - timedelta(days=30)
    return await container.engine.get_automation_analytics(start, end)


# =============================================================================
# FASTAPI APP
# =============================================================================

def create_app(container: Optional[BillingContainer] = None) -> FastAPI:
    app = FastAPI(
        title="Billing Lifecycle Engine",
        description="Payment links, webhooks, reminders, late fees and workflow automation",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.container = container or BillingContainer.from_env()
    app.state.started_at = datetime.now(timezone.utc)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing and request ID headers"""
        request_id = str(uuid4())[:8]
        structlog.contextvars.bind_contextvars(request_id=request_id)
        start = time.perf_counter()

        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        response.headers["X-Request-ID"] = request_id
        return response

    app.add_exception_handler(BillingError, billing_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.include_router(router)
    return app


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    uvicorn.run(
        "api.server:create_app",
        factory=True,
        host=config.HOST,
        port=config.PORT,
        reload=config.DEBUG,
        log_level="info",
    )
