"""
FastAPI server for the off-ramp order engine
Business API, inbound provider webhooks, reconciliation trigger and health check
"""
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from config import Config
from database import AsyncSessionLocal, async_engine, check_connection, create_tables
from handlers import offramp_api, offramp_webhooks
from jobs.offramp_reconciliation import ReconciliationMonitor
from jobs.scheduler import OfframpScheduler
from services.bank_verification_service import BankVerifier, LencoBankVerifier
from services.dex_price_service import DexPriceService, PriceOracle
from services.offramp_order_service import OfframpOrderService
from services.offramp_rate_service import OfframpRateService, RateSource
from services.order_lifecycle import OrderLifecycleManager
from services.quote_resolver import QuoteResolver
from services.settlement_service import HttpPayoutExecutor, HttpSwapExecutor, PayoutExecutor, SwapExecutor
from services.wallet_provisioning_service import CustodyWalletProvisioner, WalletProvisioner
from services.webhook_dispatcher import BusinessWebhookDispatcher
from services.webhook_security_service import WebhookSecurityService
from utils.exception_handler import (
    OfframpError,
    internal_error_response,
    offramp_error_handler,
    request_validation_handler,
)

logger = logging.getLogger(__name__)

SHUTDOWN_DRAIN_SECONDS = 10


@dataclass
class OfframpComponents:
    engine: AsyncEngine
    session_factory: async_sessionmaker
    dispatcher: BusinessWebhookDispatcher
    lifecycle: OrderLifecycleManager
    order_service: OfframpOrderService
    monitor: ReconciliationMonitor
    scheduler: OfframpScheduler
    webhook_security: WebhookSecurityService


def build_components(
    config=None,
    engine: Optional[AsyncEngine] = None,
    session_factory: Optional[async_sessionmaker] = None,
    price_oracle: Optional[PriceOracle] = None,
    rate_source: Optional[RateSource] = None,
    bank_verifier: Optional[BankVerifier] = None,
    wallet_provisioner: Optional[WalletProvisioner] = None,
    swap_executor: Optional[SwapExecutor] = None,
    payout_executor: Optional[PayoutExecutor] = None,
    dispatcher: Optional[BusinessWebhookDispatcher] = None,
) -> OfframpComponents:
    """Wire the engine; any collaborator can be replaced (tests pass in-memory fakes)"""
    config = config or Config
    engine = engine or async_engine
    session_factory = session_factory or AsyncSessionLocal

    rate_source = rate_source or OfframpRateService(config)
    dispatcher = dispatcher or BusinessWebhookDispatcher(session_factory=session_factory, config=config)
    lifecycle = OrderLifecycleManager(
        dispatcher=dispatcher,
        swap_executor=swap_executor or HttpSwapExecutor(config),
        payout_executor=payout_executor or HttpPayoutExecutor(config),
        rate_source=rate_source,
        session_factory=session_factory,
        config=config,
    )
    order_service = OfframpOrderService(
        quote_resolver=QuoteResolver(price_oracle or DexPriceService(config), rate_source, config=config),
        bank_verifier=bank_verifier or LencoBankVerifier(config),
        wallet_provisioner=wallet_provisioner or CustodyWalletProvisioner(config),
        lifecycle=lifecycle,
        dispatcher=dispatcher,
        session_factory=session_factory,
        config=config,
    )
    monitor = ReconciliationMonitor(lifecycle, session_factory=session_factory, config=config)
    return OfframpComponents(
        engine=engine,
        session_factory=session_factory,
        dispatcher=dispatcher,
        lifecycle=lifecycle,
        order_service=order_service,
        monitor=monitor,
        scheduler=OfframpScheduler(monitor, config=config),
        webhook_security=WebhookSecurityService(config),
    )


def create_app(components: Optional[OfframpComponents] = None, config=None) -> FastAPI:
    config = config or Config
    components = components or build_components(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Startup: schema, scheduler.
        Shutdown: stop the scheduler, let in-flight lifecycle work and webhook
        deliveries finish (bounded).
        """
        config.validate()
        await create_tables(components.engine)
        components.scheduler.start()
        logger.info(f"🚀 {config.SERVICE_NAME} started ({config.ENVIRONMENT})")

        yield

        logger.info(f"🔄 {config.SERVICE_NAME} shutting down...")
        components.scheduler.stop()
        await components.lifecycle.drain(timeout=SHUTDOWN_DRAIN_SECONDS)
        await components.dispatcher.drain(timeout=SHUTDOWN_DRAIN_SECONDS)
        await components.engine.dispose()

    app = FastAPI(
        title="Off-ramp Order Service",
        description="Token to NGN off-ramp order orchestration",
        lifespan=lifespan,
    )
    app.state.components = components
    app.state.order_service = components.order_service
    app.state.webhook_security = components.webhook_security

    app.add_exception_handler(OfframpError, offramp_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    @app.middleware("http")
    async def catch_unhandled_errors(request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            return internal_error_response(request, e)

    app.include_router(offramp_api.router)
    app.include_router(offramp_webhooks.router)

    @app.get("/health")
    async def health_check():
        """Liveness plus database reachability"""
        database_ok = await check_connection(components.engine)
        content = {
            "status": "healthy" if database_ok else "degraded",
            "service": config.SERVICE_NAME,
            "database": "ok" if database_ok else "unreachable",
            "scheduler_running": components.scheduler.running,
            "pending_webhooks": components.dispatcher.pending,
        }
        return JSONResponse(content=content, status_code=200 if database_ok else 503)

    @app.post("/internal/reconciliation/run")
    async def run_reconciliation(request: Request):
        """Operator trigger for the expiry and stuck-order sweeps"""
        logger.info(f"🔧 RECONCILIATION_MANUAL: triggered from {request.client.host if request.client else 'unknown'}")
        result = await components.monitor.run_reconciliation()
        return {"success": True, "data": result}

    return app


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    # Single worker: the reconciliation scheduler runs in-process
    uvicorn.run(create_app(), host=Config.HOST, port=Config.PORT)
