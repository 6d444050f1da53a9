"""
FastAPI Application Entry Point.

This is the main application file for the FiatMint settlement core.
"""

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fiatmint.app.core.config import settings
from fiatmint.app.api.v1.router import router as api_v1_router
from fiatmint.app.core.observability import ObservabilityMiddleware, configure_logging
from fiatmint.app.core.reliability import CircuitBreaker
from fiatmint.app.db.session import engine, Base, AsyncSessionLocal
from fiatmint.app.core.exceptions import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    generic_exception_handler
)
from fiatmint.app.domain.minting.mint_coordinator import MintCoordinator
from fiatmint.app.domain.minting.outbox import OutboxDispatcher
from fiatmint.app.domain.tokens.token_service import TokenService
from fiatmint.app.integrations.blockchain import Web3BlockchainClient, NETWORK_ERRORS
from fiatmint.app.integrations.payment_gateway import HttpPaymentGateway

# Import models to ensure they are registered with Base
from fiatmint.app.models.user import User  # noqa: F401
from fiatmint.app.models.product import Product  # noqa: F401
from fiatmint.app.models.order import Order  # noqa: F401
from fiatmint.app.models.mint import Mint  # noqa: F401
from fiatmint.app.models.ledger_entry import LedgerEntry  # noqa: F401
from fiatmint.app.models.idempotency import IdempotencyRecord  # noqa: F401
from fiatmint.app.models.outbox import OutboxEvent  # noqa: F401
from fiatmint.app.models.perk import Perk, PerkClaim  # noqa: F401
from fiatmint.app.models.vote import Vote, VoteOption, VoteBallot  # noqa: F401
from fiatmint.app.models.audit_log import AuditLog  # noqa: F401

logger = logging.getLogger("fiatmint")


def build_services(app: FastAPI) -> None:
    """Create the long-lived collaborators and attach them to app.state."""
    blockchain = Web3BlockchainClient(
        rpc_url=settings.blockchain_rpc_url,
        contract_address=settings.token_contract_address,
        private_key=settings.blockchain_private_key,
        chain_id=settings.chain_id,
        decimals=settings.token_decimals,
        receipt_timeout=settings.blockchain_receipt_timeout_seconds,
        breaker=CircuitBreaker(
            failure_threshold=settings.blockchain_breaker_threshold,
            reset_timeout=settings.blockchain_breaker_reset_seconds,
            expected_exceptions=NETWORK_ERRORS,
            name="blockchain",
        ),
    )
    coordinator = MintCoordinator(
        blockchain,
        chain_id=settings.chain_id,
        timeout_seconds=settings.blockchain_timeout_seconds,
        stale_after_seconds=settings.mint_in_flight_stale_seconds,
    )

    app.state.blockchain = blockchain
    app.state.mint_coordinator = coordinator
    app.state.token_service = TokenService(blockchain, timeout_seconds=settings.blockchain_timeout_seconds)
    app.state.outbox_dispatcher = OutboxDispatcher(coordinator, batch_size=settings.outbox_batch_size)
    app.state.payment_gateway = HttpPaymentGateway(
        base_url=settings.payment_api_base,
        api_key=settings.payment_api_key,
        success_url=settings.checkout_success_url,
        cancel_url=settings.checkout_cancel_url,
        timeout=settings.payment_timeout_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for application startup/shutdown.

    1. Configures logging and creates database tables.
    2. Builds the blockchain client, mint coordinator, token service and payment gateway.
    3. Starts the outbox worker and stops it on shutdown.
    """
    configure_logging(settings.log_level)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    build_services(app)

    worker = None
    if settings.outbox_worker_enabled:
        worker = asyncio.create_task(
            app.state.outbox_dispatcher.run_forever(AsyncSessionLocal, settings.outbox_poll_interval_seconds)
        )
    logger.info("FiatMint started", extra={"chain_id": settings.chain_id})

    yield

    if worker is not None:
        worker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await worker
    await engine.dispose()


# Initialize FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.api_version,
    debug=settings.debug,
    description="Fiat-to-token settlement core: payments, minting, perks, governance and transparency",
    lifespan=lifespan,
)

app.add_middleware(ObservabilityMiddleware)

# Register global exception handlers
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint.

    Returns:
        dict: Status and application information
    """
    return {
        "status": "healthy",
        "app_name": settings.app_name,
        "version": settings.api_version,
    }


# Include API v1 router
app.include_router(api_v1_router, prefix=f"/{settings.api_version}")


@app.get("/", tags=["Root"])
async def root():
    return {
        "message": "Welcome to the FiatMint API",
        "docs": "/docs",
        "health": "/health",
    }
