# FastAPI Server for the ShillMarket order pipeline

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging
import sys

from database.config import init_db, SessionLocal
from routers import offers_router, orders_router
from services.exceptions import OrderPipelineError

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)]
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="ShillMarket API",
    description="Promotion task marketplace: order fulfillment & settlement",
    version="1.0.0"
)


@app.on_event("startup")
def startup_event():
    from services.dispatch_scheduler import get_dispatch_scheduler, VERIFY_ORDER_JOB
    from services.reconciliation import ReconciliationService
    from services.verification_service import VerificationJobProcessor

    # Initialize database tables using SQLAlchemy create_all
    init_db()

    # Verification worker: one fixed processor, registered once
    scheduler = get_dispatch_scheduler()
    scheduler.register(VERIFY_ORDER_JOB, VerificationJobProcessor())
    scheduler.start()
    logger.info("Verification worker started")

    # Detect orders whose record disagrees with the ledger
    db = SessionLocal()
    try:
        ReconciliationService(db).run()
    except Exception as e:
        logger.error(f"Startup reconciliation failed: {e}")
    finally:
        db.close()


@app.on_event("shutdown")
def shutdown_event():
    from services.dispatch_scheduler import get_dispatch_scheduler
    get_dispatch_scheduler().shutdown()


# CORS Setup - Allow all origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,  # Required when using "*"
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# ERROR HANDLERS
# ============================================================================

@app.exception_handler(OrderPipelineError)
async def order_pipeline_error_handler(request: Request, exc: OrderPipelineError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.reason, "detail": exc.detail},
    )


HTTP_ERROR_REASONS = {
    status.HTTP_401_UNAUTHORIZED: "unauthorized",
    status.HTTP_403_FORBIDDEN: "forbidden",
    status.HTTP_404_NOT_FOUND: "not_found",
}


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": HTTP_ERROR_REASONS.get(exc.status_code, "error"), "detail": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "invalid_input", "detail": jsonable_encoder(exc.errors())},
    )


# ============================================================================
# ROUTERS
# ============================================================================
app.include_router(offers_router)
app.include_router(orders_router)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "shillmarket-backend"}
