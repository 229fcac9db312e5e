# trademarket/main.py
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .config import get_settings
from .db import get_session
from .errors import GatewayError, LifecycleError
from .jobs import router as jobs_router
from .logging_config import configure_logging, get_logger
from .maintenance import router as maintenance_router
from .payments import router as payments_router
from .stripe_webhook import router as stripe_router

logger = get_logger("trademarket.main")
settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level)
    logger.info("Trademarket API starting (debug=%s)", settings.debug)
    yield
    logger.info("Trademarket API shutting down")


app = FastAPI(title="Trademarket API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LifecycleError)
async def lifecycle_error_handler(request: Request, exc: LifecycleError):
    if isinstance(exc, GatewayError):
        detail = "The payment provider could not be reached. Please try again."
    else:
        detail = exc.message
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": detail, "code": exc.code})


@app.get("/health")
def health(): return {"ok": True}


@app.get("/")
def root(): return {"name": "trademarket-api"}


@app.get("/health/db")
async def health_db(db: AsyncSession = Depends(get_session)):
    try:
        result = await db.execute(text("select 1"))
        return {"db": result.scalar_one()}
    except Exception as e:
        # surface the error so we know exactly what's wrong
        logger.warning("DB health check failed: %s", e)
        return {"error": str(e)}


# routers
app.include_router(jobs_router)
app.include_router(payments_router)
app.include_router(stripe_router)
app.include_router(maintenance_router)
