import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from app.config import settings
from app.core.errors import AuthError, auth_error_handler, validation_error_handler
from app.core.logging import configure_logging
from app.core.redis import close_redis
from app.routers import auth
from app.services.nonce_store import get_nonce_store, sweep_expired_nonces

configure_logging()
logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()

@asynccontextmanager
async def lifespan(app: FastAPI):
    await get_nonce_store()
    scheduler.add_job(sweep_expired_nonces, "interval", seconds=settings.NONCE_SWEEP_INTERVAL_SECONDS)
    scheduler.start()
    logger.info("Nonce store backend: %s (ttl %ss)", settings.NONCE_BACKEND, settings.NONCE_TTL_SECONDS)
    yield
    scheduler.shutdown()
    await close_redis()

app = FastAPI(title="Sign-In with Ethereum API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(AuthError, auth_error_handler)
app.add_exception_handler(RequestValidationError, validation_error_handler)

app.include_router(auth.router)

@app.get("/health")
async def health():
    return {"status": "ok"}
