"""
Campus Whisper — FastAPI application entry-point.

Run with:
    uvicorn app.main:app --reload
"""

import asyncio
import logging
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from app.config import settings
from app.database import async_session, create_tables
from app.errors import ChatError

# ── Import routers ──
from app.routers import chat
from app.services.sweeper import sweeper_loop

logger = logging.getLogger(__name__)


# ── Lifespan: logging, tables, expiry sweeper ──
@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    await create_tables()

    sweeper = None
    if settings.SWEEP_INTERVAL_SECONDS > 0:
        sweeper = asyncio.create_task(sweeper_loop(async_session, settings.SWEEP_INTERVAL_SECONDS))
    yield
    if sweeper is not None:
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper


app = FastAPI(
    title=settings.APP_NAME,
    description="Campus private chat — time-boxed one-to-one rooms opened by request.",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=("*",))


# ── Domain errors → JSON ──
@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ── Register API routers ──
app.include_router(chat.router)


@app.get("/health")
async def health():
    return {"status": "ok"}
