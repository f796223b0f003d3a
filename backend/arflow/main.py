"""FastAPI application entrypoint.

Controllers live in `arflow.routes` and are mounted under `/api`. They
are thin: they accept requests, delegate to services and return JSON.
Service errors (`arflow.errors`) are translated to HTTP responses here.
"""

import json
import logging
import time
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, Response

from .config import settings
from .database import create_db_and_tables
from .errors import ARFlowError
from .routes import ROUTERS

app = FastAPI(title="ARFlow API")
logger = logging.getLogger("arflow.api")
if not logger.handlers:
    logging.basicConfig(level=settings.LOG_LEVEL)

if settings.ALLOW_DEV_CORS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

create_db_and_tables()

for router in ROUTERS:
    app.include_router(router, prefix="/api")


def _request_summary(request: Request, started: float, **extra) -> str:
    data = {
        "request_id": request.state.request_id,
        "path": request.url.path,
        "method": request.method,
        "duration_ms": round((time.perf_counter() - started) * 1000.0, 2),
        "client": request.client.host if request.client else "unknown",
    }
    data.update(extra)
    return json.dumps(data, ensure_ascii=True)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    request.state.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    started = time.perf_counter()
    response: Response
    try:
        response = await call_next(request)
    except Exception:
        logger.exception("request_failed %s", _request_summary(request, started))
        raise
    response.headers["X-Request-ID"] = request.state.request_id
    logger.info("request_done %s", _request_summary(request, started, status_code=response.status_code))
    return response


@app.exception_handler(ARFlowError)
async def arflow_error_handler(request: Request, exc: ARFlowError):
    if exc.status_code >= 500:
        logger.warning("upstream failure on %s request_id=%s: %s", request.url.path,
                       getattr(request.state, "request_id", None), exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    request_id = getattr(request.state, "request_id", None)
    logger.exception("unhandled error on %s request_id=%s", request.url.path, request_id)
    headers = {"X-Request-ID": request_id} if request_id else None
    return JSONResponse(status_code=500, content={"detail": "Internal server error"}, headers=headers)


@app.get("/", response_class=HTMLResponse)
def home():
    """Minimal landing page with a link to the interactive docs."""
    return """
    <!DOCTYPE html>
    <html>
    <head>
      <meta charset="UTF-8" />
      <title>ARFlow API</title>
      <style>
        body { font-family: Arial, sans-serif; margin: 32px; }
        .card { max-width: 640px; padding: 16px; border: 1px solid #ddd; border-radius: 8px; }
      </style>
    </head>
    <body>
      <div class="card">
        <h1>ARFlow API</h1>
        <p>Accounts receivable: invoices, payments, Stripe and Authorize.net, Acumatica sync.</p>
        <p>Browse the endpoints in the <a href="/docs">Swagger UI</a>.
        Start with <code>/api/auth/register</code> then <code>/api/auth/login</code>.</p>
      </div>
    </body>
    </html>
    """


@app.get("/health")
def health():
    """Lightweight health check for uptime monitoring."""
    return {"status": "ok"}
