from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
import logging
import os
import time

from db.database import init_db, DB_PATH
from routers import taxes

# ── Logging setup ─────────────────────────────────────────────────────────────
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
# Quiet noisy libraries unless we're in DEBUG
if LOG_LEVEL != "DEBUG":
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

logger = logging.getLogger("apportion")

app = FastAPI(
    title="Apportion — Receipt Tax Attribution",
    description="Works out which receipt line items were taxed and reconciles the totals",
    version="0.1.0",
)

_cors_origins = os.environ.get("CORS_ORIGINS", "").strip()
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins.split(",") if _cors_origins else ["*"],
    allow_credentials=bool(_cors_origins),  # only send credentials when origins are explicit
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(taxes.router, prefix="/api/taxes", tags=["taxes"])

@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    elapsed = (time.time() - start) * 1000
    if LOG_LEVEL == "DEBUG" or response.status_code >= 400:
        logger.log(
            logging.WARNING if response.status_code >= 400 else logging.DEBUG,
            "%s %s → %s (%.0fms)",
            request.method, request.url.path, response.status_code, elapsed,
        )
    return response

@app.on_event("startup")
async def on_startup():
    logger.info("Starting Apportion v0.1.0  LOG_LEVEL=%s  DB=%s", LOG_LEVEL, DB_PATH)
    await init_db()

@app.get("/api/health")
async def health():
    return {"status": "ok", "version": "0.1.0"}


@app.get("/api/diagnose")
async def diagnose():
    """Check that the cache database and the oracle key are in place."""
    results = {}

    db_dir = os.path.dirname(DB_PATH) or "."
    results["data_dir"] = {
        "ok": os.path.isdir(db_dir) and os.access(db_dir, os.W_OK),
        "path": DB_PATH,
    }

    # Anthropic key (never expose key material — only report presence)
    key = os.environ.get("ANTHROPIC_API_KEY", "")
    results["anthropic_key"] = {
        "ok": bool(key and key.startswith("sk-")),
        "set": bool(key),
    }

    # Without a key the oracle tier is skipped; that is degraded, not broken.
    return {"all_ok": results["data_dir"]["ok"], "checks": results}
