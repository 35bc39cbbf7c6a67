from credit_gate.config import FORWARDED_ALLOW_IPS
from credit_gate.db_init import ensure_schema
from credit_gate.dependencies import get_ledger_service, get_rate_limiter, get_token_manager
from credit_gate.guard import register_exception_handlers
from credit_gate.routes import credit_router, session_router
from credit_gate.scheduler import setup_scheduler
from utils.environment import ENVIRONMENT
from fastapi import FastAPI, APIRouter
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware
import os
import logging
from pathlib import Path
from apscheduler.schedulers.asyncio import AsyncIOScheduler

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Create the main app
app = FastAPI(title="Credit Gate - Paid Access Control")

api_router = APIRouter(prefix="/api")

scheduler = AsyncIOScheduler()


@api_router.get("/health")
async def health():
    return {"status": "ok", "environment": ENVIRONMENT}


# Credit ledger: balance, history, metered debits, admin grants
api_router.include_router(credit_router)
# Refresh-token sessions: login, rotate, logout
api_router.include_router(session_router)

app.include_router(api_router)

register_exception_handlers(app)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=[origin.strip() for origin in os.environ.get(
        'CORS_ORIGINS', 'http://localhost:3000').split(',')],
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Retry-After", "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset"],
)

# Client address for anonymous rate limits: X-Forwarded-For is honoured only
# when the connecting peer is a listed proxy
app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=FORWARDED_ALLOW_IPS)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@app.on_event("startup")
async def startup():
    # Check database connection first - fail fast if database is unavailable
    from database import check_db_connection, db
    db_ok, db_error = await check_db_connection()
    if not db_ok:
        logger.critical(f"Database connection failed on startup: {db_error}")
        raise RuntimeError(
            f"Cannot start application - database connection failed: {db_error}")

    # Collections, non-negative balance validator, indexes
    for line in await ensure_schema(db):
        logger.info(line)
    await db.users.create_index("email", unique=True)
    await db.users.create_index("id", unique=True)

    setup_scheduler(scheduler, get_ledger_service(), get_token_manager(), get_rate_limiter())
    scheduler.start()
    logger.info(f"Credit gate started ({ENVIRONMENT}) - token sweep, rate-limit sweep and pending repair scheduled")


@app.on_event("shutdown")
async def shutdown_db_client():
    if scheduler.running:
        scheduler.shutdown()
        logger.info("Scheduler shut down")

    from database import client
    client.close()
