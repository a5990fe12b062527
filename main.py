"""
WhatsApp Auto-Reply API - Main Entry Point
Session lifecycle + grounded (RAG) replies for WhatsApp business accounts
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi

# Import configuration
from app.config import settings

# Import API routers
from app.api import sessions, webhook, websocket as ws_router

# Import services
from app.models.webhook import HealthResponse
from app.services.account_service import get_account_service
from app.services.session_registry import get_session_registry

# Initialize logger
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan (startup/shutdown)"""
    logger.info("🚀 Starting WhatsApp Auto-Reply API...")

    if not settings.is_supabase_configured:
        logger.warning("⚠️ SUPABASE_URL / SUPABASE_SERVICE_KEY not set. Nothing will be persisted.")
    if not settings.is_gemini_configured:
        logger.warning("⚠️ GOOGLE_API_KEY not set. Replies will use the fallback text.")

    registry = get_session_registry()
    contexts = await get_account_service().load_account_contexts(settings.WA_ACCOUNT_IDS)
    if contexts:
        await registry.start_all(contexts)
    else:
        logger.warning("⚠️ No WhatsApp account context loaded. No session started.")

    logger.info("Application startup complete")
    yield

    logger.info("Application shutdown")
    await registry.shutdown()


# Create FastAPI application
app = FastAPI(
    title="WhatsApp Auto-Reply API",
    description="""
## 📱 WhatsApp Auto-Reply & RAG Worker

Keeps one WhatsApp session per account alive and answers inbound messages
with Gemini, grounded in the account's knowledge base.
""",
    version="1.0.0",
    lifespan=lifespan,
    swagger_ui_parameters={
        "defaultModelsExpandDepth": -1,
        "docExpansion": "list",
        "filter": True,
        "persistAuthorization": True,
    },
    redoc_url="/redoc",
    docs_url="/docs",
    openapi_url="/openapi.json"
)

# CORS Middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

# Include routers
app.include_router(webhook.router)  # WhatsApp API callbacks (/webhook/*)
app.include_router(sessions.router)  # Session status / restart (/sessions/*)
app.include_router(ws_router.router)  # Status mirror for the dashboard (/ws/status/*)


def custom_openapi():
    """OpenAPI schema with the X-API-Key scheme documented"""
    if app.openapi_schema:
        return app.openapi_schema

    openapi_schema = get_openapi(
        title=app.title,
        version=app.version,
        description=app.description,
        routes=app.routes,
    )

    openapi_schema.setdefault("components", {})["securitySchemes"] = {
        "ApiKeyAuth": {
            "type": "apiKey",
            "in": "header",
            "name": "X-API-Key",
            "description": "Shared secret (WEBHOOK_SECRET_KEY) for webhook and session endpoints"
        }
    }
    openapi_schema["security"] = [{"ApiKeyAuth": []}]

    openapi_schema["tags"] = [
        {
            "name": "health",
            "description": "Health check and session counters"
        },
        {
            "name": "webhook",
            "description": "🔗 **WhatsApp API callbacks** - qr, ready, auth_failure, disconnected and message events, routed to the owning session."
        },
        {
            "name": "sessions",
            "description": "📱 **Sessions** - Live status, pairing image and restart of each account's WhatsApp session."
        },
        {
            "name": "websocket",
            "description": "⚡ **WebSocket** - `whatsapp_status_update` push for dashboards."
        }
    ]

    app.openapi_schema = openapi_schema
    return app.openapi_schema


app.openapi = custom_openapi


@app.get(
    "/health",
    tags=["health"],
    response_model=HealthResponse,
    summary="API Health Check",
)
def health():
    snapshots = get_session_registry().snapshots()
    return HealthResponse(
        status="ok",
        sessions=len(snapshots),
        connected=sum(1 for s in snapshots if s.connected),
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host=settings.HOST,
        port=settings.PORT,
        ws_ping_interval=20.0,
        ws_ping_timeout=60.0,
    )
