import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from orderbot.config import settings
from orderbot.database import engine
from orderbot.logging_config import get_logger, setup_logging
from orderbot.models import ConversationSessionRow
from orderbot.routers import message

setup_logging(settings.log_level)
logger = get_logger("main")

app = FastAPI(
    title="Order Bot API",
    description="Conversation and order orchestration for restaurant WhatsApp bots",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(message.router)


@app.on_event("startup")
async def prepare_session_table() -> None:
    if settings.session_backend != "sql":
        return
    ConversationSessionRow.__table__.create(bind=engine, checkfirst=True)
    logger.info("Session table ready")


@app.get("/health")
def health():
    return {"status": "ok", "session_backend": settings.session_backend}
