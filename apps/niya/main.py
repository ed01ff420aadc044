import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Environment is loaded by Pydantic Settings (see niya.core.settings).
from niya.api import register_routes
from niya.core.dependencies import get_gateway
from niya.core.exceptions import register_exception_handlers
from niya.core.logging import setup_logging
from niya.core.settings import settings

# Initialize logging early so all modules inherit the handlers/level
setup_logging()

app = FastAPI(title="Niya Chat Gateway")
register_exception_handlers(app)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_routes(app)

logger = logging.getLogger(__name__)
logger.info("Niya chat gateway initialized")


@app.on_event("startup")
async def _on_startup() -> None:
    from niya.core.database import init_db

    init_db()
    get_gateway().start_keepalive()
    logger.info("Database ready; keepalive every %ss", settings.keepalive_seconds)


@app.on_event("shutdown")
async def _on_shutdown() -> None:
    await get_gateway().stop_keepalive()
