import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from filevault.api.routes import router
from filevault.config import CORS_ORIGINS, ENABLE_WORKER, LOG_LEVEL
from filevault.core.exceptions import register_exception_handlers
from filevault.db import init_db
from filevault.deps import get_dispatcher
from filevault.worker import start_worker

app = FastAPI(title="FileVault API", version="1.0.0")

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger("filevault")

origins = [origin.strip() for origin in CORS_ORIGINS.split(",")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

init_db()

app.include_router(router)
register_exception_handlers(app)

if ENABLE_WORKER:
    start_worker(get_dispatcher())
else:
    logger.info("Archive worker disabled; archive jobs run inline.")
