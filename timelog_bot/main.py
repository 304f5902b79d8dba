import logging

from fastapi import FastAPI

from .api.routes import slack
from .config import settings

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)

app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
)

app.include_router(slack.router)


@app.get("/healthz")
def healthz():
    return {"ok": True, "version": settings.app_version}
