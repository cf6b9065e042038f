# mailla/main.py
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from mailla.api import triage
from mailla.config import get_settings
from mailla.core.exceptions import ApplicationError, ResourceNotFoundError
from mailla.core.logging import get_logger, setup_logging
from mailla.db.session import SessionLocal, init_db
from mailla.services.llm_client import OpenAIChatClient
from mailla.services.notifier import Notifier
from mailla.services.repo import Repo
from mailla.services.triage_service import TriageService

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_json)
    await init_db()

    repo = Repo(SessionLocal)
    # without an API key every turn gets the fallback reply
    llm_client = OpenAIChatClient() if settings.openai_api_key else None
    if llm_client is None:
        logger.warning("OPENAI_API_KEY is not set, model replies are disabled")
    app.state.triage_service = TriageService(
        repo, notifier=Notifier(repo), llm_client=llm_client, settings=settings
    )
    logger.info("Application started", extra={"environment": settings.environment})
    try:
        yield
    finally:
        if llm_client is not None:
            await llm_client.aclose()


app = FastAPI(title="Mailla Triage API", lifespan=lifespan)


@app.exception_handler(ResourceNotFoundError)
async def not_found_handler(request: Request, exc: ResourceNotFoundError):
    return JSONResponse(status_code=404, content={"error": exc.message, "details": exc.details})


@app.exception_handler(ApplicationError)
async def application_error_handler(request: Request, exc: ApplicationError):
    logger.error("Request failed", extra={"path": request.url.path, "error": exc.message})
    return JSONResponse(status_code=500, content={"error": exc.message, "details": exc.details})


app.include_router(triage.router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("mailla.main:app", host="0.0.0.0", port=8000, reload=get_settings().environment == "development")
