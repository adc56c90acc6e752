import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from relay.logging import setup_logging
from relay.routers import router
from relay.schemas import CompletionOptions
from relay.services.connections import ConnectionManager
from relay.services.context_store import ContextStore
from relay.services.llm_client import LLMClient
from relay.services.session import CompletionClient
from relay.settings import Settings, settings

logger = logging.getLogger(__name__)


def create_app(
    config: Settings | None = None,
    completion_client: CompletionClient | None = None,
) -> FastAPI:
    """Build the relay app; tests may inject their own completion client."""
    config = config or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Own the transcript store, socket registry and LLM session."""
        setup_logging(config.LOG_LEVEL, config.LOG_JSON)
        logger.info("Socket server starting on port %s", config.PORT)
        llm: LLMClient | None = None
        if completion_client is None:
            if not config.LLM_API_KEY:
                logger.warning("LLM_API_KEY is not set; completion requests will be rejected")
            llm = LLMClient(
                base_url=config.LLM_MODEL_URL,
                model_name=config.LLM_MODEL_NAME,
                api_key=config.LLM_API_KEY,
                temperature=config.LLM_TEMPERATURE,
                max_output_tokens=config.LLM_MAX_TOKENS,
                timeout=config.LLM_TIMEOUT,
            )
            app.state.llm = llm
        else:
            app.state.llm = completion_client

        app.state.options = CompletionOptions(
            model=config.LLM_MODEL_NAME,
            temperature=config.LLM_TEMPERATURE,
            max_output_tokens=config.LLM_MAX_TOKENS,
        )

        app.state.store = ContextStore(
            config.SYSTEM_PROMPT, max_turns=config.MAX_HISTORY_TURNS
        )
        app.state.connections = ConnectionManager()
        try:
            yield
        finally:
            if llm is not None:
                await llm.close()

    app = FastAPI(lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    app.include_router(router)

    static_dir = Path(config.STATIC_DIR)
    if static_dir.is_dir():
        app.mount("/", StaticFiles(directory=static_dir, html=True), name="static")

    return app


app = create_app()


def run() -> None:
    """Console entry point: serve the relay with uvicorn."""
    uvicorn.run(app, host=settings.HOST, port=settings.PORT, log_config=None)
