import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.routes import api_router
from .config import EngineConfig
from .logging_utils import configure_logging
from .services.generation_client import HttpGenerationClient, ProviderSettings
from .services.output_persistence import drain_pending_saves, persistence_from_config
from .services.scheduler import WorkflowScheduler
from .services.workflow_store import InMemoryWorkflowStore

configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Wire the engine on startup and release its HTTP clients on shutdown.
    """
    logger.info("Starting mediaflow workflow engine")
    provider_settings = ProviderSettings.from_config()
    client = HttpGenerationClient(provider_settings)
    persistence = persistence_from_config()
    store = InMemoryWorkflowStore()

    app.state.store = store
    app.state.scheduler = WorkflowScheduler(
        store,
        client,
        provider_settings=provider_settings,
        persistence=persistence,
        max_concurrent_calls=EngineConfig.default_max_concurrent_calls(),
    )
    logger.info(
        "Engine ready (generate=%s, llm=%s, max_concurrent_calls=%d)",
        EngineConfig.GENERATE_API_URL,
        EngineConfig.LLM_API_URL,
        app.state.scheduler.max_concurrent_calls,
    )

    yield

    logger.info("Shutting down mediaflow workflow engine")
    app.state.scheduler.stop()
    await drain_pending_saves()
    await client.aclose()
    if persistence is not None:
        await persistence.aclose()


app = FastAPI(
    title="mediaflow",
    description="Execution engine for node-based AI media generation workflows.",
    lifespan=lifespan,
)

# Allow the editor from localhost and Vercel preview deployments
app.add_middleware(
    CORSMiddleware,
    allow_origins=[],
    allow_origin_regex=r"^https:\/\/.*\.vercel\.app$|^http:\/\/localhost:\d+$|^http:\/\/127\.0\.0\.1:\d+$",
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
    allow_headers=["*"],
    expose_headers=["*"],
)

app.include_router(api_router)
