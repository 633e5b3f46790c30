"""
Citizen Assistant - Main Application
====================================

Question-answering assistant for municipal citizen support.

Modules:
- Assistant: RAG answer pipeline (rephrase, retrieve, format, generate, attribute)
- Suggestions: HITL suggestion lifecycle, autopilot replies and offline notices

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Services and DTOs
- Domain: Entities and value objects
- Infrastructure: Database, LLM, vector store
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

# Configuration and Core
from src.config import Settings, settings as default_settings
from src.core import ApplicationException

# Infrastructure
from src.infrastructure.database import init_database, close_database, create_tables
from src.infrastructure.llm import ILLMClient, create_llm_client
from src.infrastructure.vectorstore import MilvusVectorStore

# Assistant Module
from src.assistant.application import (
    AnswerGenerationService,
    ISimilaritySearch,
    PipelineConfig,
    QueryRephraseService,
    RAGPipeline,
    RetrievalService,
)
from src.assistant.infrastructure import (
    LLMClientAdapter,
    PromptConfigManager,
    VectorStoreAdapter,
)

# Suggestions Module
from src.suggestions.application import MessageDispatcher, SuggestionLifecycleManager
from src.suggestions.infrastructure import (
    SuggestionCleanupScheduler,
    conversation_store_scope,
)

# Module Routers
from src.assistant.interfaces import assistant_router
from src.suggestions.interfaces import conversations_router, system_router

# Middleware and Logging
from src.shared.api.middleware import (
    CorrelationIDMiddleware,
    LoggingMiddleware,
    application_exception_handler,
    global_exception_handler,
)
from src.shared.infrastructure.logging import setup_logging, get_logger

logger = get_logger(__name__)


def build_pipeline(
    llm_client: ILLMClient,
    search: ISimilaritySearch,
    config: PipelineConfig,
    max_tokens: Optional[int] = None,
) -> RAGPipeline:
    """Wire the answer pipeline stages around one chat model and one search backend."""
    chat_model = LLMClientAdapter(llm_client, max_tokens=max_tokens)
    return RAGPipeline(
        rephraser=QueryRephraseService(chat_model),
        retriever=RetrievalService(search),
        generator=AnswerGenerationService(chat_model),
        config=config,
    )


def create_app(
    app_settings: Optional[Settings] = None,
    llm_client: Optional[ILLMClient] = None,
    similarity_search: Optional[ISimilaritySearch] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    ``llm_client`` and ``similarity_search`` replace the configured
    providers when given (used by tests and local runs without Zilliz).
    """
    config = app_settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator:
        """
        Application lifespan manager.

        STARTUP:
        1. Setup structured logging
        2. Initialize database and create tables
        3. Initialize LLM client and vector store
        4. Build the answer pipeline and load prompts
        5. Create the suggestion lifecycle and message dispatcher
        6. Start the suggestion cleanup scheduler

        SHUTDOWN:
        1. Stop the cleanup scheduler and prompt watcher
        2. Wait for in-flight generations
        3. Close LLM client and database connections
        """
        # === STARTUP ===
        setup_logging(level=config.log_level, environment=config.environment)
        logger.info("Starting Citizen Assistant", extra={
            "app": config.app_name,
            "version": config.app_version,
            "environment": config.environment
        })
        app.state.settings = config

        # Initialize database
        logger.info("Initializing database")
        init_database(config.database_url)

        # Note: If database is not available, the server will start but
        # conversation endpoints will fail
        database_ready = True
        try:
            await create_tables()
        except Exception as e:
            database_ready = False
            logger.warning(f"Database not available - running in degraded mode: {e}")

        # Initialize LLM client
        logger.info("Initializing LLM client", extra={"provider": config.llm_provider})
        client = llm_client
        if client is None:
            try:
                client = create_llm_client(config)
            except ApplicationException as e:
                logger.warning(f"LLM client initialization failed: {e.message}")
                client = None

        # Initialize vector store (Zilliz / Milvus) - optional
        search = similarity_search
        if search is None and client is not None:
            logger.info("Initializing Milvus vector store")
            search = VectorStoreAdapter(MilvusVectorStore(config=config), client)
            try:
                await search.initialize()
            except ApplicationException as e:
                logger.warning(
                    f"Vector store not available - answers will be degraded: {e.message}"
                )

        # Build the pipeline and the suggestion services
        prompt_manager = PromptConfigManager()
        pipeline = None
        lifecycle = None
        dispatcher = None
        cleanup_scheduler = None

        if client is not None and search is not None:
            pipeline = build_pipeline(
                client, search, PipelineConfig.from_settings(config), config.llm_max_tokens
            )

            logger.info("Loading prompt configuration")
            prompt_manager.subscribe(pipeline.apply_prompts)
            prompt_manager.load(config.prompt_config_path)
            prompt_manager.start_watching()

            lifecycle = SuggestionLifecycleManager(
                pipeline,
                mode=config.default_system_mode,
                confidence=config.suggestion_confidence,
                retention_minutes=config.suggestion_retention_minutes,
            )
            dispatcher = MessageDispatcher(lifecycle, pipeline, conversation_store_scope)

            cleanup_scheduler = SuggestionCleanupScheduler(
                lifecycle, interval_seconds=config.suggestion_cleanup_interval_seconds
            )
            await cleanup_scheduler.start()
        else:
            logger.warning("Answer pipeline not available - no LLM client")

        # Store services in app state for dependency injection
        app.state.llm_client = client
        app.state.vector_store = search
        app.state.prompt_manager = prompt_manager
        app.state.pipeline = pipeline
        app.state.lifecycle = lifecycle
        app.state.dispatcher = dispatcher
        app.state.cleanup_scheduler = cleanup_scheduler
        app.state.database_ready = database_ready

        logger.info("Citizen Assistant started successfully", extra={
            "mode": lifecycle.mode if lifecycle else None
        })

        yield  # Application runs here

        # === SHUTDOWN ===
        logger.info("Shutting down Citizen Assistant")

        if cleanup_scheduler:
            await cleanup_scheduler.stop()

        prompt_manager.stop_watching()

        if lifecycle:
            await lifecycle.drain(timeout=5.0)

        if client is not None and llm_client is None:
            await client.close()

        await close_database()

        logger.info("Citizen Assistant shutdown complete")

    app = FastAPI(
        title="Citizen Assistant API",
        description="""
        ## Municipal citizen-support assistant

        Answers citizen questions from the municipal knowledge base and
        supports agents with human-in-the-loop suggestions.

        ---

        ### 🤖 Assistant Module

        - `POST /assistant/answer` - Run the answer pipeline synchronously
        - `GET /assistant/config` - Current pipeline configuration

        ---

        ### 💬 Conversations Module

        - `POST /conversations/{id}/messages` - Citizen message (triggers a suggestion in HITL mode)
        - `POST /conversations/{id}/agent-messages` - Agent reply (supersedes pending suggestions)
        - `GET /conversations/{id}/pending-suggestion` - Poll for the current suggestion
        - `GET /conversations/{id}/debug` - Debug trace of the last generation
        - `GET|PUT /system/mode` - Global mode: `hitl`, `autopilot`, `off`
        """,
        version=config.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )

    # === CORS Middleware ===
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # === Custom Middleware (from shared) ===
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(CorrelationIDMiddleware)
    app.add_exception_handler(ApplicationException, application_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    # === Include Module Routers ===
    app.include_router(assistant_router)
    app.include_router(conversations_router)
    app.include_router(system_router)

    # === Health Check Endpoint ===

    @app.get("/health", tags=["Health"], responses={
        200: {
            "description": "Service is healthy",
            "content": {
                "application/json": {
                    "example": {
                        "status": "healthy",
                        "service": "citizen-assistant",
                        "version": "1.0.0",
                        "environment": "development",
                        "checks": {
                            "database": "connected",
                            "llm_client": "available",
                            "vector_store": "available (1284 documents)",
                            "prompts": "builtin",
                            "cleanup_scheduler": "running",
                            "system_mode": "hitl",
                            "generations_in_flight": 0,
                            "tracked_conversations": 0
                        }
                    }
                }
            }
        }
    })
    async def health_check(request: Request):
        """
        Health check endpoint for load balancers and orchestrators.

        Reports degraded (not failed) when an optional dependency is down:
        the service still answers, with fallback responses.
        """
        state = request.app.state
        lifecycle = getattr(state, "lifecycle", None)
        scheduler = getattr(state, "cleanup_scheduler", None)
        manager = getattr(state, "prompt_manager", None)

        checks = {
            "database": "connected" if getattr(state, "database_ready", False) else "unavailable",
            "llm_client": "available" if getattr(state, "llm_client", None) else "not_configured",
            "vector_store": "not_configured",
            "prompts": manager.source if manager else "builtin",
            "cleanup_scheduler": "running" if scheduler and scheduler.is_running else "stopped",
            "system_mode": lifecycle.mode if lifecycle else None,
            "generations_in_flight": lifecycle.in_flight if lifecycle else 0,
            "tracked_conversations": lifecycle.tracked_conversations if lifecycle else 0,
        }

        store = getattr(state, "vector_store", None)
        if store is not None and hasattr(store, "get_document_count"):
            try:
                count = await store.get_document_count()
                checks["vector_store"] = f"available ({count} documents)"
            except Exception as e:
                checks["vector_store"] = f"error: {str(e)}"
        elif store is not None:
            checks["vector_store"] = "available"

        healthy = checks["database"] == "connected" and checks["llm_client"] == "available"
        return {
            "status": "healthy" if healthy else "degraded",
            "service": config.app_name,
            "version": config.app_version,
            "environment": config.environment,
            "checks": checks
        }

    @app.get("/", tags=["Root"])
    async def root():
        """Root endpoint with API information."""
        return {
            "service": config.app_name,
            "version": config.app_version,
            "architecture": "Clean Architecture / Modular Monolith",
            "docs": "/docs",
            "health": "/health",
            "modules": {
                "assistant": {
                    "prefix": "/assistant",
                    "endpoints": [
                        "POST /assistant/answer - Answer a citizen question",
                        "GET /assistant/config - Pipeline configuration"
                    ]
                },
                "conversations": {
                    "prefix": "/conversations",
                    "endpoints": [
                        "POST /conversations/{id}/messages - Customer message",
                        "GET /conversations/{id}/messages - List messages",
                        "POST /conversations/{id}/agent-messages - Agent reply",
                        "GET /conversations/{id}/pending-suggestion - Pending suggestion",
                        "GET /conversations/{id}/debug - Last debug trace"
                    ]
                },
                "system": {
                    "prefix": "/system",
                    "endpoints": [
                        "GET /system/mode - Current mode",
                        "PUT /system/mode - Change mode"
                    ]
                }
            }
        }

    return app


app = create_app()


# === Development Entry Point ===

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.main:app",
        host=default_settings.host,
        port=default_settings.port,
        reload=default_settings.environment == "development",
        log_level="info"
    )
