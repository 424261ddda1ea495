"""Application factory for creating FastAPI instances."""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.endpoints import router, init_dependencies
from .config import AppConfig, ScriptIsolation, get_config, validate_config
from .core.agent_invoker import AgentInvoker
from .core.error_recovery import RetryConfig
from .core.exceptions import TransientError
from .core.execution_engine import ExecutionEngine
from .core.graph_validator import GraphValidator
from .core.logging import setup_logging, get_logger
from .core.model_client import AnthropicModelClient
from .core.script_runner import IsolatedScriptRunner, SandboxedScriptRunner
from .core.state_manager import StateManager
from .core.tool_client import HttpToolClient
from .storage.database import Database


class ApplicationState:
    """Container for application state and components."""

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.database: Optional[Database] = None
        self.state_manager: Optional[StateManager] = None
        self.execution_engine: Optional[ExecutionEngine] = None
        self.logger = None


# Global application state
app_state = ApplicationState()


def build_invoker(config: AppConfig) -> AgentInvoker:
    """Build the agent invoker with HTTP model and tool clients."""
    return AgentInvoker(
        model_client=AnthropicModelClient(
            api_key=config.anthropic_api_key,
            base_url=config.anthropic_base_url,
            anthropic_version=config.anthropic_version,
            timeout=config.model_request_timeout
        ),
        tool_client=HttpToolClient(timeout=config.tool_request_timeout),
        retry_config=RetryConfig(
            max_attempts=config.model_retry_attempts,
            base_delay=config.model_retry_base_delay,
            max_delay=config.model_retry_max_delay,
            retryable_exceptions=[TransientError]
        ),
        max_tool_rounds=config.max_tool_rounds,
        max_tokens=config.max_tokens,
        default_model=config.default_model
    )


def initialize_core_components(config: AppConfig, logger, invoker: Optional[AgentInvoker] = None) -> tuple:
    """Initialize core application components."""
    try:
        database = None
        if config.has_database:
            database = Database(config.database_url, echo=config.database_echo)
            logger.info(f"Checkpoint database configured: {config.database_url.split('://')[0]}")

        state_manager = StateManager(database=database)
        if config.script_isolation == ScriptIsolation.PROCESS:
            script_runner = IsolatedScriptRunner(default_timeout=config.script_timeout)
        else:
            script_runner = SandboxedScriptRunner(default_timeout=config.script_timeout)
        validator = GraphValidator(
            max_loop_iterations=config.max_loop_iterations,
            loop_ceiling_policy=config.loop_ceiling_policy.value,
            script_runner=script_runner
        )
        execution_engine = ExecutionEngine(
            invoker=invoker or build_invoker(config),
            state_manager=state_manager,
            script_runner=script_runner,
            validator=validator,
            max_concurrent_executions=config.max_concurrent_executions,
            node_timeout=config.node_timeout,
            script_timeout=config.script_timeout,
            max_steps_per_run=config.max_steps_per_run
        )

        logger.info("Core components initialized")

        return database, state_manager, execution_engine

    except Exception as e:
        logger.error(f"Core components initialization failed: {e}")
        raise


def graceful_shutdown(execution_engine: ExecutionEngine, database: Optional[Database], logger) -> None:
    """Handle graceful shutdown of application components."""
    logger.info("Shutting down workflow engine")

    try:
        execution_engine.shutdown(wait=True, cancel_active=True)
        logger.info("Execution engine shutdown completed")
    except Exception as e:
        logger.error(f"Error during execution engine shutdown: {str(e)}")

    if database is not None:
        try:
            database.dispose()
            logger.info("Database connections closed")
        except Exception as e:
            logger.error(f"Error closing database connections: {str(e)}")


def create_lifespan_handler(config: AppConfig, execution_engine: Optional[ExecutionEngine] = None):
    """Create the application lifespan handler.

    When an engine is supplied it is used as-is and left running on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.log_structured,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count
        )
        logger = get_logger(__name__)
        logger.info(f"Starting {config.app_name} v{config.app_version}")

        owned = execution_engine is None
        try:
            if owned:
                database, state_manager, engine = initialize_core_components(config, logger)
            else:
                engine = execution_engine
                state_manager = engine.state_manager
                database = state_manager.database

            app_state.config = config
            app_state.database = database
            app_state.state_manager = state_manager
            app_state.execution_engine = engine
            app_state.logger = logger

            init_dependencies(execution_engine=engine, state_manager=state_manager)

            logger.info("Application startup completed successfully")

        except Exception as e:
            logger.error(f"Application startup failed: {e}")
            raise

        yield

        if owned:
            try:
                graceful_shutdown(engine, database, logger)
            except Exception as e:
                logger.error(f"Error during graceful shutdown: {e}")

    return lifespan


def create_app(config: Optional[AppConfig] = None, execution_engine: Optional[ExecutionEngine] = None) -> FastAPI:
    """Create and configure FastAPI application instance."""

    # Use provided config or load from environment
    if config is None:
        config = get_config()

    validate_config(config)

    app = FastAPI(
        title=config.app_name,
        description="Executes workflow graphs of agent, transform, branch, loop and approval steps",
        version=config.app_version,
        debug=config.debug,
        lifespan=create_lifespan_handler(config, execution_engine)
    )

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=config.cors_methods,
            allow_headers=["*"],
        )

    if config.enable_request_logging:
        from .core.middleware import ErrorHandlingMiddleware, RequestLoggingMiddleware

        app.add_middleware(RequestLoggingMiddleware, slow_request_threshold=config.slow_request_threshold)
        app.add_middleware(ErrorHandlingMiddleware)

    app.include_router(router)

    add_health_endpoints(app, config)

    return app


def add_health_endpoints(app: FastAPI, config: AppConfig) -> None:
    """Add health check endpoints to the application."""

    @app.get("/")
    async def root():
        """Root endpoint for basic health check."""
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    @app.get("/health")
    async def health_check():
        """Health check with engine status."""
        engine = app_state.execution_engine
        return {
            "status": "healthy" if engine is not None else "starting",
            "service": config.app_name.lower().replace(" ", "-"),
            "version": config.app_version,
            "active_runs": len(engine.list_active_runs()) if engine is not None else 0,
            "persistent_checkpoints": app_state.database is not None
        }


def get_app_state() -> ApplicationState:
    """Get the current application state."""
    return app_state
