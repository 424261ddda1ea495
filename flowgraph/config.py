"""Configuration management for the workflow graph engine."""

import os
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from .core.exceptions import ConfigurationError


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LoopCeilingPolicy(str, Enum):
    """What to do with a while node whose maxIterations exceeds the ceiling."""
    CLAMP = "clamp"
    REJECT = "reject"


class ScriptIsolation(str, Enum):
    """Where transform and condition scripts are evaluated."""
    PROCESS = "process"
    THREAD = "thread"


class AppConfig(BaseModel):
    """Application configuration settings."""

    # Application settings
    app_name: str = Field(default="Flowgraph Workflow Engine", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server settings
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")
    reload: bool = Field(default=False, description="Enable auto-reload in development")

    # Checkpoint storage; in-memory only when unset
    database_url: Optional[str] = Field(default=None, description="Database connection URL for run checkpoints")
    database_echo: bool = Field(default=False, description="Enable SQLAlchemy query logging")

    # Execution engine settings
    max_concurrent_executions: int = Field(default=10, description="Maximum number of concurrent workflow executions")
    node_timeout: float = Field(default=300.0, description="Default agent/mcp node timeout in seconds")
    script_timeout: float = Field(default=5.0, description="Default script timeout in seconds")
    script_isolation: ScriptIsolation = Field(
        default=ScriptIsolation.PROCESS, description="Run scripts in a killable worker process or in the calling thread"
    )
    max_loop_iterations: int = Field(default=100, description="Ceiling for while-node maxIterations")
    loop_ceiling_policy: LoopCeilingPolicy = Field(
        default=LoopCeilingPolicy.CLAMP, description="Clamp or reject loop bounds above the ceiling"
    )
    max_steps_per_run: int = Field(default=10000, description="Maximum node visits per run")

    # Invoker settings
    max_tool_rounds: int = Field(default=10, description="Maximum model tool-call rounds per agent step")
    model_retry_attempts: int = Field(default=3, description="Attempts for transient upstream failures")
    model_retry_base_delay: float = Field(default=1.0, description="Initial retry backoff in seconds")
    model_retry_max_delay: float = Field(default=30.0, description="Maximum retry backoff in seconds")
    model_request_timeout: float = Field(default=120.0, description="HTTP timeout for model requests")
    tool_request_timeout: float = Field(default=60.0, description="HTTP timeout for tool server requests")
    anthropic_api_key: Optional[str] = Field(default=None, description="Anthropic API key")
    anthropic_base_url: str = Field(default="https://api.anthropic.com", description="Anthropic API base URL")
    anthropic_version: str = Field(default="2023-06-01", description="Anthropic API version header")
    default_model: str = Field(default="anthropic/claude-sonnet-4-20250514", description="Model used when a node sets none")
    max_tokens: int = Field(default=4096, description="Maximum tokens per model reply")

    # Logging settings
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - [run=%(run_id)s] - %(message)s",
        description="Log message format"
    )
    log_file: Optional[str] = Field(default=None, description="Log file path")
    log_max_size: int = Field(default=10485760, description="Maximum log file size in bytes")  # 10MB
    log_backup_count: int = Field(default=5, description="Number of log backup files to keep")
    log_structured: bool = Field(default=False, description="Emit JSON log records")

    # Request handling settings
    enable_request_logging: bool = Field(default=True, description="Enable request logging middleware")
    slow_request_threshold: float = Field(default=5.0, description="Threshold in seconds for slow request warnings")

    # Security settings
    cors_origins: List[str] = Field(default=["*"], description="CORS allowed origins")
    cors_methods: List[str] = Field(default=["GET", "POST"], description="CORS allowed methods")

    @field_validator('database_url')
    @classmethod
    def validate_database_url(cls, v):
        """Validate database URL format."""
        if v is None or v == "":
            return None

        supported_schemes = ['sqlite', 'postgresql', 'mysql']
        scheme = v.split('://')[0].lower().split('+')[0]

        if scheme not in supported_schemes:
            raise ValueError(f"Unsupported database scheme: {scheme}. Supported: {supported_schemes}")

        return v

    @field_validator('port')
    @classmethod
    def validate_port(cls, v):
        """Validate port number."""
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator('max_concurrent_executions', 'max_steps_per_run', 'model_retry_attempts', 'max_tokens')
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

    @field_validator('max_loop_iterations', 'max_tool_rounds')
    @classmethod
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError("Value must be non-negative")
        return v

    @field_validator('node_timeout', 'script_timeout', 'model_request_timeout', 'tool_request_timeout')
    @classmethod
    def validate_timeouts(cls, v):
        """Validate timeout values."""
        if v <= 0:
            raise ValueError("Timeout must be positive")
        return v

    @property
    def has_database(self) -> bool:
        return self.database_url is not None

    @property
    def is_sqlite(self) -> bool:
        """Check if using SQLite database."""
        return bool(self.database_url) and self.database_url.startswith("sqlite")

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return not self.debug and not self.reload

    def get_uvicorn_config(self) -> Dict[str, Any]:
        """Get Uvicorn server configuration."""
        return {
            "host": self.host,
            "port": self.port,
            "reload": self.reload,
            "log_level": self.log_level.value.lower(),
            "access_log": self.debug
        }

    @classmethod
    def from_env(cls) -> 'AppConfig':
        """Create configuration from FLOWGRAPH_* environment variables."""
        def get_env(key: str, default=None, type_func=str):
            """Get environment variable with type conversion."""
            value = os.getenv(f"FLOWGRAPH_{key}")
            if value is None:
                return default
            if type_func == bool:
                return str(value).lower() in ('true', '1', 'yes', 'on')
            elif type_func == list:
                return [item.strip() for item in value.split(',') if item.strip()] if value else default
            return type_func(value)

        return cls(
            app_name=get_env("APP_NAME", "Flowgraph Workflow Engine"),
            app_version=get_env("APP_VERSION", "1.0.0"),
            debug=get_env("DEBUG", False, bool),
            host=get_env("HOST", "0.0.0.0"),
            port=get_env("PORT", 8000, int),
            reload=get_env("RELOAD", False, bool),
            database_url=get_env("DATABASE_URL", None),
            database_echo=get_env("DATABASE_ECHO", False, bool),
            max_concurrent_executions=get_env("MAX_CONCURRENT_EXECUTIONS", 10, int),
            node_timeout=get_env("NODE_TIMEOUT", 300.0, float),
            script_timeout=get_env("SCRIPT_TIMEOUT", 5.0, float),
            script_isolation=ScriptIsolation(get_env("SCRIPT_ISOLATION", "process").lower()),
            max_loop_iterations=get_env("MAX_LOOP_ITERATIONS", 100, int),
            loop_ceiling_policy=LoopCeilingPolicy(get_env("LOOP_CEILING_POLICY", "clamp").lower()),
            max_steps_per_run=get_env("MAX_STEPS_PER_RUN", 10000, int),
            max_tool_rounds=get_env("MAX_TOOL_ROUNDS", 10, int),
            model_retry_attempts=get_env("MODEL_RETRY_ATTEMPTS", 3, int),
            model_retry_base_delay=get_env("MODEL_RETRY_BASE_DELAY", 1.0, float),
            model_retry_max_delay=get_env("MODEL_RETRY_MAX_DELAY", 30.0, float),
            model_request_timeout=get_env("MODEL_REQUEST_TIMEOUT", 120.0, float),
            tool_request_timeout=get_env("TOOL_REQUEST_TIMEOUT", 60.0, float),
            anthropic_api_key=get_env("ANTHROPIC_API_KEY", None) or os.getenv("ANTHROPIC_API_KEY"),
            anthropic_base_url=get_env("ANTHROPIC_BASE_URL", "https://api.anthropic.com"),
            anthropic_version=get_env("ANTHROPIC_VERSION", "2023-06-01"),
            default_model=get_env("DEFAULT_MODEL", "anthropic/claude-sonnet-4-20250514"),
            max_tokens=get_env("MAX_TOKENS", 4096, int),
            log_level=LogLevel(get_env("LOG_LEVEL", "INFO").upper()),
            log_format=get_env("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - [run=%(run_id)s] - %(message)s"),
            log_file=get_env("LOG_FILE", None),
            log_max_size=get_env("LOG_MAX_SIZE", 10485760, int),
            log_backup_count=get_env("LOG_BACKUP_COUNT", 5, int),
            log_structured=get_env("LOG_STRUCTURED", False, bool),
            enable_request_logging=get_env("ENABLE_REQUEST_LOGGING", True, bool),
            slow_request_threshold=get_env("SLOW_REQUEST_THRESHOLD", 5.0, float),
            cors_origins=get_env("CORS_ORIGINS", ["*"], list),
            cors_methods=get_env("CORS_METHODS", ["GET", "POST"], list)
        )


# Global configuration instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """Load configuration from a .env file (when present) and environment variables."""
    global _config

    from dotenv import load_dotenv
    if config_file and os.path.exists(config_file):
        load_dotenv(config_file)
    elif os.path.exists('.env'):
        load_dotenv('.env')

    _config = AppConfig.from_env()

    return _config


def reset_config():
    """Reset the global configuration instance (mainly for testing)."""
    global _config
    _config = None


def validate_config(config: AppConfig) -> None:
    """
    Validate configuration settings that depend on the environment.

    Raises:
        ConfigurationError: If a directory cannot be created or a limit is unreasonable
    """
    errors = []

    if config.is_sqlite and ":memory:" not in config.database_url:
        db_path = config.database_url.split(":///", 1)[-1]
        db_dir = os.path.dirname(db_path)
        if db_dir and not os.path.exists(db_dir):
            try:
                os.makedirs(db_dir, exist_ok=True)
            except OSError as e:
                errors.append(f"Cannot create database directory {db_dir}: {e}")

    if config.log_file:
        log_dir = os.path.dirname(config.log_file)
        if log_dir and not os.path.exists(log_dir):
            try:
                os.makedirs(log_dir, exist_ok=True)
            except OSError as e:
                errors.append(f"Cannot create log directory {log_dir}: {e}")

    if config.max_concurrent_executions > 100:
        errors.append("max_concurrent_executions above 100 is not supported")

    if config.model_retry_base_delay > config.model_retry_max_delay:
        errors.append("model_retry_base_delay cannot exceed model_retry_max_delay")

    if errors:
        raise ConfigurationError(f"Configuration validation failed: {'; '.join(errors)}")


# Environment-specific configurations
def get_development_config() -> AppConfig:
    """Get development configuration."""
    return AppConfig(
        debug=True,
        reload=True,
        log_level=LogLevel.DEBUG,
        database_url="sqlite:///./flowgraph.db",
        database_echo=True
    )


def get_testing_config() -> AppConfig:
    """Get testing configuration."""
    return AppConfig(
        debug=True,
        database_url="sqlite:///:memory:",
        log_level=LogLevel.WARNING,
        max_concurrent_executions=2,
        node_timeout=10.0,
        script_timeout=2.0,
        script_isolation=ScriptIsolation.THREAD,
        model_retry_attempts=2,
        model_retry_base_delay=0.0,
        model_retry_max_delay=0.0
    )
