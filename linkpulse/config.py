from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Loading priority (highest to lowest):
    1. Environment variables
    2. .env file
    3. Default values below

    Both processes (API and click worker) read the same settings.
    """

    # Environment
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # Application
    app_name: str = "LinkPulse"
    app_version: str = "1.0.0"

    # API server
    host: str = "0.0.0.0"
    port: int = 8080

    # Worker health server
    worker_host: str = "0.0.0.0"
    worker_port: int = 8081

    # Database
    database_url: str = "sqlite:///./linkpulse.db"

    # Public prefix for generated short URLs
    base_url: str = Field(
        default="http://localhost:8080",
        validation_alias=AliasChoices("base_url", "api_base_url"),
    )

    # Startup resilience
    startup_max_attempts: int = 5
    startup_retry_delay: float = 5.0  # seconds between connection attempts

    # Queue settings
    queue_backend: str = "sqs"  # Options: "sqs", "redis_streams", "memory"
    queue_name: str = "linkpulse-clicks"  # SQS queue name/URL or Redis stream key
    dead_letter_queue_name: Optional[str] = None
    redis_url: str = "redis://localhost:6379/0"
    queue_consumer_group: str = "click_workers"
    aws_region: str = "us-east-1"
    sqs_endpoint_url: Optional[str] = None  # e.g. LocalStack
    queue_batch_size: int = 10  # SQS caps a receive at 10 messages
    queue_wait_seconds: int = 20  # Long-poll window
    queue_visibility_timeout: int = 30  # Seconds before an un-deleted message reappears
    queue_retry_cooldown: float = 5.0  # API: seconds before retrying an unreachable broker

    # Click consumer
    max_receive_count: int = 5  # 0 = retry unresolvable codes forever
    receive_backoff_base: float = 1.0
    receive_backoff_max: float = 30.0
    store_timeout_seconds: float = 10.0
    run_embedded_worker: bool = False

    # Pydantic v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )


# Create settings instance
settings = Settings()
