"""
Configuration management using pydantic-settings.
Loads environment variables and provides typed settings.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Literal


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # LLM Provider Configuration (organization config may override model/provider)
    llm_provider: Literal["openai", "anthropic", "google"] = Field(
        default="anthropic",
        description="Default LLM provider for the agent"
    )
    llm_model: str = Field(
        default="claude-3-5-sonnet-latest",
        description="Default model name/ID"
    )

    # API Keys
    openai_api_key: str | None = None
    anthropic_api_key: str | None = None
    google_api_key: str | None = None

    # Embeddings
    embedding_provider: Literal["openai"] = Field(
        default="openai",
        description="Embedding provider"
    )
    embedding_model: str = Field(
        default="text-embedding-3-small",
        description="Embedding model name"
    )

    # Database
    database_url: str = Field(
        default="sqlite:///./data/agent.db",
        description="Database connection URL"
    )
    db_retry_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts for writes hitting transient lock/serialization errors"
    )

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    admin_api_token: str | None = Field(
        default=None,
        description="Token required in X-Admin-Token for operator routes"
    )

    # Agent turn processing
    agent_max_tool_rounds: int = Field(
        default=5,
        ge=1,
        description="Maximum model rounds per turn before the fallback reply"
    )
    model_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for a single model call"
    )
    tool_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Timeout for a single tool execution"
    )
    history_limit: int = Field(
        default=20,
        ge=1,
        description="Messages of history fed to the model"
    )
    turn_claim_lease_seconds: int = Field(
        default=120,
        ge=1,
        description="After this long an unfinished turn may be reclaimed by a redelivery"
    )
    worker_threads: int = Field(
        default=40,
        ge=1,
        description="Threads used to bound model and tool calls; match the request concurrency"
    )
    quota_exceeded_behavior: Literal["silent", "canned"] = Field(
        default="silent",
        description="Reply behavior when the organization is out of AI quota"
    )
    quota_exceeded_reply: str = Field(
        default=(
            "Desculpe, estamos com alta demanda no momento. "
            "Um de nossos atendentes entrará em contato em breve!"
        )
    )
    model_failure_behavior: Literal["fallback", "silent"] = Field(
        default="fallback",
        description="Reply behavior when the model times out or fails"
    )
    fallback_reply: str = Field(
        default=(
            "Desculpe, tive um problema para processar sua mensagem. "
            "Um atendente vai continuar o atendimento em breve."
        )
    )
    default_transfer_message: str = Field(
        default="Vou transferir você para um de nossos atendentes. Só um instante!"
    )

    # Messaging providers
    whatsapp_app_secret: str | None = Field(
        default=None,
        description="Meta app secret used when the org config has none"
    )
    whatsapp_api_base_url: str = Field(
        default="https://graph.facebook.com/v21.0",
        description="WhatsApp Cloud API base URL"
    )
    delivery_timeout_seconds: float = Field(default=10.0, gt=0)

    # Knowledge base
    enable_knowledge_base: bool = Field(
        default=False,
        description="Offer the search_knowledge tool backed by ChromaDB"
    )
    chroma_persist_dir: str = Field(
        default="./data/chroma",
        description="ChromaDB persistence directory"
    )
    knowledge_chunk_size: int = Field(default=600, description="Token size for document chunks")
    knowledge_chunk_overlap: int = Field(default=100, description="Overlap between chunks")
    knowledge_top_k: int = Field(default=4, ge=1)

    # Observability
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level"
    )
    log_file: str | None = Field(
        default="./data/logs/agent.log",
        description="JSON log file path (empty disables the file handler)"
    )
    enable_trace_logging: bool = Field(
        default=True,
        description="Log per-round model and tool details"
    )

    # Job Scheduler
    enable_background_jobs: bool = Field(
        default=True,
        description="Enable background job scheduler"
    )
    idle_check_interval_minutes: int = Field(
        default=60,
        description="Interval for the idle conversation sweep"
    )
    idle_conversation_days: int = Field(
        default=7,
        ge=1,
        description="Open conversations idle longer than this are closed"
    )

    def validate_api_keys(self) -> None:
        """Validate that required API keys are present based on provider."""
        if self.llm_provider == "openai" and not self.openai_api_key:
            raise ValueError("OPENAI_API_KEY required when LLM_PROVIDER=openai")
        elif self.llm_provider == "anthropic" and not self.anthropic_api_key:
            raise ValueError("ANTHROPIC_API_KEY required when LLM_PROVIDER=anthropic")
        elif self.llm_provider == "google" and not self.google_api_key:
            raise ValueError("GOOGLE_API_KEY required when LLM_PROVIDER=google")

        if self.enable_knowledge_base and not self.openai_api_key:
            raise ValueError("OPENAI_API_KEY required when ENABLE_KNOWLEDGE_BASE=true")


# Global settings instance
settings = Settings()
