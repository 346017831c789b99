"""
Configuration management for the Impressionist story engine
"""

from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # LLM Provider Configuration
    model_provider: Literal["openai", "generic"] = Field(default="openai")
    openai_api_base: str = Field(default="https://api.openai.com/v1")
    openai_api_key: str = Field(default="")
    model_name: str = Field(
        default="gpt-4o", description="Quality model used for narration"
    )
    cost_model_name: str = Field(
        default="gpt-4o-mini",
        description="Cheap model used for classification and memory compaction",
    )

    # Sampling temperatures per call type
    narrator_temperature: float = Field(default=0.7)
    classifier_temperature: float = Field(default=0.1)
    compaction_temperature: float = Field(default=0.3)
    repair_temperature: float = Field(default=0.2)

    # Engine Configuration
    engine_mode: Literal["flags", "classifier"] = Field(
        default="flags",
        description="flags: narrator extracts flag changes, engine checks conditions. "
        "classifier: cheap classifier picks the mode before one narrator call",
    )
    interaction_history_limit: int = Field(default=20, ge=1)
    context_memories_limit: int = Field(default=10, ge=1)
    classifier_max_attempts: int = Field(default=3, ge=1)

    # Memory Configuration
    memory_compaction_interval: int = Field(default=5, ge=1, le=20)
    max_memory_count: int = Field(default=50, ge=1)
    compaction_target_ratio: float = Field(default=0.7, gt=0, le=1)
    min_compacted_memories: int = Field(default=10, ge=1)

    # Server Configuration
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")
    log_file: Optional[str] = Field(default=None)

    class Config:
        env_file = ".env"
        case_sensitive = False


# Global settings instance
settings = Settings()
