"""Configuration settings for the application."""

from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Pydantic settings class for the application."""

    # Define the settings with default values and types
    # These will be loaded from environment variables or a .env file if not provided
    API_PORT: int = 8000
    DEBUG: bool = True
    DATA_DIR: str = "/data"
    LOG_LEVEL: str = "info"  # Options: debug, info, warning, error, critical

    # Agent identity
    AGENT_NAME: str = "agentflow"
    AGENT_PROMPT: str = ""

    # Model backends
    MODEL: str = "openai"  # Options: openai, anthropic
    OPENAI_API_KEY: str | None = None
    OPENAI_MODEL: str = "gpt-4o-mini"
    OPENAI_BASE_URL: str | None = None
    ANTHROPIC_API_KEY: str | None = None
    ANTHROPIC_MODEL: str = "claude-3-5-haiku-latest"

    # Query fulfillment
    MULTI_INTENT: bool = True  # False: single best intent, no decomposition
    AGGREGATION_MODE: str = "routed"  # Options: routed, decide
    MAX_TOOL_ITERATIONS: int = 16

    # Memory
    MEMORY_BACKEND: str = "inmemory"  # Options: inmemory, jsonl
    INTENTS_PATH: str | None = None

    # Tool connectors
    MCP_CONFIG_PATH: str | None = None
    A2A_PEERS: List[str] = []
    A2A_TIMEOUT: float = 120.0

    class Config:
        """Configuration for Pydantic settings."""

        # Load environment variables from a .env file
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
