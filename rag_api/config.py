"""
Configuration management for the RAG API
"""

from typing import Optional
from pydantic_settings import BaseSettings
from dotenv import load_dotenv

load_dotenv()

class Settings(BaseSettings):
    """Application settings"""

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False

    # Database settings
    mongodb_uri: Optional[str] = None
    mongodb_db_name: str = "ragDatabase"
    mongodb_collection: str = "rag_collection"
    kag_db_name: str = "kag-database"
    kag_collection: str = "examples"

    # MongoDB client tuning
    mongodb_server_selection_timeout_ms: int = 5000
    mongodb_connect_timeout_ms: int = 10000
    mongodb_socket_timeout_ms: int = 30000
    mongodb_max_pool_size: int = 10

    # LLM provider settings
    fireworks_api_key: Optional[str] = None
    fireworks_base_url: str = "https://api.fireworks.ai/inference/v1"
    embedding_model: str = "nomic-ai/nomic-embed-text-v1.5"
    chat_model: str = "accounts/fireworks/models/llama-v3p3-70b-instruct"
    chat_temperature: float = 0.7
    chat_max_tokens: int = 1024
    request_timeout: float = 60.0

    # Retrieval settings
    vector_index_name: str = "vector_index"
    vector_search_k: int = 5
    kag_default_results: int = 3

    # Security settings
    cors_origins: list = ["*"]

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "allow"

# Global settings instance
settings = Settings()

def get_settings() -> Settings:
    """Get application settings"""
    return settings
