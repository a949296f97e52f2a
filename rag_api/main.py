"""
FastAPI server for MongoDB-grounded RAG and KAG
Endpoints: POST /api/rag, POST /api/kag, POST /api/kag-search,
GET /api/mongodb-status, POST /api/streaming
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import logging
import time

from fastapi import Body, Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pymongo.errors import PyMongoError
import structlog
import uvicorn

from rag_api.config import Settings, get_settings
from rag_api.database import close_mongo_client, get_database, ping_database
from rag_api.exceptions import (
    APIError,
    ConfigurationError,
    ErrorResponseModel,
    ValidationError,
)
from rag_api.fireworks_client import FireworksClient
from rag_api.kag_service import (
    KAGService,
    augment_prompt_with_kag_examples,
    format_kag_examples,
)
from rag_api.rag_service import RAGService, preview, truncate_query
from rag_api.streaming import create_sse_response, relay_stream

API_VERSION = "1.0.0"
NO_CACHE_HEADERS = {"Cache-Control": "no-cache, no-store, must-revalidate"}

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

# Configure standard logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = structlog.get_logger(__name__)

# Pydantic models for request/response
class RAGRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: Optional[str] = None
    collection_name: Optional[str] = Field(None, alias="collectionName")
    model_name: Optional[str] = Field(None, alias="modelName")

class SourceInfo(BaseModel):
    instruction: str
    response: str
    context: str
    score: float

class RAGAnswer(BaseModel):
    answer: str
    sources: List[SourceInfo] = []
    fallback: bool = False
    error: Optional[str] = None

class KAGRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: Optional[str] = None
    collection_name: Optional[str] = Field(None, alias="collectionName")
    max_results: Optional[int] = Field(None, ge=0, alias="maxResults")
    system_prompt: Optional[str] = Field(None, alias="systemPrompt")

class KAGSearchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: Optional[str] = None
    max_results: Optional[int] = Field(None, ge=0, alias="maxResults")

# Create FastAPI app
app = FastAPI(
    title="MongoDB RAG API",
    description="Retrieval-augmented generation over MongoDB text and vector search",
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc"
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=86400,
)

# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all incoming requests and responses"""
    start_time = time.time()

    logger.info(
        "Request received",
        method=request.method,
        url=str(request.url),
        client_ip=request.client.host if request.client else "unknown",
        user_agent=request.headers.get("user-agent", "unknown")
    )

    response = await call_next(request)

    process_time = time.time() - start_time

    logger.info(
        "Request completed",
        method=request.method,
        url=str(request.url),
        status_code=response.status_code,
        process_time=round(process_time, 4),
        client_ip=request.client.host if request.client else "unknown"
    )

    return response

@app.on_event("shutdown")
async def shutdown_event():
    """Release the cached MongoDB client"""
    close_mongo_client()

# Dependencies
def get_fireworks_client(settings: Settings = Depends(get_settings)) -> FireworksClient:
    """Build the LLM client, failing when no API key is configured"""
    if not settings.fireworks_api_key:
        logger.error("Missing required environment variable", variable="FIREWORKS_API_KEY")
        raise ConfigurationError("API key not configured on server")
    return FireworksClient.from_settings(settings)

def get_rag_service(settings: Settings = Depends(get_settings)) -> RAGService:
    """Build the RAG service, failing when credentials are missing"""
    if not settings.fireworks_api_key or not settings.mongodb_uri:
        logger.error("Missing required environment variables")
        raise ConfigurationError("Configuration error: Missing API keys or MongoDB URI")
    return RAGService(
        settings=settings,
        llm_client=FireworksClient.from_settings(settings),
        database_provider=lambda: get_database(settings),
    )

def get_kag_service(settings: Settings = Depends(get_settings)) -> KAGService:
    """Build the KAG service, failing when no connection string is configured"""
    if not settings.mongodb_uri:
        logger.error("MongoDB URI is missing in environment variables")
        raise ConfigurationError(
            "Configuration error", details="Database connection string not configured"
        )
    return KAGService(
        settings=settings,
        database_provider=lambda: get_database(settings, settings.kag_db_name),
    )

def require_query(query: Optional[str], message: str) -> str:
    """Reject missing or empty queries"""
    if not query:
        raise ValidationError(message)
    return query

@app.post("/api/rag", response_model=RAGAnswer, response_model_exclude_none=True)
def rag(request: RAGRequest, rag_service: RAGService = Depends(get_rag_service)):
    """
    Answer a question grounded on the closest documents of a collection
    """
    query = require_query(request.query, "Missing query parameter")

    result = rag_service.generate_response(
        query=query,
        collection_name=request.collection_name,
        model_name=request.model_name
    )

    sources = [
        SourceInfo(
            instruction=source.instruction,
            response=preview(source.response),
            context=source.context,
            score=source.score
        )
        for source in result.sources
    ]

    logger.info(
        "Query processed successfully",
        query=truncate_query(query),
        processing_time=round(result.processing_time, 4),
        sources_found=len(sources),
        fallback=result.fallback
    )

    body = RAGAnswer(answer=result.answer, sources=sources, fallback=result.fallback, error=result.error)
    return JSONResponse(content=body.model_dump(exclude_none=True), headers=NO_CACHE_HEADERS)

@app.post("/api/kag")
def kag(request: KAGRequest, kag_service: KAGService = Depends(get_kag_service)):
    """
    Retrieve few-shot examples and optionally splice them into a system prompt
    """
    query = require_query(request.query, "Missing required parameter: query")

    logger.info(
        "KAG query",
        query=truncate_query(query),
        collection=request.collection_name,
        max_results=request.max_results
    )

    examples = kag_service.search_examples(
        query=query,
        max_results=request.max_results,
        collection_name=request.collection_name
    )

    if request.system_prompt:
        content: Dict[str, Any] = {
            "augmentedPrompt": augment_prompt_with_kag_examples(request.system_prompt, examples),
            "examples": examples,
            "count": len(examples)
        }
    else:
        content = {
            "examples": examples,
            "count": len(examples),
            "formattedExamples": format_kag_examples(examples)
        }

    return JSONResponse(content=jsonable_encoder(content), headers=NO_CACHE_HEADERS)

@app.post("/api/kag-search")
def kag_search(request: KAGSearchRequest, kag_service: KAGService = Depends(get_kag_service)):
    """
    Search the example collection by text score
    """
    query = require_query(request.query, "Missing required parameter: query")

    logger.info("KAG search query", query=truncate_query(query))

    examples = kag_service.search_examples(query=query, max_results=request.max_results)
    return JSONResponse(content=jsonable_encoder(examples), headers=NO_CACHE_HEADERS)

@app.get("/api/mongodb-status")
def mongodb_status(settings: Settings = Depends(get_settings)):
    """
    Check connectivity to the configured MongoDB deployment
    """
    now = datetime.now(timezone.utc).isoformat()

    if not settings.mongodb_uri:
        return JSONResponse(
            status_code=500,
            content={
                "status": "error",
                "message": "MongoDB URI not configured in environment variables",
                "time": now
            }
        )

    try:
        connection_time = ping_database(settings)
    except PyMongoError as e:
        logger.error("MongoDB connection error", error=str(e), error_type=type(e).__name__)
        return JSONResponse(
            status_code=500,
            content={
                "status": "error",
                "message": f"Failed to connect to MongoDB: {e}",
                "time": now
            }
        )

    return {
        "status": "ok",
        "message": "Successfully connected to MongoDB",
        "connectionTimeMs": round(connection_time),
        "time": now,
        "collections": settings.mongodb_collection
    }

@app.post("/api/streaming")
def streaming(
    payload: Dict[str, Any] = Body(...),
    client: FireworksClient = Depends(get_fireworks_client)
):
    """
    Proxy a chat completion as a server-sent event stream
    """
    logger.info("Streaming request", model=payload.get("model"))
    return create_sse_response(relay_stream(client.stream_chat_completion(payload)))

@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "MongoDB RAG API",
        "version": API_VERSION,
        "status": "running",
        "endpoints": {
            "rag": "POST /api/rag",
            "kag": "POST /api/kag",
            "kag_search": "POST /api/kag-search",
            "streaming": "POST /api/streaming",
            "status": "GET /api/mongodb-status",
            "docs": "GET /docs"
        }
    }

@app.exception_handler(APIError)
async def api_error_handler(request: Request, exc: APIError):
    """Render service and validation errors"""
    logger.error(
        "API error",
        error=exc.message,
        error_type=type(exc).__name__,
        details=exc.details,
        path=str(request.url)
    )
    return exc.to_response()

@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Malformed bodies are reported as 400, like missing parameters"""
    logger.warning("Invalid request body", path=str(request.url), errors=str(exc.errors()))
    error = ErrorResponseModel(error="Invalid JSON in request body", details=str(exc.errors()))
    return JSONResponse(status_code=400, content=error.model_dump(exclude_none=True))

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc):
    """Global exception handler"""
    logger.error(
        "Unhandled exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=str(request.url),
        method=request.method,
        client_ip=request.client.host if request.client else "unknown",
        exc_info=True
    )

    error = ErrorResponseModel(error="Internal Server Error", details=str(exc))
    return JSONResponse(status_code=500, content=error.model_dump(exclude_none=True))

def run() -> None:
    """Start the API with uvicorn"""
    settings = get_settings()

    logger.info("Starting server", host=settings.host, port=settings.port)

    uvicorn.run(
        "rag_api.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="info"
    )

if __name__ == "__main__":
    run()
