#!/usr/bin/env python3
"""
RAG (Retrieval-Augmented Generation) Service.

Embeds the user's query, runs a MongoDB vector search for related
question/context/answer documents and grounds a chat completion on them.
When the knowledge base is unreachable the service keeps answering from the
model's general knowledge and flags the response as a fallback.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from pymongo.database import Database
from pymongo.errors import PyMongoError

from rag_api.config import Settings
from rag_api.exceptions import LLMServiceError
from rag_api.fireworks_client import FireworksAPIError, FireworksClient

logger = logging.getLogger(__name__)

SOURCE_PREVIEW_LENGTH = 200

GROUNDED_INSTRUCTION = (
    "Use the following context to answer the user's question, but don't mention "
    "that you're using a context. If the context doesn't contain relevant "
    "information, just answer based on your knowledge."
)
FALLBACK_INSTRUCTION = (
    "The knowledge base search is currently unavailable, so please answer "
    "based on your general knowledge."
)


@dataclass
class SearchResult:
    """A document returned by the vector search."""
    instruction: str
    context: str
    response: str
    score: float


@dataclass
class RAGResponse:
    """Represents a complete RAG response."""
    answer: str
    sources: List[SearchResult] = field(default_factory=list)
    fallback: bool = False
    error: Optional[str] = None
    processing_time: float = 0.0


def truncate_query(query: str, limit: int = 100) -> str:
    """Shorten a query for log output."""
    return query[:limit] + ("..." if len(query) > limit else "")


def generate_fallback_response(query: str, error: str) -> RAGResponse:
    """Canned answer used when the query embedding cannot be produced."""
    answer = (
        "I'm unable to search the knowledge base at the moment due to a database "
        f"connection issue. Here's a general response to your query: \"{query}\".\n\n"
        "Please try again later or contact support if this issue persists."
    )
    return RAGResponse(answer=answer, sources=[], fallback=True, error=error)


def build_context(results: List[SearchResult]) -> str:
    """Render retrieved documents as the grounding context."""
    return "\n\n".join(
        f"Question: {result.instruction}\nContext: {result.context}\nAnswer: {result.response}"
        for result in results
    )


def build_messages(query: str, context: str, used_fallback: bool) -> List[Dict[str, str]]:
    """Assemble the system and user messages for the chat completion."""
    if used_fallback:
        system_content = f"You are a helpful assistant. {FALLBACK_INSTRUCTION}\n\n"
    else:
        system_content = f"You are a helpful assistant. {GROUNDED_INSTRUCTION}\n\nContext:\n{context}"

    return [
        {"role": "system", "content": system_content},
        {"role": "user", "content": query},
    ]


def preview(text: str, limit: int = SOURCE_PREVIEW_LENGTH) -> str:
    """Cut a source answer down for the response payload."""
    return text[:limit] + ("..." if len(text) > limit else "")


class RAGService:
    """Vector-search RAG pipeline over a MongoDB collection."""

    def __init__(self,
                 settings: Settings,
                 llm_client: FireworksClient,
                 database_provider: Callable[[], Database]):
        """
        Initialize the RAG service.

        Args:
            settings: Application settings
            llm_client: Client used for embeddings and chat completions
            database_provider: Callable returning the database handle; may raise
                PyMongoError when the database is unreachable
        """
        self.settings = settings
        self.llm_client = llm_client
        self.database_provider = database_provider

    def _open_collection(self, collection_name: str):
        """Return the collection or None when the database is unreachable."""
        try:
            logger.info(f"Connecting to MongoDB, collection: {collection_name}")
            database = self.database_provider()
            collection = database[collection_name]

            count = collection.estimated_document_count()
            logger.info(f"Collection stats: count={count}")
            if count == 0:
                logger.warning(f"Collection {collection_name} exists but is empty")
            return collection
        except PyMongoError as e:
            logger.error(f"MongoDB connection error: {e}")
            return None

    def vector_search(self, collection, query_embedding: List[float]) -> List[SearchResult]:
        """
        Run the vector k-nearest-neighbour search.

        Raises:
            PyMongoError: If the aggregation fails
        """
        k = self.settings.vector_search_k
        pipeline: List[Dict[str, Any]] = [
            {
                "$vectorSearch": {
                    "index": self.settings.vector_index_name,
                    "path": "embedding",
                    "queryVector": query_embedding,
                    "numCandidates": k * 10,
                    "limit": k,
                }
            },
            {
                "$project": {
                    "_id": 0,
                    "instruction": 1,
                    "context": 1,
                    "response": 1,
                    "score": {"$meta": "vectorSearchScore"},
                }
            },
        ]

        return [
            SearchResult(
                instruction=doc.get("instruction") or "",
                context=doc.get("context") or "",
                response=doc.get("response") or "",
                score=float(doc.get("score") or 0.0),
            )
            for doc in collection.aggregate(pipeline)
        ]

    def generate_response(self,
                          query: str,
                          collection_name: Optional[str] = None,
                          model_name: Optional[str] = None) -> RAGResponse:
        """
        Answer a query grounded on the closest documents of a collection.

        Args:
            query: The user's question
            collection_name: Collection to search (defaults to MONGODB_COLLECTION)
            model_name: Embedding model (defaults to EMBEDDING_MODEL)

        Returns:
            RAGResponse with the answer, its sources and the fallback flag

        Raises:
            LLMServiceError: If the chat completion fails
        """
        start_time = time.time()
        collection_name = collection_name or self.settings.mongodb_collection
        model_name = model_name or self.settings.embedding_model

        logger.info(f"RAG query: \"{truncate_query(query)}\"")

        collection = self._open_collection(collection_name)
        used_fallback = collection is None

        try:
            logger.info(f"Creating embedding for query using model: {model_name}")
            query_embedding = self.llm_client.create_embedding(query, model=model_name)
            logger.info("Successfully created embedding for query")
        except FireworksAPIError as e:
            logger.error(f"Failed to create embedding: {e}")
            response = generate_fallback_response(query, f"Embedding failed: {e}")
            response.processing_time = time.time() - start_time
            return response

        results: List[SearchResult] = []
        if not used_fallback:
            try:
                logger.info("Performing vector search in MongoDB")
                results = self.vector_search(collection, query_embedding)
                logger.info(f"Found {len(results)} relevant documents")
            except PyMongoError as e:
                logger.error(f"Vector search error: {e}")
                results = []
                used_fallback = True

        if results:
            context = build_context(results)
            logger.info("Successfully prepared context from retrieved documents")
        else:
            context = ""
            logger.info("No relevant documents found, using empty context")

        messages = build_messages(query, context, used_fallback)

        try:
            logger.info("Sending query to LLM API")
            completion = self.llm_client.generate_response(
                messages=messages,
                max_tokens=self.settings.chat_max_tokens,
                temperature=self.settings.chat_temperature,
            )
            logger.info("Successfully received response from LLM API")
        except FireworksAPIError as e:
            logger.error(f"LLM API error: {e}")
            raise LLMServiceError(f"LLM API error: {e}") from e

        return RAGResponse(
            answer=completion.content,
            sources=results,
            fallback=used_fallback,
            processing_time=time.time() - start_time,
        )
