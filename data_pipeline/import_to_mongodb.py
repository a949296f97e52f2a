#!/usr/bin/env python3
"""
JSONL import pipeline for the RAG/KAG example collections.

Streams a JSONL file into a MongoDB collection in fixed-size batches and
builds the indexes the API searches with: a weighted text index over the
``input``/``output`` fields and, optionally, an Atlas vector search index over
``embedding``. Embeddings can be generated during the import for documents
that do not carry one.

Usage:
    rag-import ./data/examples.jsonl
    rag-import ./data/rag.jsonl --db ragDatabase --collection rag_collection --embed --vector-index
"""

import os
import re
import json
import time
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Dict, Any, Optional, Callable

from pymongo import MongoClient
from pymongo.collection import Collection
from pymongo.errors import PyMongoError
from pymongo.operations import SearchIndexModel

from dotenv import load_dotenv

from rag_api.fireworks_client import FireworksClient, FireworksAPIError

load_dotenv()

logger = logging.getLogger(__name__)

# =============================================================================
# DATA STRUCTURES
# =============================================================================

EMBEDDING_SOURCE_FIELDS = ("instruction", "context", "response", "input", "output")

@dataclass
class ImportConfig:
    """Configuration for a JSONL import."""
    mongodb_uri: str
    db_name: str = "kag-database"
    collection_name: str = "examples"
    batch_size: int = 1000
    max_errors: int = 100
    progress_interval: int = 5000
    create_text_index: bool = True
    embed: bool = False
    create_vector_index: bool = False
    vector_index_name: str = "vector_index"
    assume_yes: bool = False

@dataclass
class ImportStats:
    """Counters reported at the end of an import."""
    total_lines: int = 0
    imported: int = 0
    errors: int = 0
    elapsed_seconds: float = 0.0
    aborted: bool = False
    cancelled: bool = False
    embedding_dimensions: Optional[int] = None
    indexes: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        return asdict(self)

# =============================================================================
# EXCEPTIONS
# =============================================================================

class DocumentImportError(Exception):
    """Base exception for import errors."""
    pass

class ConfigurationError(DocumentImportError):
    """Exception raised when configuration is invalid."""
    pass

class InvalidLineError(DocumentImportError):
    """Exception raised when a JSONL line is not a document."""
    pass

# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================

def mask_uri(uri: str) -> str:
    """Hide credentials of a MongoDB connection string."""
    return re.sub(r"//([^:/@]+):([^@]+)@", "//***:***@", uri)

def parse_line(line: bytes) -> Dict[str, Any]:
    """Parse one raw JSONL line into a document."""
    try:
        document = json.loads(line.decode("utf-8"))
    except UnicodeDecodeError as e:
        raise InvalidLineError(f"Invalid UTF-8: {e}") from e
    except json.JSONDecodeError as e:
        raise InvalidLineError(f"Invalid JSON: {e}") from e

    if not isinstance(document, dict):
        raise InvalidLineError(f"Expected a JSON object, got {type(document).__name__}")
    return document

def build_embedding_text(document: Dict[str, Any]) -> str:
    """Text an embedding is computed over."""
    parts = [str(document[name]).strip() for name in EMBEDDING_SOURCE_FIELDS if document.get(name)]
    return "\n".join(part for part in parts if part)

# =============================================================================
# IMPORTER
# =============================================================================

class JSONLImporter:
    """Batch importer of JSONL documents into one collection."""

    def __init__(self,
                 config: ImportConfig,
                 collection: Collection,
                 embedding_client: Optional[FireworksClient] = None):
        self.config = config
        self.collection = collection
        self.embedding_client = embedding_client
        self._validate_config()

    def _validate_config(self) -> None:
        """Validate configuration parameters."""
        if self.config.batch_size < 1:
            raise ConfigurationError("Batch size must be at least 1")
        if self.config.max_errors < 0:
            raise ConfigurationError("Max errors cannot be negative")
        if self.config.embed and self.embedding_client is None:
            raise ConfigurationError("Embedding requires FIREWORKS_API_KEY")

    def ensure_text_index(self) -> str:
        """Create the weighted text index searched by the KAG endpoints."""
        logger.info("Creating text index on input and output fields...")
        return self.collection.create_index(
            [("input", "text"), ("output", "text")],
            name="search_index",
            weights={"input": 10, "output": 5},
        )

    def ensure_vector_index(self, dimensions: int) -> bool:
        """
        Create the vector search index unless it already exists.

        Returns:
            True when a new index was requested
        """
        name = self.config.vector_index_name
        for index in self.collection.list_search_indexes():
            if index.get("name") == name:
                logger.info(f"Vector search index '{name}' already exists")
                return False

        model = SearchIndexModel(
            definition={
                "fields": [
                    {
                        "type": "vector",
                        "path": "embedding",
                        "numDimensions": dimensions,
                        "similarity": "cosine",
                    }
                ]
            },
            name=name,
            type="vectorSearch",
        )
        self.collection.create_search_index(model)
        logger.info(f"Created vector search index '{name}' ({dimensions} dimensions)")
        return True

    def _embed_batch(self, batch: List[Dict[str, Any]]) -> None:
        """Attach embeddings to the documents of a batch that lack one."""
        pending = [doc for doc in batch if "embedding" not in doc and build_embedding_text(doc)]
        if not pending:
            return

        try:
            embeddings = self.embedding_client.create_embeddings(
                [build_embedding_text(doc) for doc in pending]
            )
        except FireworksAPIError as e:
            raise DocumentImportError(f"Batch embedding generation failed: {e}") from e

        for document, embedding in zip(pending, embeddings):
            document["embedding"] = embedding
        logger.debug(f"Generated {len(embeddings)} embeddings in batch")

    def _flush(self, batch: List[Dict[str, Any]], stats: ImportStats) -> None:
        """Insert a batch and update counters."""
        if not batch:
            return

        if self.config.embed:
            self._embed_batch(batch)

        if stats.embedding_dimensions is None:
            for document in batch:
                if document.get("embedding"):
                    stats.embedding_dimensions = len(document["embedding"])
                    break

        previous = stats.imported
        self.collection.insert_many(batch)
        stats.imported += len(batch)

        interval = self.config.progress_interval
        if interval and stats.imported // interval > previous // interval:
            logger.info(f"Imported {stats.imported} documents so far...")

    def import_file(self, file_path: Path) -> ImportStats:
        """
        Import every document of a JSONL file.

        Blank lines are skipped; unparsable lines are counted and logged.
        Reading stops once the error count exceeds ``max_errors``; batches
        already inserted stay in the collection.
        """
        stats = ImportStats()
        start_time = time.time()
        batch: List[Dict[str, Any]] = []

        logger.info("Starting import...")

        with open(file_path, "rb") as handle:
            for line in handle:
                stats.total_lines += 1

                if not line.strip():
                    continue

                try:
                    document = parse_line(line)
                except InvalidLineError as e:
                    stats.errors += 1
                    logger.error(f"Error on line {stats.total_lines}: {e}")
                    if stats.errors > self.config.max_errors:
                        logger.error("Too many errors, aborting import")
                        stats.aborted = True
                        break
                    continue

                document["importedAt"] = datetime.now(timezone.utc)
                batch.append(document)

                if len(batch) >= self.config.batch_size:
                    self._flush(batch, stats)
                    batch = []

        self._flush(batch, stats)
        stats.elapsed_seconds = time.time() - start_time
        return stats

    def run(self, file_path: Path, confirm: Callable[[str], str] = input) -> ImportStats:
        """
        Full import: confirmation, indexes, documents, report.

        Args:
            file_path: JSONL file to import
            confirm: Prompt used when the collection already holds documents

        Returns:
            ImportStats of the run
        """
        existing = self.collection.count_documents({})
        if existing > 0:
            logger.info(f"Collection already contains {existing} documents")
            if not self.config.assume_yes:
                answer = confirm("Collection is not empty. Do you want to proceed and add more documents? (y/n): ")
                if answer.strip().lower() != "y":
                    logger.info("Import cancelled")
                    return ImportStats(cancelled=True)

        if self.config.create_text_index:
            self.ensure_text_index()

        stats = self.import_file(file_path)

        if self.config.create_vector_index:
            if stats.embedding_dimensions:
                self.ensure_vector_index(stats.embedding_dimensions)
            else:
                logger.warning("No embeddings imported, skipping vector search index creation")

        stats.indexes = list(self.collection.list_indexes())

        logger.info(f"Import completed: {stats.total_lines} lines processed, "
                    f"{stats.imported} documents imported, {stats.errors} errors "
                    f"in {stats.elapsed_seconds:.2f}s")
        return stats

# =============================================================================
# MAIN EXECUTION
# =============================================================================

def main(config: ImportConfig, file_path: Path, confirm: Callable[[str], str] = input) -> int:
    """Run an import and return a process exit code."""
    if not config.mongodb_uri:
        logger.error("MONGODB_URI environment variable is required")
        return 1

    if not file_path.exists():
        logger.error(f"File not found: {file_path}")
        return 1

    logger.info(f"Importing data from {file_path} to MongoDB...")
    logger.info(f"MongoDB URI: {mask_uri(config.mongodb_uri)}")

    embedding_client = None
    if config.embed:
        api_key = os.getenv("FIREWORKS_API_KEY")
        if api_key:
            embedding_client = FireworksClient(
                api_key=api_key,
                base_url=os.getenv("FIREWORKS_BASE_URL", "https://api.fireworks.ai/inference/v1"),
                embedding_model=os.getenv("EMBEDDING_MODEL", "nomic-ai/nomic-embed-text-v1.5"),
            )

    client = MongoClient(config.mongodb_uri)
    try:
        collection = client[config.db_name][config.collection_name]
        logger.info("Connected to MongoDB")

        importer = JSONLImporter(config, collection, embedding_client=embedding_client)
        stats = importer.run(file_path, confirm=confirm)

        if not stats.cancelled:
            _display_results(stats)
        return 0

    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1
    except DocumentImportError as e:
        logger.error(f"Import failed: {e}")
        return 1
    except PyMongoError as e:
        logger.error(f"Import failed: {e}")
        return 1
    finally:
        client.close()
        logger.info("MongoDB connection closed")

def _display_results(stats: ImportStats) -> None:
    """Display results summary."""
    print("\n" + "=" * 60)
    print("📥 JSONL IMPORT - COMPLETED" if not stats.aborted else "📥 JSONL IMPORT - ABORTED")
    print("=" * 60)
    print(f"   • Total lines processed: {stats.total_lines}")
    print(f"   • Documents imported: {stats.imported}")
    print(f"   • Errors: {stats.errors}")
    print(f"   • Import time: {stats.elapsed_seconds:.2f} seconds")
    print("\n📚 Collection indexes:")
    for index in stats.indexes:
        print(f"   • {index.get('name')}: {dict(index.get('key', {}))}")
    print("=" * 60)

# =============================================================================
# CLI INTERFACE
# =============================================================================

def cli() -> int:
    """Command-line interface for the JSONL importer."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Import JSONL example documents into MongoDB and build search indexes",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  rag-import ./data/examples.jsonl                     # KAG examples with text index
  rag-import ./data/examples.jsonl --yes               # Append without asking
  rag-import ./data/rag.jsonl --db ragDatabase --collection rag_collection --embed --vector-index
        """
    )

    parser.add_argument('file', type=Path,
                       help='Path to the JSONL file to import')
    parser.add_argument('--uri', type=str, default=os.getenv('MONGODB_URI'),
                       help='MongoDB connection string (default: $MONGODB_URI)')
    parser.add_argument('--db', type=str, default='kag-database',
                       help='Database name (default: kag-database)')
    parser.add_argument('--collection', type=str, default='examples',
                       help='Collection name (default: examples)')
    parser.add_argument('--batch-size', type=int, default=1000,
                       help='Documents per insert batch (default: 1000)')
    parser.add_argument('--max-errors', type=int, default=100,
                       help='Abort after this many unparsable lines (default: 100)')
    parser.add_argument('--no-text-index', action='store_true',
                       help='Skip text index creation')
    parser.add_argument('--embed', action='store_true',
                       help='Generate embeddings for documents without one (needs FIREWORKS_API_KEY)')
    parser.add_argument('--vector-index', action='store_true',
                       help='Create the Atlas vector search index on "embedding"')
    parser.add_argument('--vector-index-name', type=str,
                       default=os.getenv('VECTOR_INDEX_NAME', 'vector_index'),
                       help='Vector search index name (default: vector_index)')
    parser.add_argument('--yes', '-y', action='store_true',
                       help='Do not ask before adding to a non-empty collection')
    parser.add_argument('--verbose', '-v', action='store_true',
                       help='Enable verbose logging')

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler('import.log')
        ]
    )

    config = ImportConfig(
        mongodb_uri=args.uri,
        db_name=args.db,
        collection_name=args.collection,
        batch_size=args.batch_size,
        max_errors=args.max_errors,
        create_text_index=not args.no_text_index,
        embed=args.embed,
        create_vector_index=args.vector_index,
        vector_index_name=args.vector_index_name,
        assume_yes=args.yes,
    )
    return main(config, args.file)

if __name__ == "__main__":
    import sys
    sys.exit(cli())
