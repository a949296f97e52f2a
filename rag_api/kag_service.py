"""
KAG (Knowledge Augmented Generation) example retrieval.

Finds input/output examples through MongoDB full-text search and renders
them into a system prompt for few-shot grounding.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from pymongo.database import Database

from rag_api.config import Settings
from rag_api.database import serialize_document

logger = logging.getLogger(__name__)


def format_kag_examples(examples: List[Dict[str, Any]]) -> str:
    """
    Format examples for inclusion in a prompt.

    Args:
        examples: Example documents with 'input' and 'output' fields

    Returns:
        The formatted examples block, or an empty string without examples
    """
    if not examples:
        return ""

    parts = ["\n\n## RELEVANT EXAMPLES:\n\n"]
    for index, example in enumerate(examples, 1):
        parts.append(f"EXAMPLE {index}:\n")
        parts.append(f"User: {example.get('input')}\n")
        parts.append(f"Assistant: {example.get('output')}\n\n")
    parts.append("## END OF EXAMPLES\n\n")

    return "".join(parts)


def augment_prompt_with_kag_examples(system_prompt: str, examples: List[Dict[str, Any]]) -> str:
    """
    Insert formatted examples into a system prompt.

    The block goes right after the first paragraph of the prompt, or at the
    end when the prompt is a single paragraph.
    """
    if not examples:
        return system_prompt

    formatted_examples = format_kag_examples(examples)

    first_paragraph_end = system_prompt.find("\n\n")
    if first_paragraph_end != -1:
        split_at = first_paragraph_end + 2
        return system_prompt[:split_at] + formatted_examples + system_prompt[split_at:]

    return system_prompt + "\n\n" + formatted_examples


class KAGService:
    """Text-search retrieval of few-shot examples."""

    def __init__(self, settings: Settings, database_provider: Callable[[], Database]):
        self.settings = settings
        self.database_provider = database_provider

    def search_examples(self,
                        query: str,
                        max_results: Optional[int] = None,
                        collection_name: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Search examples by text score.

        Args:
            query: Free text query, tokenized by the MongoDB text index
            max_results: Maximum number of examples (defaults to KAG_DEFAULT_RESULTS)
            collection_name: Collection to search (defaults to KAG_COLLECTION)

        Returns:
            Matching examples, best text score first, with string ids

        Raises:
            PyMongoError: If the database is unreachable or has no text index
        """
        max_results = max_results or self.settings.kag_default_results
        collection_name = collection_name or self.settings.kag_collection

        collection = self.database_provider()[collection_name]
        cursor = collection.find(
            {"$text": {"$search": query}},
            {"score": {"$meta": "textScore"}},
        ).sort([("score", {"$meta": "textScore"})]).limit(max_results)

        examples = [serialize_document(doc) for doc in cursor]
        logger.info(f"Found {len(examples)} matching examples")
        return examples
