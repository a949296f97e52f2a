"""Unit tests for the vector-search RAG pipeline."""

import unittest
from unittest.mock import MagicMock, Mock

from pymongo.errors import OperationFailure, ServerSelectionTimeoutError

from rag_api.config import Settings
from rag_api.exceptions import LLMServiceError
from rag_api.fireworks_client import (
    ChatCompletionResponse,
    FireworksAPIError,
    FireworksClient,
)
from rag_api.rag_service import (
    FALLBACK_INSTRUCTION,
    GROUNDED_INSTRUCTION,
    RAGService,
    SearchResult,
    build_context,
    preview,
    truncate_query,
)


class TestHelpers(unittest.TestCase):
    """Test cases for the prompt and payload helpers."""

    def test_build_context_joins_documents(self) -> None:
        results = [
            SearchResult(instruction="q1", context="c1", response="r1", score=0.9),
            SearchResult(instruction="q2", context="c2", response="r2", score=0.8),
        ]

        self.assertEqual(
            build_context(results),
            "Question: q1\nContext: c1\nAnswer: r1\n\nQuestion: q2\nContext: c2\nAnswer: r2",
        )

    def test_preview_truncates_long_answers(self) -> None:
        self.assertEqual(preview("a" * 200), "a" * 200)
        self.assertEqual(preview("a" * 250), "a" * 200 + "...")

    def test_truncate_query(self) -> None:
        self.assertEqual(truncate_query("short"), "short")
        self.assertEqual(truncate_query("x" * 150), "x" * 100 + "...")


class TestRAGService(unittest.TestCase):
    """Test cases for RAGService.generate_response."""

    def setUp(self) -> None:
        self.settings = Settings(
            mongodb_uri="mongodb://localhost:27017",
            fireworks_api_key="test-key",
            mongodb_collection="rag_collection",
            embedding_model="nomic-ai/nomic-embed-text-v1.5",
            vector_search_k=5,
        )
        self.llm_client = Mock(spec=FireworksClient)
        self.llm_client.create_embedding.return_value = [0.1, 0.2, 0.3]
        self.llm_client.generate_response.return_value = ChatCompletionResponse(
            content="Grounded answer", usage={}, model="m", finish_reason="stop"
        )

        self.database = MagicMock()
        self.collection = self.database.__getitem__.return_value
        self.collection.estimated_document_count.return_value = 2
        self.collection.aggregate.return_value = [
            {"instruction": "What is X?", "context": "X docs", "response": "X is Y.", "score": 0.91},
        ]
        self.database_provider = Mock(return_value=self.database)

        self.service = RAGService(self.settings, self.llm_client, self.database_provider)

    def _system_prompt(self) -> str:
        messages = self.llm_client.generate_response.call_args[1]["messages"]
        self.assertEqual(messages[0]["role"], "system")
        self.assertEqual(messages[1], {"role": "user", "content": "What is X?"})
        return messages[0]["content"]

    def test_grounded_answer(self) -> None:
        result = self.service.generate_response("What is X?")

        self.assertEqual(result.answer, "Grounded answer")
        self.assertFalse(result.fallback)
        self.assertIsNone(result.error)
        self.assertEqual(
            result.sources,
            [SearchResult(instruction="What is X?", context="X docs", response="X is Y.", score=0.91)],
        )

        system_prompt = self._system_prompt()
        self.assertIn(GROUNDED_INSTRUCTION, system_prompt)
        self.assertTrue(system_prompt.endswith("Context:\nQuestion: What is X?\nContext: X docs\nAnswer: X is Y."))

        call_kwargs = self.llm_client.generate_response.call_args[1]
        self.assertEqual(call_kwargs["max_tokens"], 1024)
        self.assertEqual(call_kwargs["temperature"], 0.7)

    def test_vector_search_pipeline(self) -> None:
        self.service.generate_response("What is X?")

        self.database.__getitem__.assert_called_once_with("rag_collection")
        pipeline = self.collection.aggregate.call_args[0][0]
        self.assertEqual(pipeline[0]["$vectorSearch"], {
            "index": "vector_index",
            "path": "embedding",
            "queryVector": [0.1, 0.2, 0.3],
            "numCandidates": 50,
            "limit": 5,
        })
        self.assertEqual(pipeline[1]["$project"]["_id"], 0)
        self.assertEqual(pipeline[1]["$project"]["score"], {"$meta": "vectorSearchScore"})

    def test_null_fields_become_empty_strings(self) -> None:
        self.collection.aggregate.return_value = [
            {"instruction": "q", "context": None, "response": None, "score": None},
        ]

        result = self.service.generate_response("What is X?")

        self.assertEqual(
            result.sources,
            [SearchResult(instruction="q", context="", response="", score=0.0)],
        )
        self.assertTrue(self._system_prompt().endswith("Question: q\nContext: \nAnswer: "))

    def test_request_overrides_collection_and_model(self) -> None:
        self.service.generate_response("What is X?", collection_name="faq", model_name="custom-embed")

        self.database.__getitem__.assert_called_once_with("faq")
        self.llm_client.create_embedding.assert_called_once_with("What is X?", model="custom-embed")

    def test_default_embedding_model(self) -> None:
        self.service.generate_response("What is X?")

        self.llm_client.create_embedding.assert_called_once_with(
            "What is X?", model="nomic-ai/nomic-embed-text-v1.5"
        )

    def test_database_unreachable_answers_from_general_knowledge(self) -> None:
        self.database_provider.side_effect = ServerSelectionTimeoutError("no servers")

        result = self.service.generate_response("What is X?")

        self.assertTrue(result.fallback)
        self.assertEqual(result.sources, [])
        self.assertEqual(result.answer, "Grounded answer")
        self.collection.aggregate.assert_not_called()

        system_prompt = self._system_prompt()
        self.assertEqual(system_prompt, f"You are a helpful assistant. {FALLBACK_INSTRUCTION}\n\n")

    def test_empty_collection_still_searched(self) -> None:
        self.collection.estimated_document_count.return_value = 0
        self.collection.aggregate.return_value = []

        result = self.service.generate_response("What is X?")

        self.assertFalse(result.fallback)
        self.assertEqual(result.sources, [])
        self.assertTrue(self._system_prompt().endswith("Context:\n"))

    def test_embedding_failure_returns_canned_answer(self) -> None:
        self.llm_client.create_embedding.side_effect = FireworksAPIError("embeddings returned 401")

        result = self.service.generate_response("What is X?")

        self.assertTrue(result.fallback)
        self.assertEqual(result.sources, [])
        self.assertEqual(result.error, "Embedding failed: embeddings returned 401")
        self.assertIn("I'm unable to search the knowledge base at the moment", result.answer)
        self.assertIn('"What is X?"', result.answer)
        self.llm_client.generate_response.assert_not_called()

    def test_vector_search_failure_falls_back(self) -> None:
        self.collection.aggregate.side_effect = OperationFailure("index not found")

        result = self.service.generate_response("What is X?")

        self.assertTrue(result.fallback)
        self.assertEqual(result.sources, [])
        self.assertIn(FALLBACK_INSTRUCTION, self._system_prompt())

    def test_llm_failure_raises_service_error(self) -> None:
        self.llm_client.generate_response.side_effect = FireworksAPIError("chat/completions returned 500")

        with self.assertRaises(LLMServiceError) as context:
            self.service.generate_response("What is X?")

        self.assertEqual(context.exception.message, "LLM API error: chat/completions returned 500")
        self.assertEqual(context.exception.status_code, 500)


if __name__ == "__main__":
    unittest.main()
