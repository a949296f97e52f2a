"""MongoDB-grounded RAG and KAG HTTP API."""

__version__ = "1.0.0"
