"""Offline tooling that loads example documents into MongoDB."""
