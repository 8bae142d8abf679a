"""Retrieval module for vector similarity and relational lookups."""
from .vector_store import VectorMatch, VectorStore

__all__ = ["VectorMatch", "VectorStore"]
