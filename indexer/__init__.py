"""Indexer package for DocScout: embeddings, vector storage and retrieval."""
