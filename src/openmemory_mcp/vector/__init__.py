"""Vector index and embeddings."""
