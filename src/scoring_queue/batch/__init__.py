"""Batch scoring over record scopes: alignment analysis and embeddings."""
