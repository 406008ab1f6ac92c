"""Application services: embeddings, retry, recommendations, connection reasons."""
