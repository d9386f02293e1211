"""Clients for the external platform API and the embedding/generation capabilities."""

from .capabilities import Embedder, Generator, HttpEmbeddingClient, HttpGenerationClient
from .platform import Credentials, StorePlatformClient, TiendaNubeClient

__all__ = [
    "Credentials",
    "Embedder",
    "Generator",
    "HttpEmbeddingClient",
    "HttpGenerationClient",
    "StorePlatformClient",
    "TiendaNubeClient",
]
