"""Store lifecycle coordination and multi-agent query routing for e-commerce RAG."""

__version__ = "0.1.0"
