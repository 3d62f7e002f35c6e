"""Built-in collaborator adapters."""

from .chunking import TextChunker
from .http import HttpFetcher

__all__ = ["HttpFetcher", "TextChunker"]
