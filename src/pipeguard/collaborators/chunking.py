"""
Character window chunker.
"""

from __future__ import annotations

from typing import List, Optional

from pipeguard.config.config import ChunkingConfig
from pipeguard.faults import ParsingFault


class TextChunker:
    """
    Splits text into fixed-size windows that overlap by ``chunk_overlap`` characters.

    Windows prefer to end on whitespace when one is available in the back half
    of the window, so words are rarely cut in two.
    """

    def __init__(self, config: Optional[ChunkingConfig] = None) -> None:
        self.config = config or ChunkingConfig()

    async def chunk(self, content: str) -> List[str]:
        return self.split(content)

    def split(self, content: str) -> List[str]:
        text = (content or "").strip()
        if not text:
            raise ParsingFault("No text content to chunk")

        size = self.config.chunk_size
        overlap = self.config.chunk_overlap
        chunks: List[str] = []
        start = 0
        while start < len(text):
            end = min(start + size, len(text))
            if end < len(text):
                cut = text.rfind(" ", start + size // 2, end)
                if cut > start:
                    end = cut
            piece = text[start:end].strip()
            if piece:
                chunks.append(piece)
            if end >= len(text):
                break
            start = max(end - overlap, start + 1)
        return chunks
