from tidings.embeddings.chunking import Chunk, chunk_text, content_hash
from tidings.embeddings.generator import EmbeddingGenerator, EmbedReport

__all__ = ["Chunk", "EmbedReport", "EmbeddingGenerator", "chunk_text", "content_hash"]
