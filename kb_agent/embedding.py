"""Embedding gateway wrapping OpenAI's embeddings API.

Provides:
- create_openai_client: OpenAI client initialized from settings.
- EmbeddingGateway: Converts text into fixed-dimension vectors; raises EmbeddingError
  on API failure, timeout, or an empty/mis-sized vector.
- embedding_text: Builds the text an article is embedded from, truncated to the
  configured maximum input length.
"""
import logging
from typing import List, Optional, Tuple

from openai import OpenAI, OpenAIError

from kb_agent.config import Settings
from kb_agent.errors import EmbeddingError

logger = logging.getLogger(__name__)


def create_openai_client(settings: Settings) -> OpenAI:
    """Return an OpenAI client initialized with the configured API key."""
    return OpenAI(api_key=settings.OPENAI_API_KEY)


def embedding_text(
    title: Optional[str],
    content: Optional[str],
    subtitle: Optional[str],
    link: Optional[str],
    max_chars: int,
) -> Tuple[str, bool]:
    """Join article fields into the embedding input.

    Args:
        title, content, subtitle, link: Article fields; None is treated as empty.
        max_chars: Maximum input length accepted by the embedding step.

    Returns:
        Tuple[str, bool]: The (possibly truncated) text and whether it was truncated.
    """
    text = "\n\n".join([title or "", content or "", subtitle or "", link or ""])
    if len(text) > max_chars:
        return text[:max_chars], True
    return text, False


class EmbeddingGateway:
    """Text-to-vector conversion through the configured OpenAI embedding model."""

    def __init__(self, client: OpenAI, model: str, dim: int, timeout: float):
        self.client = client
        self.model = model
        self.dim = dim
        self.timeout = timeout

    def embed_texts(self, texts: List[str]) -> List[List[float]]:
        """Embed a batch of texts.

        Args:
            texts: List of input strings to embed.

        Returns:
            List[List[float]]: One embedding vector per input text.

        Raises:
            EmbeddingError: If the API call fails or any vector is unusable.
        """
        if not texts:
            return []
        try:
            resp = self.client.embeddings.create(model=self.model, input=texts, timeout=self.timeout)
        except OpenAIError as e:
            raise EmbeddingError(f"embedding request failed: {e}") from e
        vectors = [list(d.embedding or []) for d in resp.data]
        if len(vectors) != len(texts):
            raise EmbeddingError(f"expected {len(texts)} embeddings, got {len(vectors)}")
        for v in vectors:
            self._check(v)
        return vectors

    def embed(self, text: str) -> List[float]:
        """Embed a single string and return its vector."""
        return self.embed_texts([text])[0]

    def _check(self, vector: List[float]) -> None:
        if not vector:
            raise EmbeddingError("embedding response contained an empty vector")
        if len(vector) != self.dim:
            raise EmbeddingError(f"embedding has {len(vector)} dimensions, expected {self.dim}")
