from typing import List, Literal

import httpx

from ..config import settings
from ..utils.vectors import normalize

ProviderName = Literal["openai", "ollama"]


async def embed_texts(
    texts: List[str], input_type: str = "passage"
) -> List[List[float]]:
    """
    Generate unit-normalized embeddings for texts.
    Args:
        texts: List of texts to embed
        input_type: Either "passage" (stored transactions) or "query" (search
                    queries). Forwarded to OpenAI-compatible servers that run
                    asymmetric models; ignored by Ollama.
    """
    if not texts:
        return []

    provider = (settings.EMBED_PROVIDER or "ollama").lower()
    if provider == "openai":
        key = settings.OPENAI_API_KEY
        if not key or key == "ollama":
            raise RuntimeError("OPENAI_API_KEY not set for embed provider 'openai'")
        base = settings.OPENAI_BASE_URL.rstrip("/")
        payload = {"model": settings.OPENAI_EMBED_MODEL, "input": texts}
        if input_type != "passage":
            payload["input_type"] = input_type
        async with httpx.AsyncClient(timeout=settings.EMBED_TIMEOUT_SEC) as client:
            r = await client.post(
                f"{base}/embeddings",
                headers={"Authorization": f"Bearer {key}"},
                json=payload,
            )
            r.raise_for_status()
            data = r.json()
            return [normalize(d["embedding"]) for d in data["data"]]

    # ollama embeddings, one request per text
    out: List[List[float]] = []
    async with httpx.AsyncClient(timeout=settings.EMBED_TIMEOUT_SEC) as client:
        for t in texts:
            r = await client.post(
                f"{settings.OLLAMA_URL.rstrip('/')}/api/embeddings",
                json={"model": settings.OLLAMA_EMBED_MODEL, "prompt": t},
            )
            r.raise_for_status()
            out.append(normalize(r.json()["embedding"]))
    return out
