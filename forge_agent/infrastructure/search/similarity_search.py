from abc import ABC, abstractmethod
from typing import Dict, List, Optional
from collections import Counter
from datetime import datetime
import math
import re
from pydantic import BaseModel, Field

from forge_agent.domain.models.records import UserArtifact
from forge_agent.infrastructure.persistence.storage import InMemoryStorage


TOKEN_PATTERN = re.compile(r"[a-z0-9']+")


class SearchFilters(BaseModel):
    user_id: str
    types: List[str] = Field(default_factory=list)
    scopes: List[str] = Field(default_factory=lambda: ["private"])
    status: str = "active"
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None


class SimilarityResult(BaseModel):
    artifact: UserArtifact
    score: float = Field(description="Cosine similarity in [0, 1]")


class SimilaritySearch(ABC):
    """Nearest-artifact lookup by embedding similarity"""

    @abstractmethod
    async def search_similar(self, query: str, filters: SearchFilters, top_k: int = 20) -> List[SimilarityResult]:
        pass


def _vectorize(text: str) -> Dict[str, int]:
    return Counter(TOKEN_PATTERN.findall(text.lower()))


def cosine_similarity(a: Dict[str, int], b: Dict[str, int]) -> float:
    if not a or not b:
        return 0.0
    dot = sum(count * b.get(token, 0) for token, count in a.items())
    norm_a = math.sqrt(sum(v * v for v in a.values()))
    norm_b = math.sqrt(sum(v * v for v in b.values()))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class InMemorySimilaritySearch(SimilaritySearch):
    """Bag-of-words cosine similarity over the in-memory storage's artifacts"""

    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    async def search_similar(self, query: str, filters: SearchFilters, top_k: int = 20) -> List[SimilarityResult]:
        artifacts = await self.storage.query_user_artifacts(
            user_id=filters.user_id,
            types=filters.types,
            status=filters.status,
            scopes=filters.scopes,
            created_after=filters.created_after,
            created_before=filters.created_before,
            limit=len(self.storage.user_artifacts),
        )

        query_vector = _vectorize(query)
        scored = []
        for artifact in artifacts:
            text = " ".join(filter(None, [artifact.title, artifact.content]))
            score = cosine_similarity(query_vector, _vectorize(text))
            scored.append(SimilarityResult(artifact=artifact, score=round(score, 4)))

        scored.sort(key=lambda r: r.score, reverse=True)
        return scored[:top_k]
