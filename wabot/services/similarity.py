import math
from dataclasses import dataclass
from typing import Generic, Iterable, Optional, Sequence, TypeVar

T = TypeVar("T")


def cosine_similarity(vector_a: Sequence[float], vector_b: Sequence[float]) -> float:
    """Cosine similarity in [-1, 1]. A zero-norm vector yields 0.0."""
    if len(vector_a) != len(vector_b):
        raise ValueError(f"Vector length mismatch: {len(vector_a)} != {len(vector_b)}")
    dot = sum(a * b for a, b in zip(vector_a, vector_b))
    norm_a = math.sqrt(sum(a * a for a in vector_a))
    norm_b = math.sqrt(sum(b * b for b in vector_b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (norm_a * norm_b)


@dataclass
class Match(Generic[T]):
    item: T
    score: float


def best_match(
    query_vector: Sequence[float],
    candidates: Iterable[tuple[T, Optional[Sequence[float]], float]],
) -> Optional[Match[T]]:
    """Linear scan over ``(item, vector, weight)`` candidates.

    Score is ``cosine * weight``. Candidates without a vector are skipped and
    the first candidate wins ties.
    """
    best: Optional[Match[T]] = None
    for item, vector, weight in candidates:
        if not vector:
            continue
        score = cosine_similarity(query_vector, vector) * weight
        if best is None or score > best.score:
            best = Match(item=item, score=score)
    return best


def clamp_confidence(score: float) -> float:
    return max(0.0, min(1.0, score))
