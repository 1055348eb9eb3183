"""Vector math for retrieval scoring."""

import json
import math
from typing import Any, Sequence

import numpy as np

from coach_rag.core.exceptions import MalformedEmbedding


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity between two vectors.

    Vectors of different length, or with a zero norm, are treated as
    unrelated and score 0.0. The result is clamped to [-1, 1].

    Args:
        a: First vector.
        b: Second vector.

    Returns:
        Similarity in [-1, 1].
    """
    if len(a) != len(b) or len(a) == 0:
        return 0.0

    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)

    norm_a = float(np.linalg.norm(va))
    norm_b = float(np.linalg.norm(vb))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0

    score = float(np.dot(va, vb)) / (norm_a * norm_b)
    if math.isnan(score):
        return 0.0
    return max(-1.0, min(1.0, score))


def parse_embedding(raw: Any) -> list[float]:
    """Parse a stored embedding.

    Accepts JSON array text (``"[0.1, 0.2]"``) or an already decoded
    sequence of numbers.

    Raises:
        MalformedEmbedding: If the value is not a non-empty list of finite numbers.
    """
    value = raw
    if isinstance(raw, (str, bytes)):
        try:
            value = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise MalformedEmbedding(f"Embedding is not valid JSON: {e}") from e

    if not isinstance(value, (list, tuple)) or not value:
        raise MalformedEmbedding("Embedding must be a non-empty array")

    vector: list[float] = []
    for element in value:
        # bool is an int subclass but never a valid component
        if isinstance(element, bool) or not isinstance(element, (int, float)):
            raise MalformedEmbedding(f"Embedding contains non-numeric value: {element!r}")
        number = float(element)
        if not math.isfinite(number):
            raise MalformedEmbedding("Embedding contains NaN or infinite value")
        vector.append(number)
    return vector
