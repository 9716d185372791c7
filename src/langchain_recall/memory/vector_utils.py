"""
Vector helpers shared by the stores, the retriever and the memory pipeline.

`to_pgvector_literal` is the only way a vector is turned into text that
reaches SQL, so every component is validated there.
"""

import json
import math


class InvalidVectorError(ValueError):
    """Raised when a vector is empty, has a non-finite component, or the wrong size."""


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """
    Cosine similarity in [-1, 1].

    Returns 0.0 for empty or mismatched vectors and when either norm is zero.
    """
    if not a or not b or len(a) != len(b):
        return 0.0

    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for va, vb in zip(a, b):
        dot += va * vb
        norm_a += va * va
        norm_b += vb * vb

    if norm_a == 0 or norm_b == 0:
        return 0.0

    score = dot / (math.sqrt(norm_a) * math.sqrt(norm_b))
    # Clamp rounding noise on (anti)parallel vectors
    return max(-1.0, min(1.0, score))


def validate_vector(vector, dimensions: int = 0) -> list[float]:
    """Return the vector as a list of floats, or raise InvalidVectorError."""
    if vector is None or len(vector) == 0:
        raise InvalidVectorError("Vector must be a non-empty sequence")
    if dimensions and len(vector) != dimensions:
        raise InvalidVectorError(
            f"Vector has {len(vector)} dimensions, expected {dimensions}"
        )

    validated = []
    for index, value in enumerate(vector):
        if isinstance(value, bool):
            raise InvalidVectorError(f"Invalid vector component at index {index}: {value!r}")
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise InvalidVectorError(
                f"Invalid vector component at index {index}: {value!r}"
            ) from None
        if not math.isfinite(number):
            raise InvalidVectorError(f"Invalid vector component at index {index}: {value!r}")
        validated.append(number)
    return validated


def to_pgvector_literal(vector, dimensions: int = 0) -> str:
    """Render a validated vector in pgvector text format: "[1.0,2.0,...]"."""
    validated = validate_vector(vector, dimensions)
    return "[" + ",".join(repr(v) for v in validated) + "]"


def parse_vector(raw: str) -> list[float]:
    """Parse a JSON-encoded vector, returning [] when it cannot be read."""
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return []
    if not isinstance(parsed, list):
        return []
    result = []
    for value in parsed:
        try:
            result.append(float(value))
        except (TypeError, ValueError):
            result.append(0.0)
    return result


def serialize_vector(vector: list[float]) -> str:
    return json.dumps(list(vector))
