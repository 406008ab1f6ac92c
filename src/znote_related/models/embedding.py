"""Embedding value object and vector similarity primitives."""

from typing import Iterable, List, Optional, Sequence, Union

import numpy as np

from znote_related.exceptions import DimensionMismatchError

VectorLike = Union[Sequence[float], np.ndarray, "Embedding"]


def _as_array(vector: VectorLike) -> np.ndarray:
    if isinstance(vector, Embedding):
        return vector._vector
    return np.asarray(vector, dtype=np.float64)


def _check_dimensions(a: np.ndarray, b: np.ndarray) -> None:
    if a.shape[0] != b.shape[0]:
        raise DimensionMismatchError(a.shape[0], b.shape[0])


def cosine_similarity(a: VectorLike, b: VectorLike) -> float:
    """Cosine similarity between two vectors of equal length.

    Returns 0.0 when either vector has zero magnitude.

    Raises:
        DimensionMismatchError: If the vectors differ in length.
    """
    va = _as_array(a)
    vb = _as_array(b)
    _check_dimensions(va, vb)

    norm_a = float(np.linalg.norm(va))
    norm_b = float(np.linalg.norm(vb))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return float(np.dot(va, vb) / (norm_a * norm_b))


def euclidean_distance(a: VectorLike, b: VectorLike) -> float:
    """Euclidean (L2) distance between two vectors of equal length.

    Raises:
        DimensionMismatchError: If the vectors differ in length.
    """
    va = _as_array(a)
    vb = _as_array(b)
    _check_dimensions(va, vb)
    return float(np.linalg.norm(va - vb))


class Embedding:
    """Immutable fixed-dimension vector.

    The input is copied on construction and every read returns a fresh
    copy, so callers can never mutate the stored values. The magnitude is
    computed lazily and cached.
    """

    __slots__ = ("_vector", "_magnitude")

    def __init__(self, values: Union[Iterable[float], np.ndarray]):
        vector = np.array(list(values) if not isinstance(values, np.ndarray) else values,
                          dtype=np.float64)
        if vector.ndim != 1 or vector.shape[0] == 0:
            raise ValueError("Embedding vector cannot be empty")
        if not np.all(np.isfinite(vector)):
            raise ValueError("Embedding vector must contain only finite numbers")
        vector.setflags(write=False)
        self._vector = vector
        self._magnitude: Optional[float] = None

    @property
    def vector(self) -> np.ndarray:
        """A writable copy of the underlying values."""
        return self._vector.copy()

    @property
    def dimensions(self) -> int:
        return int(self._vector.shape[0])

    @property
    def magnitude(self) -> float:
        if self._magnitude is None:
            self._magnitude = float(np.linalg.norm(self._vector))
        return self._magnitude

    def to_list(self) -> List[float]:
        return [float(x) for x in self._vector]

    def cosine_similarity(self, other: VectorLike) -> float:
        return cosine_similarity(self, other)

    def euclidean_distance(self, other: VectorLike) -> float:
        return euclidean_distance(self, other)

    def normalize(self) -> "Embedding":
        """Return a unit-length copy (an unchanged copy for the zero vector)."""
        if self.magnitude == 0.0:
            return Embedding(self._vector)
        return Embedding(self._vector / self.magnitude)

    def equals(self, other: "Embedding", tolerance: float = 1e-10) -> bool:
        """Element-wise comparison within ``tolerance``."""
        if self.dimensions != other.dimensions:
            return False
        return bool(np.all(np.abs(self._vector - other._vector) <= tolerance))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Embedding):
            return NotImplemented
        return bool(np.array_equal(self._vector, other._vector))

    def __hash__(self) -> int:
        # +0.0 folds -0.0 into 0.0 so equal vectors hash alike
        return hash((self._vector + 0.0).tobytes())

    def __len__(self) -> int:
        return self.dimensions

    def __repr__(self) -> str:
        return f"Embedding(dimensions={self.dimensions}, magnitude={self.magnitude:.4f})"
