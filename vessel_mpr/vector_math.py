"""3D vector primitives shared by the centerline and resampling code."""

from __future__ import annotations

from typing import Sequence, Tuple

import numpy as np

SMALL_EPS = 1e-10
DEFAULT_AXIS: Tuple[float, float, float] = (0.0, 0.0, 1.0)


def as_vector(v: Sequence[float]) -> np.ndarray:
    vec = np.asarray(v, dtype=np.float64)
    if vec.shape != (3,):
        raise ValueError(f"expected a 3-vector, got shape {vec.shape}")
    return vec


def length(v: Sequence[float]) -> float:
    return float(np.linalg.norm(as_vector(v)))


def normalize(v: Sequence[float], fallback: Sequence[float] = DEFAULT_AXIS) -> np.ndarray:
    """Return ``v`` scaled to unit length, or ``fallback`` for (near) zero vectors."""
    vec = as_vector(v)
    norm = float(np.linalg.norm(vec))
    if norm < SMALL_EPS:
        return as_vector(fallback).copy()
    return vec / norm


def normalize_rows(vectors: np.ndarray, fallback: Sequence[float] = DEFAULT_AXIS) -> np.ndarray:
    """Normalise each row of an (N, 3) array; degenerate rows become ``fallback``."""
    vectors = np.asarray(vectors, dtype=np.float64)
    if vectors.ndim != 2 or vectors.shape[1] != 3:
        raise ValueError("vectors must have shape (N, 3)")
    norms = np.linalg.norm(vectors, axis=1, keepdims=True)
    degenerate = norms[:, 0] < SMALL_EPS
    out = vectors / np.where(norms < SMALL_EPS, 1.0, norms)
    out[degenerate] = as_vector(fallback)
    return out


def cross(a: Sequence[float], b: Sequence[float]) -> np.ndarray:
    return np.cross(as_vector(a), as_vector(b))


def dot(a: Sequence[float], b: Sequence[float]) -> float:
    return float(np.dot(as_vector(a), as_vector(b)))


def distance(a: Sequence[float], b: Sequence[float]) -> float:
    return length(as_vector(b) - as_vector(a))
