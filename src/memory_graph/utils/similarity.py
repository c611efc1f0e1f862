# Copyright 2024 Heinrich Krupp
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Similarity measures used by relationship detection.

Cosine similarity for embedding vectors, Jaccard index for tag sets, and a
linear decay for temporal proximity.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence

import numpy as np


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity between two vectors.

    Returns 0.0 if either vector has zero magnitude.

    Raises:
        ValueError: If the vectors have different lengths.
    """
    if len(a) != len(b):
        raise ValueError(f"Vector dimension mismatch: {len(a)} vs {len(b)}")

    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    norm_a = np.linalg.norm(va)
    norm_b = np.linalg.norm(vb)
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return float(np.dot(va, vb) / (norm_a * norm_b))


def jaccard_similarity(a: Iterable[str], b: Iterable[str]) -> tuple[float, list[str]]:
    """Jaccard index |A ∩ B| / |A ∪ B| and the sorted shared elements.

    Two empty sets have similarity 0.0.
    """
    set_a, set_b = set(a), set(b)
    union = set_a | set_b
    if not union:
        return 0.0, []
    shared = set_a & set_b
    return len(shared) / len(union), sorted(shared)


def temporal_strength(delta_seconds: float, window_seconds: float) -> float:
    """Linear proximity strength: 1.0 at the same instant, 0.0 at the window edge.

    Values beyond the window clamp to 0.0.
    """
    if window_seconds <= 0:
        raise ValueError("window_seconds must be positive")
    return max(0.0, 1.0 - abs(delta_seconds) / window_seconds)
