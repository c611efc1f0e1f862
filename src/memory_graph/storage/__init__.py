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

"""Relational store and vector index backends."""

from .base import RelationalStore, SimilarMatch, VectorIndex
from .qdrant_index import QdrantVectorIndex
from .sqlite_store import SQLiteMemoryStore

__all__ = [
    "QdrantVectorIndex",
    "RelationalStore",
    "SQLiteMemoryStore",
    "SimilarMatch",
    "VectorIndex",
]
