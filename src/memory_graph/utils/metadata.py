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

"""Field-by-field merge of open metadata maps.

Merge rules when both sides define a key:

* nested map vs nested map → recursive merge
* list vs anything        → order-preserving union of distinct values
* scalar vs scalar        → list of the distinct values (a single value if equal)
* map vs non-map          → the values are collected into a list

Keys present on only one side are copied unchanged. Inputs are never mutated.
"""

from __future__ import annotations

import copy

from ..models.validators import MetadataValue, OpenMap


def _append_distinct(target: list[MetadataValue], value: MetadataValue) -> None:
    if value not in target:
        target.append(copy.deepcopy(value))


def _as_list(value: MetadataValue) -> list[MetadataValue]:
    return list(value) if isinstance(value, list) else [value]


def merge_values(left: MetadataValue, right: MetadataValue) -> MetadataValue:
    """Merge two colliding values for the same key."""
    if isinstance(left, dict) and isinstance(right, dict):
        return merge_metadata(left, right)

    if not isinstance(left, list) and not isinstance(right, list) and left == right:
        return copy.deepcopy(left)

    merged: list[MetadataValue] = []
    for value in _as_list(left) + _as_list(right):
        _append_distinct(merged, value)
    return merged


def merge_metadata(left: OpenMap, right: OpenMap) -> OpenMap:
    """Merge ``right`` into a copy of ``left``."""
    result: OpenMap = copy.deepcopy(left)
    for key, value in right.items():
        if key in result:
            result[key] = merge_values(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def merge_all(maps: list[OpenMap]) -> OpenMap:
    """Fold ``merge_metadata`` over ``maps`` from left to right."""
    result: OpenMap = {}
    for m in maps:
        result = merge_metadata(result, m)
    return result
