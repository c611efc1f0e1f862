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

"""Audit models for tracking merge operations."""

import time
from dataclasses import dataclass, field
from typing import Any

from .memory import new_id


@dataclass(frozen=True)
class MergeAuditRecord:
    """Write-once record of a merge: which memories were folded into which."""

    primary_id: str
    absorbed_ids: tuple[str, ...]  # in the order they were merged
    strategy: str
    created_at: float = field(default_factory=time.time)
    created_by: str | None = None
    id: str = field(default_factory=new_id)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "primary_id": self.primary_id,
            "absorbed_ids": list(self.absorbed_ids),
            "strategy": self.strategy,
            "created_at": self.created_at,
            "created_by": self.created_by,
        }
