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

"""Outcome of a best-effort auxiliary step.

Auxiliary steps (embedding indexing at store time, relationship seeding,
merge-time relationship redirection and audit) never raise into the caller.
They return a ``StepOutcome`` and the orchestrator decides what to log.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True, slots=True)
class StepOutcome:
    """Success or failure of one named auxiliary step."""

    step: str
    ok: bool
    value: Any = None
    error: BaseException | None = None

    @classmethod
    def success(cls, step: str, value: Any = None) -> StepOutcome:
        return cls(step=step, ok=True, value=value)

    @classmethod
    def failure(cls, step: str, error: BaseException) -> StepOutcome:
        return cls(step=step, ok=False, error=error)

    def describe(self) -> str:
        if self.ok:
            return f"{self.step}: ok"
        return f"{self.step}: {self.error.__class__.__name__}: {self.error}"
