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

"""Heuristic concept extraction.

Best-effort keyword extraction used when the caller does not supply an
explicit concept list: no stemming, no stop-word list, no NLP.
"""

import re

_NON_WORD = re.compile(r"[^\w\s]")

MAX_CONCEPTS = 5
MIN_TOKEN_LENGTH = 4


def extract_concepts(content: str, max_concepts: int = MAX_CONCEPTS) -> list[str]:
    """Extract up to ``max_concepts`` keywords from ``content``.

    Lower-cases, replaces punctuation with spaces, splits on whitespace,
    drops tokens of three characters or fewer, and de-duplicates keeping
    first-seen order.

    >>> extract_concepts("Fix the login bug, then fix login tests!")
    ['login', 'then', 'tests']
    """
    words = _NON_WORD.sub(" ", content.lower()).split()
    seen: dict[str, None] = {}
    for word in words:
        if len(word) >= MIN_TOKEN_LENGTH:
            seen.setdefault(word, None)
            if len(seen) >= max_concepts:
                break
    return list(seen)
