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

"""Content hashing for exact-duplicate detection."""

import hashlib


def generate_content_hash(content: str) -> str:
    """SHA-256 hex digest of the content, byte-for-byte.

    The hash is a pure function of the text: no normalisation is applied, so
    memories differing only in whitespace or case are distinct.
    """
    return hashlib.sha256(content.encode("utf-8")).hexdigest()
