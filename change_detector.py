# Copyright 2024 wyj
# Copyright 2025 Stephen Karl Larroque <lrq3000>
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

import hashlib
from collections import namedtuple

HTTP_NOT_MODIFIED = 304

# Reasons attached to a change decision
NOT_MODIFIED = "not-modified"
SAME_LAST_MODIFIED = "same-last-modified"
HASH_MATCH = "hash-match"
CHANGED = "changed"

ChangeDecision = namedtuple("ChangeDecision", ["changed", "reason", "content_hash"])


def content_hash(body):
    """
    Fingerprint fetched bytes as a 64-bit integer (BLAKE2b, 8-byte digest).

    BLAKE2b serves as a fast fingerprint here, not for its cryptographic strength.
    It ships with hashlib and its digest can be cut to exactly 8 bytes, so no
    extra hashing dependency is needed.

    Parameters:
        body (bytes): Raw response body

    Returns:
        int: Signed 64-bit integer, storable in an SQLite integer column
    """
    digest = hashlib.blake2b(body, digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


def reset_signals(candidate):
    """Forget the cached hash and last-modified so the next fetch is always persisted."""
    candidate.hash = 0
    candidate.last_modified = 0
    return candidate


def detect_change(stored_hash, stored_modified, status, new_modified, body):
    """
    Decide whether a fetched page must be persisted.

    Checks are applied in order: a 304 answer, an identical Last-Modified, then an
    identical content hash all mean "unchanged". A hash match keeps the stored
    Last-Modified as it is.

    Parameters:
        stored_hash (int): Hash stored for the bookmark, 0 if never fetched
        stored_modified (int): Stored Last-Modified in Unix seconds, 0 if never fetched
        status (int): HTTP status of the response
        new_modified (int): Last-Modified of the response in Unix seconds
        body (bytes): Response body, None for a 304

    Returns:
        ChangeDecision: changed flag, reason and the new hash (None when not computed)
    """
    if status == HTTP_NOT_MODIFIED:
        return ChangeDecision(False, NOT_MODIFIED, None)

    if new_modified == stored_modified:
        return ChangeDecision(False, SAME_LAST_MODIFIED, None)

    new_hash = content_hash(body or b"")
    if new_hash == stored_hash:
        return ChangeDecision(False, HASH_MATCH, new_hash)

    return ChangeDecision(True, CHANGED, new_hash)
