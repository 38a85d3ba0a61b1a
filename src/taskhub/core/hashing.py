"""Content hashing used for deterministic task and job identity."""

from __future__ import annotations

import hashlib
import json
import time
from collections.abc import Sequence
from typing import Any

EMPTY_MERKLE_ROOT = ""


def sha256_hex(text: str) -> str:
    """Hex SHA-256 digest of UTF-8 text."""

    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def canonical_json(value: Any) -> str:
    """Serialize value to canonical JSON.

    Mapping keys are sorted and whitespace is stripped so structurally equal
    values serialize identically. Values that JSON cannot represent raise
    ``TypeError`` (or ``ValueError`` for NaN/Infinity) instead of being coerced.
    """

    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def hash_value(value: Any) -> str:
    """Digest of the canonical serialization of ``value``."""

    return sha256_hex(canonical_json(value))


def hash_pair(left: str, right: str) -> str:
    """Combine two digests; the pair is order-independent."""

    return sha256_hex(left + right if left < right else right + left)


def merkle_root(leaves: Sequence[str]) -> str:
    """Merkle root over ordered leaf digests.

    Leaves are hashed first, then adjacent nodes are paired left to right; a
    trailing unpaired node is paired with itself. An empty sequence yields
    ``EMPTY_MERKLE_ROOT``.
    """

    if not leaves:
        return EMPTY_MERKLE_ROOT
    level = [sha256_hex(leaf) for leaf in leaves]
    if len(level) == 1:
        return level[0]

    while len(level) > 1:
        next_level: list[str] = []
        for index in range(0, len(level), 2):
            left = level[index]
            right = level[index + 1] if index + 1 < len(level) else left
            next_level.append(hash_pair(left, right))
        level = next_level
    return level[0]


def job_id(task_id: str, input_hash: str) -> str:
    """Storage key for a job: unique across tasks even for identical inputs."""

    return f"{task_id}:{input_hash}"


def task_id(name: str, root: str | None) -> str:
    """Task id: content-derived when a Merkle root exists, time-derived otherwise."""

    if root is None:
        return sha256_hex(f"{name}:{time.time_ns()}")
    return sha256_hex(f"{name}:{root}")
