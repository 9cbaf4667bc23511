#!/usr/bin/env python3
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable

from e2e_common import short_hash

SIZE_POLICY_ASC = "asc"
SIZE_POLICY_DESC = "desc"

SORT_KEYS = ("title", "guid", "size", "hash", "index")


def normalize(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip().upper()


@dataclass(frozen=True)
class Candidate:
    title: str | None
    guid: str | None
    size: int | None
    indexer_id: int | None
    original_index: int = 0

    @property
    def normalized_title(self) -> str:
        return normalize(self.title)

    @property
    def normalized_guid(self) -> str:
        return normalize(self.guid)

    @property
    def intrinsic_hash(self) -> str:
        # Pure function of the record itself, never of its position.
        size = "" if self.size is None else str(self.size)
        indexer = "" if self.indexer_id is None else str(self.indexer_id)
        return short_hash(f"{self.normalized_title}|{self.normalized_guid}|{size}|{indexer}")


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


def candidates_from_releases(releases: Iterable[dict[str, Any]]) -> list[Candidate]:
    out: list[Candidate] = []
    for index, release in enumerate(releases):
        out.append(
            Candidate(
                title=release.get("title"),
                guid=release.get("guid"),
                size=_as_int(release.get("size")),
                indexer_id=_as_int(release.get("indexerId")),
                original_index=index,
            )
        )
    return out


def _key_functions(size_policy: str) -> list[tuple[str, Callable[[Candidate], Any]]]:
    sign = -1 if size_policy == SIZE_POLICY_DESC else 1
    return [
        ("title", lambda item: item.normalized_title),
        ("guid", lambda item: item.normalized_guid),
        ("size", lambda item: sign * (item.size or 0)),
        ("hash", lambda item: item.intrinsic_hash),
        ("index", lambda item: item.original_index),
    ]


def _tie_breaker(candidates: list[Candidate], keys: list[tuple[str, Callable[[Candidate], Any]]]) -> str:
    """Name the first key at which the winner's group shrinks to one element."""
    if len(candidates) <= 1:
        return "none"
    remaining = candidates
    for name, key_fn in keys:
        best = min(key_fn(item) for item in remaining)
        remaining = [item for item in remaining if key_fn(item) == best]
        if len(remaining) == 1:
            return name
    # full duplicates: index is the last word
    return "index"


def select_candidate(
    candidates: Iterable[Candidate],
    size_policy: str = SIZE_POLICY_DESC,
) -> tuple[Candidate, dict[str, Any]]:
    """Pick one candidate independent of input order.

    Sort order is title, guid, size (per ``size_policy``), intrinsic hash and
    finally original index. Returns the winner and a diagnostics record that
    carries a hash of the winning guid, never the guid itself.
    """
    items = list(candidates)
    if not items:
        raise ValueError("select_candidate requires at least one candidate.")
    if size_policy not in (SIZE_POLICY_ASC, SIZE_POLICY_DESC):
        raise ValueError(f"unknown size policy: {size_policy}")

    keys = _key_functions(size_policy)
    ordered = sorted(items, key=lambda item: tuple(key_fn(item) for _, key_fn in keys))
    winner = ordered[0]
    basis = {
        "sortKeys": [
            "title:asc",
            "guid:asc",
            f"size:{size_policy}",
            "hash:asc",
            "index:asc",
        ],
        "candidateCount": len(items),
        "winningGuidHash": short_hash(winner.normalized_guid),
        "tieBreaker": _tie_breaker(items, keys),
    }
    return winner, basis
