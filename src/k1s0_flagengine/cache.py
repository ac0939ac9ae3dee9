"""評価結果の TTL キャッシュ"""

from __future__ import annotations

import hashlib
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from .models import Decision


class _CacheEntry:
    __slots__ = ("decision", "stored_at")

    def __init__(self, decision: Decision, stored_at: float) -> None:
        self.decision = decision
        self.stored_at = stored_at


@dataclass
class CacheStats:
    """キャッシュ統計。"""

    hits: int = 0
    misses: int = 0
    invalidations: int = 0
    evictions: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "invalidations": self.invalidations,
            "evictions": self.evictions,
            "hit_rate": round(self.hit_rate, 4),
        }


class DecisionCache:
    """(flag_id, identifier) → Decision の短期キャッシュ。

    期限切れは読み出し時に判定する。エントリ数が max_entries を超えたら
    期限切れエントリを掃除し、それでも超える場合は古い順に捨てる。
    ttl_seconds が 0 の場合はキャッシュしない。
    """

    def __init__(
        self,
        ttl_seconds: float = 60.0,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._entries: dict[tuple[str, str], _CacheEntry] = {}
        self._stats = CacheStats()

    @staticmethod
    def identifier_for(
        subject_id: str | None,
        ip: str | None,
        user_agent: str | None = None,
        attributes: Mapping[str, Any] | None = None,
    ) -> str:
        """キャッシュキーの識別子。

        user_agent や属性が異なるコンテキストは別のキーになる。
        timestamp は含めない (含めると毎回ミスになる)。
        """
        identifier = f"{subject_id or 'anonymous'}:{ip or 'unknown'}"
        if user_agent is None and not attributes:
            return identifier
        items = sorted((attributes or {}).items(), key=lambda kv: str(kv[0]))
        digest = hashlib.sha256(repr((user_agent, items)).encode("utf-8")).hexdigest()
        return f"{identifier}:{digest[:16]}"

    def get(self, flag_id: str, identifier: str) -> Decision | None:
        entries = self._entries
        entry = entries.get((flag_id, identifier))
        if entry is None:
            self._stats.misses += 1
            return None
        if self._clock() - entry.stored_at >= self._ttl:
            entries.pop((flag_id, identifier), None)
            self._stats.misses += 1
            return None
        self._stats.hits += 1
        return entry.decision

    def put(self, flag_id: str, identifier: str, decision: Decision) -> None:
        if self._ttl <= 0:
            return
        self._entries[(flag_id, identifier)] = _CacheEntry(decision, self._clock())
        if len(self._entries) > self._max_entries:
            self._sweep()

    def invalidate_all(self) -> None:
        """全エントリを破棄する。辞書ごと差し替えるので読み出し中でも安全。"""
        self._entries = {}
        self._stats.invalidations += 1

    @property
    def size(self) -> int:
        return len(self._entries)

    @property
    def stats(self) -> CacheStats:
        return self._stats

    def _sweep(self) -> None:
        now = self._clock()
        live = {
            key: entry
            for key, entry in self._entries.items()
            if now - entry.stored_at < self._ttl
        }
        overflow = len(live) - self._max_entries
        if overflow > 0:
            # dict は挿入順を保持するので先頭が最も古い
            for key in list(live)[:overflow]:
                del live[key]
        self._stats.evictions += len(self._entries) - len(live)
        self._entries = live
