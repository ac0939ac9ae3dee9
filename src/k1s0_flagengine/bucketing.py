"""ロールアウト用のバケット割り当て。

識別子ごとに 1 回だけハッシュを取り、100 で割った余りをバケットとする。
バケットはフラグやロールアウト率に依存しないため、ロールアウト率を上げても
一度含まれた識別子が外れることはない。
"""

from __future__ import annotations

ANONYMOUS_IDENTIFIER = "anonymous"
BUCKET_COUNT = 100

_DJB2_SEED = 5381
_MASK_32 = 0xFFFFFFFF


def djb2_hash(identifier: str) -> int:
    """DJB2 (xor 版) の 32 ビットハッシュを返す。"""
    h = _DJB2_SEED
    for b in identifier.encode("utf-8"):
        h = ((h * 33) ^ b) & _MASK_32
    return h


def bucket_for(identifier: str) -> int:
    """識別子のバケット (0..99) を返す。"""
    return djb2_hash(identifier) % BUCKET_COUNT


def is_in_rollout(identifier: str, percentage: int) -> bool:
    """識別子がロールアウト率の範囲内かどうか。"""
    return bucket_for(identifier) < percentage
