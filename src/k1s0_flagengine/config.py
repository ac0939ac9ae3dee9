"""エンジン設定 (pydantic BaseModel) と YAML 読み込み"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

from .exceptions import FlagEngineError, FlagEngineErrorCodes


class CacheSection(BaseModel):
    """評価キャッシュ設定。"""

    ttl_seconds: float = Field(default=60.0, ge=0.0)
    max_entries: int = Field(default=10_000, ge=1)


class RolloutSection(BaseModel):
    """段階的ロールアウト設定。"""

    default_step_interval_seconds: float = Field(default=15 * 60, ge=0.0)
    default_strategy: str = "standard"
    actor: str = "gradual_rollout"
    rollback_actor: str = "automated_rollout"


class LogSection(BaseModel):
    """ログ設定。"""

    level: str = "INFO"
    format: Literal["json", "text"] = "json"


class EngineConfig(BaseModel):
    """flagengine 設定全体。"""

    cache: CacheSection = Field(default_factory=CacheSection)
    rollout: RolloutSection = Field(default_factory=RolloutSection)
    log: LogSection = Field(default_factory=LogSection)


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """環境別の設定をベース設定に重ねる。

    両側がマッピングのセクションだけを再帰的に重ね、それ以外
    (スカラーやリスト) は環境側の値で置き換える。入力は変更しない。
    """
    merged = {**base}
    for key, env_value in override.items():
        base_value = merged.get(key)
        merged[key] = (
            deep_merge(base_value, env_value)
            if isinstance(base_value, dict) and isinstance(env_value, dict)
            else env_value
        )
    return merged


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise FlagEngineError(
            FlagEngineErrorCodes.CONFIG_ERROR,
            f"Failed to read config file: {path}",
            cause=e,
        ) from e
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise FlagEngineError(
            FlagEngineErrorCodes.CONFIG_ERROR,
            f"Failed to parse YAML: {path}",
            cause=e,
        ) from e
    if not isinstance(data, dict):
        raise FlagEngineError(
            FlagEngineErrorCodes.CONFIG_ERROR,
            f"Config root must be a mapping: {path}",
        )
    return data


def load_config(base_path: Path, env_path: Path | None = None) -> EngineConfig:
    """設定ファイルを読み込んで EngineConfig を返す。

    ファイルのトップレベルに ``flagengine`` キーがあればその下を使う。
    env_path が存在する場合はベースにマージする。
    """
    data = _read_yaml(base_path)
    if env_path is not None and env_path.exists():
        data = deep_merge(data, _read_yaml(env_path))
    section = data.get("flagengine", data)
    try:
        return EngineConfig.model_validate(section)
    except ValidationError as e:
        raise FlagEngineError(
            FlagEngineErrorCodes.CONFIG_ERROR,
            f"Config validation failed: {e}",
            cause=e,
        ) from e
