"""パイプライン設定 (pydantic BaseModel) と YAML ローダー"""

from __future__ import annotations

import random
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

from .exceptions import CollabErrorCodes, ConfigError

DEFAULT_MAX_CONTENT_BYTES = 1024 * 1024  # 1MiB
DEFAULT_MAX_ELEMENTS = 10_000
DEFAULT_PAGE_SIZE = 100


class DeliverySection(BaseModel):
    """コマンド配送のリトライ設定。"""

    max_retries: int = Field(default=3, ge=0)
    base_delay_seconds: float = Field(default=0.5, ge=0.0)
    max_delay_seconds: float = Field(default=30.0, ge=0.0)
    multiplier: float = Field(default=2.0, ge=1.0)
    jitter: bool = False

    def compute_delay(self, attempt: int) -> float:
        """attempt 回目 (1 始まり) の失敗後に待つ秒数を計算する。"""
        base = self.base_delay_seconds * (self.multiplier ** max(attempt - 1, 0))
        capped = min(base, self.max_delay_seconds)
        if self.jitter:
            return capped * (0.9 + random.random() * 0.2)
        return capped


class SyncSection(BaseModel):
    """ポーリング同期の設定。"""

    poll_interval_seconds: float = Field(default=5.0, gt=0.0)
    page_size: int = Field(default=DEFAULT_PAGE_SIZE, ge=1, le=1000)


class LimitsSection(BaseModel):
    """保存時の構造チェック上限。"""

    max_content_bytes: int = Field(default=DEFAULT_MAX_CONTENT_BYTES, ge=1)
    max_elements: int = Field(default=DEFAULT_MAX_ELEMENTS, ge=1)


class FeedSection(BaseModel):
    """イベントフィードの設定。"""

    page_size: int = Field(default=DEFAULT_PAGE_SIZE, ge=1, le=1000)


class ProjectionSection(BaseModel):
    """プロジェクションの順序ポリシー。"""

    ordering: Literal["tolerant", "strict"] = "tolerant"


class LogSection(BaseModel):
    """ログ設定。"""

    level: str = "INFO"
    format: Literal["json", "text"] = "json"


class EventStoreSection(BaseModel):
    """リモートイベントストアの接続設定。"""

    base_url: str
    api_key: str = ""
    timeout_seconds: float = Field(default=10.0, gt=0.0)


class CollabConfig(BaseModel):
    """パイプライン設定全体。構築時に明示的に渡す。"""

    delivery: DeliverySection = Field(default_factory=DeliverySection)
    sync: SyncSection = Field(default_factory=SyncSection)
    limits: LimitsSection = Field(default_factory=LimitsSection)
    feed: FeedSection = Field(default_factory=FeedSection)
    projection: ProjectionSection = Field(default_factory=ProjectionSection)
    log: LogSection = Field(default_factory=LogSection)
    event_store: EventStoreSection | None = None


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """base と override をディープマージして新しい辞書を返す。

    override の値が優先される。リストは置換（マージしない）。
    """
    result: dict[str, Any] = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(
            code=CollabErrorCodes.READ_FILE,
            message=f"Failed to read config file: {path}",
            cause=e,
        ) from e
    try:
        data: dict[str, Any] = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise ConfigError(
            code=CollabErrorCodes.PARSE_YAML,
            message=f"Failed to parse YAML: {path}",
            cause=e,
        ) from e
    return data


def load(base_path: Path, env_path: Path | None = None) -> CollabConfig:
    """設定ファイルを読み込んで CollabConfig を返す。

    base_path: ベース設定ファイルパス（必須）
    env_path: 環境別設定ファイルパス（オプション）。存在する場合はベースにマージ。
    """
    data = _read_yaml(base_path)
    if env_path is not None and env_path.exists():
        data = deep_merge(data, _read_yaml(env_path))
    try:
        return CollabConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(
            code=CollabErrorCodes.CONFIG_VALIDATION,
            message=f"Config validation failed: {e}",
            cause=e,
        ) from e
