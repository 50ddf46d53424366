"""structlog ベースのロガー設定"""

from __future__ import annotations

import logging
import sys

import structlog

from .config import LogSection

LOGGER_NAME = "bpmn_collab"


def _renderer(format: str) -> structlog.types.Processor:
    if format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer()


def new_logger(
    section: LogSection | None = None,
    *,
    level: str | None = None,
    format: str | None = None,
) -> structlog.stdlib.BoundLogger:
    """LogSection に従って structlog を設定し、パッケージのロガーを返す。

    各モジュールは structlog.stdlib.get_logger(__name__) でロガーを取るため、
    ここでの設定がパイプライン全体の出力形式とレベルになる。

    Args:
        section: ログ設定。省略時は LogSection の既定値
        level: section.level を上書きするログレベル
        format: section.format を上書きする出力形式 ("json" or "text")

    Returns:
        設定済みの structlog.stdlib.BoundLogger
    """
    section = section or LogSection()
    log_level = getattr(logging, (level or section.level).upper(), logging.INFO)
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )
    logging.getLogger(LOGGER_NAME).setLevel(log_level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            # 配送リスナーの失敗などで logger.exception を使うため
            structlog.processors.format_exc_info,
            _renderer(format or section.format),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return structlog.stdlib.get_logger(LOGGER_NAME)
