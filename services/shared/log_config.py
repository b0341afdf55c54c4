"""Shared — ログ設定"""

import logging
import os

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(service: str) -> None:
    """LOG_LEVEL 環境変数でレベルを決め、標準エラーに出力する。"""
    level = os.environ.get("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger(__name__).info("Logging configured for %s at %s", service, level)
