"""
调试用文本摘要：上游响应体、请求正文等写入 DEBUG 日志前统一截断。
"""

from __future__ import annotations

import logging

from relaygate.util.logger import logger

DEFAULT_EXCERPT_MAX_LEN = 500


def excerpt_for_debug(text: str, max_len: int = DEFAULT_EXCERPT_MAX_LEN) -> str:
    if not text:
        return ""
    s = str(text).strip()
    if len(s) <= max_len:
        return s
    return f"{s[:max_len]} ... [truncated, total {len(s)} chars]"


def debug_log_original(label: str, original_text: str, *, max_len: int = DEFAULT_EXCERPT_MAX_LEN) -> None:
    """仅当 DEBUG 开启时打一条截断后的原文日志。"""
    if not logger.isEnabledFor(logging.DEBUG):
        return
    logger.debug("%s excerpt=%s", label, excerpt_for_debug(original_text, max_len=max_len))
