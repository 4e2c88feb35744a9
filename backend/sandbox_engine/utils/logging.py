"""
Logging Utilities - 日志工具

架构说明：
- get_logger() 是无依赖的，可以被任何模块安全导入
- setup_logging() 需要配置，在进程启动时调用
"""

import json
import logging
import os
import sys

ROOT_LOGGER = "sandbox_engine"


def get_logger(name: str) -> logging.Logger:
    """获取日志器（无依赖，可安全导入）"""
    return logging.getLogger(name)


class JsonFormatter(logging.Formatter):
    """JSON 行格式（便于日志采集）"""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "time": self.formatTime(record),
            "logger": record.name,
            "level": record.levelname,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def setup_logging(
    log_level: str | None = None,
    log_format: str = "text",
) -> None:
    """设置日志

    Args:
        log_level: 日志级别，默认从环境变量 SANDBOX_LOG_LEVEL 读取
        log_format: 日志格式 (text/json)
    """
    if log_level is None:
        log_level = os.getenv("SANDBOX_LOG_LEVEL", "INFO")

    level = getattr(logging, log_level.upper(), logging.INFO)

    # 只配置本包的日志器，不干扰宿主应用
    engine_logger = logging.getLogger(ROOT_LOGGER)
    engine_logger.setLevel(level)

    if not engine_logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        if log_format == "json":
            handler.setFormatter(JsonFormatter())
        else:
            handler.setFormatter(
                logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
            )
        engine_logger.addHandler(handler)
        engine_logger.propagate = False  # 不传播到根日志器，避免重复
