# gemini_relay/log_config.py
"""
日志配置：彩色终端输出（colorlog）与纯文本输出两种格式化器，以及交给 uvicorn 的 dictConfig 字典。

在非交互式环境（后台部署、容器日志、设置了 NO_COLOR）中自动使用纯文本格式。
"""
import logging
import os
import sys
from typing import Any, Dict, Optional

import colorlog

from .config import AppSettings


def is_interactive_terminal() -> bool:
    """检测是否在交互式终端环境中运行"""
    return (
        hasattr(sys.stderr, 'isatty') and sys.stderr.isatty() and
        hasattr(sys.stdout, 'isatty') and sys.stdout.isatty() and
        os.getenv('TERM') is not None and
        os.getenv('NO_COLOR') is None
    )


LEVEL_NAME_MAP: Dict[str, str] = {
    "DEBUG": "调试",
    "INFO": "信息",
    "WARNING": "警告",
    "ERROR": "错误",
    "CRITICAL": "严重",
}


class ChineseColoredFormatter(colorlog.ColoredFormatter):
    """支持颜色和中文日志级别名称的格式化器，格式字符串中使用 %(levelname_chinese)s。"""

    def format(self, record: logging.LogRecord) -> str:
        record.levelname_chinese = LEVEL_NAME_MAP.get(record.levelname, record.levelname)
        return super().format(record)


class PlainChineseFormatter(logging.Formatter):
    """
    纯文本中文日志格式化器，不包含任何颜色代码。
    用于生产环境或非交互式环境。
    """

    def format(self, record: logging.LogRecord) -> str:
        record.levelname_chinese = LEVEL_NAME_MAP.get(record.levelname, record.levelname)
        return super().format(record)


def build_logging_config(app_settings: AppSettings, use_colors: Optional[bool] = None) -> Dict[str, Any]:
    """
    构建日志配置字典，供 `uvicorn.run(log_config=...)` 或 `logging.config.dictConfig` 使用。

    httpx/httpcore 会在 INFO 级别记录完整的请求 URL（其中包含 API 密钥查询参数），
    因此这两个 logger 固定为 WARNING。
    """
    if use_colors is None:
        use_colors = is_interactive_terminal()
    app_name = app_settings.app_name

    if use_colors:
        default_formatter = {
            "()": "gemini_relay.log_config.ChineseColoredFormatter",
            "format": f"%(log_color)s%(asctime)s - %(blue)s{app_name}%(reset)s - %(log_color)s%(levelname_chinese)s%(reset)s - %(message)s",
            "datefmt": "%Y-%m-%d %H:%M:%S",
            "log_colors": {
                "DEBUG": "cyan",
                "INFO": "green",
                "WARNING": "yellow",
                "ERROR": "red",
                "CRITICAL": "red,bg_white",
            },
            "reset": True,
        }
        access_formatter = {
            "()": "colorlog.ColoredFormatter",
            "format": f"%(asctime)s - %(blue)s{app_name}%(reset)s - %(green)s访问%(reset)s - %(message)s",
            "datefmt": "%Y-%m-%d %H:%M:%S",
            "reset": True,
        }
    else:
        default_formatter = {
            "()": "gemini_relay.log_config.PlainChineseFormatter",
            "format": f"%(asctime)s - {app_name} - %(levelname_chinese)s - %(message)s",
            "datefmt": "%Y-%m-%d %H:%M:%S",
        }
        access_formatter = {
            "()": "gemini_relay.log_config.PlainChineseFormatter",
            "format": f"%(asctime)s - {app_name} - 访问 - %(message)s",
            "datefmt": "%Y-%m-%d %H:%M:%S",
        }

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": default_formatter,
            "access": access_formatter,
        },
        "handlers": {
            "default": {
                "formatter": "default",
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stderr",
            },
            "access": {
                "formatter": "access",
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stdout",
            },
        },
        "loggers": {
            app_name: {
                "handlers": ["default"],
                "level": app_settings.log_level.upper(),
                "propagate": False,
            },
            "uvicorn.error": {
                "handlers": ["default"],
                "level": "INFO",
                "propagate": False,
            },
            "uvicorn.access": {
                "handlers": ["access"],
                "level": "INFO",
                "propagate": False,
            },
            "httpx": {
                "handlers": ["default"],
                "level": "WARNING",
                "propagate": False,
            },
            "httpcore": {
                "handlers": ["default"],
                "level": "WARNING",
                "propagate": False,
            },
        },
    }
