"""
统一日志系统
使用 Loguru 替代标准 logging; 控制台 + 按天轮转的全量日志 + 错误日志。
"""
import sys
import logging
from pathlib import Path
from typing import Union

from loguru import logger

# 需要转接到 Loguru 的第三方库 logger
INTERCEPTED_LOGGERS = (
    "uvicorn",
    "uvicorn.access",
    "uvicorn.error",
    "fastapi",
    "websockets",
    "websockets.client",
    "aiohttp.client",
)


# 拦截标准库 logging 的处理器
class InterceptHandler(logging.Handler):
    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # 跳过 logging 自身的帧，确保文件名和行号指向调用方
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logger(log_dir: Union[str, Path] = "logs", level: str = "INFO", to_files: bool = True):
    """
    配置全局 Logger
    :param log_dir: 日志存储目录
    :param level: 控制台日志级别
    :param to_files: 为 False 时只输出到控制台
    """
    logger.remove()

    logger.add(
        sys.stderr,
        level=level,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
    )

    if to_files:
        Path(log_dir).mkdir(parents=True, exist_ok=True)

        logger.add(
            f"{log_dir}/app.log",
            rotation="00:00",
            retention="10 days",
            compression="zip",
            enqueue=True,
            level="DEBUG",
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{line} | {extra} | {message}"
        )

        logger.add(
            f"{log_dir}/error.log",
            rotation="10 MB",
            retention="30 days",
            level="ERROR",
            backtrace=True,
            diagnose=False,
        )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    for logger_name in INTERCEPTED_LOGGERS:
        mod_logger = logging.getLogger(logger_name)
        mod_logger.handlers = [InterceptHandler()]
        mod_logger.propagate = False

    # websockets 的 DEBUG 会打印每一帧
    logging.getLogger("websockets").setLevel(logging.INFO)

    logger.debug("日志系统初始化完成 (Loguru)")

    return logger
