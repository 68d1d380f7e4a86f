import logging
import sys


def setup_logging(level=logging.INFO):
    """
    Configure the root logger once for the whole service.
    Format: 2024-03-21 10:00:00.123 | INFO    | module:function:line - message
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    log_format = "%(asctime)s.%(msecs)03d | %(levelname)-7s | %(name)s:%(funcName)s:%(lineno)d - %(message)s"
    date_format = "%Y-%m-%d %H:%M:%S"

    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter(fmt=log_format, datefmt=date_format)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()

    # avoid duplicate lines on reload
    if root_logger.hasHandlers():
        root_logger.handlers.clear()

    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("pymongo").setLevel(logging.WARNING)

    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uv_logger = logging.getLogger(logger_name)
        if uv_logger.handlers:
            uv_logger.handlers[0].setFormatter(formatter)
        else:
            uv_logger.addHandler(handler)

    logging.info("Logging initialized at %s", logging.getLevelName(level))
    return root_logger
