import logging
import os
from datetime import datetime
from logging.handlers import RotatingFileHandler

_FORMAT = "[%(asctime)s] [%(name)s] %(message)s"
_DATEFMT = "%H:%M:%S"


def _prepare(handler: logging.Handler, level: int, name: str) -> logging.Handler:
    handler.setFormatter(logging.Formatter(_FORMAT, _DATEFMT))
    handler.setLevel(level)
    handler.name = name
    return handler


def _replace_handlers(logger: logging.Logger, handlers: list[logging.Handler]) -> None:
    logger.handlers = []
    for handler in handlers:
        logger.addHandler(handler)
    logger.propagate = False


def configure_logging(logs_dir: str) -> str:
    """Route the root and uvicorn loggers to a rotating server log plus stderr.

    Returns the path of the log file for this process.
    """
    os.makedirs(logs_dir, exist_ok=True)

    timestamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
    log_path = os.path.join(logs_dir, f"server_{timestamp}.log")

    file_handler = _prepare(
        RotatingFileHandler(log_path, maxBytes=5_000_000, backupCount=3), logging.DEBUG, "meetflow_file"
    )
    stream_handler = _prepare(logging.StreamHandler(), logging.INFO, "meetflow_stream")

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    _replace_handlers(root_logger, [file_handler, stream_handler])

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uv_logger = logging.getLogger(name)
        uv_logger.setLevel(logging.INFO)
        _replace_handlers(uv_logger, [file_handler, stream_handler])

    # Chatty at DEBUG and nothing we need from them.
    for name in ("urllib3", "multipart"):
        logging.getLogger(name).setLevel(logging.INFO)

    root_logger.info("Logging initialized: %s", log_path)
    return log_path


def trace(logger: logging.Logger, stage: str, **fields) -> None:
    """One-line stage marker: ``TRACE stage=<stage> k=v ...`` with sorted keys."""
    payload = " ".join(f"{k}={fields[k]!r}" for k in sorted(fields.keys()))
    logger.info("TRACE stage=%s ts=%s %s", stage, datetime.utcnow().isoformat(), payload)
