import logging
import logging.config
import socket
from typing import Optional


def set_logging_config(verbose: bool, log_file: Optional[str] = None):
    """
    Configure logging for command line runs.
    Warnings are always written to the console, verbose runs also write progress messages.
    If a log file is given, everything at INFO level and above is written to it as well.
    """
    old_factory = logging.getLogRecordFactory()

    def record_factory(*args, **kwargs):
        record = old_factory(*args, **kwargs)
        record.host = socket.gethostname()
        return record

    logging.setLogRecordFactory(record_factory)

    log_format = "%(asctime)s %(host)s %(name)s %(levelname)s %(message)s"
    root_logger = {"level": "DEBUG" if verbose else "INFO", "handlers": ["stream"]}
    handlers = {
        "stream": {
            "level": "INFO" if verbose else "WARNING",
            "class": "logging.StreamHandler",
            "formatter": "app",
        }
    }
    if log_file:
        root_logger["handlers"].append("file")
        handlers["file"] = {
            "level": "INFO",
            "class": "logging.FileHandler",
            "filename": log_file,
            "formatter": "app",
            "encoding": "utf-8",
        }

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "root": root_logger,
            "handlers": handlers,
            "formatters": {
                "app": {
                    "format": log_format,
                    "datefmt": "%Y-%m-%d %H:%M:%S",
                },
            },
        }
    )
    # Numba logs its compilation steps at debug level.
    logging.getLogger("numba").setLevel(logging.WARNING)
