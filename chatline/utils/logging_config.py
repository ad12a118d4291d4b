import os
from logging.config import dictConfig

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def setup_logging():
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": LOG_FORMAT,
                },
                "json": {  # structured logs for prod, LOG_FORMATTER=json
                    "format": '{"time":"%(asctime)s","level":"%(levelname)s","logger":"%(name)s","message":"%(message)s"}'
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": os.getenv("LOG_FORMATTER", "default"),
                },
            },
            "loggers": {
                # realtime channel chatter is noisy at INFO
                "realtime": {"level": "WARNING"},
                "httpx": {"level": "WARNING"},
            },
            "root": {
                "level": os.getenv("LOG_LEVEL", "INFO").upper(),
                "handlers": ["console"],
            },
        }
    )
