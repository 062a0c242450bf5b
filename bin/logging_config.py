import logging
import logging.config


def build_logging_config(level: str = "INFO") -> dict:
    """dictConfig for the CLI: everything to stderr, stdout is reserved for reports."""
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "[%(levelname)s] %(message)s",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": level,
                "formatter": "default",
                "stream": "ext://sys.stderr",
            },
        },
        "root": {
            "handlers": ["console"],
            "level": level,
        },
    }


def setup_logging(verbose: bool = False) -> None:
    """Set up logging configuration.

    Args:
        verbose (bool): If True, use DEBUG level logging. If False, use INFO level.
    """
    logging.config.dictConfig(build_logging_config("DEBUG" if verbose else "INFO"))
