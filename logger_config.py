import logging
import sys
import os


def setup_logger(name: str) -> logging.Logger:
    """
    Sets up a logger with both file and console handlers.

    The log file is taken from LOG_FILE (default trip_planner.log, empty string
    disables it) and the console level from LOG_LEVEL (default INFO).

    Args:
        name: The name of the logger (usually __name__).

    Returns:
        logging.Logger: The configured logger.
    """
    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    # Handlers are attached once per logger name
    if not logger.handlers:
        log_file = os.environ.get("LOG_FILE", "trip_planner.log")
        if log_file:
            try:
                file_handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
                file_handler.setLevel(logging.DEBUG)
                file_handler.setFormatter(formatter)
                logger.addHandler(file_handler)
            except Exception as e:
                sys.stderr.write(f"Failed to setup file handler for {log_file}: {e}\n")

        console_level = getattr(logging, os.environ.get("LOG_LEVEL", "INFO").upper(), logging.INFO)
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setLevel(console_level)
        stream_handler.setFormatter(formatter)
        logger.addHandler(stream_handler)

    return logger
