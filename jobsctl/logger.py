import logging
import os
import sys
from datetime import datetime

from . import config


def setup_logger(name: str = "jobsctl", level: str = None) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel((level or config.LOG_LEVEL).upper())

    formatter = logging.Formatter(
        "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if not logger.handlers:
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setFormatter(formatter)
        logger.addHandler(stream_handler)
        if config.LOG_DIR:
            os.makedirs(config.LOG_DIR, exist_ok=True)
            date_str = datetime.now().strftime("%Y-%m-%d")
            file_handler = logging.FileHandler(os.path.join(config.LOG_DIR, f"{name}_{date_str}.log"))
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    return logger
