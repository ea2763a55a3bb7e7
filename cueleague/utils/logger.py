import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from cueleague.config import Config

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

def _daily_log_file(log_dir: Path) -> Path:
    return log_dir / f'cueleague_{datetime.now().strftime("%Y%m%d")}.log'

def setup_logger(name: str, log_dir: Optional[str] = None) -> logging.Logger:
    """
    Logger for an operations module: console output at the configured level,
    plus a daily DEBUG file under LOG_DIR unless LOG_TO_FILE is off.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    log_level = logging.DEBUG if Config.DEBUG else logging.INFO
    logger.setLevel(logging.DEBUG)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if Config.LOG_TO_FILE:
        directory = Path(log_dir or Config.LOG_DIR)
        directory.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(_daily_log_file(directory), encoding='utf-8')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger
