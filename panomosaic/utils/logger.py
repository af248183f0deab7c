"""Logging utilities"""

import logging
import os
import platform
import sys
from pathlib import Path
from typing import Optional

LOG_FILE_NAME = "panomosaic.log"
LOG_DIR_ENV = "PANOMOSAIC_LOG_DIR"

# Global variable to store log file path
_log_file_path = None


def _platform_logs_directory() -> Path:
    """Per-user log directory for the current platform"""
    system = platform.system()
    if system == "Windows":
        return Path.home() / "AppData" / "Local" / "panomosaic" / "logs"
    if system == "Darwin":
        return Path.home() / "Library" / "Logs" / "panomosaic"
    return Path.home() / ".local" / "share" / "panomosaic" / "logs"


def _is_writable(log_dir: Path) -> bool:
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        test_file = log_dir / ".test_write"
        test_file.write_text("test")
        test_file.unlink()
        return True
    except OSError:
        return False


def get_logs_directory() -> Path:
    """Get logs directory with fallbacks"""
    candidates = []
    if os.environ.get(LOG_DIR_ENV):
        candidates.append(Path(os.environ[LOG_DIR_ENV]))
    candidates.append(_platform_logs_directory())
    candidates.append(Path("logs"))

    for log_dir in candidates:
        if _is_writable(log_dir):
            return log_dir

    # Last resort: current directory
    return Path(".")


def setup_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """Setup logger with consistent formatting"""
    global _log_file_path

    logger = logging.getLogger(name)
    logger.setLevel(level)

    if not logger.handlers:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

        try:
            log_file = get_logs_directory() / LOG_FILE_NAME
            file_handler = logging.FileHandler(str(log_file), mode='a', encoding='utf-8')
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
            _log_file_path = log_file
            logger.debug(f"Logging to: {log_file.absolute()}")
        except OSError as e:
            # Console logging still works without a file
            logger.warning(f"Could not set up file logging: {e}")
    else:
        for handler in logger.handlers:
            if isinstance(handler, logging.StreamHandler) and not isinstance(handler, logging.FileHandler):
                handler.setLevel(level)

    return logger


def get_log_file_path() -> Optional[Path]:
    """Get the path to the log file"""
    return _log_file_path
