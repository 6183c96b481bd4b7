"""Logging configuration shared by every awslab command.

Log lines go to two places: a timestamped file under the log directory
(plain text) and the console (coloured by level through rich).
"""

import logging
import os
from datetime import datetime
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.theme import Theme

SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"

THEME = Theme(
    {
        "logging.level.error": "bold red",
        "logging.level.warning": "yellow",
        "logging.level.info": "cyan",
        "logging.level.success": "bold green",
        "logging.level.debug": "magenta",
    }
)

console = Console(theme=THEME)


def setup_logging(
    log_dir: Optional[str] = "./logs",
    script_name: str = "awslab",
    level: int = logging.INFO,
) -> Optional[str]:
    """Configure the root logger for a run.

    Args:
        log_dir: Directory for the log file; None disables file logging
        script_name: Prefix of the log file name
        level: Minimum level to emit

    Returns:
        Path of the log file, or None when file logging is disabled
    """
    handlers = [
        RichHandler(console=console, show_path=False, markup=False),
    ]
    log_file = None
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_file = os.path.join(log_dir, f"{script_name}_{stamp}.log")
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handlers.append(file_handler)

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%Y-%m-%d %H:%M:%S]",
        handlers=handlers,
        force=True,
    )
    # botocore is chatty at INFO
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("boto3").setLevel(logging.WARNING)

    if log_file:
        logging.getLogger(__name__).info(f"Logging initialized: {log_file}")
    return log_file


def log_success(logger: logging.Logger, message: str) -> None:
    logger.log(SUCCESS, message)


def print_header(title: str) -> None:
    """Print a section banner and record it in the log."""
    console.print()
    console.rule(f"[bold white]{title}", style="blue")
    logging.getLogger(__name__).debug(f"=== {title} ===")
