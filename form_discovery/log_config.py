"""Logging setup shared by the command line and MCP entry points."""

import logging
import tempfile
from pathlib import Path


def get_log_file(name: str) -> Path:
    """Return the log file path for an entry point, creating its directory."""
    try:
        # Try to use user's home directory first
        log_dir = Path.home() / '.form-discovery'
        log_dir.mkdir(exist_ok=True)
        return log_dir / f'{name}.log'
    except (PermissionError, OSError):
        # Fallback to temporary directory
        return Path(tempfile.gettempdir()) / f'form_discovery_{name}.log'


def configure_logging(name: str, level: int = logging.INFO) -> Path:
    """Configure root logging to a file plus the console and return the file path."""
    log_file = get_log_file(name)
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_file, encoding='utf-8'),
            logging.StreamHandler()
        ]
    )

    # Reduce noise from lower-level libraries while keeping our logs verbose
    for noisy in ['playwright._impl', 'asyncio', 'urllib3']:
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return log_file
