import logging
from pathlib import Path
from typing import Optional, Union

LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def parse_level(level: Union[int, str]) -> int:
    """Accept a logging level as an int or a (case-insensitive) name."""
    if isinstance(level, int):
        return level
    name = str(level).upper()
    if name not in LEVELS:
        raise ValueError(f"Unknown log level '{level}'. Available: {', '.join(LEVELS)}")
    return getattr(logging, name)


def init_logging(logfile: Optional[Path] = None, level: Union[int, str] = logging.INFO) -> None:
    """
    Initialize logging with a stream handler + optional file handler.
    All existing handlers are removed to avoid duplicates.
    """

    # Typer may have installed handlers already
    for h in logging.root.handlers[:]:
        logging.root.removeHandler(h)

    handlers = [logging.StreamHandler()]

    if logfile is not None:
        logfile = Path(logfile)
        logfile.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(logfile, mode="w"))

    logging.basicConfig(
        level=parse_level(level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )
