import logging
import sys

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Per-day snapshot and SQL chatter is only useful when debugging a single run.
_QUIET_LOGGERS = ("sqlalchemy", "aiosqlite", "asyncpg")


def setup_logging(level: int | str = logging.INFO) -> None:
    """Send ledger logs to stdout once per process; later calls only adjust the level."""
    root_logger = logging.getLogger()
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    root_logger.setLevel(level)
    if any(getattr(h, "_ledger_handler", False) for h in root_logger.handlers):
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    handler._ledger_handler = True  # type: ignore[attr-defined]
    root_logger.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
