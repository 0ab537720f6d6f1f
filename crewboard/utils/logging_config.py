import logging
import sys
from crewboard.config.settings import get_settings

LOG_FORMAT = '%(asctime)s - %(name)s - [%(threadName)s] %(levelname)s - %(message)s'


def _level(name, fallback):
    if not name:
        return fallback
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else fallback


def setup_logging():
    """
    Configure application-wide logging. Safe to call more than once: the
    console handler is only attached the first time.

    Every applied or rejected mutation is logged by the coordinator; its level
    can be set apart from the rest so a busy board does not drown other output.
    """
    settings = get_settings()
    log_level = _level(settings.log_level, logging.DEBUG if settings.debug else logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    if not any(getattr(h, "_crewboard", False) for h in root_logger.handlers):
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(log_level)
        console_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
        console_handler._crewboard = True
        root_logger.addHandler(console_handler)

    logging.getLogger("crewboard.engine.coordinator").setLevel(_level(settings.mutation_log_level, log_level))

    # Quiet down noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    return root_logger
