import logging
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

APP_LOGGER_NAME = "static_iiif"
JOB_LOGGER_PREFIX = f"{APP_LOGGER_NAME}.job."

_DEFAULT_LOGGING = {"level": "INFO", "retention_days": 30, "file_name": "static_iiif.log"}


def _logging_setting(key: str):
    default = _DEFAULT_LOGGING[key]
    try:
        from .config_manager import get_config_manager

        return get_config_manager().get_setting(f"logging.{key}", default) or default
    except (ImportError, OSError, ValueError, RuntimeError):
        return default


def _get_logs_dir() -> Path:
    try:
        from .config_manager import get_config_manager

        return get_config_manager().get_logs_dir()
    except (ImportError, OSError, ValueError, RuntimeError):
        return Path("logs")


LOG_BASE_DIR = _get_logs_dir()
try:
    LOG_BASE_DIR.mkdir(parents=True, exist_ok=True)
except OSError:
    LOG_BASE_DIR = Path("logs")
    LOG_BASE_DIR.mkdir(parents=True, exist_ok=True)


class JobIdFilter(logging.Filter):
    """Stamp `record.job_id` from the job logger name; `-` for records outside a job."""

    def filter(self, record: logging.LogRecord) -> bool:
        name = record.name
        record.job_id = name[len(JOB_LOGGER_PREFIX):] if name.startswith(JOB_LOGGER_PREFIX) else "-"
        return True


CONSOLE_FORMAT = logging.Formatter("%(levelname)s | %(job_id)s | %(message)s")

FILE_FORMAT = logging.Formatter(
    "%(asctime)s [%(levelname)s] job=%(job_id)s [%(name)s.%(funcName)s] %(threadName)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

app_logger = logging.getLogger(APP_LOGGER_NAME)
app_logger.propagate = True


def setup_logging():
    """Attach console and rotating file handlers to the 'static_iiif' logger.

    Level, retention (days of rotated files kept) and file name come from the
    `logging` section of config.json. Every record carries the id of the job
    that logged it.
    """
    log_level = str(_logging_setting("level")).upper()
    effective_level = getattr(logging, log_level, logging.INFO)

    LOG_BASE_DIR.mkdir(parents=True, exist_ok=True)

    if app_logger.hasHandlers():
        if app_logger.level != effective_level:
            app_logger.setLevel(effective_level)
            for h in app_logger.handlers:
                h.setLevel(effective_level)
        return

    app_logger.setLevel(effective_level)
    job_filter = JobIdFilter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(CONSOLE_FORMAT)
    console_handler.setLevel(effective_level)
    console_handler.addFilter(job_filter)
    app_logger.addHandler(console_handler)

    log_file = LOG_BASE_DIR / str(_logging_setting("file_name"))
    retention = int(_logging_setting("retention_days"))
    try:
        file_handler = TimedRotatingFileHandler(
            log_file, when="midnight", interval=1, backupCount=retention, encoding="utf-8"
        )
        file_handler.setFormatter(FILE_FORMAT)
        file_handler.setLevel(effective_level)
        file_handler.addFilter(job_filter)
        app_logger.addHandler(file_handler)
    except OSError as e:
        sys.stderr.write(f"FAILED TO SETUP FILE LOGGING: {e}\n")
        app_logger.error("Failed to setup file logging: %s", e, exc_info=True)

    app_logger.info("Logging initialized (Level: %s, keeping %d day(s)) -> %s", log_level, retention, log_file)


def get_logger(name: str):
    """Get a configured logger within the 'static_iiif' namespace."""
    setup_logging()
    if name != APP_LOGGER_NAME and not name.startswith(f"{APP_LOGGER_NAME}."):
        name = f"{APP_LOGGER_NAME}.{name}"
    return logging.getLogger(name)


def get_job_logger(job_id: str):
    """Logger whose records are stamped with `job_id` in both handlers."""
    safe_id = "".join(c for c in job_id if c.isalnum() or c in ("-", "_"))[:50]
    return get_logger(f"job.{safe_id or 'anonymous'}")
