import logging
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path


def _get_configured_log_level() -> str:
    try:
        from .config_manager import get_config_manager

        cm = get_config_manager()
        level = cm.get_setting("logging.level", "INFO")
        return str(level or "INFO").upper()
    except (ImportError, OSError, ValueError, RuntimeError):
        return "INFO"


def _get_logs_dir() -> Path:
    try:
        from .config_manager import get_config_manager

        return get_config_manager().get_logs_dir()
    except (ImportError, OSError, ValueError, RuntimeError):
        return Path("logs")


# Resolved lazily on first setup; tests may point it elsewhere beforehand.
LOG_BASE_DIR: Path | None = None

# Shared formatters
CONSOLE_FORMAT = logging.Formatter("%(levelname)s | %(name)s | %(message)s")

FILE_FORMAT = logging.Formatter(
    "%(asctime)s [%(levelname)s] [%(name)s.%(funcName)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

# The primary application logger
app_logger = logging.getLogger("iiif_stitch")
app_logger.propagate = True


def _ensure_log_dir() -> Path:
    global LOG_BASE_DIR
    if LOG_BASE_DIR is None:
        LOG_BASE_DIR = _get_logs_dir()
    try:
        LOG_BASE_DIR.mkdir(parents=True, exist_ok=True)
    except OSError:
        # Fall back to CWD logs if configured path isn't writable
        LOG_BASE_DIR = Path("logs")
        LOG_BASE_DIR.mkdir(parents=True, exist_ok=True)
    return LOG_BASE_DIR


def setup_logging():
    """Sets up the 'iiif_stitch' logger with daily rotation."""
    log_level = _get_configured_log_level()
    effective_level = getattr(logging, log_level, logging.INFO)

    if app_logger.handlers:
        if app_logger.level != effective_level:
            app_logger.setLevel(effective_level)
            for h in app_logger.handlers:
                h.setLevel(effective_level)
        return

    app_logger.setLevel(effective_level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(CONSOLE_FORMAT)
    console_handler.setLevel(effective_level)
    app_logger.addHandler(console_handler)

    log_file = _ensure_log_dir() / "app.log"
    try:
        file_handler = TimedRotatingFileHandler(log_file, when="midnight", interval=1, backupCount=30, encoding="utf-8")
        file_handler.setFormatter(FILE_FORMAT)
        file_handler.setLevel(effective_level)
        app_logger.addHandler(file_handler)
    except OSError as e:
        sys.stderr.write(f"FAILED TO SETUP FILE LOGGING: {e}\n")
        app_logger.error("Failed to setup file logging: %s", e, exc_info=True)

    app_logger.debug("Logging initialized (Level: %s) -> %s", log_level, log_file)


def get_logger(name: str):
    """Get a logger within the 'iiif_stitch' namespace.

    Handlers are attached by `setup_logging()`, which entry points call once.
    """
    if name != "iiif_stitch" and not name.startswith("iiif_stitch."):
        name = f"iiif_stitch.{name}"
    return logging.getLogger(name)


def get_download_logger(doc_id: str):
    """Get a logger instance for a specific document download."""
    safe_id = "".join(c for c in doc_id if c.isalnum() or c in ("-", "_"))[:50]
    return get_logger(f"download.{safe_id}")
