import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from .config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def configure_logging(settings: Settings, base_dir: Optional[Path] = None) -> logging.Logger:
    """Configure console + rotating file logging once per process.

    Levels come from ``settings.log_level`` / ``settings.file_log_level``; the
    file handler writes ``<log_dir>/app.log`` and is skipped when
    ``settings.file_log`` is false.
    """
    root = logging.getLogger()
    if getattr(root, "_catalog_logging_configured", False):
        return logging.getLogger("catalog")

    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    file_level = getattr(logging, settings.file_log_level.upper(), level)
    root.setLevel(min(level, file_level) if settings.file_log else level)

    fmt = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)

    sh = logging.StreamHandler()
    sh.setLevel(level)
    sh.setFormatter(fmt)
    root.addHandler(sh)

    if settings.file_log:
        logs_dir = Path(settings.log_dir)
        if not logs_dir.is_absolute() and base_dir is not None:
            logs_dir = base_dir / logs_dir
        try:
            logs_dir.mkdir(parents=True, exist_ok=True)
            fh: logging.Handler = RotatingFileHandler(
                str(logs_dir / "app.log"), maxBytes=5 * 1024 * 1024, backupCount=3
            )
        except OSError as exc:
            root.warning("File logging disabled; cannot open %s: %s", logs_dir, exc)
        else:
            fh.setLevel(file_level)
            fh.setFormatter(fmt)
            root.addHandler(fh)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))

    setattr(root, "_catalog_logging_configured", True)
    return logging.getLogger("catalog")
