from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from .config import PairingRuntimeConfig

DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _level(value: Any, default: int) -> int:
    if isinstance(value, int):
        return value
    text = str(value or "").strip().upper()
    if text.isdigit():
        return int(text)
    return logging.getLevelNamesMapping().get(text, default)


def _blank_to_none(value: Any) -> str | None:
    if value is None or not str(value).strip():
        return None
    return str(value)


def _file_handler(path: str) -> logging.Handler:
    p = Path(path).expanduser()
    p.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(p, encoding="utf-8")
    try:
        os.chmod(p, 0o600)
    except OSError:
        pass
    return handler


def configure_logging(
    cfg: PairingRuntimeConfig,
    *,
    override_level: str | None = None,
    override_file: str | None = None,
) -> None:
    """Install root handlers from ``cfg``.

    ``override_file`` wins over ``cfg.log_file`` when given; an empty string
    falls back to the configured file. Calling this again replaces the
    handlers installed last time.
    """
    log_file = _blank_to_none(override_file) or _blank_to_none(cfg.log_file)

    handlers: list[logging.Handler] = []
    if cfg.log_console:
        handlers.append(logging.StreamHandler())
    if log_file:
        handlers.append(_file_handler(log_file))

    formatter = logging.Formatter(
        fmt=str(cfg.log_format).strip() or DEFAULT_FORMAT,
        datefmt=_blank_to_none(cfg.log_datefmt),
    )

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    for h in handlers:
        h.setFormatter(formatter)
        root.addHandler(h)

    root.setLevel(_level(override_level or cfg.log_level, logging.INFO))
    logging.getLogger("RNS").setLevel(_level(cfg.log_rns_level, logging.WARNING))
    logging.captureWarnings(True)
