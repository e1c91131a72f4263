# src/esp/env.py
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import dotenv_values

from esp.runtime.structured_logging import log_event

_log = logging.getLogger("esp.env")

_LOADED = False


def load_dotenv_if_present(dotenv_path: Optional[str] = None) -> bool:
    """Apply an operator .env file to os.environ.

    The file is `dotenv_path`, else $ESP_DOTENV_PATH, else ./.env. Variables
    already present in the process environment win over the file. The implicit
    lookup happens once per process; an explicit path is always read.

    Returns True when a file was read.
    """
    global _LOADED
    if dotenv_path is None:
        if _LOADED:
            return False
        _LOADED = True

    path = Path(dotenv_path or os.getenv("ESP_DOTENV_PATH", ".env")).expanduser()
    if not path.is_file():
        return False

    applied = []
    for key, value in dotenv_values(path).items():
        if value is None or key in os.environ:
            continue
        os.environ[key] = value
        applied.append(key)

    log_event(_log, "dotenv_loaded", level=logging.DEBUG, path=str(path), keys=sorted(applied))
    return True
