"""Environment helpers for scripts and the database bootstrap."""

import logging
import os
from pathlib import Path
from typing import Optional, Union

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# backend/.env, independent of the working directory
BACKEND_ENV_PATH = Path(__file__).resolve().parents[2] / ".env"


def load_env_file(path: Optional[Union[str, Path]] = None) -> bool:
    """Load backend/.env (or `path`) into os.environ.

    Exported variables always win over the file (override=False), so a
    scheduler's injected configuration is never replaced by a stale .env.

    Returns:
        True when the file existed and was loaded.
    """
    env_path = Path(path) if path is not None else BACKEND_ENV_PATH
    if not env_path.is_file():
        logger.debug("[ENV] No env file at %s", env_path)
        return False

    load_dotenv(env_path, override=False)
    logger.info("[ENV] Loaded %s (exported variables were NOT overwritten)", env_path)
    return True


def require_env(name: str, path: Optional[Union[str, Path]] = None) -> str:
    """Return a mandatory variable, reading the env file once if it is not exported.

    Raises:
        RuntimeError: Variable missing from both the environment and the file
    """
    value = os.getenv(name)
    if not value and load_env_file(path):
        value = os.getenv(name)
    if not value:
        raise RuntimeError(
            f"Missing required environment variable: {name}. "
            "Export it or add it to backend/.env."
        )
    return value
