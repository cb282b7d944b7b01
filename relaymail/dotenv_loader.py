# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""One-shot ``.env`` loading for ``!env`` configuration values.

Relay credentials are usually supplied through the environment.  Before a
YAML config with ``!env`` tags is resolved, ``load_dotenv_once`` pulls a
``.env`` file into ``os.environ`` (without overriding variables that are
already set).  Later calls are no-ops.
"""

import logging
import threading
from pathlib import Path

from dotenv import find_dotenv, load_dotenv


logger = logging.getLogger(__name__)

_lock = threading.Lock()
_loaded = False


def load_dotenv_once(env_path: Path | None = None) -> None:
    """Load a ``.env`` file the first time this is called.

    Args:
        env_path: Explicit file to load. When None or missing, the nearest
            ``.env`` found from the current working directory upwards is used.
    """
    global _loaded
    with _lock:
        if _loaded:
            return

        if env_path is not None and env_path.exists():
            load_dotenv(env_path)
            logger.debug("Loaded .env from %s", env_path)
        else:
            found = find_dotenv(usecwd=True)
            if found:
                load_dotenv(found)
                logger.debug("Loaded .env from %s", found)
            else:
                logger.debug("No .env file found; using process environment")
        _loaded = True


def reset_dotenv_state() -> None:
    """Allow the next ``load_dotenv_once`` call to load again. For tests."""
    global _loaded
    with _lock:
        _loaded = False
