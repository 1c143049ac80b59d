# config/loader.py
"""
Configuration reload utilities for the EFB cache subsystem.

The main public function is ``reload_settings()`` which:
1. Reloads environment variables from ``.env`` (via ``dotenv.load_dotenv``).
2. Re‑creates the ``EFBCacheSettings`` instance so that any changed values are applied.
3. Updates the symbols exported by ``config.__init__`` (the module‑level
   constants) to reflect the new values.

Optionally you can hook ``reload_settings()`` to a ``SIGHUP`` signal so that an
operator can trigger a live configuration reload without restarting the
process. Running cache instances keep the policies they were built with; a
reload only affects caches created afterwards.
"""

from __future__ import annotations

import importlib
import os
import signal
from typing import Any

import structlog
from dotenv import load_dotenv

logger = structlog.get_logger(__name__)


# Import lazily inside the function so that reloading works correctly when the
# function is called multiple times.
def _import_settings_module():
    import config.settings as _settings_mod

    return _settings_mod


def reload_settings() -> bool:
    """
    Reload configuration from the environment and refresh the ``config`` package.

    Returns ``True`` on success, ``False`` on failure.
    """
    try:
        load_dotenv(override=True)

        settings_mod = _import_settings_module()
        importlib.reload(settings_mod)

        import config as config_pkg

        config_pkg.settings = settings_mod.settings

        for field_name in type(settings_mod.settings).model_fields:
            setattr(config_pkg, field_name, getattr(settings_mod.settings, field_name))

        logger.info("Configuration reloaded")
        return True
    except Exception:  # pragma: no cover
        logger.error("Configuration reload failed", exc_info=True)
        return False


def _handle_sighup(signum: int, frame: Any) -> None:  # pragma: no cover
    """Signal handler that invokes ``reload_settings``."""
    if reload_settings():
        logger.info("Configuration reloaded via SIGHUP")
    else:
        logger.warning("Failed to reload configuration via SIGHUP")


# Skip registration when CONFIG_DISABLE_SIGHUP is set or the platform lacks SIGHUP.
if not os.getenv("CONFIG_DISABLE_SIGHUP") and hasattr(signal, "SIGHUP"):
    signal.signal(signal.SIGHUP, _handle_sighup)
