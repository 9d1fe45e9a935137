"""
Settings shim.

Canonical config lives in `config/`:
  - `config/public_config.py` (non-sensitive defaults)
  - `config/secret_config.py` (secrets loaded from env / `.env.secrets`)
  - `config/settings.py` exposes `SETTINGS`

Package code imports `from workshop_queue.config import get_settings`.
"""

from __future__ import annotations

from config.settings import ConfigError as ConfigError
from config.settings import Settings as Settings
from config.settings import get_safe_config_report as get_safe_config_report
from config.settings import get_settings as get_settings
