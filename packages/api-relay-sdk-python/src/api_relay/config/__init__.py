"""配置（YAML overlay + pydantic 校验）。"""

from __future__ import annotations

from api_relay.config.defaults import load_default_config_dict
from api_relay.config.loader import ApiRelayConfig, load_config, load_config_dicts

__all__ = ["ApiRelayConfig", "load_config", "load_config_dicts", "load_default_config_dict"]
