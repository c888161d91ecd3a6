"""
Service configuration.

Defaults come from environment variables. An optional YAML file named by
ATLAS_CONFIG overrides them key by key, e.g.:

    data_dir: /var/lib/atlas
    gateway: json
    public_api_key: change-me
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Dict, Any

import yaml

logger = logging.getLogger("atlas_config")

# -----------------------------------------------------------------------------
# Environment Defaults
# -----------------------------------------------------------------------------
DATA_DIR = Path(os.getenv("ATLAS_DATA_DIR", "data/atlas"))
AUDIT_LOG = Path(os.getenv("ATLAS_AUDIT_LOG", str(DATA_DIR / "audit_log.jsonl")))
GATEWAY_KIND = os.getenv("ATLAS_GATEWAY", "json")  # "json" or "memory"
PUBLIC_API_KEY = os.getenv("ATLAS_PUBLIC_API_KEY", "")
CONFIG_FILE = os.getenv("ATLAS_CONFIG", "")

GATEWAY_KINDS = frozenset({"json", "memory"})


@dataclass
class AtlasSettings:
    """Resolved settings for one application instance."""
    data_dir: Path = DATA_DIR
    audit_log: Path = AUDIT_LOG
    gateway: str = GATEWAY_KIND
    public_api_key: str = PUBLIC_API_KEY
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def state_file(self) -> Path:
        return self.data_dir / "atlas_state.json"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data_dir": str(self.data_dir),
            "audit_log": str(self.audit_log),
            "gateway": self.gateway,
            "public_api_key_configured": bool(self.public_api_key),
        }


def load_settings(config_file: Optional[str] = None) -> AtlasSettings:
    """
    Build settings from the environment, then apply the YAML overrides.

    A missing or unreadable config file is logged and ignored; an unknown
    gateway kind falls back to the JSON-file gateway.
    """
    settings = AtlasSettings()
    path = config_file if config_file is not None else CONFIG_FILE
    if path:
        overrides = _read_yaml(Path(path))
        if "data_dir" in overrides:
            settings.data_dir = Path(overrides.pop("data_dir"))
            if "audit_log" not in overrides and not os.getenv("ATLAS_AUDIT_LOG"):
                settings.audit_log = settings.data_dir / "audit_log.jsonl"
        if "audit_log" in overrides:
            settings.audit_log = Path(overrides.pop("audit_log"))
        if "gateway" in overrides:
            settings.gateway = str(overrides.pop("gateway"))
        if "public_api_key" in overrides:
            settings.public_api_key = str(overrides.pop("public_api_key") or "")
        settings.extra = overrides

    if settings.gateway not in GATEWAY_KINDS:
        logger.warning(f"Unknown gateway kind '{settings.gateway}', using 'json'")
        settings.gateway = "json"

    return settings


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning(f"Config file not found: {path}")
        return {}
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except (yaml.YAMLError, IOError) as e:
        logger.error(f"Failed to read config file {path}: {e}")
        return {}
    if not isinstance(data, dict):
        logger.error(f"Config file {path} must contain a mapping")
        return {}
    return data
