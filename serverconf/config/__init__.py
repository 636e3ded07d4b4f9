"""Config: public/private settings documents and the merged Settings model."""

from .models import PrivateConfig, PublicConfig, Settings
from .loader import ConfigLoader, build_settings

__all__ = [
    "ConfigLoader",
    "PrivateConfig",
    "PublicConfig",
    "Settings",
    "build_settings",
]
