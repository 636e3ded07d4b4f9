"""ServerConf.

Encrypted configuration core for server provisioning.
"""
from .version import (
    __title__,
    __description__,
    __version__,
    __author__,
)

__all__ = ("__version__", )
