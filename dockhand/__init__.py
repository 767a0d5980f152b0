"""
dockhand - push, pull, inspect and delete images on a Docker Registry v2.
"""

__version__ = "0.1.0"

from dockhand.config import RegistryConfig

__all__ = ["RegistryConfig", "__version__"]
