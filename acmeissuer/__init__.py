from .client import AcmeClient, AccountKey
from .version import __version__
from .plugin_base import PluginRegistry

__all__ = ["AcmeClient", "AccountKey", "PluginRegistry"]
__version__ = __version__
