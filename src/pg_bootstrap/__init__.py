from importlib.metadata import PackageNotFoundError, version

from .config import BootstrapConfig
from .core import Bootstrap, BootstrapResult

try:
    __version__ = version("pg-bootstrap")
except PackageNotFoundError:
    __version__ = "dev"

__all__ = ["Bootstrap", "BootstrapConfig", "BootstrapResult", "__version__"]
