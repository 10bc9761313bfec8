"""Bootstrap a PIM tenant from a declarative JSON spec."""

from .bootstrapper import Bootstrapper, EventName
from .config import BootstrapOptions, BootstrapSettings

__version__ = "0.1.0"

__all__ = ["Bootstrapper", "BootstrapOptions", "BootstrapSettings", "EventName", "__version__"]
