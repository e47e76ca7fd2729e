"""YouTube metadata lookup and download relay."""

from .errors import RelayError
from .executor import FetchExecutor
from .providers import MediaProvider, build_provider
from .service import RelayService
from .tools import ToolLocator, Transcoder

__version__ = "1.0.0"

__all__ = [
    "RelayError",
    "FetchExecutor",
    "MediaProvider",
    "build_provider",
    "RelayService",
    "ToolLocator",
    "Transcoder",
]
