"""EVS portal clients."""

from .modern_client import ModernEvsClient
from .legacy_client import LegacyEvsClient
from .fallback import FallbackEvsClient
from .pool import EvsClientPool

__all__ = ["ModernEvsClient", "LegacyEvsClient", "FallbackEvsClient", "EvsClientPool"]
