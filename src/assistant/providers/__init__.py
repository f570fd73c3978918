from .base import ProviderTransport, is_transport
from .factory import build_provider_transport

__all__ = ["ProviderTransport", "is_transport", "build_provider_transport"]
