from .http_provider import DEFAULT_ENDPOINTS, HttpUpstreamProvider
from .provider_interface import UpstreamProvider

__all__ = ["DEFAULT_ENDPOINTS", "HttpUpstreamProvider", "UpstreamProvider"]
