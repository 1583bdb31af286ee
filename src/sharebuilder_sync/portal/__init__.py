from .client import PortalCredentials, SessionState, ShareBuilderClient
from .tokens import TokenStore
from .variants import KNOWN_VARIANTS, SiteVariant, get_variant

__all__ = [
    "ShareBuilderClient",
    "PortalCredentials",
    "SessionState",
    "TokenStore",
    "SiteVariant",
    "KNOWN_VARIANTS",
    "get_variant",
]
