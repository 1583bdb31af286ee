from .normalize import normalize, security_map
from .parse import OfxTree, parse_ofx

__all__ = ["normalize", "security_map", "parse_ofx", "OfxTree"]
