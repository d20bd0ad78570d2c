# HTTP API
from .routes import router, get_resolver

__all__ = ["router", "get_resolver"]
