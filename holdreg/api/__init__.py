# HTTP API for the holding registry
from .routes import router

__all__ = ["router"]
