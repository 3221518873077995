"""Framework adapters exposing the engine over HTTP."""

from loglens.adapters.frameworks.asgi import create_asgi_app

__all__ = ["create_asgi_app"]
