# api/__init__.py
from api.server import (
    create_app,
    get_container,
    router,
)

__all__ = [
    "create_app",
    "get_container",
    "router",
]
