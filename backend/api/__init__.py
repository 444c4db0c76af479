# api/__init__.py
from api.container import ServiceContainer, get_container

__all__ = [
    "ServiceContainer",
    "get_container",
]
