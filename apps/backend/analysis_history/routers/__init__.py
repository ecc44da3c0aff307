"""Router package exports."""

from . import analyses, health

__all__ = [
    "analyses",
    "health",
]
