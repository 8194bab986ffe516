"""Contracts the controller consumes from its collaborators."""

from .store import ObjectCache, ResourceClient

__all__ = ["ObjectCache", "ResourceClient"]
