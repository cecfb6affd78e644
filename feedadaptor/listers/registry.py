"""The listers shipped with the adaptor."""

from __future__ import annotations

from .base import ListerFactory
from .filesystem import FilesystemLister
from .mock import MockLister


def build_default_factory() -> ListerFactory:
    factory = ListerFactory()
    factory.register("mock", MockLister)
    factory.register("filesystem", FilesystemLister)
    return factory
