"""Creates repository listers from their configuration."""

from __future__ import annotations

import logging
from typing import Dict, List, Mapping, Optional, Type

from ..config import ListerConfig
from ..interfaces import Lister

logger = logging.getLogger(__name__)


class ListerFactory:
    """Maps the ``type`` of a :class:`ListerConfig` to a lister class."""

    def __init__(self, listers: Optional[Mapping[str, Type[Lister]]] = None) -> None:
        self._listers: Dict[str, Type[Lister]] = dict(listers or {})

    @property
    def types(self) -> List[str]:
        return sorted(self._listers)

    def register(self, type_name: str, lister_cls: Type[Lister]) -> None:
        if type_name in self._listers:
            raise ValueError(f"Lister type {type_name!r} is already registered")
        self._listers[type_name] = lister_cls

    def create(self, config: ListerConfig) -> Lister:
        lister_cls = self._listers.get(config.type)
        if lister_cls is None:
            raise ValueError(f"Unknown lister type {config.type!r}; known types: {', '.join(self.types)}")
        logger.info("Creating %s lister %r", config.type, config.name)
        return lister_cls(config)
