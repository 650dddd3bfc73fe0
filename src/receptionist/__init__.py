"""
Hospital voice receptionist.

Exports resolve lazily so leaf modules (wire protocol, segmenter, tools) import
without pulling in the service clients.
"""

from __future__ import annotations

from importlib import import_module
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from src.receptionist.config import Config, get_config
    from src.receptionist.coordinator import TurnCoordinator, create_coordinator

_EXPORTS = {
    "Config": "src.receptionist.config",
    "get_config": "src.receptionist.config",
    "TurnCoordinator": "src.receptionist.coordinator",
    "create_coordinator": "src.receptionist.coordinator",
}

__all__ = list(_EXPORTS)


def __getattr__(name: str) -> Any:
    module = _EXPORTS.get(name)
    if module is None:
        raise AttributeError(name)
    return getattr(import_module(module), name)
