"""Process-wide slot holding the active data layer.

Hosts that prefer dependency injection can ignore this module and pass a
data layer instance around explicitly.
"""

import logging
from collections.abc import Callable

from conversation_data_layer.base import BaseDataLayer

logger = logging.getLogger(__name__)

_data_layer: BaseDataLayer | None = None


def set_data_layer(layer: BaseDataLayer, replace: bool = False) -> BaseDataLayer:
    global _data_layer
    if _data_layer is not None and not replace:
        raise RuntimeError(
            "A data layer is already configured. Pass replace=True to swap it."
        )
    _data_layer = layer
    logger.debug("Data layer set", extra={"data_layer": type(layer).__name__})
    return layer


def get_data_layer() -> BaseDataLayer:
    if _data_layer is None:
        raise RuntimeError("No data layer configured. Call set_data_layer first.")
    return _data_layer


def clear_data_layer() -> None:
    global _data_layer
    _data_layer = None


def data_layer[F: Callable[[], BaseDataLayer]](factory: F) -> F:
    """Register the data layer returned by factory.

    Usage:
        @data_layer
        def make_data_layer():
            return SQLAlchemyDataLayer("sqlite+aiosqlite:///chat.db")
    """
    set_data_layer(factory())
    return factory
