"""
Calendar subsystem package.

• ``BaseCalendarAdapter`` – абстрактный интерфейс адаптера провайдера.
• ``get_calendar_adapter()`` – фабрика, возвращающая новый экземпляр
  адаптера по имени провайдера ('noop', 'google', 'outlook').

Ленивая загрузка (``importlib.import_module``) исключает тяжёлые
зависимости (Google SDK и т. п.) в dev/CI, пока они реально не нужны.
"""
from __future__ import annotations

import importlib
from typing import Any, Dict, Tuple, Type

from app.config import settings
from .base import BaseCalendarAdapter, EventPayload, RemoteEvent, TokenGrant  # noqa: F401 (экспорт в __all__)

# --------------------------------------------------------------------------- #
#                       helpers: lazy-import specific adapter                 #
# --------------------------------------------------------------------------- #
def _lazy_import(module_suffix: str, class_name: str) -> Type[BaseCalendarAdapter]:
    """
    _lazy_import(".noop", "NoOpCalendarAdapter")  →  <class NoOpCalendarAdapter>
    Относительный путь (``.noop``) ищется внутри текущего пакета.
    """
    module = importlib.import_module(module_suffix, package=__name__)
    return getattr(module, class_name)


# --------------------------------------------------------------------------- #
#                       registry: name → (module, class)                      #
# --------------------------------------------------------------------------- #
_ADAPTER_CLASSES: Dict[str, Tuple[str, str]] = {
    "noop": (".noop", "NoOpCalendarAdapter"),
    "google": (".google", "GoogleCalendarAdapter"),
    "outlook": (".outlook", "OutlookCalendarAdapter"),
}


# --------------------------------------------------------------------------- #
#                                 public API                                  #
# --------------------------------------------------------------------------- #
def is_supported_provider(name: str) -> bool:
    key = name.lower()
    return key in _ADAPTER_CLASSES and key in settings.CALENDAR_PROVIDERS_ENABLED


def get_calendar_adapter(name: str, **kwargs: Any) -> BaseCalendarAdapter:
    """
    Вернуть новый экземпляр адаптера календаря.

    • ``name`` – имя провайдера (case-insensitive), должно быть включено
      в ``settings.CALENDAR_PROVIDERS_ENABLED``.
    • ``kwargs`` уходят в конструктор (``timeout``, ``transport`` ...).

    Синглтонов нет: адаптер живёт одну операцию.
    """
    key = name.lower()
    if not is_supported_provider(key):
        raise ValueError(f"Unknown calendar provider: {key}")
    module_suffix, class_name = _ADAPTER_CLASSES[key]
    adapter_cls = _lazy_import(module_suffix, class_name)
    return adapter_cls(**kwargs)


__all__: list[str] = [
    "BaseCalendarAdapter",
    "EventPayload",
    "RemoteEvent",
    "TokenGrant",
    "get_calendar_adapter",
    "is_supported_provider",
]
