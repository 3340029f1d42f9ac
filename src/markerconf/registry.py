"""
Module lifecycle registry.

Hosts announce plugin modules here when they are loaded and withdraw them when
they are unloaded. The registry itself does nothing but bookkeeping and
notification; a ``MarkerRouter`` attached to it turns those notifications into
scans and unscans.
"""

import logging
import threading
from dataclasses import dataclass
from types import ModuleType
from typing import Callable, Dict, List, Optional

from markerconf.errors import ArgumentError, log_fatal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModuleInfo:
    """Registration record of a loaded module."""
    module: ModuleType
    name: str
    version: str

    @property
    def tag(self) -> str:
        return f"[{self.name} v{self.version}]"


def module_tag(module: ModuleType, registry: Optional['ModuleRegistry'] = None) -> str:
    """Log tag ``"[name vX]"`` for a module.

    Uses the registered name/version when the module is known to ``registry``,
    otherwise ``__name__`` and ``__version__``.
    """
    if registry is not None:
        info = registry.get_info(module)
        if info is not None:
            return info.tag
    name = getattr(module, '__name__', repr(module))
    version = getattr(module, '__version__', '0.0.0')
    return f"[{name} v{version}]"


class ModuleRegistry:
    """Tracks loaded modules and notifies subscribers of load/unload."""

    def __init__(self):
        self._modules: Dict[ModuleType, ModuleInfo] = {}
        self._lock = threading.Lock()
        self._on_registered_callbacks: List[Callable[[ModuleInfo], None]] = []
        self._on_unregistered_callbacks: List[Callable[[ModuleInfo], None]] = []

    # ---------- callbacks ----------

    def add_registered_callback(self, callback: Callable[[ModuleInfo], None]) -> None:
        if callback not in self._on_registered_callbacks:
            self._on_registered_callbacks.append(callback)

    def remove_registered_callback(self, callback: Callable[[ModuleInfo], None]) -> None:
        if callback in self._on_registered_callbacks:
            self._on_registered_callbacks.remove(callback)

    def add_unregistered_callback(self, callback: Callable[[ModuleInfo], None]) -> None:
        if callback not in self._on_unregistered_callbacks:
            self._on_unregistered_callbacks.append(callback)

    def remove_unregistered_callback(self, callback: Callable[[ModuleInfo], None]) -> None:
        if callback in self._on_unregistered_callbacks:
            self._on_unregistered_callbacks.remove(callback)

    def _fire(self, callbacks: List[Callable[[ModuleInfo], None]], info: ModuleInfo, label: str) -> None:
        for callback in list(callbacks):
            try:
                callback(info)
            except Exception as e:
                logger.warning(f"Error in {label} callback for {info.tag}: {e}")

    # ---------- registration ----------

    def register(self, module: ModuleType, name: Optional[str] = None,
                 version: Optional[str] = None) -> Optional[ModuleInfo]:
        """Record a loaded module and notify subscribers.

        Returns:
            The new ModuleInfo, or None if the module was None or already
            registered.
        """
        if module is None:
            log_fatal(logger, ArgumentError("Cannot register a None module"))
            return None

        info = ModuleInfo(
            module=module,
            name=name or module.__name__,
            version=str(version or getattr(module, '__version__', '0.0.0')),
        )
        with self._lock:
            if module in self._modules:
                logger.warning(f"{self._modules[module].tag} is already registered, ignoring")
                return None
            self._modules[module] = info

        logger.info(f"{info.tag} registered")
        self._fire(self._on_registered_callbacks, info, "registered")
        return info

    def unregister(self, module: ModuleType) -> bool:
        """Notify subscribers, then forget the module. Unknown modules are a no-op."""
        with self._lock:
            info = self._modules.get(module)
        if info is None:
            logger.debug(f"Unregister of unknown module {module!r} ignored")
            return False

        self._fire(self._on_unregistered_callbacks, info, "unregistered")
        with self._lock:
            self._modules.pop(module, None)
        logger.info(f"{info.tag} unregistered")
        return True

    # ---------- queries ----------

    def is_registered(self, module: ModuleType) -> bool:
        return module in self._modules

    def get_info(self, module: ModuleType) -> Optional[ModuleInfo]:
        return self._modules.get(module)

    def get_tag(self, module: ModuleType) -> str:
        return module_tag(module, self)

    def modules(self) -> List[ModuleInfo]:
        with self._lock:
            return list(self._modules.values())
