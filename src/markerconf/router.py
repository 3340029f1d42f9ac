"""
Marker router: scans modules for markers and dispatches them to handlers.

Per module the router moves between two states only:

    Unscanned --scan_module--> Scanned --unscan_module--> Unscanned

During a scan, every marker found on the module, its classes and their members
is handed to each handler registered for the marker's kind (or any base class
of it). The router remembers which accessors each handler processed so that
``unscan_module`` can give every handler exactly its own accessors back for
reversal.
"""

import logging
import threading
from types import ModuleType
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Type, Union

from markerconf.accessors import AccessorBase, AccessorCache, iter_element_accessors
from markerconf.errors import ArgumentError, log_fatal
from markerconf.markers import Marker
from markerconf.registry import ModuleInfo, ModuleRegistry, module_tag

logger = logging.getLogger(__name__)


# =============================================================================
# HANDLERS
# =============================================================================

class MarkerHandler:
    """
    Receives markers of one kind during scanning.

    Subclasses implement ``handle``. Handlers whose effects must be undone on
    unload also override ``unregister``; the router only calls it for handlers
    that processed at least one accessor of the module.
    """

    def handle(self, module: ModuleType, accessor: AccessorBase, marker: Marker) -> None:
        raise NotImplementedError

    def unregister(self, module: ModuleType, accessors: List[AccessorBase]) -> None:
        """Revert the effects of ``handle`` for ``accessors``. Default: nothing."""


class SimpleMarkerHandler(MarkerHandler):
    """Wraps a plain ``fn(module, accessor, marker)`` callable. No reversal."""

    def __init__(self, action: Callable[[ModuleType, AccessorBase, Marker], None]):
        self.action = action

    def handle(self, module: ModuleType, accessor: AccessorBase, marker: Marker) -> None:
        self.action(module, accessor, marker)

    def __repr__(self) -> str:
        return f"SimpleMarkerHandler({getattr(self.action, '__qualname__', self.action)!r})"


HandlerLike = Union[MarkerHandler, Callable[[ModuleType, AccessorBase, Marker], None]]


# =============================================================================
# SCANNABLE TYPES
# =============================================================================

def is_scannable_type(cls: type) -> bool:
    """Classes with unbound type parameters and protocols are never scanned."""
    if getattr(cls, '_is_protocol', False):
        return False
    if getattr(cls, '__parameters__', ()):
        return False
    return True


def iter_module_types(module: ModuleType) -> Iterator[type]:
    """Classes defined in ``module`` (private and nested ones included)."""
    seen: Set[type] = set()

    def walk(namespace: Dict[str, Any], prefix: Optional[str]) -> Iterator[type]:
        for value in list(namespace.values()):
            if not isinstance(value, type) or value in seen:
                continue
            if value.__module__ != module.__name__:
                continue
            if prefix is not None and not value.__qualname__.startswith(prefix + '.'):
                continue
            seen.add(value)
            if is_scannable_type(value):
                yield value
            yield from walk(vars(value), value.__qualname__)

    yield from walk(vars(module), None)


# =============================================================================
# ROUTER
# =============================================================================

class MarkerRouter:
    """
    Marker-kind -> handler registry plus per-module scan records.

    Collections are guarded by one short-lived lock; handlers always run
    outside it on a snapshot of the handler lists.
    """

    def __init__(self, cache: Optional[AccessorCache] = None):
        self.cache = cache
        self._handlers: Dict[Type[Marker], List[MarkerHandler]] = {}
        self._scanned: Set[ModuleType] = set()
        self._records: Dict[ModuleType, Dict[MarkerHandler, List[AccessorBase]]] = {}
        self._lock = threading.Lock()
        self._registry: Optional[ModuleRegistry] = None
        self._on_scanned_callbacks: List[Callable[[ModuleType], None]] = []
        self._on_unscanned_callbacks: List[Callable[[ModuleType], None]] = []

    # ---------- lifecycle callbacks ----------

    def add_scanned_callback(self, callback: Callable[[ModuleType], None]) -> None:
        """Subscribe to "module scanned" (fired after every handler ran)."""
        if callback not in self._on_scanned_callbacks:
            self._on_scanned_callbacks.append(callback)

    def remove_scanned_callback(self, callback: Callable[[ModuleType], None]) -> None:
        if callback in self._on_scanned_callbacks:
            self._on_scanned_callbacks.remove(callback)

    def add_unscanned_callback(self, callback: Callable[[ModuleType], None]) -> None:
        """Subscribe to "module unscanned" (fired after every reversal ran)."""
        if callback not in self._on_unscanned_callbacks:
            self._on_unscanned_callbacks.append(callback)

    def remove_unscanned_callback(self, callback: Callable[[ModuleType], None]) -> None:
        if callback in self._on_unscanned_callbacks:
            self._on_unscanned_callbacks.remove(callback)

    def _fire(self, callbacks: List[Callable[[ModuleType], None]], module: ModuleType, label: str) -> None:
        for callback in list(callbacks):
            try:
                callback(module)
            except Exception as e:
                logger.warning(f"Error in {label} callback for {self._tag(module)}: {e}")

    # ---------- handler registry ----------

    def register_handler(self, kind: Type[Marker], handler: HandlerLike) -> MarkerHandler:
        """Append ``handler`` to the handlers of ``kind``.

        Plain callables are wrapped in a SimpleMarkerHandler; the handler
        object actually registered is returned (needed for unregistering).
        """
        if not (isinstance(kind, type) and issubclass(kind, Marker)):
            raise ArgumentError(f"Marker kind must be a Marker subclass, got {kind!r}")
        if not isinstance(handler, MarkerHandler):
            if not callable(handler):
                raise ArgumentError(f"Handler for {kind.__name__} must be callable")
            handler = SimpleMarkerHandler(handler)
        with self._lock:
            self._handlers.setdefault(kind, []).append(handler)
        logger.debug(f"Registered {handler!r} for marker kind {kind.__name__}")
        return handler

    def unregister_handler(self, handler: MarkerHandler) -> bool:
        """Remove ``handler`` from every kind. Returns whether anything was removed."""
        removed = False
        with self._lock:
            for kind, handlers in list(self._handlers.items()):
                if handler in handlers:
                    self._handlers[kind] = [h for h in handlers if h is not handler]
                    removed = True
                if not self._handlers[kind]:
                    del self._handlers[kind]
        return removed

    def handlers_for(self, kind: Type[Marker]) -> List[MarkerHandler]:
        """Snapshot of handlers receiving markers of ``kind`` (base kinds included)."""
        with self._lock:
            snapshot = {k: list(v) for k, v in self._handlers.items()}
        result: List[MarkerHandler] = []
        for klass in kind.__mro__:
            for handler in snapshot.get(klass, ()):
                if handler not in result:
                    result.append(handler)
        return result

    # ---------- scanning ----------

    def is_scanned(self, module: ModuleType) -> bool:
        return module in self._scanned

    def scanned_modules(self) -> List[ModuleType]:
        with self._lock:
            return list(self._scanned)

    def scan_record(self, module: ModuleType) -> Dict[MarkerHandler, List[AccessorBase]]:
        """Copy of the live record of ``module`` (empty if not scanned)."""
        with self._lock:
            record = self._records.get(module, {})
            return {handler: list(accessors) for handler, accessors in record.items()}

    def scan_module(self, module: ModuleType) -> bool:
        """Dispatch every marker in ``module`` to its handlers.

        Returns:
            True if a scan happened, False if skipped (None or already scanned).
        """
        if module is None:
            log_fatal(logger, ArgumentError("Cannot scan a None module"))
            return False

        record: Dict[MarkerHandler, List[AccessorBase]] = {}
        with self._lock:
            if module in self._scanned:
                logger.debug(f"{self._tag(module)} already scanned, skipping")
                return False
            self._scanned.add(module)
            self._records[module] = record

        dispatched = 0
        for owner in [module, *iter_module_types(module)]:
            for accessor in iter_element_accessors(owner, self.cache):
                for marker in accessor.get_markers():
                    dispatched += self._dispatch(module, accessor, marker, record)

        logger.info(f"{self._tag(module)} scanned: {dispatched} handler call(s)")
        self._fire(self._on_scanned_callbacks, module, "scanned")
        return True

    def _dispatch(self, module: ModuleType, accessor: AccessorBase, marker: Marker,
                  record: Dict[MarkerHandler, List[AccessorBase]]) -> int:
        handlers = self.handlers_for(type(marker))
        for handler in handlers:
            try:
                handler.handle(module, accessor, marker)
            except Exception:
                logger.exception(
                    f"{self._tag(module)} handler {handler!r} failed on {accessor.qualified_name}"
                )
                continue
            # Only successful calls are handed back for reversal
            with self._lock:
                touched = record.setdefault(handler, [])
                if accessor not in touched:
                    touched.append(accessor)
        return len(handlers)

    def unscan_module(self, module: ModuleType) -> bool:
        """Give each handler its accessors back for reversal, then forget the module.

        Returns:
            True if a record existed and was consumed.
        """
        with self._lock:
            record = self._records.pop(module, None)
        if record is None:
            with self._lock:
                self._scanned.discard(module)
            return False

        for handler, accessors in record.items():
            try:
                handler.unregister(module, accessors)
            except Exception:
                logger.exception(f"{self._tag(module)} handler {handler!r} failed to unregister")

        with self._lock:
            self._scanned.discard(module)
        logger.info(f"{self._tag(module)} unscanned")
        self._fire(self._on_unscanned_callbacks, module, "unscanned")
        return True

    # ---------- lifecycle registry ----------

    def attach(self, registry: ModuleRegistry) -> None:
        """Scan on module registration and unscan on unregistration."""
        self._registry = registry
        registry.add_registered_callback(self._on_module_registered)
        registry.add_unregistered_callback(self._on_module_unregistered)

    def detach(self, registry: ModuleRegistry) -> None:
        registry.remove_registered_callback(self._on_module_registered)
        registry.remove_unregistered_callback(self._on_module_unregistered)
        if self._registry is registry:
            self._registry = None

    def _on_module_registered(self, info: ModuleInfo) -> None:
        self.scan_module(info.module)

    def _on_module_unregistered(self, info: ModuleInfo) -> None:
        self.unscan_module(info.module)

    def _tag(self, module: ModuleType) -> str:
        return module_tag(module, self._registry)
