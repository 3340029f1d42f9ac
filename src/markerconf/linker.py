"""
Cross-module links: run a static method when another module is loaded or
unloaded.

    @ModLink("Inventory", ModLinkEvent.ACTIVATED)
    @staticmethod
    def on_inventory(info: ModuleInfo) -> None: ...

Links are keyed by the target's registered name (case-insensitive) and owned
by the module that declared them; unscanning the owner drops all of its links.
"""

import enum
import inspect
import logging
import threading
from types import ModuleType
from typing import Dict, List, Optional

from markerconf.accessors import AccessorBase, MethodAccessor, type_matches
from markerconf.markers import Marker
from markerconf.registry import ModuleInfo, ModuleRegistry, module_tag
from markerconf.router import MarkerHandler

logger = logging.getLogger(__name__)


class ModLinkEvent(enum.Enum):
    ACTIVATED = 'activated'
    DEACTIVATED = 'deactivated'


class ModLink(Marker):
    """Marks a static method to run when the module ``name`` is (de)activated."""

    def __init__(self, name: str, event: ModLinkEvent = ModLinkEvent.ACTIVATED):
        self.name = name
        self.event = event


def _link_key(name: str) -> str:
    return name.strip().casefold()


class ModLinker:
    """
    Target name -> owner module -> event -> method.

    Follows a ModuleRegistry: registration fires ACTIVATED links of the
    registered name, unregistration fires DEACTIVATED links.
    """

    def __init__(self):
        self._links: Dict[str, Dict[ModuleType, Dict[ModLinkEvent, MethodAccessor]]] = {}
        self._lock = threading.Lock()
        self._registry: Optional[ModuleRegistry] = None

    # ---------- registration ----------

    def register(self, name: str, method: MethodAccessor, event: ModLinkEvent, owner: ModuleType) -> None:
        """Link ``method`` of ``owner``; a later link for the same event replaces it."""
        with self._lock:
            owners = self._links.setdefault(_link_key(name), {})
            events = owners.setdefault(owner, {})
            replaced = events.get(event)
            events[event] = method
        if replaced is not None and replaced is not method:
            logger.debug(f"{self._tag(owner)} {event.value} link to '{name}' now runs "
                         f"{method.qualified_name} instead of {replaced.qualified_name}")
        logger.debug(f"{self._tag(owner)} linked {method.qualified_name} to {event.value} of '{name}'")

    def unregister(self, name: str, owner: ModuleType) -> bool:
        """Drop every link of ``owner`` to ``name``."""
        key = _link_key(name)
        with self._lock:
            owners = self._links.get(key)
            if owners is None or owners.pop(owner, None) is None:
                return False
            if not owners:
                del self._links[key]
        return True

    def unregister_module(self, owner: ModuleType) -> int:
        """Drop every link declared by ``owner``. Returns the number of target names dropped."""
        dropped = 0
        with self._lock:
            for key in list(self._links):
                owners = self._links[key]
                if owners.pop(owner, None) is not None:
                    dropped += 1
                if not owners:
                    del self._links[key]
        if dropped:
            logger.info(f"{self._tag(owner)} dropped links to {dropped} module(s)")
        return dropped

    def links(self, name: str) -> Dict[ModuleType, Dict[ModLinkEvent, MethodAccessor]]:
        """Snapshot of the links targeting ``name``."""
        with self._lock:
            owners = self._links.get(_link_key(name), {})
            return {owner: dict(events) for owner, events in owners.items()}

    # ---------- dispatch ----------

    def notify(self, info: ModuleInfo, event: ModLinkEvent) -> int:
        """Run every ``event`` link targeting ``info.name``. Returns how many ran."""
        if not info.name or not info.name.strip():
            return 0
        ran = 0
        for owner, events in self.links(info.name).items():
            method = events.get(event)
            if method is None:
                continue
            try:
                method.invoke_array(None, [info] if method.parameters else [])
                ran += 1
            except Exception:
                logger.exception(f"{self._tag(owner)} {event.value} link {method.qualified_name} "
                                 f"for {info.tag} failed")
        return ran

    def attach(self, registry: ModuleRegistry) -> None:
        self._registry = registry
        registry.add_registered_callback(self._on_module_registered)
        registry.add_unregistered_callback(self._on_module_unregistered)

    def detach(self, registry: ModuleRegistry) -> None:
        registry.remove_registered_callback(self._on_module_registered)
        registry.remove_unregistered_callback(self._on_module_unregistered)
        if self._registry is registry:
            self._registry = None

    def _on_module_registered(self, info: ModuleInfo) -> None:
        self.notify(info, ModLinkEvent.ACTIVATED)

    def _on_module_unregistered(self, info: ModuleInfo) -> None:
        self.notify(info, ModLinkEvent.DEACTIVATED)

    def _tag(self, module: ModuleType) -> str:
        return module_tag(module, self._registry)


class ModLinkMarkerHandler(MarkerHandler):
    """Routes ``ModLink`` markers on methods into a ModLinker."""

    def __init__(self, linker: ModLinker):
        self.linker = linker

    @staticmethod
    def validate_link_method(method: MethodAccessor) -> Optional[str]:
        """Return why ``method`` cannot be linked, or None if it can."""
        if not method.is_static:
            return f"link {method.qualified_name} must be static"
        if method.is_generic_definition:
            return f"link {method.qualified_name} must not be generic"
        if method.has_by_ref or method.required_keywords:
            return f"link {method.qualified_name} must take plain positional parameters"
        if len(method.parameters) > 1:
            return f"link {method.qualified_name} takes {len(method.parameters)} parameters, expected 0 or 1"
        if method.parameters and not type_matches(ModuleInfo, method.parameters[0].annotation):
            return (f"link {method.qualified_name} takes {method.parameters[0].annotation!r}, "
                    f"expected ModuleInfo")
        return None

    def handle(self, module: ModuleType, accessor: AccessorBase, marker: ModLink) -> None:
        if not isinstance(accessor, MethodAccessor):
            logger.error(f"{module_tag(module)} ModLink marker on {accessor.qualified_name} ignored: "
                         f"only methods can be linked")
            return
        error = self.validate_link_method(accessor)
        if error is not None:
            logger.error(f"{module_tag(module)} {error}")
            return
        if not accessor.returns_void and accessor.return_type is not inspect.Signature.empty:
            logger.debug(f"{module_tag(module)} return value of {accessor.qualified_name} is ignored")
        self.linker.register(marker.name, accessor, marker.event, module)

    def unregister(self, module: ModuleType, accessors: List[AccessorBase]) -> None:
        self.linker.unregister_module(module)

    def __repr__(self) -> str:
        return "ModLinkMarkerHandler()"
