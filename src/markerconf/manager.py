"""
Configuration manager: owns every entry, keyed by module and entry key.

Entries arrive either from the ``Config`` marker handler during a scan or
from explicit ``register(...)`` calls. Registration attaches storage, applies
the stored value and hands UI-visible entries to the ``ConfigUIManager``.
Unregistering a module performs a final data-to-storage sync for each of its
entries before they are dropped.
"""

import functools
import logging
import threading
from types import ModuleType
from typing import Any, Callable, Dict, List, Optional

from markerconf.accessors import AccessorBase, AccessorCache, MemberAccessor, MethodAccessor
from markerconf.entry import DEFAULT_GROUP, BaseEntry, ButtonEntry, Config, ConfigEntry
from markerconf.errors import ArgumentError, MissingMethodError
from markerconf.factory import ConfigEntryFactory
from markerconf.registry import module_tag
from markerconf.router import MarkerHandler
from markerconf.storage import ConfigStorage, JsonConfigStorage
from markerconf.ui import ConfigUIManager, UIButton, UIConfigMarker

logger = logging.getLogger(__name__)


class ConfigManager:
    """
    Registry of configuration entries with per-module storage.

    Args:
        default_storage: Storage for modules without an override. Defaults to
            a ``JsonConfigStorage`` under the configured root, created lazily.
        ui_manager: Receives entries that carry a UI marker.
        cache: Accessor cache used to resolve change callbacks.
    """

    def __init__(self, default_storage: Optional[ConfigStorage] = None,
                 ui_manager: Optional[ConfigUIManager] = None,
                 cache: Optional[AccessorCache] = None,
                 factory: Optional[ConfigEntryFactory] = None):
        self._default_storage = default_storage
        self._storages: Dict[ModuleType, ConfigStorage] = {}
        self._entries: Dict[ModuleType, Dict[str, ConfigEntry]] = {}
        self._buttons: Dict[ModuleType, List[ButtonEntry]] = {}
        self._lock = threading.Lock()
        self.ui_manager = ui_manager
        self.cache = cache
        self.factory = factory or ConfigEntryFactory()
        self._on_registered_callbacks: List[Callable[[ConfigEntry], None]] = []
        self._on_unregistered_callbacks: List[Callable[[ModuleType], None]] = []

    # ---------- callbacks ----------

    def add_registered_callback(self, callback: Callable[[ConfigEntry], None]) -> None:
        if callback not in self._on_registered_callbacks:
            self._on_registered_callbacks.append(callback)

    def remove_registered_callback(self, callback: Callable[[ConfigEntry], None]) -> None:
        if callback in self._on_registered_callbacks:
            self._on_registered_callbacks.remove(callback)

    def add_unregistered_callback(self, callback: Callable[[ModuleType], None]) -> None:
        if callback not in self._on_unregistered_callbacks:
            self._on_unregistered_callbacks.append(callback)

    def remove_unregistered_callback(self, callback: Callable[[ModuleType], None]) -> None:
        if callback in self._on_unregistered_callbacks:
            self._on_unregistered_callbacks.remove(callback)

    # ---------- storage ----------

    @property
    def default_storage(self) -> ConfigStorage:
        if self._default_storage is None:
            self._default_storage = JsonConfigStorage()
        return self._default_storage

    def set_storage(self, storage: ConfigStorage, module: Optional[ModuleType] = None) -> None:
        """Override the storage of ``module`` (or the default storage)."""
        if module is None:
            self._default_storage = storage
        else:
            self._storages[module] = storage

    def get_storage(self, module: ModuleType) -> ConfigStorage:
        return self._storages.get(module) or self.default_storage

    def flush(self, module: Optional[ModuleType] = None) -> None:
        """Write pending changes of ``module`` (or of every module)."""
        if module is not None:
            targets = [(self.get_storage(module), module)]
        else:
            targets = [(self.default_storage, None)]
            for storage in self._storages.values():
                if all(storage is not s for s, _ in targets):
                    targets.append((storage, None))
        for storage, target in targets:
            try:
                storage.flush(target)
            except Exception:
                logger.exception(f"Failed to flush storage {type(storage).__name__}")

    # ---------- construction ----------

    def build_config_entry(self, module: ModuleType, member: MemberAccessor,
                           marker: Config) -> Optional[ConfigEntry]:
        """Build the entry of a marked member; returns None if the member is unusable."""
        ui_marker = member.get_marker(UIConfigMarker)

        method = None
        if marker.on_changed:
            try:
                method = MethodAccessor.get(member.owner, marker.on_changed, cache=self.cache)
            except MissingMethodError as e:
                logger.warning(f"{module_tag(module)} change callback of {member.qualified_name} not found: {e}")

        try:
            return self.factory.create(module, member, method, marker, ui_marker)
        except ArgumentError as e:
            logger.error(f"{module_tag(module)} skipping {member.qualified_name}: {e}")
            return None

    def register_entry(self, entry: ConfigEntry, ui_marker: Optional[UIConfigMarker] = None) -> bool:
        """Track ``entry``, load its stored value and hand it to the UI.

        Returns:
            False if an entry with the same key already exists in the module.
        """
        with self._lock:
            entries = self._entries.setdefault(entry.module, {})
            if entry.key in entries:
                logger.warning(f"{module_tag(entry.module)} duplicate config key {entry.key}, ignoring")
                return False
            entries[entry.key] = entry

        entry.storage = self.get_storage(entry.module)
        entry.sync_from_file()
        if ui_marker is not None and self.ui_manager is not None:
            self.ui_manager.register_entry(entry, ui_marker)

        logger.debug(f"{module_tag(entry.module)} registered config {entry.key}")
        for callback in list(self._on_registered_callbacks):
            try:
                callback(entry)
            except Exception as e:
                logger.warning(f"Error in config registered callback: {e}")
        return True

    def register(self, module: ModuleType, display_name: str, default_value: Any,
                 getter: Callable[[], Any], setter: Callable[[Any], None],
                 group: str = DEFAULT_GROUP, change: Optional[Callable[[Any], None]] = None,
                 value_type: Any = None, ui_marker: Optional[UIConfigMarker] = None) -> Optional[ConfigEntry]:
        """Register an entry from explicit callables.

        ``default_value`` becomes the reset target as given; it is not read
        back from ``getter``.
        """
        entry = self.factory.create_from_callables(
            module, display_name, group, default_value, getter, setter,
            change=change, value_type=value_type, ui_marker=ui_marker,
        )
        return entry if self.register_entry(entry, ui_marker) else None

    def register_button(self, module: ModuleType, method: MethodAccessor,
                        marker: UIButton) -> Optional[ButtonEntry]:
        """Expose a static zero-argument method as a button."""
        if not method.is_static or method.required_count != 0 or method.is_generic_definition:
            logger.error(f"{module_tag(module)} button {method.qualified_name} must be a static "
                         f"method without required parameters")
            return None
        entry = ButtonEntry(module, marker.description, functools.partial(method.invoke0, None),
                            button_text=marker.button_text, group=marker.group)
        with self._lock:
            self._buttons.setdefault(module, []).append(entry)
        if self.ui_manager is not None:
            self.ui_manager.register_entry(entry, marker)
        return entry

    # ---------- access ----------

    def get_entry(self, module: ModuleType, display_name: str,
                  group: str = DEFAULT_GROUP) -> Optional[ConfigEntry]:
        return self._entries.get(module, {}).get(BaseEntry.make_key(group, display_name))

    def _require_entry(self, module: ModuleType, display_name: str, group: str) -> Optional[ConfigEntry]:
        entry = self.get_entry(module, display_name, group)
        if entry is None:
            logger.warning(f"{module_tag(module)} no config entry {BaseEntry.make_key(group, display_name)}")
        return entry

    def get_value(self, module: ModuleType, display_name: str, group: str = DEFAULT_GROUP) -> Any:
        entry = self._require_entry(module, display_name, group)
        return None if entry is None else entry.get_value()

    def set_value(self, module: ModuleType, display_name: str, value: Any,
                  group: str = DEFAULT_GROUP) -> bool:
        entry = self._require_entry(module, display_name, group)
        if entry is None:
            return False
        entry.set_value(value)
        return True

    def reset_key(self, module: ModuleType, display_name: str, group: str = DEFAULT_GROUP) -> bool:
        entry = self._require_entry(module, display_name, group)
        return False if entry is None else entry.reset()

    def reset_module(self, module: ModuleType) -> int:
        """Reset every entry of ``module``; returns how many changed."""
        return sum(1 for entry in self.entries(module) if entry.reset())

    def entries(self, module: ModuleType) -> List[ConfigEntry]:
        with self._lock:
            return list(self._entries.get(module, {}).values())

    def buttons(self, module: ModuleType) -> List[ButtonEntry]:
        with self._lock:
            return list(self._buttons.get(module, ()))

    def modules(self) -> List[ModuleType]:
        with self._lock:
            return list(self._entries)

    # ---------- teardown ----------

    def unregister_module(self, module: ModuleType) -> int:
        """Final-sync, flush and drop every entry of ``module``.

        Returns:
            Number of config entries dropped.
        """
        with self._lock:
            entries = self._entries.pop(module, {})
            buttons = self._buttons.pop(module, [])
        if not entries and not buttons:
            return 0

        for entry in entries.values():
            try:
                entry.sync_from_data()
            except Exception:
                logger.exception(f"{module_tag(module)} final sync of {entry.key} failed")
        storage = self.get_storage(module)
        if entries:
            self.flush(module)
        if storage.is_dirty(module):
            logger.warning(f"{module_tag(module)} unsaved config kept in memory after failed flush")
        else:
            storage.forget(module)
        if self.ui_manager is not None:
            self.ui_manager.unregister(module)
        self._storages.pop(module, None)

        logger.info(f"{module_tag(module)} unregistered {len(entries)} config entries")
        for callback in list(self._on_unregistered_callbacks):
            try:
                callback(module)
            except Exception as e:
                logger.warning(f"Error in config unregistered callback: {e}")
        return len(entries)


# =============================================================================
# MARKER HANDLERS
# =============================================================================

class ConfigMarkerHandler(MarkerHandler):
    """Routes ``Config`` markers on members into a ConfigManager."""

    def __init__(self, manager: ConfigManager):
        self.manager = manager

    def handle(self, module: ModuleType, accessor: AccessorBase, marker: Config) -> None:
        if not isinstance(accessor, MemberAccessor):
            logger.warning(f"{module_tag(module)} Config marker on {accessor.qualified_name} ignored: "
                           f"only fields and properties can be config entries")
            return
        entry = self.manager.build_config_entry(module, accessor, marker)
        if entry is not None:
            self.manager.register_entry(entry, entry.ui_marker)

    def unregister(self, module: ModuleType, accessors: List[AccessorBase]) -> None:
        self.manager.unregister_module(module)

    def __repr__(self) -> str:
        return "ConfigMarkerHandler()"


class UIButtonMarkerHandler(MarkerHandler):
    """Routes ``UIButton`` markers on methods into a ConfigManager."""

    def __init__(self, manager: ConfigManager):
        self.manager = manager

    def handle(self, module: ModuleType, accessor: AccessorBase, marker: UIButton) -> None:
        if not isinstance(accessor, MethodAccessor):
            logger.warning(f"{module_tag(module)} UIButton marker on {accessor.qualified_name} ignored: "
                           f"only methods can be buttons")
            return
        self.manager.register_button(module, accessor, marker)

    def unregister(self, module: ModuleType, accessors: List[AccessorBase]) -> None:
        self.manager.unregister_module(module)

    def __repr__(self) -> str:
        return "UIButtonMarkerHandler()"
