"""
UI markers and the UI handoff manager.

The framework never draws anything. UI markers describe *which* widget an
entry wants and validate its value; a host-provided ``UIBackend`` does the
drawing. ``ConfigUIManager`` queues entries per module and group until a
backend is available, then hands each one over exactly once per backend.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from types import ModuleType
from typing import Any, Callable, Dict, List, Optional

from markerconf.entry import DEFAULT_GROUP, BaseEntry, ButtonEntry, ConfigEntry
from markerconf.errors import ArgumentError
from markerconf.markers import Marker

logger = logging.getLogger(__name__)


# =============================================================================
# BACKEND CONTRACT
# =============================================================================

class UIBackend:
    """Host-side widget builder.

    ``build`` receives the widget name of the marker (``"float_slider"``,
    ``"toggle"``, ``"button"``, ...), the entry and the marker itself.
    """

    def build(self, widget: str, entry: BaseEntry, marker: 'UIMarker') -> None:
        raise NotImplementedError

    def sync_value(self, entry: ConfigEntry, value: Any) -> None:
        """Called after an entry's value changed. Default: nothing."""

    def remove_module(self, module: ModuleType) -> None:
        """Called when every widget of ``module`` must go away. Default: nothing."""


# =============================================================================
# MARKERS
# =============================================================================

class UIMarker(Marker):
    """Base of all UI markers."""

    widget = 'widget'
    entry_type: type = BaseEntry

    def build_ui(self, entry: BaseEntry, backend: UIBackend) -> None:
        if not isinstance(entry, self.entry_type):
            raise ArgumentError(
                f"{type(self).__name__} only applies to {self.entry_type.__name__}, got {type(entry).__name__}"
            )
        backend.build(self.widget, entry, self)


class UIConfigMarker(UIMarker):
    """UI marker for a configuration value."""

    entry_type = ConfigEntry
    required_type: Any = object

    def is_valid(self, entry: ConfigEntry) -> bool:
        """Validity predicate consulted when a stored or out-of-band value is applied."""
        return entry.logical_type == self.required_type


class UIFloatSlider(UIConfigMarker):
    widget = 'float_slider'
    required_type = float

    def __init__(self, min: float, max: float, decimal_places: int = 1, character_limit: int = 5):
        self.min = min
        self.max = max
        self.decimal_places = decimal_places
        self.character_limit = character_limit

    def is_valid(self, entry: ConfigEntry) -> bool:
        if not super().is_valid(entry):
            return False
        return self.min <= entry.get_value() <= self.max


class UIIntSlider(UIConfigMarker):
    widget = 'int_slider'
    required_type = int

    def __init__(self, min: int, max: int, character_limit: int = 5):
        self.min = min
        self.max = max
        self.character_limit = character_limit

    def is_valid(self, entry: ConfigEntry) -> bool:
        if not super().is_valid(entry):
            return False
        return self.min <= entry.get_value() <= self.max


class UIToggle(UIConfigMarker):
    widget = 'toggle'
    required_type = bool


class UIDropdown(UIConfigMarker):
    """Dropdown over the members of an ``Enum`` field."""

    widget = 'dropdown'

    def is_valid(self, entry: ConfigEntry) -> bool:
        return isinstance(entry.logical_type, type) and issubclass(entry.logical_type, Enum)


class UIKeyBind(UIConfigMarker):
    """Key binding stored as the key's name."""

    widget = 'key_bind'
    required_type = str


class UIInput(UIConfigMarker):
    widget = 'input'
    required_type = str

    def __init__(self, character_limit: int = 5):
        self.character_limit = character_limit


class UIConverterMarker(UIConfigMarker):
    """
    UI marker whose widget works on a different type than the field.

    ``ui_type`` is the type the entry exposes; ``to_ui``/``from_ui`` convert
    between it and the field's logical type.
    """

    ui_type: Any = object

    def to_ui(self, value: Any) -> Any:
        raise NotImplementedError

    def from_ui(self, value: Any, logical_type: Any) -> Any:
        raise NotImplementedError


class UIEnumChoice(UIConverterMarker):
    """Presents an ``Enum`` field as a choice between its member names."""

    widget = 'choice'
    ui_type = str

    def to_ui(self, value: Enum) -> str:
        return value.name

    def from_ui(self, value: str, logical_type: Any) -> Enum:
        try:
            return logical_type[value]
        except KeyError:
            raise ValueError(f"'{value}' is not a member of {logical_type.__name__}") from None

    def options(self, entry: ConfigEntry) -> List[str]:
        return [member.name for member in entry.logical_type]

    def is_valid(self, entry: ConfigEntry) -> bool:
        logical = entry.logical_type
        if not (isinstance(logical, type) and issubclass(logical, Enum)):
            return False
        return entry.get_value() in logical.__members__


class UIButton(UIMarker):
    """Marks a static zero-argument method as a button."""

    widget = 'button'
    entry_type = ButtonEntry

    def __init__(self, description: str, button_text: str = "Button", group: str = DEFAULT_GROUP):
        self.description = description
        self.button_text = button_text
        self.group = group


# =============================================================================
# HANDOFF
# =============================================================================

@dataclass(frozen=True)
class PendingUIEntry:
    """An entry waiting for (or already handed to) the UI backend."""
    entry: BaseEntry
    marker: UIMarker

    def build(self, backend: UIBackend) -> None:
        self.marker.build_ui(self.entry, backend)


class ConfigUIManager:
    """
    Per-module, per-group queue of UI entries.

    Entries registered while no backend is set are built as soon as one is
    set; with a backend present they are built immediately.
    """

    def __init__(self, backend: Optional[UIBackend] = None):
        self._backend = backend
        self._entries: Dict[ModuleType, Dict[str, List[PendingUIEntry]]] = {}
        self._lock = threading.Lock()
        self._on_registered_callbacks: List[Callable[[ModuleType, PendingUIEntry], None]] = []
        self._on_unregistered_callbacks: List[Callable[[ModuleType], None]] = []

    # ---------- callbacks ----------

    def add_registered_callback(self, callback: Callable[[ModuleType, PendingUIEntry], None]) -> None:
        if callback not in self._on_registered_callbacks:
            self._on_registered_callbacks.append(callback)

    def remove_registered_callback(self, callback: Callable[[ModuleType, PendingUIEntry], None]) -> None:
        if callback in self._on_registered_callbacks:
            self._on_registered_callbacks.remove(callback)

    def add_unregistered_callback(self, callback: Callable[[ModuleType], None]) -> None:
        if callback not in self._on_unregistered_callbacks:
            self._on_unregistered_callbacks.append(callback)

    def remove_unregistered_callback(self, callback: Callable[[ModuleType], None]) -> None:
        if callback in self._on_unregistered_callbacks:
            self._on_unregistered_callbacks.remove(callback)

    # ---------- backend ----------

    @property
    def backend(self) -> Optional[UIBackend]:
        return self._backend

    def set_backend(self, backend: Optional[UIBackend]) -> None:
        """Switch backends and build every known entry on the new one."""
        self._backend = backend
        if backend is None:
            return
        with self._lock:
            pending = [item for groups in self._entries.values() for items in groups.values() for item in items]
        for item in pending:
            self._build(item)

    def _build(self, item: PendingUIEntry) -> None:
        backend = self._backend
        if backend is None:
            return
        try:
            item.build(backend)
        except Exception:
            logger.exception(f"Failed to build UI for {item.entry.key}")

    def _sync_value(self, entry: ConfigEntry, value: Any) -> None:
        if self._backend is not None:
            self._backend.sync_value(entry, value)

    # ---------- registration ----------

    def register_entry(self, entry: BaseEntry, marker: UIMarker) -> PendingUIEntry:
        item = PendingUIEntry(entry, marker)
        with self._lock:
            groups = self._entries.setdefault(entry.module, {})
            groups.setdefault(entry.group, []).append(item)
        if isinstance(entry, ConfigEntry):
            entry.on_changed_with_self.subscribe(self._sync_value)
        logger.debug(f"Queued {type(marker).__name__} for {entry.key}")

        self._build(item)
        for callback in list(self._on_registered_callbacks):
            try:
                callback(entry.module, item)
            except Exception as e:
                logger.warning(f"Error in UI registered callback: {e}")
        return item

    def unregister(self, module: ModuleType) -> bool:
        with self._lock:
            groups = self._entries.pop(module, None)
        if groups is None:
            return False
        for items in groups.values():
            for item in items:
                if isinstance(item.entry, ConfigEntry):
                    item.entry.on_changed_with_self.unsubscribe(self._sync_value)
        if self._backend is not None:
            try:
                self._backend.remove_module(module)
            except Exception:
                logger.exception(f"UI backend failed to remove {module.__name__}")
        for callback in list(self._on_unregistered_callbacks):
            try:
                callback(module)
            except Exception as e:
                logger.warning(f"Error in UI unregistered callback: {e}")
        return True

    def reset_module(self, module: ModuleType) -> int:
        """Reset every UI-visible config entry of ``module``; returns how many changed."""
        changed = 0
        for item in self.entries(module):
            if isinstance(item.entry, ConfigEntry) and item.entry.reset():
                changed += 1
        return changed

    # ---------- queries ----------

    def entries(self, module: ModuleType, group: Optional[str] = None) -> List[PendingUIEntry]:
        with self._lock:
            groups = self._entries.get(module, {})
            if group is not None:
                return list(groups.get(group, ()))
            return [item for items in groups.values() for item in items]

    def get_groups(self, module: ModuleType) -> List[str]:
        with self._lock:
            return list(self._entries.get(module, {}))

    def modules(self) -> List[ModuleType]:
        with self._lock:
            return list(self._entries)
