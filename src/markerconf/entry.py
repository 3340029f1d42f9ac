"""
Configuration entries.

``ConfigEntry[T]`` owns one configurable value: its default, a cached current
value, the live getter/setter pair, change notification and persistence sync.

Set path contract (``set_typed_value``):

1. Reentrant call -> logged Fatal, no effect.
2. Value equal to the current value -> no-op (no setter call, no save, no event).
3. Otherwise current := new, setter(new); on setter failure current is rolled
   back and the error propagates without any notification.
4. Save to storage (failures logged), then notify in fixed order:
   ``on_changed_typed`` -> ``on_changed`` -> ``on_changed_with_self`` -> change
   callback.

Reentrancy flags are per entry and not thread-safe; concurrent get/set of the
same entry from several threads is unsupported.
"""

import logging
from types import ModuleType
from typing import TYPE_CHECKING, Any, Callable, List, Optional

from markerconf.errors import ArgumentError, InvalidOperationError, log_fatal
from markerconf.generics import get_reified_args, reified
from markerconf.markers import Marker, runtime_class
from markerconf.registry import module_tag

if TYPE_CHECKING:
    from markerconf.storage import ConfigStorage

logger = logging.getLogger(__name__)

DEFAULT_GROUP = "DefaultGroup"


class Config(Marker):
    """
    Marks a static field or property as a configuration value.

    Args:
        display_name: Label in the UI and key in storage.
        description: Free text for the UI.
        on_changed: Name of a static method of the same owner taking the new
            value; called after every successful change.
        group: Group the entry is listed under.
    """

    def __init__(self, display_name: str, description: Optional[str] = None,
                 on_changed: Optional[str] = None, group: str = DEFAULT_GROUP):
        self.display_name = display_name
        self.description = description
        self.on_changed = on_changed
        self.group = group


def values_equal(a: Any, b: Any) -> bool:
    """Equality used for debouncing: ``==``, falling back to identity."""
    if a is b:
        return True
    try:
        return bool(a == b)
    except Exception:
        return False


# =============================================================================
# EVENTS
# =============================================================================

class EntryEvent:
    """Ordered subscriber list; a failing subscriber never blocks the rest."""

    def __init__(self, name: str):
        self.name = name
        self._subscribers: List[Callable[..., None]] = []

    def subscribe(self, callback: Callable[..., None]) -> None:
        if callback not in self._subscribers:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[..., None]) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def fire(self, *args: Any) -> None:
        for callback in list(self._subscribers):
            try:
                callback(*args)
            except Exception as e:
                logger.warning(f"Error in {self.name} subscriber: {e}")

    def __len__(self) -> int:
        return len(self._subscribers)


# =============================================================================
# BASE ENTRY
# =============================================================================

class BaseEntry:
    """Identity shared by every entry: owning module, group and display name."""

    def __init__(self, module: ModuleType, group: str, display_name: str):
        if module is None:
            raise ArgumentError("Entries must belong to a module")
        self._module = module
        self._group = group or DEFAULT_GROUP
        self._display_name = display_name
        self._key = self.make_key(self._group, display_name)

    @staticmethod
    def make_key(group: str, display_name: str) -> str:
        return f"{group}.{display_name}"

    @property
    def module(self) -> ModuleType:
        return self._module

    @property
    def group(self) -> str:
        return self._group

    @property
    def display_name(self) -> str:
        return self._display_name

    @property
    def key(self) -> str:
        return self._key

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._key}>"


# =============================================================================
# CONFIG ENTRY
# =============================================================================

@reified(arity=1)
class ConfigEntry(BaseEntry):
    """
    Typed configuration value. Always instantiate a parameterization::

        entry = ConfigEntry[int](module, "Volume", "Audio", 5, getter, setter)

    ``ui_type`` is ``T`` (the type the UI and storage see); ``logical_type`` is
    the type of the backing field, which differs when a conversion marker
    sits between them.
    """

    def __init__(
        self,
        module: ModuleType,
        display_name: str,
        group: str,
        default_value: Any,
        getter: Callable[[], Any],
        setter: Callable[[Any], None],
        change: Optional[Callable[[Any], None]] = None,
        logical_type: Any = None,
        ui_marker: Any = None,
    ):
        args = get_reified_args(type(self))
        if not args:
            raise ArgumentError("ConfigEntry must be parameterized, e.g. ConfigEntry[int](...)")
        super().__init__(module, group, display_name)
        self.ui_type = args[0]
        self.logical_type = self.ui_type if logical_type is None else logical_type
        self.default_value = default_value
        self._current_value = default_value
        self._getter = getter
        self._setter = setter
        self._change = change
        self.ui_marker = ui_marker
        self.storage: Optional['ConfigStorage'] = None

        self._is_getting = False
        self._is_setting = False

        self.on_changed_typed = EntryEvent(f"{self.key} typed change")
        self.on_changed = EntryEvent(f"{self.key} change")
        self.on_changed_with_self = EntryEvent(f"{self.key} entry change")

    @property
    def current_value(self) -> Any:
        """Last value that made it through the set path."""
        return self._current_value

    @property
    def tag(self) -> str:
        return module_tag(self.module)

    # ---------- typed API ----------

    def get_typed_value(self) -> Any:
        """Read the live value through the getter."""
        if self._is_getting:
            log_fatal(logger, InvalidOperationError(f"{self.key} re-entered its own getter"))
            return self.default_value
        self._is_getting = True
        try:
            return self._getter()
        finally:
            self._is_getting = False

    def set_typed_value(self, value: Any) -> None:
        if self._is_setting:
            log_fatal(logger, InvalidOperationError(f"{self.key} re-entered its own setter"))
            return
        if values_equal(self._current_value, value):
            logger.debug(f"{self.key} already {value!r}, skipping set")
            return

        self._is_setting = True
        old = self._current_value
        self._current_value = value
        try:
            logger.debug(f"Setting {self.key}: {old!r} -> {value!r}")
            try:
                self._setter(value)
            except Exception:
                self._current_value = old
                raise
            self._save(value)
            self.on_changed_typed.fire(value)
            self.on_changed.fire(value)
            self.on_changed_with_self.fire(self, value)
            if self._change is not None:
                try:
                    self._change(value)
                except Exception as e:
                    logger.warning(f"Change callback of {self.key} failed: {e}")
        finally:
            self._is_setting = False

    def reset(self) -> bool:
        """Restore the default value. Returns False if it was already the default."""
        if values_equal(self._current_value, self.default_value):
            logger.debug(f"{self.key} already at default {self.default_value!r}, skipping reset")
            return False
        logger.debug(f"Resetting {self.key}: {self._current_value!r} -> {self.default_value!r}")
        self.set_typed_value(self.default_value)
        return True

    # ---------- type-erased API ----------

    def get_value(self) -> Any:
        return self.get_typed_value()

    def set_value(self, value: Any) -> None:
        self.set_typed_value(self._coerce(value))

    def _coerce(self, value: Any) -> Any:
        expected = runtime_class(self.ui_type)
        if expected is object or value is None or isinstance(value, expected):
            return value
        if expected is float and isinstance(value, int) and not isinstance(value, bool):
            return float(value)
        raise ArgumentError(
            f"{self.key} expects {getattr(expected, '__name__', expected)}, got {type(value).__name__}"
        )

    def is_valid(self) -> bool:
        """Ask the UI marker's validity predicate about the live value."""
        if self.ui_marker is None:
            return True
        return bool(self.ui_marker.is_valid(self))

    # ---------- persistence ----------

    def _save(self, value: Any) -> None:
        if self.storage is None:
            return
        try:
            self.storage.save(self.display_name, self.group, value, self.module)
        except Exception:
            logger.exception(f"{self.tag} failed to save {self.key}")

    def sync_from_file(self) -> None:
        """Apply the stored value, or store the current one as baseline."""
        if self.storage is None:
            logger.debug(f"{self.key} has no storage, skipping load")
            return
        now = self._current_value
        try:
            found, loaded = self.storage.try_load(self.display_name, self.group, self.ui_type, self.module)
        except Exception:
            logger.exception(f"{self.tag} failed to load {self.key}, keeping {now!r}")
            return

        if not found:
            logger.debug(f"{self.tag} no stored value for {self.key}, saving {now!r}")
            self._save(now)
            return
        if values_equal(loaded, now):
            logger.debug(f"{self.tag} stored {self.key} equals current value {now!r}")
            return

        try:
            self.set_typed_value(loaded)
            if not self.is_valid():
                logger.warning(f"{self.tag} stored value {loaded!r} of {self.key} is invalid, restoring {now!r}")
                self.set_typed_value(now)
            else:
                logger.debug(f"{self.tag} loaded {self.key} = {loaded!r}")
        except Exception as e:
            logger.warning(f"{self.tag} could not apply stored value {loaded!r} of {self.key}: {e}; "
                           f"overwriting it with {now!r}")
            self._save(now)

    def sync_from_data(self) -> None:
        """Persist changes made to the backing value behind the entry's back."""
        now = self._getter()
        old = self._current_value
        if values_equal(now, old):
            return
        logger.info(f"{self.tag} {self.key} changed out-of-band to {now!r}, saving")
        self.set_typed_value(now)
        if not self.is_valid():
            logger.warning(f"{self.tag} out-of-band value {now!r} of {self.key} is invalid, restoring {old!r}")
            self.set_typed_value(old)


# =============================================================================
# BUTTON ENTRY
# =============================================================================

class ButtonEntry(BaseEntry):
    """An action exposed as a UI button."""

    def __init__(self, module: ModuleType, description: str, action: Callable[[], Any],
                 button_text: str = "Button", group: str = DEFAULT_GROUP):
        if not callable(action):
            raise ArgumentError(f"Button '{description}' needs a callable action")
        super().__init__(module, group, description)
        self.description = description
        self.button_text = button_text
        self._action = action

    def invoke(self) -> None:
        try:
            self._action()
        except Exception:
            logger.exception(f"{module_tag(self.module)} button {self.key} failed")
