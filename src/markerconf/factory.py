"""
Construction of typed configuration entries.

Python has no runtime generic instantiation of constructors, so the factory
keeps a dispatch table keyed by ``(ui_type, logical_type)``. Each slot holds a
closed constructor: either the plain ``ConfigEntry[T]`` path or a converting
path that wraps getter/setter/change in ``to_ui``/``from_ui`` adapters for
``ConfigEntry[UIType]``.
"""

import functools
import logging
import threading
from types import ModuleType
from typing import Any, Callable, Dict, Optional, Tuple

from markerconf.accessors import CLASS, STATIC, MemberAccessor, MethodAccessor, type_matches
from markerconf.entry import Config, ConfigEntry
from markerconf.errors import ArgumentError
from markerconf.ui import UIConverterMarker

logger = logging.getLogger(__name__)

Getter = Callable[[], Any]
Setter = Callable[[Any], None]
Change = Callable[[Any], None]
EntryConstructor = Callable[..., ConfigEntry]


# =============================================================================
# CLOSED CONSTRUCTORS
# =============================================================================

def _create_plain(entry_type: type, logical_type: Any, module: ModuleType, display_name: str, group: str,
                  default_value: Any, getter: Getter, setter: Setter, change: Optional[Change],
                  ui_marker: Any) -> ConfigEntry:
    return entry_type(module, display_name, group, default_value, getter, setter,
                      change, logical_type, ui_marker)


def _create_converted(entry_type: type, logical_type: Any, module: ModuleType, display_name: str, group: str,
                      default_value: Any, getter: Getter, setter: Setter, change: Optional[Change],
                      ui_marker: Any) -> ConfigEntry:
    converter = ui_marker

    def convert(phase: str, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return fn(*args)
        except Exception as exc:
            raise ArgumentError(f"Conversion of '{display_name}' failed ({phase}): {exc}") from exc

    ui_default = convert('construct', converter.to_ui, default_value)

    def ui_getter() -> Any:
        return convert('get', converter.to_ui, getter())

    def ui_setter(value: Any) -> None:
        setter(convert('set', converter.from_ui, value, logical_type))

    ui_change = None
    if change is not None:
        def ui_change(value: Any) -> None:
            change(convert('set', converter.from_ui, value, logical_type))

    return entry_type(module, display_name, group, ui_default, ui_getter, ui_setter,
                      ui_change, logical_type, converter)


# =============================================================================
# FACTORY
# =============================================================================

class ConfigEntryFactory:
    """Builds ``ConfigEntry`` instances from accessors or from plain callables."""

    def __init__(self):
        self._constructors: Dict[Tuple[Any, Any], EntryConstructor] = {}
        self._lock = threading.Lock()

    def constructor_for(self, logical_type: Any, ui_marker: Any = None) -> EntryConstructor:
        """Closed constructor for a logical type and optional UI marker.

        A marker with a ``ui_type`` differing from ``logical_type`` selects the
        converting path.
        """
        ui_type = logical_type
        if isinstance(ui_marker, UIConverterMarker):
            ui_type = ui_marker.ui_type
        key = (ui_type, logical_type)
        constructor = self._constructors.get(key)
        if constructor is not None:
            return constructor
        with self._lock:
            constructor = self._constructors.get(key)
            if constructor is None:
                create = _create_converted if ui_type is not logical_type else _create_plain
                constructor = functools.partial(create, ConfigEntry[ui_type], logical_type)
                self._constructors[key] = constructor
                logger.debug(f"Closed entry constructor for ({ui_type!r}, {logical_type!r})")
            return constructor

    @staticmethod
    def validate_change_method(method: MethodAccessor, value_type: Any) -> Optional[str]:
        """Return why ``method`` cannot be a change callback, or None if it can."""
        if method.binding not in (STATIC, CLASS):
            return f"change callback {method.qualified_name} must be static"
        if method.is_generic_definition:
            return f"change callback {method.qualified_name} must not be generic"
        if len(method.parameters) != 1:
            return f"change callback {method.qualified_name} must take exactly one parameter"
        if method.required_keywords:
            return f"change callback {method.qualified_name} must not require keyword-only parameters"
        declared = method.parameters[0].annotation
        if not type_matches(value_type, declared, exact=False):
            return (f"change callback {method.qualified_name} takes {declared!r}, "
                    f"expected {value_type!r}")
        return None

    @classmethod
    def trait_accessors(cls, member: MemberAccessor, method: Optional[MethodAccessor],
                        value_type: Any) -> Tuple[Getter, Setter, Optional[Change]]:
        """Derive the getter/setter/change triple of a declared member.

        Raises:
            ArgumentError: The member is not static or not read-write.
        """
        if not member.is_static:
            raise ArgumentError(
                f"Cannot build entry for {member.qualified_name}: entries bound to instance state are "
                f"unsupported; entries must be addressable without an owning object"
            )
        if not (member.can_read and member.can_write):
            raise ArgumentError(f"Cannot build entry for {member.qualified_name}: member must be readable and writable")

        change = None
        if method is not None:
            error = cls.validate_change_method(method, value_type)
            if error is not None:
                logger.error(f"Ignoring change callback of {member.qualified_name}: {error}")
            elif method.typed_delegate is not None:
                change = method.typed_delegate
            else:
                change = functools.partial(method.invoke, None)

        getter = member.typed_getter or functools.partial(member.get_value, None)
        setter = member.typed_setter or functools.partial(member.set_value, None)
        return getter, setter, change

    def create(self, module: ModuleType, member: MemberAccessor, method: Optional[MethodAccessor],
               marker: Config, ui_marker: Any = None) -> ConfigEntry:
        """Entry for a declared member; the default is read from it exactly once."""
        logical_type = member.member_type
        getter, setter, change = self.trait_accessors(member, method, logical_type)
        constructor = self.constructor_for(logical_type, ui_marker)
        return constructor(module, marker.display_name, marker.group, getter(), getter, setter,
                           change, ui_marker)

    def create_from_callables(self, module: ModuleType, display_name: str, group: str, default_value: Any,
                              getter: Getter, setter: Setter, change: Optional[Change] = None,
                              value_type: Any = None, ui_marker: Any = None) -> ConfigEntry:
        """Entry from an explicit triple; ``default_value`` is used as given."""
        if not (callable(getter) and callable(setter)):
            raise ArgumentError(f"Entry '{display_name}' needs a callable getter and setter")
        logical_type = type(default_value) if value_type is None else value_type
        constructor = self.constructor_for(logical_type, ui_marker)
        return constructor(module, display_name, group, default_value, getter, setter, change, ui_marker)
