"""
Marker-driven configuration runtime for plugin modules.

Plugin modules mark their own static fields and methods; the runtime scans a
module when it is loaded, builds cached accessors for the marked elements and
keeps a persisted, notifying ``ConfigEntry`` for every configurable value.

Quick Start:
    >>> from typing import Annotated, ClassVar
    >>> from markerconf import Config, Runtime, UIIntSlider
    >>>
    >>> class Settings:
    ...     volume: ClassVar[Annotated[int, Config("Volume"), UIIntSlider(0, 10)]] = 5
    >>>
    >>> runtime = Runtime()
    >>> runtime.load_module(my_plugin)  # scans, builds entries, loads stored values
    >>> runtime.config.set_value(my_plugin, "Volume", 7)

Modules:
    - accessors: cached field/property/method descriptors
    - markers: marker base class and annotation unwrapping
    - router: marker scanning and handler dispatch
    - entry: ConfigEntry[T] and ButtonEntry
    - factory: typed entry construction and UI type conversion
    - storage: persistence backends
    - ui: UI markers and UI handoff
    - manager: entry registry and built-in marker handlers
    - registry: module lifecycle registry
    - linker: ModLink callbacks on other modules being loaded or unloaded
    - runtime: service wiring
    - config: framework settings
"""

from markerconf.accessors import (
    AccessorBase,
    AccessorCache,
    Cell,
    MemberAccessor,
    MethodAccessor,
    Out,
    ParameterSpec,
    Ref,
    TypeAccessor,
    accessor_cache,
)
from markerconf.config import (
    FrameworkConfig,
    get_framework_config,
    reset_framework_config,
    set_framework_config,
    update_framework_config,
)
from markerconf.entry import DEFAULT_GROUP, BaseEntry, ButtonEntry, Config, ConfigEntry, EntryEvent
from markerconf.errors import (
    ArgumentError,
    InvalidOperationError,
    MarkerConfError,
    MissingMemberError,
    MissingMethodError,
    ParameterCountError,
)
from markerconf.factory import ConfigEntryFactory
from markerconf.generics import reified
from markerconf.linker import ModLink, ModLinkEvent, ModLinker, ModLinkMarkerHandler
from markerconf.manager import ConfigManager, ConfigMarkerHandler, UIButtonMarkerHandler
from markerconf.markers import Marker, attach_marker, markers_of
from markerconf.registry import ModuleInfo, ModuleRegistry, module_tag
from markerconf.router import MarkerHandler, MarkerRouter, SimpleMarkerHandler
from markerconf.runtime import Runtime
from markerconf.storage import ConfigStorage, JsonConfigStorage, MemoryConfigStorage
from markerconf.ui import (
    ConfigUIManager,
    PendingUIEntry,
    UIBackend,
    UIButton,
    UIConfigMarker,
    UIConverterMarker,
    UIDropdown,
    UIEnumChoice,
    UIFloatSlider,
    UIInput,
    UIIntSlider,
    UIKeyBind,
    UIMarker,
    UIToggle,
)

__version__ = "0.1.0"

__all__ = [
    # Accessors
    'AccessorBase',
    'AccessorCache',
    'Cell',
    'MemberAccessor',
    'MethodAccessor',
    'Out',
    'ParameterSpec',
    'Ref',
    'TypeAccessor',
    'accessor_cache',
    # Framework config
    'FrameworkConfig',
    'get_framework_config',
    'reset_framework_config',
    'set_framework_config',
    'update_framework_config',
    # Entries
    'DEFAULT_GROUP',
    'BaseEntry',
    'ButtonEntry',
    'Config',
    'ConfigEntry',
    'ConfigEntryFactory',
    'EntryEvent',
    # Errors
    'ArgumentError',
    'InvalidOperationError',
    'MarkerConfError',
    'MissingMemberError',
    'MissingMethodError',
    'ParameterCountError',
    # Markers and routing
    'Marker',
    'MarkerHandler',
    'MarkerRouter',
    'SimpleMarkerHandler',
    'attach_marker',
    'markers_of',
    'reified',
    # Module links
    'ModLink',
    'ModLinkEvent',
    'ModLinker',
    'ModLinkMarkerHandler',
    # Lifecycle
    'ModuleInfo',
    'ModuleRegistry',
    'Runtime',
    'module_tag',
    # Config management
    'ConfigManager',
    'ConfigMarkerHandler',
    'UIButtonMarkerHandler',
    # Storage
    'ConfigStorage',
    'JsonConfigStorage',
    'MemoryConfigStorage',
    # UI
    'ConfigUIManager',
    'PendingUIEntry',
    'UIBackend',
    'UIButton',
    'UIConfigMarker',
    'UIConverterMarker',
    'UIDropdown',
    'UIEnumChoice',
    'UIFloatSlider',
    'UIInput',
    'UIIntSlider',
    'UIKeyBind',
    'UIMarker',
    'UIToggle',
]
