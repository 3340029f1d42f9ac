"""
Persistence backends for configuration entries.

Entries address stored values by (display name, group, module). Backends
must make loads idempotent and writes explicit: ``save`` only touches an
in-memory cache, ``flush`` writes it out.

The JSON layout of ``JsonConfigStorage`` is one file per module::

    {
      "groups": {
        "Audio": {"items": {"Volume": 0.5, "Muted": false}}
      }
    }
"""

import copy
import json
import logging
import os
import tempfile
import threading
import types
from enum import Enum
from types import ModuleType
from typing import Any, Dict, Optional, Tuple, Union, get_args, get_origin

from markerconf.config import get_framework_config
from markerconf.entry import DEFAULT_GROUP
from markerconf.markers import runtime_class
from markerconf.registry import ModuleRegistry, module_tag

logger = logging.getLogger(__name__)

GroupData = Dict[str, Dict[str, Any]]


def normalize_group(group: Optional[str]) -> str:
    return group if group and group.strip() else DEFAULT_GROUP


# =============================================================================
# VALUE CONVERSION
# =============================================================================

def serialize_value(value: Any) -> Any:
    """JSON-friendly form of a value (enums by member name)."""
    if isinstance(value, Enum):
        return value.name
    if isinstance(value, (tuple, set, frozenset)):
        return [serialize_value(v) for v in value]
    return value


def deserialize_value(raw: Any, expected_type: Any) -> Any:
    """Coerce a raw stored value to ``expected_type``.

    ``None`` stays ``None`` for optional types and becomes the type's zero
    value for ``int``/``float``/``bool``/``str``.

    Raises:
        ValueError, TypeError, KeyError: The value cannot be converted.
    """
    optional = get_origin(expected_type) in (Union, types.UnionType) and type(None) in get_args(expected_type)
    target = runtime_class(expected_type)

    if raw is None:
        if optional or target not in (int, float, bool, str):
            return None
        return target()

    if target is object or (isinstance(raw, target) and not (target is int and isinstance(raw, bool))):
        return raw
    if issubclass(target, Enum):
        return target[str(raw)]
    if target is bool:
        if isinstance(raw, str):
            lowered = raw.strip().lower()
            if lowered in ('true', '1', 'yes', 'on'):
                return True
            if lowered in ('false', '0', 'no', 'off'):
                return False
            raise ValueError(f"Cannot interpret {raw!r} as bool")
        return bool(raw)
    if target is int and isinstance(raw, float):
        if not raw.is_integer():
            raise ValueError(f"Cannot convert {raw!r} to int without losing precision")
        return int(raw)
    if target in (tuple, set, frozenset) and isinstance(raw, list):
        return target(raw)
    return target(raw)


# =============================================================================
# STORAGE INTERFACE
# =============================================================================

class ConfigStorage:
    """Storage collaborator contract."""

    def try_load(self, key: str, group: str, expected_type: Any,
                 module: ModuleType) -> Tuple[bool, Any]:
        """Return ``(True, value)`` if a value is stored, ``(False, None)`` otherwise."""
        raise NotImplementedError

    def save(self, key: str, group: str, value: Any, module: ModuleType) -> None:
        raise NotImplementedError

    def exists(self, module: ModuleType) -> bool:
        raise NotImplementedError

    def flush(self, module: Optional[ModuleType] = None) -> None:
        """Write pending changes of ``module`` (or of every module)."""
        raise NotImplementedError

    def is_dirty(self, module: ModuleType) -> bool:
        return False

    def forget(self, module: ModuleType) -> None:
        """Release per-module caches once the module is gone.

        Backends whose memory is the only copy of the data keep it.
        """


class MemoryConfigStorage(ConfigStorage):
    """Keeps everything in memory; ``flush`` only clears the dirty flags."""

    def __init__(self):
        self._data: Dict[ModuleType, GroupData] = {}
        self._dirty: Dict[ModuleType, bool] = {}
        self._lock = threading.Lock()

    def try_load(self, key: str, group: str, expected_type: Any,
                 module: ModuleType) -> Tuple[bool, Any]:
        with self._lock:
            items = self._data.get(module, {}).get(normalize_group(group), {})
            if key not in items:
                return False, None
            raw = items[key]
        try:
            return True, deserialize_value(raw, expected_type)
        except (ValueError, TypeError, KeyError) as e:
            logger.error(f"{module_tag(module)} could not convert stored '{key}' ({raw!r}): {e}")
            return False, None

    def save(self, key: str, group: str, value: Any, module: ModuleType) -> None:
        with self._lock:
            groups = self._data.setdefault(module, {})
            groups.setdefault(normalize_group(group), {})[key] = serialize_value(value)
            self._dirty[module] = True

    def exists(self, module: ModuleType) -> bool:
        return module in self._data

    def flush(self, module: Optional[ModuleType] = None) -> None:
        with self._lock:
            targets = list(self._dirty) if module is None else [module]
            for target in targets:
                self._dirty[target] = False

    def is_dirty(self, module: ModuleType) -> bool:
        return self._dirty.get(module, False)

    def snapshot(self, module: ModuleType) -> GroupData:
        """Deep copy of the stored groups of ``module``."""
        with self._lock:
            return copy.deepcopy(self._data.get(module, {}))


class JsonConfigStorage(ConfigStorage):
    """
    One ``<module name>.json`` per module under ``root_folder``.

    Files are read once per module into a cache; ``save`` marks the module
    dirty and ``flush`` rewrites the file.
    """

    def __init__(self, root_folder: Optional[str] = None, registry: Optional[ModuleRegistry] = None):
        self.root_folder = root_folder or get_framework_config().config_root
        self.registry = registry
        self._cache: Dict[ModuleType, GroupData] = {}
        self._dirty: Dict[ModuleType, bool] = {}
        self._file_locks: Dict[ModuleType, threading.Lock] = {}
        self._lock = threading.Lock()

    def _file_lock(self, module: ModuleType) -> threading.Lock:
        with self._lock:
            lock = self._file_locks.get(module)
            if lock is None:
                lock = self._file_locks[module] = threading.Lock()
            return lock

    def get_file_path(self, module: ModuleType) -> str:
        name = None
        if self.registry is not None:
            info = self.registry.get_info(module)
            name = info.name if info is not None else None
        name = name or getattr(module, '__name__', None) or 'UnknownModule'
        return os.path.join(self.root_folder, name + get_framework_config().file_suffix)

    # ---------- file access ----------

    def _read_file(self, module: ModuleType) -> GroupData:
        path = self.get_file_path(module)
        if not os.path.exists(path):
            return {}
        with self._file_lock(module):
            logger.debug(f"{module_tag(module, self.registry)} reading {path}")
            try:
                with open(path, 'r', encoding='utf-8') as f:
                    raw = f.read()
                if not raw.strip():
                    return {}
                data = json.loads(raw)
            except (OSError, ValueError) as e:
                logger.error(f"{module_tag(module, self.registry)} could not read {path}: {e}")
                return {}
        groups = data.get('groups', {}) if isinstance(data, dict) else {}
        return {
            name: dict(group.get('items', {}))
            for name, group in groups.items()
            if isinstance(group, dict)
        }

    def _write_file(self, module: ModuleType, data: GroupData) -> None:
        path = self.get_file_path(module)
        with self._lock:
            payload = {'groups': {name: {'items': dict(items)} for name, items in data.items()}}
        # Serialize fully before touching the file so a bad value leaves it intact
        text = json.dumps(payload, indent=2, ensure_ascii=False)
        with self._file_lock(module):
            folder = os.path.dirname(path) or '.'
            os.makedirs(folder, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix='.' + os.path.basename(path), suffix='.tmp', dir=folder)
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    f.write(text)
                os.replace(tmp_path, path)
            except OSError:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
                raise
        logger.debug(f"{module_tag(module, self.registry)} wrote {len(data)} group(s) to {path}")

    def _groups(self, module: ModuleType) -> GroupData:
        cached = self._cache.get(module)
        if cached is None:
            loaded = self._read_file(module)
            with self._lock:
                cached = self._cache.setdefault(module, loaded)
        return cached

    # ---------- ConfigStorage ----------

    def try_load(self, key: str, group: str, expected_type: Any,
                 module: ModuleType) -> Tuple[bool, Any]:
        items = self._groups(module).get(normalize_group(group), {})
        if key not in items:
            return False, None
        raw = items[key]
        try:
            return True, deserialize_value(raw, expected_type)
        except (ValueError, TypeError, KeyError) as e:
            logger.error(f"{module_tag(module, self.registry)} could not convert stored '{key}' ({raw!r}): {e}")
            return False, None

    def save(self, key: str, group: str, value: Any, module: ModuleType) -> None:
        groups = self._groups(module)
        with self._lock:
            groups.setdefault(normalize_group(group), {})[key] = serialize_value(value)
            self._dirty[module] = True

    def exists(self, module: ModuleType) -> bool:
        return os.path.exists(self.get_file_path(module))

    def flush(self, module: Optional[ModuleType] = None) -> None:
        with self._lock:
            targets = [m for m, dirty in self._dirty.items() if dirty] if module is None else [module]
        for target in targets:
            if not self._dirty.get(target):
                continue
            data = self._cache.get(target)
            if data is None:
                continue
            try:
                self._write_file(target, data)
            except (TypeError, ValueError, OSError) as e:
                logger.error(f"{module_tag(target, self.registry)} failed to write config: {e}")
                continue
            self._dirty[target] = False

    def is_dirty(self, module: ModuleType) -> bool:
        return self._dirty.get(module, False)

    def forget(self, module: ModuleType) -> None:
        """Drop the cached data of ``module`` (after its final flush)."""
        with self._lock:
            self._cache.pop(module, None)
            self._dirty.pop(module, None)
            self._file_locks.pop(module, None)
