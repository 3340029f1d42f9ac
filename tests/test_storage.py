"""
Tests for the storage backends.

Tests cover:
- Raw value conversion (enums, bools, optional types, lossy numbers)
- In-memory storage and its dirty tracking
- JSON storage file layout, flush and reload
- Unreadable / unconvertible stored data reported as "not found"
"""

import datetime
import enum
import json
import logging
import types
from typing import Optional

import pytest

from markerconf.config import update_framework_config
from markerconf.registry import ModuleRegistry
from markerconf.storage import (
    JsonConfigStorage,
    MemoryConfigStorage,
    deserialize_value,
    normalize_group,
    serialize_value,
)


class Mode(enum.Enum):
    FAST = 'fast'
    SAFE = 'safe'


@pytest.fixture
def module():
    return types.ModuleType("storage_plugin")


class TestValueConversion:

    def test_enum_round_trip_by_name(self):
        assert serialize_value(Mode.SAFE) == "SAFE"
        assert deserialize_value("SAFE", Mode) is Mode.SAFE

    def test_unknown_enum_name(self):
        with pytest.raises(KeyError):
            deserialize_value("TURBO", Mode)

    @pytest.mark.parametrize("raw, expected", [
        ("true", True), ("Off", False), (1, True), (0, False),
    ])
    def test_bool(self, raw, expected):
        assert deserialize_value(raw, bool) is expected

    def test_bool_is_not_an_int(self):
        assert deserialize_value(True, int) == 1
        assert type(deserialize_value(True, int)) is int

    def test_integral_float_to_int(self):
        assert deserialize_value(3.0, int) == 3

    def test_lossy_float_to_int(self):
        with pytest.raises(ValueError):
            deserialize_value(3.5, int)

    def test_none(self):
        assert deserialize_value(None, int) == 0
        assert deserialize_value(None, str) == ""
        assert deserialize_value(None, Optional[int]) is None
        assert deserialize_value(None, int | None) is None

    def test_tuple_from_list(self):
        assert serialize_value((1, 2)) == [1, 2]
        assert deserialize_value([1, 2], tuple) == (1, 2)

    def test_normalize_group(self):
        assert normalize_group("") == "DefaultGroup"
        assert normalize_group("  ") == "DefaultGroup"
        assert normalize_group("Audio") == "Audio"


class TestMemoryStorage:

    def test_missing(self, module):
        storage = MemoryConfigStorage()
        assert storage.try_load("Volume", "Audio", int, module) == (False, None)
        assert not storage.exists(module)

    def test_save_and_load(self, module):
        storage = MemoryConfigStorage()
        storage.save("Volume", "Audio", 4, module)
        assert storage.try_load("Volume", "Audio", int, module) == (True, 4)
        assert storage.exists(module)

    def test_dirty_tracking(self, module):
        storage = MemoryConfigStorage()
        storage.save("Volume", "Audio", 4, module)
        assert storage.is_dirty(module)
        storage.flush(module)
        assert not storage.is_dirty(module)

    def test_unconvertible_value_is_not_found(self, module, caplog):
        storage = MemoryConfigStorage()
        storage.save("Mode", "General", "TURBO", module)
        with caplog.at_level(logging.ERROR, logger="markerconf.storage"):
            assert storage.try_load("Mode", "General", Mode, module) == (False, None)
        assert "could not convert" in caplog.text

    def test_snapshot_is_a_copy(self, module):
        storage = MemoryConfigStorage()
        storage.save("Volume", "", 1, module)
        snapshot = storage.snapshot(module)
        snapshot["DefaultGroup"]["Volume"] = 99
        assert storage.try_load("Volume", "", int, module) == (True, 1)

    def test_snapshot_copies_nested_values(self, module):
        storage = MemoryConfigStorage()
        storage.save("Keys", "", ["F1"], module)
        storage.snapshot(module)["DefaultGroup"]["Keys"].append("F2")
        assert storage.try_load("Keys", "", list, module) == (True, ["F1"])


class TestJsonStorage:

    def test_file_path_uses_registered_name(self, tmp_path, module):
        registry = ModuleRegistry()
        registry.register(module, name="Plugin", version="2.0")
        storage = JsonConfigStorage(str(tmp_path), registry)
        assert storage.get_file_path(module) == str(tmp_path / "Plugin.json")

    def test_file_path_falls_back_to_module_name(self, tmp_path, module):
        storage = JsonConfigStorage(str(tmp_path))
        assert storage.get_file_path(module) == str(tmp_path / "storage_plugin.json")

    def test_root_defaults_to_framework_setting(self, tmp_path):
        update_framework_config(config_root=str(tmp_path / "cfg"))
        assert JsonConfigStorage().root_folder == str(tmp_path / "cfg")

    def test_save_is_not_written_until_flush(self, tmp_path, module):
        storage = JsonConfigStorage(str(tmp_path))
        storage.save("Volume", "Audio", 0.5, module)
        assert not storage.exists(module)
        storage.flush(module)
        assert storage.exists(module)

    def test_file_layout(self, tmp_path, module):
        storage = JsonConfigStorage(str(tmp_path))
        storage.save("Volume", "Audio", 0.5, module)
        storage.save("Mode", "", Mode.FAST, module)
        storage.flush()

        with open(storage.get_file_path(module), encoding='utf-8') as f:
            data = json.load(f)

        assert data == {
            "groups": {
                "Audio": {"items": {"Volume": 0.5}},
                "DefaultGroup": {"items": {"Mode": "FAST"}},
            }
        }

    def test_reload_from_disk(self, tmp_path, module):
        writer = JsonConfigStorage(str(tmp_path))
        writer.save("Mode", "General", Mode.SAFE, module)
        writer.flush(module)

        reader = JsonConfigStorage(str(tmp_path))
        assert reader.try_load("Mode", "General", Mode, module) == (True, Mode.SAFE)
        assert reader.try_load("Other", "General", int, module) == (False, None)

    def test_corrupt_file_reads_as_empty(self, tmp_path, module, caplog):
        (tmp_path / "storage_plugin.json").write_text("{not json", encoding='utf-8')
        storage = JsonConfigStorage(str(tmp_path))
        with caplog.at_level(logging.ERROR, logger="markerconf.storage"):
            assert storage.try_load("Volume", "Audio", int, module) == (False, None)
        assert "could not read" in caplog.text

    def test_empty_file_reads_as_empty(self, tmp_path, module):
        (tmp_path / "storage_plugin.json").write_text("", encoding='utf-8')
        storage = JsonConfigStorage(str(tmp_path))
        assert storage.try_load("Volume", "Audio", int, module) == (False, None)

    def test_forget_drops_cache(self, tmp_path, module):
        storage = JsonConfigStorage(str(tmp_path))
        storage.save("Volume", "Audio", 1, module)
        storage.forget(module)
        storage.flush(module)
        assert not storage.exists(module)

    def test_unserializable_value_keeps_previous_file(self, tmp_path, module, caplog):
        storage = JsonConfigStorage(str(tmp_path))
        storage.save("Volume", "Audio", 5, module)
        storage.flush(module)

        storage.save("When", "Audio", datetime.date(2024, 1, 1), module)
        with caplog.at_level(logging.ERROR, logger="markerconf.storage"):
            storage.flush(module)

        assert "failed to write config" in caplog.text
        assert storage.is_dirty(module)
        assert [p.name for p in tmp_path.iterdir()] == ["storage_plugin.json"]
        reader = JsonConfigStorage(str(tmp_path))
        assert reader.try_load("Volume", "Audio", int, module) == (True, 5)
        assert reader.try_load("When", "Audio", str, module) == (False, None)

    def test_successful_flush_clears_dirty(self, tmp_path, module):
        storage = JsonConfigStorage(str(tmp_path))
        storage.save("Volume", "Audio", 5, module)
        assert storage.is_dirty(module)
        storage.flush(module)
        assert not storage.is_dirty(module)
