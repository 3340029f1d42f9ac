"""
Tests for ConfigEntry runtime semantics.

Tests cover:
- Construction and key identity
- Debounce, rollback and notification order
- Reset
- Reentrancy guards
- SyncFromFile / SyncFromData
- Type-erased access
"""

import logging
import types

import pytest

from markerconf.entry import DEFAULT_GROUP, BaseEntry, ButtonEntry, ConfigEntry, EntryEvent
from markerconf.errors import ArgumentError, InvalidOperationError


class Backing:
    """Mutable backing value that counts setter calls."""

    def __init__(self, value):
        self.value = value
        self.set_calls = []

    def get(self):
        return self.value

    def set(self, value):
        self.set_calls.append(value)
        self.value = value


class RangeMarker:
    """Validity predicate: value must lie in [low, high]."""

    def __init__(self, low, high):
        self.low = low
        self.high = high

    def is_valid(self, entry):
        return self.low <= entry.get_value() <= self.high


@pytest.fixture
def module():
    return types.ModuleType("entry_plugin")


def make_entry(module, backing, default=None, change=None, ui_marker=None, storage=None, value_type=int):
    entry = ConfigEntry[value_type](
        module, "Volume", "Audio",
        backing.value if default is None else default,
        backing.get, backing.set, change,
        ui_marker=ui_marker,
    )
    entry.storage = storage
    return entry


class TestConstruction:

    def test_key(self, module):
        entry = make_entry(module, Backing(1))
        assert entry.key == "Audio.Volume"
        assert entry.key == BaseEntry.make_key("Audio", "Volume")

    def test_key_is_read_only(self, module):
        entry = make_entry(module, Backing(1))
        with pytest.raises(AttributeError):
            entry.key = "Other.Key"

    def test_default_group(self, module):
        backing = Backing(1)
        entry = ConfigEntry[int](module, "Volume", "", 1, backing.get, backing.set)
        assert entry.group == DEFAULT_GROUP

    def test_types(self, module):
        entry = make_entry(module, Backing(1))
        assert entry.ui_type is int
        assert entry.logical_type is int
        assert isinstance(entry, ConfigEntry[int])
        assert not isinstance(entry, ConfigEntry[str])

    def test_unparameterized_entry_rejected(self, module):
        backing = Backing(1)
        with pytest.raises(ArgumentError):
            ConfigEntry(module, "Volume", "Audio", 1, backing.get, backing.set)

    def test_explicit_default_is_not_rederived(self, module):
        backing = Backing(7)
        entry = make_entry(module, backing, default=5)
        assert entry.default_value == 5
        assert entry.current_value == 5
        assert entry.get_typed_value() == 7


class TestSetTypedValue:

    def test_set_calls_setter_and_saves(self, module, storage):
        backing = Backing(1)
        entry = make_entry(module, backing, storage=storage)
        entry.set_typed_value(3)
        assert backing.set_calls == [3]
        assert entry.current_value == 3
        assert storage.saves == [("Volume", "Audio", 3)]

    def test_equal_value_is_debounced(self, module, storage):
        backing = Backing(1)
        events = []
        entry = make_entry(module, backing, storage=storage, change=events.append)
        entry.on_changed.subscribe(events.append)

        entry.set_typed_value(entry.current_value)

        assert backing.set_calls == []
        assert storage.saves == []
        assert events == []

    def test_notification_order(self, module):
        order = []
        backing = Backing(1)
        entry = make_entry(module, backing, change=lambda v: order.append(("change", v)))
        entry.on_changed_typed.subscribe(lambda v: order.append(("typed", v)))
        entry.on_changed.subscribe(lambda v: order.append(("erased", v)))
        entry.on_changed_with_self.subscribe(lambda e, v: order.append(("self", v, e is entry)))

        entry.set_typed_value(2)

        assert order == [("typed", 2), ("erased", 2), ("self", 2, True), ("change", 2)]

    def test_setter_failure_rolls_back(self, module, storage):
        events = []

        def failing_setter(value):
            raise RuntimeError("rejected")

        entry = ConfigEntry[int](module, "Volume", "Audio", 1, lambda: 1, failing_setter, events.append)
        entry.storage = storage
        entry.on_changed.subscribe(events.append)

        with pytest.raises(RuntimeError, match="rejected"):
            entry.set_typed_value(5)

        assert entry.current_value == 1
        assert events == []
        assert storage.saves == []

    def test_subscriber_failure_does_not_stop_others(self, module, caplog):
        seen = []
        entry = make_entry(module, Backing(1))
        entry.on_changed.subscribe(lambda v: 1 / 0)
        entry.on_changed.subscribe(seen.append)

        with caplog.at_level(logging.WARNING, logger="markerconf.entry"):
            entry.set_typed_value(2)

        assert seen == [2]
        assert "subscriber" in caplog.text

    def test_save_failure_is_logged(self, module, caplog):
        class BrokenStorage:
            def save(self, key, group, value, module):
                raise OSError("disk full")

        backing = Backing(1)
        entry = make_entry(module, backing, storage=BrokenStorage())
        with caplog.at_level(logging.ERROR, logger="markerconf.entry"):
            entry.set_typed_value(2)
        assert entry.current_value == 2
        assert "failed to save" in caplog.text


class TestReset:

    def test_reset_twice_sets_once(self, module):
        backing = Backing(1)
        entry = make_entry(module, backing)
        entry.set_typed_value(4)
        backing.set_calls.clear()

        assert entry.reset() is True
        assert entry.reset() is False
        assert backing.set_calls == [1]

    def test_reset_at_default_is_noop(self, module):
        backing = Backing(1)
        entry = make_entry(module, backing)
        assert entry.reset() is False
        assert backing.set_calls == []


class TestReentrancy:

    def test_reentrant_get_returns_default(self, module, caplog):
        holder = {}

        def getter():
            return holder['entry'].get_typed_value() + 100

        entry = ConfigEntry[int](module, "Loop", "G", 1, getter, lambda v: None)
        holder['entry'] = entry

        with caplog.at_level(logging.CRITICAL, logger="markerconf.entry"):
            assert entry.get_typed_value() == 101
        assert "re-entered its own getter" in caplog.text

    def test_reentrant_set_is_ignored(self, module, caplog):
        holder = {}
        calls = []

        def setter(value):
            calls.append(value)
            holder['entry'].set_typed_value(value + 1)

        entry = ConfigEntry[int](module, "Loop", "G", 1, lambda: 1, setter)
        holder['entry'] = entry

        with caplog.at_level(logging.CRITICAL, logger="markerconf.entry"):
            entry.set_typed_value(2)

        assert calls == [2]
        assert entry.current_value == 2
        assert "re-entered its own setter" in caplog.text

    def test_reentrancy_raises_in_strict_mode(self, module, strict_mode):
        holder = {}
        entry = ConfigEntry[int](module, "Loop", "G", 1, lambda: holder['entry'].get_typed_value(), lambda v: None)
        holder['entry'] = entry
        with pytest.raises(InvalidOperationError):
            entry.get_typed_value()

    def test_guard_released_after_failure(self, module):
        def failing_getter():
            raise RuntimeError("nope")

        entry = ConfigEntry[int](module, "G", "G", 1, failing_getter, lambda v: None)
        with pytest.raises(RuntimeError):
            entry.get_typed_value()
        with pytest.raises(RuntimeError):
            entry.get_typed_value()


class TestSyncFromFile:

    def test_missing_value_saves_baseline(self, module, storage):
        entry = make_entry(module, Backing(3), storage=storage)
        entry.sync_from_file()
        assert storage.saves == [("Volume", "Audio", 3)]

    def test_equal_value_is_noop(self, module, storage):
        backing = Backing(3)
        storage.save("Volume", "Audio", 3, module)
        storage.saves.clear()
        entry = make_entry(module, backing, storage=storage)

        entry.sync_from_file()

        assert backing.set_calls == []
        assert storage.saves == []

    def test_stored_value_is_applied(self, module, storage):
        backing = Backing(3)
        storage.save("Volume", "Audio", 8, module)
        entry = make_entry(module, backing, storage=storage)

        entry.sync_from_file()

        assert backing.value == 8
        assert entry.current_value == 8

    def test_invalid_stored_value_reverts(self, module, storage, caplog):
        backing = Backing(3)
        storage.save("Volume", "Audio", 50, module)
        entry = make_entry(module, backing, storage=storage, ui_marker=RangeMarker(0, 10))

        with caplog.at_level(logging.WARNING, logger="markerconf.entry"):
            entry.sync_from_file()

        assert entry.current_value == 3
        assert backing.value == 3
        assert "invalid" in caplog.text

    def test_failing_apply_heals_storage(self, module, storage):
        def setter(value):
            if value > 10:
                raise ValueError("too large")

        storage.save("Volume", "Audio", 50, module)
        entry = ConfigEntry[int](module, "Volume", "Audio", 3, lambda: 3, setter)
        entry.storage = storage

        entry.sync_from_file()

        assert entry.current_value == 3
        assert storage.snapshot(module)["Audio"]["Volume"] == 3

    def test_load_failure_keeps_memory_value(self, module, caplog):
        class BrokenStorage:
            def try_load(self, key, group, expected_type, module):
                raise OSError("unreadable")

        entry = make_entry(module, Backing(3), storage=BrokenStorage())
        with caplog.at_level(logging.ERROR, logger="markerconf.entry"):
            entry.sync_from_file()
        assert entry.current_value == 3
        assert "failed to load" in caplog.text


class TestSyncFromData:

    def test_out_of_band_change_is_persisted(self, module, storage):
        backing = Backing(3)
        entry = make_entry(module, backing, storage=storage)
        backing.value = 6

        entry.sync_from_data()

        assert entry.current_value == 6
        assert storage.saves[-1] == ("Volume", "Audio", 6)

    def test_no_change_is_noop(self, module, storage):
        entry = make_entry(module, Backing(3), storage=storage)
        entry.sync_from_data()
        assert storage.saves == []

    def test_invalid_out_of_band_value_is_rolled_back(self, module, storage):
        backing = Backing(3)
        entry = make_entry(module, backing, storage=storage, ui_marker=RangeMarker(0, 10))
        backing.value = 99

        entry.sync_from_data()

        assert entry.current_value == 3
        assert backing.value == 3


class TestErasedAccess:

    def test_get_and_set_value(self, module):
        backing = Backing(1)
        entry = make_entry(module, backing)
        entry.set_value(4)
        assert entry.get_value() == 4

    def test_set_value_type_check(self, module):
        entry = make_entry(module, Backing(1))
        with pytest.raises(ArgumentError):
            entry.set_value("four")

    def test_int_accepted_for_float(self, module):
        backing = Backing(1.0)
        entry = make_entry(module, backing, value_type=float)
        entry.set_value(2)
        assert backing.value == 2.0
        assert isinstance(backing.value, float)

    def test_is_valid_without_marker(self, module):
        assert make_entry(module, Backing(1)).is_valid()


class TestEntryEvent:

    def test_subscribe_once(self):
        event = EntryEvent("test")
        seen = []
        event.subscribe(seen.append)
        event.subscribe(seen.append)
        event.fire(1)
        assert seen == [1]
        assert len(event) == 1

    def test_unsubscribe(self):
        event = EntryEvent("test")
        seen = []
        event.subscribe(seen.append)
        event.unsubscribe(seen.append)
        event.fire(1)
        assert seen == []


class TestButtonEntry:

    def test_invoke(self, module):
        calls = []
        button = ButtonEntry(module, "Reload", lambda: calls.append(1), group="Tools")
        button.invoke()
        assert calls == [1]
        assert button.key == "Tools.Reload"

    def test_failing_action_is_logged(self, module, caplog):
        button = ButtonEntry(module, "Crash", lambda: 1 / 0)
        with caplog.at_level(logging.ERROR, logger="markerconf.entry"):
            button.invoke()
        assert "Crash" in caplog.text

    def test_action_must_be_callable(self, module):
        with pytest.raises(ArgumentError):
            ButtonEntry(module, "Nope", None)
