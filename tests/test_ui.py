"""
Tests for UI markers and the UI handoff manager.

Tests cover:
- Validity predicates of the built-in markers
- Marker / entry kind checks
- Deferred and immediate building
- Value sync and module removal
"""

import enum
import logging
import types

import pytest

from markerconf.entry import ButtonEntry, ConfigEntry
from markerconf.errors import ArgumentError
from markerconf.ui import (
    ConfigUIManager,
    UIBackend,
    UIButton,
    UIDropdown,
    UIEnumChoice,
    UIFloatSlider,
    UIIntSlider,
    UIKeyBind,
    UIToggle,
)


class Color(enum.Enum):
    RED = 1
    GREEN = 2


class RecordingBackend(UIBackend):
    def __init__(self):
        self.built = []
        self.synced = []
        self.removed = []

    def build(self, widget, entry, marker):
        self.built.append((widget, entry.key))

    def sync_value(self, entry, value):
        self.synced.append((entry.key, value))

    def remove_module(self, module):
        self.removed.append(module)


@pytest.fixture
def module():
    return types.ModuleType("ui_plugin")


@pytest.fixture
def backend():
    return RecordingBackend()


def make_entry(module, value, name="Value", group="General", value_type=None):
    state = {'value': value}
    value_type = value_type or type(value)
    return ConfigEntry[value_type](module, name, group, value,
                                   lambda: state['value'], lambda v: state.update(value=v))


class TestMarkerValidity:

    def test_float_slider_range(self, module):
        slider = UIFloatSlider(0.0, 1.0)
        entry = make_entry(module, 0.5)
        assert slider.is_valid(entry)
        entry.set_typed_value(1.5)
        assert not slider.is_valid(entry)

    def test_float_slider_rejects_other_types(self, module):
        assert not UIFloatSlider(0, 10).is_valid(make_entry(module, 5))

    def test_int_slider(self, module):
        slider = UIIntSlider(0, 10)
        assert slider.is_valid(make_entry(module, 5))
        assert not slider.is_valid(make_entry(module, 11))

    def test_toggle_and_key_bind(self, module):
        assert UIToggle().is_valid(make_entry(module, True))
        assert not UIToggle().is_valid(make_entry(module, 1))
        assert UIKeyBind().is_valid(make_entry(module, "F5"))

    def test_dropdown_requires_enum(self, module):
        assert UIDropdown().is_valid(make_entry(module, Color.RED, value_type=Color))
        assert not UIDropdown().is_valid(make_entry(module, "RED"))

    def test_enum_choice(self, module):
        choice = UIEnumChoice()
        assert choice.to_ui(Color.GREEN) == "GREEN"
        assert choice.from_ui("RED", Color) is Color.RED
        with pytest.raises(ValueError):
            choice.from_ui("BLUE", Color)


class TestBuildUI:

    def test_wrong_entry_kind(self, module, backend):
        entry = make_entry(module, 1)
        with pytest.raises(ArgumentError):
            UIButton("Press").build_ui(entry, backend)

    def test_button_widget(self, module, backend):
        button = ButtonEntry(module, "Press", lambda: None)
        UIButton("Press").build_ui(button, backend)
        assert backend.built == [("button", "DefaultGroup.Press")]


class TestConfigUIManager:

    def test_deferred_until_backend(self, module, backend):
        manager = ConfigUIManager()
        manager.register_entry(make_entry(module, 0.5, "Volume"), UIFloatSlider(0, 1))
        assert manager.backend is None

        manager.set_backend(backend)

        assert backend.built == [("float_slider", "General.Volume")]

    def test_immediate_with_backend(self, module, backend):
        manager = ConfigUIManager(backend)
        manager.register_entry(make_entry(module, True, "Muted"), UIToggle())
        assert backend.built == [("toggle", "General.Muted")]

    def test_value_changes_reach_backend(self, module, backend):
        manager = ConfigUIManager(backend)
        entry = make_entry(module, 1, "Count")
        manager.register_entry(entry, UIIntSlider(0, 5))

        entry.set_typed_value(3)

        assert backend.synced == [("General.Count", 3)]

    def test_groups_and_entries(self, module):
        manager = ConfigUIManager()
        manager.register_entry(make_entry(module, 1, "A", "First"), UIIntSlider(0, 5))
        manager.register_entry(make_entry(module, 2, "B", "Second"), UIIntSlider(0, 5))

        assert manager.get_groups(module) == ["First", "Second"]
        assert [item.entry.display_name for item in manager.entries(module, "Second")] == ["B"]
        assert len(manager.entries(module)) == 2
        assert manager.modules() == [module]

    def test_unregister(self, module, backend):
        manager = ConfigUIManager(backend)
        entry = make_entry(module, 1, "Count")
        manager.register_entry(entry, UIIntSlider(0, 5))
        seen = []
        manager.add_unregistered_callback(seen.append)

        assert manager.unregister(module) is True

        assert backend.removed == [module]
        assert seen == [module]
        assert manager.entries(module) == []
        entry.set_typed_value(4)
        assert backend.synced == []

    def test_unregister_unknown_module(self, module):
        assert ConfigUIManager().unregister(module) is False

    def test_reset_module(self, module):
        manager = ConfigUIManager()
        changed = make_entry(module, 1, "A")
        untouched = make_entry(module, 2, "B")
        manager.register_entry(changed, UIIntSlider(0, 5))
        manager.register_entry(untouched, UIIntSlider(0, 5))
        changed.set_typed_value(4)

        assert manager.reset_module(module) == 1
        assert changed.current_value == 1

    def test_build_failure_is_logged(self, module, caplog):
        class BrokenBackend(UIBackend):
            def build(self, widget, entry, marker):
                raise RuntimeError("no canvas")

        manager = ConfigUIManager(BrokenBackend())
        with caplog.at_level(logging.ERROR, logger="markerconf.ui"):
            item = manager.register_entry(make_entry(module, 1, "A"), UIIntSlider(0, 5))
        assert item in manager.entries(module)
        assert "Failed to build UI" in caplog.text

    def test_registered_callback(self, module):
        manager = ConfigUIManager()
        seen = []
        manager.add_registered_callback(lambda m, item: seen.append((m, item.entry.key)))
        manager.register_entry(make_entry(module, 1, "A"), UIIntSlider(0, 5))
        assert seen == [(module, "General.A")]
