"""Pytest configuration and shared fixtures."""
import itertools
import sys
import textwrap
import types

import pytest

import markerconf.config as config_module
from markerconf.accessors import AccessorCache
from markerconf.config import FrameworkConfig
from markerconf.storage import MemoryConfigStorage

_module_ids = itertools.count()


class RecordingStorage(MemoryConfigStorage):
    """In-memory storage that records every save and load."""

    def __init__(self):
        super().__init__()
        self.saves = []
        self.loads = []

    def save(self, key, group, value, module):
        self.saves.append((key, group, value))
        super().save(key, group, value, module)

    def try_load(self, key, group, expected_type, module):
        self.loads.append((key, group))
        return super().try_load(key, group, expected_type, module)


@pytest.fixture(autouse=True)
def reset_framework_config():
    """Run every test with default (non-strict) framework settings."""
    original = config_module._framework_config
    config_module._framework_config = FrameworkConfig()

    yield

    config_module._framework_config = original


@pytest.fixture
def cache():
    """A private accessor cache so tests never share descriptors."""
    return AccessorCache()


@pytest.fixture
def storage():
    return RecordingStorage()


@pytest.fixture
def make_module():
    """Build a throw-away plugin module from source text."""
    created = []

    def factory(source, name=None, **namespace):
        name = name or f"plugin_{next(_module_ids)}"
        module = types.ModuleType(name)
        module.__dict__.update(namespace)
        sys.modules[name] = module
        created.append(name)
        exec(textwrap.dedent(source), module.__dict__)
        return module

    yield factory

    for name in created:
        sys.modules.pop(name, None)


@pytest.fixture
def strict_mode():
    """Turn Fatal log lines into raised errors."""
    config_module._framework_config = FrameworkConfig(strict=True)
