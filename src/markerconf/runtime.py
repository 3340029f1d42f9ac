"""
Runtime wiring: one object that owns the accessor cache, the router, the UI
manager and the config manager, and connects them to a module registry.
ModLink methods of loaded modules follow the same registry.

    runtime = Runtime(storage=MemoryConfigStorage())
    runtime.init()
    runtime.load_module(my_plugin, name="MyPlugin", version="1.2.0")
    ...
    runtime.unload_module(my_plugin)
    runtime.dispose()
"""

import logging
from types import ModuleType
from typing import Optional

from markerconf.accessors import AccessorCache
from markerconf.entry import Config
from markerconf.linker import ModLink, ModLinker, ModLinkMarkerHandler
from markerconf.manager import ConfigManager, ConfigMarkerHandler, UIButtonMarkerHandler
from markerconf.registry import ModuleInfo, ModuleRegistry
from markerconf.router import MarkerRouter
from markerconf.storage import ConfigStorage
from markerconf.ui import ConfigUIManager, UIBackend, UIButton

logger = logging.getLogger(__name__)


class Runtime:
    """Explicitly owned service graph; nothing here is module-global state."""

    def __init__(self, registry: Optional[ModuleRegistry] = None,
                 storage: Optional[ConfigStorage] = None,
                 ui_backend: Optional[UIBackend] = None,
                 cache: Optional[AccessorCache] = None):
        self.registry = registry or ModuleRegistry()
        self.cache = cache or AccessorCache()
        self.router = MarkerRouter(self.cache)
        self.ui = ConfigUIManager(ui_backend)
        self.config = ConfigManager(default_storage=storage, ui_manager=self.ui, cache=self.cache)
        self.config_handler = ConfigMarkerHandler(self.config)
        self.button_handler = UIButtonMarkerHandler(self.config)
        self.linker = ModLinker()
        self.link_handler = ModLinkMarkerHandler(self.linker)
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    def init(self) -> None:
        """Register the built-in handlers and start following the registry."""
        if self._initialized:
            logger.warning("Runtime already initialized")
            return
        self.router.register_handler(Config, self.config_handler)
        self.router.register_handler(UIButton, self.button_handler)
        self.router.register_handler(ModLink, self.link_handler)
        self.router.add_scanned_callback(self.config.flush)
        self.router.attach(self.registry)
        self.linker.attach(self.registry)
        self._initialized = True
        logger.info("markerconf runtime initialized")

    def dispose(self) -> None:
        """Unscan every module and disconnect from the registry."""
        if not self._initialized:
            return
        for module in self.router.scanned_modules():
            self.router.unscan_module(module)
        self.router.detach(self.registry)
        self.linker.detach(self.registry)
        self.router.remove_scanned_callback(self.config.flush)
        self.router.unregister_handler(self.config_handler)
        self.router.unregister_handler(self.button_handler)
        self.router.unregister_handler(self.link_handler)
        self.config.flush()
        self._initialized = False
        logger.info("markerconf runtime disposed")

    def load_module(self, module: ModuleType, name: Optional[str] = None,
                    version: Optional[str] = None) -> Optional[ModuleInfo]:
        """Register ``module``; the attached router scans it."""
        if not self._initialized:
            self.init()
        return self.registry.register(module, name, version)

    def unload_module(self, module: ModuleType) -> bool:
        return self.registry.unregister(module)
