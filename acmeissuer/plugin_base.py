import importlib
import logging
import pkgutil

logger = logging.getLogger(__name__)


class PluginRegistry:
    """A central place to register and look up plugins by their configuration name.

    Plugins are stored in the registry of the base class that they derive from.
    A base class should claim its registry through :meth:`get_registry` before
    its plugins are registered, so that plugins deriving from intermediate classes
    end up in the same registry.
    """

    PROJECT_BASE = "acmeissuer"

    _registry_map = dict()

    def __init__(self):
        self._subclasses = dict()

    @classmethod
    def load_plugins(cls, path: str) -> None:
        """Imports all modules of the given subpackage so that their plugins get registered.

        :param path: The subpackage to load plugins from, e.g. *dns*.
        """
        package_name = f"{cls.PROJECT_BASE}.{path}"
        package = importlib.import_module(package_name)

        for module in pkgutil.iter_modules(package.__path__):
            if module.name.startswith("_"):
                continue

            module_name = f"{package_name}.{module.name}"
            logger.debug("Loading %s", module_name)
            try:
                importlib.import_module(module_name)
            except ImportError as e:
                logger.warning("Could not load plugin module %s: %s", module_name, e)

    @classmethod
    def get_registry(cls, plugin_parent_cls: type) -> "PluginRegistry":
        """Gets the plugin registry for the given parent class.

        :param plugin_parent_cls: The parent class.
        :return: The plugin registry for the given parent class.
        """
        return cls._registry_map.setdefault(plugin_parent_cls, PluginRegistry())

    @classmethod
    def register_plugin(cls, config_name):
        """Decorator that registers a class as a plugin under the given name.

        The name is used to refer to the class in config files.

        :param config_name: The plugin's name in config files.
        :return: The registered plugin class.
        """

        def deco(plugin_cls):
            for registered_parent, registry_ in cls._registry_map.items():
                if issubclass(plugin_cls, registered_parent):
                    registry = registry_
                    break
            else:
                registry = cls.get_registry(plugin_cls.__mro__[1])

            registry._subclasses[config_name] = plugin_cls

            return plugin_cls

        return deco

    def config_mapping(self) -> dict[str, type]:
        """Maps plugin config names to the registered classes."""
        return self._subclasses

    def get_plugin(self, config_name) -> type:
        """Queries the registry for a plugin by config name.

        :param config_name: The plugin's config name.
        :raises: :class:`ValueError` If no plugin is registered by the given name.
        :return: The plugin class.
        """
        if config_name not in (plugin_names := self._subclasses.keys()):
            raise ValueError(
                f"The plugin {config_name} has not been registered. Valid options: "
                f"{', '.join(plugin_names)}."
            )

        return self._subclasses[config_name]
