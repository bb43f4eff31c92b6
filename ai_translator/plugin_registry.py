"""Plugin registration, dependency ordering and per-tenant overlays."""
import logging
from typing import Any, Dict, Iterator, List, Mapping, Optional, Set, Type, Union

from ai_translator.exceptions import CircularDependency, MissingDependency, PluginError
from ai_translator.plugins.base import MiddlewarePlugin, ObserverPlugin, ProviderPlugin, deep_merge

logger = logging.getLogger(__name__)

Plugin = Union[MiddlewarePlugin, ProviderPlugin, ObserverPlugin]


class PluginRegistry:
    """
    Holds plugins keyed by name.

    Tenant overlays (enable/disable flags and configuration overrides) are
    stored beside the plugins and never written into a registered
    instance, so one registry can serve requests of different tenants.
    """

    def __init__(self):
        self._plugins: Dict[str, Plugin] = {}
        self._classes: Dict[str, Type] = {}
        self._tenants: Dict[str, Dict[str, Dict[str, Any]]] = {}

    def register(self, plugin: Plugin) -> Plugin:
        if plugin.name in self._plugins:
            raise PluginError(f"Plugin '{plugin.name}' is already registered")
        self._plugins[plugin.name] = plugin
        logger.debug("Registered %s plugin '%s' (priority %s)", plugin.role.value, plugin.name, plugin.priority)
        return plugin

    def unregister(self, name: str) -> None:
        self._plugins.pop(name, None)

    def get(self, name: str) -> Optional[Plugin]:
        return self._plugins.get(name)

    def names(self) -> List[str]:
        return list(self._plugins)

    def __contains__(self, name: str) -> bool:
        return name in self._plugins

    def __len__(self) -> int:
        return len(self._plugins)

    def __iter__(self) -> Iterator[Plugin]:
        return iter(list(self._plugins.values()))

    # --- factories ---

    def register_class(self, plugin_class: Type, name: Optional[str] = None) -> None:
        self._classes[name or plugin_class.name] = plugin_class

    def create(self, name: str, config: Optional[Mapping[str, Any]] = None) -> Plugin:
        if name not in self._classes:
            raise PluginError(f"No plugin class registered under '{name}'")
        return self._classes[name](config)

    def load(self, name: str, config: Optional[Mapping[str, Any]] = None) -> Plugin:
        return self.register(self.create(name, config))

    def load_from_config(self, plugins_config: Mapping[str, Any]) -> List[Plugin]:
        """
        Instantiate plugins from a ``name -> settings`` mapping.

        Settings may carry ``enabled: false`` to skip a plugin and a nested
        ``config`` mapping; otherwise the settings themselves are the config.
        """
        loaded = []
        for name, settings in plugins_config.items():
            settings = settings or {}
            if settings.get('enabled', True) is False or name in self._plugins:
                continue
            config = settings.get('config', {k: v for k, v in settings.items() if k != 'enabled'})
            loaded.append(self.load(name, config))
        return loaded

    # --- ordering ---

    def by_priority(self) -> List[Plugin]:
        return sorted(self._plugins.values(), key=lambda plugin: -plugin.priority)

    def dependency_graph(self) -> Dict[str, List[str]]:
        return {name: list(plugin.dependencies) for name, plugin in self._plugins.items()}

    def resolve_order(self) -> List[Plugin]:
        """
        Order plugins so every plugin comes after its dependencies.

        Independent plugins keep priority order (highest first, then
        registration order).

        Raises:
            MissingDependency: A dependency is not registered.
            CircularDependency: The graph has a cycle; ``cycle`` lists it.
        """
        order: List[Plugin] = []
        visited: Set[str] = set()
        path: List[str] = []

        def visit(name: str) -> None:
            if name in visited:
                return
            if name in path:
                raise CircularDependency(path[path.index(name):] + [name])
            plugin = self._plugins[name]
            path.append(name)
            for dependency in plugin.dependencies:
                if dependency not in self._plugins:
                    raise MissingDependency(name, dependency)
                visit(dependency)
            path.pop()
            visited.add(name)
            order.append(plugin)

        for plugin in self.by_priority():
            visit(plugin.name)
        return order

    # --- tenants ---

    def enable_for_tenant(self, tenant_id: str, name: str, config: Optional[Mapping[str, Any]] = None) -> None:
        entry = self._tenants.setdefault(tenant_id, {}).setdefault(name, {'enabled': True, 'config': {}})
        entry['enabled'] = True
        if config:
            entry['config'] = deep_merge(entry['config'], config)

    def disable_for_tenant(self, tenant_id: str, name: str) -> None:
        entry = self._tenants.setdefault(tenant_id, {}).setdefault(name, {'enabled': True, 'config': {}})
        entry['enabled'] = False

    def is_enabled_for(self, name: str, tenant_id: Optional[str]) -> bool:
        if tenant_id is None:
            return True
        return self._tenants.get(tenant_id, {}).get(name, {}).get('enabled', True)

    def config_for(self, name: str, tenant_id: Optional[str] = None) -> Dict[str, Any]:
        """Effective configuration of a plugin for a tenant, as a fresh dict."""
        plugin = self._plugins.get(name)
        if plugin is None:
            raise PluginError(f"Plugin '{name}' is not registered")
        overrides = self._tenants.get(tenant_id, {}).get(name, {}).get('config') if tenant_id else None
        return deep_merge(plugin.settings.config, overrides)

    def statistics(self) -> Dict[str, Any]:
        by_role: Dict[str, int] = {}
        for plugin in self._plugins.values():
            by_role[plugin.role.value] = by_role.get(plugin.role.value, 0) + 1
        return {
            'total': len(self._plugins),
            'by_role': by_role,
            'with_dependencies': sum(1 for plugin in self._plugins.values() if plugin.dependencies),
            'tenants': len(self._tenants),
            'registered_classes': len(self._classes),
        }
