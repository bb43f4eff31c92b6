import pytest

from ai_translator.exceptions import CircularDependency, MissingDependency, PluginError
from ai_translator.plugin_registry import PluginRegistry
from ai_translator.plugins.base import ObserverPlugin


def make_plugin(plugin_name, depends_on=(), plugin_priority=0, defaults=None):
    class Plugin(ObserverPlugin):
        name = plugin_name
        priority = plugin_priority
        dependencies = tuple(depends_on)
        default_config = defaults or {}

        def subscribe(self):
            return {}

    return Plugin


def registry_with(*plugin_classes):
    registry = PluginRegistry()
    for plugin_class in plugin_classes:
        registry.register(plugin_class())
    return registry


class TestResolveOrder:

    def test_dependencies_come_first(self):
        registry = registry_with(
            make_plugin('c', depends_on=['b'], plugin_priority=10),
            make_plugin('b', depends_on=['a']),
            make_plugin('a'),
        )
        assert [plugin.name for plugin in registry.resolve_order()] == ['a', 'b', 'c']

    def test_independent_plugins_follow_priority(self):
        registry = registry_with(make_plugin('low', plugin_priority=-5), make_plugin('high', plugin_priority=50),
                                 make_plugin('mid'))
        assert [plugin.name for plugin in registry.resolve_order()] == ['high', 'mid', 'low']

    def test_cycle_is_reported_with_its_members(self):
        registry = registry_with(
            make_plugin('a'),
            make_plugin('b', depends_on=['a', 'c']),
            make_plugin('c', depends_on=['b']),
        )
        with pytest.raises(CircularDependency) as excinfo:
            registry.resolve_order()
        assert {'b', 'c'} <= set(excinfo.value.cycle)
        assert 'b' in str(excinfo.value) and 'c' in str(excinfo.value)

    def test_missing_dependency(self):
        registry = registry_with(make_plugin('b', depends_on=['ghost']))
        with pytest.raises(MissingDependency) as excinfo:
            registry.resolve_order()
        assert excinfo.value.dependency == 'ghost'


class TestRegistration:

    def test_duplicate_name_is_rejected(self):
        registry = registry_with(make_plugin('a'))
        with pytest.raises(PluginError):
            registry.register(make_plugin('a')())

    def test_load_from_config_skips_disabled(self):
        registry = PluginRegistry()
        registry.register_class(make_plugin('a', defaults={'size': 1}))
        registry.register_class(make_plugin('b'))
        loaded = registry.load_from_config({'a': {'config': {'size': 5}}, 'b': {'enabled': False}})

        assert [plugin.name for plugin in loaded] == ['a']
        assert registry.get('a').settings.config == {'size': 5}
        assert 'b' not in registry

    def test_unknown_class(self):
        with pytest.raises(PluginError):
            PluginRegistry().create('nope')

    def test_statistics(self):
        registry = registry_with(make_plugin('a'), make_plugin('b', depends_on=['a']))
        stats = registry.statistics()
        assert stats['total'] == 2
        assert stats['by_role'] == {'observer': 2}
        assert stats['with_dependencies'] == 1


class TestTenantOverlay:

    def test_overlay_does_not_touch_the_instance(self):
        registry = registry_with(make_plugin('glossary', defaults={'options': {'case_sensitive': False}}))
        registry.enable_for_tenant('acme', 'glossary', {'options': {'case_sensitive': True}})

        assert registry.config_for('glossary', 'acme') == {'options': {'case_sensitive': True}}
        assert registry.config_for('glossary', 'other') == {'options': {'case_sensitive': False}}
        assert registry.get('glossary').settings.config == {'options': {'case_sensitive': False}}

    def test_disable_for_tenant(self):
        registry = registry_with(make_plugin('a'))
        registry.disable_for_tenant('acme', 'a')
        assert registry.is_enabled_for('a', 'acme') is False
        assert registry.is_enabled_for('a', 'globex') is True
        assert registry.is_enabled_for('a', None) is True

        registry.enable_for_tenant('acme', 'a')
        assert registry.is_enabled_for('a', 'acme') is True
