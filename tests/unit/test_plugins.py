"""
Unit tests for sandboxed template plugins.

Tests cover:
- Registration (manifest validation, duplicates, code scanning)
- Validation plugins (bool and mapping outputs)
- Generation plugins
- Failure isolation and metrics, including overlapping executions
- Enabling, disabling and listing
"""

import threading

import pytest

from rulesmith.errors import StructuralError
from rulesmith.plugins import PluginCategory, PluginState, TemplatePluginManager
from rulesmith.sandbox import Sandbox, SandboxMetrics, SandboxResult
from rulesmith.schema import BuildContext, RuleSet, Severity, Template


# =============================================================================
# Test Fixtures
# =============================================================================


def manifest(plugin_id: str, *categories: str) -> dict:
    """A minimal plugin manifest."""
    return {
        "id": plugin_id,
        "name": plugin_id.title(),
        "categories": list(categories or ["validation"]),
    }


@pytest.fixture
def plugins(sandbox: Sandbox) -> TemplatePluginManager:
    """Return a plugin manager on the test sandbox."""
    return TemplatePluginManager(sandbox)


# =============================================================================
# Registration
# =============================================================================


class TestRegistration:
    """Tests for register_plugin()."""

    def test_register(self, plugins: TemplatePluginManager) -> None:
        """Registered plugins are ready and listed."""
        plugin = plugins.register_plugin(manifest("ok"), "True", {"limit": 3})
        assert plugin.state == PluginState.READY
        assert plugin.config == {"limit": 3}
        assert [p.manifest.id for p in plugins.list_plugins()] == ["ok"]

    def test_invalid_manifest(self, plugins: TemplatePluginManager) -> None:
        """Manifests need an id and at least one category."""
        with pytest.raises(StructuralError):
            plugins.register_plugin({"id": "bad", "name": "Bad", "categories": []}, "True")
        with pytest.raises(StructuralError):
            plugins.register_plugin({**manifest("bad"), "version": "one"}, "True")

    def test_duplicate(self, plugins: TemplatePluginManager) -> None:
        """Plugin ids are unique."""
        plugins.register_plugin(manifest("ok"), "True")
        with pytest.raises(StructuralError):
            plugins.register_plugin(manifest("ok"), "True")

    def test_blocked_code(self, plugins: TemplatePluginManager) -> None:
        """Code with blocking findings is refused at registration."""
        with pytest.raises(StructuralError) as exc_info:
            plugins.register_plugin(manifest("evil"), "import os\nos.system('id')")
        assert "Import of restricted module 'os'" in exc_info.value.details
        assert plugins.get_plugin("evil") is None

    def test_unregister(self, plugins: TemplatePluginManager) -> None:
        """Unregistered plugins are gone."""
        plugins.register_plugin(manifest("ok"), "True")
        assert plugins.unregister_plugin("ok")
        assert not plugins.unregister_plugin("ok")


# =============================================================================
# Execution
# =============================================================================


class TestValidationPlugins:
    """Tests for execute_validation_plugins()."""

    def test_bool_results(
        self, plugins: TemplatePluginManager, base_template: Template
    ) -> None:
        """False rejects the template; True adds nothing."""
        plugins.register_plugin(manifest("yes"), "True")
        plugins.register_plugin(manifest("no"), "len(template['rules']['deny']) > 5")

        result = plugins.execute_validation_plugins(base_template)

        assert not result.is_valid
        assert [e.message for e in result.errors] == ["Plugin no rejected the template"]
        assert result.errors[0].rule_id == "no"
        assert result.errors[0].category == "plugin"
        assert result.performance.custom_rules_validated == 2

    def test_mapping_result(
        self, plugins: TemplatePluginManager, base_template: Template
    ) -> None:
        """Mappings report errors and warnings with severities."""
        code = (
            "result = {\n"
            "    'errors': [] if build_context['environment'] == 'production' else ['not prod'],\n"
            "    'warnings': [{'message': 'few rules', 'field': 'rules', 'severity': 'info'}],\n"
            "}\n"
        )
        plugins.register_plugin(manifest("env"), code)

        dev = plugins.execute_validation_plugins(base_template, BuildContext())
        prod = plugins.execute_validation_plugins(
            base_template, BuildContext(environment="production")
        )

        assert [e.message for e in dev.errors] == ["not prod"]
        assert dev.errors[0].severity == Severity.ERROR
        assert prod.is_valid
        assert prod.warnings[0].field == "rules"
        assert prod.warnings[0].severity == Severity.INFO

    def test_config_visible(
        self, plugins: TemplatePluginManager, base_template: Template
    ) -> None:
        """The plugin's configuration is exposed as config."""
        plugins.register_plugin(
            manifest("limit"),
            "len(template['rules']['deny']) <= config['max']",
            {"max": 0},
        )
        assert not plugins.execute_validation_plugins(base_template).is_valid

    def test_failing_plugin_contributes_nothing(
        self, plugins: TemplatePluginManager, base_template: Template
    ) -> None:
        """A crashing plugin is counted and skipped."""
        plugins.register_plugin(manifest("crash"), "1 / 0")
        plugins.register_plugin(manifest("no"), "False")

        result = plugins.execute_validation_plugins(base_template)

        assert [e.rule_id for e in result.errors] == ["no"]
        metrics = plugins.get_plugin_metrics("crash")
        assert metrics.executions == 1
        assert metrics.failures == 1
        assert metrics.successes == 0

    def test_malformed_output(
        self, plugins: TemplatePluginManager, base_template: Template
    ) -> None:
        """Outputs of the wrong shape count as failures."""
        plugins.register_plugin(manifest("odd"), "[1, 2, 3]")
        result = plugins.execute_validation_plugins(base_template)
        assert result.is_valid
        metrics = plugins.get_plugin_metrics("odd")
        assert (metrics.successes, metrics.failures) == (0, 1)

    def test_selected_ids(
        self, plugins: TemplatePluginManager, base_template: Template
    ) -> None:
        """plugin_ids restricts which plugins run."""
        plugins.register_plugin(manifest("no"), "False")
        plugins.register_plugin(manifest("yes"), "True")
        result = plugins.execute_validation_plugins(base_template, plugin_ids=["yes"])
        assert result.is_valid


class TestGenerationPlugins:
    """Tests for execute_generation_plugins()."""

    def test_generated_rules_merged(
        self, plugins: TemplatePluginManager, base_template: Template
    ) -> None:
        """Generated patterns are merged in registration order."""
        plugins.register_plugin(
            manifest("env-deny", "generation"),
            "result = {'deny': ['debug=' + build_context['environment']]}",
        )
        plugins.register_plugin(manifest("ask", "generation"), "{'ask': ['git push']}")

        rules = plugins.execute_generation_plugins(base_template, BuildContext())

        assert rules == RuleSet(deny=["eval(", "debug=development"], ask=["git push"])

    def test_category_filter(
        self, plugins: TemplatePluginManager, base_template: Template
    ) -> None:
        """Validation-only plugins do not generate."""
        plugins.register_plugin(manifest("check"), "{'deny': ['x']}")
        assert plugins.execute_generation_plugins(base_template) == base_template.rules

    def test_malformed_generation(
        self, plugins: TemplatePluginManager, base_template: Template
    ) -> None:
        """Outputs that are not rule patches are ignored."""
        plugins.register_plugin(manifest("bad", "generation"), "{'block': ['x']}")
        assert plugins.execute_generation_plugins(base_template) == base_template.rules
        assert plugins.get_plugin_metrics("bad").failures == 1


# =============================================================================
# State and Metrics
# =============================================================================


class TestStateAndMetrics:
    """Tests for plugin state and metrics."""

    def test_disabled_plugins_skipped(
        self, plugins: TemplatePluginManager, base_template: Template
    ) -> None:
        """Disabled plugins do not run."""
        plugins.register_plugin(manifest("no"), "False")
        assert plugins.set_plugin_state("no", enabled=False)
        assert plugins.execute_validation_plugins(base_template).is_valid
        assert plugins.get_plugin_metrics("no").executions == 0

        plugins.set_plugin_state("no", enabled=True)
        assert not plugins.execute_validation_plugins(base_template).is_valid

    def test_unknown_plugin(self, plugins: TemplatePluginManager) -> None:
        """Unknown ids are reported, not raised."""
        assert not plugins.set_plugin_state("ghost", enabled=False)
        assert plugins.get_plugin_metrics("ghost") is None

    def test_list_by_category(self, plugins: TemplatePluginManager) -> None:
        """Listing can filter by category."""
        plugins.register_plugin(manifest("check"), "True")
        plugins.register_plugin(manifest("gen", "generation"), "{}")
        plugins.register_plugin(manifest("both", "validation", "generation"), "True")
        generation = plugins.list_plugins(PluginCategory.GENERATION)
        assert [p.manifest.id for p in generation] == ["gen", "both"]

    def test_all_metrics(
        self, plugins: TemplatePluginManager, base_template: Template
    ) -> None:
        """Metrics accumulate per plugin."""
        plugins.register_plugin(manifest("yes"), "True")
        plugins.execute_validation_plugins(base_template)
        plugins.execute_validation_plugins(base_template)
        metrics = plugins.get_all_metrics()
        assert metrics["yes"].executions == 2
        assert metrics["yes"].successes == 2
        assert metrics["yes"].last_execution is not None

    def test_concurrent_executions_counted(
        self,
        plugins: TemplatePluginManager,
        base_template: Template,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Counters stay exact when executions overlap."""
        plugins.register_plugin(manifest("busy"), "True")
        plugins.register_plugin(manifest("garbled"), "'not a verdict'")

        def fake_execute(code, context=None, timeout_ms=None):
            value = True if code == "True" else "not a verdict"
            return SandboxResult(success=True, result=value, metrics=SandboxMetrics(1.0))

        monkeypatch.setattr(plugins.sandbox, "execute", fake_execute)

        def run() -> None:
            for _ in range(50):
                plugins.execute_validation_plugins(base_template)

        threads = [threading.Thread(target=run) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        metrics = plugins.get_all_metrics()
        assert metrics["busy"].executions == 200
        assert metrics["busy"].successes == 200
        assert metrics["garbled"].executions == 200
        assert metrics["garbled"].failures == 200
        assert metrics["garbled"].successes == 0
        assert metrics["busy"].total_execution_ms == pytest.approx(200.0)
