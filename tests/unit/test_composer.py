"""
Unit tests for the template composer.

Tests cover:
- Empty sets, single templates and idempotence
- Deterministic ordering independent of input order
- Cycle detection before merging
- Conflict arbitration (error, warn, ignore)
- Composition from config: level order, conditions, missing members
- Composition pre-flight validation and diffs
"""

import itertools
import logging
from datetime import UTC, datetime, timedelta

import pytest

from rulesmith.composition import TemplateComposer, find_cycle
from rulesmith.errors import (
    ERROR_COMPOSITION_EMPTY,
    CircularReferenceError,
    CompositionError,
    TemplateNotFoundError,
)
from rulesmith.schema import (
    BuildContext,
    CompositionConfig,
    CompositionMetadata,
    CompositionTemplate,
    ConditionType,
    ConflictResolution,
    ConflictStrategy,
    ExtensionCondition,
    InheritanceLevel,
    InheritanceMetadata,
    RulePatch,
    RuleSet,
    Template,
    TemplateExtension,
    TemplateScope,
    VersionCompatibility,
)
from rulesmith.store import TemplateStore


# =============================================================================
# Test Fixtures
# =============================================================================

T0 = datetime(2024, 1, 1, tzinfo=UTC)


def make_template(
    template_id: str,
    level: InheritanceLevel = InheritanceLevel.BASE,
    minutes: int = 0,
    **kwargs,
) -> Template:
    """Build a template at a level with a fixed creation time."""
    stamp = T0 + timedelta(minutes=minutes)
    inheritance = kwargs.pop("inheritance", InheritanceMetadata(level=level))
    return Template(
        id=template_id,
        name=template_id.title(),
        inheritance=inheritance,
        created_at=stamp,
        updated_at=stamp,
        **kwargs,
    )


@pytest.fixture
def composer() -> TemplateComposer:
    """Return a composer."""
    return TemplateComposer()


@pytest.fixture
def layered() -> list[Template]:
    """Base, organization and team templates with distinct rules."""
    return [
        make_template("base", rules=RuleSet(deny=["eval("])),
        make_template(
            "org",
            InheritanceLevel.ORGANIZATION,
            rules=RuleSet(deny=["exec("], ask=["rm -rf"]),
        ),
        make_template("team", InheritanceLevel.TEAM, rules=RuleSet(allow=["console.log("])),
    ]


@pytest.fixture
def store(layered: list[Template]) -> TemplateStore:
    """A store holding the layered templates."""
    templates = TemplateStore()
    for template in layered:
        templates.put(template.id, template)
    return templates


# =============================================================================
# Basic Composition
# =============================================================================


class TestCompose:
    """Tests for compose()."""

    def test_empty_set(self, composer: TemplateComposer) -> None:
        """Composing nothing is an error."""
        with pytest.raises(CompositionError) as exc_info:
            composer.compose([])
        assert exc_info.value.code == ERROR_COMPOSITION_EMPTY

    def test_single_template_is_clone(self, composer: TemplateComposer) -> None:
        """A single template composes to an equal copy."""
        template = make_template("solo", rules=RuleSet(deny=["eval("]))
        result = composer.compose([template])
        assert result == template
        assert result is not template

    def test_idempotent(self, composer: TemplateComposer) -> None:
        """Composing a template with itself leaves its rules unchanged."""
        template = make_template("solo", rules=RuleSet(deny=["eval(", "exec("], allow=["ls"]))
        assert composer.compose([template]).rules == template.rules
        assert composer.compose([template, template]).rules == template.rules

    def test_layers_merge_in_level_order(
        self, composer: TemplateComposer, layered: list[Template]
    ) -> None:
        """Rules accumulate and the result takes the last identity."""
        result = composer.compose(layered)
        assert result.id == "team"
        assert result.rules.deny == ["eval(", "exec("]
        assert result.rules.ask == ["rm -rf"]
        assert result.rules.allow == ["console.log("]
        assert result.inheritance.chain == ["base", "org"]

    def test_deterministic_under_permutation(
        self, composer: TemplateComposer, layered: list[Template]
    ) -> None:
        """Every input order composes identically."""
        expected = composer.compose(layered)
        for order in itertools.permutations(layered):
            assert composer.compose(list(order)) == expected

    def test_same_level_ordered_by_created_at(self, composer: TemplateComposer) -> None:
        """Within a level, older templates merge first."""
        older = make_template("zeta", minutes=0, rules=RuleSet(deny=["a"]))
        newer = make_template("alpha", minutes=5, rules=RuleSet(deny=["b"]))
        report = composer.compose_with_report([newer, older])
        assert report.order == ["zeta", "alpha"]
        assert report.template.rules.deny == ["a", "b"]

    def test_timestamps_span_inputs(
        self, composer: TemplateComposer, layered: list[Template]
    ) -> None:
        """created_at is the earliest input, updated_at the latest."""
        layered[2] = layered[2].model_copy(update={"updated_at": T0 + timedelta(days=1)})
        result = composer.compose(layered)
        assert result.created_at == T0
        assert result.updated_at == T0 + timedelta(days=1)


# =============================================================================
# Cycles
# =============================================================================


class TestCycles:
    """Tests for reference cycle detection."""

    def test_parent_cycle(self, composer: TemplateComposer) -> None:
        """Mutual parent links are refused before merging."""
        a = make_template("a", inheritance=InheritanceMetadata(parent_id="b"))
        b = make_template("b", inheritance=InheritanceMetadata(parent_id="a"))
        with pytest.raises(CircularReferenceError) as exc_info:
            composer.compose([a, b])
        assert exc_info.value.cycle[0] == exc_info.value.cycle[-1]

    def test_extension_edge_cycle(self) -> None:
        """Attached extensions targeting another member count as edges."""
        ext = TemplateExtension(
            id="e", name="e", target_template_id="b", rules=RulePatch(deny=["x"])
        )
        a = make_template("a", extensions=[ext])
        b = make_template("b", inheritance=InheritanceMetadata(parent_id="a"))
        assert find_cycle([a, b]) == ["a", "b", "a"]

    def test_self_targeting_extension_is_not_cycle(self) -> None:
        """An extension targeting its own template is ignored."""
        ext = TemplateExtension(
            id="e", name="e", target_template_id="a", rules=RulePatch(deny=["x"])
        )
        assert find_cycle([make_template("a", extensions=[ext])]) is None

    def test_parent_outside_set(self, layered: list[Template]) -> None:
        """Links leaving the set are not edges."""
        child = make_template("child", inheritance=InheritanceMetadata(parent_id="elsewhere"))
        assert find_cycle([*layered, child]) is None


# =============================================================================
# Conflict Arbitration
# =============================================================================


class TestConflicts:
    """Tests for conflict arbitration."""

    @pytest.fixture
    def disagreeing(self) -> list[Template]:
        """Two templates whose scopes disagree on team_id."""
        return [
            make_template("base", scope=TemplateScope(team_id="web")),
            make_template("team", InheritanceLevel.TEAM, scope=TemplateScope(team_id="api")),
        ]

    def test_error_strategy_fails(
        self, composer: TemplateComposer, disagreeing: list[Template]
    ) -> None:
        """An error-governed path fails with every conflict attached."""
        resolution = ConflictResolution(default_strategy=ConflictStrategy.ERROR)
        with pytest.raises(CompositionError) as exc_info:
            composer.compose(disagreeing, conflict_resolution=resolution)
        conflicts = exc_info.value.conflicts
        assert [c.path for c in conflicts] == ["scope.team_id"]
        assert conflicts[0].resolution == "error"

    def test_rule_specific_error(
        self, composer: TemplateComposer, disagreeing: list[Template]
    ) -> None:
        """A path-specific error strategy is enough to fail."""
        resolution = ConflictResolution(
            default_strategy=ConflictStrategy.WARN,
            rule_specific={"scope.team_id": ConflictStrategy.ERROR},
        )
        with pytest.raises(CompositionError):
            composer.compose(disagreeing, conflict_resolution=resolution)

    def test_override_lets_overlay_win(
        self, composer: TemplateComposer, disagreeing: list[Template]
    ) -> None:
        """Non-error strategies keep the overlay value."""
        resolution = ConflictResolution(default_strategy=ConflictStrategy.OVERRIDE)
        report = composer.compose_with_report(disagreeing, conflict_resolution=resolution)
        assert report.template.scope.team_id == "api"
        assert [c.path for c in report.conflicts] == ["scope.team_id"]

    def test_warn_logs_warning(
        self,
        composer: TemplateComposer,
        disagreeing: list[Template],
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """The default strategy logs each conflict as a warning."""
        with caplog.at_level(logging.WARNING, logger="rulesmith.composition.engine"):
            composer.compose(disagreeing)
        assert any("scope.team_id" in r.getMessage() for r in caplog.records)

    def test_ignore_is_silent(
        self,
        composer: TemplateComposer,
        disagreeing: list[Template],
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """Ignored conflicts are not logged."""
        resolution = ConflictResolution(default_strategy=ConflictStrategy.IGNORE)
        with caplog.at_level(logging.DEBUG, logger="rulesmith.composition.engine"):
            composer.compose(disagreeing, conflict_resolution=resolution)
        assert not any("scope.team_id" in r.getMessage() for r in caplog.records)


# =============================================================================
# Composition From Config
# =============================================================================


class TestComposeFromConfig:
    """Tests for compose_from_config()."""

    def test_level_order(self, composer: TemplateComposer) -> None:
        """Members merge by level then creation time, whatever their priority."""
        store = TemplateStore()
        for tid, level, minutes in [
            ("base", InheritanceLevel.BASE, 0),
            ("team", InheritanceLevel.TEAM, 0),
            ("org-late", InheritanceLevel.ORGANIZATION, 5),
            ("org-early", InheritanceLevel.ORGANIZATION, 1),
        ]:
            store.put(tid, make_template(tid, level, minutes, rules=RuleSet(deny=[tid])))
        config = CompositionConfig(
            base_template_id="base",
            templates=[
                CompositionTemplate(template_id="team", priority=1),
                CompositionTemplate(template_id="org-late", priority=5),
                CompositionTemplate(template_id="org-early", priority=20),
            ],
        )
        result = composer.compose_from_config(config, store)
        assert result.rules.deny == ["base", "org-early", "org-late", "team"]
        assert result.id == "composed-base"
        assert "composed" in result.tags

    def test_conditions_skip_templates(
        self, composer: TemplateComposer, store: TemplateStore
    ) -> None:
        """Members whose conditions fail are left out."""
        config = CompositionConfig(
            base_template_id="base",
            templates=[
                CompositionTemplate(
                    template_id="org",
                    conditions=[
                        ExtensionCondition(type=ConditionType.ENVIRONMENT, value="production")
                    ],
                ),
            ],
        )
        dev = composer.compose_from_config(config, store, BuildContext(environment="development"))
        prod = composer.compose_from_config(config, store, BuildContext(environment="production"))
        assert dev.rules.deny == ["eval("]
        assert prod.rules.deny == ["eval(", "exec("]

    def test_metadata_identity(self, composer: TemplateComposer, store: TemplateStore) -> None:
        """Metadata sets the composed identity."""
        config = CompositionConfig(
            base_template_id="base",
            metadata=CompositionMetadata(id="frontend", name="Frontend", version="2.1.0"),
        )
        result = composer.compose_from_config(config, store)
        assert (result.id, result.name, result.version) == ("frontend", "Frontend", "2.1.0")

    def test_missing_template(self, composer: TemplateComposer, store: TemplateStore) -> None:
        """Unknown members raise TemplateNotFoundError."""
        config = CompositionConfig(
            base_template_id="base",
            templates=[CompositionTemplate(template_id="ghost")],
        )
        with pytest.raises(TemplateNotFoundError):
            composer.compose_from_config(config, store)

    def test_missing_template_with_false_conditions(
        self, composer: TemplateComposer, store: TemplateStore
    ) -> None:
        """Unknown members raise even when their conditions would skip them."""
        config = CompositionConfig(
            base_template_id="base",
            templates=[
                CompositionTemplate(
                    template_id="ghost",
                    conditions=[
                        ExtensionCondition(type=ConditionType.ENVIRONMENT, value="production")
                    ],
                ),
            ],
        )
        with pytest.raises(TemplateNotFoundError):
            composer.compose_from_config(config, store, BuildContext(environment="development"))

    def test_missing_base(self, composer: TemplateComposer, store: TemplateStore) -> None:
        """An unknown base raises TemplateNotFoundError."""
        with pytest.raises(TemplateNotFoundError):
            composer.compose_from_config(CompositionConfig(base_template_id="ghost"), store)


# =============================================================================
# Validation and Diff
# =============================================================================


class TestValidateComposition:
    """Tests for validate_composition()."""

    def test_valid(self, composer: TemplateComposer, store: TemplateStore) -> None:
        """Known members validate."""
        config = CompositionConfig(
            base_template_id="base",
            templates=[CompositionTemplate(template_id="team")],
        )
        assert composer.validate_composition(config, store).is_valid

    def test_missing_members_are_errors(
        self, composer: TemplateComposer, store: TemplateStore
    ) -> None:
        """Every missing id is reported."""
        config = CompositionConfig(
            base_template_id="nope",
            templates=[CompositionTemplate(template_id="ghost")],
        )
        check = composer.validate_composition(config, store)
        assert not check.is_valid
        assert len(check.errors) == 2

    def test_incompatible_version_warns(self, composer: TemplateComposer) -> None:
        """Members whose bounds exclude the base version produce warnings."""
        store = TemplateStore()
        store.put("base", make_template("base", version="3.0.0"))
        store.put(
            "old",
            make_template(
                "old",
                inheritance=InheritanceMetadata(
                    compatibility=VersionCompatibility(max_parent_version="2.0.0"),
                ),
            ),
        )
        config = CompositionConfig(
            base_template_id="base",
            templates=[CompositionTemplate(template_id="old")],
        )
        check = composer.validate_composition(config, store)
        assert check.is_valid
        assert len(check.warnings) == 1


class TestCompositionDiff:
    """Tests for create_composition_diff()."""

    def test_diff(self, composer: TemplateComposer, layered: list[Template]) -> None:
        """Added rules, changed fields and version direction are reported."""
        original = layered[0]
        composed = composer.compose(layered).model_copy(update={"version": "1.1.0"})
        diff = composer.create_composition_diff(original, composed)
        assert diff["added_rules"] == {
            "deny": ["exec("],
            "allow": ["console.log("],
            "ask": ["rm -rf"],
        }
        assert diff["removed_rules"] == {}
        assert "id" in diff["changed_fields"]
        assert diff["version_change"] == 1
