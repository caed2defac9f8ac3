"""
Pytest configuration and fixtures for Rulesmith tests.

This module provides shared fixtures used across unit, integration,
and security tests.
"""

import tempfile
from pathlib import Path
from typing import Generator

import pytest

from rulesmith.config import SandboxSettings, Settings
from rulesmith.engine import RuleEngine
from rulesmith.sandbox import Sandbox
from rulesmith.schema import RuleSet, Template
from rulesmith.store import TemplateStore
from rulesmith.validation import TemplateValidator

# Child interpreters start in well under a second; keep limits small so
# failure-path tests stay fast.
TEST_TIMEOUT_MS = 3000
TEST_MEMORY_MB = 128


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def base_template() -> Template:
    """Return a root template that denies eval."""
    return Template(
        id="base",
        name="Base Security",
        rules=RuleSet(deny=["eval("]),
    )


@pytest.fixture
def template_store(base_template: Template) -> TemplateStore:
    """Return a template store holding the base template."""
    store = TemplateStore()
    store.put(base_template.id, base_template)
    return store


@pytest.fixture
def sandbox() -> Sandbox:
    """Return a sandbox with short test limits."""
    return Sandbox(timeout_ms=TEST_TIMEOUT_MS, max_memory_mb=TEST_MEMORY_MB)


@pytest.fixture
def validator(template_store: TemplateStore, sandbox: Sandbox) -> TemplateValidator:
    """Return a validator bound to the shared store and sandbox."""
    return TemplateValidator(template_store, sandbox)


@pytest.fixture
def settings() -> Settings:
    """Return in-memory settings with short sandbox limits."""
    return Settings(
        sandbox=SandboxSettings(timeout_ms=TEST_TIMEOUT_MS, max_memory_mb=TEST_MEMORY_MB),
    )


@pytest.fixture
def engine(settings: Settings) -> Generator[RuleEngine, None, None]:
    """Return an in-memory rule engine."""
    eng = RuleEngine(settings)
    yield eng
    eng.close()
