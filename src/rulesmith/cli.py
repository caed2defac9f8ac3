"""
CLI entry point for Rulesmith.

This module provides the Typer-based command-line interface for Rulesmith.
Commands load YAML documents, delegate to RuleEngine, and render the
outcome with Rich (or as JSON with --json).

Commands:
    validate    Validate a template file
    resolve     Resolve a template through its inheritance chain
    compose     Compose templates according to a composition config
    scan        Statically scan a validator or plugin source file

Exit codes:
    0   Success
    1   The input failed validation, or an error occurred
"""

import json
import logging
import traceback
from pathlib import Path
from typing import Annotated, Any, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from rulesmith import __version__
from rulesmith.config import Settings, load_settings
from rulesmith.engine import RuleEngine
from rulesmith.errors import RulesmithError, StructuralError
from rulesmith.sandbox import CodeValidationResult, validate_code
from rulesmith.schema import (
    RULE_CATEGORIES,
    BuildContext,
    CodeIssueSeverity,
    Template,
    ValidationResult,
    load_composition_config,
    load_templates,
)

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="rulesmith",
    help="Build, validate and compose hierarchical security-rule templates.",
    add_completion=False,
    no_args_is_help=True,
)

console = Console()

ICON_OK = "[green]✓[/green]"
ICON_FAIL = "[red]✗[/red]"
ICON_WARN = "[yellow]![/yellow]"

SEVERITY_STYLES = {
    "info": "dim",
    "warning": "yellow",
    "error": "red",
    "critical": "bold red",
    CodeIssueSeverity.LOW.value: "dim",
    CodeIssueSeverity.MEDIUM.value: "yellow",
    CodeIssueSeverity.HIGH.value: "red",
}


def configure_logging(level: int = logging.WARNING) -> None:
    """Route library logging through Rich."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold]rulesmith[/bold] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option(
            "--verbose",
            "-v",
            help="Log engine activity to stderr.",
        ),
    ] = False,
) -> None:
    """
    Rulesmith - Hierarchical security-rule templates.

    Validate, resolve and compose deny/allow/ask rule templates with
    inheritance, governed extensions and sandboxed custom validators.
    """
    configure_logging(logging.INFO if verbose else logging.WARNING)


# Shared options
TemplatesOption = Annotated[
    Optional[Path],
    typer.Option(
        "--templates",
        "-t",
        help="Template file or directory to register first.",
        exists=True,
        readable=True,
        resolve_path=True,
    ),
]
SettingsOption = Annotated[
    Optional[Path],
    typer.Option(
        "--settings",
        "-s",
        help="Settings YAML file.",
        exists=True,
        readable=True,
        resolve_path=True,
    ),
]
EnvironmentOption = Annotated[
    str,
    typer.Option("--env", "-e", help="Build environment."),
]
JsonOption = Annotated[
    bool,
    typer.Option("--json", help="Output results in JSON format."),
]
DebugOption = Annotated[
    bool,
    typer.Option("--debug", help="Show full error tracebacks."),
]


@app.command()
def validate(
    template_path: Annotated[
        Path,
        typer.Argument(
            help="Template YAML file (one template or a list).",
            exists=True,
            readable=True,
            resolve_path=True,
        ),
    ],
    templates: TemplatesOption = None,
    settings_path: SettingsOption = None,
    environment: EnvironmentOption = "development",
    json_output: JsonOption = False,
    debug: DebugOption = False,
) -> None:
    """
    Validate templates.

    Parents referenced by the templates must be in the same file or in
    the --templates location.

    Example:
        $ rulesmith validate team.yaml --templates templates/
    """
    try:
        with _build_engine(settings_path, templates) as engine:
            targets = load_templates(template_path)
            for template in targets:
                engine.register_template(template)
            context = BuildContext(environment=environment)
            results = [(t, engine.validate_template(t, context)) for t in targets]
    except RulesmithError as e:
        _fail(e, json_output, debug)

    if json_output:
        print(json.dumps(
            {t.id: r.model_dump(mode="json") for t, r in results},
            indent=2,
        ))
    else:
        for template, result in results:
            _display_validation(template, result)

    raise typer.Exit(code=0 if all(r.is_valid for _, r in results) else 1)


@app.command()
def resolve(
    templates_path: Annotated[
        Path,
        typer.Argument(
            help="Template file or directory.",
            exists=True,
            readable=True,
            resolve_path=True,
        ),
    ],
    template_id: Annotated[str, typer.Argument(help="Template to resolve.")],
    settings_path: SettingsOption = None,
    environment: EnvironmentOption = "development",
    json_output: JsonOption = False,
    debug: DebugOption = False,
) -> None:
    """
    Resolve a template through its inheritance chain.

    Example:
        $ rulesmith resolve templates/ team-frontend --env production
    """
    try:
        with _build_engine(settings_path, templates_path) as engine:
            context = BuildContext(environment=environment)
            resolved = engine.resolve_template(template_id, context)
            chain = [*resolved.inheritance.chain, resolved.id]
    except RulesmithError as e:
        _fail(e, json_output, debug)

    if json_output:
        print(resolved.model_dump_json(indent=2))
    else:
        console.print(f"{ICON_OK} Resolved [bold]{resolved.id}[/bold] ({' → '.join(chain)})")
        console.print()
        _display_rules(resolved)


@app.command()
def compose(
    templates_path: Annotated[
        Path,
        typer.Argument(
            help="Template file or directory.",
            exists=True,
            readable=True,
            resolve_path=True,
        ),
    ],
    config_path: Annotated[
        Path,
        typer.Argument(
            help="Composition config YAML file.",
            exists=True,
            readable=True,
            resolve_path=True,
        ),
    ],
    settings_path: SettingsOption = None,
    environment: EnvironmentOption = "development",
    json_output: JsonOption = False,
    debug: DebugOption = False,
) -> None:
    """
    Compose templates according to a composition config.

    Example:
        $ rulesmith compose templates/ composition.yaml
    """
    try:
        with _build_engine(settings_path, templates_path) as engine:
            config = load_composition_config(config_path)
            check = engine.composer.validate_composition(config, engine.templates)
            if not check.is_valid:
                raise StructuralError(
                    message="Invalid composition config",
                    source=str(config_path),
                    details=check.errors,
                )
            for warning in check.warnings:
                logger.warning(warning)
            composed = engine.compose_from_config(
                config, BuildContext(environment=environment)
            )
    except RulesmithError as e:
        _fail(e, json_output, debug)

    if json_output:
        print(composed.model_dump_json(indent=2))
    else:
        console.print(f"{ICON_OK} Composed [bold]{composed.id}[/bold]")
        console.print(f"[dim]{composed.description}[/dim]")
        console.print()
        _display_rules(composed)


@app.command()
def scan(
    code_path: Annotated[
        Path,
        typer.Argument(
            help="Python source of a custom validator or plugin.",
            exists=True,
            readable=True,
            resolve_path=True,
        ),
    ],
    json_output: JsonOption = False,
) -> None:
    """
    Statically scan sandboxed code without running it.

    Exits 1 when any high or critical finding would refuse execution.

    Example:
        $ rulesmith scan validators/no_wildcards.py
    """
    result = validate_code(code_path.read_text())

    if json_output:
        print(json.dumps({
            "is_valid": result.is_valid,
            "issues": [
                {"severity": i.severity.value, "message": i.message, "line": i.line}
                for i in result.issues
            ],
        }, indent=2))
    else:
        _display_scan(code_path, result)

    raise typer.Exit(code=0 if result.is_valid else 1)


# =============================================================================
# Helpers
# =============================================================================


def _build_engine(settings_path: Path | None, templates_path: Path | None) -> RuleEngine:
    settings = load_settings(settings_path) if settings_path else Settings()
    engine = RuleEngine(settings)
    if templates_path is not None:
        for template in _load_template_dir(templates_path):
            engine.register_template(template)
    return engine


def _load_template_dir(path: Path) -> list[Template]:
    """Templates from a YAML file, or every *.yaml/*.yml file of a directory."""
    if path.is_file():
        return load_templates(path)
    templates: list[Template] = []
    for file in sorted([*path.glob("*.yaml"), *path.glob("*.yml")]):
        templates.extend(load_templates(file))
    return templates


def _fail(error: RulesmithError, json_output: bool, debug: bool) -> None:
    if json_output:
        output: dict[str, Any] = {"error": True, **error.to_dict()}
        if debug:
            output["traceback"] = traceback.format_exc()
        print(json.dumps(output, indent=2, default=str))
    else:
        console.print(f"{ICON_FAIL} [red]{error}[/red]")
        details = getattr(error, "details", None)
        for detail in details or []:
            console.print(f"  [dim]- {detail}[/dim]")
        if error.suggestion:
            console.print(f"[dim]Suggestion: {error.suggestion}[/dim]")
        if debug:
            console.print(f"[dim]{traceback.format_exc()}[/dim]")
    raise typer.Exit(code=1)


def _display_validation(template: Template, result: ValidationResult) -> None:
    """Display validation findings for one template."""
    icon = ICON_OK if result.is_valid else ICON_FAIL
    status = "[green]valid[/green]" if result.is_valid else "[red]invalid[/red]"
    console.print(f"{icon} [bold]{template.id}[/bold]@{template.version}: {status}")

    issues = [*result.errors, *result.warnings]
    if issues:
        table = Table(show_header=True, header_style="bold")
        table.add_column("Severity", width=10)
        table.add_column("Category", style="cyan")
        table.add_column("Field", style="dim")
        table.add_column("Message")
        for issue in issues:
            style = SEVERITY_STYLES.get(issue.severity.value, "")
            table.add_row(
                f"[{style}]{issue.severity.value}[/{style}]" if style else issue.severity.value,
                issue.category,
                issue.field,
                issue.message,
            )
        console.print(table)

    perf = result.performance
    console.print(
        f"[dim]Errors: {len(result.errors)} | Warnings: {len(result.warnings)} | "
        f"Rules: {perf.rules_validated} | {perf.validation_time_ms:.1f}ms[/dim]"
    )
    console.print()


def _display_rules(template: Template) -> None:
    """Display a template's rules, one column per category."""
    table = Table(show_header=True, header_style="bold", title=f"{template.name} v{template.version}")
    styles = {"deny": "red", "allow": "green", "ask": "yellow"}
    for category in RULE_CATEGORIES:
        table.add_column(category, style=styles[category])

    columns = [getattr(template.rules, c) for c in RULE_CATEGORIES]
    for row in range(max((len(c) for c in columns), default=0)):
        table.add_row(*[c[row] if row < len(c) else "" for c in columns])
    console.print(table)
    console.print(
        f"[dim]Deny: {len(columns[0])} | Allow: {len(columns[1])} | Ask: {len(columns[2])}[/dim]"
    )


def _display_scan(path: Path, result: CodeValidationResult) -> None:
    """Display scanner findings."""
    if not result.issues:
        console.print(f"{ICON_OK} {path.name}: no findings")
        return

    icon = ICON_OK if result.is_valid else ICON_FAIL
    table = Table(show_header=True, header_style="bold")
    table.add_column("Line", style="dim", width=5)
    table.add_column("Severity", width=10)
    table.add_column("Finding")
    for issue in result.issues:
        style = SEVERITY_STYLES.get(issue.severity.value, "bold red")
        table.add_row(
            str(issue.line or ""),
            f"[{style}]{issue.severity.value}[/{style}]",
            issue.message,
        )

    verdict = "runs" if result.is_valid else "refused"
    console.print(Panel(table, title=f"{icon} {path.name}: {verdict}", expand=False))
    if result.is_valid:
        console.print(f"{ICON_WARN} [dim]Findings below high severity do not block execution[/dim]")


if __name__ == "__main__":
    app()
