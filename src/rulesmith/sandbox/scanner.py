"""
Static pre-execution scanning of untrusted code.

Two passes run over every fragment before it may reach a child interpreter:

1. A pattern list of regular expressions over the raw source, which also
   sees inside string literals (format-string dunder tricks and the like).
2. An AST walk for structural findings: imports, calls to dynamic
   evaluation builtins, dunder and frame attribute access, str.format
   lookups, unbounded loops and oversized literal allocations.

Findings carry a severity. Anything ``high`` or ``critical`` blocks
execution; ``low`` and ``medium`` findings are reported but the code still
runs (an unbounded loop, for instance, is left to the wall-clock timeout).
"""

import ast
import re
from dataclasses import dataclass, field

from rulesmith.schema import CodeIssueSeverity

BLOCKING_SEVERITIES = frozenset({CodeIssueSeverity.HIGH, CodeIssueSeverity.CRITICAL})

# Modules that reach the process, filesystem, network or interpreter internals
DANGEROUS_MODULES = frozenset({
    "os", "sys", "subprocess", "socket", "shutil", "pathlib", "ctypes",
    "importlib", "multiprocessing", "threading", "signal", "pty", "io",
    "tempfile", "pickle", "marshal", "builtins", "urllib", "http", "ftplib",
    "smtplib", "asyncio", "resource", "gc", "inspect", "code", "runpy",
})

# Builtins that evaluate or load code, or open files
EVAL_BUILTINS = frozenset({"eval", "exec", "compile", "__import__", "open"})

# Builtins that expose namespaces or attribute machinery
INTROSPECTION_BUILTINS = frozenset({
    "globals", "locals", "vars", "getattr", "setattr", "delattr",
    "input", "breakpoint", "exit", "quit", "help", "memoryview",
})

# Attributes that reach frames, code objects and tracebacks
FRAME_ATTRIBUTES = frozenset({
    "gi_frame", "gi_code", "cr_frame", "cr_code", "ag_frame", "ag_code",
    "f_back", "f_globals", "f_locals", "f_builtins", "f_code",
    "tb_frame", "tb_next",
})

# str.format can follow attribute paths named inside the format string
FORMAT_METHODS = frozenset({"format", "format_map"})

MAX_LITERAL_REPEAT = 1_000_000
MAX_RANGE = 10_000_000
MAX_EXPONENT = 10_000

PATTERNS: list[tuple[re.Pattern[str], CodeIssueSeverity, str]] = [
    (
        re.compile(r"\bos\s*\.\s*(system|popen|environ|getenv|remove|unlink|spawn\w*|exec\w*|fork)\b"),
        CodeIssueSeverity.CRITICAL,
        "Process or environment access via os",
    ),
    (
        re.compile(r"\bsubprocess\s*\.|\bPopen\s*\("),
        CodeIssueSeverity.CRITICAL,
        "Child process creation",
    ),
    (
        re.compile(r"\bsocket\s*\.|\burlopen\s*\("),
        CodeIssueSeverity.CRITICAL,
        "Network access",
    ),
    (
        re.compile(r"__import__|\bimportlib\b"),
        CodeIssueSeverity.CRITICAL,
        "Dynamic import",
    ),
    (
        re.compile(r"\b(gi|cr|ag)_(frame|code)\b|\bf_(back|globals|locals|builtins|code)\b|\btb_(frame|next)\b|\bco_\w+"),
        CodeIssueSeverity.HIGH,
        "Frame or code object reference",
    ),
    (
        re.compile(r"__\w+__"),
        CodeIssueSeverity.HIGH,
        "Dunder name reference",
    ),
]


@dataclass(frozen=True)
class CodeIssue:
    """A single scan finding."""

    severity: CodeIssueSeverity
    message: str
    line: int | None = None

    @property
    def blocking(self) -> bool:
        """True when this finding prevents execution."""
        return self.severity in BLOCKING_SEVERITIES


@dataclass
class CodeValidationResult:
    """
    Outcome of scanning a code fragment.

    Attributes:
        is_valid: False when any blocking finding is present
        issues: All findings, ordered by line
    """

    is_valid: bool
    issues: list[CodeIssue] = field(default_factory=list)

    @property
    def blocking_issues(self) -> list[CodeIssue]:
        """Findings with high or critical severity."""
        return [i for i in self.issues if i.blocking]

    def summary(self) -> str:
        """One-line description of the blocking findings."""
        blocking = self.blocking_issues or self.issues
        return "; ".join(
            f"{i.message} (line {i.line})" if i.line else i.message for i in blocking
        )


def _line_of(code: str, offset: int) -> int:
    return code.count("\n", 0, offset) + 1


def _int_constant(node: ast.AST) -> int | None:
    if isinstance(node, ast.Constant) and isinstance(node.value, int) and not isinstance(
        node.value, bool
    ):
        return node.value
    return None


def _is_sequence_literal(node: ast.AST) -> bool:
    if isinstance(node, (ast.List, ast.Tuple)):
        return True
    return isinstance(node, ast.Constant) and isinstance(node.value, (str, bytes))


class _Visitor(ast.NodeVisitor):
    """Collects structural findings."""

    def __init__(self) -> None:
        self.issues: list[CodeIssue] = []

    def _add(self, severity: CodeIssueSeverity, message: str, node: ast.AST) -> None:
        self.issues.append(CodeIssue(severity, message, getattr(node, "lineno", None)))

    def _check_module(self, name: str, node: ast.AST) -> None:
        root = name.split(".")[0]
        if root in DANGEROUS_MODULES:
            self._add(CodeIssueSeverity.CRITICAL, f"Import of restricted module '{root}'", node)
        else:
            self._add(CodeIssueSeverity.MEDIUM, f"Import of '{root}' is unavailable", node)

    def visit_Import(self, node: ast.Import) -> None:
        for alias in node.names:
            self._check_module(alias.name, node)
        self.generic_visit(node)

    def visit_ImportFrom(self, node: ast.ImportFrom) -> None:
        self._check_module(node.module or "", node)
        self.generic_visit(node)

    def visit_Call(self, node: ast.Call) -> None:
        if isinstance(node.func, ast.Name):
            name = node.func.id
            if name in EVAL_BUILTINS:
                self._add(CodeIssueSeverity.CRITICAL, f"Call to '{name}'", node)
            elif name in INTROSPECTION_BUILTINS:
                self._add(CodeIssueSeverity.HIGH, f"Call to '{name}'", node)
            elif name == "range" and node.args:
                limit = _int_constant(node.args[-1] if len(node.args) < 3 else node.args[1])
                if limit is not None and limit > MAX_RANGE:
                    self._add(CodeIssueSeverity.MEDIUM, f"Very large range({limit})", node)
        self.generic_visit(node)

    def visit_Attribute(self, node: ast.Attribute) -> None:
        if node.attr.startswith("__") and node.attr.endswith("__"):
            self._add(CodeIssueSeverity.HIGH, f"Dunder attribute access '.{node.attr}'", node)
        elif node.attr in FRAME_ATTRIBUTES or node.attr.startswith("co_"):
            self._add(CodeIssueSeverity.HIGH, f"Frame attribute access '.{node.attr}'", node)
        elif node.attr in FORMAT_METHODS:
            self._add(CodeIssueSeverity.HIGH, f"String formatting via '.{node.attr}'", node)
        elif node.attr.startswith("_"):
            self._add(CodeIssueSeverity.MEDIUM, f"Private attribute access '.{node.attr}'", node)
        self.generic_visit(node)

    def visit_While(self, node: ast.While) -> None:
        test = node.test
        always_true = isinstance(test, ast.Constant) and bool(test.value)
        if always_true and not any(isinstance(n, ast.Break) for n in ast.walk(node)):
            self._add(CodeIssueSeverity.MEDIUM, "Unbounded loop without break", node)
        self.generic_visit(node)

    def visit_BinOp(self, node: ast.BinOp) -> None:
        if isinstance(node.op, ast.Mult):
            for seq, count in ((node.left, node.right), (node.right, node.left)):
                n = _int_constant(count)
                if _is_sequence_literal(seq) and n is not None and n > MAX_LITERAL_REPEAT:
                    self._add(CodeIssueSeverity.HIGH, f"Oversized allocation (x{n})", node)
                    break
        elif isinstance(node.op, ast.Pow):
            exponent = _int_constant(node.right)
            if exponent is not None and exponent > MAX_EXPONENT:
                self._add(CodeIssueSeverity.HIGH, f"Oversized exponent ({exponent})", node)
        self.generic_visit(node)


def validate_code(code: str) -> CodeValidationResult:
    """
    Scan a code fragment.

    Syntax errors are reported as critical findings. Duplicate findings
    (same message on the same line) are collapsed.
    """
    issues: list[CodeIssue] = []

    for pattern, severity, message in PATTERNS:
        for match in pattern.finditer(code):
            issues.append(CodeIssue(severity, message, _line_of(code, match.start())))

    try:
        tree = ast.parse(code, mode="exec")
    except SyntaxError as e:
        issues.append(CodeIssue(CodeIssueSeverity.CRITICAL, f"Syntax error: {e.msg}", e.lineno))
    else:
        visitor = _Visitor()
        visitor.visit(tree)
        issues.extend(visitor.issues)

    seen: set[tuple[str, int | None]] = set()
    unique: list[CodeIssue] = []
    for issue in issues:
        key = (issue.message, issue.line)
        if key not in seen:
            seen.add(key)
            unique.append(issue)
    unique.sort(key=lambda i: (i.line or 0, i.message))

    return CodeValidationResult(
        is_valid=not any(i.blocking for i in unique),
        issues=unique,
    )
