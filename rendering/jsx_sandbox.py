"""
JSX/Recharts component sandbox: import allow-list, pattern validation,
esbuild transpilation and scope checking.

The pipeline turns model-generated component source into a module the
browser can evaluate with nothing in scope but an enumerated set of
bindings (React, its hooks, and the Recharts chart primitives):

    validate  ->  strip imports, rewrite ``export default``  ->  esbuild  ->  scope check

Every failure raises a ``SandboxError`` subclass tagged with its stage and a
message written for the model to self-correct on retry.  ``execute`` keeps
no state between calls; compiled-output caching lives in
``rendering.artifacts``.
"""

from __future__ import annotations

import hashlib
import logging
import re
import shutil
import subprocess
from dataclasses import dataclass
from typing import Any, Optional

import config
from agent.event_bus import get_event_bus, SANDBOX_ERROR
from agent.messages import canonical_json
from agent.truncation import trunc_items

logger = logging.getLogger("edachat")


# ---- Errors ----

class SandboxError(Exception):
    """Recoverable failure of one render. ``stage`` names the pipeline step."""

    stage = "sandbox"

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"stage": self.stage, "message": self.message, "details": self.details}


class SandboxValidationError(SandboxError):
    stage = "validation"


class SandboxTranspileError(SandboxError):
    stage = "transpile"


class SandboxExecutionError(SandboxError):
    stage = "execution"


class SandboxUnavailableError(SandboxError):
    """The transpiler itself is missing; not the component's fault."""
    stage = "transpile"


# ---- Scope ----

REACT_HOOKS = ("useState", "useEffect", "useMemo", "useCallback", "useRef", "useContext")

RECHARTS_COMPONENTS = (
    "BarChart", "Bar",
    "LineChart", "Line",
    "ScatterChart", "Scatter",
    "PieChart", "Pie",
    "AreaChart", "Area",
    "ComposedChart",
    "RadarChart", "Radar",
    "RadialBarChart", "RadialBar",
    "XAxis", "YAxis", "CartesianGrid", "Tooltip", "Legend",
    "ResponsiveContainer", "Cell",
    "PolarGrid", "PolarAngleAxis", "PolarRadiusAxis",
)

# Everything the compiled module can reach, in injection order
SCOPE_BINDINGS: tuple[str, ...] = ("React",) + REACT_HOOKS + RECHARTS_COMPONENTS

_ALLOWED_IMPORT_PREFIXES = ("react", "recharts")


# ---- Pattern-based Validation ----

# Blocked patterns: browser APIs a chart component has no business touching
_BLOCKED_PATTERNS: list[tuple[str, str]] = [
    (r'\bfetch\s*\(', "Network access via fetch() is not allowed"),
    (r'\bXMLHttpRequest\b', "Network access via XMLHttpRequest is not allowed"),
    (r'\bwindow\.location\b', "Accessing window.location is not allowed"),
    (r'\bdocument\.cookie\b', "Accessing document.cookie is not allowed"),
    (r'\beval\s*\(', "eval() is not allowed"),
    (r'\bnew\s+Function\b', "new Function() is not allowed"),
    (r'\bimport\s*\(', "Dynamic import() is not allowed"),
    (r'\brequire\s*\(', "require() is not allowed"),
    (r'__proto__', "Accessing __proto__ is not allowed"),
    (r'\blocalStorage\b', "localStorage access is not allowed"),
    (r'\bsessionStorage\b', "sessionStorage access is not allowed"),
    (r'\bWebSocket\b', "WebSocket is not allowed"),
    (r'\bWorker\b', "Worker is not allowed"),
    (r'\bSharedWorker\b', "SharedWorker is not allowed"),
    (r'\bServiceWorker\b', "ServiceWorker is not allowed"),
    (r'\bdocument\.write\b', "document.write is not allowed"),
    (r'\bdocument\.createElement\b', "document.createElement is not allowed"),
    (r'\binnerHTML\b', "innerHTML is not allowed"),
    (r'\bouterHTML\b', "outerHTML is not allowed"),
    (r'\bpostMessage\b', "postMessage is not allowed"),
]

# import X from "src" / import {A, B} from "src" / import "src" (multi-line named imports too)
_IMPORT_PATTERN = re.compile(
    r'''import\s+(?:[\w*{}\s,$]+?\s*from\s*)?['"]([^'"]+)['"]''',
)
_IMPORT_STATEMENT = re.compile(
    r'''(?:^|(?<=;))[ \t]*import\s+(?:[\w*{}\s,$]+?\s*from\s*)?['"][^'"]+['"][ \t]*;?(?:[ \t]*\n)?''',
    re.MULTILINE,
)
_EXPORT_DEFAULT = re.compile(r'\bexport\s+default\s+')
_NAMED_EXPORT = re.compile(r'\bexport\s+(?=(?:const|let|var|function|class)\b)')


def find_imports(code: str) -> list[str]:
    """Import sources in order of appearance."""
    return [m.group(1) for m in _IMPORT_PATTERN.finditer(code)]


def disallowed_imports(code: str) -> list[str]:
    """Import sources not starting with an allowed module name."""
    return [
        src for src in find_imports(code)
        if not src.startswith(_ALLOWED_IMPORT_PREFIXES)
    ]


def validate_jsx_code(code: str) -> list[str]:
    """Validate JSX/TSX code for safety using pattern-based checks.

    Args:
        code: JSX/TSX code string to validate.

    Returns:
        List of violation descriptions. Empty list means code is safe.
    """
    violations = []

    for source in disallowed_imports(code):
        violations.append(
            f"Import not allowed: {source}. Only recharts and react are permitted."
        )

    for pattern, message in _BLOCKED_PATTERNS:
        if re.search(pattern, code):
            violations.append(message)

    defaults = len(_EXPORT_DEFAULT.findall(code))
    if defaults == 0:
        violations.append("Component must have an 'export default' statement")
    elif defaults > 1:
        violations.append(f"Component must have exactly one 'export default' (found {defaults})")

    return violations


# ---- Transform ----

def strip_module_syntax(code: str) -> str:
    """Drop imports and turn the default export into ``const Component = ...``."""
    code = _IMPORT_STATEMENT.sub("", code)
    code = _EXPORT_DEFAULT.sub("const Component = ", code, count=1)
    return _NAMED_EXPORT.sub("", code)


# ---- esbuild Transpilation ----

def _find_esbuild() -> str:
    """Locate the esbuild binary: ``sandbox.esbuild_path`` config, then PATH.

    Raises:
        SandboxUnavailableError: If esbuild cannot be found.
    """
    if config.ESBUILD_PATH:
        return str(config.ESBUILD_PATH)
    system_esbuild = shutil.which("esbuild")
    if system_esbuild:
        return system_esbuild
    raise SandboxUnavailableError(
        "esbuild not found. Install it globally (npm install -g esbuild) "
        "or set sandbox.esbuild_path in config.json"
    )


_TRANSPILE_HELP = (
    "This usually happens with:\n"
    "- Unicode characters in JSX (use HTML entities or plain ASCII instead, e.g. &check; or 'ok')\n"
    "- Unbalanced or missing closing tags\n"
    "- Invalid JSX syntax\n\n"
    "Please fix the code and try again."
)


def transpile(code: str, timeout: Optional[float] = None) -> str:
    """Transpile TSX to plain JavaScript with ``React.createElement`` calls.

    Raises:
        SandboxTranspileError: esbuild rejected the source or timed out.
        SandboxUnavailableError: esbuild is not installed.
    """
    esbuild = _find_esbuild()
    timeout = timeout or config.SANDBOX_TIMEOUT_SECONDS
    try:
        result = subprocess.run(
            [esbuild, "--loader=tsx", "--jsx=transform", "--log-level=error"],
            input=code,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        raise SandboxTranspileError(
            f"Transpilation timed out after {timeout} seconds"
        ) from e
    except OSError as e:
        raise SandboxUnavailableError(f"Failed to run esbuild: {e}") from e

    if result.returncode != 0:
        lines = [ln for ln in result.stderr.splitlines() if ln.strip()]
        shown, total = trunc_items(lines, "items.stderr_lines")
        detail = "\n".join(shown)
        if total > len(shown):
            detail += f"\n... ({total - len(shown)} more lines)"
        raise SandboxTranspileError(
            f"Transpilation failed:\n{detail}\n\n{_TRANSPILE_HELP}",
            details={"stderr": result.stderr},
        )
    return result.stdout


# ---- Scope check ----

_CREATE_ELEMENT = re.compile(r'\bReact\.createElement\(\s*([A-Za-z_$][\w$]*)')
_HOOK_CALL = re.compile(r'(?<![\w$.])(use[A-Z][\w$]*)\s*\(')
_DECLARATION = re.compile(r'\b(?:const|let|var|function|class)\s+([A-Za-z_$][\w$]*)')
_DESTRUCTURE = re.compile(r'\b(?:const|let|var)\s*([\[{][^=]*?[\]}])\s*=')
_PARAMS = re.compile(r'\bfunction\b[^(]*\(([^)]*)\)|\(([^()]*)\)\s*=>|\b([A-Za-z_$][\w$]*)\s*=>')
_IDENT = re.compile(r'[A-Za-z_$][\w$]*')


def _names_in_pattern(pattern: str) -> set[str]:
    """Binding names of a destructuring/parameter list (renames take the right side)."""
    names = set()
    for piece in re.split(r'[,\[\]{}()]', pattern):
        piece = piece.split("=")[0]
        if ":" in piece:
            piece = piece.split(":")[-1]
        piece = piece.replace("...", "").strip()
        if _IDENT.fullmatch(piece):
            names.add(piece)
    return names


def declared_names(code: str) -> set[str]:
    """Names the component's own code binds (declarations, destructuring, params)."""
    names = set(_DECLARATION.findall(code))
    for pattern in _DESTRUCTURE.findall(code):
        names |= _names_in_pattern(pattern)
    for groups in _PARAMS.findall(code):
        for g in groups:
            if g:
                names |= _names_in_pattern(g)
    return names


def undefined_names(code: str) -> list[str]:
    """Components and hooks used by transpiled code but reachable from nowhere."""
    known = set(SCOPE_BINDINGS) | declared_names(code)
    used = _CREATE_ELEMENT.findall(code) + _HOOK_CALL.findall(code)
    return list(dict.fromkeys(n for n in used if n not in known))


def _undefined_message(names: list[str]) -> str:
    shown, total = trunc_items(names, "items.undefined_names")
    listed = ", ".join(f'"{n}"' for n in shown)
    if total > len(shown):
        listed += f" (+{total - len(shown)} more)"
    components, _ = trunc_items(list(RECHARTS_COMPONENTS), "items.allowed_components")
    return (
        f"Component or variable {listed} is not defined.\n\n"
        f"Available Recharts components:\n- " + "\n- ".join(components) + "\n\n"
        f"Available React bindings: React, {', '.join(REACT_HOOKS)}\n\n"
        "Common mistakes:\n"
        '- "RechartBar" should be "Bar"\n'
        '- "RechartBarChart" should be "BarChart"\n'
        "- Using a component that is not in the list above"
    )


# ---- Result ----

@dataclass(frozen=True)
class RenderableComponent:
    """A compiled component ready for the browser.

    ``module_code`` is an ES module whose default export is
    ``createComponent(scope)``; the host calls it with an object holding
    exactly ``bindings`` and renders the returned component with ``props``.
    """
    source_hash: str
    module_code: str
    bindings: tuple[str, ...] = SCOPE_BINDINGS
    props_json: str = "{}"

    def to_dict(self) -> dict:
        return {
            "sourceHash": self.source_hash,
            "moduleCode": self.module_code,
            "bindings": list(self.bindings),
            "propsJson": self.props_json,
        }


def source_hash(code: str) -> str:
    return hashlib.sha256(code.encode("utf-8")).hexdigest()[:16]


def build_module(transpiled: str) -> str:
    """Wrap transpiled code so only the enumerated bindings are in scope."""
    return (
        "export default function createComponent(scope) {\n"
        '  "use strict";\n'
        f"  const {{ {', '.join(SCOPE_BINDINGS)} }} = scope;\n"
        f"{transpiled.rstrip()}\n"
        "  return Component;\n"
        "}\n"
    )


def _fail(error: SandboxError, code: str) -> SandboxError:
    get_event_bus().emit(
        SANDBOX_ERROR, agent="sandbox", level="warning",
        msg=f"[Sandbox] {error.stage} failed: {error.message.splitlines()[0]}",
        data={"stage": error.stage, "sourceHash": source_hash(code)},
    )
    return error


# ---- Full Pipeline ----

def execute(source_code: str, props: Optional[dict[str, Any]] = None) -> RenderableComponent:
    """Validate, transform and compile one component.

    Args:
        source_code: Model-generated JSX/TSX with a default-exported component.
        props: JSON-serializable props for the component.

    Returns:
        RenderableComponent; identical inputs give identical output.

    Raises:
        SandboxValidationError: Disallowed import, blocked API, bad export or props.
        SandboxTranspileError: Source does not parse.
        SandboxExecutionError: Source uses a component or hook that is not in scope.
    """
    if not source_code or not source_code.strip():
        raise _fail(SandboxValidationError("Component source is empty"), source_code or "")

    violations = validate_jsx_code(source_code)
    if violations:
        raise _fail(SandboxValidationError(
            "JSX validation failed:\n" + "\n".join(f"  - {v}" for v in violations),
            details={"violations": violations, "imports": disallowed_imports(source_code)},
        ), source_code)

    try:
        props_json = canonical_json(props or {})
    except (TypeError, ValueError) as e:
        raise _fail(SandboxValidationError(f"Props must be JSON-serializable: {e}"), source_code) from e

    try:
        transpiled = transpile(strip_module_syntax(source_code))
    except SandboxError as e:
        raise _fail(e, source_code)

    missing = undefined_names(transpiled)
    if missing:
        raise _fail(SandboxExecutionError(
            _undefined_message(missing), details={"undefined": missing},
        ), source_code)

    logger.debug(f"[Sandbox] Compiled component {source_hash(source_code)} ({len(transpiled)} chars)")
    return RenderableComponent(
        source_hash=source_hash(source_code),
        module_code=build_module(transpiled),
        props_json=props_json,
    )
