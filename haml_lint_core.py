"""
Core logic for HamlLint Sublime Text plugin.

This module contains pure Python functions without any Sublime Text dependencies,
making it testable with pytest outside of Sublime Text environment.
"""

import itertools
import json
import logging
import os
import re
import shlex
import subprocess
import sys
import tempfile
import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, Hashable, List, Optional, Protocol, Set, Tuple

logger = logging.getLogger(__name__)

HAML_LINT_CONFIG = ".haml-lint.yml"
RUBOCOP_CONFIG = ".rubocop.yml"

# haml-lint reads the RuboCop config for embedded Ruby from this variable
RUBOCOP_CONFIG_ENV = "HAML_LINT_RUBOCOP_CONF"

DEFAULT_LINTER_PATH = "haml-lint"
DEFAULT_TIMEOUT_MS = 10000
DEFAULT_DEBOUNCE_MS = 500

# Linter name haml-lint reports for offenses coming from embedded RuboCop
RUBOCOP_LINTER = "RuboCop"


# ============================================================================
# Settings
# ============================================================================


class HamlLintSettings:
    """Plugin settings, decoupled from sublime.Settings."""

    def __init__(
        self,
        linter_path: str = DEFAULT_LINTER_PATH,
        enable_diagnostics: bool = True,
        enable_formatting: bool = True,
        formatter_mode: str = "safe",
        format_in_background: bool = True,
        enable_autocorrections: bool = True,
        additional_linter_arguments: str = "",
        additional_formatter_arguments: str = "",
        config_path: str = "",
        globally_disabled_linters: Optional[List[str]] = None,
        disabled_rubocop_rules: Optional[List[str]] = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
    ):
        self.linter_path = linter_path
        self.enable_diagnostics = enable_diagnostics
        self.enable_formatting = enable_formatting
        self.formatter_mode = formatter_mode
        self.format_in_background = format_in_background
        self.enable_autocorrections = enable_autocorrections
        self.additional_linter_arguments = additional_linter_arguments
        self.additional_formatter_arguments = additional_formatter_arguments
        self.config_path = config_path
        self.globally_disabled_linters = list(globally_disabled_linters or [])
        self.disabled_rubocop_rules = list(disabled_rubocop_rules or [])
        self.timeout_ms = timeout_ms
        self.debounce_ms = debounce_ms

    @classmethod
    def from_mapping(cls, get: Callable[[str, Any], Any]) -> "HamlLintSettings":
        """
        Build settings from a ``get(key, default)`` accessor.

        Works with both ``sublime.Settings.get`` and ``dict.get``.
        """
        defaults = cls()
        return cls(
            linter_path=get("linter_path", defaults.linter_path) or defaults.linter_path,
            enable_diagnostics=bool(get("enable_diagnostics", defaults.enable_diagnostics)),
            enable_formatting=bool(get("enable_formatting", defaults.enable_formatting)),
            formatter_mode=get("formatter_mode", defaults.formatter_mode) or defaults.formatter_mode,
            format_in_background=bool(get("format_in_background", defaults.format_in_background)),
            enable_autocorrections=bool(get("enable_autocorrections", defaults.enable_autocorrections)),
            additional_linter_arguments=get("additional_linter_arguments", "") or "",
            additional_formatter_arguments=get("additional_formatter_arguments", "") or "",
            config_path=get("config_path", "") or "",
            globally_disabled_linters=get("globally_disabled_linters", []) or [],
            disabled_rubocop_rules=get("disabled_rubocop_rules", []) or [],
            timeout_ms=int(get("timeout_ms", defaults.timeout_ms) or defaults.timeout_ms),
            debounce_ms=int(get("debounce_ms", defaults.debounce_ms) or defaults.debounce_ms),
        )


def is_haml_file(filename: Optional[str]) -> bool:
    """Check if a file should be processed by haml-lint."""
    if not filename:
        return False
    return os.path.basename(filename).endswith(".haml")


# ============================================================================
# Config resolution
# ============================================================================


def find_config_dir(start_path: str, config_filename: str = HAML_LINT_CONFIG) -> Optional[str]:
    """
    Search for a config file by walking up the directory tree.

    Args:
        start_path: Starting directory or file path
        config_filename: Name of the config file to search for

    Returns:
        Directory containing the config file, or None if not found
    """
    if os.path.isfile(start_path):
        current = os.path.dirname(start_path)
    else:
        current = start_path

    current = os.path.abspath(current)

    while True:
        if os.path.isfile(os.path.join(current, config_filename)):
            return current

        parent = os.path.dirname(current)
        if parent == current:
            # Reached filesystem root
            return None
        current = parent


def resolve_config_path(
    configured_path: Optional[str],
    project_root: Optional[str],
    file_path: Optional[str] = None,
    warn: Optional[Callable[[str], None]] = None,
) -> Optional[str]:
    """
    Determine which haml-lint config file to pass via --config.

    Priority:
        1. User-specified ``config_path`` setting (``~`` and env vars expanded,
           relative paths resolved against the project root)
        2. .haml-lint.yml in the project root
        3. Nearest .haml-lint.yml above the file being linted

    Args:
        configured_path: Value of the config_path setting
        project_root: Project folder containing the file, if any
        file_path: Path of the document on disk, if saved
        warn: Called with a user-facing message when the configured path is missing

    Returns:
        Absolute config path, or None to let haml-lint use its own lookup
    """
    if configured_path:
        expanded = os.path.expandvars(os.path.expanduser(configured_path))
        if not os.path.isabs(expanded) and project_root:
            expanded = os.path.join(project_root, expanded)
        if os.path.isfile(expanded):
            return expanded
        logger.warning("Configured haml-lint config not found: %s", expanded)
        if warn:
            warn(f'HamlLint: Config not found at "{configured_path}", using default')

    if project_root:
        candidate = os.path.join(project_root, HAML_LINT_CONFIG)
        if os.path.isfile(candidate):
            return candidate

    if file_path:
        config_dir = find_config_dir(file_path)
        if config_dir:
            return os.path.join(config_dir, HAML_LINT_CONFIG)

    return None


def resolve_rubocop_config_path(project_root: Optional[str], file_path: Optional[str] = None) -> Optional[str]:
    """Find the project's .rubocop.yml: project root first, then above the file."""
    if project_root:
        candidate = os.path.join(project_root, RUBOCOP_CONFIG)
        if os.path.isfile(candidate):
            return candidate

    if file_path:
        config_dir = find_config_dir(file_path, RUBOCOP_CONFIG)
        if config_dir:
            return os.path.join(config_dir, RUBOCOP_CONFIG)

    return None


# ============================================================================
# Process runner
# ============================================================================


class ErrorKind(Enum):
    """Why a haml-lint invocation failed."""

    NOT_FOUND = "not_found"
    RUBY_VERSION_UNSET = "ruby_version_unset"
    BUNDLE_MISSING = "bundle_missing"
    TIMEOUT = "timeout"
    INVOCATION_FAILED = "invocation_failed"


class HamlLintError(Exception):
    """Raised when haml-lint could not produce a usable result."""

    def __init__(self, kind: ErrorKind, message: str, exit_code: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.exit_code = exit_code


_RUBY_VERSION_PATTERNS = ("No version is set for command", "tool-versions", "ruby-version")
_BUNDLE_PATTERNS = ("Gemfile", "bundle")
_NOT_FOUND_PATTERNS = ("command not found", "ENOENT", "not found")


def classify_error(message: str, exit_code: Optional[int] = None) -> ErrorKind:
    """
    Map process error output to an ErrorKind.

    Version-manager and Bundler messages are checked before the generic
    "not found" patterns because they often contain those words too.
    """
    if exit_code == 127:
        return ErrorKind.NOT_FOUND
    if any(pattern in message for pattern in _RUBY_VERSION_PATTERNS):
        return ErrorKind.RUBY_VERSION_UNSET
    if any(pattern in message for pattern in _BUNDLE_PATTERNS):
        return ErrorKind.BUNDLE_MISSING
    if any(pattern in message for pattern in _NOT_FOUND_PATTERNS):
        return ErrorKind.NOT_FOUND
    return ErrorKind.INVOCATION_FAILED


def error_message(error: HamlLintError) -> str:
    """Get the user-facing message for a failed invocation."""
    if error.kind is ErrorKind.NOT_FOUND:
        return (
            "haml-lint not found. Please install it with 'gem install haml_lint' "
            "or configure the path in settings (linter_path)."
        )
    if error.kind is ErrorKind.RUBY_VERSION_UNSET:
        return (
            "haml-lint requires a Ruby version to be set. Please configure your "
            "Ruby version manager (asdf, rbenv, etc.) for this project."
        )
    if error.kind is ErrorKind.BUNDLE_MISSING:
        return f"haml-lint error: {error.message}. Try running 'bundle install' in your project."
    if error.kind is ErrorKind.TIMEOUT:
        return f"HamlLint: {error.message}"
    return f"HamlLint: Formatting failed: {error.message}"


class HamlLintOptions:
    """Options for a single haml-lint invocation."""

    def __init__(
        self,
        cwd: Optional[str] = None,
        linter_path: str = DEFAULT_LINTER_PATH,
        config_path: Optional[str] = None,
        auto_correct: bool = False,
        formatter_mode: str = "safe",
        additional_args: str = "",
        excluded_linters: Optional[List[str]] = None,
        disabled_rubocop_rules: Optional[List[str]] = None,
        rubocop_config_path: Optional[str] = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ):
        self.cwd = cwd
        self.linter_path = linter_path
        self.config_path = config_path
        self.auto_correct = auto_correct
        self.formatter_mode = formatter_mode
        self.additional_args = additional_args
        self.excluded_linters = list(excluded_linters or [])
        self.disabled_rubocop_rules = list(disabled_rubocop_rules or [])
        # Project .rubocop.yml the generated override inherits from
        self.rubocop_config_path = rubocop_config_path
        self.timeout_ms = timeout_ms


class HamlLintResult:
    """Raw result of a haml-lint run."""

    def __init__(
        self,
        success: bool,
        output: str,
        formatted_content: Optional[str] = None,
        exit_code: Optional[int] = None,
    ):
        self.success = success
        self.output = output
        self.formatted_content = formatted_content
        self.exit_code = exit_code

    def __repr__(self) -> str:
        return f"HamlLintResult(success={self.success}, exit_code={self.exit_code})"


def split_arguments(arguments: str) -> List[str]:
    """Split a user-supplied argument string the way a shell would."""
    if not arguments or not arguments.strip():
        return []
    return shlex.split(arguments, posix=sys.platform != "win32")


def build_haml_lint_args(
    target: str,
    auto_correct: bool = False,
    formatter_mode: str = "safe",
    config_path: Optional[str] = None,
    excluded_linters: Optional[List[str]] = None,
    extra_args: Optional[List[str]] = None,
) -> List[str]:
    """
    Build command-line arguments for haml-lint.

    Args:
        target: File to lint (the temp file)
        auto_correct: Rewrite the file in place instead of only reporting
        formatter_mode: "safe" for --auto-correct, "all" for --auto-correct-all
        config_path: Value for --config, omitted when None
        excluded_linters: Linter names passed to --exclude-linter
        extra_args: Additional arguments, placed before the target

    Returns:
        List of command-line arguments (without the executable)
    """
    args = []

    if auto_correct:
        flag = "--auto-correct-all" if formatter_mode == "all" else "--auto-correct"
        args.extend([flag, "--auto-correct-only"])

    args.extend(["--reporter", "json"])

    if config_path:
        args.extend(["--config", config_path])

    if excluded_linters:
        args.extend(["--exclude-linter", ",".join(excluded_linters)])

    if extra_args:
        args.extend(extra_args)

    args.append(target)
    return args


def create_temp_file(content: str, original_file_name: Optional[str]) -> str:
    """
    Write content to a fresh temp file and return its path.

    The name keeps the original basename so haml-lint's file matching and
    messages still make sense.
    """
    basename = os.path.basename(original_file_name or "") or "untitled.haml"
    prefix = f"haml-lint-{int(time.time() * 1000)}-"
    fd, path = tempfile.mkstemp(prefix=prefix, suffix=f"-{basename}")
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(content)
    except BaseException:
        cleanup_temp_file(path)
        raise
    return path


def cleanup_temp_file(path: str) -> None:
    """Delete a temp file; deletion errors are logged and ignored."""
    try:
        os.unlink(path)
    except OSError as e:
        logger.debug("Could not remove temp file %s: %s", path, e)


def _read_text(path: str) -> str:
    with open(path, "r", encoding="utf-8", newline="") as f:
        return f.read()


def _execute(
    cmd: List[str], cwd: Optional[str], timeout_ms: int, env: Optional[Dict[str, str]] = None
) -> Tuple[int, str, str]:
    """Run a command and return (return_code, stdout, stderr)."""
    # On Windows, hide the console window that would otherwise flash
    creationflags = subprocess.CREATE_NO_WINDOW if sys.platform == "win32" else 0

    try:
        process = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=cwd,
            env=env,
            creationflags=creationflags,
        )
    except FileNotFoundError as e:
        raise HamlLintError(ErrorKind.NOT_FOUND, f"haml-lint not found at: {cmd[0]}") from e
    except OSError as e:
        raise HamlLintError(classify_error(str(e)), str(e)) from e

    try:
        stdout, stderr = process.communicate(timeout=timeout_ms / 1000.0)
    except subprocess.TimeoutExpired as e:
        process.kill()
        process.communicate()
        raise HamlLintError(ErrorKind.TIMEOUT, f"haml-lint timed out after {timeout_ms} ms") from e

    return (
        process.returncode,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


def run_haml_lint(content: str, original_file_path: Optional[str], options: HamlLintOptions) -> HamlLintResult:
    """
    Run haml-lint against in-memory content via a temp file.

    haml-lint exits non-zero whenever it finds offenses. In lint mode a
    non-zero exit is only treated as a failure when nothing was written to
    stdout. In auto-correct mode the (possibly rewritten) temp file is read
    back whatever the exit code. Launch failures and timeouts raise in both
    modes. Temp files are always deleted.

    Args:
        content: Document text
        original_file_path: Real file name, used only for the temp file name
        options: Invocation options

    Returns:
        HamlLintResult with raw JSON output and, for auto-correct, the new content

    Raises:
        HamlLintError: If haml-lint could not be run or produced no output
    """
    try:
        temp_file = create_temp_file(content, original_file_path)
    except OSError as e:
        raise HamlLintError(ErrorKind.INVOCATION_FAILED, f"Could not create temp file: {e}") from e

    rubocop_config = None
    try:
        env = None
        if options.disabled_rubocop_rules:
            try:
                rubocop_config = write_rubocop_override(options.rubocop_config_path, options.disabled_rubocop_rules)
            except OSError as e:
                raise HamlLintError(ErrorKind.INVOCATION_FAILED, f"Could not write RuboCop config: {e}") from e
            env = dict(os.environ)
            env[RUBOCOP_CONFIG_ENV] = rubocop_config

        cmd = [options.linter_path] + build_haml_lint_args(
            temp_file,
            auto_correct=options.auto_correct,
            formatter_mode=options.formatter_mode,
            config_path=options.config_path,
            excluded_linters=options.excluded_linters,
            extra_args=split_arguments(options.additional_args),
        )
        logger.debug("Running: %s (cwd: %s)", " ".join(shlex.quote(arg) for arg in cmd), options.cwd)

        returncode, stdout, stderr = _execute(cmd, options.cwd, options.timeout_ms, env)
        exit_code = returncode if returncode != 0 else None

        if options.auto_correct:
            # The rewrite may land even when haml-lint exits non-zero without a report
            if returncode != 0:
                logger.debug("haml-lint auto-correct exited with code %s: %s", returncode, stderr.strip())
            try:
                formatted = _read_text(temp_file)
            except OSError as e:
                raise HamlLintError(ErrorKind.INVOCATION_FAILED, f"Could not read formatted output: {e}") from e
            return HamlLintResult(True, stdout, formatted_content=formatted, exit_code=exit_code)

        if returncode != 0 and not stdout.strip():
            detail = stderr.strip() or f"haml-lint exited with code {returncode}"
            raise HamlLintError(classify_error(detail, returncode), detail, returncode)

        return HamlLintResult(True, stdout, exit_code=exit_code)
    finally:
        cleanup_temp_file(temp_file)
        if rubocop_config:
            cleanup_temp_file(rubocop_config)


# ============================================================================
# Diagnostics
# ============================================================================


class Severity(Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


_SEVERITY_MAP = {
    "error": Severity.ERROR,
    "fatal": Severity.ERROR,
    "warning": Severity.WARNING,
}


def map_severity(severity: Optional[str]) -> Severity:
    return _SEVERITY_MAP.get(severity or "", Severity.INFO)


class Finding:
    """A single haml-lint offense, positioned on a 0-based line."""

    def __init__(self, rule: str, line: int, severity: Severity, message: str):
        self.rule = rule
        self.line = line
        self.severity = severity
        self.message = message

    def __repr__(self) -> str:
        return f"Finding({self.line}: [{self.rule}] {self.severity.value} {self.message})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Finding):
            return NotImplemented
        return (
            self.rule == other.rule
            and self.line == other.line
            and self.severity == other.severity
            and self.message == other.message
        )


def parse_lint_output(output: str) -> List[Finding]:
    """
    Parse haml-lint JSON reporter output for a single file.

    Expected shape::

        {"files": [{"path": ..., "offenses": [
            {"linter_name": ..., "location": {"line": 5}, "message": ..., "severity": ...}
        ]}]}

    Diagnostics are best-effort: any malformed output yields an empty list.

    Args:
        output: Raw stdout from haml-lint

    Returns:
        Findings in report order
    """
    try:
        data = json.loads(output)
        files = data["files"]
        if not files:
            return []

        findings = []
        for offense in files[0].get("offenses", []):
            line = int(offense.get("location", {}).get("line", 1))
            findings.append(
                Finding(
                    rule=offense.get("linter_name", ""),
                    line=max(line - 1, 0),
                    severity=map_severity(offense.get("severity")),
                    message=offense.get("message", ""),
                )
            )
        return findings
    except (ValueError, KeyError, TypeError, AttributeError, IndexError) as e:
        logger.warning("Failed to parse haml-lint JSON output: %s", e)
        return []


def finding_span(line_text: str) -> Tuple[int, int]:
    """
    Get the half-open column range to underline for a finding.

    haml-lint only reports lines, so the whole trimmed line is used.
    """
    stripped = line_text.lstrip()
    return len(line_text) - len(stripped), len(line_text.rstrip("\r\n"))


def summarize_findings(findings: List[Finding]) -> str:
    """Get a summary message for the status bar."""
    if not findings:
        return "OK"

    parts = []
    for severity, label in (
        (Severity.ERROR, "error"),
        (Severity.WARNING, "warning"),
        (Severity.INFO, "info"),
    ):
        count = sum(1 for finding in findings if finding.severity is severity)
        if count:
            parts.append(f"{count} {label}{'s' if count != 1 and label != 'info' else ''}")
    return ", ".join(parts)


class DiagnosticStore:
    """Published findings per document identity."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._findings: Dict[Hashable, List[Finding]] = {}

    def set(self, identity: Hashable, findings: List[Finding]) -> None:
        with self._lock:
            self._findings[identity] = list(findings)

    def get(self, identity: Hashable) -> List[Finding]:
        with self._lock:
            return list(self._findings.get(identity, []))

    def on_line(self, identity: Hashable, line: int) -> List[Finding]:
        return [finding for finding in self.get(identity) if finding.line == line]

    def delete(self, identity: Hashable) -> None:
        with self._lock:
            self._findings.pop(identity, None)

    def clear(self) -> None:
        with self._lock:
            self._findings.clear()

    def __contains__(self, identity: Hashable) -> bool:
        with self._lock:
            return identity in self._findings


class Debouncer:
    """
    Delay a callback per key; only the most recent trigger fires.

    ``schedule(callback, delay_ms)`` is the host timer (e.g.
    ``sublime.set_timeout_async``). Timers cannot be cancelled, so each
    trigger takes a new generation and stale timers do nothing when they fire.
    """

    def __init__(self, schedule: Callable[[Callable[[], None], int], None], delay_ms: int = DEFAULT_DEBOUNCE_MS):
        self._schedule = schedule
        self.delay_ms = delay_ms
        self._lock = threading.Lock()
        self._counter = itertools.count(1)
        self._pending: Dict[Hashable, int] = {}

    def trigger(self, key: Hashable, callback: Callable[[], None]) -> None:
        with self._lock:
            generation = next(self._counter)
            self._pending[key] = generation

        def fire() -> None:
            with self._lock:
                if self._pending.get(key) != generation:
                    return
                del self._pending[key]
            callback()

        self._schedule(fire, self.delay_ms)

    def cancel(self, key: Hashable) -> None:
        with self._lock:
            self._pending.pop(key, None)

    def cancel_all(self) -> None:
        with self._lock:
            self._pending.clear()

    def is_pending(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._pending


# ============================================================================
# Autocorrection
# ============================================================================


class LinterSettings:
    """haml-lint rule settings that drive the in-process autocorrections."""

    def __init__(self, final_newline_present: bool = True, space_inside_hash_attributes_style: str = "space"):
        self.final_newline_present = final_newline_present
        self.space_inside_hash_attributes_style = space_inside_hash_attributes_style

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, LinterSettings):
            return NotImplemented
        return (
            self.final_newline_present == other.final_newline_present
            and self.space_inside_hash_attributes_style == other.space_inside_hash_attributes_style
        )

    def __repr__(self) -> str:
        return (
            f"LinterSettings(final_newline_present={self.final_newline_present}, "
            f"space_inside_hash_attributes_style={self.space_inside_hash_attributes_style!r})"
        )


_FINAL_NEWLINE_RE = re.compile(r"FinalNewline:\s*\n(?:[ \t]+[^\n]+\n)*?[ \t]+present:\s*(true|false)")
_HASH_STYLE_RE = re.compile(
    r"SpaceInsideHashAttributes:\s*\n(?:[ \t]+[^\n]+\n)*?[ \t]+style:\s*['\"]?(space|no_space)['\"]?"
)


def parse_linter_settings(config_content: str) -> LinterSettings:
    """Extract FinalNewline and SpaceInsideHashAttributes settings from config text."""
    settings = LinterSettings()

    match = _FINAL_NEWLINE_RE.search(config_content)
    if match:
        settings.final_newline_present = match.group(1) == "true"

    match = _HASH_STYLE_RE.search(config_content)
    if match:
        settings.space_inside_hash_attributes_style = match.group(1)

    return settings


def read_linter_settings(config_path: Optional[str]) -> LinterSettings:
    """Read linter settings from a .haml-lint.yml, falling back to defaults."""
    if not config_path:
        return LinterSettings()
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            return parse_linter_settings(f.read())
    except (OSError, UnicodeDecodeError) as e:
        logger.debug("Using default linter settings, could not read %s: %s", config_path, e)
        return LinterSettings()


_TRAILING_WHITESPACE_RE = re.compile(r"[ \t]+$", re.MULTILINE)

# %tag, .class or #id followed somewhere by an opening brace
_HASH_ATTRIBUTE_LINE_RE = re.compile(r"^[ \t]*[%#.][\w-]*.*\{")


def autocorrect_trailing_whitespace(content: str) -> str:
    """Remove trailing spaces and tabs from every line."""
    return _TRAILING_WHITESPACE_RE.sub("", content)


def autocorrect_final_newline(content: str, present: bool) -> str:
    """Ensure content ends with exactly one newline, or none if present is False."""
    trimmed = content.rstrip("\n")
    return trimmed + "\n" if present else trimmed


def _fix_hash_content(content: str, style: str) -> str:
    trimmed = content.strip()
    if not trimmed:
        return ""
    if style == "space":
        return f" {trimmed} "
    return trimmed


def _fix_hash_opening(after_brace: str, style: str) -> str:
    trimmed = after_brace.lstrip(" \t")
    if not trimmed:
        # Hash continues on the next line
        return after_brace
    if style == "space":
        return " " + trimmed
    return trimmed


def fix_hash_attributes_on_line(line: str, style: str) -> str:
    """
    Fix spacing inside hash attribute braces on a single line.

    Braces are matched by nesting depth, so Ruby blocks and nested hashes
    inside the attributes are kept intact. A brace with no match on the line
    starts a multi-line hash; only the text right after it is normalized.
    Unbalanced braces inside string literals can mis-locate the closing brace.

    Args:
        line: A single line without its terminator
        style: "space" for ``{ key: value }``, "no_space" for ``{key: value}``

    Returns:
        The corrected line
    """
    parts = []
    i = 0
    length = len(line)

    while i < length:
        start = line.find("{", i)
        if start == -1:
            parts.append(line[i:])
            break

        parts.append(line[i:start])

        depth = 1
        j = start + 1
        while j < length and depth > 0:
            if line[j] == "{":
                depth += 1
            elif line[j] == "}":
                depth -= 1
            j += 1

        if depth == 0:
            parts.append("{" + _fix_hash_content(line[start + 1 : j - 1], style) + "}")
            i = j
        else:
            parts.append("{" + _fix_hash_opening(line[start + 1 :], style))
            break

    return "".join(parts)


def autocorrect_space_inside_hash_attributes(content: str, style: str) -> str:
    """Apply fix_hash_attributes_on_line to every element line with a hash."""
    lines = content.split("\n")
    for index, line in enumerate(lines):
        if _HASH_ATTRIBUTE_LINE_RE.match(line):
            lines[index] = fix_hash_attributes_on_line(line, style)
    return "\n".join(lines)


def detect_line_ending(content: str) -> str:
    """
    Detect the line ending style used in content.

    Returns:
        Line ending string: '\\r\\n' for Windows, '\\n' for Unix
    """
    if "\r\n" in content:
        return "\r\n"
    return "\n"


def normalize_line_ending(content: str, line_ending: str) -> str:
    """Normalize content to use a specific line ending style."""
    normalized = content.replace("\r\n", "\n")
    if line_ending == "\r\n":
        normalized = normalized.replace("\n", "\r\n")
    return normalized


def apply_autocorrections(content: str, settings: Optional[LinterSettings] = None) -> str:
    """
    Apply the in-process corrections haml-lint cannot auto-correct itself.

    Corrections applied, in order:
        - TrailingWhitespace: remove trailing spaces/tabs from lines
        - SpaceInsideHashAttributes: fix spacing in hash attributes
        - FinalNewline: ensure the configured number of trailing newlines

    Args:
        content: Text after haml-lint's own auto-correct pass
        settings: Rule settings; defaults when None

    Returns:
        Corrected text, with the original line ending style preserved
    """
    settings = settings or LinterSettings()
    line_ending = detect_line_ending(content)
    result = normalize_line_ending(content, "\n")

    started = time.perf_counter()
    result = autocorrect_trailing_whitespace(result)
    result = autocorrect_space_inside_hash_attributes(result, settings.space_inside_hash_attributes_style)
    result = autocorrect_final_newline(result, settings.final_newline_present)
    logger.debug("Autocorrections took %.2fms", (time.perf_counter() - started) * 1000)

    return normalize_line_ending(result, line_ending)


# ============================================================================
# Formatting orchestration
# ============================================================================


class Document(Protocol):
    """The editor document operations the formatter needs."""

    @property
    def identity(self) -> Hashable:
        ...

    @property
    def file_name(self) -> Optional[str]:
        ...

    def version(self) -> int:
        ...

    def text(self) -> str:
        ...

    def replace_all(self, content: str, expected_version: Optional[int] = None) -> bool:
        """Replace the whole buffer; return False if expected_version no longer matches."""
        ...

    def save(self) -> None:
        ...


class FormatMode(Enum):
    FOREGROUND = "foreground"
    BACKGROUND = "background"


class FormatOutcome(Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    SUPERSEDED = "superseded"
    ALREADY_RUNNING = "already_running"
    FAILED = "failed"


class FormatRequest:
    """Snapshot of a document taken when a format starts."""

    def __init__(self, identity: Hashable, version: int, text: str, file_name: Optional[str], mode: FormatMode):
        self.identity = identity
        self.version = version
        self.text = text
        self.file_name = file_name
        self.mode = mode

    @classmethod
    def capture(cls, document: Document, mode: FormatMode) -> "FormatRequest":
        return cls(document.identity, document.version(), document.text(), document.file_name, mode)

    def is_superseded(self, document: Document) -> bool:
        """True if the document was edited after this snapshot was taken."""
        return document.version() != self.version


class FormatContext:
    """Per-document inputs to the format pipeline."""

    def __init__(self, options: HamlLintOptions, linter_settings: Optional[LinterSettings] = None):
        self.options = options
        # None disables the in-process autocorrections
        self.linter_settings = linter_settings


class InProgressSet:
    """Document identities with a background format in flight."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: Set[Hashable] = set()

    def try_acquire(self, identity: Hashable) -> bool:
        with self._lock:
            if identity in self._active:
                return False
            self._active.add(identity)
            return True

    def release(self, identity: Hashable) -> None:
        with self._lock:
            self._active.discard(identity)

    def clear(self) -> None:
        with self._lock:
            self._active.clear()

    def __contains__(self, identity: Hashable) -> bool:
        with self._lock:
            return identity in self._active


class ResaveGuard:
    """Marks saves issued by the formatter so they do not trigger another format."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._marked: Set[Hashable] = set()

    def mark(self, identity: Hashable) -> None:
        with self._lock:
            self._marked.add(identity)

    def consume(self, identity: Hashable) -> bool:
        with self._lock:
            if identity in self._marked:
                self._marked.discard(identity)
                return True
            return False

    def discard(self, identity: Hashable) -> None:
        with self._lock:
            self._marked.discard(identity)

    def clear(self) -> None:
        with self._lock:
            self._marked.clear()


Runner = Callable[[str, Optional[str], HamlLintOptions], HamlLintResult]


class Formatter:
    """
    Runs the format pipeline in foreground and background modes.

    Pipeline: haml-lint auto-correct, then the in-process autocorrections,
    then a comparison with the original text.

    Background formatting never blocks edits. It captures the document version
    up front and throws its result away if the version moved while haml-lint
    was running.
    """

    def __init__(
        self,
        runner: Runner = run_haml_lint,
        in_progress: Optional[InProgressSet] = None,
        resave_guard: Optional[ResaveGuard] = None,
        notify_error: Optional[Callable[[str], None]] = None,
    ):
        self._runner = runner
        self.in_progress = in_progress if in_progress is not None else InProgressSet()
        self.resave_guard = resave_guard if resave_guard is not None else ResaveGuard()
        self._notify_error = notify_error or (lambda message: None)

    def compute(self, request: FormatRequest, context: FormatContext) -> Optional[str]:
        """
        Run the pipeline for a snapshot.

        Returns:
            The formatted text, or None if nothing changed

        Raises:
            HamlLintError: If haml-lint failed
        """
        result = self._runner(request.text, request.file_name, context.options)
        formatted = result.formatted_content or request.text

        if context.linter_settings is not None:
            formatted = apply_autocorrections(formatted, context.linter_settings)

        if formatted == request.text:
            return None
        return formatted

    def format_document(self, document: Document, context: FormatContext) -> Optional[str]:
        """
        Format synchronously for an explicit format request.

        Failures are reported through notify_error.

        Returns:
            Replacement text for the whole document, or None for no edit
        """
        request = FormatRequest.capture(document, FormatMode.FOREGROUND)
        try:
            return self.compute(request, context)
        except HamlLintError as e:
            logger.error("Formatting %s failed (%s): %s", request.file_name, e.kind.value, e.message)
            self._notify_error(error_message(e))
            return None

    def format_in_background(self, document: Document, context: FormatContext) -> FormatOutcome:
        """Format after a save, re-saving if the content changed."""
        identity = document.identity
        if not self.in_progress.try_acquire(identity):
            return FormatOutcome.ALREADY_RUNNING
        try:
            return self._format_acquired(document, context)
        finally:
            self.in_progress.release(identity)

    def spawn_background_format(
        self,
        document: Document,
        context: FormatContext,
        on_done: Optional[Callable[[FormatOutcome], None]] = None,
    ) -> Optional[threading.Thread]:
        """
        Run format_in_background on its own thread.

        The in-progress slot is taken on the thread, so two spawns racing for
        the same document still run at most one format; the loser reports
        ALREADY_RUNNING to on_done.

        Returns:
            The thread handle, or None if a format for this document is already running
        """
        identity = document.identity
        if identity in self.in_progress:
            logger.debug("Background format already running for %s", identity)
            return None

        def target() -> None:
            outcome = FormatOutcome.FAILED
            try:
                outcome = self.format_in_background(document, context)
            except Exception:
                logger.exception("Background format failed for %s", document.file_name)
            if on_done:
                on_done(outcome)

        thread = threading.Thread(target=target, name=f"haml-lint-format-{identity}", daemon=True)
        thread.start()
        return thread

    def _format_acquired(self, document: Document, context: FormatContext) -> FormatOutcome:
        request = FormatRequest.capture(document, FormatMode.BACKGROUND)

        try:
            formatted = self.compute(request, context)
        except HamlLintError as e:
            if e.kind is ErrorKind.NOT_FOUND:
                self._notify_error(error_message(e))
            else:
                logger.warning("Background format of %s failed (%s): %s", request.file_name, e.kind.value, e.message)
            return FormatOutcome.FAILED

        if formatted is None:
            return FormatOutcome.UNCHANGED

        if request.is_superseded(document):
            logger.info("Discarding background format of %s: document changed", request.file_name)
            return FormatOutcome.SUPERSEDED

        if not document.replace_all(formatted, expected_version=request.version):
            logger.info("Discarding background format of %s: document changed", request.file_name)
            return FormatOutcome.SUPERSEDED

        self.resave_guard.mark(request.identity)
        try:
            document.save()
        except BaseException:
            self.resave_guard.discard(request.identity)
            raise
        return FormatOutcome.APPLIED


# ============================================================================
# Quick fixes
# ============================================================================


class ConfigDialect(Enum):
    """Rule configuration file flavours haml-lint projects use."""

    HAML_LINT = "haml_lint"
    RUBOCOP = "rubocop"

    @property
    def filename(self) -> str:
        return HAML_LINT_CONFIG if self is ConfigDialect.HAML_LINT else RUBOCOP_CONFIG


class QuickFix:
    """An action offered for a finding."""

    def __init__(self, title: str, command: str, args: Dict[str, Any], preferred: bool = False):
        self.title = title
        self.command = command
        self.args = args
        self.preferred = preferred

    def __repr__(self) -> str:
        return f"QuickFix({self.title!r}, {self.command}, {self.args})"


def extract_rubocop_rule(message: str) -> Optional[str]:
    """Get the cop name from a RuboCop message like 'Style/StringLiterals: ...'."""
    match = re.match(r"^([^:]+):", message)
    if not match:
        return None
    return match.group(1).strip() or None


def build_quick_fixes(finding: Finding) -> List[QuickFix]:
    """Build the disable-rule actions for a finding."""
    if not finding.rule:
        return []

    if finding.rule == RUBOCOP_LINTER:
        cop = extract_rubocop_rule(finding.message)
        if not cop:
            return []
        return [
            QuickFix(
                f"Disable RuboCop '{cop}' in this project ({RUBOCOP_CONFIG})",
                "haml_lint_disable_rule",
                {"rule": cop, "dialect": ConfigDialect.RUBOCOP.value},
                preferred=True,
            ),
            QuickFix(
                f"Disable RuboCop '{cop}' globally (all projects)",
                "haml_lint_disable_rubocop_rule_globally",
                {"rule": cop},
            ),
        ]

    return [
        QuickFix(
            f"Disable '{finding.rule}' in this project ({HAML_LINT_CONFIG})",
            "haml_lint_disable_rule",
            {"rule": finding.rule, "dialect": ConfigDialect.HAML_LINT.value},
        ),
        QuickFix(
            f"Disable '{finding.rule}' globally (all projects)",
            "haml_lint_disable_linter_globally",
            {"rule": finding.rule},
        ),
    ]


# ============================================================================
# Config patching
# ============================================================================


class ConfigPatchError(Exception):
    """Raised when a rule configuration file cannot be read or written."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Failed to update {os.path.basename(path)}: {reason}")
        self.path = path
        self.reason = reason


def _indent_of(line: str) -> int:
    return len(line) - len(line.lstrip())


def _is_blank_or_comment(line: str) -> bool:
    stripped = line.strip()
    return not stripped or stripped.startswith("#")


def _disable_in_block(lines: List[str], rule_index: int, key: str) -> Optional[List[str]]:
    """
    Set ``key: false`` inside the mapping that starts at rule_index.

    Returns:
        The updated lines, or None if the rule is already disabled
    """
    rule_indent = _indent_of(lines[rule_index])
    key_re = re.compile(rf"^(\s*){key}\s*:\s*([^\s#]+)")
    child_indent = None

    for index in range(rule_index + 1, len(lines)):
        line = lines[index]
        if _is_blank_or_comment(line):
            continue
        indent = _indent_of(line)
        if indent <= rule_indent:
            break
        if child_indent is None:
            child_indent = indent
        if indent != child_indent:
            continue
        match = key_re.match(line)
        if match:
            if match.group(2) == "false":
                return None
            lines[index] = f"{match.group(1)}{key}: false"
            return lines

    indent_str = " " * (child_indent if child_indent is not None else rule_indent + 2)
    lines.insert(rule_index + 1, f"{indent_str}{key}: false")
    return lines


def _disable_inline(line: str, key: str) -> Optional[str]:
    """
    Set ``key: false`` in a rule written on one line, e.g. ``IdNames: { enabled: true }``.

    Returns:
        The updated line, or None if the rule is already disabled
    """
    head, _, value = line.partition(":")
    match = re.match(r"^\s*\{(.*)\}\s*(#.*)?$", value)
    if not match:
        # A scalar value carries no options worth keeping
        return f"{head}: {{ {key}: false }}"

    inner, comment = match.group(1), match.group(2)
    key_match = re.search(rf"(?<![\w/]){key}\s*:\s*([^,\s}}]+)", inner)
    if key_match:
        if key_match.group(1) == "false":
            return None
        inner = inner[: key_match.start(1)] + "false" + inner[key_match.end(1) :]
    else:
        entries = inner.strip()
        inner = f" {key}: false, {entries} " if entries else f" {key}: false "

    suffix = f" {comment}" if comment else ""
    return f"{head}: {{{inner}}}{suffix}"


def _disable_rule_entry(lines: List[str], rule_index: int, key: str) -> Optional[List[str]]:
    """Disable an existing rule entry, in block or single-line flow style."""
    value = lines[rule_index].partition(":")[2].strip()
    if not value or value.startswith("#"):
        return _disable_in_block(lines, rule_index, key)

    updated = _disable_inline(lines[rule_index], key)
    if updated is None:
        return None
    lines[rule_index] = updated
    return lines


def _append_block(content: str, block: str) -> str:
    separator = "\n" if content and not content.endswith("\n") else ""
    leading_newline = "\n" if content.strip() else ""
    return content + separator + leading_newline + block


def add_disabled_linter(content: str, rule_name: str) -> str:
    """
    Disable a linter in .haml-lint.yml content.

    Linters live under the top-level ``linters:`` section with a lowercase
    ``enabled`` key. An existing entry is flipped to ``enabled: false``; a new
    entry goes directly under ``linters:``, which is created if missing.
    Applying the same patch twice changes nothing.
    """
    lines = content.split("\n")
    section_re = re.compile(r"^linters\s*:\s*(#.*)?$")
    rule_re = re.compile(rf"^\s+{re.escape(rule_name)}\s*:")

    section_index = next((i for i, line in enumerate(lines) if section_re.match(line)), -1)
    if section_index == -1:
        return _append_block(content, f"linters:\n  {rule_name}:\n    enabled: false\n")

    for index in range(section_index + 1, len(lines)):
        line = lines[index]
        if not _is_blank_or_comment(line) and _indent_of(line) == 0:
            break
        if rule_re.match(line):
            updated = _disable_rule_entry(lines, index, "enabled")
            return content if updated is None else "\n".join(updated)

    lines[section_index + 1 : section_index + 1] = [f"  {rule_name}:", "    enabled: false"]
    return "\n".join(lines)


def add_disabled_rubocop_rule(content: str, rule_name: str) -> str:
    """
    Disable a cop in .rubocop.yml content.

    Cops are top-level keys (``Style/StringLiterals:``) with a capitalized
    ``Enabled`` key. Applying the same patch twice changes nothing.
    """
    lines = content.split("\n")
    rule_re = re.compile(rf"^{re.escape(rule_name)}\s*:")

    for index, line in enumerate(lines):
        if rule_re.match(line):
            updated = _disable_rule_entry(lines, index, "Enabled")
            return content if updated is None else "\n".join(updated)

    return _append_block(content, f"{rule_name}:\n  Enabled: false\n")


_PATCHERS = {
    ConfigDialect.HAML_LINT: add_disabled_linter,
    ConfigDialect.RUBOCOP: add_disabled_rubocop_rule,
}


def disable_rule_in_file(path: str, rule_name: str, dialect: ConfigDialect) -> bool:
    """
    Disable a rule in a config file, creating the file if needed.

    Returns:
        True if the file was changed, False if the rule was already disabled

    Raises:
        ConfigPatchError: If the file cannot be read or written
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            content = f.read()
    except FileNotFoundError:
        content = ""
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigPatchError(path, str(e)) from e

    updated = _PATCHERS[dialect](content, rule_name)
    if updated == content:
        logger.info("%s is already disabled in %s", rule_name, path)
        return False

    try:
        with open(path, "w", encoding="utf-8") as f:
            f.write(updated)
    except OSError as e:
        raise ConfigPatchError(path, str(e)) from e

    logger.info("Disabled %s in %s", rule_name, path)
    return True


def build_rubocop_override(base_config_path: Optional[str], rules: List[str]) -> str:
    """
    Build a .rubocop.yml that disables rules on top of the project's config.

    haml-lint has no flag to exclude single cops, so globally disabled cops are
    applied through a generated config that inherits the project one.

    Args:
        base_config_path: Project .rubocop.yml to inherit from, if any
        rules: Cop names to disable

    Returns:
        YAML text
    """
    content = ""
    if base_config_path:
        # A JSON string is a valid double-quoted YAML scalar
        content = f"inherit_from: {json.dumps(os.path.abspath(base_config_path))}\n"
    for rule in rules:
        content = add_disabled_rubocop_rule(content, rule)
    return content


def write_rubocop_override(base_config_path: Optional[str], rules: List[str]) -> str:
    """Write build_rubocop_override output to a fresh temp file and return its path."""
    fd, path = tempfile.mkstemp(prefix="haml-lint-rubocop-", suffix=".yml")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(build_rubocop_override(base_config_path, rules))
    except BaseException:
        cleanup_temp_file(path)
        raise
    return path
