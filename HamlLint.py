"""
HamlLint plugin for Sublime Text.

This module provides commands and event listeners for formatting and linting
HAML files using haml-lint.
"""

import html
import logging
import os
import threading
from typing import Callable, List, Optional, TypeVar

import sublime
import sublime_plugin

from . import haml_lint_core as core

logger = logging.getLogger(__name__)

T = TypeVar("T")

SEVERITY_SCOPES = {
    core.Severity.ERROR: ("error_scope", "markup.error", "circle"),
    core.Severity.WARNING: ("warning_scope", "markup.warning", "dot"),
    core.Severity.INFO: ("info_scope", "markup.info", "dot"),
}


class PluginState:
    """Process-wide state, created on load and cleared on unload."""

    def __init__(self) -> None:
        self.diagnostics = core.DiagnosticStore()
        self.formatter = core.Formatter(notify_error=show_error)
        self.debouncer = core.Debouncer(sublime.set_timeout_async)

    def clear(self) -> None:
        self.debouncer.cancel_all()
        self.diagnostics.clear()
        self.formatter.in_progress.clear()
        self.formatter.resave_guard.clear()


_state: Optional[PluginState] = None


def plugin_loaded() -> None:
    """Called when the plugin is loaded."""
    global _state
    _state = PluginState()
    settings = get_settings()
    configure_logging(settings.get("debug", False))
    settings.add_on_change("haml_lint.debug", lambda: configure_logging(get_settings().get("debug", False)))

    # Lint whatever is already open
    for window in sublime.windows():
        view = window.active_view()
        if view and is_haml_view(view):
            lint_view_async(view)


def plugin_unloaded() -> None:
    global _state
    get_settings().clear_on_change("haml_lint.debug")
    if _state:
        _state.clear()
    _state = None


def get_state() -> PluginState:
    global _state
    if _state is None:
        _state = PluginState()
    return _state


def configure_logging(debug: bool) -> None:
    package_logger = logging.getLogger(__package__ or __name__)
    package_logger.setLevel(logging.DEBUG if debug else logging.WARNING)


def get_settings() -> sublime.Settings:
    """Get plugin settings."""
    return sublime.load_settings("HamlLint.sublime-settings")


def load_haml_lint_settings() -> core.HamlLintSettings:
    return core.HamlLintSettings.from_mapping(get_settings().get)


def show_error(message: str) -> None:
    """Show an error from any thread without blocking it."""
    sublime.set_timeout(lambda: sublime.error_message(message), 0)


def status(message: str) -> None:
    sublime.set_timeout(lambda: sublime.status_message(f"HamlLint: {message}"), 0)


def run_on_main_thread(func: Callable[[], T]) -> T:
    """Run func on the UI thread and wait for its result."""
    done = threading.Event()
    outcome = {}

    def wrapper() -> None:
        try:
            outcome["value"] = func()
        except Exception as e:
            outcome["error"] = e
        finally:
            done.set()

    sublime.set_timeout(wrapper, 0)
    done.wait()
    if "error" in outcome:
        raise outcome["error"]
    return outcome["value"]


def is_haml_view(view: sublime.View) -> bool:
    """Check if the view holds a HAML document."""
    if core.is_haml_file(view.file_name()):
        return True
    return view.match_selector(0, "text.haml")


def get_project_root(view: sublime.View) -> Optional[str]:
    """Get the project folder containing the file, or the first project folder."""
    window = view.window()
    folders = window.folders() if window else []
    file_path = view.file_name()

    if file_path:
        for folder in folders:
            if os.path.abspath(file_path).startswith(os.path.abspath(folder) + os.sep):
                return folder

    if folders:
        return folders[0]
    return None


def get_working_dir(view: sublime.View) -> str:
    """Determine the working directory for running haml-lint."""
    project_root = get_project_root(view)
    if project_root:
        return project_root

    file_path = view.file_name()
    if file_path:
        return os.path.dirname(file_path)

    return os.getcwd()


def get_config_path(view: sublime.View, settings: core.HamlLintSettings) -> Optional[str]:
    return core.resolve_config_path(
        settings.config_path,
        get_project_root(view),
        view.file_name(),
        warn=lambda message: sublime.set_timeout(lambda: sublime.status_message(message), 0),
    )


def build_options(view: sublime.View, settings: core.HamlLintSettings, auto_correct: bool) -> core.HamlLintOptions:
    """Build haml-lint options for the view."""
    return core.HamlLintOptions(
        cwd=get_working_dir(view),
        linter_path=os.path.expandvars(os.path.expanduser(settings.linter_path)),
        config_path=get_config_path(view, settings),
        auto_correct=auto_correct,
        formatter_mode=settings.formatter_mode,
        additional_args=(
            settings.additional_formatter_arguments if auto_correct else settings.additional_linter_arguments
        ),
        excluded_linters=settings.globally_disabled_linters,
        disabled_rubocop_rules=settings.disabled_rubocop_rules,
        rubocop_config_path=(
            core.resolve_rubocop_config_path(get_project_root(view), view.file_name())
            if settings.disabled_rubocop_rules
            else None
        ),
        timeout_ms=settings.timeout_ms,
    )


def build_format_context(view: sublime.View, settings: core.HamlLintSettings) -> core.FormatContext:
    options = build_options(view, settings, auto_correct=True)
    linter_settings = None
    if settings.enable_autocorrections:
        linter_settings = core.read_linter_settings(options.config_path)
    return core.FormatContext(options, linter_settings)


class ViewDocument:
    """Adapts a sublime.View to core.Document for use off the UI thread."""

    def __init__(self, view: sublime.View):
        self.view = view

    @property
    def identity(self) -> int:
        return self.view.id()

    @property
    def file_name(self) -> Optional[str]:
        return self.view.file_name()

    def version(self) -> int:
        return self.view.change_count()

    def text(self) -> str:
        return self.view.substr(sublime.Region(0, self.view.size()))

    def replace_all(self, content: str, expected_version: Optional[int] = None) -> bool:
        def apply() -> bool:
            if not self.view.is_valid():
                return False
            # Re-check on the UI thread, edits may have landed since the caller looked
            if expected_version is not None and self.view.change_count() != expected_version:
                return False
            self.view.run_command("haml_lint_replace_content", {"content": content})
            return True

        return run_on_main_thread(apply)

    def save(self) -> None:
        run_on_main_thread(lambda: self.view.run_command("save"))


# ============================================================================
# Diagnostics
# ============================================================================


def lint_view(view: sublime.View) -> Optional[List[core.Finding]]:
    """
    Lint the view content and publish findings.

    Runs haml-lint synchronously, so call it from the async thread.
    """
    if not view.is_valid() or not is_haml_view(view):
        return None

    state = get_state()
    settings = load_haml_lint_settings()
    if not settings.enable_diagnostics:
        state.diagnostics.delete(view.id())
        sublime.set_timeout(lambda: clear_highlights(view), 0)
        return None

    content = view.substr(sublime.Region(0, view.size()))
    try:
        result = core.run_haml_lint(content, view.file_name(), build_options(view, settings, auto_correct=False))
    except core.HamlLintError as e:
        # Don't interrupt the user for diagnostic errors
        logger.warning("Linting %s failed (%s): %s", view.file_name(), e.kind.value, e.message)
        state.diagnostics.delete(view.id())
        sublime.set_timeout(lambda: clear_highlights(view), 0)
        return None

    findings = core.parse_lint_output(result.output)
    state.diagnostics.set(view.id(), findings)
    sublime.set_timeout(lambda: apply_findings(view, findings), 0)
    return findings


def lint_view_async(view: sublime.View) -> None:
    sublime.set_timeout_async(lambda: lint_view(view), 0)


def relint_visible_views() -> None:
    for window in sublime.windows():
        for group in range(window.num_groups()):
            view = window.active_view_in_group(group)
            if view and is_haml_view(view):
                lint_view_async(view)


def _annotation_html(finding_index: int, finding: core.Finding) -> str:
    links = "".join(
        f'<br><a href="fix:{finding_index}:{fix_index}">{html.escape(fix.title)}</a>'
        for fix_index, fix in enumerate(core.build_quick_fixes(finding))
    )
    return f"<b>{html.escape(finding.rule)}</b>: {html.escape(finding.message)}{links}"


def _on_annotation_navigate(view: sublime.View, href: str) -> None:
    _, finding_index, fix_index = href.split(":", 2)
    findings = get_state().diagnostics.get(view.id())
    if int(finding_index) >= len(findings):
        return
    fixes = core.build_quick_fixes(findings[int(finding_index)])
    if int(fix_index) < len(fixes):
        run_quick_fix(view, fixes[int(fix_index)])


def apply_findings(view: sublime.View, findings: List[core.Finding]) -> None:
    """Highlight findings in the editor and update the status bar."""
    if not view.is_valid():
        return

    settings = get_settings()
    show_annotations = settings.get("show_annotations", True)

    for severity, (scope_setting, default_scope, icon) in SEVERITY_SCOPES.items():
        regions = []
        annotations = []
        for finding_index, finding in enumerate(findings):
            if finding.severity is not severity:
                continue
            line_region = view.line(view.text_point(finding.line, 0))
            start, end = core.finding_span(view.substr(line_region))
            region = sublime.Region(line_region.begin() + start, line_region.begin() + end)
            if region.empty():
                region = line_region
            regions.append(region)
            annotations.append(_annotation_html(finding_index, finding))

        view.add_regions(
            key=f"haml_lint.{severity.value}",
            regions=regions,
            scope=settings.get(scope_setting, default_scope),
            icon=icon,
            flags=sublime.DRAW_SQUIGGLY_UNDERLINE | sublime.DRAW_NO_FILL | sublime.DRAW_NO_OUTLINE,
            annotations=annotations if show_annotations else [],
            on_navigate=lambda href, view=view: _on_annotation_navigate(view, href),
        )

    view.set_status("haml_lint", f"HamlLint: {core.summarize_findings(findings)}")


def clear_highlights(view: sublime.View) -> None:
    """Clear all haml-lint highlights from the view."""
    for severity in SEVERITY_SCOPES:
        view.erase_regions(f"haml_lint.{severity.value}")
    view.erase_status("haml_lint")


# ============================================================================
# Quick fixes
# ============================================================================


def run_quick_fix(view: sublime.View, fix: core.QuickFix) -> None:
    window = view.window() or sublime.active_window()
    args = dict(fix.args)
    args["view_id"] = view.id()
    window.run_command(fix.command, args)


def _find_view(window: sublime.Window, view_id: Optional[int]) -> Optional[sublime.View]:
    if view_id is not None:
        for view in window.views():
            if view.id() == view_id:
                return view
    return window.active_view()


class HamlLintShowFixesCommand(sublime_plugin.TextCommand):
    """Show quick fixes for findings on the cursor line."""

    def run(self, edit: sublime.Edit) -> None:
        cursor = self.view.sel()[0].begin() if self.view.sel() else 0
        row, _ = self.view.rowcol(cursor)

        fixes = []
        for finding in get_state().diagnostics.on_line(self.view.id(), row):
            fixes.extend(core.build_quick_fixes(finding))

        if not fixes:
            sublime.status_message("HamlLint: No quick fixes on this line")
            return

        fixes.sort(key=lambda fix: not fix.preferred)
        window = self.view.window()
        if not window:
            return

        def on_select(index: int) -> None:
            if index >= 0:
                run_quick_fix(self.view, fixes[index])

        window.show_quick_panel([fix.title for fix in fixes], on_select)

    def is_enabled(self) -> bool:
        return is_haml_view(self.view)


class HamlLintDisableRuleCommand(sublime_plugin.WindowCommand):
    """Disable a rule in the project's .haml-lint.yml or .rubocop.yml."""

    def run(self, rule: str, dialect: str = core.ConfigDialect.HAML_LINT.value, view_id: Optional[int] = None) -> None:
        view = _find_view(self.window, view_id)
        project_root = get_project_root(view) if view else None
        if not project_root and view and view.file_name():
            project_root = os.path.dirname(view.file_name())
        if not project_root:
            sublime.error_message("Cannot determine workspace folder")
            return

        config_dialect = core.ConfigDialect(dialect)
        config_path = os.path.join(project_root, config_dialect.filename)

        try:
            changed = core.disable_rule_in_file(config_path, rule, config_dialect)
        except core.ConfigPatchError as e:
            sublime.error_message(str(e))
            return

        # Open the config file to show the user what changed
        self.window.open_file(config_path)

        label = f"RuboCop '{rule}'" if config_dialect is core.ConfigDialect.RUBOCOP else f"'{rule}'"
        if changed:
            sublime.status_message(f"HamlLint: Disabled {label} in {config_dialect.filename}")
        else:
            sublime.status_message(f"HamlLint: {label} is already disabled in {config_dialect.filename}")

        relint_visible_views()


def disable_globally(setting: str, rule: str, label: str) -> None:
    """Add a rule to a list setting in the user's HamlLint settings."""
    settings = get_settings()
    disabled = list(settings.get(setting, []) or [])

    if rule in disabled:
        sublime.status_message(f"HamlLint: {label} is already disabled globally")
        return

    disabled.append(rule)
    settings.set(setting, disabled)
    sublime.save_settings("HamlLint.sublime-settings")
    sublime.status_message(f"HamlLint: Disabled {label} globally")

    relint_visible_views()


class HamlLintDisableLinterGloballyCommand(sublime_plugin.WindowCommand):
    """Disable a linter for all projects via the globally_disabled_linters setting."""

    def run(self, rule: str, view_id: Optional[int] = None) -> None:
        disable_globally("globally_disabled_linters", rule, f"'{rule}'")


class HamlLintDisableRubocopRuleGloballyCommand(sublime_plugin.WindowCommand):
    """Disable a RuboCop cop for all projects via the disabled_rubocop_rules setting."""

    def run(self, rule: str, view_id: Optional[int] = None) -> None:
        disable_globally("disabled_rubocop_rules", rule, f"RuboCop '{rule}'")


# ============================================================================
# Formatting
# ============================================================================


class HamlLintFormatCommand(sublime_plugin.TextCommand):
    """Format the current file with haml-lint."""

    def run(self, edit: sublime.Edit) -> None:
        if not is_haml_view(self.view):
            sublime.status_message("HamlLint: Not a HAML file")
            return

        settings = load_haml_lint_settings()
        if not settings.enable_formatting:
            sublime.status_message("HamlLint: Formatting is disabled")
            return

        document = ViewDocument(self.view)
        formatted = get_state().formatter.format_document(document, build_format_context(self.view, settings))

        if formatted is not None:
            self.view.run_command("haml_lint_replace_content", {"content": formatted})
            sublime.status_message("HamlLint: Formatted")
        else:
            sublime.status_message("HamlLint: No changes")

        # Diagnostics run on save when background formatting is on
        if not settings.format_in_background:
            lint_view_async(self.view)

    def is_enabled(self) -> bool:
        return is_haml_view(self.view)


class HamlLintLintCommand(sublime_plugin.TextCommand):
    """Lint the current file with haml-lint."""

    def run(self, edit: sublime.Edit) -> None:
        if not is_haml_view(self.view):
            sublime.status_message("HamlLint: Not a HAML file")
            return
        lint_view_async(self.view)

    def is_enabled(self) -> bool:
        return is_haml_view(self.view)


class HamlLintReplaceContentCommand(sublime_plugin.TextCommand):
    """Internal command to replace entire buffer content."""

    def run(self, edit: sublime.Edit, content: str) -> None:
        # Preserve cursor positions
        selections = list(self.view.sel())

        self.view.replace(edit, sublime.Region(0, self.view.size()), content)

        # Restore cursor positions and ranges (clamped to new content)
        self.view.sel().clear()
        max_point = self.view.size()
        for sel in selections:
            self.view.sel().add(sublime.Region(min(sel.a, max_point), min(sel.b, max_point)))


class HamlLintShowInfoCommand(sublime_plugin.TextCommand):
    """Show debug information about haml-lint configuration."""

    def run(self, edit: sublime.Edit) -> None:
        window = self.view.window()
        if not window:
            return

        settings = load_haml_lint_settings()
        state = get_state()
        file_path = self.view.file_name()

        lines = ["HamlLint Info\n", "=" * 40 + "\n\n"]
        lines.append(f"haml-lint path: {settings.linter_path}\n")
        lines.append(f"Current file: {file_path or 'Untitled'}\n")
        lines.append(f"Working directory: {get_working_dir(self.view)}\n")
        lines.append(f"Config file: {get_config_path(self.view, settings) or 'haml-lint default'}\n")
        lines.append(f"Findings: {core.summarize_findings(state.diagnostics.get(self.view.id()))}\n")
        lines.append(f"Background format running: {self.view.id() in state.formatter.in_progress}\n")
        lines.append("\nSettings:\n")
        lines.append(f"  enable_diagnostics: {settings.enable_diagnostics}\n")
        lines.append(f"  enable_formatting: {settings.enable_formatting}\n")
        lines.append(f"  formatter_mode: {settings.formatter_mode}\n")
        lines.append(f"  format_in_background: {settings.format_in_background}\n")
        lines.append(f"  enable_autocorrections: {settings.enable_autocorrections}\n")
        lines.append(f"  globally_disabled_linters: {', '.join(settings.globally_disabled_linters) or '-'}\n")
        lines.append(f"  disabled_rubocop_rules: {', '.join(settings.disabled_rubocop_rules) or '-'}\n")
        lines.append(f"  timeout_ms: {settings.timeout_ms}\n")

        panel = window.create_output_panel("haml_lint_info")
        panel.set_read_only(False)
        panel.run_command("append", {"characters": "".join(lines)})
        panel.set_read_only(True)
        window.run_command("show_panel", {"panel": "output.haml_lint_info"})


class HamlLintEventListener(sublime_plugin.EventListener):
    """Event listener for format-on-save and diagnostics."""

    def on_load_async(self, view: sublime.View) -> None:
        if is_haml_view(view):
            lint_view(view)

    def on_activated_async(self, view: sublime.View) -> None:
        if is_haml_view(view):
            lint_view(view)

    def on_modified_async(self, view: sublime.View) -> None:
        if not is_haml_view(view):
            return
        debouncer = get_state().debouncer
        debouncer.delay_ms = load_haml_lint_settings().debounce_ms
        debouncer.trigger(view.id(), lambda: lint_view(view))

    def on_post_save_async(self, view: sublime.View) -> None:
        """Run background formatting (which re-saves) and lint."""
        if not is_haml_view(view):
            return

        state = get_state()
        settings = load_haml_lint_settings()

        # Save issued by the background formatter itself
        if state.formatter.resave_guard.consume(view.id()):
            lint_view(view)
            return

        if settings.enable_formatting and settings.format_in_background:
            state.formatter.spawn_background_format(
                ViewDocument(view),
                build_format_context(view, settings),
                on_done=lambda outcome: self._on_format_done(view, outcome),
            )

        lint_view(view)

    def _on_format_done(self, view: sublime.View, outcome: core.FormatOutcome) -> None:
        if outcome is core.FormatOutcome.SUPERSEDED:
            status("Skipped format (buffer modified)")

    def on_close(self, view: sublime.View) -> None:
        """Clean up when view is closed."""
        state = get_state()
        view_id = view.id()
        state.debouncer.cancel(view_id)
        state.diagnostics.delete(view_id)
        state.formatter.resave_guard.discard(view_id)
