"""
Blacken plugin for Sublime Text.

This module provides commands and event listeners for formatting Python files
with black, on demand or before every save.
"""

import os
from typing import Callable, Dict, List, Optional, Tuple

import sublime
import sublime_plugin

from . import blacken_core as core

SETTINGS_FILE = "Blacken.sublime-settings"
PANEL_NAME = "blacken"

# Full diagnostic of the last failed format, per view id
_last_errors: Dict[int, str] = {}

# Callback run before each save; None while format-on-save is off
_pre_save_hook: Optional[Callable[[sublime.View], None]] = None


def plugin_loaded() -> None:
    """Called when the plugin is loaded."""
    get_settings().add_on_change("blacken", sync_format_on_save)
    sync_format_on_save()


def plugin_unloaded() -> None:
    get_settings().clear_on_change("blacken")
    unregister_pre_save_hook()


def get_settings() -> sublime.Settings:
    """Get plugin settings."""
    return sublime.load_settings(SETTINGS_FILE)


def log_debug(message: str) -> None:
    if get_settings().get("debug", False):
        print(f"Blacken: {message}")


def register_pre_save_hook(callback: Callable[[sublime.View], None]) -> None:
    global _pre_save_hook
    _pre_save_hook = callback


def unregister_pre_save_hook() -> None:
    global _pre_save_hook
    _pre_save_hook = None


def sync_format_on_save() -> None:
    """Attach or detach the pre-save hook to match the format_on_save setting."""
    if get_settings().get("format_on_save", False):
        register_pre_save_hook(format_on_save)
    else:
        unregister_pre_save_hook()


def get_black_path() -> Optional[str]:
    """Get the path to the black executable, or None if it cannot be found."""
    return core.resolve_executable(get_settings().get("black_path"))


def get_working_dir(view: sublime.View) -> str:
    """
    Directory black runs in, which is also where the project lookup starts.

    File directory first, then the first project folder, then the process cwd.
    """
    file_path = view.file_name()
    if file_path:
        return os.path.dirname(file_path)

    window = view.window()
    if window and window.folders():
        return window.folders()[0]

    return os.getcwd()


def get_file_kind(view: sublime.View) -> Optional[str]:
    """Get the file kind ("python" or "stub") for the current view."""
    basename = os.path.basename(view.file_name() or view.name() or "")
    additional_patterns = get_settings().get("additional_file_patterns", {})

    file_kind = core.get_file_kind(basename, additional_patterns)
    if file_kind is None and view.match_selector(0, "source.python"):
        return core.FILE_KIND_PYTHON
    return file_kind


def is_python_view(view: sublime.View) -> bool:
    return get_file_kind(view) is not None


def get_fill_column(view: sublime.View) -> int:
    """The view's wrap column: wrap_width, else the first ruler."""
    view_settings = view.settings()

    wrap_width = view_settings.get("wrap_width", 0)
    if isinstance(wrap_width, int) and wrap_width > 0:
        return wrap_width

    rulers = view_settings.get("rulers") or []
    if rulers:
        # ST4 allows [column, style] pairs
        first = rulers[0]
        column = first[0] if isinstance(first, list) else first
        if isinstance(column, (int, float)) and column > 0:
            return int(column)

    return core.DEFAULT_FILL_COLUMN


def get_timeout() -> Optional[float]:
    timeout_ms = get_settings().get("black_timeout", 0)
    if not timeout_ms:
        return None
    return timeout_ms / 1000.0


def show_panel(window: sublime.Window, name: str, text: str) -> None:
    panel = window.create_output_panel(name)
    panel.set_read_only(False)
    panel.run_command("append", {"characters": text})
    panel.set_read_only(True)
    window.run_command("show_panel", {"panel": f"output.{name}"})


def report_error(view: sublime.View, summary: str, diagnostic: str, display: bool) -> None:
    """
    Surface a failed format: summary in the status bar, diagnostic kept for
    blacken_show_errors and shown right away when display is set.
    """
    _last_errors[view.id()] = diagnostic
    view.set_status("blacken", "Blacken: error")
    sublime.status_message(f"Blacken: {summary}")
    log_debug(diagnostic)

    window = view.window()
    if display and window:
        show_panel(window, PANEL_NAME, diagnostic)


def first_line(text: str) -> str:
    stripped = text.strip()
    return stripped.split("\n")[0] if stripped else ""


class SublimeBuffer(core.BufferAdapter):
    """The buffer behind a view, and every view showing it."""

    encoding = "utf-8"

    def __init__(self, view: sublime.View, edit: sublime.Edit):
        self.view = view
        self.edit = edit

    def content(self) -> bytes:
        return self.view.substr(sublime.Region(0, self.view.size())).encode(self.encoding)

    def replace_content(self, content: bytes) -> None:
        self.view.replace(self.edit, sublime.Region(0, self.view.size()), content.decode(self.encoding))

    def visible_views(self) -> List[sublime.View]:
        buffer = self.view.buffer()
        views = buffer.views() if buffer else [self.view]
        return [v for v in views if v.window() is not None] or [self.view]

    def get_viewport(self, view: sublime.View) -> Tuple[List[Tuple[int, int]], int]:
        selections = [(region.a, region.b) for region in view.sel()]
        return selections, view.visible_region().begin()

    def set_viewport(
        self, view: sublime.View, selections: List[Tuple[int, int]], scroll_top_offset: int
    ) -> None:
        # Restore selections and ranges (clamped to new content)
        max_point = view.size()
        view.sel().clear()
        for a, b in selections:
            view.sel().add(sublime.Region(min(a, max_point), min(b, max_point)))

        x, _ = view.viewport_position()
        _, y = view.text_to_layout(min(scroll_top_offset, max_point))
        view.set_viewport_position((x, y), False)


def format_now(view: sublime.View, edit: sublime.Edit, display_errors: bool) -> Optional[str]:
    """
    Format the whole view with black.

    Returns:
        core.APPLIED or core.NO_OP, or None if formatting failed
    """
    settings = get_settings()

    try:
        config = core.FormatConfig.from_settings(
            settings,
            executable=get_black_path(),
            fill_column=get_fill_column(view),
            file_kind=get_file_kind(view),
        )
    except ValueError as e:
        report_error(view, str(e), str(e), display_errors)
        return None

    log_debug(f"running {config.executable} {' '.join(core.build_black_args(config))}")

    try:
        outcome = core.format_buffer(
            SublimeBuffer(view, edit),
            config,
            cwd=get_working_dir(view),
            timeout=get_timeout(),
        )
    except core.FormatterError as e:
        summary = first_line(e.diagnostic) or str(e)
        report_error(view, summary, e.diagnostic or str(e), display_errors)
        return None
    except core.BlackenError as e:
        report_error(view, str(e), str(e), display_errors)
        return None

    _last_errors.pop(view.id(), None)
    view.erase_status("blacken")
    if outcome == core.APPLIED:
        sublime.status_message("Blacken: Formatted")
    else:
        sublime.status_message("Blacken: Already formatted")
    return outcome


def format_on_save(view: sublime.View) -> None:
    """Pre-save hook: format the view if the project allows it."""
    if not is_python_view(view):
        return

    settings = get_settings()
    cwd = get_working_dir(view)
    if not core.should_auto_format(cwd, settings.get("only_if_project_is_blackened", False)):
        log_debug(f"skipping format on save, no [tool.black] project for {cwd}")
        return

    view.run_command("blacken_format", {"display_errors": settings.get("show_errors_on_save", False)})


class BlackenFormatCommand(sublime_plugin.TextCommand):
    """Format the current file with black."""

    def run(self, edit: sublime.Edit, display_errors: bool = True) -> None:
        if not is_python_view(self.view):
            sublime.status_message("Blacken: Not a Python file")
            return

        format_now(self.view, edit, display_errors)

    def is_enabled(self) -> bool:
        return is_python_view(self.view)


class BlackenShowErrorsCommand(sublime_plugin.TextCommand):
    """Show the diagnostic from the last failed format of this view."""

    def run(self, edit: sublime.Edit) -> None:
        window = self.view.window()
        if not window:
            return

        diagnostic = _last_errors.get(self.view.id())
        show_panel(window, PANEL_NAME, diagnostic or "No black errors for this view.\n")


class BlackenToggleFormatOnSaveCommand(sublime_plugin.ApplicationCommand):
    """Turn format-on-save on or off."""

    def run(self) -> None:
        settings = get_settings()
        enabled = not settings.get("format_on_save", False)
        settings.set("format_on_save", enabled)
        sublime.save_settings(SETTINGS_FILE)
        sync_format_on_save()
        sublime.status_message(f"Blacken: Format on save {'enabled' if enabled else 'disabled'}")

    def is_checked(self) -> bool:
        return bool(get_settings().get("format_on_save", False))


class BlackenShowInfoCommand(sublime_plugin.TextCommand):
    """Show debug information about the black configuration."""

    def run(self, edit: sublime.Edit) -> None:
        window = self.view.window()
        if not window:
            return

        lines = ["Blacken Info\n", "=" * 40 + "\n\n"]

        black_path = get_black_path()
        lines.append(f"black path: {black_path or 'Not found'}\n")

        if black_path:
            try:
                result = core.run_formatter(black_path, ["--version"], b"", timeout=10)
                if result.succeeded:
                    lines.append(f"Version: {result.stdout.decode('utf-8', 'replace').strip()}\n")
            except core.BlackenError as e:
                lines.append(f"Version: Error - {e}\n")

        lines.append("\n")

        file_path = self.view.file_name()
        lines.append(f"Current file: {file_path or 'Untitled'}\n")
        lines.append(f"File kind: {get_file_kind(self.view) or 'Unknown'}\n")

        cwd = get_working_dir(self.view)
        lines.append(f"Working directory: {cwd}\n")

        project_dir = core.find_config_dir(cwd)
        lines.append(f"Project manifest: {project_dir or 'Not found'}\n")

        settings = get_settings()
        opt_in = settings.get("only_if_project_is_blackened", False)
        lines.append(f"Format on save allowed here: {core.should_auto_format(cwd, opt_in)}\n")

        lines.append("\n")

        lines.append("Settings:\n")
        for key in (
            "format_on_save",
            "line_length",
            "target_version",
            "allow_py36",
            "skip_string_normalization",
            "fast_unsafe",
            "only_if_project_is_blackened",
            "black_args",
            "black_timeout",
        ):
            lines.append(f"  {key}: {settings.get(key)}\n")
        lines.append(f"  fill column: {get_fill_column(self.view)}\n")

        try:
            config = core.FormatConfig.from_settings(
                settings,
                executable=black_path,
                fill_column=get_fill_column(self.view),
                file_kind=get_file_kind(self.view),
            )
            lines.append(f"\nCommand: {config.executable} {' '.join(core.build_black_args(config))}\n")
        except ValueError as e:
            lines.append(f"\nCommand: Error - {e}\n")

        show_panel(window, "blacken_info", "".join(lines))


class BlackenEventListener(sublime_plugin.EventListener):
    """Event listener for format-on-save."""

    def on_pre_save(self, view: sublime.View) -> None:
        if _pre_save_hook is not None:
            _pre_save_hook(view)

    def on_close(self, view: sublime.View) -> None:
        """Clean up when view is closed."""
        _last_errors.pop(view.id(), None)
