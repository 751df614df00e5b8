"""
Core logic for Blacken Sublime Text plugin.

This module contains pure Python functions without any Sublime Text dependencies,
making it testable with pytest outside of Sublime Text environment.
"""

import os
import re
import shutil
import subprocess
import sys
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union


# Final argument telling black to read from stdin and write to stdout
STDIN_MARKER = "-"

# Target version emitted for the deprecated allow_py36 setting
LEGACY_TARGET_VERSION = "py36"

# line_length value meaning "use the editor's wrap column"
FILL_COLUMN = "fill"

DEFAULT_EXECUTABLE = "black"
DEFAULT_FILL_COLUMN = 88

PROJECT_MANIFEST = "pyproject.toml"
BLACK_SECTION_RE = re.compile(r"^\[tool\.black\]$", re.MULTILINE)

FILE_KIND_PYTHON = "python"
FILE_KIND_STUB = "stub"

FILE_KIND_REGEX_PATTERNS = [
    (re.compile(r"^.*\.pyi$"), FILE_KIND_STUB),
    (re.compile(r"^.*\.pyw?$"), FILE_KIND_PYTHON),
]

APPLIED = "applied"
NO_OP = "no-op"


# ============================================================================
# Errors
# ============================================================================


class BlackenError(Exception):
    """Base class for all formatting failures."""


class SpawnError(BlackenError):
    """The formatter executable could not be launched."""

    def __init__(self, executable: str, cause: OSError):
        super().__init__(f"cannot run {executable}: {cause.strerror or cause}")
        self.executable = executable
        self.cause = cause


class FormatterIOError(BlackenError):
    """Reading from or writing to the formatter pipes failed."""

    def __init__(self, cause: OSError):
        super().__init__(f"pipe error: {cause}")
        self.cause = cause


class FormatterTimeoutError(BlackenError):
    """The formatter did not finish in time and was killed."""

    def __init__(self, timeout: float):
        super().__init__(f"timed out after {timeout:g}s")
        self.timeout = timeout


class FormatterError(BlackenError):
    """The formatter exited with a non-zero status."""

    def __init__(self, result: "ProcessResult"):
        super().__init__(f"black exited with code {result.exit_status}")
        self.result = result

    @property
    def diagnostic(self) -> str:
        return self.result.stderr_text


class OutputDecodeError(BlackenError):
    """The formatter wrote output the buffer cannot hold."""

    def __init__(self, encoding: str, cause: UnicodeDecodeError):
        super().__init__(f"black output is not valid {encoding}: {cause.reason} at byte {cause.start}")
        self.encoding = encoding
        self.cause = cause


class ManifestParseError(BlackenError):
    """The project manifest exists but could not be read."""


# ============================================================================
# Data model
# ============================================================================


class FormatConfig:
    """Snapshot of the formatting options for a single invocation."""

    def __init__(
        self,
        executable: str = DEFAULT_EXECUTABLE,
        line_length: Optional[Union[int, str]] = None,
        fill_column: int = DEFAULT_FILL_COLUMN,
        allow_py36: bool = False,
        target_version: Optional[str] = None,
        skip_string_normalization: bool = False,
        fast_unsafe: bool = False,
        is_stub_file: bool = False,
        extra_args: Optional[Sequence[str]] = None,
    ):
        self.executable = executable
        self.line_length = line_length
        self.fill_column = fill_column
        self.allow_py36 = allow_py36
        self.target_version = target_version
        self.skip_string_normalization = skip_string_normalization
        self.fast_unsafe = fast_unsafe
        self.is_stub_file = is_stub_file
        self.extra_args = tuple(extra_args or ())

    @classmethod
    def from_settings(
        cls,
        settings: Any,
        executable: Optional[str] = None,
        fill_column: int = DEFAULT_FILL_COLUMN,
        file_kind: Optional[str] = None,
    ) -> "FormatConfig":
        """
        Build a config from a settings object exposing ``get(key, default)``.

        Args:
            settings: sublime.Settings or any mapping
            executable: Resolved executable path, overrides the black_path setting
            fill_column: Editor wrap column used for line_length "fill"
            file_kind: Result of get_file_kind for the current buffer

        Raises:
            ValueError: If line_length is neither a positive integer nor "fill",
                or black_args is not a list of strings
        """
        return cls(
            executable=executable or settings.get("black_path") or DEFAULT_EXECUTABLE,
            line_length=validate_line_length(settings.get("line_length")),
            fill_column=fill_column,
            allow_py36=bool(settings.get("allow_py36", False)),
            target_version=settings.get("target_version") or None,
            skip_string_normalization=bool(settings.get("skip_string_normalization", False)),
            fast_unsafe=bool(settings.get("fast_unsafe", False)),
            is_stub_file=file_kind == FILE_KIND_STUB,
            extra_args=validate_extra_args(settings.get("black_args")),
        )

    def __repr__(self) -> str:
        return f"FormatConfig({self.__dict__!r})"

    def __setattr__(self, name: str, value: Any) -> None:
        if name in self.__dict__:
            raise AttributeError(f"FormatConfig is immutable: cannot set {name}")
        super().__setattr__(name, value)


def validate_line_length(value: Any) -> Optional[Union[int, str]]:
    """Normalize the line_length setting; None, 0 and "" mean unset."""
    if value is None or value == "" or value == 0:
        return None
    if value == FILL_COLUMN:
        return FILL_COLUMN
    # bool is an int subclass
    if isinstance(value, int) and not isinstance(value, bool) and value > 0:
        return value
    raise ValueError(f"Invalid line_length setting: {value!r} (expected a positive integer or \"fill\")")


def validate_extra_args(value: Any) -> List[str]:
    """Normalize the black_args setting, which must be a list of strings."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)) and all(isinstance(arg, str) for arg in value):
        return list(value)
    raise ValueError(f"Invalid black_args setting: {value!r} (expected a list of strings)")


class ProcessResult:
    """Exit status and captured output of one formatter run."""

    __slots__ = ("exit_status", "stdout", "stderr")

    def __init__(self, exit_status: int, stdout: bytes, stderr: bytes):
        object.__setattr__(self, "exit_status", exit_status)
        object.__setattr__(self, "stdout", stdout)
        object.__setattr__(self, "stderr", stderr)

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError("ProcessResult is immutable")

    @property
    def succeeded(self) -> bool:
        return self.exit_status == 0

    @property
    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", "replace")

    def __repr__(self) -> str:
        return (
            f"ProcessResult(exit_status={self.exit_status}, "
            f"stdout={len(self.stdout)} bytes, stderr={len(self.stderr)} bytes)"
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ProcessResult):
            return NotImplemented
        return (
            self.exit_status == other.exit_status
            and self.stdout == other.stdout
            and self.stderr == other.stderr
        )


class ViewportState:
    """Selections and scroll position of one view, captured before a rewrite."""

    def __init__(self, view: Any, selections: Sequence[Tuple[int, int]], scroll_top_offset: int):
        self.view = view
        self.selections = [(a, b) for a, b in selections]
        self.scroll_top_offset = scroll_top_offset

    def __repr__(self) -> str:
        return f"ViewportState({self.view!r}, selections={self.selections}, scroll_top={self.scroll_top_offset})"


class BufferAdapter:
    """
    What the core needs from the editor to rewrite a buffer.

    Subclasses wrap a concrete editor buffer. Views are opaque handles that
    are only passed back to get_viewport/set_viewport. Selections are
    (anchor, caret) offset pairs, so an empty selection has anchor == caret.
    """

    # Set when replace_content decodes the formatter output with this encoding
    encoding: Optional[str] = None

    def content(self) -> bytes:
        raise NotImplementedError

    def replace_content(self, content: bytes) -> None:
        raise NotImplementedError

    def visible_views(self) -> List[Any]:
        raise NotImplementedError

    def get_viewport(self, view: Any) -> Tuple[List[Tuple[int, int]], int]:
        """Return (selections, scroll_top_offset) for the view."""
        raise NotImplementedError

    def set_viewport(self, view: Any, selections: List[Tuple[int, int]], scroll_top_offset: int) -> None:
        raise NotImplementedError


# ============================================================================
# File kind and executable lookup
# ============================================================================


def get_file_kind(filename: str, additional_patterns: Optional[Dict[str, str]] = None) -> Optional[str]:
    """
    Determine whether a file is Python source or a stub.

    Args:
        filename: The filename or path to check
        additional_patterns: Optional dict of glob patterns to file kinds
                           e.g., {"SConstruct": "python", "*.pyi.in": "stub"}

    Returns:
        "python", "stub", or None for anything else
    """
    basename = os.path.basename(filename)

    for pattern, file_kind in FILE_KIND_REGEX_PATTERNS:
        if pattern.match(basename):
            return file_kind

    if additional_patterns:
        for pattern, file_kind in additional_patterns.items():
            if _match_glob_pattern(basename, pattern):
                return file_kind

    return None


def _match_glob_pattern(filename: str, pattern: str) -> bool:
    """Match a filename against an exact name or a glob using only ``*``."""
    if "*" not in pattern:
        return filename == pattern

    regex_pattern = "^" + re.escape(pattern).replace(r"\*", ".*") + "$"
    return bool(re.match(regex_pattern, filename))


def resolve_executable(configured: Optional[str]) -> Optional[str]:
    """
    Resolve the black executable from a configured name or path.

    Expands ~ and environment variables (e.g., ~/.venvs/tools/bin/black), then
    falls back to a PATH lookup.

    Returns:
        Path to the executable, or None if it cannot be found
    """
    expanded = os.path.expandvars(os.path.expanduser(configured or DEFAULT_EXECUTABLE))
    if os.path.isfile(expanded):
        return expanded
    return shutil.which(expanded)


# ============================================================================
# Invocation Builder
# ============================================================================


def build_black_args(config: FormatConfig) -> List[str]:
    """
    Build command-line arguments for black.

    Flags come in the order black documents them, and the stdin marker is
    always last.

    Args:
        config: Formatting options for this run

    Returns:
        List of command-line arguments (without the executable)
    """
    args = []

    if config.line_length is not None:
        if config.line_length == FILL_COLUMN:
            line_length = config.fill_column
        else:
            line_length = config.line_length
        args.extend(["--line-length", str(line_length)])

    if config.allow_py36:
        args.extend(["--target-version", LEGACY_TARGET_VERSION])
    elif config.target_version:
        args.extend(["--target-version", config.target_version])

    if config.fast_unsafe:
        args.append("--fast")

    if config.skip_string_normalization:
        args.append("--skip-string-normalization")

    if config.is_stub_file:
        args.append("--pyi")

    args.extend(config.extra_args)

    args.append(STDIN_MARKER)
    return args


# ============================================================================
# Process Pipeline
# ============================================================================


def run_formatter(
    executable: str,
    args: Sequence[str],
    input_bytes: bytes,
    cwd: Optional[str] = None,
    timeout: Optional[float] = None,
) -> ProcessResult:
    """
    Run the formatter once, feeding input_bytes on stdin.

    communicate() writes stdin while draining stdout and stderr, so a child
    that fills one pipe before reading all of its input cannot block us.

    Args:
        executable: Formatter executable
        args: Command-line arguments
        input_bytes: Content written to stdin before EOF
        cwd: Working directory for the process
        timeout: Seconds to wait before killing the process, None waits forever

    Returns:
        ProcessResult with the exit status and complete stdout/stderr

    Raises:
        SpawnError: The executable could not be started
        FormatterIOError: A pipe failed while the process was running
        FormatterTimeoutError: The timeout expired
    """
    cmd = [executable] + list(args)

    # On Windows, hide the console window that would otherwise flash
    creationflags = subprocess.CREATE_NO_WINDOW if sys.platform == "win32" else 0

    try:
        process = subprocess.Popen(
            cmd,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=cwd,
            creationflags=creationflags,
        )
    except OSError as e:
        raise SpawnError(executable, e) from e

    with process:
        try:
            stdout, stderr = process.communicate(input=input_bytes, timeout=timeout)
        except subprocess.TimeoutExpired:
            process.kill()
            process.communicate()
            raise FormatterTimeoutError(timeout) from None
        except OSError as e:
            process.kill()
            raise FormatterIOError(e) from e

    return ProcessResult(process.returncode, stdout, stderr)


# ============================================================================
# Replace-if-different
# ============================================================================


def capture_viewports(buffer: BufferAdapter) -> List[ViewportState]:
    states = []
    for view in buffer.visible_views():
        selections, scroll_top = buffer.get_viewport(view)
        states.append(ViewportState(view, selections, scroll_top))
    return states


def restore_viewports(buffer: BufferAdapter, states: List[ViewportState]) -> None:
    for state in states:
        buffer.set_viewport(state.view, list(state.selections), state.scroll_top_offset)


def apply_result(buffer: BufferAdapter, original: bytes, result: ProcessResult) -> str:
    """
    Write formatter output into the buffer if it changed anything.

    Selections and scroll positions are restored as absolute offsets, which
    is accurate when the rewrite is mostly whitespace and quoting.

    Returns:
        APPLIED if the buffer was rewritten, NO_OP if output matched the input

    Raises:
        FormatterError: The formatter failed; the buffer is left untouched
        OutputDecodeError: The output is not valid in the buffer encoding
    """
    if not result.succeeded:
        raise FormatterError(result)

    if result.stdout == original:
        return NO_OP

    if buffer.encoding:
        try:
            result.stdout.decode(buffer.encoding)
        except UnicodeDecodeError as e:
            raise OutputDecodeError(buffer.encoding, e) from e

    states = capture_viewports(buffer)
    buffer.replace_content(result.stdout)
    restore_viewports(buffer, states)
    return APPLIED


def format_buffer(
    buffer: BufferAdapter,
    config: FormatConfig,
    cwd: Optional[str] = None,
    timeout: Optional[float] = None,
) -> str:
    """Format the whole buffer with black and apply the result."""
    original = buffer.content()
    args = build_black_args(config)
    result = run_formatter(config.executable, args, original, cwd=cwd, timeout=timeout)
    return apply_result(buffer, original, result)


# ============================================================================
# Project gating
# ============================================================================


def find_config_dir(start_path: str, config_filename: str = PROJECT_MANIFEST) -> Optional[str]:
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
        config_path = os.path.join(current, config_filename)
        if os.path.isfile(config_path):
            return current

        parent = os.path.dirname(current)
        if parent == current:
            # Reached filesystem root
            return None
        current = parent


def manifest_enables_black(manifest_path: str) -> bool:
    """
    Check whether a pyproject.toml has a [tool.black] section header.

    Raises:
        ManifestParseError: If the file cannot be read or decoded
    """
    try:
        with open(manifest_path, encoding="utf-8") as f:
            text = f.read()
    except (OSError, UnicodeDecodeError) as e:
        raise ManifestParseError(f"cannot read {manifest_path}: {e}") from e
    return BLACK_SECTION_RE.search(text) is not None


def should_auto_format(current_directory: str, only_if_project_opts_in: bool) -> bool:
    """
    Decide whether format-on-save should run for files in current_directory.

    With the opt-in policy enabled, the nearest pyproject.toml must declare
    [tool.black]. An unreadable manifest counts as not opted in.
    """
    if not only_if_project_opts_in:
        return True

    project_dir = find_config_dir(current_directory)
    if project_dir is None:
        return False

    try:
        return manifest_enables_black(os.path.join(project_dir, PROJECT_MANIFEST))
    except ManifestParseError:
        return False
