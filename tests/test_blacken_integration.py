"""Integration tests that run actual black binary."""

import shutil
import sys
from pathlib import Path
from typing import Any, List, Tuple

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

import blacken_core as core


BLACK_PATH = shutil.which("black")
requires_black = pytest.mark.skipif(
    BLACK_PATH is None,
    reason="black not found"
)


class MemoryBuffer(core.BufferAdapter):
    """Single-view buffer held in memory."""

    def __init__(self, content: bytes, cursor: int = 0, scroll_top: int = 0):
        self.text = content
        self.viewport = ([(cursor, cursor)], scroll_top)

    def content(self) -> bytes:
        return self.text

    def replace_content(self, content: bytes) -> None:
        self.text = content
        self.viewport = ([(0, 0)], 0)

    def visible_views(self) -> List[Any]:
        return ["main"]

    def get_viewport(self, view: Any) -> Tuple[List[Tuple[int, int]], int]:
        return self.viewport

    def set_viewport(self, view: Any, selections: List[Tuple[int, int]], scroll_top_offset: int) -> None:
        self.viewport = (selections, scroll_top_offset)


def run_black(content: bytes, **options: Any) -> core.ProcessResult:
    config = core.FormatConfig(executable=BLACK_PATH, **options)
    return core.run_formatter(BLACK_PATH, core.build_black_args(config), content)


@requires_black
class TestBlackRealOutput:
    """Tests with real black binary."""

    def test_format_success(self):
        result = run_black(b"x=1\n")

        assert result.exit_status == 0
        assert result.stdout == b"x = 1\n"

    def test_already_formatted(self):
        result = run_black(b"x = 1\n")

        assert result.exit_status == 0
        assert result.stdout == b"x = 1\n"

    def test_syntax_error(self):
        result = run_black(b"x = (\n")

        assert result.exit_status != 0
        assert result.stdout == b""
        assert "Cannot parse" in result.stderr_text

    def test_string_normalization(self):
        assert run_black(b"x = 'a'\n").stdout == b'x = "a"\n'
        assert run_black(b"x = 'a'\n", skip_string_normalization=True).stdout == b"x = 'a'\n"

    def test_line_length(self):
        content = b"result = some_function(argument_one, argument_two, argument_three)\n"

        assert run_black(content).stdout == content
        wrapped = run_black(content, line_length=40).stdout
        assert wrapped != content
        assert all(len(line) <= 40 for line in wrapped.splitlines())

    def test_fill_column_line_length(self):
        content = b"result = some_function(argument_one, argument_two, argument_three)\n"
        assert run_black(content, line_length="fill", fill_column=40).stdout == run_black(
            content, line_length=40
        ).stdout

    def test_target_version(self):
        result = run_black(b"print( 1 )\n", target_version="py38")
        assert result.stdout == b"print(1)\n"

    def test_stub_file(self):
        content = b"def f() -> int:\n    ...\n\n\n\nclass A:\n    x: int\n"
        result = run_black(content, is_stub_file=True)

        # Stubs keep at most one blank line between definitions
        assert result.exit_status == 0
        assert b"\n\n\n" not in result.stdout
        assert b"\n\n\n" in run_black(content).stdout

    def test_fast(self):
        result = run_black(b"x=1\n", fast_unsafe=True)
        assert result.stdout == b"x = 1\n"


@requires_black
class TestFormatBufferWithBlack:
    """End-to-end format_buffer runs with real black."""

    def test_applied(self):
        buffer = MemoryBuffer(b"x=1\ny=2\n", cursor=4, scroll_top=0)

        outcome = core.format_buffer(buffer, core.FormatConfig(executable=BLACK_PATH))

        assert outcome == core.APPLIED
        assert buffer.text == b"x = 1\ny = 2\n"
        assert buffer.viewport == ([(4, 4)], 0)

    def test_noop(self):
        buffer = MemoryBuffer(b"x = 1\n", cursor=3)

        outcome = core.format_buffer(buffer, core.FormatConfig(executable=BLACK_PATH))

        assert outcome == core.NO_OP
        assert buffer.viewport == ([(3, 3)], 0)

    def test_error_leaves_buffer(self):
        buffer = MemoryBuffer(b"def f(:\n")

        with pytest.raises(core.FormatterError) as excinfo:
            core.format_buffer(buffer, core.FormatConfig(executable=BLACK_PATH))

        assert buffer.text == b"def f(:\n"
        assert "Cannot parse" in excinfo.value.diagnostic

    def test_large_file(self):
        content = b"".join(b"value_%d = %d\n" % (i, i) for i in range(20000))
        buffer = MemoryBuffer(content.replace(b" = ", b"="))

        outcome = core.format_buffer(buffer, core.FormatConfig(executable=BLACK_PATH))

        assert outcome == core.APPLIED
        assert buffer.text == content

    def test_unicode_content(self):
        content = "# Комментарий\nname = \"héllo\"\n".encode("utf-8")
        buffer = MemoryBuffer(content)

        assert core.format_buffer(buffer, core.FormatConfig(executable=BLACK_PATH)) == core.NO_OP
