"""
File, search and fetch tools (bash lives in test_sandbox).
"""

import pytest

from pyharness.errors import ValidationError
from pyharness.tools.base import ToolContext
from pyharness.tools.builtin_tools.file_edit import EditFileTool, apply_line_edits
from pyharness.tools.builtin_tools.file_multiedit import MultiEditFileTool
from pyharness.tools.builtin_tools.file_read import ReadFileTool
from pyharness.tools.builtin_tools.file_write import WriteFileTool
from pyharness.tools.builtin_tools.glob_tool import GlobTool
from pyharness.tools.builtin_tools.grep_tool import GrepTool
from pyharness.tools.builtin_tools.listdir import ListDirTool
from pyharness.tools.builtin_tools.webfetch_tool import WebFetchTool, html_to_text
from pyharness.util.cancel import CancelToken


@pytest.fixture
def ctx(workspace):
    return ToolContext(cwd=str(workspace), cancel=CancelToken())


async def _run(tool, ctx, args):
    tool.validate(args, ctx.cwd)
    return await tool.execute(ctx, args)


class TestReadOnlyTools:
    async def test_list(self, ctx):
        out = await _run(ListDirTool(), ctx, {})
        assert out.content.splitlines() == ["src", "a.txt"]

    async def test_list_recursive(self, ctx):
        out = await _run(ListDirTool(), ctx, {"recursive": True})
        assert "src/main.py" in out.payload["entries"]

    async def test_glob(self, ctx):
        out = await _run(GlobTool(), ctx, {"pattern": "**/*.py"})
        assert out.payload["matches"] == ["src/main.py"]

    def test_glob_must_stay_inside(self, workspace):
        with pytest.raises(ValidationError):
            GlobTool().validate({"pattern": "../*"}, str(workspace))

    async def test_grep(self, ctx):
        out = await _run(GrepTool(), ctx, {"pattern": "wor.d"})
        assert out.content == "a.txt:2: world"

    async def test_grep_literal_with_include(self, ctx):
        out = await _run(GrepTool(), ctx, {"pattern": "def main(", "regex": False, "include": "*.py"})
        assert out.payload["matches"] == 1

    def test_grep_bad_regex(self, workspace):
        with pytest.raises(ValidationError):
            GrepTool().validate({"pattern": "("}, str(workspace))

    async def test_read_range(self, ctx):
        out = await _run(ReadFileTool(), ctx, {"path": "a.txt", "start_line": 2, "end_line": 2})
        assert out.content == "world"
        assert out.payload["total_lines"] == 2

    def test_read_missing(self, workspace):
        with pytest.raises(ValidationError):
            ReadFileTool().validate({"path": "nope.txt"}, str(workspace))

    def test_paths_cannot_escape(self, workspace):
        with pytest.raises(ValidationError):
            ReadFileTool().validate({"path": "../../etc/passwd"}, str(workspace))

    def test_read_only_tools_are_not_side_effecting(self):
        for tool in (ListDirTool(), GlobTool(), GrepTool(), ReadFileTool(), WebFetchTool()):
            assert not tool.spec.side_effecting


class TestWrite:
    async def test_create_with_dirs(self, ctx, workspace):
        out = await _run(WriteFileTool(), ctx, {"path": "new/dir/f.txt", "content": "a\nb\n"})
        assert (workspace / "new/dir/f.txt").read_text() == "a\nb\n"
        assert out.payload["added"] == 2 and out.payload["removed"] == 0

    async def test_overwrite_reports_diff(self, ctx, workspace):
        out = await _run(WriteFileTool(), ctx, {"path": "a.txt", "content": "hello\nthere\n"})
        assert "-world" in out.payload["diff"]
        assert "+there" in out.payload["diff"]

    def test_directory_target_rejected(self, workspace):
        with pytest.raises(ValidationError):
            WriteFileTool().validate({"path": "src", "content": "x"}, str(workspace))

    def test_missing_content_rejected(self, workspace):
        with pytest.raises(ValidationError):
            WriteFileTool().validate({"path": "x.txt"}, str(workspace))


class TestEdit:
    def test_apply_line_edits(self):
        text = "1\n2\n3\n4\n"
        assert apply_line_edits(text, [{"start_line": 2, "end_line": 3, "new_text": "two\nthree"}]) == "1\ntwo\nthree\n4\n"
        # append at EOF
        assert apply_line_edits(text, [{"start_line": 5, "end_line": 5, "new_text": "5"}]) == "1\n2\n3\n4\n5\n"
        # delete a line
        assert apply_line_edits(text, [{"start_line": 1, "end_line": 1, "new_text": ""}]) == "2\n3\n4\n"

    async def test_edit(self, ctx, workspace):
        await _run(EditFileTool(), ctx, {"path": "a.txt", "start_line": 2, "end_line": 2, "new_text": "WORLD"})
        assert (workspace / "a.txt").read_text() == "hello\nWORLD\n"

    def test_edit_bad_range(self, workspace):
        with pytest.raises(ValidationError):
            EditFileTool().validate({"path": "a.txt", "start_line": 3, "end_line": 1, "new_text": ""}, str(workspace))
        with pytest.raises(ValidationError):
            EditFileTool().validate({"path": "a.txt", "start_line": 9, "end_line": 9, "new_text": ""}, str(workspace))

    async def test_multiedit(self, ctx, workspace):
        (workspace / "m.txt").write_text("a\nb\nc\nd\n")
        edits = [
            {"start_line": 1, "end_line": 1, "new_text": "A"},
            {"start_line": 3, "end_line": 4, "new_text": "CD"},
        ]
        out = await _run(MultiEditFileTool(), ctx, {"path": "m.txt", "edits": edits})
        assert (workspace / "m.txt").read_text() == "A\nb\nCD\n"
        assert out.content == "Applied 2 edits to m.txt."

    @pytest.mark.parametrize(
        "edits",
        [
            [{"start_line": 3, "end_line": 3, "new_text": ""}, {"start_line": 1, "end_line": 1, "new_text": ""}],
            [{"start_line": 1, "end_line": 2, "new_text": ""}, {"start_line": 2, "end_line": 3, "new_text": ""}],
            [],
        ],
    )
    def test_multiedit_rejects_bad_edits(self, workspace, edits):
        (workspace / "m.txt").write_text("a\nb\nc\n")
        with pytest.raises(ValidationError):
            MultiEditFileTool().validate({"path": "m.txt", "edits": edits}, str(workspace))
        assert (workspace / "m.txt").read_text() == "a\nb\nc\n"

    def test_edit_targets_resolved_path(self, workspace):
        args = {"path": "src/main.py", "start_line": 1, "end_line": 1, "new_text": ""}
        assert EditFileTool().permission_target(args, str(workspace)) == str(workspace / "src" / "main.py")


class TestWebFetch:
    def test_only_http_urls(self, workspace):
        with pytest.raises(ValidationError):
            WebFetchTool().validate({"url": "file:///etc/passwd"}, str(workspace))
        WebFetchTool().validate({"url": "https://example.com/x"}, str(workspace))

    def test_target_is_host(self, workspace):
        assert WebFetchTool().permission_target({"url": "https://Example.com/a?b"}, str(workspace)) == "example.com"

    def test_html_to_text(self):
        html = "<html><head><style>x{}</style><script>var a;</script></head><body><h1>Title</h1><p>Body</p></body></html>"
        assert html_to_text(html) == "Title\nBody"
