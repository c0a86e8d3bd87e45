import pytest

from lanebot.agent.tools.registry import build_tool_registry
from lanebot.agent.tools.shell import ExecTool


@pytest.fixture
def workspace(tmp_path):
    ws = tmp_path / "workspace"
    ws.mkdir()
    (ws / "notes").mkdir()
    (ws / "readme.md").write_text("# hello", encoding="utf-8")
    return ws


def test_registry_exposes_three_tools(workspace):
    registry = build_tool_registry(workspace)
    assert registry.tool_names() == ["exec", "read_file", "list_dir"]
    names = [d["function"]["name"] for d in registry.get_definitions()]
    assert names == ["exec", "read_file", "list_dir"]


@pytest.mark.parametrize("command", ["rm -rf /", "sudo shutdown now", "dd if=/dev/zero of=x", ":(){ :|:& };:"])
def test_dangerous_commands_are_blocked(workspace, command):
    tool = ExecTool(working_dir=str(workspace))
    assert "dangerous pattern" in tool._guard_command(command, str(workspace))


def test_workspace_restriction(workspace):
    tool = build_tool_registry(workspace).get("exec")
    assert "path traversal" in tool._guard_command("cat ../secret", str(workspace))
    assert "outside working dir" in tool._guard_command("ls /etc", str(workspace))
    assert tool._guard_command(f"ls {workspace}/notes", str(workspace)) is None


def test_elevated_lifts_restriction_but_keeps_deny_list(workspace):
    tool = build_tool_registry(workspace, elevated=True).get("exec")
    assert tool._guard_command("ls /etc", str(workspace)) is None
    assert "dangerous pattern" in tool._guard_command("rm -rf build", str(workspace))


async def test_exec_runs_in_workspace(workspace):
    registry = build_tool_registry(workspace)
    output = await registry.execute("exec", {"command": "echo hi"})
    assert output.strip() == "hi"

    output = await registry.execute("exec", {"command": "exit 3"})
    assert "Exit code: 3" in output


async def test_read_file_and_list_dir(workspace):
    registry = build_tool_registry(workspace)
    assert await registry.execute("read_file", {"path": str(workspace / "readme.md")}) == "# hello"
    listing = await registry.execute("list_dir", {"path": str(workspace)})
    assert listing.splitlines() == ["📁 notes", "📄 readme.md"]


async def test_paths_outside_workspace_are_refused(workspace, tmp_path):
    outside = tmp_path / "outside.txt"
    outside.write_text("nope", encoding="utf-8")
    registry = build_tool_registry(workspace)
    result = await registry.execute("read_file", {"path": str(outside)})
    assert result.startswith("Error: Path")
    assert "outside allowed directory" in result

    unrestricted = build_tool_registry(workspace, restrict_to_workspace=False)
    assert await unrestricted.execute("read_file", {"path": str(outside)}) == "nope"


async def test_unknown_tool_and_bad_params(workspace):
    registry = build_tool_registry(workspace)
    assert await registry.execute("browse", {}) == "Error: Tool 'browse' not found"
    result = await registry.execute("read_file", {})
    assert result.startswith("Error: Invalid parameters for tool 'read_file'")
    assert "missing required path" in result
