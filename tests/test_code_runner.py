"""Tests for the JavaScript transform runner (subprocess mocked)."""

import asyncio
import json

import pytest

from flowcore.core.errors import NodeTimeoutError, TransformError
from flowcore.sandbox.code_runner import (
    NodeCodeRunner,
    build_runner_script,
    extract_executable_code,
)


class FakeProcess:
    """Stand-in for asyncio.subprocess.Process."""

    def __init__(self, stdout=b"", stderr=b"", returncode=0, delay=0.0):
        self.stdout_data = stdout
        self.stderr_data = stderr
        self.returncode = returncode
        self.delay = delay
        self.stdin_data = None
        self.killed = False

    async def communicate(self, data=None):
        self.stdin_data = data
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.stdout_data, self.stderr_data

    def kill(self):
        self.killed = True

    async def wait(self):
        return self.returncode


@pytest.fixture
def spawn(mocker):
    """Patch process creation; set ``spawn.return_value`` to a FakeProcess."""
    return mocker.patch(
        "flowcore.sandbox.code_runner.asyncio.create_subprocess_exec",
        new_callable=mocker.AsyncMock,
    )


def _envelope(**payload) -> bytes:
    return json.dumps(payload).encode()


class TestExtractExecutableCode:
    """Tests for reducing function definitions to a body."""

    @pytest.mark.parametrize(
        "code,expected",
        [
            ("return input.a;", "return input.a;"),
            ("function transform(input) {\n  return input.a;\n}", "return input.a;"),
            ("const t = (input) => {\n  return input.a;\n}", "return input.a;"),
            ("const t = async (input) => { return 1; }", "return 1;"),
            ("const t = (input) => input.a + 1;", "return input.a + 1;"),
        ],
    )
    def test_forms(self, code, expected):
        assert extract_executable_code(code) == expected

    def test_script_embeds_body_as_json_string(self):
        script = build_runner_script('return "quote";')
        assert json.dumps('return "quote";') in script


class TestNodeCodeRunner:
    """Tests for process handling and result decoding."""

    def test_result_returned(self, spawn):
        proc = FakeProcess(stdout=_envelope(ok=True, result={"sum": 3}))
        spawn.return_value = proc

        result = asyncio.run(NodeCodeRunner("node20").run("return input;", {"a": 1}, 1000))

        assert result == {"sum": 3}
        assert json.loads(proc.stdin_data) == {"a": 1}
        args = spawn.call_args.args
        assert args[0] == "node20"
        assert args[1] == "-e"

    def test_user_error(self, spawn):
        spawn.return_value = FakeProcess(stdout=_envelope(ok=False, error="x is not defined"))

        with pytest.raises(TransformError, match="x is not defined"):
            asyncio.run(NodeCodeRunner().run("return x;", None, 1000))

    def test_nonzero_exit(self, spawn):
        spawn.return_value = FakeProcess(stderr=b"SyntaxError: Unexpected token", returncode=1)

        with pytest.raises(TransformError, match="SyntaxError"):
            asyncio.run(NodeCodeRunner().run("return {", None, 1000))

    def test_invalid_stdout(self, spawn):
        spawn.return_value = FakeProcess(stdout=b"not json")

        with pytest.raises(TransformError, match="not valid JSON"):
            asyncio.run(NodeCodeRunner().run("return 1;", None, 1000))

    def test_timeout_kills_process(self, spawn):
        proc = FakeProcess(stdout=_envelope(ok=True, result=1), delay=5)
        spawn.return_value = proc

        with pytest.raises(NodeTimeoutError, match="timed out after 20ms"):
            asyncio.run(NodeCodeRunner().run("while (true) {}", None, 20))

        assert proc.killed

    def test_missing_runtime(self, spawn):
        spawn.side_effect = FileNotFoundError()

        with pytest.raises(TransformError, match="'nodejs' not found"):
            asyncio.run(NodeCodeRunner("nodejs").run("return 1;", None, 1000))
