"""Runner for user-supplied JavaScript transform code.

``NodeCodeRunner`` executes the code in a separate ``node`` process: the
input travels as JSON on stdin, the result comes back as JSON on stdout, and
the process is killed when the time limit runs out. User code sees a single
``input`` variable and may return a value or a promise.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Protocol

from flowcore.core.errors import NodeTimeoutError, TransformError

logger = logging.getLogger(__name__)

MAX_STDERR_BYTES = 4096

_RUNNER_TEMPLATE = """
const chunks = [];
console.log = (...args) => process.stderr.write(args.map(String).join(' ') + '\\n');
process.stdin.on('data', (chunk) => chunks.push(chunk));
process.stdin.on('end', async () => {
  const raw = Buffer.concat(chunks).toString();
  const input = raw ? JSON.parse(raw) : null;
  try {
    const transform = new Function('input', %s);
    const result = await transform(input);
    process.stdout.write(JSON.stringify({ ok: true, result: result === undefined ? null : result }));
  } catch (err) {
    process.stdout.write(JSON.stringify({ ok: false, error: err && err.message ? err.message : String(err) }));
  }
});
"""

_FUNCTION_DEF = re.compile(r"^function\s+\w*\s*\([^)]*\)\s*\{([\s\S]*)\}$")
_ARROW_BLOCK = re.compile(r"^(?:const|let|var)\s+\w+\s*=\s*(?:async\s*)?\([^)]*\)\s*=>\s*\{([\s\S]*)\}$")
_ARROW_EXPR = re.compile(r"^(?:const|let|var)\s+\w+\s*=\s*(?:async\s*)?\([^)]*\)\s*=>\s*([\s\S]+?);?$")


class CodeRunner(Protocol):
    async def run(self, code: str, input_data: Any, timeout_ms: int) -> Any: ...


def extract_executable_code(code: str) -> str:
    """Reduce a full function definition to its body.

    Accepts a plain body (``return input;``), ``function f(input) {...}``,
    ``const f = (input) => {...}`` or ``const f = (input) => expr``.
    """
    trimmed = code.strip()
    for pattern in (_FUNCTION_DEF, _ARROW_BLOCK):
        match = pattern.match(trimmed)
        if match:
            return match.group(1).strip()
    match = _ARROW_EXPR.match(trimmed)
    if match and "\n" not in trimmed:
        return f"return {match.group(1)};"
    return code


def build_runner_script(code: str) -> str:
    return _RUNNER_TEMPLATE % json.dumps(extract_executable_code(code))


class NodeCodeRunner:
    """CodeRunner that shells out to the ``node`` binary."""

    def __init__(self, node_binary: str = "node"):
        self.node_binary = node_binary

    async def run(self, code: str, input_data: Any, timeout_ms: int) -> Any:
        script = build_runner_script(code)
        try:
            proc = await asyncio.create_subprocess_exec(
                self.node_binary,
                "-e",
                script,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            raise TransformError(f"JavaScript runtime '{self.node_binary}' not found")

        payload = json.dumps(input_data).encode("utf-8")
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(payload), timeout_ms / 1000)
        except TimeoutError:
            proc.kill()
            await proc.wait()
            raise NodeTimeoutError(f"Transform timed out after {timeout_ms}ms")

        if stderr:
            logger.debug(f"Transform stderr: {stderr[:MAX_STDERR_BYTES].decode(errors='replace')}")

        if proc.returncode != 0:
            detail = stderr[:MAX_STDERR_BYTES].decode(errors="replace").strip()
            raise TransformError(f"Transform execution failed: {detail or f'exit code {proc.returncode}'}")

        try:
            envelope = json.loads(stdout.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise TransformError("Transform produced output that is not valid JSON")

        if not envelope.get("ok"):
            raise TransformError(f"Transform execution failed: {envelope.get('error')}")
        return envelope.get("result")
