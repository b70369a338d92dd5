"""Sampler - External tool adapter.

The only place the pipeline spawns processes. Enforces shell=False, a binary
allow-list and a bounded timeout on every invocation.

run_tool() never raises for a non-zero exit, a timeout or a missing binary:
those come back as a ToolResult and callers translate them into domain
failures. A binary outside the allow-list is a programming error and raises
ExternalToolError.
"""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path

from sampler.config import ALLOWED_BINARIES, TOOL_TIMEOUT_SECONDS
from sampler.errors import ErrorCode, ExternalToolError

logger = logging.getLogger(__name__)

# Conventional exit codes for outcomes that never reached the tool itself
EXIT_TIMEOUT = 124
EXIT_NOT_FOUND = 127
EXIT_OS_ERROR = 126

# Tail of stderr kept in logs and error messages
STDERR_TAIL_CHARS = 2000


@dataclass(frozen=True)
class ToolResult:
    """Outcome of one external invocation.

    stdout is bytes when the tool was run with text=False.
    """

    argv: tuple[str, ...]
    exit_code: int
    stdout: str | bytes
    stderr: str
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def stderr_tail(self) -> str:
        return self.stderr[-STDERR_TAIL_CHARS:]


# Signature shared by run_tool and the fakes used in tests
ToolRunner = Callable[..., ToolResult]


def _decode(data: bytes | str | None) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


def run_tool(
    argv: Sequence[str],
    timeout: float | None = None,
    text: bool = True,
    allowed: Iterable[str] | None = None,
) -> ToolResult:
    """Run an allow-listed binary and capture its output.

    Args:
        argv: Command and arguments; argv[0] is the binary.
        timeout: Seconds before the process is killed. Defaults to
            TOOL_TIMEOUT_SECONDS.
        text: Decode stdout as UTF-8. Pass False for binary output (PCM).
        allowed: Binary names permitted for this call. Defaults to
            config.ALLOWED_BINARIES.

    Returns:
        ToolResult with exit code, stdout and stderr.

    Raises:
        ExternalToolError: If argv is empty or argv[0] is not allow-listed.
    """
    if not argv:
        raise ExternalToolError("empty command", error_code=ErrorCode.TOOL_NOT_ALLOWED)

    argv = tuple(str(arg) for arg in argv)
    allowed_names = set(allowed if allowed is not None else ALLOWED_BINARIES)
    binary_name = Path(argv[0]).name
    if binary_name not in allowed_names:
        raise ExternalToolError(
            f"binary not allowed: {argv[0]}", error_code=ErrorCode.TOOL_NOT_ALLOWED
        )

    effective_timeout = timeout if timeout is not None else TOOL_TIMEOUT_SECONDS
    logger.debug("Running %s (timeout=%ss)", binary_name, effective_timeout)

    try:
        completed = subprocess.run(
            argv,
            capture_output=True,
            check=False,
            timeout=effective_timeout,
        )
    except subprocess.TimeoutExpired as e:
        logger.error("%s timed out after %s seconds", binary_name, effective_timeout)
        stderr = _decode(e.stderr)
        return ToolResult(
            argv=argv,
            exit_code=EXIT_TIMEOUT,
            stdout=b"" if not text else "",
            stderr=f"{stderr}\n{binary_name} timed out after {effective_timeout}s".lstrip(),
            timed_out=True,
        )
    except FileNotFoundError:
        logger.error("%s not found in PATH", binary_name)
        return ToolResult(
            argv=argv,
            exit_code=EXIT_NOT_FOUND,
            stdout=b"" if not text else "",
            stderr=f"{binary_name}: command not found",
        )
    except OSError as e:
        logger.error("%s execution failed: %s", binary_name, e)
        return ToolResult(
            argv=argv,
            exit_code=EXIT_OS_ERROR,
            stdout=b"" if not text else "",
            stderr=str(e),
        )

    stdout = _decode(completed.stdout) if text else completed.stdout
    result = ToolResult(
        argv=argv,
        exit_code=completed.returncode,
        stdout=stdout,
        stderr=_decode(completed.stderr),
    )
    if not result.ok:
        logger.warning(
            "%s exited with %d: %s", binary_name, result.exit_code, result.stderr_tail
        )
    return result
