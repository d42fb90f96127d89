"""
Shell script execution with output capture.

Each script runs in its own process group so a timeout can kill the shell and
anything it spawned. Reading stops at MAX_BUFFER_BYTES per stream; the decoded
text is then capped at MAX_SCRIPT_OUTPUT characters.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from typing import List, Optional, Sequence

from herald.models import Script, ScriptResult

DEFAULT_SCRIPT_TIMEOUT_MS = 30_000
MAX_SCRIPT_OUTPUT = 50_000
MAX_BUFFER_BYTES = 1024 * 1024
TRUNCATION_MARKER = "\n... (truncated)"
READ_CHUNK_BYTES = 64 * 1024
REAP_TIMEOUT_SECONDS = 5.0

logger = logging.getLogger(__name__)


class OutputLimitExceeded(Exception):
    def __init__(self, stream_name: str):
        super().__init__(f"{stream_name} exceeded {MAX_BUFFER_BYTES} bytes")
        self.stream_name = stream_name


def truncate_output(text: str) -> str:
    if len(text) > MAX_SCRIPT_OUTPUT:
        return text[:MAX_SCRIPT_OUTPUT] + TRUNCATION_MARKER
    return text


async def _drain(stream: asyncio.StreamReader, buffer: bytearray, stream_name: str) -> None:
    while True:
        chunk = await stream.read(READ_CHUNK_BYTES)
        if not chunk:
            return
        room = MAX_BUFFER_BYTES - len(buffer)
        if len(chunk) > room:
            buffer.extend(chunk[:room])
            raise OutputLimitExceeded(stream_name)
        buffer.extend(chunk)


async def _communicate(
    process: asyncio.subprocess.Process,
    stdout_buf: bytearray,
    stderr_buf: bytearray,
) -> int:
    readers = [
        asyncio.ensure_future(_drain(process.stdout, stdout_buf, "stdout")),
        asyncio.ensure_future(_drain(process.stderr, stderr_buf, "stderr")),
    ]
    try:
        await asyncio.gather(*readers)
    finally:
        for reader in readers:
            reader.cancel()
        await asyncio.gather(*readers, return_exceptions=True)
    return await process.wait()


def _kill_process_group(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        if hasattr(os, "killpg"):
            os.killpg(process.pid, signal.SIGKILL)
        else:
            process.kill()
    except ProcessLookupError:
        pass


async def _discard(stream: asyncio.StreamReader) -> None:
    while await stream.read(READ_CHUNK_BYTES):
        pass


async def _reap(process: asyncio.subprocess.Process) -> None:
    # Pipes must reach EOF before the transport reports the process as finished.
    try:
        await asyncio.wait_for(
            asyncio.gather(_discard(process.stdout), _discard(process.stderr), process.wait()),
            timeout=REAP_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        logger.warning("Process %s did not exit within %.0fs after kill.", process.pid, REAP_TIMEOUT_SECONDS)


async def run_script(script: Script) -> ScriptResult:
    timeout_ms = script.timeout if script.timeout is not None else DEFAULT_SCRIPT_TIMEOUT_MS
    started = time.monotonic()

    def elapsed_ms() -> int:
        return int((time.monotonic() - started) * 1000)

    try:
        process = await asyncio.create_subprocess_shell(
            script.command,
            cwd=script.cwd or None,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except (OSError, ValueError) as exc:
        return ScriptResult(
            name=script.name,
            exit_code=1,
            stdout="",
            stderr="",
            duration_ms=elapsed_ms(),
            error=f"Failed to start command: {exc}",
        )

    stdout_buf = bytearray()
    stderr_buf = bytearray()
    error: Optional[str] = None
    returncode: Optional[int] = None
    try:
        returncode = await asyncio.wait_for(
            _communicate(process, stdout_buf, stderr_buf),
            timeout=timeout_ms / 1000,
        )
    except asyncio.TimeoutError:
        error = f"Command timed out after {timeout_ms}ms: {script.command}"
        _kill_process_group(process)
        await _reap(process)
    except OutputLimitExceeded as exc:
        error = f"Command output too large ({exc}): {script.command}"
        _kill_process_group(process)
        await _reap(process)

    if error is None:
        if returncode is not None and returncode < 0:
            error = f"Command terminated by signal {-returncode}: {script.command}"
        elif returncode != 0:
            error = f"Command failed with exit code {returncode}: {script.command}"

    if error is None:
        exit_code = 0
    elif returncode is not None and returncode > 0:
        exit_code = returncode
    else:
        exit_code = 1

    return ScriptResult(
        name=script.name,
        exit_code=exit_code,
        stdout=truncate_output(stdout_buf.decode("utf-8", errors="replace")),
        stderr=truncate_output(stderr_buf.decode("utf-8", errors="replace")),
        duration_ms=elapsed_ms(),
        error=error,
    )


async def run_scripts(scripts: Sequence[Script]) -> List[ScriptResult]:
    results: List[ScriptResult] = []
    for idx, script in enumerate(scripts, start=1):
        logger.info("[%s/%s] Running script %s", idx, len(scripts), script.name)
        result = await run_script(script)
        results.append(result)
        if result.success:
            logger.info("Script succeeded: %s (%sms)", script.name, result.duration_ms)
        else:
            logger.error(
                "Script failed: %s (code=%s, duration=%sms): %s",
                script.name,
                result.exit_code,
                result.duration_ms,
                result.error,
            )
    return results
