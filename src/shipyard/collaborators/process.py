from __future__ import annotations

import asyncio
from pathlib import Path

from shipyard.collaborators.base import OutputHook, ProcessResult
from shipyard.errors import DependencyError

READ_CHUNK_BYTES = 65536
MAX_LINE_BYTES = 1 << 20


async def _terminate(process: asyncio.subprocess.Process, grace_seconds: float = 5.0) -> None:
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=grace_seconds)
    except TimeoutError:
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()


async def run_process(
    command: list[str],
    *,
    cwd: Path | None = None,
    env: dict[str, str] | None = None,
    on_output: OutputHook | None = None,
    collaborator: str = "process",
) -> ProcessResult:
    """Run ``command`` to completion, streaming each output line to ``on_output``.

    Lines longer than ``MAX_LINE_BYTES`` are delivered in pieces. Cancelling the awaiting
    task, or any failure while reading output, terminates the child before re-raising.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            cwd=str(cwd) if cwd else None,
            env=env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise DependencyError(
            f"{command[0]} not found in PATH.", collaborator=collaborator
        ) from exc

    stdout_lines: list[str] = []
    stderr_lines: list[str] = []

    def _emit(name: str, raw: bytes, sink: list[str]) -> None:
        line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
        sink.append(line)
        if on_output is not None:
            on_output(name, line)

    async def _pump(stream: asyncio.StreamReader | None, name: str, sink: list[str]) -> None:
        if stream is None:
            return
        pending = b""
        while chunk := await stream.read(READ_CHUNK_BYTES):
            pending += chunk
            *complete, pending = pending.split(b"\n")
            for raw in complete:
                _emit(name, raw, sink)
            # Lines without a newline are cut at MAX_LINE_BYTES so memory stays bounded.
            while len(pending) > MAX_LINE_BYTES:
                _emit(name, pending[:MAX_LINE_BYTES], sink)
                pending = pending[MAX_LINE_BYTES:]
        if pending:
            _emit(name, pending, sink)

    try:
        await asyncio.gather(
            _pump(process.stdout, "stdout", stdout_lines),
            _pump(process.stderr, "stderr", stderr_lines),
        )
        exit_code = await process.wait()
    except BaseException:
        await _terminate(process)
        raise

    return ProcessResult(
        exit_code=exit_code,
        stdout="\n".join(stdout_lines),
        stderr="\n".join(stderr_lines),
    )
