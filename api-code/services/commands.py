from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from domain import CommandExecutionError


logger = logging.getLogger("promote-console.commands")

LineHandler = Callable[[str], Awaitable[None]]


def _merged_env(env: Optional[Mapping[str, str]]) -> Optional[dict[str, str]]:
    if not env:
        return None
    merged = dict(os.environ)
    merged.update(env)
    return merged


async def _terminate(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        process.kill()
    except ProcessLookupError:
        return
    await process.wait()


async def run_command(
    command: list[str],
    *,
    cwd: Optional[Path] = None,
    description: str,
    timeout: Optional[float] = None,
    env: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """Run ``command`` to completion and return its captured output as metadata."""
    metadata: Dict[str, Any] = {
        "description": description,
        "command": " ".join(command),
        "cwd": str(cwd) if cwd else None,
    }

    if cwd and not cwd.exists():
        raise CommandExecutionError(command, cwd, None, "", f"working directory missing: {cwd}")

    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            cwd=str(cwd) if cwd else None,
            env=_merged_env(env),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise CommandExecutionError(command, cwd, None, "", str(exc)) from exc

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout)
    except asyncio.TimeoutError as exc:
        await _terminate(process)
        raise CommandExecutionError(command, cwd, None, "", "", timed_out=True) from exc

    metadata["stdout"] = stdout_bytes.decode(errors="replace").strip()
    metadata["stderr"] = stderr_bytes.decode(errors="replace").strip()
    metadata["returncode"] = process.returncode

    if process.returncode != 0:
        raise CommandExecutionError(
            command=command,
            cwd=cwd,
            returncode=process.returncode,
            stdout=metadata["stdout"],
            stderr=metadata["stderr"],
        )

    return metadata


async def stream_command(
    command: list[str],
    *,
    on_line: LineHandler,
    cwd: Optional[Path] = None,
    timeout: Optional[float] = None,
    env: Optional[Mapping[str, str]] = None,
) -> int:
    """Run ``command`` feeding each stdout/stderr line to ``on_line`` as it arrives.

    Raises ``CommandExecutionError`` on a non-zero exit or when ``timeout``
    elapses; the process is killed in the latter case.
    """
    if cwd and not cwd.exists():
        raise CommandExecutionError(command, cwd, None, "", f"working directory missing: {cwd}")

    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            cwd=str(cwd) if cwd else None,
            env=_merged_env(env),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as exc:
        raise CommandExecutionError(command, cwd, None, "", str(exc)) from exc

    tail: list[str] = []

    async def _pump() -> int:
        if process.stdout is None:
            return await process.wait()
        async for raw in process.stdout:
            line = raw.decode(errors="replace").rstrip()
            if not line:
                continue
            tail.append(line)
            del tail[:-20]
            await on_line(line)
        return await process.wait()

    try:
        returncode = await asyncio.wait_for(_pump(), timeout)
    except asyncio.TimeoutError as exc:
        await _terminate(process)
        raise CommandExecutionError(command, cwd, None, "\n".join(tail), "", timed_out=True) from exc
    except Exception:
        await _terminate(process)
        raise

    if returncode != 0:
        raise CommandExecutionError(command, cwd, returncode, "\n".join(tail), "")
    logger.debug("Command finished cleanly: %s", " ".join(command))
    return returncode
