"""External process capabilities: formula translator and vector rasterizer."""

from __future__ import annotations

import asyncio
import io
import logging
import os
import shlex
import signal
import tempfile
from pathlib import Path
from typing import List, Optional

LOG = logging.getLogger("docx2exam")

DEFAULT_TRANSLATOR_COMMAND = "mt2mml {input}"
DEFAULT_RASTERIZER_COMMAND = (
    "inkscape {input} --export-type=png --export-filename={output} --export-background-opacity=0"
)
DEFAULT_PROCESS_TIMEOUT = 30.0
DEFAULT_OUTPUT_LIMIT = 20 * 1024 * 1024
READ_CHUNK_SIZE = 64 * 1024
STDERR_TAIL_SIZE = 4096
KILL_GRACE = 2.0


def build_command(template: str, **paths: str) -> List[str]:
    argv = shlex.split(template)
    if not argv:
        raise ValueError("Empty command template")
    used = False
    result: List[str] = []
    for arg in argv:
        for name, value in paths.items():
            marker = "{" + name + "}"
            if marker in arg:
                arg = arg.replace(marker, value)
                used = used or name == "input"
        result.append(arg)
    if not used and "input" in paths:
        result.append(paths["input"])
    return result


async def _read_limited(stream: asyncio.StreamReader, limit: int) -> Optional[bytes]:
    buffer = bytearray()
    while True:
        chunk = await stream.read(READ_CHUNK_SIZE)
        if not chunk:
            return bytes(buffer)
        if len(buffer) + len(chunk) > limit:
            return None
        buffer.extend(chunk)


async def _drain(stream: asyncio.StreamReader, tail: Optional[bytearray] = None) -> None:
    while True:
        chunk = await stream.read(READ_CHUNK_SIZE)
        if not chunk:
            return
        if tail is not None:
            tail.extend(chunk)
            del tail[:-STDERR_TAIL_SIZE]


async def _collect(proc: asyncio.subprocess.Process, output_limit: int) -> Optional[bytes]:
    stdout = await _read_limited(proc.stdout, output_limit)
    if stdout is None:
        return None
    await proc.wait()
    return stdout


async def _reap(proc: asyncio.subprocess.Process, stderr_task: asyncio.Future, name: str) -> None:
    """Kill whatever is left of the process group and release its pipes."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass
    try:
        await asyncio.wait_for(asyncio.gather(_drain(proc.stdout), stderr_task, proc.wait()), timeout=KILL_GRACE)
    except asyncio.TimeoutError:
        LOG.debug("%s did not release its pipes after kill", name)


async def run_process(argv: List[str], *, timeout: float, output_limit: int) -> Optional[bytes]:
    """Run ``argv`` and return its stdout, or ``None`` on any failure.

    The command runs in its own session so a timeout or an oversized output
    kills every process it spawned, not only the direct child.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except OSError as exc:
        LOG.debug("Unable to start %s: %s", argv[0], exc)
        return None

    stderr = bytearray()
    stderr_task = asyncio.ensure_future(_drain(proc.stderr, stderr))
    try:
        stdout = await asyncio.wait_for(_collect(proc, output_limit), timeout=timeout)
    except asyncio.TimeoutError:
        LOG.debug("%s timed out after %.1fs", argv[0], timeout)
        await _reap(proc, stderr_task, argv[0])
        return None
    await _reap(proc, stderr_task, argv[0])

    if stdout is None:
        LOG.debug("%s output exceeds %d bytes; discarded", argv[0], output_limit)
        return None
    if proc.returncode != 0:
        detail = bytes(stderr).decode("utf-8", errors="replace").strip()
        LOG.debug("%s exited with code %s: %s", argv[0], proc.returncode, detail[:200])
        return None
    return stdout


class CommandTranslator:
    """Translate an embedded equation object into MathML with an external command."""

    def __init__(
        self,
        command: str = DEFAULT_TRANSLATOR_COMMAND,
        timeout: float = DEFAULT_PROCESS_TIMEOUT,
        output_limit: int = DEFAULT_OUTPUT_LIMIT,
    ) -> None:
        self.command = command
        self.timeout = timeout
        self.output_limit = output_limit

    async def translate(self, payload: bytes) -> Optional[str]:
        with tempfile.TemporaryDirectory(prefix="docx2exam-") as tmp:
            source = Path(tmp) / "object.bin"
            source.write_bytes(payload)
            argv = build_command(self.command, input=str(source))
            stdout = await run_process(argv, timeout=self.timeout, output_limit=self.output_limit)
        if not stdout:
            return None
        text = stdout.decode("utf-8", errors="replace")
        start = text.find("<math")
        if start < 0:
            return None
        end = text.rfind("</math>")
        return text[start:end + len("</math>")] if end > start else text[start:]


def ensure_png(data: bytes) -> Optional[bytes]:
    try:
        from PIL import Image  # type: ignore
    except Exception as exc:
        raise RuntimeError(f"Pillow not available: {exc}") from exc

    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            if img.format == "PNG":
                return data
            buffer = io.BytesIO()
            img.save(buffer, format="PNG")
            return buffer.getvalue()
    except Exception as exc:
        LOG.debug("Rasterizer produced unreadable image: %s", exc)
        return None


class CommandRasterizer:
    """Rasterize WMF/EMF payloads to PNG with an external command."""

    def __init__(
        self,
        command: str = DEFAULT_RASTERIZER_COMMAND,
        timeout: float = DEFAULT_PROCESS_TIMEOUT,
        output_limit: int = DEFAULT_OUTPUT_LIMIT,
    ) -> None:
        self.command = command
        self.timeout = timeout
        self.output_limit = output_limit

    async def rasterize(self, payload: bytes, suffix: str) -> Optional[bytes]:
        with tempfile.TemporaryDirectory(prefix="docx2exam-") as tmp:
            source = Path(tmp) / f"source{suffix}"
            target = Path(tmp) / "rendered.png"
            source.write_bytes(payload)
            argv = build_command(self.command, input=str(source), output=str(target))
            stdout = await run_process(argv, timeout=self.timeout, output_limit=self.output_limit)
            if stdout is None or not target.exists():
                return None
            data = target.read_bytes()
        if not data or len(data) > self.output_limit:
            return None
        return ensure_png(data)
