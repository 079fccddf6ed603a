"""
Subprocess transport: an MCP stdio client that routes the server's stderr
through the framework logger and reports when the child process exits.
"""

import subprocess
from contextlib import asynccontextmanager
from typing import Callable, Optional

import anyio
import anyio.lowlevel
from anyio.abc import Process
from anyio.streams.text import TextReceiveStream
from mcp.client.stdio import StdioServerParameters, get_default_environment
from mcp.shared.message import SessionMessage
import mcp.types as types

from chatbridge_mcp.errors import ServerConnectionError
from chatbridge_mcp.utils.logging import get_logger

logger = get_logger(__name__)

# Seconds to wait for a terminated child before killing it
PROCESS_TERMINATION_TIMEOUT = 2.0

ExitCallback = Callable[[Optional[int]], None]


async def _terminate_process(process: Process, command: str) -> None:
    """Terminate the child, escalating to kill, and reap it."""
    if process.returncode is None:
        try:
            process.terminate()
        except ProcessLookupError:
            pass
        with anyio.move_on_after(PROCESS_TERMINATION_TIMEOUT):
            await process.wait()
        if process.returncode is None:
            logger.warning(f"'{command}' did not exit after terminate; killing it")
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
    logger.debug(f"Process '{command}' exited with code {process.returncode}")


@asynccontextmanager
async def stdio_client_with_rich_stderr(
    server: StdioServerParameters,
    on_exit: Optional[ExitCallback] = None,
):
    """
    Spawn an MCP server and speak newline-delimited JSON-RPC over its stdio.

    Args:
        server: The server parameters for the stdio connection.
        on_exit: Called with the return code once the child's stdout closes.

    Yields:
        A tuple of (read_stream, write_stream) for communication with the server.

    Raises:
        ServerConnectionError: If the process cannot be started or exits at once.
    """
    read_stream_writer, read_stream = anyio.create_memory_object_stream(0)
    write_stream, write_stream_reader = anyio.create_memory_object_stream(0)

    try:
        process = await anyio.open_process(
            [server.command, *server.args],
            env=server.env if server.env is not None else get_default_environment(),
            cwd=server.cwd,
            stderr=subprocess.PIPE,
        )
    except OSError as exc:
        logger.error(f"Failed to open process '{server.command}': {exc}")
        for stream in (read_stream_writer, read_stream, write_stream, write_stream_reader):
            await stream.aclose()
        raise ServerConnectionError(
            f"Failed to start '{server.command}': {exc}"
        ) from exc

    logger.debug(f"Started process '{server.command}' with PID: {process.pid}")

    if process.returncode is not None:
        await _terminate_process(process, server.command)
        raise ServerConnectionError(
            f"Process '{server.command}' terminated immediately with code {process.returncode}"
        )

    async def stdout_reader():
        assert process.stdout, "Opened process is missing stdout"
        try:
            async with read_stream_writer:
                buffer = ""
                async for chunk in TextReceiveStream(
                    process.stdout,
                    encoding=server.encoding,
                    errors=server.encoding_error_handler,
                ):
                    lines = (buffer + chunk).split("\n")
                    buffer = lines.pop()

                    for line in lines:
                        if not line.strip():
                            continue
                        try:
                            message = types.JSONRPCMessage.model_validate_json(line)
                        except Exception as exc:
                            logger.warning(f"Unparseable message from '{server.command}': {line!r}")
                            await read_stream_writer.send(exc)
                            continue

                        await read_stream_writer.send(SessionMessage(message))
        except anyio.ClosedResourceError:
            logger.debug(f"Stdout stream closed for {server.command}")
        finally:
            # Stdout closed: the child is gone or going
            with anyio.move_on_after(PROCESS_TERMINATION_TIMEOUT):
                await process.wait()
            if on_exit is not None:
                on_exit(process.returncode)

    async def stderr_reader():
        assert process.stderr, "Opened process is missing stderr"
        try:
            async for chunk in TextReceiveStream(
                process.stderr,
                encoding=server.encoding,
                errors=server.encoding_error_handler,
            ):
                for stderr_line in chunk.splitlines():
                    if not stderr_line.strip():
                        continue
                    if "[ERROR]" in stderr_line or "Error" in stderr_line:
                        logger.error(f"MCP SERVER STDERR: {stderr_line}")
                    else:
                        logger.debug(f"MCP SERVER STDERR: {stderr_line}")
        except anyio.ClosedResourceError:
            logger.debug(f"Stderr stream closed for {server.command}")

    async def stdin_writer():
        assert process.stdin, "Opened process is missing stdin"
        try:
            async with write_stream_reader:
                async for session_message in write_stream_reader:
                    json = session_message.message.model_dump_json(
                        by_alias=True, exclude_none=True
                    )
                    await process.stdin.send(
                        (json + "\n").encode(
                            encoding=server.encoding,
                            errors=server.encoding_error_handler,
                        )
                    )
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            logger.debug(f"Stdin stream closed for {server.command}")
        finally:
            await anyio.lowlevel.checkpoint()

    async with anyio.create_task_group() as tg:
        tg.start_soon(stdout_reader)
        tg.start_soon(stdin_writer)
        tg.start_soon(stderr_reader)
        try:
            yield read_stream, write_stream
        finally:
            with anyio.CancelScope(shield=True):
                if process.stdin:
                    await process.stdin.aclose()
                await _terminate_process(process, server.command)
                await read_stream.aclose()
                await write_stream.aclose()
            tg.cancel_scope.cancel()
