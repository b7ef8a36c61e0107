"""
CGI/1.1 gateway to the package's web UI executable.

Each authenticated request below the web UI home spawns the CGI program,
streams the request body into its stdin, parses the header block it
prints and streams the rest of its stdout back as the response body.
"""

import asyncio
import logging
import os
import re
import subprocess
from dataclasses import dataclass, field
from typing import AsyncIterator, Mapping, Optional

from fastapi import Request
from fastapi.responses import PlainTextResponse, RedirectResponse, Response, StreamingResponse

from . import __version__
from .config import BackendEnvironment, Settings

logger = logging.getLogger(__name__)

CGI_CHUNK_SIZE = 64 * 1024

# Request headers never exported as HTTP_* variables (httpoxy)
SKIPPED_HEADERS = frozenset({"PROXY"})

# RFC 9110 token
HEADER_NAME_RE = re.compile(r"[!#$%&'*+\-.^_`|~0-9A-Za-z]+")


class CgiError(Exception):
    """A single CGI invocation failed; the server keeps running."""
    status_code = 502


class CgiSpawnError(CgiError):
    pass


class CgiPipeError(CgiError):
    pass


class CgiHeaderError(CgiError):
    status_code = 400


class CgiTimeoutError(CgiError):
    status_code = 504


@dataclass
class CgiHead:
    """Status and headers printed by the CGI program before the blank line."""
    status_code: int = 200
    headers: list[tuple[str, str]] = field(default_factory=list)


def parse_header_line(line: str) -> tuple[str, str]:
    """
    Split a `Name: value` line.

    Raises CgiHeaderError when the colon is missing, the name is not an
    HTTP token or the value contains CR, LF or NUL.
    """
    name, sep, value = line.partition(":")
    if not sep:
        raise CgiHeaderError(f"Malformed CGI header line: {line!r}")
    name, value = name.strip(), value.strip()
    if not HEADER_NAME_RE.fullmatch(name):
        raise CgiHeaderError(f"Invalid CGI header name: {name!r}")
    if any(c in value for c in "\r\n\0"):
        raise CgiHeaderError(f"Invalid CGI header value for {name}: {value!r}")
    return name, value


def parse_status(value: str) -> int:
    """Take the numeric code from a Status value such as `404 Not Found`."""
    code = value[:3]
    if len(code) != 3 or not code.isdigit():
        raise CgiHeaderError(f"Status returned by CGI program is invalid: {value!r}")
    return int(code)


def cgi_header_variables(headers: Mapping[str, str]) -> dict[str, str]:
    """
    Map request headers to CGI meta-variables.

    Every header becomes HTTP_<NAME> (upper-cased, dashes to underscores)
    except Proxy and empty values; repeated headers are joined with ", ".
    Content-Type and Content-Length are also exported under their CGI names.

    Only the underscore form is exported (HTTP_USER_AGENT); the dashed
    form some launchers use (HTTP_USER-AGENT) is not set.
    """
    variables: dict[str, str] = {}
    for name, value in headers.items():
        key = name.upper().replace("-", "_")
        if key in SKIPPED_HEADERS or not value:
            continue
        var = f"HTTP_{key}"
        if var in variables:
            variables[var] = f"{variables[var]}, {value}"
        else:
            variables[var] = value
        if key in ("CONTENT_TYPE", "CONTENT_LENGTH"):
            variables[key] = value
    return variables


def request_raw_url(request: Request) -> str:
    """Path and query exactly as the client sent them."""
    raw_path = request.scope.get("raw_path")
    path = raw_path.decode("latin-1").split("?", 1)[0] if raw_path else request.url.path
    query = request.scope.get("query_string", b"").decode("latin-1")
    return f"{path}?{query}" if query else path


class CgiGateway:
    """Runs the CGI executable for requests below the web UI home."""

    def __init__(self, settings: Settings, environment: BackendEnvironment):
        self.settings = settings
        self.base_environment = environment.as_dict()
        self.executable = settings.layout.cgi_exe
        self.web_ui_home = settings.layout.web_ui_home
        self.timeout = settings.cgi_timeout

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def proxy(self, request: Request) -> Response:
        """
        Answer a request through the CGI program.

        Requests outside the web UI home get a 307 to it. CGI failures are
        rendered as plaintext error responses.
        """
        raw_url = request_raw_url(request)
        if self.web_ui_home not in raw_url:
            return RedirectResponse(self.web_ui_home, status_code=307)
        try:
            return await self._invoke(request, raw_url)
        except CgiError as e:
            logger.warning("CGI request %s %s failed: %s", request.method, raw_url, e)
            return PlainTextResponse(f"An error occurred: {e}", status_code=e.status_code)

    def build_environment(self, request: Request, raw_url: str) -> dict[str, str]:
        env = dict(os.environ)
        env.update(self.base_environment)
        path = request.url.path
        env.update({
            "SERVER_SOFTWARE": f"xunlei-launcher/{__version__}",
            "SERVER_PROTOCOL": "HTTP/1.1",
            "GATEWAY_INTERFACE": "CGI/1.1",
            "SERVER_NAME": request.url.hostname or self.settings.host,
            "SERVER_PORT": str(self.settings.port),
            "REMOTE_ADDR": request.client.host if request.client else "",
            "REQUEST_METHOD": request.method,
            "QUERY_STRING": request.scope.get("query_string", b"").decode("latin-1"),
            "REQUEST_URI": raw_url,
            "PATH_INFO": path,
            "SCRIPT_NAME": ".",
            "SCRIPT_FILENAME": path,
        })
        env.update(cgi_header_variables(request.headers))
        return env

    # ------------------------------------------------------------------
    # Invocation
    # ------------------------------------------------------------------

    async def _invoke(self, request: Request, raw_url: str) -> Response:
        env = self.build_environment(request, raw_url)
        try:
            proc = await asyncio.create_subprocess_exec(
                str(self.executable),
                cwd=str(self.settings.layout.target),
                env=env,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=None if self.settings.debug else asyncio.subprocess.DEVNULL,
                **self.settings.process_identity(),
            )
        except (OSError, subprocess.SubprocessError) as e:
            raise CgiSpawnError(f"Failed to spawn {self.executable}: {e}") from e

        # The body is written while the head is read so that a program
        # echoing a large upload cannot fill both pipes and stall.
        writer = asyncio.create_task(self._write_body(request, proc))
        try:
            if proc.stdout is None:
                raise CgiPipeError("Failed to read CGI stdout")
            reader = asyncio.ensure_future(read_cgi_head(proc.stdout, self.timeout))
            waiting = {writer, reader}
            while not reader.done():
                done, waiting = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)
                if writer in done and writer.exception() is not None:
                    reader.cancel()
                    raise writer.exception()
            head = reader.result()
        except BaseException:
            _stop_writer(proc, writer)
            await _terminate(proc)
            raise

        response = StreamingResponse(
            self._stream_body(proc, writer), status_code=head.status_code,
        )
        response.raw_headers.extend(
            (name.lower().encode("latin-1"), value.encode("latin-1"))
            for name, value in head.headers
        )
        return response

    async def _write_body(self, request: Request, proc: asyncio.subprocess.Process) -> None:
        stdin = proc.stdin
        if stdin is None:
            raise CgiPipeError("Failed to open CGI stdin")
        try:
            async for chunk in request.stream():
                if chunk:
                    stdin.write(chunk)
                    await stdin.drain()
            stdin.close()
            await stdin.wait_closed()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise CgiPipeError(f"Failed to write CGI stdin: {e}") from e

    async def _stream_body(
        self, proc: asyncio.subprocess.Process, writer: asyncio.Task,
    ) -> AsyncIterator[bytes]:
        finished = False
        try:
            while True:
                chunk = await _with_timeout(proc.stdout.read(CGI_CHUNK_SIZE), self.timeout)
                if not chunk:
                    break
                yield chunk
            finished = True
        except CgiTimeoutError as e:
            logger.warning("CGI body truncated: %s", e)
        finally:
            if writer.done() and not writer.cancelled() and writer.exception() is not None:
                logger.warning("CGI stdin: %s", writer.exception())
            _stop_writer(proc, writer)
            if finished:
                await proc.wait()
            else:
                await _terminate(proc)


async def read_cgi_head(
    stdout: asyncio.StreamReader, timeout: Optional[float] = None,
) -> CgiHead:
    """
    Consume the CGI header block from stdout.

    Stops at the first blank line (or EOF). The reader is left positioned
    at the start of the body.
    """
    head = CgiHead()
    while True:
        try:
            raw = await _with_timeout(stdout.readline(), timeout)
        except ValueError as e:
            raise CgiHeaderError(f"CGI header line too long: {e}") from e
        line = raw.decode("latin-1").rstrip("\r\n")
        if not line:
            break
        name, value = parse_header_line(line)
        if name.lower() == "status":
            head.status_code = parse_status(value)
        else:
            head.headers.append((name, value))
    return head


async def _with_timeout(awaitable, timeout: Optional[float]):
    if timeout is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError:
        raise CgiTimeoutError(f"CGI program produced no output for {timeout}s") from None


def _stop_writer(proc: asyncio.subprocess.Process, writer: asyncio.Task) -> None:
    """Abandon the body copy and close stdin so the child sees EOF."""
    if not writer.done():
        writer.cancel()
    if proc.stdin is not None:
        proc.stdin.close()


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
    await proc.wait()
