# -*- coding: utf8 -*-
"""Agda interface with functions to send commands and stream responses."""

import asyncio
import codecs
import datetime
import logging
import os
import re
from contextlib import contextmanager
from shutil import which
from tempfile import NamedTemporaryFile
from typing import IO, Callable, Generator, List, Optional

from iotcmInterface import Err, Ok, ParseFailure, Result, parse_response

Event = Result
Handler = Callable[[Event], None]

# Printed by Agda whenever it is ready to read the next command
PROMPT = "Agda2> "


class ConnectionFailure(Exception):
    """An exception for when Agda can't be reached or stops unexpectedly."""


class FindAgdaError(ConnectionFailure):
    """An exception for when an Agda executable could not be found."""


class StreamEnd:
    """Marks the end of the responses to one command."""

    def __repr__(self) -> str:
        return "STREAM_END"


STREAM_END = StreamEnd()


class DebugLog:
    """A logger that discards everything until it is pointed at a file."""

    def __init__(self, name: str, prefix: str = "agda_") -> None:
        self.prefix = prefix
        self.file: Optional[IO[str]] = None
        self.handler: logging.Handler = logging.NullHandler()
        self.logger = logging.getLogger(name)
        self.logger.addHandler(self.handler)
        self.logger.setLevel(logging.INFO)

    @property
    def enabled(self) -> bool:
        return self.file is not None

    def _swap(self, handler: logging.Handler, level: int) -> None:
        self.logger.removeHandler(self.handler)
        self.handler.flush()
        self.handler.close()
        self.handler = handler
        self.logger.addHandler(handler)
        self.logger.setLevel(level)

    def enable(self) -> str:
        """Start writing debug messages to a new temporary file."""
        if self.file is None:
            stamp = datetime.datetime.now().strftime("%y%m%d_%H%M%S")
            self.file = NamedTemporaryFile(  # pylint: disable=consider-using-with
                mode="w",
                encoding="utf-8",
                prefix=f"{self.prefix}{stamp}_",
                suffix=".log",
                delete=False,
            )
            handler = logging.StreamHandler(self.file)
            handler.setFormatter(
                logging.Formatter("%(asctime)s %(levelname)s: %(message)s")
            )
            self._swap(handler, logging.DEBUG)
        return self.file.name

    def disable(self) -> None:
        """Stop writing to the log file and close it."""
        if self.file is not None:
            self._swap(logging.NullHandler(), logging.CRITICAL)
            self.file.close()
            self.file = None

    def toggle(self) -> Optional[str]:
        """Enable or disable the log. Return the file name if enabled."""
        if self.enabled:
            self.disable()
            return None
        return self.enable()


class Emitter:
    """Forward events to any number of subscribed handlers."""

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self.handlers: List[Handler] = []
        self.logger = logger if logger is not None else logging.getLogger(__name__)

    def on(self, handler: Handler) -> Callable[[], None]:
        """Subscribe 'handler' and return a function that unsubscribes it."""
        self.handlers.append(handler)

        def off() -> None:
            try:
                self.handlers.remove(handler)
            except ValueError:
                pass

        return off

    def emit(self, event: Event) -> None:
        """Call every handler with 'event'.

        A handler that raises is logged and does not keep the event from the
        remaining handlers or stop the caller from reading further output.
        """
        for handler in list(self.handlers):
            try:
                handler(event)
            except Exception:  # pylint: disable=broad-except
                self.logger.exception("Handler failed on %r", event)


@contextmanager
def listen(emitter: Emitter, handler: Handler) -> Generator[None, None, None]:
    """Subscribe 'handler' for the duration of the block."""
    off = emitter.on(handler)
    try:
        yield None
    finally:
        off()


def find_agda(agda_path: Optional[str]) -> str:
    """Find the path to the Agda executable."""
    if agda_path:
        if os.path.isfile(agda_path) and os.access(agda_path, os.X_OK):
            return agda_path
        agda = which(agda_path)
    else:
        agda = which("agda")
    if agda is None:
        path = "$PATH" if not agda_path else agda_path
        raise FindAgdaError(
            f"Could not find agda in {path}. Perhaps you need to set agda_path."
        )
    return agda


async def extract_version(agda: str) -> str:
    """Parse the output of agda --version."""
    proc = await asyncio.create_subprocess_exec(
        agda,
        "--version",
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    out, _ = await proc.communicate()
    if proc.returncode != 0:
        raise FindAgdaError(f"Executing '{agda} --version' failed.")
    match = re.search(r"version (\S+)", out.decode("utf-8"))
    if match is None:
        raise FindAgdaError(f"Failed to parse '{agda} --version'.")
    return match.group(1)


class Connection:
    """Provide an interface to the background Agda process."""

    def __init__(
        self,
        agda: str,
        version: str,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        """Initialize Connection state.

        agda - Path to the Agda executable
        version - The version reported by `agda --version`
        process - The Agda process
        emitter - Where responses, stream ends, and failures are announced
        buffer - Output that has not formed a complete line yet
        ready - Whether the startup prompt has been seen
        """
        self.agda = agda
        self.version = version
        self.logger = logger if logger is not None else DebugLog(str(id(self))).logger
        self.process: Optional[asyncio.subprocess.Process] = None
        self.emitter = Emitter(self.logger)
        self.buffer = ""
        self.ready = False
        self.stopping = False
        self.readers: List["asyncio.Future[None]"] = []
        self.decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    @classmethod
    async def establish(
        cls,
        agda_path: Optional[str],
        logger: Optional[logging.Logger] = None,
    ) -> Result:
        """Find Agda and launch it in interaction mode."""
        try:
            agda = find_agda(agda_path)
            version = await extract_version(agda)
            connection = cls(agda, version, logger)
            await connection.start()
            return Ok(connection)
        except ConnectionFailure as e:
            return Err(e)
        except OSError as e:
            # Failed to launch Agda
            return Err(ConnectionFailure(str(e)))

    async def start(self) -> None:
        """Launch the Agda process."""
        assert self.process is None
        self.logger.debug("start: %s (%s)", self.agda, self.version)
        self.process = await asyncio.create_subprocess_exec(
            self.agda,
            "--interaction",
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

        # Monitor Agda's stdout and stderr
        self.readers = [
            asyncio.ensure_future(self.capture_out()),
            asyncio.ensure_future(self.capture_err()),
        ]

    async def stop(self) -> None:
        """End the Agda process."""
        if self.process is not None:
            self.logger.debug("stop")
            self.stopping = True

            try:
                # Try to terminate Agda cleanly
                self.process.terminate()
                await self.process.wait()
            except (OSError, ValueError):
                try:
                    # Force Agda to stop
                    self.process.kill()
                except OSError:
                    pass

            self.process = None

        for reader in self.readers:
            reader.cancel()
        self.readers = []

    def send(self, cmd: str) -> None:
        """Write 'cmd' to Agda's stdin."""
        if not self.running():
            raise ConnectionFailure("Agda is not running.")
        assert self.process is not None
        if self.process.stdin is None:
            raise ConnectionFailure("Agda stdin must not be None in send().")

        self.logger.debug("send: %s", cmd)
        self.process.stdin.write((cmd + "\n").encode("utf-8"))

    def running(self) -> bool:
        """Check if Agda has been started and is still alive."""
        return self.process is not None and self.process.returncode is None

    # Reading Responses #
    def feed(self, data: str) -> None:
        """Split 'data' into responses and prompts and announce them."""
        self.buffer += data
        while True:
            if self.buffer.startswith(PROMPT):
                self.buffer = self.buffer[len(PROMPT) :]
                self.prompt()
                continue

            line, newline, rest = self.buffer.partition("\n")
            if newline == "":
                break
            self.buffer = rest
            self.handle_line(line)

    def prompt(self) -> None:
        """Agda finished the previous command and wants the next one."""
        # The first prompt is printed on startup, before any command
        if not self.ready:
            self.ready = True
            return
        self.emitter.emit(Ok(STREAM_END))

    def handle_line(self, line: str) -> None:
        """Parse a line of output and announce the result."""
        line = line.strip()
        if line == "":
            return
        self.logger.debug("recv: %s", line)

        try:
            response = parse_response(line)
        except ParseFailure as e:
            self.emitter.emit(Err(e))
            return
        self.emitter.emit(Ok(response))

    async def capture_out(self) -> None:
        """Continually read Agda's stdout and feed it to the parser."""
        process = self.process
        assert process is not None and process.stdout is not None
        while True:
            data = await process.stdout.read(0x10000)
            if data == b"":
                break
            self.feed(self.decoder.decode(data))

        if not self.stopping:
            # Agda died
            code = await process.wait()
            self.emitter.emit(Err(ConnectionFailure(f"Agda exited with code {code}.")))

    async def capture_err(self) -> None:
        """Continually log Agda's stderr."""
        assert self.process is not None and self.process.stderr is not None
        stderr = self.process.stderr
        async for line in stderr:
            self.logger.warning("stderr: %s", line.decode("utf-8", errors="replace"))
