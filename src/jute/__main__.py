import json
import logging
import sys
from typing import Literal

import anyio
import structlog
from cyclopts import App

from .config import ClientConfig
from .connection import ConnectionDescriptor, find_connection_file
from .errors import JuteError
from .server import KernelServer

app = App()

LogLevel = Literal["debug", "info", "warning", "error", "critical"]


def configure_logging(level: LogLevel) -> None:
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper())),
        logger_factory=structlog.PrintLoggerFactory(sys.stderr),
    )


@app.default
def _main(
    connection_file: str = "kernel-*.json",
    *,
    code: str = "",
    timeout: float = 30.0,
    log_level: LogLevel = "warning",
):
    """Connect to a running kernel, then print its info or run CODE.

    Parameters
    ----------
    connection_file
        Connection file, or a pattern looked up in the Jupyter runtime directory.
    code
        Code to execute. Without it, the kernel info is printed.
    timeout
        Seconds to wait for the kernel.
    log_level
        Logging level.
    """
    configure_logging(log_level)
    config = ClientConfig(setup_timeout=timeout)
    try:
        descriptor = ConnectionDescriptor.from_file(find_connection_file(connection_file))
        anyio.run(run, descriptor, config, code, timeout)
    except (JuteError, TimeoutError, OSError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        sys.exit(1)


async def run(descriptor: ConnectionDescriptor, config: ClientConfig, code: str, timeout: float):
    async with KernelServer(config) as server:
        await server.start(descriptor)
        if not code:
            reply = await server.kernel_info(timeout=timeout)
            print(json.dumps(reply.content, indent=2))
            return
        async for event in server.run_cell(code, timeout=timeout):
            if event.event in ("stdout", "stderr"):
                stream = sys.stdout if event.event == "stdout" else sys.stderr
                stream.write(event.data)
            elif event.event == "execute_result":
                print(event.data["data"].get("text/plain", ""))
            elif event.event == "error":
                print("\n".join(event.data["traceback"]) or event.data["evalue"], file=sys.stderr)
            elif event.event == "disconnect":
                print(f"error: {event.data}", file=sys.stderr)
            else:
                print(f"[{event.event}]")


def main():
    app()


if __name__ == "__main__":
    app()
