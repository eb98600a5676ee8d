"""
POSIX Socket Agent for the Device Under Test

A small agent that runs inside the DUT and:
1. Exposes health check endpoints on HTTP 8080
2. Performs real socket syscalls on request (socket, bind, connect,
   sendto, recv, getsockopt, close) and returns the raw result and errno
3. Logs all activity for debugging

Replies always have the shape {"ret": int, "errno": int, "timed_out": bool}
plus call-specific fields. A failing syscall is a normal reply with ret -1.
Calls that can block honor a "timeout" (seconds): the syscall is cancelled
and the reply has timed_out set.
"""

from __future__ import annotations

import asyncio
import os
import signal
import socket
import sys
from errno import EBADF

import structlog
from aiohttp import web

log = structlog.get_logger()


def configure_logging() -> None:
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            structlog.stdlib.NAME_TO_LEVEL.get(
                os.environ.get("UDPICMP_LOG_LEVEL", "debug").lower(), 10
            )
        ),
    )


def _const(name: str) -> int:
    """Resolve a socket constant such as SOCK_DGRAM by name."""
    if not name.isupper() or not hasattr(socket, name):
        raise ValueError(f"unknown socket constant {name!r}")
    return int(getattr(socket, name))


def _reply(ret: int, errno: int = 0, timed_out: bool = False, **extra: object) -> web.Response:
    return web.json_response({"ret": ret, "errno": errno, "timed_out": timed_out, **extra})


def _error(err: OSError) -> web.Response:
    return _reply(-1, err.errno or 0)


@web.middleware
async def bad_request_middleware(request: web.Request, handler):
    """Turn malformed request bodies into 400s."""
    try:
        return await handler(request)
    except (KeyError, TypeError, ValueError) as err:
        log.warning("bad_request", path=request.path, error=str(err))
        raise web.HTTPBadRequest(text=str(err)) from err


class PosixServer:
    """Socket syscalls on behalf of the test runner."""

    def __init__(self) -> None:
        self.bind_addr = os.environ.get("UDPICMP_AGENT_ADDR", "0.0.0.0:8080")
        self.sockets: dict[int, socket.socket] = {}
        self.calls = 0

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[bad_request_middleware])
        app.router.add_get("/health", self.health_handler)
        app.router.add_get("/status", self.status_handler)
        app.router.add_post("/socket", self.socket_handler)
        app.router.add_post("/bind", self.bind_handler)
        app.router.add_post("/getsockname", self.getsockname_handler)
        app.router.add_post("/connect", self.connect_handler)
        app.router.add_post("/sendto", self.sendto_handler)
        app.router.add_post("/recv", self.recv_handler)
        app.router.add_post("/getsockopt", self.getsockopt_handler)
        app.router.add_post("/close", self.close_handler)
        app.on_cleanup.append(self.close_all)
        return app

    async def health_handler(self, _request: web.Request) -> web.Response:
        """Health check endpoint."""
        return web.Response(text="OK", status=200)

    async def status_handler(self, _request: web.Request) -> web.Response:
        """Status endpoint with agent info."""
        return web.json_response({"open_sockets": sorted(self.sockets), "calls": self.calls})

    async def _body(self, request: web.Request) -> dict:
        self.calls += 1
        body = await request.json()
        if not isinstance(body, dict):
            raise ValueError("request body must be a JSON object")
        log.debug("call", path=request.path, **body)
        return body

    def _socket(self, body: dict) -> socket.socket | None:
        return self.sockets.get(int(body["fd"]))

    async def socket_handler(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        try:
            sock = socket.socket(
                _const(body["domain"]), _const(body["type"]), _const(body["protocol"])
            )
        except OSError as err:
            return _error(err)
        sock.setblocking(False)
        self.sockets[sock.fileno()] = sock
        log.info("socket_created", fd=sock.fileno())
        return _reply(sock.fileno())

    async def bind_handler(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        sock = self._socket(body)
        if sock is None:
            return _reply(-1, EBADF)
        try:
            sock.bind((body["addr"], int(body["port"])))
        except OSError as err:
            return _error(err)
        return _reply(0)

    async def getsockname_handler(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        sock = self._socket(body)
        if sock is None:
            return _reply(-1, EBADF)
        addr, port = sock.getsockname()[:2]
        return _reply(0, addr=addr, port=port)

    async def connect_handler(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        sock = self._socket(body)
        if sock is None:
            return _reply(-1, EBADF)
        try:
            sock.connect((body["addr"], int(body["port"])))
        except OSError as err:
            return _error(err)
        return _reply(0)

    async def sendto_handler(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        sock = self._socket(body)
        if sock is None:
            return _reply(-1, EBADF)
        payload = bytes.fromhex(body.get("payload", ""))
        loop = asyncio.get_running_loop()
        try:
            sent = await asyncio.wait_for(
                loop.sock_sendto(sock, payload, (body["addr"], int(body["port"]))),
                body.get("timeout"),
            )
        except TimeoutError:
            log.info("sendto_timed_out", fd=sock.fileno())
            return _reply(-1, timed_out=True)
        except OSError as err:
            log.info("sendto_failed", fd=sock.fileno(), errno=err.errno)
            return _error(err)
        return _reply(sent)

    async def recv_handler(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        sock = self._socket(body)
        if sock is None:
            return _reply(-1, EBADF)
        loop = asyncio.get_running_loop()
        try:
            data = await asyncio.wait_for(
                loop.sock_recv(sock, int(body["len"])), body.get("timeout")
            )
        except TimeoutError:
            log.info("recv_timed_out", fd=sock.fileno())
            return _reply(-1, timed_out=True)
        except OSError as err:
            log.info("recv_failed", fd=sock.fileno(), errno=err.errno)
            return _error(err)
        return _reply(len(data), data=data.hex())

    async def getsockopt_handler(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        sock = self._socket(body)
        if sock is None:
            return _reply(-1, EBADF)
        try:
            value = sock.getsockopt(_const(body["level"]), _const(body["optname"]))
        except OSError as err:
            return _error(err)
        return _reply(0, value=value)

    async def close_handler(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        sock = self.sockets.pop(int(body["fd"]), None)
        if sock is None:
            return _reply(-1, EBADF)
        fd = sock.fileno()
        sock.close()
        log.info("socket_closed", fd=fd)
        return _reply(0)

    async def close_all(self, _app: web.Application | None = None) -> None:
        for sock in self.sockets.values():
            sock.close()
        self.sockets.clear()

    async def run(self) -> None:
        """Run the agent until SIGINT/SIGTERM."""
        host, port_str = self.bind_addr.rsplit(":", 1)
        log.info("posix_server_starting", bind_addr=self.bind_addr)

        runner = web.AppRunner(self.build_app())
        await runner.setup()
        site = web.TCPSite(runner, host, int(port_str))
        await site.start()
        log.info("posix_server_started", port=int(port_str))

        # Wait for shutdown signal
        stop_event = asyncio.Event()

        def signal_handler() -> None:
            log.info("shutdown_signal_received")
            stop_event.set()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)

        await stop_event.wait()

        log.info("shutting_down")
        await runner.cleanup()
        log.info("shutdown_complete")


async def main() -> None:
    """Entry point."""
    configure_logging()
    server = PosixServer()
    await server.run()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        sys.exit(0)
