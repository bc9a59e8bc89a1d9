"""An in-process RPC network that can lose, delay and reorder messages.

A :class:`Network` holds client end-points, servers and the connections
between them. Each :class:`ClientEnd` talks to at most one server; a
:class:`Server` holds one or more :class:`Service` objects, and a service
exposes the public methods of a receiver object as RPC handlers. A handler
takes the request arguments and returns the reply.

Arguments and replies always travel encoded, so a call never shares
objects between caller and handler. On an unreliable network requests and
replies are sometimes dropped and delivery is delayed; a disabled or
unconnected end-point, or a deleted server, never answers. In all of those
cases :meth:`ClientEnd.call` raises :class:`RPCFailed`.
"""

from __future__ import annotations

import io
import queue
import random
import threading
import time
import types
from dataclasses import dataclass
from typing import Any, Callable, Hashable

from distlab.codec import LabDecoder, LabEncoder

SHORT_DELAY = 27  # ms
LONG_DELAY = 7000  # ms
MAX_DELAY = LONG_DELAY + 100

_POLL_INTERVAL = 0.1  # seconds between checks that a server is still alive
_CO_VARARGS = 0x04


class RPCFailed(Exception):
    """No reply was received: lost request or reply, or the server is down."""


def _encode(value: Any) -> bytes:
    buffer = io.BytesIO()
    LabEncoder(buffer).encode(value)
    return buffer.getvalue()


def _decode(data: bytes, expected: type) -> Any:
    return LabDecoder(io.BytesIO(data)).decode(expected)


def _class_attribute(cls: type, name: str) -> Any:
    for klass in cls.__mro__:
        if name in vars(klass):
            return vars(klass)[name]
    return None


def _takes_one_argument(function: types.FunctionType) -> bool:
    """True if a plain method can be called with exactly one argument besides self."""
    code = function.__code__
    positional = code.co_argcount
    required = positional - len(function.__defaults__ or ())
    kwdefaults = function.__kwdefaults__ or {}
    kwonly = code.co_varnames[positional : positional + code.co_kwonlyargcount]
    if any(name not in kwdefaults for name in kwonly):
        return False
    has_varargs = bool(code.co_flags & _CO_VARARGS)
    return required <= 2 and (positional >= 2 or has_varargs)


@dataclass(frozen=True)
class _Reply:
    data: bytes
    reply_type: type


class Service:
    """The public methods of ``receiver`` that take one argument, callable by RPC."""

    def __init__(self, receiver: Any) -> None:
        self.receiver = receiver
        self.name = type(receiver).__name__
        self._methods: dict[str, Callable[[Any], Any]] = {}
        cls = type(receiver)
        for attr in dir(cls):
            if attr.startswith("_"):
                continue
            raw = _class_attribute(cls, attr)
            if not isinstance(raw, types.FunctionType):
                continue
            if not _takes_one_argument(raw):
                continue
            self._methods[attr] = getattr(receiver, attr)

    @property
    def methods(self) -> list[str]:
        return sorted(self._methods)

    def _dispatch(self, method_name: str, args_data: bytes, args_type: type) -> _Reply:
        method = self._methods.get(method_name)
        if method is None:
            raise LookupError(
                f"unknown method {method_name} in {self.name}; "
                f"expecting one of {self.methods}"
            )
        args = _decode(args_data, args_type)
        reply = method(args)
        return _Reply(_encode(reply), type(reply))


class Server:
    """A set of services sharing one RPC end-point."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._services: dict[str, Service] = {}
        self._count = 0

    def add_service(self, service: Service) -> None:
        with self._lock:
            self._services[service.name] = service

    @property
    def count(self) -> int:
        """Number of RPCs that reached this server."""
        with self._lock:
            return self._count

    def _dispatch(self, svc_meth: str, args_data: bytes, args_type: type) -> _Reply:
        with self._lock:
            self._count += 1
            service_name, _, method_name = svc_meth.rpartition(".")
            service = self._services.get(service_name)
            choices = sorted(self._services)
        if service is None:
            raise LookupError(
                f"unknown service {service_name} in {svc_meth}; expecting one of {choices}"
            )
        return service._dispatch(method_name, args_data, args_type)


class ClientEnd:
    """A named client end-point; sends calls to the server it is connected to."""

    def __init__(self, network: Network, endname: Hashable) -> None:
        self._network = network
        self.endname = endname

    def call(self, svc_meth: str, args: Any) -> Any:
        """Call ``"Service.Method"`` with ``args`` and return the handler's reply.

        Raises :class:`RPCFailed` if no reply arrives.
        """
        payload = _encode(args)
        return self._network._deliver(self.endname, svc_meth, type(args), payload)


class Network:
    """Client ends, servers and the connections between them."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._reliable = True
        self._long_delays = False
        self._long_reordering = False
        self._ends: dict[Hashable, ClientEnd] = {}
        self._enabled: dict[Hashable, bool] = {}
        self._servers: dict[Hashable, Server | None] = {}
        self._connections: dict[Hashable, Hashable | None] = {}
        self._done = threading.Event()
        self._count = 0
        self._bytes = 0

    def __enter__(self) -> Network:
        return self

    def __exit__(self, *exc: object) -> None:
        self.cleanup()

    def cleanup(self) -> None:
        """Shut the network down; later calls fail."""
        self._done.set()

    @property
    def reliable(self) -> bool:
        """False means requests and replies may be dropped or delayed."""
        with self._lock:
            return self._reliable

    @reliable.setter
    def reliable(self, yes: bool) -> None:
        with self._lock:
            self._reliable = yes

    @property
    def long_delays(self) -> bool:
        """Pause a long time before failing a call on a disabled connection."""
        with self._lock:
            return self._long_delays

    @long_delays.setter
    def long_delays(self, yes: bool) -> None:
        with self._lock:
            self._long_delays = yes

    @property
    def long_reordering(self) -> bool:
        """Sometimes delay replies for a long time."""
        with self._lock:
            return self._long_reordering

    @long_reordering.setter
    def long_reordering(self, yes: bool) -> None:
        with self._lock:
            self._long_reordering = yes

    def make_end(self, endname: Hashable) -> ClientEnd:
        """Create a disabled, unconnected client end-point."""
        with self._lock:
            if endname in self._ends:
                raise ValueError(f"end {endname!r} already exists")
            end = ClientEnd(self, endname)
            self._ends[endname] = end
            self._enabled[endname] = False
            self._connections[endname] = None
            return end

    def delete_end(self, endname: Hashable) -> None:
        with self._lock:
            if endname not in self._ends:
                raise KeyError(f"end {endname!r} doesn't exist")
            del self._ends[endname]
            del self._enabled[endname]
            del self._connections[endname]

    def add_server(self, servername: Hashable, server: Server) -> None:
        with self._lock:
            self._servers[servername] = server

    def delete_server(self, servername: Hashable) -> None:
        """Take a server off the network; calls waiting on it fail."""
        with self._lock:
            self._servers[servername] = None

    def connect(self, endname: Hashable, servername: Hashable) -> None:
        with self._lock:
            self._connections[endname] = servername

    def enable(self, endname: Hashable, enabled: bool) -> None:
        with self._lock:
            self._enabled[endname] = enabled

    def get_count(self, servername: Hashable) -> int:
        """Number of RPCs that reached the named server."""
        with self._lock:
            server = self._servers.get(servername)
        if server is None:
            raise KeyError(f"no server {servername!r}")
        return server.count

    def total_count(self) -> int:
        """Number of calls sent over the network."""
        with self._lock:
            return self._count

    def total_bytes(self) -> int:
        """Bytes of requests and delivered replies sent over the network."""
        with self._lock:
            return self._bytes

    def _is_server_dead(self, endname: Hashable, servername: Hashable, server: Server) -> bool:
        with self._lock:
            return not self._enabled.get(endname, False) or self._servers.get(servername) is not server

    def _deliver(self, endname: Hashable, svc_meth: str, args_type: type, payload: bytes) -> Any:
        with self._lock:
            if self._done.is_set():
                raise RPCFailed("network has been cleaned up")
            self._count += 1
            self._bytes += len(payload)
            enabled = self._enabled.get(endname, False)
            servername = self._connections.get(endname)
            server = self._servers.get(servername) if servername is not None else None
            reliable = self._reliable
            long_reordering = self._long_reordering
            long_delays = self._long_delays

        if not (enabled and servername is not None and server is not None):
            # Simulate no reply and an eventual timeout.
            ms = random.randrange(LONG_DELAY) if long_delays else random.randrange(100)
            time.sleep(ms / 1000)
            raise RPCFailed(f"no reply for {svc_meth}")

        if not reliable:
            time.sleep(random.randrange(SHORT_DELAY) / 1000)
            if random.randrange(1000) < 100:
                raise RPCFailed(f"request for {svc_meth} lost")

        results: queue.Queue = queue.Queue(maxsize=1)

        def run() -> None:
            try:
                results.put((server._dispatch(svc_meth, payload, args_type), None))
            except Exception as exc:  # handed to the caller
                results.put((None, exc))

        threading.Thread(target=run, daemon=True).start()

        while True:
            try:
                reply, error = results.get(timeout=_POLL_INTERVAL)
                break
            except queue.Empty:
                if self._is_server_dead(endname, servername, server):
                    raise RPCFailed(f"server died during {svc_meth}") from None

        if error is not None:
            raise error
        # Never answer once the server has been deleted, so that a client
        # cannot see a reply from a server whose state was superseded.
        if self._is_server_dead(endname, servername, server):
            raise RPCFailed(f"server died during {svc_meth}")
        if not reliable and random.randrange(1000) < 100:
            raise RPCFailed(f"reply for {svc_meth} lost")
        if long_reordering and random.randrange(900) < 600:
            ms = 200 + random.randrange(1 + random.randrange(2000))
            time.sleep(ms / 1000)
        with self._lock:
            self._bytes += len(reply.data)
        return _decode(reply.data, reply.reply_type)