from __future__ import annotations

import threading
import time
from dataclasses import dataclass

import pytest

from distlab.labrpc import ClientEnd, Network, RPCFailed, Server, Service


@dataclass
class JunkArgs:
    x: int = 0


@dataclass
class JunkReply:
    x: str = ""


class JunkServer:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.log1: list[str] = []
        self.log2: list[int] = []
        self.release = threading.Event()
        self.items: list[int] = [1, 2, 3]

    def handler1(self, args: str) -> int:
        with self.lock:
            self.log1.append(args)
            return int(args)

    def handler2(self, args: int) -> str:
        with self.lock:
            self.log2.append(args)
            return f"handler2-{args}"

    def handler3(self, args: int) -> int:
        self.release.wait(20)
        return -args

    def handler4(self, args: JunkArgs) -> JunkReply:
        return JunkReply("pointer")

    def handler5(self, args: JunkArgs) -> JunkReply:
        return JunkReply("no pointer")

    def handler6(self, args: str) -> int:
        with self.lock:
            return len(args)

    def handler7(self, args: int) -> str:
        with self.lock:
            return "y" * args

    def get_items(self, args: int) -> list[int]:
        return self.items


def _setup(servername="server99", endname="end1-99", enable=True):
    rn = Network()
    js = JunkServer()
    rs = Server()
    rs.add_service(Service(js))
    rn.add_server(servername, rs)
    end = rn.make_end(endname)
    rn.connect(endname, servername)
    if enable:
        rn.enable(endname, True)
    return rn, js, end


@pytest.fixture
def net():
    rn, js, end = _setup()
    yield rn, js, end
    js.release.set()
    rn.cleanup()


def test_basic(net):
    _, _, end = net
    assert end.call("JunkServer.handler2", 111) == "handler2-111"
    assert end.call("JunkServer.handler1", "9099") == 9099


def test_types(net):
    _, _, end = net
    assert end.call("JunkServer.handler4", JunkArgs()) == JunkReply("pointer")
    assert end.call("JunkServer.handler5", JunkArgs()) == JunkReply("no pointer")


def test_disconnect():
    rn, js, end = _setup(enable=False)
    try:
        with pytest.raises(RPCFailed):
            end.call("JunkServer.handler2", 111)
        rn.enable("end1-99", True)
        assert end.call("JunkServer.handler1", "9099") == 9099
        assert js.log2 == []
    finally:
        rn.cleanup()


def test_counts():
    rn, _, end = _setup(servername=99)
    try:
        for i in range(17):
            assert end.call("JunkServer.handler2", i) == f"handler2-{i}"
        assert rn.get_count(99) == 17
        assert rn.total_count() == 17
    finally:
        rn.cleanup()


def test_bytes():
    rn, _, end = _setup(servername=99)
    try:
        for _ in range(17):
            args = "x" * 72
            args = args + args
            args = args + args
            assert end.call("JunkServer.handler6", args) == len(args)
        n = rn.total_bytes()
        assert 4828 <= n <= 6000

        for _ in range(17):
            assert len(end.call("JunkServer.handler7", 107)) == 107
        nn = rn.total_bytes() - n
        assert 1800 <= nn <= 2500
    finally:
        rn.cleanup()


def _make_shared_server(servername=1000):
    rn = Network()
    js = JunkServer()
    rs = Server()
    rs.add_service(Service(js))
    rn.add_server(servername, rs)
    return rn, js


def test_concurrent_many():
    rn, _ = _make_shared_server()
    nclients, nrpcs = 20, 10
    counts = [0] * nclients
    wrong: list[str] = []

    def client(i: int) -> None:
        end = rn.make_end(i)
        rn.connect(i, 1000)
        rn.enable(i, True)
        for j in range(nrpcs):
            arg = i * 100 + j
            reply = end.call("JunkServer.handler2", arg)
            if reply != f"handler2-{arg}":
                wrong.append(reply)
            counts[i] += 1

    try:
        threads = [threading.Thread(target=client, args=(i,)) for i in range(nclients)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert wrong == []
        assert sum(counts) == nclients * nrpcs
        assert rn.get_count(1000) == nclients * nrpcs
    finally:
        rn.cleanup()


def test_concurrent_one():
    rn, js = _make_shared_server()
    end = rn.make_end("c")
    rn.connect("c", 1000)
    rn.enable("c", True)
    nrpcs = 20
    replies: dict[int, str] = {}

    def client(i: int) -> None:
        replies[i] = end.call("JunkServer.handler2", 100 + i)

    try:
        threads = [threading.Thread(target=client, args=(i,)) for i in range(nrpcs)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert replies == {i: f"handler2-{100 + i}" for i in range(nrpcs)}
        assert len(js.log2) == nrpcs
        assert rn.get_count(1000) == nrpcs
    finally:
        rn.cleanup()


def test_regression_delayed_rpcs_do_not_delay_later_ones():
    rn, js = _make_shared_server()
    end = rn.make_end("c")
    rn.connect("c", 1000)
    rn.enable("c", False)
    failures = []

    def client(i: int) -> None:
        try:
            end.call("JunkServer.handler2", 100 + i)
        except RPCFailed:
            failures.append(i)

    try:
        threads = [threading.Thread(target=client, args=(i,)) for i in range(20)]
        for t in threads:
            t.start()
        time.sleep(0.1)

        t0 = time.monotonic()
        rn.enable("c", True)
        assert end.call("JunkServer.handler2", 99) == "handler2-99"
        assert time.monotonic() - t0 < 0.05

        for t in threads:
            t.join()
        assert js.log2 == [99]
        assert rn.get_count(1000) == 1
    finally:
        rn.cleanup()


def test_killed(net):
    rn, js, end = net
    outcome: list[object] = []
    finished = threading.Event()

    def client() -> None:
        try:
            outcome.append(end.call("JunkServer.handler3", 99))
        except RPCFailed:
            outcome.append("failed")
        finished.set()

    threading.Thread(target=client, daemon=True).start()
    time.sleep(0.5)
    assert outcome == []
    assert rn.get_count("server99") == 1

    rn.delete_server("server99")
    assert finished.wait(0.5)
    assert outcome == ["failed"]


def test_call_to_deleted_server_fails(net):
    rn, _, end = net
    assert end.call("JunkServer.handler1", "9099") == 9099
    rn.delete_server("server99")
    t0 = time.monotonic()
    with pytest.raises(RPCFailed):
        end.call("JunkServer.handler1", "9099")
    assert time.monotonic() - t0 < 0.5


def test_failed_calls_are_counted_but_not_dispatched():
    rn, js, end = _setup(enable=False)
    try:
        with pytest.raises(RPCFailed):
            end.call("JunkServer.handler2", 1)
        assert rn.total_count() == 1
        assert rn.get_count("server99") == 0
    finally:
        rn.cleanup()


def test_reply_is_a_copy(net):
    _, js, end = net
    items = end.call("JunkServer.get_items", 0)
    assert items == [1, 2, 3]
    items.append(4)
    assert js.items == [1, 2, 3]


def test_unknown_method(net):
    _, _, end = net
    with pytest.raises(LookupError):
        end.call("JunkServer.nosuch", 1)


def test_unknown_service(net):
    _, _, end = net
    with pytest.raises(LookupError):
        end.call("Other.handler1", "1")


def test_service_lists_public_handlers():
    svc = Service(JunkServer())
    assert svc.name == "JunkServer"
    assert "handler1" in svc.methods
    assert "handler7" in svc.methods
    assert not any(name.startswith("_") for name in svc.methods)


def test_make_end_twice_raises():
    rn = Network()
    rn.make_end("a")
    with pytest.raises(ValueError):
        rn.make_end("a")


def test_delete_unknown_end_raises():
    rn = Network()
    with pytest.raises(KeyError):
        rn.delete_end("missing")


def test_deleted_end_can_be_recreated():
    rn = Network()
    rn.make_end("a")
    rn.delete_end("a")
    end = rn.make_end("a")
    assert isinstance(end, ClientEnd) and end.endname == "a"


def test_call_after_cleanup_fails():
    rn, _, end = _setup()
    rn.cleanup()
    with pytest.raises(RPCFailed):
        end.call("JunkServer.handler2", 1)
    assert rn.total_count() == 0


def test_context_manager_cleans_up():
    with Network() as rn:
        end = rn.make_end("e")
    with pytest.raises(RPCFailed):
        end.call("JunkServer.handler2", 1)


def test_network_settings_round_trip():
    rn = Network()
    assert rn.reliable is True
    rn.reliable = False
    rn.long_delays = True
    rn.long_reordering = True
    assert (rn.reliable, rn.long_delays, rn.long_reordering) == (False, True, True)