import socket
import struct
import time

import pytest

from lora_adr.errors import StartupError
from lora_adr.protocol import format_observation, make_framer, parse_decision
from lora_adr.server import ControllerServer


def wait_for(cond, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if cond():
            return True
        time.sleep(0.02)
    return cond()


class Client:
    def __init__(self, addr, framing="length"):
        self.sock = socket.create_connection(addr, timeout=3.0)
        self.framer = make_framer(framing)
        self.pending = []

    def send(self, payload):
        self.sock.sendall(self.framer.encode(payload))

    def send_raw(self, data):
        self.sock.sendall(data)

    def recv(self):
        while not self.pending:
            data = self.sock.recv(4096)
            if not data:
                raise ConnectionError("server closed the connection")
            self.pending.extend(self.framer.feed(data))
        return self.pending.pop(0)

    def ask(self, *args, **kwargs):
        self.send(format_observation(*args, **kwargs))
        return parse_decision(self.recv())

    def close(self):
        self.sock.close()


@pytest.fixture
def start_server(make_cfg):
    servers = []

    def _start(**overrides):
        srv = ControllerServer(make_cfg(**overrides))
        srv.start()
        servers.append(srv)
        return srv
    yield _start
    for srv in servers:
        srv.stop()
        srv.dispatcher.shutdown()


@pytest.mark.parametrize("framing", ["length", "line"])
def test_round_trip(start_server, framing):
    srv = start_server(framing=framing)
    client = Client(srv.address, framing)
    try:
        action, seq = client.ask("ed1", None)
        assert 0 <= action < 42 and seq is None
        nxt, seq = client.ask("ed1", action, 1.0, 0.02, seq=5)
        assert seq == 5 and 0 <= nxt < 42
        other, _ = client.ask("ed2", None)
        assert 0 <= other < 42
        assert wait_for(lambda: len(srv.dispatcher.registry) == 2)
        assert srv.dispatcher.counters["decisions"] == 3
    finally:
        client.close()


def test_malformed_frame_does_not_end_session(start_server):
    srv = start_server()
    client = Client(srv.address)
    try:
        client.send(b"no-comma-here")
        client.send(b"ed1,abc")
        action, _ = client.ask("ed1", None)
        assert 0 <= action < 42
        assert srv.dispatcher.counters["malformed"] == 2
    finally:
        client.close()


def test_disconnect_evicts_session_devices(start_server):
    srv = start_server()
    a, b = Client(srv.address), Client(srv.address)
    try:
        a.ask("ed1", None)
        a.ask("ed2", None)
        b.ask("ed3", None)
        a.close()
        assert wait_for(lambda: "ed1" not in srv.dispatcher.registry)
        assert "ed2" not in srv.dispatcher.registry
        assert "ed3" in srv.dispatcher.registry
        assert wait_for(lambda: len(srv.sessions) == 1)
    finally:
        b.close()


def test_oversized_frame_closes_session(start_server):
    srv = start_server(max_frame=64)
    client = Client(srv.address)
    try:
        client.send_raw(struct.pack("!I", 65) + b"x" * 65)
        with pytest.raises(ConnectionError):
            client.recv()
        assert wait_for(lambda: not srv.sessions)
    finally:
        client.close()


def test_bind_failure_is_startup_error(start_server, make_cfg):
    srv = start_server()
    port = srv.address[1]
    other = ControllerServer(make_cfg(port=port))
    try:
        with pytest.raises(StartupError):
            other.bind()
    finally:
        other.dispatcher.shutdown()
