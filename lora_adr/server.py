"""
TCP transport: an accept loop plus one thread per simulator connection.
A session only ever blocks on its own socket; malformed frames are dropped
and logged, socket failures end the session and evict its devices.
"""
from __future__ import annotations
from typing import Dict, Optional, Tuple
import itertools
import logging
import socket
import threading

from .config import ControllerConfig
from .dispatcher import Dispatcher
from .errors import ControllerError, FrameError, SessionClosed, StartupError
from .protocol import StreamDesync, make_framer, parse_observation

logger = logging.getLogger(__name__)

RECV_BYTES = 4096
POLL_S = 0.5


class Session(threading.Thread):
    def __init__(self, server: "ControllerServer", conn: socket.socket,
                 addr: Tuple[str, int], session_id: str) -> None:
        super().__init__(name=f"session-{session_id}", daemon=True)
        self.server = server
        self.conn = conn
        self.addr = addr
        self.session_id = session_id
        self.framer = make_framer(server.cfg.framing, server.cfg.max_frame)
        self.frames = 0
        self.dropped = 0

    @property
    def dispatcher(self) -> Dispatcher:
        return self.server.dispatcher

    def run(self) -> None:
        logger.info("[CTRL] session %s connected from %s:%d", self.session_id, *self.addr[:2])
        self.conn.settimeout(POLL_S)
        try:
            while not self.server.stopping:
                try:
                    data = self.conn.recv(RECV_BYTES)
                except socket.timeout:
                    continue
                if not data:
                    raise SessionClosed(self.session_id, "peer closed the connection")
                for frame in self.framer.feed(data):
                    self.frames += 1
                    self._handle_frame(frame)
        except StreamDesync as exc:
            logger.warning("[CTRL] session %s: %s; closing", self.session_id, exc)
        except SessionClosed as exc:
            logger.info("[CTRL] %s", exc)
        except OSError as exc:
            logger.warning("[CTRL] session %s: transport failure: %s", self.session_id, exc)
        finally:
            self._close()

    def _handle_frame(self, frame: bytes) -> None:
        try:
            req = parse_observation(frame)
        except FrameError as exc:
            self.dropped += 1
            self.dispatcher.count("malformed")
            logger.warning("[CTRL] session %s: malformed message dropped: %s", self.session_id, exc)
            return
        logger.debug("[REQ] session=%s dev=%s prev=%s delivery=%s energy=%s feats=%d",
                     self.session_id, req.device_id, req.prev_action,
                     req.outcome.delivery, req.outcome.energy, len(req.features))
        try:
            decision = self.dispatcher.handle(self.session_id, req)
        except ControllerError as exc:
            self.dropped += 1
            logger.warning("[CTRL] session %s: device %s: %s", self.session_id, req.device_id, exc)
            return
        if decision is not None:
            self.send(decision.payload())

    def send(self, payload: bytes) -> None:
        self.conn.sendall(self.framer.encode(payload))

    def close(self) -> None:
        try:
            self.conn.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass  # already disconnected

    def _close(self) -> None:
        try:
            self.conn.close()
        finally:
            self.dispatcher.close_session(self.session_id)
            self.server._forget(self)


class ControllerServer:
    def __init__(self, cfg: ControllerConfig, dispatcher: Optional[Dispatcher] = None) -> None:
        self.cfg = cfg
        self.dispatcher = dispatcher or Dispatcher(cfg)
        self.sessions: Dict[str, Session] = {}
        self._sessions_lock = threading.Lock()
        self._sock: Optional[socket.socket] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._ids = itertools.count(1)

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    @property
    def address(self) -> Tuple[str, int]:
        if self._sock is None:
            raise RuntimeError("server is not bound")
        return self._sock.getsockname()[:2]

    def bind(self) -> Tuple[str, int]:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.cfg.host, self.cfg.port))
            sock.listen(16)
        except OSError as exc:
            sock.close()
            raise StartupError(f"cannot listen on {self.cfg.host}:{self.cfg.port}: {exc}") from exc
        sock.settimeout(POLL_S)
        self._sock = sock
        logger.info("[CTRL] listening on %s:%d (framing=%s, arms=%d, policy=%s)",
                    *self.address, self.cfg.framing, len(self.dispatcher.catalog), self.dispatcher.policy.name)
        return self.address

    def serve_forever(self) -> None:
        if self._sock is None:
            self.bind()
        assert self._sock is not None
        while not self._stop.is_set():
            try:
                conn, addr = self._sock.accept()
            except socket.timeout:
                continue
            except OSError:
                if self._stop.is_set():
                    break
                raise
            sid = f"s{next(self._ids)}"
            session = Session(self, conn, addr, sid)
            with self._sessions_lock:
                self.sessions[sid] = session
            session.start()

    def start(self) -> Tuple[str, int]:
        """Bind and serve on a background thread; returns the bound address."""
        addr = self.bind()
        self._thread = threading.Thread(target=self.serve_forever, name="accept-loop", daemon=True)
        self._thread.start()
        return addr

    def _forget(self, session: Session) -> None:
        with self._sessions_lock:
            self.sessions.pop(session.session_id, None)

    def stop(self, timeout: float = 2.0) -> None:
        self._stop.set()
        if self._sock is not None:
            self._sock.close()
        with self._sessions_lock:
            sessions = list(self.sessions.values())
        for s in sessions:
            s.close()
        for s in sessions:
            s.join(timeout=timeout)
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    def __enter__(self) -> "ControllerServer":
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.stop()
