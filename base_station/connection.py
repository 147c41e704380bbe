"""
JSON-RPC line transport shared by the base station and UAV clients.

Messages are JSON objects terminated by a newline, JSON-RPC 2.0 shaped:
requests carry `method`, `params` and `id`; notifications omit `id`;
responses carry `result` or `error` and the request `id`.
"""

import json
import logging
import socket
import threading
import time
from typing import Iterator, Optional

logger = logging.getLogger(__name__)


def request(method: str, params: dict, msg_id=None) -> dict:
    message = {"jsonrpc": "2.0", "method": method, "params": params}
    if msg_id is not None:
        message["id"] = msg_id
    return message


def result(msg_id, payload: dict) -> dict:
    return {"jsonrpc": "2.0", "result": payload, "id": msg_id}


def error(msg_id, code: int, message: str) -> dict:
    return {"jsonrpc": "2.0", "error": {"code": code, "message": message}, "id": msg_id}


class JsonLineConnection:
    """Socket wrapper with thread-safe sends and a line-buffered reader"""

    def __init__(self, sock: socket.socket, peer=None):
        self.sock = sock
        self.peer = peer
        self._send_lock = threading.Lock()
        self._buffer = b""
        self.closed = False

    def send(self, message: dict) -> bool:
        """Fire-and-forget send; returns False if the socket is gone"""
        if self.closed:
            return False
        data = json.dumps(message).encode() + b"\n"
        try:
            with self._send_lock:
                self.sock.sendall(data)
            return True
        except OSError as e:
            logger.warning(f"Send to {self.peer} failed: {e}")
            return False

    def messages(
        self,
        timeout: Optional[float] = 1.0,
        running=lambda: True,
        deadline: Optional[float] = None,
    ) -> Iterator[dict]:
        """
        Yield decoded messages until the peer closes or `running()` is False.

        `deadline` is a `time.monotonic()` instant after which iteration stops
        even if the peer stays silent.
        """
        while running() and not self.closed:
            while b"\n" in self._buffer:
                line, self._buffer = self._buffer.split(b"\n", 1)
                if not line.strip():
                    continue
                try:
                    yield json.loads(line.decode())
                except (UnicodeDecodeError, json.JSONDecodeError) as e:
                    logger.warning(f"Dropping malformed message from {self.peer}: {e}")

            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                wait = remaining if timeout is None else min(timeout, remaining)
            else:
                wait = timeout

            try:
                self.sock.settimeout(wait)
                data = self.sock.recv(4096)
            except socket.timeout:
                continue
            except OSError:
                break

            if not data:
                break
            self._buffer += data

    def close(self):
        if self.closed:
            return
        self.closed = True
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.sock.close()
