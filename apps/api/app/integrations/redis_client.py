from __future__ import annotations

import socket
from typing import BinaryIO
from urllib.parse import urlparse

from app.integrations.errors import CacheStoreError


class RedisProtocolError(CacheStoreError):
    pass


class RedisClient:
    """Minimal RESP client: one short-lived connection per pipeline of commands."""

    def __init__(self, redis_url: str, *, timeout_s: float = 1.0) -> None:
        parsed = urlparse(redis_url)
        if parsed.scheme != "redis" or not parsed.hostname:
            raise ValueError("REDIS_URL must use redis:// scheme and include a host")

        self.host = parsed.hostname
        self.port = parsed.port or 6379
        self.db = int(parsed.path.removeprefix("/") or 0)
        self.password = parsed.password
        self.timeout_s = timeout_s

    def execute(self, *parts: str) -> object:
        return self.pipeline([parts])[0]

    def pipeline(self, commands: list[tuple[str, ...]]) -> list[object]:
        with socket.create_connection((self.host, self.port), timeout=self.timeout_s) as conn:
            reader = conn.makefile("rb")
            try:
                if self.password:
                    conn.sendall(_encode_command("AUTH", self.password))
                    _read_response(reader)
                if self.db:
                    conn.sendall(_encode_command("SELECT", str(self.db)))
                    _read_response(reader)

                conn.sendall(b"".join(_encode_command(*parts) for parts in commands))
                return [_read_response(reader) for _ in commands]
            finally:
                reader.close()

    def ping(self) -> bool:
        return self.execute("PING") == "PONG"


def _encode_command(*parts: str) -> bytes:
    command = f"*{len(parts)}\r\n".encode()
    for part in parts:
        data = str(part).encode()
        command += f"${len(data)}\r\n".encode() + data + b"\r\n"
    return command


def _read_line(reader: BinaryIO) -> bytes:
    line = reader.readline()
    if not line:
        raise RedisProtocolError("Redis connection closed")
    if not line.endswith(b"\r\n"):
        raise RedisProtocolError("Redis line missing terminator")
    return line[:-2]


def _read_response(reader: BinaryIO) -> object:
    line = _read_line(reader)
    prefix, body = line[:1], line[1:]

    if prefix == b"+":
        return body.decode()
    if prefix == b"-":
        raise RedisProtocolError(body.decode())
    if prefix == b":":
        return int(body)
    if prefix == b"$":
        size = int(body)
        if size == -1:
            return None
        data = reader.read(size + 2)
        if len(data) != size + 2:
            raise RedisProtocolError("Redis bulk response truncated")
        if data[-2:] != b"\r\n":
            raise RedisProtocolError("Redis bulk response missing terminator")
        return data[:-2].decode()
    if prefix == b"*":
        length = int(body)
        if length == -1:
            return []
        return [_read_response(reader) for _ in range(length)]

    raise RedisProtocolError("Unsupported Redis response type")
