"""
Minimal client side of the SSH agent protocol (draft-miller-ssh-agent).

Only the requests sshid needs are implemented: listing identities and
removing one. Adding keys is left to ssh-add, which knows how to decrypt them.
"""
import base64
import hashlib
import socket
import struct
from typing import Iterator, Optional, Tuple

SSH_AGENT_FAILURE = 5
SSH_AGENT_SUCCESS = 6
SSH2_AGENTC_REQUEST_IDENTITIES = 11
SSH2_AGENT_IDENTITIES_ANSWER = 12
SSH2_AGENTC_REMOVE_IDENTITY = 18

# Refuse absurd lengths from a confused peer.
MAX_MESSAGE_LENGTH = 256 * 1024


class ProtocolError(Exception):
    """The agent sent something we cannot interpret."""


def key_fingerprint(key_blob: bytes) -> str:
    """SHA256 fingerprint in the format ssh-keygen -l prints."""
    digest = hashlib.sha256(bytes(key_blob)).digest()
    return "SHA256:" + base64.b64encode(digest).decode("ascii").rstrip("=")


def key_type(key_blob: bytes) -> str:
    """Key type string stored at the start of a public key blob."""
    try:
        type_len = struct.unpack_from('> I', key_blob, 0)[0]
    except struct.error:
        return "unknown"
    if len(key_blob) < 4 + type_len:
        return "unknown"
    return bytes(key_blob[4:4 + type_len]).decode("ascii", errors="replace")


def pack_string(data: bytes) -> bytes:
    return struct.pack('> I', len(data)) + bytes(data)


def build_message(msg_type: int, payload: bytes = b"") -> bytes:
    return struct.pack('> I B', len(payload) + 1, msg_type) + payload


def message_type(response: bytes) -> int:
    if len(response) < 5:
        raise ProtocolError("truncated agent response")
    return response[4]


def parse_identities(response: bytes) -> Iterator[Tuple[bytes, bytes]]:
    """
    Parse an SSH2_AGENT_IDENTITIES_ANSWER yielding (key_blob, comment) tuples.

    Args:
        response: Full message including the 4-byte length prefix

    Raises:
        ProtocolError: On a different message type or a truncated message
    """
    r_type = message_type(response)
    if r_type != SSH2_AGENT_IDENTITIES_ANSWER:
        raise ProtocolError(f"expected identities answer, got message type {r_type}")
    offset = struct.calcsize('> I B')
    try:
        id_count = struct.unpack_from('> I', response, offset)[0]
        offset += 4
        for _ in range(id_count):
            blob_len = struct.unpack_from('> I', response, offset)[0]
            offset += 4
            key_blob = bytes(response[offset:offset + blob_len])
            offset += blob_len
            comment_len = struct.unpack_from('> I', response, offset)[0]
            offset += 4
            comment = bytes(response[offset:offset + comment_len])
            offset += comment_len
            if offset > len(response):
                raise ProtocolError("truncated identities answer")
            yield key_blob, comment
    except struct.error as e:
        raise ProtocolError(f"truncated identities answer: {e}") from e


class AgentConnection:
    """A single connection to an agent's Unix socket."""

    def __init__(self, socket_path: str, timeout: Optional[float] = 10.0):
        self.socket_path = socket_path
        self.timeout = timeout
        self._sock: Optional[socket.socket] = None

    def connect(self) -> "AgentConnection":
        if not hasattr(socket, "AF_UNIX"):
            raise OSError("Unix sockets are not supported on this platform")
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(self.timeout)
        try:
            sock.connect(self.socket_path)
        except OSError:
            sock.close()
            raise
        self._sock = sock
        return self

    def close(self) -> None:
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def __enter__(self) -> "AgentConnection":
        if self._sock is None:
            self.connect()
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def request(self, msg: bytes) -> bytes:
        self._sock.sendall(msg)
        return self._recv_msg()

    def _recv_msg(self) -> bytes:
        msg_length = 4
        msg_buffer = bytearray()

        while len(msg_buffer) < msg_length:
            chunk = self._sock.recv(msg_length - len(msg_buffer))
            if not chunk:
                raise ProtocolError("agent closed the connection")
            msg_buffer.extend(chunk)

            if msg_length == 4 and len(msg_buffer) == 4:
                body_length = struct.unpack('> I', msg_buffer)[0]
                if body_length > MAX_MESSAGE_LENGTH:
                    raise ProtocolError(f"agent message too long ({body_length} bytes)")
                msg_length = 4 + body_length

        return bytes(msg_buffer)
