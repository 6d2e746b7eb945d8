import logging
import random
import socket
import struct
from dataclasses import dataclass

import requests

from utils import DecodeError, decode_bencode

logger = logging.getLogger(__name__)

PORT = 6881
TRACKER_TIMEOUT = 5  # seconds
PEER_ID_PREFIX = '-PY0001-'


class TrackerError(Exception):
    """Raised when the tracker cannot be reached or gives an unusable answer."""


@dataclass(frozen=True)
class PeerAddress:
    """IPv4 address and port of a peer."""

    ip: str
    port: int

    @classmethod
    def from_compact(cls, entry):
        """Parse a 6-byte compact entry: 4 bytes address, 2 bytes port, network order."""
        if len(entry) != 6:
            raise ValueError(f"Compact peer entry must be 6 bytes, got {len(entry)}")
        ip = socket.inet_ntoa(entry[:4])
        (port,) = struct.unpack('!H', entry[4:6])
        return cls(ip, port)

    def __str__(self):
        return f"{self.ip}:{self.port}"


def generate_peer_id():
    """20-byte peer id: client prefix followed by random digits."""
    suffix = ''.join(random.choice('0123456789') for _ in range(20 - len(PEER_ID_PREFIX)))
    return (PEER_ID_PREFIX + suffix).encode('ascii')


def parse_peers(peers):
    """Turn the tracker's 'peers' value into a list of PeerAddress."""
    if isinstance(peers, bytes):
        if len(peers) % 6 != 0:
            raise TrackerError(f"Compact peer list length {len(peers)} is not a multiple of 6")
        return [PeerAddress.from_compact(peers[i:i+6]) for i in range(0, len(peers), 6)]

    if isinstance(peers, list):
        # Non-compact form: a list of {ip, port, peer id} dictionaries
        result = []
        for p in peers:
            if not isinstance(p, dict) or not isinstance(p.get(b'ip'), bytes) or not isinstance(p.get(b'port'), int):
                raise TrackerError(f"Malformed peer entry: {p!r}")
            try:
                ip = p[b'ip'].decode('utf-8')
            except UnicodeDecodeError as e:
                raise TrackerError(f"Peer address is not valid UTF-8: {p[b'ip']!r}") from e
            result.append(PeerAddress(ip, p[b'port']))
        return result

    raise TrackerError(f"Unexpected 'peers' value of type {type(peers).__name__}")


def announce(announce_url, info_hash, peer_id, left, port=PORT, timeout=TRACKER_TIMEOUT):
    """Ask the tracker for peers and return them in the order it gave them."""
    params = {
        'info_hash': info_hash,
        'peer_id': peer_id,
        'port': port,
        'uploaded': 0,
        'downloaded': 0,
        'left': left,
        'compact': 1,
    }

    logger.info("[tracker] Announcing to %s", announce_url)
    try:
        res = requests.get(announce_url, params=params, timeout=timeout)
        res.raise_for_status()
    except requests.exceptions.RequestException as e:
        raise TrackerError(f"Tracker request failed: {e}") from e

    try:
        data = decode_bencode(res.content)
    except DecodeError as e:
        raise TrackerError(f"Malformed tracker response: {e}") from e
    if not isinstance(data, dict):
        raise TrackerError("Tracker response is not a dictionary")

    if b'failure reason' in data:
        reason = data[b'failure reason']
        if isinstance(reason, bytes):
            reason = reason.decode('utf-8', errors='replace')
        raise TrackerError(f"Tracker returned failure: {reason}")

    peers = parse_peers(data.get(b'peers', b''))
    logger.info("[tracker] Got %d peers", len(peers))
    return peers
