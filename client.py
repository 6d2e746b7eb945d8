import enum
import hashlib
import logging
import socket
import struct
import sys

from tracker import PORT, TrackerError, announce, generate_peer_id
from utils import DecodeError, Torrent, recv_all

logger = logging.getLogger(__name__)

# Configuration
BLOCK_SIZE = 16 * 1024
PEER_TIMEOUT = 20  # seconds
MAX_MESSAGE_LENGTH = 1 << 21
PROTOCOL = b'BitTorrent protocol'
HANDSHAKE_LENGTH = 68

# Message ids
UNCHOKE = 1
INTERESTED = 2
HAVE = 4
BITFIELD = 5
REQUEST = 6
PIECE = 7


class ConnectError(ConnectionError):
    """The TCP connection to the peer could not be established."""


class ProtocolError(Exception):
    """The peer broke the wire protocol, or the session was used out of order."""


class IntegrityError(Exception):
    """A downloaded piece does not match its SHA1 hash."""


class SessionState(enum.Enum):
    CONNECTED = 'connected'
    HANDSHAKE_DONE = 'handshake done'
    BITFIELD_RECEIVED = 'bitfield received'
    INTERESTED_SENT = 'interested sent'
    UNCHOKED = 'unchoked'
    CLOSED = 'closed'


# (state, awaited message id) -> next state
_AWAIT_TRANSITIONS = {
    (SessionState.HANDSHAKE_DONE, BITFIELD): SessionState.BITFIELD_RECEIVED,
    (SessionState.INTERESTED_SENT, UNCHOKE): SessionState.UNCHOKED,
}


def piece_count(length, piece_length):
    return (length + piece_length - 1) // piece_length


def piece_size(index, length, piece_length):
    """Byte length of piece `index`; only the last one may be shorter."""
    count = piece_count(length, piece_length)
    if not 0 <= index < count:
        raise IndexError(f"Piece index {index} out of range 0..{count - 1}")
    if index == count - 1:
        remainder = length % piece_length
        if remainder > 0:
            return remainder
    return piece_length


def block_plan(size, block_size=BLOCK_SIZE):
    """List of (offset, length) requests covering a piece of `size` bytes."""
    count = (size + block_size - 1) // block_size
    plan = []
    for i in range(count):
        block_length = block_size
        if i == count - 1:
            block_length = size - (count - 1) * block_size
        plan.append((i * block_size, block_length))
    return plan


class PeerSession:
    """One blocking connection to one peer, driven through a fixed sequence:
    handshake, bitfield, interested, unchoke, then block requests.

    Every protocol violation closes the session; there is no way back to an
    earlier state.
    """

    def __init__(self, address, info_hash, peer_id, timeout=PEER_TIMEOUT):
        self.address = address
        self.info_hash = info_hash
        self.peer_id = peer_id
        self.remote_peer_id = None
        try:
            self.sock = socket.create_connection((address.ip, address.port), timeout=timeout)
        except OSError as e:
            raise ConnectError(f"Failed to connect to peer {address}: {e}") from e
        self.state = SessionState.CONNECTED
        logger.info("[peer %s] Connected", address)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self):
        if self.state is not SessionState.CLOSED:
            self.sock.close()
            self.state = SessionState.CLOSED
            logger.debug("[peer %s] Closed connection", self.address)

    def _violation(self, message):
        self.close()
        return ProtocolError(f"[peer {self.address}] {message}")

    def _require(self, state, operation):
        if self.state is not state:
            raise self._violation(f"Cannot {operation} in state '{self.state.value}'")

    def _recv(self, n):
        data = recv_all(self.sock, n)
        if data is None:
            self.close()
            raise ConnectionError(f"[peer {self.address}] Connection closed while reading {n} bytes")
        return data

    def handshake(self):
        """Exchange handshakes and return the remote peer id."""
        self._require(SessionState.CONNECTED, 'handshake')
        msg = struct.pack('>B19s8x20s20s', len(PROTOCOL), PROTOCOL, self.info_hash, self.peer_id)
        self.sock.sendall(msg)

        response = recv_all(self.sock, HANDSHAKE_LENGTH)
        if response is None:
            raise self._violation("Handshake reply truncated")
        pstrlen, pstr, info_hash, peer_id = struct.unpack('>B19s8x20s20s', response)
        if pstrlen != len(PROTOCOL) or pstr != PROTOCOL:
            raise self._violation(f"Unexpected protocol in handshake: {response[:20]!r}")
        if info_hash != self.info_hash:
            raise self._violation("Info hash mismatch in handshake")

        self.remote_peer_id = peer_id
        self.state = SessionState.HANDSHAKE_DONE
        logger.info("[peer %s] Handshake complete, peer id %s", self.address, peer_id.hex())
        return peer_id

    def send_message(self, msg_id, payload=b''):
        self.sock.sendall(struct.pack('>IB', len(payload) + 1, msg_id) + payload)

    def read_message(self):
        """Read one length-prefixed message and return (message_id, payload)."""
        while True:
            (length,) = struct.unpack('>I', self._recv(4))
            if length == 0:
                logger.debug("[peer %s] keep-alive", self.address)
                continue
            if length > MAX_MESSAGE_LENGTH:
                raise self._violation(f"Message of {length} bytes exceeds limit")
            body = self._recv(length)
            logger.debug("[peer %s] Received message id %d (%d bytes)", self.address, body[0], length)
            return body[0], body[1:]

    def await_message(self, expected_id):
        """Read the next message, which must have type `expected_id`."""
        next_state = _AWAIT_TRANSITIONS.get((self.state, expected_id))
        if next_state is None:
            raise self._violation(f"Cannot wait for message id {expected_id} in state '{self.state.value}'")
        msg_id, payload = self.read_message()
        if msg_id != expected_id:
            raise self._violation(f"Wanted message id {expected_id}, got {msg_id}")
        self.state = next_state
        return payload

    def send_interested(self):
        self._require(SessionState.BITFIELD_RECEIVED, 'send interested')
        self.send_message(INTERESTED)
        self.state = SessionState.INTERESTED_SENT
        logger.debug("[peer %s] Sent interested", self.address)

    def request_block(self, piece_index, offset, length):
        """Request one block and return its bytes."""
        self._require(SessionState.UNCHOKED, 'request a block')
        self.sock.sendall(struct.pack('>IBIII', 13, REQUEST, piece_index, offset, length))

        msg_id, payload = self.read_message()
        if msg_id != PIECE:
            raise self._violation(f"Wanted piece message, got id {msg_id}")
        if len(payload) < 8:
            raise self._violation("Piece message too short")
        index, begin = struct.unpack('>II', payload[:8])
        if (index, begin) != (piece_index, offset):
            raise self._violation(
                f"Piece message for {index}@{begin} does not match request {piece_index}@{offset}"
            )
        block = payload[8:]
        if len(block) != length:
            raise self._violation(f"Block length {len(block)} does not match requested {length}")
        return block


class Client:
    def __init__(self, torrent, peer_id=None, port=PORT, timeout=PEER_TIMEOUT, verify=True):
        self.torrent = torrent
        self.info_hash = torrent.info_hash
        self.peer_id = peer_id or generate_peer_id()
        self.port = port
        self.timeout = timeout
        self.verify = verify

    def get_peers(self):
        return announce(
            self.torrent.announce, self.info_hash, self.peer_id, self.torrent.length, port=self.port
        )

    def download_piece(self, session, piece_index):
        size = piece_size(piece_index, self.torrent.length, self.torrent.piece_length)
        data = bytearray()
        for offset, length in block_plan(size):
            data += session.request_block(piece_index, offset, length)

        if self.verify:
            if piece_index >= self.torrent.num_pieces:
                raise IntegrityError(f"No hash for piece #{piece_index}")
            if hashlib.sha1(data).digest() != self.torrent.piece_hashes[piece_index]:
                raise IntegrityError(f"Hash mismatch for piece #{piece_index}")
        return bytes(data)

    def fetch(self):
        """Download every piece from the first peer the tracker reports."""
        peers = self.get_peers()
        if not peers:
            raise TrackerError("Tracker returned no peers")
        address = peers[0]

        count = piece_count(self.torrent.length, self.torrent.piece_length)
        data = bytearray()
        with PeerSession(address, self.info_hash, self.peer_id, timeout=self.timeout) as session:
            session.handshake()
            session.await_message(BITFIELD)
            session.send_interested()
            session.await_message(UNCHOKE)

            for piece_index in range(count):
                data += self.download_piece(session, piece_index)
                logger.info("[peer %s] Downloaded piece #%d | Progress: %d/%d",
                            address, piece_index, piece_index + 1, count)
        return bytes(data)

    def download(self, output_path):
        data = self.fetch()
        with open(output_path, 'wb') as f:
            f.write(data)
        logger.info("Download complete. File saved as %s (%d bytes)", output_path, len(data))


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    verbose = '-v' in argv
    args = [a for a in argv if a != '-v']
    if len(args) != 2:
        print("Usage: python client.py <torrent_file> <output_file> [-v]")
        return 1

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    torrent_file, output_file = args
    try:
        client = Client(Torrent.from_file(torrent_file))
        client.download(output_file)
    except (DecodeError, TrackerError, ProtocolError, IntegrityError, OSError) as e:
        logger.error("failed to download a file: %s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
