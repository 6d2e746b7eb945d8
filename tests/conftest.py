import socket
import struct
import threading
import time

import pytest

from client import BITFIELD, INTERESTED, PIECE, PROTOCOL, REQUEST, UNCHOKE, piece_count
from create_torrent import build_metainfo
from tracker import PeerAddress
from utils import Torrent, recv_all

PIECE_LENGTH = 32768
# Two full pieces, then a 20000 byte piece split into 16384 + 3616
FILE_LENGTH = 2 * PIECE_LENGTH + 20000
SEEDER_PEER_ID = b'-FK0001-123456789012'
CLIENT_PEER_ID = b'-PY0001-000000000001'


class FakeSeeder(threading.Thread):
    """Accepts one connection and serves blocks of `data` like a seeding peer."""

    def __init__(self, data, info_hash, piece_length, chunk_size=None, first_message=BITFIELD,
                 keepalive=False, reply_info_hash=None, corrupt_piece=None, shift_offset=False,
                 handshake_reply=None):
        super().__init__(daemon=True)
        self.data = data
        self.info_hash = info_hash
        self.piece_length = piece_length
        self.chunk_size = chunk_size
        self.first_message = first_message
        self.keepalive = keepalive
        self.reply_info_hash = reply_info_hash
        self.corrupt_piece = corrupt_piece
        self.shift_offset = shift_offset
        # Raw bytes sent instead of a valid handshake, then the connection is closed
        self.handshake_reply = handshake_reply

        self.received_handshake = None
        self.received_ids = []
        self.requests = []

        self.server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.server.bind(('127.0.0.1', 0))
        self.server.listen(1)
        self.server.settimeout(10)
        self.address = PeerAddress('127.0.0.1', self.server.getsockname()[1])

    def run(self):
        try:
            conn, _ = self.server.accept()
            with conn:
                self._serve(conn)
        except OSError:
            pass
        finally:
            self.server.close()

    def _send(self, conn, data):
        if not self.chunk_size:
            conn.sendall(data)
            return
        # Dribble the bytes out so the reader sees partial frames
        for i in range(0, len(data), self.chunk_size):
            conn.sendall(data[i:i + self.chunk_size])
            time.sleep(0.0005)

    def _message(self, conn, msg_id, payload=b''):
        self._send(conn, struct.pack('>IB', len(payload) + 1, msg_id) + payload)

    def _serve(self, conn):
        self.received_handshake = recv_all(conn, 68)
        if self.received_handshake is None:
            return
        if self.handshake_reply is not None:
            self._send(conn, self.handshake_reply)
            return
        self._send(conn, struct.pack('>B19s8x20s20s', 19, PROTOCOL,
                                     self.reply_info_hash or self.info_hash, SEEDER_PEER_ID))

        num_pieces = piece_count(len(self.data), self.piece_length)
        self._message(conn, self.first_message, b'\xff' * max(1, (num_pieces + 7) // 8))

        while True:
            header = recv_all(conn, 4)
            if header is None:
                return
            (length,) = struct.unpack('>I', header)
            body = recv_all(conn, length)
            if body is None:
                return
            msg_id = body[0]
            self.received_ids.append(msg_id)

            if msg_id == INTERESTED:
                if self.keepalive:
                    self._send(conn, struct.pack('>I', 0))
                self._message(conn, UNCHOKE)
            elif msg_id == REQUEST:
                idx, begin, block_length = struct.unpack('>III', body[1:])
                self.requests.append((idx, begin, block_length))
                start = idx * self.piece_length + begin
                block = self.data[start:start + block_length]
                if idx == self.corrupt_piece:
                    block = bytes(b ^ 0xff for b in block)
                if self.shift_offset:
                    begin += 1
                self._message(conn, PIECE, struct.pack('>II', idx, begin) + block)


@pytest.fixture
def file_data():
    return bytes((i * 7 + i // 251) % 256 for i in range(FILE_LENGTH))


@pytest.fixture
def metainfo(file_data):
    return build_metainfo(file_data, 'sample.bin', 'http://tracker.test/announce', PIECE_LENGTH)


@pytest.fixture
def torrent(metainfo):
    return Torrent(metainfo)


@pytest.fixture
def make_seeder(file_data, torrent):
    seeders = []

    def factory(**kwargs):
        seeder = FakeSeeder(file_data, torrent.info_hash, torrent.piece_length, **kwargs)
        seeder.start()
        seeders.append(seeder)
        return seeder

    yield factory
    for seeder in seeders:
        seeder.join(timeout=5)
