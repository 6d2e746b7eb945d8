import hashlib
import io
import re

INT_MIN = -(2 ** 63)
INT_MAX = 2 ** 63 - 1

_INT_RE = re.compile(rb"-?(0|[1-9][0-9]*)")
# Lists and dictionaries nested deeper than this are rejected
MAX_DEPTH = 256


class DecodeError(ValueError):
    """Raised for malformed bencoded data or metainfo."""


# Bencode Encoder
def encode_bencode(data):
    """Encodes a Python object into a bencoded string."""
    if isinstance(data, bool):
        raise TypeError("Cannot bencode type: bool")
    if isinstance(data, int):
        if not INT_MIN <= data <= INT_MAX:
            raise ValueError(f"Integer out of range: {data}")
        return f"i{data}e".encode('latin1')
    elif isinstance(data, (bytes, bytearray)):
        return f"{len(data)}:".encode('latin1') + bytes(data)
    elif isinstance(data, str):
        return encode_bencode(data.encode('utf-8'))
    elif isinstance(data, (list, tuple)):
        return b"l" + b"".join(encode_bencode(item) for item in data) + b"e"
    elif isinstance(data, dict):
        # Keys must be bytes and sorted as raw bytes, not by insertion order
        normalized = {}
        for k, v in data.items():
            if isinstance(k, str):
                k = k.encode('utf-8')
            elif not isinstance(k, (bytes, bytearray)):
                raise TypeError(f"Cannot bencode dict key of type: {type(k)}")
            k = bytes(k)
            if k in normalized:
                raise ValueError(f"Duplicate dictionary key after encoding: {k!r}")
            normalized[k] = v
        items = sorted(normalized.items(), key=lambda kv: kv[0])
        encoded_items = b"".join(encode_bencode(k) + encode_bencode(v) for k, v in items)
        return b"d" + encoded_items + b"e"
    raise TypeError(f"Cannot bencode type: {type(data)}")


# Bencode Decoder
def _read_until(stream, delimiter):
    """Read up to and including delimiter, returning the bytes before it."""
    buf = b''
    while True:
        char = stream.read(1)
        if not char:
            raise DecodeError(f"Unexpected end of data, expected {delimiter!r}")
        if char == delimiter:
            return buf
        buf += char


def _decode_int(stream):
    raw = _read_until(stream, b'e')
    if not _INT_RE.fullmatch(raw) or raw == b'-0':
        raise DecodeError(f"Invalid integer: {raw!r}")
    value = int(raw)
    if not INT_MIN <= value <= INT_MAX:
        raise DecodeError(f"Integer out of range: {raw!r}")
    return value


def _decode_string(stream):
    raw = _read_until(stream, b':')
    if not raw.isdigit():
        raise DecodeError(f"Invalid string length: {raw!r}")
    length = int(raw)
    data = stream.read(length)
    if len(data) != length:
        raise DecodeError(f"String truncated: expected {length} bytes, got {len(data)}")
    return data


def _at_end(stream):
    """Consume the terminator if it is next, else push the byte back."""
    char = stream.read(1)
    if not char:
        raise DecodeError("Unexpected end of data inside a list or dictionary")
    if char == b'e':
        return True
    stream.seek(-1, io.SEEK_CUR)
    return False


def _decode_list(stream, depth):
    lst = []
    while not _at_end(stream):
        lst.append(_decode_value(stream, depth))
    return lst


def _decode_dict(stream, depth):
    d = {}
    while not _at_end(stream):
        key = _decode_value(stream, depth)
        if not isinstance(key, bytes):
            raise DecodeError(f"Dictionary key must be a byte string, got {type(key).__name__}")
        if key in d:
            raise DecodeError(f"Duplicate dictionary key: {key!r}")
        d[key] = _decode_value(stream, depth)
    return d


def _decode_value(stream, depth=0):
    char = stream.read(1)
    if not char:
        raise DecodeError("Unexpected end of data")
    if char.isdigit():
        stream.seek(-1, io.SEEK_CUR)
        return _decode_string(stream)
    elif char == b'i':
        return _decode_int(stream)
    elif char in (b'l', b'd'):
        if depth >= MAX_DEPTH:
            raise DecodeError(f"Nesting deeper than {MAX_DEPTH} levels")
        if char == b'l':
            return _decode_list(stream, depth + 1)
        return _decode_dict(stream, depth + 1)
    raise DecodeError("unrecognized format")


def decode_bencode(data):
    """Decodes a bencoded string and returns the Python object."""
    if isinstance(data, str):
        data = data.encode('latin1')
    stream = io.BytesIO(data)
    res = _decode_value(stream)
    if stream.tell() != len(data):
        raise DecodeError(f"Trailing data after offset {stream.tell()}")
    return res


# Torrent File Parser
def _field(d, key, kind, where):
    value = d.get(key)
    if not isinstance(value, kind):
        raise DecodeError(f"Missing or invalid {key.decode()!r} in {where}")
    return value


class Torrent:
    """Read-only view of a single-file metainfo dictionary."""

    def __init__(self, meta):
        if not isinstance(meta, dict):
            raise DecodeError("Metainfo must be a dictionary")
        info = _field(meta, b'info', dict, 'metainfo')
        announce = _field(meta, b'announce', bytes, 'metainfo')
        name = _field(info, b'name', bytes, 'info')
        length = _field(info, b'length', int, 'info')
        piece_length = _field(info, b'piece length', int, 'info')
        pieces = _field(info, b'pieces', bytes, 'info')

        if length < 0:
            raise DecodeError(f"Invalid length: {length}")
        if piece_length <= 0:
            raise DecodeError(f"Invalid piece length: {piece_length}")
        if len(pieces) % 20 != 0:
            raise DecodeError("Invalid 'pieces' field (not divisible by 20)")

        try:
            announce = announce.decode('utf-8')
        except UnicodeDecodeError as e:
            raise DecodeError(f"Announce URL is not valid UTF-8: {e}") from e

        set_ = object.__setattr__
        set_(self, 'announce', announce)
        set_(self, 'name', name.decode('utf-8', errors='replace'))
        set_(self, 'length', length)
        set_(self, 'piece_length', piece_length)
        set_(self, 'pieces', pieces)
        # Info Hash is the SHA1 of the canonically bencoded info dictionary
        set_(self, 'info_hash', hashlib.sha1(encode_bencode(info)).digest())
        # Split pieces blob into 20-byte SHA1 hashes
        set_(self, 'piece_hashes', [pieces[i:i+20] for i in range(0, len(pieces), 20)])
        set_(self, 'num_pieces', len(self.piece_hashes))

    def __setattr__(self, name, value):
        raise AttributeError(f"Torrent is read-only, cannot set {name!r}")

    @classmethod
    def from_bytes(cls, data):
        return cls(decode_bencode(data))

    @classmethod
    def from_file(cls, filename):
        with open(filename, 'rb') as f:
            return cls.from_bytes(f.read())

    def __repr__(self):
        # Tolerates an instance whose construction failed part-way
        fields = ('name', 'length', 'piece_length', 'num_pieces')
        return "Torrent(" + ", ".join(f"{f}={getattr(self, f, None)!r}" for f in fields) + ")"


# Networking Helper
def recv_all(sock, n):
    """Helper to ensure we get exactly n bytes from TCP stream"""
    data = b''
    while len(data) < n:
        packet = sock.recv(n - len(data))
        if not packet: return None
        data += packet
    return data
