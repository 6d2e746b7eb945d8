import hashlib
import os
import sys
from utils import encode_bencode

DEFAULT_PIECE_SIZE = 262144 # 256KB pieces


def build_metainfo(data, name, tracker_url, piece_size=DEFAULT_PIECE_SIZE):
    """Returns the metainfo dictionary describing `data` as a single file."""
    # 1. Hash every piece; the last one may be short
    pieces = b"".join(
        hashlib.sha1(data[i:i+piece_size]).digest() for i in range(0, len(data), piece_size)
    )

    # 2. Create the 'info' dictionary
    info = {
        b'name': name.encode('utf-8'),
        b'piece length': piece_size,
        b'pieces': pieces,
        b'length': len(data)
    }

    # 3. Create the root dictionary
    return {
        b'announce': tracker_url.encode('utf-8'),
        b'info': info
    }


def create_torrent_file(file_path, tracker_url, output_torrent_path, piece_size=DEFAULT_PIECE_SIZE):
    """Creates a .torrent file for the given file."""
    with open(file_path, 'rb') as f:
        data = f.read()

    meta = build_metainfo(data, os.path.basename(file_path), tracker_url, piece_size)
    with open(output_torrent_path, 'wb') as f:
        f.write(encode_bencode(meta))
    print(f"Wrote {output_torrent_path}: {len(data)} bytes in {len(meta[b'info'][b'pieces']) // 20} pieces, tracker {tracker_url}")
    return meta


if __name__ == "__main__":
    if len(sys.argv) != 3:
        print("Usage: python create_torrent.py <file> <announce_url>")
        sys.exit(1)
    source, announce_url = sys.argv[1:]
    if not os.path.isfile(source):
        print(f"No such file: {source}")
        sys.exit(1)
    create_torrent_file(source, announce_url, source + ".torrent")
