"""decoder for the `.dat` image container the messaging client stores pictures in.

the container is an ordinary image file with every byte XORed against the same
one-byte key. the key isn't stored anywhere, but it falls out of comparing the first
bytes of the file against the magic numbers of the formats the client saves.
"""

from __future__ import annotations

from typing import Final

from ChatlogAccess.errors import DecodeError

# ordered so that the longest (most specific) headers are tried first
IMAGE_HEADERS: Final = (
    ("png", bytes.fromhex("89504e47")),
    ("gif", bytes.fromhex("47494638")),
    ("tif", bytes.fromhex("49492a00")),
    ("webp", bytes.fromhex("52494646")),
    ("jpg", bytes.fromhex("ffd8ff")),
    ("bmp", bytes.fromhex("424d")),
)

# newer client versions wrap part of the image in AES with a per-install key, which
# we have no way of knowing here
VERSIONED_PREFIXES: Final = (
    bytes.fromhex("07085631" "0807"),
    bytes.fromhex("07085632" "0807"),
)


def find_key(data: bytes) -> tuple[int, str]:
    """returns the XOR key and the image extension for a container, or raises
    DecodeError if the data doesn't look like any known image once un-XORed."""
    if not data:
        raise DecodeError("empty container")
    if any(data.startswith(prefix) for prefix in VERSIONED_PREFIXES):
        raise DecodeError("encrypted container versions are not supported")
    for extension, header in IMAGE_HEADERS:
        if len(data) < len(header):
            continue
        key = data[0] ^ header[0]
        if all(data[i] ^ key == header[i] for i in range(1, len(header))):
            return key, extension
    raise DecodeError("unrecognized container")


def xor(data: bytes, key: int) -> bytes:
    return data.translate(bytes(i ^ key for i in range(256)))


class Dat2Image:
    """container decoder for `ChatlogAccess.MediaGateway.MediaGateway`."""

    def decode(self, data: bytes) -> tuple[bytes, str]:
        key, extension = find_key(data)
        return xor(data, key), extension
