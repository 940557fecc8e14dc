#!/usr/bin/env python3
"""
PNG Chunk Utilities
Helpers for locating and decoding the PNG tIME (last modification time) chunk.
"""

import struct
from datetime import datetime
from typing import Optional

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


def is_png_data(data: bytes) -> bool:
    """Check whether the data starts with the PNG file signature."""
    return data[: len(PNG_SIGNATURE)] == PNG_SIGNATURE


def find_time_chunk(data: bytes) -> Optional[bytes]:
    """
    Find the tIME chunk in PNG data.

    Args:
        data: PNG file data

    Returns:
        The 7 payload bytes of the tIME chunk, or None if not present

    Raises:
        ValueError: If the data is not a well-formed PNG chunk stream
    """
    if not is_png_data(data):
        raise ValueError("Missing PNG signature")

    pos = len(PNG_SIGNATURE)
    while pos + 8 <= len(data):
        # Chunk structure: 4-byte length (big-endian) + type + data + 4-byte CRC
        chunk_length, chunk_type = struct.unpack(">L4s", data[pos : pos + 8])
        chunk_start = pos + 8
        chunk_end = chunk_start + chunk_length

        if chunk_end + 4 > len(data):
            raise ValueError(f"Truncated {chunk_type!r} chunk at offset {pos}")

        if chunk_type == b"tIME":
            return bytes(data[chunk_start:chunk_end])
        if chunk_type == b"IEND":
            return None

        pos = chunk_end + 4

    return None


def parse_png_time(chunk_data: bytes) -> Optional[datetime]:
    """
    Parse tIME chunk payload: year (2 bytes), month, day, hour, minute, second.

    The value is UTC; the returned datetime is naive.

    Args:
        chunk_data: Payload bytes of the tIME chunk

    Returns:
        Parsed datetime object or None if the payload is invalid
    """
    if len(chunk_data) != 7:
        return None

    year, month, day, hour, minute, second = struct.unpack(">HBBBBB", chunk_data)
    try:
        # Leap seconds (60) are allowed by the PNG standard
        return datetime(year, month, day, hour, minute, min(second, 59))
    except ValueError:
        return None
