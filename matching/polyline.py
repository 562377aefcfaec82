"""
Encoded polyline codec (precision 1e5), the format Strava uses for activity maps.
"""

from typing import Iterable, List, Tuple

from data_sources.error_handling import MalformedGeometryError

PRECISION = 5


def _decode_value(encoded: str, index: int) -> Tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if index >= len(encoded):
            raise MalformedGeometryError("polyline ends in the middle of a value")
        byte = ord(encoded[index]) - 63
        index += 1
        if byte < 0 or byte > 63:
            raise MalformedGeometryError(f"invalid polyline character {encoded[index - 1]!r}")
        result |= (byte & 0x1F) << shift
        shift += 5
        if byte < 0x20:
            break
    delta = ~(result >> 1) if result & 1 else result >> 1
    return delta, index


def decode_polyline(encoded: str, precision: int = PRECISION) -> List[Tuple[float, float]]:
    """
    Decode an encoded polyline into (lat, lon) points.

    Raises:
        MalformedGeometryError: for truncated input or characters outside the encoding
    """
    factor = 10 ** precision
    points = []
    index = lat = lon = 0

    while index < len(encoded):
        d_lat, index = _decode_value(encoded, index)
        d_lon, index = _decode_value(encoded, index)
        lat += d_lat
        lon += d_lon
        points.append((lat / factor, lon / factor))

    return points


def _encode_value(value: int) -> str:
    value = ~(value << 1) if value < 0 else value << 1
    chunks = []
    while value >= 0x20:
        chunks.append(chr((0x20 | (value & 0x1F)) + 63))
        value >>= 5
    chunks.append(chr(value + 63))
    return "".join(chunks)


def encode_polyline(points: Iterable[Tuple[float, float]], precision: int = PRECISION) -> str:
    """Encode (lat, lon) points as a polyline string."""
    factor = 10 ** precision
    output = []
    prev_lat = prev_lon = 0

    for lat, lon in points:
        lat_i = int(round(lat * factor))
        lon_i = int(round(lon * factor))
        output.append(_encode_value(lat_i - prev_lat))
        output.append(_encode_value(lon_i - prev_lon))
        prev_lat, prev_lon = lat_i, lon_i

    return "".join(output)
