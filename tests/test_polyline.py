import pytest

from data_sources.error_handling import MalformedGeometryError
from matching.polyline import decode_polyline, encode_polyline

REFERENCE = "_p~iF~ps|U_ulLnnqC_mqNvxq`@"
REFERENCE_POINTS = [(38.5, -120.2), (40.7, -120.95), (43.252, -126.453)]


def test_decode_reference_vector():
    assert decode_polyline("_p~iF~ps|U") == [(38.5, -120.2)]
    assert decode_polyline(REFERENCE) == REFERENCE_POINTS


def test_encode_reference_vector():
    assert encode_polyline(REFERENCE_POINTS) == REFERENCE


def test_empty_polyline_decodes_to_no_points():
    assert decode_polyline("") == []


@pytest.mark.parametrize("encoded", ["_p~iF", "_p~iF~ps|", "_p~iF ~ps|U"])
def test_malformed_polyline_raises(encoded):
    with pytest.raises(MalformedGeometryError):
        decode_polyline(encoded)
