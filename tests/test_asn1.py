import pytest

from picokeys.asn1 import (
    Tlv,
    asn1_len_tag,
    find_tag,
    format_tlv_len,
    get_uint,
    walk_tlv,
)


def test_format_short_length():
    assert format_tlv_len(5) == b"\x05"
    assert format_tlv_len(127) == b"\x7f"


def test_format_one_byte_long_form():
    assert format_tlv_len(128) == b"\x81\x80"
    assert format_tlv_len(255) == b"\x81\xff"


def test_format_two_byte_long_form():
    assert format_tlv_len(0x1234) == b"\x82\x12\x34"
    assert format_tlv_len(256) == b"\x82\x01\x00"


@pytest.mark.parametrize("bad", [-1, 0x10000])
def test_format_rejects_out_of_range(bad):
    with pytest.raises(ValueError):
        format_tlv_len(bad)


@pytest.mark.parametrize("length", [0, 1, 127, 128, 255, 256, 1000])
def test_len_tag_matches_encoding_one_byte_tag(length):
    encoded = bytes([0x87]) + format_tlv_len(length) + bytes(length)
    assert asn1_len_tag(0x87, length) == len(encoded)


@pytest.mark.parametrize("length", [0, 200, 300])
def test_len_tag_matches_encoding_two_byte_tag(length):
    encoded = b"\x7f\x49" + format_tlv_len(length) + bytes(length)
    assert asn1_len_tag(0x7F49, length) == len(encoded)


def test_walk_simple_sequence():
    data = b"\x87\x02\x01\x02\x99\x02\x90\x00"
    elements = list(walk_tlv(data))
    assert [e.tag for e in elements] == [0x87, 0x99]
    assert elements[0].value == b"\x01\x02"
    assert elements[1].value == b"\x90\x00"
    assert elements[0] == Tlv(tag=0x87, length=2, value=b"\x01\x02", offset=0, end=4)
    assert elements[1].offset == 4
    assert elements[1].end == len(data)


def test_walk_two_byte_tag():
    elements = list(walk_tlv(b"\x7f\x49\x01\xaa"))
    assert len(elements) == 1
    assert elements[0].tag == 0x7F49
    assert elements[0].value == b"\xaa"


def test_walk_long_lengths_round_trip():
    value_a = bytes(range(200))
    value_b = bytes(300)
    data = (
        b"\x85" + format_tlv_len(len(value_a)) + value_a
        + b"\x86" + format_tlv_len(len(value_b)) + value_b
    )
    elements = list(walk_tlv(data))
    assert [(e.tag, e.length, e.value) for e in elements] == [
        (0x85, 200, value_a),
        (0x86, 300, value_b),
    ]


def test_walk_empty_yields_nothing():
    assert list(walk_tlv(b"")) == []


def test_walk_truncated_header_raises():
    with pytest.raises(ValueError):
        list(walk_tlv(b"\x87"))


def test_walk_truncated_value_keeps_declared_length():
    elements = list(walk_tlv(b"\x87\x05\x01\x02"))
    assert elements[0].length == 5
    assert elements[0].value == b"\x01\x02"


def test_find_tag_present_and_missing():
    data = b"\x87\x02\x01\x02\x99\x02\x90\x00"
    assert find_tag(data, 0x99) == b"\x90\x00"
    assert find_tag(data, 0x8E) is None


def test_find_tag_returns_first_match():
    data = b"\x80\x01\x0a\x80\x01\x0b"
    assert find_tag(data, 0x80) == b"\x0a"


def test_get_uint_short_and_long():
    assert get_uint(b"\x01\x02") == 0x0102
    assert get_uint(b"\x01\x02\x03\x04\x05") == 0x01020304
    assert get_uint(b"\xff") == 0xFF


def test_get_uint_empty_raises():
    with pytest.raises(ValueError):
        get_uint(b"")