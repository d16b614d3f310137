"""Tests for the attribute value codec."""

import json

import pytest

from dynamostate.dynamo import (
    AttrBinary,
    AttrBinarySet,
    AttrBool,
    AttrList,
    AttrMap,
    AttrNull,
    AttrNumber,
    AttrNumberSet,
    AttrString,
    AttrStringSet,
    DecodeError,
    decode_item,
    decode_value,
    encode_item,
    encode_value,
)


class TestEncodeValue:
    """Tests for the wire form of each variant."""

    def test_string(self):
        """Test strings encode under S."""
        assert encode_value(AttrString("hi")) == {"S": "hi"}

    def test_number_is_decimal_string(self):
        """Test numbers encode as decimal strings."""
        assert encode_value(AttrNumber.of(42)) == {"N": "42"}
        assert encode_value(AttrNumber.of(1.5)) == {"N": "1.5"}

    def test_binary_is_base64(self):
        """Test binary encodes as base64 text."""
        assert encode_value(AttrBinary(b"\x00\xffdata")) == {"B": "AP9kYXRh"}

    def test_bool_and_null(self):
        """Test BOOL and NULL wire forms."""
        assert encode_value(AttrBool(False)) == {"BOOL": False}
        assert encode_value(AttrNull()) == {"NULL": True}

    def test_sets(self):
        """Test string, number and binary sets."""
        assert encode_value(AttrStringSet(["a", "b"])) == {"SS": ["a", "b"]}
        assert encode_value(AttrNumberSet(["1", "2.5"])) == {"NS": ["1", "2.5"]}
        assert encode_value(AttrBinarySet([b"x", b"y"])) == {"BS": ["eA==", "eQ=="]}

    @pytest.mark.parametrize("set_type", [AttrStringSet, AttrNumberSet, AttrBinarySet])
    def test_empty_set_rejected(self, set_type):
        """Test sets cannot be built empty."""
        with pytest.raises(ValueError):
            set_type([])

    def test_nested(self):
        """Test lists and maps encode recursively."""
        value = AttrMap({"list": AttrList([AttrString("a"), AttrNumber("1")])})

        assert encode_value(value) == {"M": {"list": {"L": [{"S": "a"}, {"N": "1"}]}}}

    def test_rejects_non_attribute(self):
        """Test plain Python values are not accepted."""
        with pytest.raises(TypeError):
            encode_value("plain string")


class TestRoundTrip:
    """Encoding then decoding gives back the original value."""

    @pytest.mark.parametrize(
        "value",
        [
            AttrString(""),
            AttrNumber("-12.50"),
            AttrBinary(b""),
            AttrBool(True),
            AttrNull(),
            AttrList([]),
            AttrMap({}),
            AttrStringSet(["x"]),
            AttrNumberSet(["3", "4"]),
            AttrBinarySet([b"\x01\x02"]),
            AttrMap(
                {
                    "nested": AttrList(
                        [
                            AttrMap({"flag": AttrBool(False), "none": AttrNull()}),
                            AttrBinarySet([b"a", b"b"]),
                            AttrList([AttrNumberSet(["1e3"])]),
                        ]
                    ),
                    "name": AttrString("deep"),
                }
            ),
        ],
    )
    def test_value_round_trip(self, value):
        """Test each variant survives encode then decode."""
        assert decode_value(encode_value(value)) == value

    def test_item_round_trip_through_json_text(self):
        """Test a whole item survives a trip through JSON text."""
        item = {
            "key": AttrString("app:settings"),
            "value": AttrString('{"theme": "dark"}'),
            "saveCount": AttrNumber("7"),
            "blob": AttrBinary(b"\x10\x20"),
        }

        assert decode_item(json.loads(json.dumps(encode_item(item)))) == item


class TestDecodeErrors:
    """Malformed input raises DecodeError."""

    @pytest.mark.parametrize(
        "data",
        [
            "S",
            {},
            {"S": "a", "N": "1"},
            {"X": "a"},
            {"S": 1},
            {"N": 1},
            {"N": "not-a-number"},
            {"N": ""},
            {"N": "Infinity"},
            {"N": "NaN"},
            {"NS": ["1", "x"]},
            {"NS": ["1", "-Infinity"]},
            {"NS": []},
            {"SS": []},
            {"BS": []},
            {"BOOL": "true"},
            {"NULL": False},
            {"B": "not base64!"},
            {"L": {}},
            {"M": []},
            {"SS": ["a", 1]},
            {"BS": "eA=="},
        ],
    )
    def test_rejects(self, data):
        """Test each malformed value raises DecodeError."""
        with pytest.raises(DecodeError):
            decode_value(data)

    def test_bad_number_nested_in_item(self):
        """Test a malformed number deep inside an item is caught."""
        with pytest.raises(DecodeError):
            decode_item({"m": {"M": {"l": {"L": [{"N": "12abc"}]}}}})

    def test_item_must_be_object(self):
        """Test items must be JSON objects."""
        with pytest.raises(DecodeError):
            decode_item([{"S": "a"}])


class TestNumber:
    """Tests for numeric helpers."""

    def test_decodes_valid_numbers(self):
        """Test valid decimal strings are kept as sent."""
        assert decode_value({"N": "-0.5e-3"}) == AttrNumber("-0.5e-3")
        assert decode_value({"NS": ["1", "2.25"]}) == AttrNumberSet(["1", "2.25"])

    def test_as_int(self):
        """Test integral numbers convert to int."""
        assert AttrNumber("12").as_int() == 12
        assert AttrNumber("12.0").as_int() == 12

    @pytest.mark.parametrize("text", ["1.5", "abc", "Infinity", "NaN"])
    def test_as_int_rejects(self, text):
        """Test non-integral numbers raise DecodeError."""
        with pytest.raises(DecodeError):
            AttrNumber(text).as_int()
