import struct
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "packages" / "core_engine" / "src"))

from mb_core.binding import EntityBinding, ModelBuilder, decode_record, encode_record, from_millis, to_millis
from mb_core.model import IdUid, PropertyFlags, PropertyType


def test_field_layout():
    data = encode_record([(3, PropertyType.INT, 7)])
    assert data == struct.pack("<HBi", 3, PropertyType.INT, 7)


def test_none_values_are_not_written():
    assert encode_record([(1, PropertyType.STRING, None)]) == b""


def test_mixed_record():
    fields = [
        (1, PropertyType.LONG, 2 ** 40),
        (2, PropertyType.STRING, "héllo"),
        (3, PropertyType.STRING_VECTOR, ["x", ""]),
        (4, PropertyType.BYTE_VECTOR, b"\xff"),
        (5, PropertyType.BOOL, True),
        (6, PropertyType.BYTE, -2),
        (7, PropertyType.DOUBLE, 0.25),
    ]
    assert decode_record(encode_record(fields)) == {
        1: 2 ** 40,
        2: "héllo",
        3: ["x", ""],
        4: b"\xff",
        5: True,
        6: -2,
        7: 0.25,
    }


def test_unknown_ids_are_still_decoded():
    data = encode_record([(40, PropertyType.SHORT, 9)])
    assert decode_record(data) == {40: 9}


def test_dates_are_utc_millis():
    value = datetime(2024, 2, 29, 12, 0, 0, 123000, tzinfo=timezone.utc)
    assert from_millis(to_millis(value)) == value
    assert to_millis(datetime(1970, 1, 1, 0, 0, 1)) == 1000
    assert decode_record(encode_record([(1, PropertyType.DATE, 1500)])) == {1: from_millis(1500)}


def test_truncated_record():
    data = encode_record([(1, PropertyType.STRING, "abcdef")])
    with pytest.raises(ValueError):
        decode_record(data[:-2])
    with pytest.raises(ValueError):
        decode_record(data[:2])


def test_unknown_type_code():
    with pytest.raises(ValueError):
        decode_record(struct.pack("<HB", 1, 99))
    with pytest.raises(ValueError):
        encode_record([(1, 99, 0)])


class TestModelBuilder:
    def test_registration_shape(self):
        builder = ModelBuilder()
        builder.entity("Task", IdUid(2, 20))
        builder.property("id", PropertyType.LONG, PropertyFlags.ID, IdUid(1, 21))
        builder.property("owner", PropertyType.RELATION, PropertyFlags.INDEXED, IdUid(2, 22))
        builder.property_relation("User", IdUid(1, 23))
        builder.relation("tags", IdUid(1, 24), IdUid(3, 30))
        builder.entity_last_property_id(IdUid(2, 22))
        assert builder.entities == [
            {
                "id": "2:20",
                "name": "Task",
                "lastPropertyId": "2:22",
                "properties": [
                    {"id": "1:21", "name": "id", "type": PropertyType.LONG, "flags": PropertyFlags.ID},
                    {
                        "id": "2:22",
                        "name": "owner",
                        "type": PropertyType.RELATION,
                        "flags": PropertyFlags.INDEXED,
                        "indexId": "1:23",
                        "relationTarget": "User",
                    },
                ],
                "relations": [{"id": "1:24", "name": "tags", "targetId": "3:30"}],
            }
        ]

    def test_members_need_an_entity(self):
        with pytest.raises(ValueError):
            ModelBuilder().property("id", PropertyType.LONG, PropertyFlags.ID, IdUid(1, 1))
        with pytest.raises(ValueError):
            ModelBuilder().property_index(IdUid(1, 1))


def test_base_binding_is_abstract():
    binding = EntityBinding()
    with pytest.raises(NotImplementedError):
        binding.flatten(object())
    with pytest.raises(NotImplementedError):
        binding.load(b"")
