import orjson

from polystore.core.serialization import JsonSerializer


def test_json_serializer_serialize():
    serializer = JsonSerializer()
    data = {"tenant_id": "t1", "score": 7, "active": True}
    serialized_data = serializer.serialize(data)
    assert isinstance(serialized_data, bytes)
    assert orjson.loads(serialized_data) == data


def test_json_serializer_deserialize_accepts_str_and_bytes():
    serializer = JsonSerializer()
    assert serializer.deserialize(b'{"id": "a1"}') == {"id": "a1"}
    assert serializer.deserialize('{"id": "a1"}') == {"id": "a1"}


def test_json_serializer_sorts_sets():
    serializer = JsonSerializer()
    payload = serializer.serialize({"tags": {"b", "a"}, "kinds": frozenset({"x"})})
    assert orjson.loads(payload) == {"tags": ["a", "b"], "kinds": ["x"]}
