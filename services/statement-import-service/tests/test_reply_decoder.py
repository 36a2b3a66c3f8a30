from types import SimpleNamespace

import pytest

from errors import ReplyDecodeError
from reply_decoder import completion_content, decode_json_array, strip_code_fence


@pytest.mark.parametrize(
    "content, expected",
    [
        ('```json\n[{"index": 0}]\n```', '[{"index": 0}]'),
        ("```\n[]\n```", "[]"),
        ('  [{"index": 0}]  ', '[{"index": 0}]'),
    ],
)
def test_strip_code_fence(content, expected):
    assert strip_code_fence(content) == expected


def test_decode_json_array_accepts_fenced_reply():
    content = '```json\n[{"index": 0, "category": "Food"}]\n```'
    assert decode_json_array(content) == [{"index": 0, "category": "Food"}]


def test_decode_json_array_unwraps_single_array_envelope():
    assert decode_json_array('{"rows": [1, 2]}') == [1, 2]


@pytest.mark.parametrize(
    "content",
    [
        "",
        "   ",
        "not json at all",
        '{"category": "Food"}',
        '{"a": [], "b": []}',
        '"just a string"',
        None,
        42,
    ],
)
def test_decode_json_array_rejects_non_arrays(content):
    with pytest.raises(ReplyDecodeError):
        decode_json_array(content)


def test_reply_decode_error_is_a_value_error():
    with pytest.raises(ValueError):
        decode_json_array("{broken")


def test_completion_content_reads_first_choice():
    response = SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content="[]"))])

    assert completion_content(response) == "[]"
    with pytest.raises(ReplyDecodeError):
        completion_content(SimpleNamespace(choices=[]))
