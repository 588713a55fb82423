"""Tests for request body validation."""

import pytest

from relay.errors import ErrorCode, ErrorKind, RelayError
from relay.validation import RequestContract, is_empty, validate_body

PROMPT = RequestContract(
    required=("prompt",),
    optional=("model",),
    types={"prompt": "string", "model": "string"},
)


class TestIsEmpty:
    @pytest.mark.parametrize("value", [None, "", "   ", [], {}, ()])
    def test_empty(self, value):
        assert is_empty(value)

    @pytest.mark.parametrize("value", [0, False, "x", [0], {"a": 1}, 0.0])
    def test_present(self, value):
        assert not is_empty(value)


class TestValidateBody:
    def test_well_formed_body_is_returned_exactly(self):
        assert validate_body({"prompt": "hello"}, PROMPT) == {"prompt": "hello"}

    def test_undeclared_fields_are_dropped(self):
        body = validate_body({"prompt": "hi", "model": "m", "admin": True}, PROMPT)
        assert body == {"prompt": "hi", "model": "m"}

    def test_result_is_a_new_dict(self):
        raw = {"prompt": "hi"}
        body = validate_body(raw, PROMPT)
        body["model"] = "changed"
        assert raw == {"prompt": "hi"}

    @pytest.mark.parametrize("raw", [{}, {"prompt": ""}, {"prompt": "  "}, {"prompt": None}, {"model": "m"}])
    def test_missing_required_field(self, raw):
        with pytest.raises(RelayError) as exc_info:
            validate_body(raw, PROMPT)
        err = exc_info.value
        assert err.kind is ErrorKind.VALIDATION
        assert err.code is ErrorCode.INPUT_REQUIRED
        assert err.detail == {"fields": ["prompt"]}
        assert "prompt" in err.message

    def test_all_missing_fields_reported(self):
        contract = RequestContract(required=("url", "token"))
        with pytest.raises(RelayError) as exc_info:
            validate_body({}, contract)
        assert exc_info.value.detail == {"fields": ["url", "token"]}
        assert exc_info.value.message == "Missing required fields: url, token"

    def test_zero_and_false_count_as_present(self):
        contract = RequestContract(required=("count", "flag"), types={"count": "number", "flag": "boolean"})
        assert validate_body({"count": 0, "flag": False}, contract) == {"count": 0, "flag": False}

    @pytest.mark.parametrize("raw", [[], "prompt", 3, None])
    def test_non_object_body(self, raw):
        with pytest.raises(RelayError) as exc_info:
            validate_body(raw, PROMPT)
        assert exc_info.value.kind is ErrorKind.VALIDATION

    def test_wrong_type(self):
        with pytest.raises(RelayError) as exc_info:
            validate_body({"prompt": 12}, PROMPT)
        assert exc_info.value.code is ErrorCode.INPUT_INVALID_FORMAT
        assert exc_info.value.detail == {"fields": ["prompt"]}

    def test_boolean_is_not_a_number(self):
        contract = RequestContract(required=("n",), types={"n": "number"})
        with pytest.raises(RelayError):
            validate_body({"n": True}, contract)

    def test_predicate_false(self):
        contract = RequestContract(required=("a",), predicate=lambda d: d["a"] == "ok")
        assert validate_body({"a": "ok"}, contract) == {"a": "ok"}
        with pytest.raises(RelayError) as exc_info:
            validate_body({"a": "nope"}, contract)
        assert exc_info.value.message == "Request data failed validation"

    def test_predicate_raising_is_a_validation_error(self):
        contract = RequestContract(optional=("a",), predicate=lambda d: d["a"] > 1)
        with pytest.raises(RelayError) as exc_info:
            validate_body({}, contract)
        assert exc_info.value.kind is ErrorKind.VALIDATION
