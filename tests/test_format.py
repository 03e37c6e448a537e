"""Tests for tclcloud.format: output mode selection and formatting."""

import json
from types import SimpleNamespace

from tclcloud.format import (
    format_error,
    format_json,
    format_success,
    format_table,
    get_output_mode,
)


class TestGetOutputMode:
    def test_json_mode(self):
        args = SimpleNamespace(json=True, verbose=False)
        assert get_output_mode(args) == "json"

    def test_verbose_mode(self):
        args = SimpleNamespace(json=False, verbose=True)
        assert get_output_mode(args) == "verbose"

    def test_terse_mode(self):
        args = SimpleNamespace(json=False, verbose=False)
        assert get_output_mode(args) == "terse"

    def test_missing_attributes_default_terse(self):
        assert get_output_mode(SimpleNamespace()) == "terse"


class TestFormatJson:
    def test_ok_envelope(self):
        parsed = json.loads(format_json(slug="m", uploaded=True))
        assert parsed == {"ok": True, "slug": "m", "uploaded": True}


class TestFormatSuccess:
    def test_terse_returns_plain(self):
        assert format_success("done") == "done"

    def test_json_returns_valid_json(self):
        parsed = json.loads(format_success("done", mode="json"))
        assert parsed == {"ok": True, "message": "done"}

    def test_verbose_returns_plain(self):
        assert format_success("done", mode="verbose") == "done"


class TestFormatTable:
    def test_columns_aligned(self):
        out = format_table([["a", "long-value"], ["bbb", "x"]], ["K", "V"])
        lines = out.splitlines()
        assert lines[0] == "K    V"
        assert lines[1] == "a    long-value"
        assert lines[2] == "bbb  x"


class TestFormatError:
    def test_prefix(self):
        assert format_error("not found") == "ERR: not found"
