"""
Unit tests for the line classifier/parser in lifecycle_to_trace.
"""

import pytest

from lifecycle_to_trace import (
    LineKind,
    LineParser,
    MalformedLineError,
    TimestampParseError,
    parse_timestamp,
    split_signature,
)

# 2023-10-09 13:43:52 UTC
BASE_SECONDS = 1696859032


class TestParseTimestamp:
    """Tests for date+time parsing."""

    def test_microseconds_since_epoch(self):
        assert parse_timestamp("2023-10-0913:43:52.695425") == BASE_SECONDS * 1_000_000 + 695425

    def test_short_fraction(self):
        assert parse_timestamp("2023-10-0913:43:52.5") == BASE_SECONDS * 1_000_000 + 500000

    def test_fraction_is_optional(self):
        assert parse_timestamp("2023-10-0913:43:52") == BASE_SECONDS * 1_000_000

    def test_epoch_is_zero(self):
        assert parse_timestamp("1970-01-0100:00:00.000001") == 1

    def test_garbage_raises(self):
        with pytest.raises(TimestampParseError) as exc_info:
            parse_timestamp("yesterday-noon", line_number=7)
        assert exc_info.value.line_number == 7
        assert "line 7" in str(exc_info.value)


class TestSplitSignature:
    """Tests for <func>_<file> splitting."""

    def test_splits_on_first_underscore_only(self):
        assert split_signature("defaultProfileName_/src/Strata_Tcam/ProfileSm.tin") == (
            "defaultProfileName", "/src/Strata_Tcam/ProfileSm.tin")

    def test_no_underscore(self):
        assert split_signature("nounderscore") is None


class TestLineParser:
    """Tests for LineParser.parse_line."""

    def setup_method(self):
        self.parser = LineParser()

    def test_constructor_line(self):
        line = ("2023-10-09 13:43:52.695442 40884 StrataTcamProfileSm  8 "
                "defaultProfileName_/src/StrataTcamSdkBaseTypes/ProfileSm.tin constructor")
        parsed = self.parser.parse_line(line, line_number=3)
        assert parsed.kind == LineKind.CONSTRUCTOR
        assert parsed.timestamp == BASE_SECONDS * 1_000_000 + 695442
        assert parsed.component == "StrataTcamProfileSm"
        assert parsed.level == "8"
        assert parsed.function_name == "defaultProfileName"
        assert parsed.file_name == "/src/StrataTcamSdkBaseTypes/ProfileSm.tin"
        assert parsed.info_payload == ""
        assert parsed.span_id is None
        assert parsed.children == []
        assert parsed.line_number == 3

    def test_destructor_line(self):
        parsed = self.parser.parse_line(
            "2023-10-09 13:43:52.695500 1 CompA 1 foo_file.tin destructor")
        assert parsed.kind == LineKind.DESTRUCTOR
        assert parsed.signature == "foo_file.tin"

    def test_trailing_newline_is_ignored(self):
        parsed = self.parser.parse_line(
            "2023-10-09 13:43:52.695500 1 CompA 1 foo_file.tin destructor\n")
        assert parsed.kind == LineKind.DESTRUCTOR

    def test_info_line(self):
        parsed = self.parser.parse_line(
            "2023-10-09 13:43:52.695425 40884 StrataTcamProfileSm  8 setting   profile   name")
        assert parsed.kind == LineKind.INFO
        assert parsed.info_payload == "setting profile name"
        assert parsed.level == "8"
        assert parsed.function_name == ""

    def test_info_line_without_text(self):
        parsed = self.parser.parse_line("2023-10-09 13:43:52.695425 1 CompA 2")
        assert parsed.kind == LineKind.INFO
        assert parsed.info_payload == ""

    def test_keyword_must_be_a_whole_field(self):
        parsed = self.parser.parse_line(
            "2023-10-09 13:43:52.695425 1 CompA 1 calling copyconstructor")
        assert parsed.kind == LineKind.INFO

    def test_too_few_fields(self):
        with pytest.raises(MalformedLineError) as exc_info:
            self.parser.parse_line("2023-10-09 13:43:52.695425 1 CompA", line_number=12)
        assert exc_info.value.line_number == 12
        assert exc_info.value.line == "2023-10-09 13:43:52.695425 1 CompA"

    def test_structural_line_without_signature(self):
        with pytest.raises(MalformedLineError):
            self.parser.parse_line("2023-10-09 13:43:52.695425 1 CompA 1 constructor")

    def test_signature_without_underscore(self):
        with pytest.raises(MalformedLineError):
            self.parser.parse_line("2023-10-09 13:43:52.695425 1 CompA 1 foo constructor")

    def test_bad_timestamp_is_not_zeroed(self):
        with pytest.raises(TimestampParseError):
            self.parser.parse_line("2023-13-45 13:43:52.695425 1 CompA 1 foo_f.tin constructor")

    def test_parsing_is_repeatable(self):
        line = "2023-10-09 13:43:52.695425 1 CompA 1 foo_file.tin constructor"
        assert self.parser.parse_line(line) == self.parser.parse_line(line)
        assert LineParser().parse_line(line) == self.parser.parse_line(line)
