"""Tests for the payload field scanner."""

import pytest

from dispatch_consensus.consensus.payload import (
    ITERATION,
    LAMBDA,
    MISMATCH,
    FieldSpec,
    extract_field,
    extract_source,
    extract_update,
    format_number,
    format_update_payload,
    get_iteration,
    get_lambda,
    get_mismatch,
)


class TestExtractField:
    """Tests for extract_field."""

    def test_reads_lambda(self):
        result = extract_field("Org=Org2, Lambda=4.9055, Mismatch=0, end", LAMBDA)
        assert result.found
        assert result.value == pytest.approx(4.9055)

    def test_reads_negative_mismatch(self):
        result = extract_field("Lambda=1,Mismatch=-0.5, end", MISMATCH)
        assert result.value == pytest.approx(-0.5)

    def test_mismatch_requires_end_terminator(self):
        """Mismatch followed by a plain comma is not a match."""
        result = extract_field("Lambda=1, Mismatch=-0.5, Iteration=3", MISMATCH)
        assert not result.found
        assert result.reason

    def test_skips_unterminated_occurrence(self):
        """An occurrence without its terminator is passed over for a later one."""
        payload = "Lambda=7x Lambda=2.5, Mismatch=0, end"
        assert extract_field(payload, LAMBDA).value == pytest.approx(2.5)

    def test_first_terminated_occurrence_wins(self):
        payload = "Lambda=1.5, Lambda=9.0, Mismatch=0, end"
        assert extract_field(payload, LAMBDA).value == pytest.approx(1.5)

    def test_missing_field(self):
        result = extract_field("Mismatch=0.2, end", LAMBDA)
        assert not result.found
        assert result.value is None
        assert result.value_or() == 0.0
        assert result.value_or(-1.0) == -1.0

    def test_empty_value(self):
        assert not extract_field("Lambda=, Mismatch=0, end", LAMBDA).found

    @pytest.mark.parametrize("text", ["1.2.3", "-", "--4", "4-"])
    def test_malformed_number(self, text):
        result = extract_field(f"Lambda={text}, Mismatch=0, end", LAMBDA)
        assert not result.found
        assert "malformed" in result.reason

    def test_value_at_end_of_payload(self):
        assert not extract_field("Lambda=3.0", LAMBDA).found

    @pytest.mark.parametrize("payload", ["", "garbage", "=,=,", "Lambda", "Lambda=,", "\x00\xff"])
    def test_never_raises(self, payload):
        for spec in (LAMBDA, MISMATCH, ITERATION):
            extract_field(payload, spec)

    def test_non_string_payload(self):
        result = extract_field(None, LAMBDA)
        assert not result.found

    def test_custom_field(self):
        spec = FieldSpec("Demand", ";")
        assert extract_field("Demand=12.5;", spec).value == pytest.approx(12.5)


class TestConvenienceGetters:
    """Tests for get_lambda / get_mismatch / get_iteration."""

    def test_missing_lambda_returns_fallback(self):
        assert get_lambda("Org=Org2, Mismatch=0.3, end") == 0.0

    def test_missing_mismatch_returns_fallback(self):
        assert get_mismatch("Org=Org2, Lambda=0.3, end") == 0.0

    def test_values(self):
        payload = "Org=Org2, Iteration=12, Lambda=3.2, Mismatch=-0.01, end"
        assert get_lambda(payload) == pytest.approx(3.2)
        assert get_mismatch(payload) == pytest.approx(-0.01)
        assert get_iteration(payload) == 12.0


class TestExtractUpdate:
    """Tests for extract_update."""

    def test_complete_update(self):
        update = extract_update("Org=Org2, Iteration=4, Lambda=1.6, Mismatch=0, end")
        assert update.price == pytest.approx(1.6)
        assert update.mismatch == 0.0
        assert update.iteration == 4
        assert update.source == "Org2"
        assert update.complete

    def test_missing_lambda_is_reported(self):
        update = extract_update("Org=Org2, Mismatch=0.25, end")
        assert update.price == 0.0
        assert update.mismatch == pytest.approx(0.25)
        assert update.missing == ("Lambda",)
        assert not update.complete

    def test_missing_both(self):
        update = extract_update("heartbeat")
        assert update.missing == ("Lambda", "Mismatch")
        assert update.source is None
        assert update.iteration is None


class TestExtractSource:

    def test_source(self):
        assert extract_source("Org=Org3, Lambda=1, Mismatch=0, end") == "Org3"

    def test_no_source(self):
        assert extract_source("Lambda=1, Mismatch=0, end") is None


class TestFormatting:
    """Tests for outgoing payload formatting."""

    @pytest.mark.parametrize(
        "price,mismatch",
        [
            (0.0, 0.0),
            (0.8, -0.5),
            (4.905512345678901, 1e-05),
            (123456.789, -0.000123),
            (1e-12, -3.5e-9),
            (2.5e16, -7.25),
        ],
    )
    def test_round_trip(self, price, mismatch):
        payload = format_update_payload("Org1", price, mismatch, iteration=3)
        update = extract_update(payload)
        assert update.complete
        assert update.price == pytest.approx(price, abs=1e-9)
        assert update.mismatch == pytest.approx(mismatch, abs=1e-9)

    def test_payload_layout(self):
        payload = format_update_payload("Org1", 0.8, -0.5, iteration=2)
        assert payload == "Org=Org1, Iteration=2, Lambda=0.8, Mismatch=-0.5, end"

    def test_payload_without_iteration(self):
        assert format_update_payload("Org1", 1.0, 0.0) == "Org=Org1, Lambda=1.0, Mismatch=0.0, end"

    def test_format_number_avoids_exponent(self):
        assert format_number(1e-05) == "0.00001"
        assert format_number(-2.5e-7) == "-0.00000025"
        assert "e" not in format_number(3e20)

    @pytest.mark.parametrize("value", [float("nan"), float("inf"), float("-inf")])
    def test_format_number_rejects_non_finite(self, value):
        with pytest.raises(ValueError):
            format_number(value)
