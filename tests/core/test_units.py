"""Tests for resource string parsing."""

from __future__ import annotations

import pytest

from supamanager.core.errors import ValidationError
from supamanager.core.units import parse_cpus, parse_size


class TestParseSize:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("2GB", 2 * 1024**3),
            ("2GiB", 2 * 1024**3),
            ("512MiB", 512 * 1024**2),
            ("1.5 kb", 1536),
            ("100", 100),
            (42, 42),
        ],
    )
    def test_binary_units(self, raw, expected):
        assert parse_size(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "   "])
    def test_empty_is_none(self, raw):
        assert parse_size(raw) is None

    @pytest.mark.parametrize("raw", ["lots", "2XB", "-1GB"])
    def test_invalid(self, raw):
        with pytest.raises(ValidationError):
            parse_size(raw)


class TestParseCpus:
    def test_decimal(self):
        assert parse_cpus("1.5") == 1.5

    def test_millicores(self):
        assert parse_cpus("500m") == 0.5

    def test_zero_rejected(self):
        with pytest.raises(ValidationError):
            parse_cpus("0")

    def test_garbage_rejected(self):
        with pytest.raises(ValidationError):
            parse_cpus("fast")
