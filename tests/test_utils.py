"""Tests for shared helpers."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

from octopus_client.utils import format_iso_timestamp, same_name, scrub_api_keys


class TestSameName:
    def test_case_insensitive(self) -> None:
        assert same_name("Production", "PRODUCTION")

    def test_none_never_matches(self) -> None:
        assert not same_name(None, "Production")
        assert not same_name(None, None)


class TestFormatIsoTimestamp:
    def test_naive_is_utc(self) -> None:
        assert format_iso_timestamp(datetime(2026, 1, 5, 9, 30)) == "2026-01-05T09:30:00+00:00"

    def test_offset_kept(self) -> None:
        value = datetime(2026, 1, 5, 9, 30, tzinfo=timezone(timedelta(hours=10)))
        assert format_iso_timestamp(value) == "2026-01-05T09:30:00+10:00"

    def test_aware_utc(self) -> None:
        assert format_iso_timestamp(datetime(2026, 1, 5, tzinfo=UTC)).endswith("+00:00")


class TestScrubApiKeys:
    def test_key_redacted(self) -> None:
        assert scrub_api_keys("using API-ABCDEF123 for auth") == "using API-[REDACTED] for auth"

    def test_empty(self) -> None:
        assert scrub_api_keys("") == ""
