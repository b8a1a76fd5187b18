"""Tests for wildcard URL/path matching."""

from __future__ import annotations

import pytest

from screen_cam.patterns import MATCH_ALL, matches, matches_any


@pytest.mark.parametrize(
    ("pattern", "candidate"),
    [
        ("*", "https://example.com/"),
        ("https://example.com/*", "https://example.com/a/b?c=1"),
        ("*://*.example.com/*", "https://app.example.com/dashboard"),
        ("/var/log/app-?.log", "/var/log/app-1.log"),
        ("https://example.com/", "https://example.com/"),
    ],
)
def test_matching_patterns(pattern: str, candidate: str) -> None:
    assert matches(pattern, candidate)


@pytest.mark.parametrize(
    ("pattern", "candidate"),
    [
        ("https://example.com/*", "https://other.com/"),
        ("/var/log/app-?.log", "/var/log/app-12.log"),
        ("https://Example.com/*", "https://example.com/"),
        ("https://example.com", "https://example.com/extra"),
        ("a.c", "abc"),
    ],
)
def test_non_matching_patterns(pattern: str, candidate: str) -> None:
    assert not matches(pattern, candidate)


def test_missing_candidates_never_match() -> None:
    assert not matches(MATCH_ALL, None)
    assert not matches(MATCH_ALL, "")
    assert not matches("", "https://example.com/")


def test_matches_any_checks_each_candidate() -> None:
    pattern = "https://old.example.com/*"
    assert matches_any(pattern, "https://new.example.com/", "https://old.example.com/page")
    assert not matches_any(pattern, "https://new.example.com/", None)
