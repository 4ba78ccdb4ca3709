#!/usr/bin/env python3
"""Tests for selector, time and duration parsing."""
import pytest

from obslytics.errors import QueryTranslationError
from obslytics.query import matches_empty, parse_duration, parse_selector, parse_time
from obslytics.series import Matcher, MatchType, format_matchers


def test_selector_with_metric_name_and_labels():
    matchers = parse_selector('http_requests_total{job="api", code!="500", path=~"/v1/.*"}')
    assert matchers == [
        Matcher("__name__", MatchType.EQ, "http_requests_total"),
        Matcher("job", MatchType.EQ, "api"),
        Matcher("code", MatchType.NEQ, "500"),
        Matcher("path", MatchType.RE, "/v1/.*"),
    ]


def test_selector_labels_only():
    assert parse_selector("{env!~'dev|test', team='core'}") == [
        Matcher("env", MatchType.NRE, "dev|test"),
        Matcher("team", MatchType.EQ, "core"),
    ]


def test_selector_escapes_and_trailing_comma():
    matchers = parse_selector(r'{msg="say \"hi\"\n",}')
    assert matchers == [Matcher("msg", MatchType.EQ, 'say "hi"\n')]


def test_selector_roundtrips_through_format():
    text = 'up{job="api", instance=~"10.*"}'
    matchers = parse_selector(text)
    assert parse_selector(format_matchers(matchers)) == matchers


@pytest.mark.parametrize("text", [
    "",
    "up{job=api}",
    "up{job=\"api\"",
    "{job=\"api\" env=\"x\"}",
    "up job",
])
def test_malformed_selectors(text):
    with pytest.raises(QueryTranslationError):
        parse_selector(text)


def test_invalid_regex():
    with pytest.raises(QueryTranslationError, match="regular expression"):
        parse_selector('{job=~"api("}')


def test_selector_matching_everything_rejected():
    with pytest.raises(QueryTranslationError, match="empty string"):
        parse_selector('{job=~".*"}')
    with pytest.raises(QueryTranslationError):
        parse_selector('{job=""}')


def test_matches_empty():
    assert matches_empty(Matcher("a", MatchType.EQ, ""))
    assert not matches_empty(Matcher("a", MatchType.EQ, "x"))
    assert matches_empty(Matcher("a", MatchType.NEQ, "x"))
    assert matches_empty(Matcher("a", MatchType.RE, "x?"))
    assert not matches_empty(Matcher("a", MatchType.NRE, ".*"))


def test_parse_time():
    assert parse_time("1700000000") == 1_700_000_000_000
    assert parse_time("1700000000.5") == 1_700_000_000_500
    assert parse_time("2023-11-14T22:13:20Z") == 1_700_000_000_000
    assert parse_time("2023-11-14T23:13:20+01:00") == 1_700_000_000_000
    # no offset means UTC
    assert parse_time("2023-11-14T22:13:20") == 1_700_000_000_000


def test_parse_time_rejects_garbage():
    with pytest.raises(ValueError):
        parse_time("yesterday")


def test_parse_duration():
    assert parse_duration("5m") == 300_000
    assert parse_duration("1h30m") == 5_400_000
    assert parse_duration("500ms") == 500
    assert parse_duration("1d") == 86_400_000
    assert parse_duration("2w") == 14 * 86_400_000
    assert parse_duration("1y") == 365 * 86_400_000


@pytest.mark.parametrize("text", ["", "0s", "5", "1m1h", "-5m", "5 minutes"])
def test_parse_duration_rejects(text):
    with pytest.raises(ValueError):
        parse_duration(text)


@pytest.mark.parametrize("text", ["inf", "-inf", "nan"])
def test_parse_time_rejects_non_finite(text):
    with pytest.raises(ValueError):
        parse_time(text)
