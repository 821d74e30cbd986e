import math
from datetime import timedelta

import pytest

from modelmesh_adapter.envconfig import (
    EnvConfigError,
    get_env_bool,
    get_env_duration,
    get_env_float,
    get_env_int,
    get_env_int32,
    get_env_string,
    parse_duration,
)


def test_string_missing_returns_default():
    assert get_env_string("KEY", "fallback", {}) == "fallback"


def test_string_empty_value_is_kept():
    assert get_env_string("KEY", "fallback", {"KEY": ""}) == ""


def test_string_reads_process_environment(monkeypatch):
    monkeypatch.setenv("MODELMESH_ADAPTER_TEST_KEY", "value")
    assert get_env_string("MODELMESH_ADAPTER_TEST_KEY", "fallback") == "value"


def test_int_missing_returns_default():
    assert get_env_int("PORT", 8085, {}) == 8085


@pytest.mark.parametrize("text,expected", [("42", 42), ("-7", -7), ("+3", 3)])
def test_int_valid(text, expected):
    assert get_env_int("PORT", 0, {"PORT": text}) == expected


@pytest.mark.parametrize(
    "text", ["", "abc", " 42", "42 ", "4_2", "1.5", "9223372036854775808"]
)
def test_int_invalid(text):
    with pytest.raises(EnvConfigError) as info:
        get_env_int("PORT", 0, {"PORT": text})
    assert info.value.key == "PORT"
    assert info.value.value == text


def test_int64_bounds_accepted():
    assert get_env_int("N", 0, {"N": "9223372036854775807"}) == 9223372036854775807
    assert get_env_int("N", 0, {"N": "-9223372036854775808"}) == -9223372036854775808


def test_int32_bounds():
    assert get_env_int32("N", 0, {"N": "2147483647"}) == 2147483647
    assert get_env_int32("N", 0, {"N": "-2147483648"}) == -2147483648
    with pytest.raises(EnvConfigError):
        get_env_int32("N", 0, {"N": "2147483648"})


def test_float_valid_and_default():
    assert get_env_float("M", 1.25, {}) == 1.25
    assert get_env_float("M", 0.0, {"M": "1.35"}) == 1.35
    assert get_env_float("M", 0.0, {"M": "inf"}) == math.inf
    assert math.isnan(get_env_float("M", 0.0, {"M": "nan"}))


@pytest.mark.parametrize("text", ["", "abc", " 1.0", "1_0", "1e400", "+nan"])
def test_float_invalid(text):
    with pytest.raises(EnvConfigError):
        get_env_float("M", 0.0, {"M": text})


@pytest.mark.parametrize("text", ["1", "t", "T", "TRUE", "true", "True"])
def test_bool_true_words(text):
    assert get_env_bool("B", False, {"B": text}) is True


@pytest.mark.parametrize("text", ["0", "f", "F", "FALSE", "false", "False"])
def test_bool_false_words(text):
    assert get_env_bool("B", True, {"B": text}) is False


@pytest.mark.parametrize("text", ["", "yes", "tRuE", "2"])
def test_bool_invalid(text):
    with pytest.raises(EnvConfigError):
        get_env_bool("B", False, {"B": text})


def test_bool_missing_returns_default():
    assert get_env_bool("B", True, {}) is True


def test_parse_duration_units():
    assert parse_duration("100ms") == timedelta(milliseconds=100)
    assert parse_duration("3s") == timedelta(seconds=3)
    assert parse_duration("1h30m") == timedelta(hours=1, minutes=30)
    assert parse_duration("0") == timedelta(0)


def test_parse_duration_equivalences():
    assert parse_duration("90m") == parse_duration("1h30m")
    assert parse_duration("1000us") == parse_duration("1ms")
    assert parse_duration("1000\u00b5s") == parse_duration("1ms")
    assert parse_duration("1000000ns") == parse_duration("1ms")
    assert parse_duration("1.5s") == parse_duration("1500ms")
    assert parse_duration("-1.5s") == -parse_duration("1.5s")
    assert parse_duration("+2m") == parse_duration("120s")


@pytest.mark.parametrize("text", ["", "5", "1x", ".s", "1 s", "-", "s", "9999999999h"])
def test_parse_duration_invalid(text):
    with pytest.raises(ValueError):
        parse_duration(text)


def test_env_duration():
    default = timedelta(seconds=30)
    assert get_env_duration("T", default, {}) == default
    assert get_env_duration("T", default, {"T": "250ms"}) == parse_duration("250ms")
    with pytest.raises(EnvConfigError):
        get_env_duration("T", default, {"T": "soon"})