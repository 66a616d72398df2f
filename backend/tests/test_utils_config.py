# backend/tests/test_utils_config.py

import pytest

from dental_notify.utils.config import (
    EnvVarInvalidError,
    EnvVarMissingError,
    get_env,
    get_env_bool,
    get_env_float,
    get_env_int,
)


def test_get_env_raises_for_missing_required(monkeypatch) -> None:
    monkeypatch.delenv("DENTAL_TEST_MISSING", raising=False)

    with pytest.raises(EnvVarMissingError) as exc_info:
        get_env("DENTAL_TEST_MISSING")

    assert exc_info.value.name == "DENTAL_TEST_MISSING"


def test_get_env_treats_empty_string_as_missing(monkeypatch) -> None:
    monkeypatch.setenv("DENTAL_TEST_EMPTY", "")

    assert get_env("DENTAL_TEST_EMPTY", default="fallback", required=False) == "fallback"


@pytest.mark.parametrize(
    "raw, expected",
    [("true", True), ("1", True), ("YES", True), ("on", True), ("false", False), ("0", False), ("off", False)],
)
def test_get_env_bool_accepts_common_spellings(monkeypatch, raw, expected) -> None:
    monkeypatch.setenv("DENTAL_TEST_BOOL", raw)

    assert get_env_bool("DENTAL_TEST_BOOL") is expected


def test_get_env_bool_rejects_unknown_value(monkeypatch) -> None:
    monkeypatch.setenv("DENTAL_TEST_BOOL", "maybe")

    with pytest.raises(EnvVarInvalidError):
        get_env_bool("DENTAL_TEST_BOOL")


def test_numeric_helpers_use_default_and_validate(monkeypatch) -> None:
    monkeypatch.delenv("DENTAL_TEST_INT", raising=False)
    assert get_env_int("DENTAL_TEST_INT", default=3) == 3

    monkeypatch.setenv("DENTAL_TEST_FLOAT", "2.5")
    assert get_env_float("DENTAL_TEST_FLOAT", default=1.0) == 2.5

    monkeypatch.setenv("DENTAL_TEST_INT", "three")
    with pytest.raises(EnvVarInvalidError):
        get_env_int("DENTAL_TEST_INT", default=3)
