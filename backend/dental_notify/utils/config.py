# backend/dental_notify/utils/config.py

"""
環境変数読み取り用のユーティリティ。
LINE / SMTP / Twilio / 通知コアの各設定モジュールから共通利用する。
"""

import os
from typing import Optional


class EnvVarMissingError(RuntimeError):
    """必須環境変数が設定されていない場合に投げる例外。"""

    def __init__(self, name: str) -> None:
        super().__init__(f"Required environment variable '{name}' is not set.")
        self.name = name


class EnvVarInvalidError(RuntimeError):
    """環境変数の値が期待する型として解釈できない場合に投げる例外。"""

    def __init__(self, name: str, raw: str, expected: str) -> None:
        super().__init__(f"Invalid {expected} value for env var {name}: {raw!r}")
        self.name = name
        self.raw = raw


def get_env(
    name: str,
    default: Optional[str] = None,
    *,
    required: bool = True,
) -> str:
    """
    環境変数を取得するヘルパー。

    :param name: 環境変数名
    :param default: デフォルト値（required=False の場合のみ使用）
    :param required: True の場合、未設定なら例外を投げる
    :return: 文字列値
    """
    value = os.getenv(name)

    if value is None or value == "":
        if required:
            raise EnvVarMissingError(name)
        return default

    return value


def get_env_int(name: str, default: int) -> int:
    """
    整数値の環境変数を取得するヘルパー。

    未設定なら default、不正な値なら EnvVarInvalidError。
    """
    raw = get_env(name, required=False)
    if raw is None:
        return default

    try:
        return int(raw)
    except ValueError as exc:
        raise EnvVarInvalidError(name, raw, "integer") from exc


def get_env_float(name: str, default: float) -> float:
    """
    小数値の環境変数を取得するヘルパー。
    """
    raw = get_env(name, required=False)
    if raw is None:
        return default

    try:
        return float(raw)
    except ValueError as exc:
        raise EnvVarInvalidError(name, raw, "float") from exc


_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def get_env_bool(name: str, default: bool = False) -> bool:
    """
    真偽値の環境変数を取得するヘルパー。

    "true" / "1" / "yes" / "on" を True、"false" / "0" / "no" / "off" を False とみなす。
    """
    raw = get_env(name, required=False)
    if raw is None:
        return default

    normalized = raw.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise EnvVarInvalidError(name, raw, "boolean")
