"""Validation and typed extraction of multipart/form-data fields and files."""

from __future__ import annotations

import math
import re
from datetime import timedelta
from fractions import Fraction
from functools import cmp_to_key
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence, TypeVar

from formgate.errors import SentinelHttpError, wrap_error

_T = TypeVar("_T")

_BAD_REQUEST = 400
_INT64_MAX = 2**63 - 1
_INT64_MIN = -(2**63)

_TRUE_VALUES = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_VALUES = frozenset({"0", "f", "F", "FALSE", "false", "False"})

_INT_RE = re.compile(r"[+-]?[0-9]+")
_FLOAT_RE = re.compile(
    r"[+-]?(?:(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?|inf|infinity|nan)",
    re.IGNORECASE,
)
_HEX_FLOAT_RE = re.compile(
    r"[+-]?0[xX](?:[0-9a-fA-F]+\.?[0-9a-fA-F]*|\.[0-9a-fA-F]+)[pP][+-]?[0-9]+"
)

_DURATION_NUMBER_RE = re.compile(r"([0-9]*)(?:\.([0-9]*))?")
_DURATION_UNIT_RE = re.compile(r"[^0-9.]*")
_DURATION_UNITS = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,
    "μs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}

_INCH_FACTORS = (
    ("pt", 1.0 / 72.0),
    ("px", 1.0 / 96.0),
    ("in", 1.0),
    ("mm", 1.0 / 25.4),
    ("cm", 1.0 / 2.54),
    ("pc", 1.0 / 6.0),
)

_CHUNK_RE = re.compile(r"([0-9]+)")


def parse_bool(value: str) -> bool:
    """Parse the boolean spellings 1, t, T, TRUE, true, True and their false twins."""
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f'parsing "{value}": invalid syntax')


def _parse_int(value: str) -> int:
    if not _INT_RE.fullmatch(value):
        raise ValueError(f'parsing "{value}": invalid syntax')
    number = int(value)
    if not _INT64_MIN <= number <= _INT64_MAX:
        raise ValueError(f'parsing "{value}": value out of range')
    return number


def _parse_float(value: str) -> float:
    if _HEX_FLOAT_RE.fullmatch(value):
        try:
            result = float.fromhex(value)
        except OverflowError as exc:
            raise ValueError(f'parsing "{value}": value out of range') from exc
    elif _FLOAT_RE.fullmatch(value):
        result = float(value)
    else:
        raise ValueError(f'parsing "{value}": invalid syntax')
    if math.isinf(result) and "inf" not in value.lower():
        raise ValueError(f'parsing "{value}": value out of range')
    return result


def parse_duration(value: str) -> timedelta:
    """Parse a duration such as "300ms", "-1.5h" or "2h45m".

    Valid units are "ns", "us" (or "µs"), "ms", "s", "m" and "h".
    Sub-microsecond precision is truncated.
    """
    text = value
    negative = False
    if text and text[0] in "+-":
        negative = text[0] == "-"
        text = text[1:]
    if text == "0":
        return timedelta(0)
    if not text:
        raise ValueError(f'time: invalid duration "{value}"')

    total = Fraction(0)
    pos = 0
    while pos < len(text):
        number = _DURATION_NUMBER_RE.match(text, pos)
        whole, fraction = number.group(1), number.group(2)
        if not whole and not fraction:
            raise ValueError(f'time: invalid duration "{value}"')
        pos = number.end()
        unit = _DURATION_UNIT_RE.match(text, pos).group()
        if not unit:
            raise ValueError(f'time: missing unit in duration "{value}"')
        if unit not in _DURATION_UNITS:
            raise ValueError(f'time: unknown unit "{unit}" in duration "{value}"')
        pos += len(unit)
        amount = Fraction(int(whole or "0"))
        if fraction:
            amount += Fraction(int(fraction), 10 ** len(fraction))
        total += amount * _DURATION_UNITS[unit]

    nanoseconds = int(total)
    limit = -_INT64_MIN if negative else _INT64_MAX
    if nanoseconds > limit:
        raise ValueError(f'time: invalid duration "{value}"')
    result = timedelta(microseconds=nanoseconds // 1000)
    return -result if negative else result


def _compare_alphanumeric(left: str, right: str) -> int:
    left_chunks = [chunk for chunk in _CHUNK_RE.split(left) if chunk]
    right_chunks = [chunk for chunk in _CHUNK_RE.split(right) if chunk]
    for a, b in zip(left_chunks, right_chunks):
        if a == b:
            continue
        if _CHUNK_RE.fullmatch(a) and _CHUNK_RE.fullmatch(b):
            na, nb = int(a), int(b)
            if na != nb:
                return -1 if na < nb else 1
        return -1 if a < b else 1
    return (len(left_chunks) > len(right_chunks)) - (len(left_chunks) < len(right_chunks))


def alphanumeric_sorted(items: Iterable[str]) -> list[str]:
    """Sort strings so that embedded numbers compare by value ("a2" before "a10")."""
    return sorted(items, key=cmp_to_key(_compare_alphanumeric))


def _extension(name: str) -> str:
    base = name.rsplit("/", 1)[-1]
    dot = base.rfind(".")
    return base[dot:] if dot >= 0 else ""


def _to_inches(value: str) -> float:
    for unit, factor in _INCH_FACTORS:
        if value.endswith(unit):
            return _parse_float(value[: -len(unit)]) * factor
    return _parse_float(value)


def _identity(value: str) -> str:
    return value


class FormData:
    """Reads typed values out of form fields and files, collecting every problem.

    Each accessor returns its value; problems are gathered in ``errors`` and
    reported all at once by :meth:`validate`.
    """

    def __init__(
        self,
        values: Optional[Mapping[str, Sequence[str]]] = None,
        files: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.values: dict[str, Sequence[str]] = dict(values or {})
        self.files: dict[str, str] = dict(files or {})
        self.errors: list[Exception] = []

    def validate(self) -> None:
        """Raise a 400 error describing every collected problem, if any."""
        if not self.errors:
            return None
        combined = ValueError("; ".join(str(err) for err in self.errors))
        raise wrap_error(
            combined,
            SentinelHttpError(_BAD_REQUEST, f"Invalid form data: {combined}"),
        )

    def _fail(self, message: str, cause: Optional[BaseException] = None) -> None:
        err = ValueError(message)
        err.__cause__ = cause
        self.errors.append(err)

    def _invalid(self, key: str, value: str, cause: BaseException) -> None:
        self._fail(
            f"form field '{key}' is invalid (got '{value}', resulting to {cause})",
            cause,
        )

    def _raw(self, key: str) -> Optional[str]:
        found = self.values.get(key)
        if not found or found[0] == "":
            return None
        return found[0]

    def _assign(self, key: str, raw: str, parser: Callable[[str], _T], zero: _T) -> _T:
        try:
            return parser(raw)
        except ValueError as exc:
            self._invalid(key, raw, exc)
            return zero

    def _value(self, key: str, parser: Callable[[str], _T], default: _T, zero: _T) -> _T:
        raw = self._raw(key)
        if raw is None:
            return default
        return self._assign(key, raw, parser, zero)

    def _mandatory(self, key: str, parser: Callable[[str], _T], zero: _T) -> _T:
        raw = self._raw(key)
        if raw is None:
            self._fail(f"form field '{key}' is required")
            return zero
        return self._assign(key, raw, parser, zero)

    def string(self, key: str, default: str = "") -> str:
        """Return the field's value, or ``default`` if missing or empty."""
        return self._value(key, _identity, default, "")

    def mandatory_string(self, key: str) -> str:
        """Return the field's value; record an error if missing or empty."""
        return self._mandatory(key, _identity, "")

    def bool(self, key: str, default: bool = False) -> bool:
        """Return the field as a boolean, or ``default`` if missing or empty."""
        return self._value(key, parse_bool, default, False)

    def mandatory_bool(self, key: str) -> bool:
        """Return the field as a boolean; record an error if missing or empty."""
        return self._mandatory(key, parse_bool, False)

    def int(self, key: str, default: int = 0) -> int:
        """Return the field as an integer, or ``default`` if missing or empty."""
        return self._value(key, _parse_int, default, 0)

    def mandatory_int(self, key: str) -> int:
        """Return the field as an integer; record an error if missing or empty."""
        return self._mandatory(key, _parse_int, 0)

    def float(self, key: str, default: float = 0.0) -> float:
        """Return the field as a float, or ``default`` if missing or empty."""
        return self._value(key, _parse_float, default, 0.0)

    def mandatory_float(self, key: str) -> float:
        """Return the field as a float; record an error if missing or empty."""
        return self._mandatory(key, _parse_float, 0.0)

    def duration(self, key: str, default: timedelta = timedelta(0)) -> timedelta:
        """Return the field as a duration, or ``default`` if missing or empty."""
        return self._value(key, parse_duration, default, timedelta(0))

    def mandatory_duration(self, key: str) -> timedelta:
        """Return the field as a duration; record an error if missing or empty."""
        return self._mandatory(key, parse_duration, timedelta(0))

    def inches(self, key: str, default: float = 0.0) -> float:
        """Return a length (pt, px, in, mm, cm, pc, or bare inches) in inches."""
        return self._value(key, _to_inches, default, 0.0)

    def mandatory_inches(self, key: str) -> float:
        """Like :meth:`inches`, recording an error if missing or empty."""
        return self._mandatory(key, _to_inches, 0.0)

    def custom(self, key: str, assign: Callable[[str], Any]) -> Any:
        """Pass the field's value ("" if missing) to ``assign`` and return its result.

        An exception from ``assign`` is recorded and ``None`` is returned.
        """
        raw = self._raw(key) or ""
        try:
            return assign(raw)
        except Exception as exc:
            self._invalid(key, raw, exc)
            return None

    def mandatory_custom(self, key: str, assign: Callable[[str], Any]) -> Any:
        """Like :meth:`custom`, but a missing or empty field is an error."""
        raw = self._raw(key)
        if raw is None:
            self._fail(f"form field '{key}' is required")
            return None
        try:
            return assign(raw)
        except Exception as exc:
            self._invalid(key, raw, exc)
            return None

    def path(self, filename: str) -> Optional[str]:
        """Return the stored path of the named file, ignoring extension case."""
        for name, stored in self.files.items():
            ext = _extension(name)
            name_lower_ext = name[: len(name) - len(ext)] + ext.lower()
            if name == filename or name_lower_ext == filename:
                return stored
        return None

    def mandatory_path(self, filename: str) -> Optional[str]:
        """Like :meth:`path`, recording an error if the file is absent."""
        found = self.path(filename)
        if found is None:
            self._fail(f"form file '{filename}' is required")
        return found

    def _read(self, path: str, filename: str) -> str:
        try:
            return Path(path).read_bytes().decode("utf-8", errors="replace")
        except OSError as exc:
            self._fail(f"form file '{filename}' is invalid ({exc})", exc)
            return ""

    def content(self, filename: str, default: str = "") -> str:
        """Return the named file's content, or ``default`` if the file is absent."""
        found = self.path(filename)
        if found is None:
            return default
        return self._read(found, filename)

    def mandatory_content(self, filename: str) -> str:
        """Return the named file's content; record an error if it is absent."""
        found = self.mandatory_path(filename)
        if found is None:
            return ""
        return self._read(found, filename)

    def paths(self, extensions: Optional[Sequence[str]]) -> list[str]:
        """Return the paths of files with one of ``extensions``, naturally sorted."""
        wanted = list(extensions or ())
        matched = [
            stored
            for name, stored in self.files.items()
            for ext in wanted
            if _extension(name).lower() == ext
        ]
        return alphanumeric_sorted(matched)

    def mandatory_paths(self, extensions: Optional[Sequence[str]]) -> list[str]:
        """Like :meth:`paths`, recording an error if nothing matches."""
        found = self.paths(extensions)
        if not found:
            listed = " ".join(extensions or ())
            self._fail(f"no form file found for extensions: [{listed}]")
        return found