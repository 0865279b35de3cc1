import json
from datetime import timedelta

import pytest

from formgate.errors import SentinelWrappedError
from formgate.formdata import FormData, alphanumeric_sorted, parse_bool, parse_duration

SAMPLE_TEXT = "This is a text from a text file."
FOO = {"foo": [""]}


def _form(value=None):
    if value is None:
        return FormData()
    return FormData(values={"foo": [value]})


def test_validate_with_errors():
    form = FormData()
    form.mandatory_string("foo")
    with pytest.raises(SentinelWrappedError) as info:
        form.validate()
    assert info.value.http_error() == (400, "Invalid form data: form field 'foo' is required")


def test_validate_joins_errors():
    form = FormData()
    form.mandatory_string("foo")
    form.mandatory_int("bar")
    with pytest.raises(SentinelWrappedError) as info:
        form.validate()
    assert str(info.value) == "form field 'foo' is required; form field 'bar' is required"


def test_validate_success():
    form = FormData(values={"foo": ["foo"]})
    assert form.mandatory_string("foo") == "foo"
    assert form.validate() is None
    assert form.errors == []


@pytest.mark.parametrize(
    "value, default, expect",
    [(None, "", ""), (None, "foo", "foo"), ("", "", ""), ("foo", "", "foo")],
)
def test_string(value, default, expect):
    form = _form(value)
    assert form.string("foo", default) == expect
    assert form.errors == []


@pytest.mark.parametrize(
    "value, expect, expect_error",
    [(None, "", True), ("", "", True), ("foo", "foo", False)],
)
def test_mandatory_string(value, expect, expect_error):
    form = _form(value)
    assert form.mandatory_string("foo") == expect
    assert bool(form.errors) is expect_error


@pytest.mark.parametrize(
    "value, default, expect, expect_error",
    [
        (None, False, False, False),
        (None, True, True, False),
        ("", False, False, False),
        ("foo", False, False, True),
        ("true", False, True, False),
    ],
)
def test_bool(value, default, expect, expect_error):
    form = _form(value)
    assert form.bool("foo", default) is expect
    assert bool(form.errors) is expect_error


@pytest.mark.parametrize(
    "value, expect, expect_error",
    [(None, False, True), ("", False, True), ("foo", False, True), ("true", True, False)],
)
def test_mandatory_bool(value, expect, expect_error):
    form = _form(value)
    assert form.mandatory_bool("foo") is expect
    assert bool(form.errors) is expect_error


@pytest.mark.parametrize(
    "value, default, expect, expect_error",
    [
        (None, 0, 0, False),
        (None, 2, 2, False),
        ("", 0, 0, False),
        ("foo", 0, 0, True),
        ("3", 0, 3, False),
    ],
)
def test_int(value, default, expect, expect_error):
    form = _form(value)
    assert form.int("foo", default) == expect
    assert bool(form.errors) is expect_error


@pytest.mark.parametrize(
    "value, expect, expect_error",
    [(None, 0, True), ("", 0, True), ("foo", 0, True), ("2", 2, False)],
)
def test_mandatory_int(value, expect, expect_error):
    form = _form(value)
    assert form.mandatory_int("foo") == expect
    assert bool(form.errors) is expect_error


def test_int_error_message():
    form = _form("foo")
    form.int("foo", 0)
    assert str(form.errors[0]).startswith("form field 'foo' is invalid (got 'foo', resulting to ")


@pytest.mark.parametrize(
    "value, default, expect, expect_error",
    [
        (None, 0.0, 0.0, False),
        (None, 2.5, 2.5, False),
        ("", 0.0, 0.0, False),
        ("foo", 0.0, 0.0, True),
        ("3.5", 0.0, 3.5, False),
    ],
)
def test_float(value, default, expect, expect_error):
    form = _form(value)
    assert form.float("foo", default) == expect
    assert bool(form.errors) is expect_error


@pytest.mark.parametrize(
    "value, expect, expect_error",
    [(None, 0.0, True), ("", 0.0, True), ("foo", 0.0, True), ("2.5", 2.5, False)],
)
def test_mandatory_float(value, expect, expect_error):
    form = _form(value)
    assert form.mandatory_float("foo") == expect
    assert bool(form.errors) is expect_error


@pytest.mark.parametrize(
    "value, default, expect, expect_error",
    [
        (None, timedelta(0), timedelta(0), False),
        (None, timedelta(seconds=1), timedelta(seconds=1), False),
        ("", timedelta(0), timedelta(0), False),
        ("foo", timedelta(0), timedelta(0), True),
        ("1s", timedelta(0), timedelta(seconds=1), False),
    ],
)
def test_duration(value, default, expect, expect_error):
    form = _form(value)
    assert form.duration("foo", default) == expect
    assert bool(form.errors) is expect_error


@pytest.mark.parametrize(
    "value, expect, expect_error",
    [
        (None, timedelta(0), True),
        ("", timedelta(0), True),
        ("foo", timedelta(0), True),
        ("1s", timedelta(seconds=1), False),
    ],
)
def test_mandatory_duration(value, expect, expect_error):
    form = _form(value)
    assert form.mandatory_duration("foo") == expect
    assert bool(form.errors) is expect_error


@pytest.mark.parametrize(
    "value, default, expect, expect_error",
    [
        (None, 0.0, 0.0, False),
        (None, 2.5, 2.5, False),
        ("", 0.0, 0.0, False),
        ("foomm", 0.0, 0.0, True),
        ("foo", 0.0, 0.0, True),
        ("72pt", 0.0, 1.0, False),
        ("96px", 0.0, 1.0, False),
        ("1in", 0.0, 1.0, False),
        ("25.4mm", 0.0, 1.0, False),
        ("2.54cm", 0.0, 1.0, False),
        ("6pc", 0.0, 1.0, False),
        ("100", 0.0, 100.0, False),
    ],
)
def test_inches(value, default, expect, expect_error):
    form = _form(value)
    assert f"{form.inches('foo', default):.1f}" == f"{expect:.1f}"
    assert bool(form.errors) is expect_error


@pytest.mark.parametrize(
    "value, expect, expect_error",
    [
        (None, 0.0, True),
        ("", 0.0, True),
        ("foomm", 0.0, True),
        ("foo", 0.0, True),
        ("72pt", 1.0, False),
        ("96px", 1.0, False),
        ("1in", 1.0, False),
        ("25.4mm", 1.0, False),
        ("2.54cm", 1.0, False),
        ("6pc", 1.0, False),
        ("100", 100.0, False),
    ],
)
def test_mandatory_inches(value, expect, expect_error):
    form = _form(value)
    assert f"{form.mandatory_inches('foo'):.1f}" == f"{expect:.1f}"
    assert bool(form.errors) is expect_error


def _json_or(default):
    def assign(value):
        if value == "":
            return default
        return json.loads(value)

    return assign


@pytest.mark.parametrize(
    "value, default, expect, expect_error",
    [
        (None, None, None, False),
        (None, {"foo": "foo"}, {"foo": "foo"}, False),
        ("", None, None, False),
        ("foo", None, None, True),
        ('{ "foo": "foo" }', None, {"foo": "foo"}, False),
    ],
)
def test_custom(value, default, expect, expect_error):
    form = _form(value)
    assert form.custom("foo", _json_or(default)) == expect
    assert bool(form.errors) is expect_error


@pytest.mark.parametrize(
    "value, expect, expect_error",
    [
        (None, None, True),
        ("", None, True),
        ("foo", None, True),
        ('{ "foo": "foo" }', {"foo": "foo"}, False),
    ],
)
def test_mandatory_custom(value, expect, expect_error):
    form = _form(value)
    assert form.mandatory_custom("foo", json.loads) == expect
    assert bool(form.errors) is expect_error


@pytest.mark.parametrize(
    "files, expect",
    [({}, None), ({"bar": "/bar"}, None), ({"foo": "/foo"}, "/foo")],
)
def test_path(files, expect):
    form = FormData(files=files)
    assert form.path("foo") == expect
    assert form.errors == []


@pytest.mark.parametrize(
    "files, expect, expect_error",
    [({}, None, True), ({"bar": "/bar"}, None, True), ({"foo": "/foo"}, "/foo", False)],
)
def test_mandatory_path(files, expect, expect_error):
    form = FormData(files=files)
    assert form.mandatory_path("foo") == expect
    assert bool(form.errors) is expect_error


@pytest.fixture
def locations(tmp_path):
    sample = tmp_path / "sample.txt"
    sample.write_text(SAMPLE_TEXT, encoding="utf-8")
    return {"sample": str(sample), "missing": str(tmp_path / "foo"), "bar": "/bar"}


def _resolve(files, locations):
    return {name: locations[where] for name, where in files.items()}


@pytest.mark.parametrize(
    "files, filename, default, expect, expect_error",
    [
        ({}, "", "", "", False),
        ({"bar": "bar"}, "foo", "", "", False),
        ({"bar": "bar"}, "foo", "foo", "foo", False),
        ({"foo": "missing"}, "foo", "", "", True),
        ({"foo": "sample"}, "foo", "", SAMPLE_TEXT, False),
        ({"foo.TXT": "sample"}, "foo.txt", "", SAMPLE_TEXT, False),
        ({"foo.txt": "sample"}, "foo.txt", "", SAMPLE_TEXT, False),
    ],
)
def test_content(locations, files, filename, default, expect, expect_error):
    form = FormData(files=_resolve(files, locations))
    assert form.content(filename, default) == expect
    assert bool(form.errors) is expect_error


@pytest.mark.parametrize(
    "files, filename, expect, expect_error",
    [
        ({}, "foo", "", True),
        ({"bar": "bar"}, "foo", "", True),
        ({"foo": "missing"}, "foo", "", True),
        ({"foo": "sample"}, "foo", SAMPLE_TEXT, False),
        ({"foo.TXT": "sample"}, "foo.txt", SAMPLE_TEXT, False),
        ({"foo.txt": "sample"}, "foo.txt", SAMPLE_TEXT, False),
    ],
)
def test_mandatory_content(locations, files, filename, expect, expect_error):
    form = FormData(files=_resolve(files, locations))
    assert form.mandatory_content(filename) == expect
    assert bool(form.errors) is expect_error


@pytest.mark.parametrize(
    "files, extensions, expect",
    [
        ({}, None, []),
        ({"foo.zip": "/foo.zip", "foo.pdf": "/foo.pdf"}, [".txt"], []),
        (
            {"foo.zip": "/foo.zip", "b.pdf": "/b.PDF", "a.pdf": "/a.pdf"},
            [".pdf"],
            ["/a.pdf", "/b.PDF"],
        ),
    ],
)
def test_paths(files, extensions, expect):
    form = FormData(files=files)
    actual = form.paths(extensions)
    assert actual == expect
    assert len(actual) == len(expect)
    assert form.errors == []


@pytest.mark.parametrize(
    "files, extensions, expect, expect_error",
    [
        ({}, None, [], True),
        ({"foo.zip": "/foo.zip", "foo.pdf": "/foo.pdf"}, [".txt"], [], True),
        (
            {"foo.zip": "/foo.zip", "b.PDF": "/b.PDF", "a.pdf": "/a.pdf"},
            [".pdf"],
            ["/a.pdf", "/b.PDF"],
            False,
        ),
    ],
)
def test_mandatory_paths(files, extensions, expect, expect_error):
    form = FormData(files=files)
    assert form.mandatory_paths(extensions) == expect
    assert bool(form.errors) is expect_error


def test_mandatory_paths_error_message():
    form = FormData(files={"foo.zip": "/foo.zip"})
    form.mandatory_paths([".txt", ".md"])
    assert str(form.errors[0]) == "no form file found for extensions: [.txt .md]"


@pytest.mark.parametrize(
    "value, expect",
    [("1", True), ("t", True), ("TRUE", True), ("True", True), ("0", False), ("F", False), ("false", False)],
)
def test_parse_bool(value, expect):
    assert parse_bool(value) is expect


@pytest.mark.parametrize("value", ["", "yes", "tRUE", " true"])
def test_parse_bool_invalid(value):
    with pytest.raises(ValueError):
        parse_bool(value)


@pytest.mark.parametrize(
    "value, expect",
    [
        ("0", timedelta(0)),
        ("1s", timedelta(seconds=1)),
        ("1h30m", timedelta(hours=1, minutes=30)),
        ("1.5h", timedelta(hours=1, minutes=30)),
        ("-2m", -timedelta(minutes=2)),
        ("+300ms", timedelta(milliseconds=300)),
        (".5s", timedelta(milliseconds=500)),
        ("10us", timedelta(microseconds=10)),
        ("2000ns", timedelta(microseconds=2)),
    ],
)
def test_parse_duration(value, expect):
    assert parse_duration(value) == expect


@pytest.mark.parametrize("value", ["", "-", "1", ".s", "1x", "foo", "s"])
def test_parse_duration_invalid(value):
    with pytest.raises(ValueError):
        parse_duration(value)


def test_alphanumeric_sorted_orders_numbers_by_value():
    items = ["file10.pdf", "file2.pdf", "file1.pdf"]
    assert alphanumeric_sorted(items) == ["file1.pdf", "file2.pdf", "file10.pdf"]


def test_alphanumeric_sorted_plain_strings():
    assert alphanumeric_sorted(["/b.PDF", "/a.pdf"]) == ["/a.pdf", "/b.PDF"]