# formgate

`formgate` covers the request side of a service that takes documents through
`multipart/form-data`. It has three modules:

- `formgate.formdata` reads the fields and files of a form and returns typed
  values. It collects every problem it finds and reports them all together.
- `formgate.context` turns a werkzeug request into a `Context`. Each
  `Context` has its own working directory, which holds the uploaded files and
  any files fetched through the `downloadFrom` form field. The context also
  collects the output files.
- `formgate.errors` pairs an error that is meant for the log with the HTTP
  status and message that the client is allowed to see.

## Installing

```
pip install .
pip install ".[test]"   # adds pytest
```

## Binding form values

`FormData` takes a mapping of field names to lists of values, and a mapping of
file names to stored paths. Each binder returns its value:

| Binder | Result | When the field is missing or empty |
|---|---|---|
| `string(key, default="")` | `str` | `default` |
| `bool(key, default=False)` | `bool` | `default` |
| `int(key, default=0)` | `int` | `default` |
| `float(key, default=0.0)` | `float` | `default` |
| `duration(key, default=timedelta(0))` | `datetime.timedelta` | `default` |
| `inches(key, default=0.0)` | `float` in inches | `default` |
| `custom(key, assign)` | whatever `assign` returns | `assign("")` |

Each binder also has a `mandatory_*` variant. The variant records a
"form field '…' is required" error when the field is missing or empty.

A value that does not parse is recorded as an error, and the binder returns
the zero value of its type.

- Booleans accept `1 t T TRUE true True` and `0 f F FALSE false False`.
- Durations are written like `300ms`, `1.5h` or `2h45m`. The units are `ns`,
  `us`/`µs`, `ms`, `s`, `m` and `h`. `parse_duration` is also available on its
  own.
- Lengths may end in `pt`, `px`, `in`, `mm`, `cm` or `pc`. A bare number is
  taken to be in inches.
- If `assign` raises an exception, `custom` records it and returns `None`.

```python
from formgate.formdata import FormData

form = FormData(
    values={"landscape": ["true"], "marginTop": ["1cm"], "waitDelay": ["2s"]},
    files={"index.HTML": "/work/index.HTML", "b.pdf": "/work/b.pdf", "a10.pdf": "/work/a10.pdf"},
)

landscape = form.bool("landscape", False)     # True
margin_top = form.inches("marginTop", 0.39)   # 0.3937...
wait_delay = form.duration("waitDelay")       # timedelta(seconds=2)
index = form.mandatory_path("index.html")     # "/work/index.HTML"
pdfs = form.paths([".pdf"])                   # ["/work/a10.pdf", "/work/b.pdf"]

form.validate()  # raises if anything above was recorded as an error
```

File lookups work as follows:

- `path` and `mandatory_path` find a file whose name matches, ignoring the
  case of its extension, and return its stored path. `path` returns `None`
  when nothing matches.
- `content` and `mandatory_content` return the file's text. `content` returns
  its default when the file is absent.
- `paths` and `mandatory_paths` return the stored paths of the files with the
  given lowercase extensions. The paths are sorted in natural order, so `a2`
  comes before `a10`. `alphanumeric_sorted` is also available on its own.

`validate()` does nothing when no error was recorded. Otherwise it raises a
`SentinelWrappedError` with status 400 and the message
`Invalid form data: …`, which lists every problem.

## Request contexts

`new_context(request, logger, work_root, timeout, body_limit,
download_from_cfg, trace_header, trace)` parses a werkzeug request. It raises
a wrapped HTTP error with these statuses:

- 415 when the content type is not `multipart/form-data` or has no boundary.
- 400 when the body is malformed.
- 413 when the form exceeds `body_limit` bytes. A limit of `0` means no limit.

It then does the following:

1. It creates a fresh working directory under `work_root`. When `work_root`
   is not given, the system temporary directory is used.
2. If the `downloadFrom` field holds a JSON list of `{"url": …,
   "extraHttpHeaders": {…}}`, it fetches those files in parallel and retries
   failed requests up to `max_retry` times.
3. It copies the uploaded files into the working directory. File names lose
   any directory part and are NFC-normalised.

Downloads are controlled by `DownloadFromConfig(allow_list, deny_list,
max_retry=4, disable=False)`:

- `allow_list` and `deny_list` are regular expressions. A URL they filter
  out fails with 403.
- Each request sends `User-Agent: Gotenberg` and the trace header.
- A response that is not 200, or that lacks a `Content-Disposition` filename,
  fails with 400.

If anything fails, the working directory is removed and the error is raised.

```python
from werkzeug.wrappers import Request

from formgate.context import DownloadFromConfig, new_context

def handle(environ):
    request = Request(environ)
    with new_context(
        request,
        work_root="/var/tmp/work",
        timeout=30,
        body_limit=50 * 1024 * 1024,
        download_from_cfg=DownloadFromConfig(deny_list=r"^file:"),
        trace="req-1",
    ) as ctx:
        form = ctx.form_data()
        source = form.mandatory_path("index.html")
        form.validate()

        output = ctx.generate_path(".pdf")
        # ... write the result to `output` ...
        ctx.add_output_paths(output)
        result = ctx.build_output_file()
        name = ctx.output_filename(result)
        # ... send `result` as `name` before leaving the block ...
```

`Context` provides:

- `form_data()` returns a `FormData` over the request's values and files.
- `generate_path(ext)` returns a new UUID-named path in the working directory.
  It does not create the file.
- `create_sub_directory(name)` creates a subdirectory and returns its path.
- `rename(old, new)` moves a file.
- `add_output_paths(*paths)` records output files. It raises
  `OutOfBoundsOutputPathError` for a path outside the working directory.
- `build_output_file()` returns the single output path. When there are
  several outputs, it writes a zip archive of them and returns the archive's
  path.
- `output_filename(path)` returns the name to send. It uses the
  `Gotenberg-Output-Filename` request header plus the file's extension when
  the header is set, and the file's base name otherwise.
- `cancel()` removes the working directory. Leaving the `with` block does the
  same. After that, `add_output_paths` and `build_output_file` raise
  `ContextAlreadyClosedError`.

## Errors that map to HTTP

```python
from formgate.errors import SentinelHttpError, wrap_error

try:
    ...
except OSError as exc:
    raise wrap_error(exc, SentinelHttpError(403, "You are not allowed to do that"))
```

`SentinelHttpError(status, message).http_error()` returns `(status, message)`.

`wrap_error` returns a `SentinelWrappedError`:

- `str()` of it is the wrapped error's text, which is meant for the log.
- `http_error()` returns the sentinel's status and message, which are meant
  for the response.
- `matches(sentinel)` tells whether it carries that sentinel.

## What it does not do

`formgate` does not run an HTTP server, route requests or turn exceptions
into responses. It has no middleware chain: no tracing, access logging, basic
authentication or hard timeouts. It has no health checks and no command-line
program. The application that uses it must create the werkzeug request, call
`new_context`, and send the file or error status that results.