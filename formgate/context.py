"""Per-request working context for multipart/form-data requests.

A :class:`Context` owns a private working directory holding the files of one
request: uploaded form files and files fetched through the ``downloadFrom``
form field. Output files registered on it are later sent back, zipped
together when there are several.
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import threading
import time
import unicodedata
import uuid
import zipfile
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import timedelta
from email.message import Message
from email.utils import collapse_rfc2231_value
from http import HTTPStatus
from typing import Any, BinaryIO, Optional, Pattern, Union
from urllib.error import HTTPError, URLError
from urllib.request import Request as UrlRequest
from urllib.request import urlopen

from werkzeug.formparser import parse_form_data

from formgate.errors import SentinelHttpError, wrap_error
from formgate.formdata import FormData

_LOGGER = logging.getLogger(__name__)
_CHUNK_SIZE = 64 * 1024
_OUTPUT_FILENAME_HEADER = "Gotenberg-Output-Filename"


class ContextAlreadyClosedError(Exception):
    """Raised when a context is used after it has been cancelled."""

    def __init__(self) -> None:
        super().__init__("context already closed")


class OutOfBoundsOutputPathError(Exception):
    """Raised when an output path lies outside the context's working directory."""

    def __init__(self) -> None:
        super().__init__("output path is not within context's working directory")


def _compile(pattern: Union[None, str, Pattern[str]]) -> Optional[Pattern[str]]:
    if pattern is None or pattern == "":
        return None
    if isinstance(pattern, str):
        return re.compile(pattern)
    return pattern


@dataclass
class DownloadFromConfig:
    """Settings of the ``downloadFrom`` feature."""

    allow_list: Union[None, str, Pattern[str]] = None
    deny_list: Union[None, str, Pattern[str]] = None
    max_retry: int = 4
    disable: bool = False

    def __post_init__(self) -> None:
        self.allow_list = _compile(self.allow_list)
        self.deny_list = _compile(self.deny_list)


@dataclass
class _DownloadEntry:
    url: str
    extra_http_headers: dict[str, str] = field(default_factory=dict)


def _seconds(timeout: Union[float, int, timedelta]) -> float:
    if isinstance(timeout, timedelta):
        return timeout.total_seconds()
    return float(timeout)


def _status_text(status: int) -> str:
    try:
        return HTTPStatus(status).phrase
    except ValueError:
        return ""


def _base(path: str) -> str:
    """Return the last element of a slash-separated path."""
    if path == "":
        return "."
    stripped = path.rstrip("/")
    if stripped == "":
        return "/"
    return stripped.rsplit("/", 1)[-1]


def _extension(path: str) -> str:
    base = path.rsplit("/", 1)[-1]
    dot = base.rfind(".")
    return base[dot:] if dot >= 0 else ""


def _safe_filename(name: str) -> str:
    # Drop any directory part and normalize the characters.
    return unicodedata.normalize("NFC", _base(name))


class _ByteBudget:
    """Thread-safe counter of request bytes, bounded by the body limit."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.total = 0
        self._lock = threading.Lock()

    def add(self, count: int) -> None:
        with self._lock:
            self.total += count
            total = self.total
        if self.limit and total > self.limit:
            raise wrap_error(
                ValueError(f"body limit reached (> {self.limit})"),
                SentinelHttpError(413, _status_text(413)),
            )


def _copy(source: BinaryIO, destination: str, budget: _ByteBudget) -> None:
    with open(destination, "wb") as out:
        while chunk := source.read(_CHUNK_SIZE):
            budget.add(len(chunk))
            out.write(chunk)


class Context:
    """Working directory, form values and files of one multipart request."""

    def __init__(
        self,
        dir_path: str = "",
        values: Optional[dict[str, list[str]]] = None,
        files: Optional[dict[str, str]] = None,
        logger: Optional[logging.Logger] = None,
        request: Any = None,
        timeout: Union[None, float, int, timedelta] = None,
    ) -> None:
        self.dir_path = dir_path
        self.values: dict[str, list[str]] = dict(values or {})
        self.files: dict[str, str] = dict(files or {})
        self.output_paths: list[str] = []
        self.cancelled = False
        self.logger = logger or _LOGGER
        self.request = request
        self.deadline: Optional[float] = (
            None if timeout is None else time.monotonic() + _seconds(timeout)
        )
        self._stopped = False
        self._files_lock = threading.Lock()

    def __enter__(self) -> "Context":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cancel()

    def _remaining(self) -> float:
        if self._stopped:
            return 0.0
        if self.deadline is None:
            return float("inf")
        return self.deadline - time.monotonic()

    def _add_file(self, filename: str, path: str) -> None:
        with self._files_lock:
            self.files[filename] = path

    def cancel(self) -> None:
        """Stop the context and remove its working directory."""
        if self.cancelled:
            return
        self._stopped = True
        if not self.dir_path:
            return
        try:
            shutil.rmtree(self.dir_path)
        except OSError as exc:
            self.logger.error("remove context's working directory: %s", exc)
            return
        self.logger.debug("'%s' context's working directory removed", self.dir_path)
        self.cancelled = True

    def form_data(self) -> FormData:
        """Return a :class:`FormData` over the request's values and files."""
        return FormData(self.values, self.files)

    def generate_path(self, extension: str) -> str:
        """Return a new UUID-based path in the working directory; no file is created."""
        return f"{self.dir_path}/{uuid.uuid4()}{extension}"

    def create_sub_directory(self, dir_name: str) -> str:
        """Create a subdirectory of the working directory and return its path."""
        path = f"{self.dir_path}/{dir_name}"
        try:
            os.makedirs(path, mode=0o755, exist_ok=True)
        except OSError as exc:
            raise OSError(f"create sub-directory {path}: {exc}") from exc
        return path

    def rename(self, old_path: str, new_path: str) -> None:
        """Move ``old_path`` to ``new_path``, replacing any existing file."""
        self.logger.debug("rename %s to %s", old_path, new_path)
        os.replace(old_path, new_path)

    def add_output_paths(self, *args: str) -> None:
        """Register paths used later to build the output file."""
        if self.cancelled:
            raise ContextAlreadyClosedError()
        for path in args:
            if not path.startswith(self.dir_path):
                raise OutOfBoundsOutputPathError()
            self.output_paths.append(path)

    def build_output_file(self) -> str:
        """Return the single output path, or a zip archive of all of them."""
        if self.cancelled:
            raise ContextAlreadyClosedError()
        if not self.output_paths:
            raise ValueError("no output path")
        if len(self.output_paths) == 1:
            self.logger.debug(
                "only one output file '%s', skip archive creation", self.output_paths[0]
            )
            return self.output_paths[0]

        for path in self.output_paths:
            os.stat(path)

        archive_path = self.generate_path(".zip")
        with zipfile.ZipFile(archive_path, "w", compression=zipfile.ZIP_STORED) as archive:
            for path in self.output_paths:
                archive.write(path, arcname=os.path.basename(path))
        self.logger.debug("archive '%s' created", archive_path)
        return archive_path

    def output_filename(self, output_path: str) -> str:
        """Return the response filename, honouring the output filename header."""
        wanted = ""
        if self.request is not None:
            wanted = self.request.headers.get(_OUTPUT_FILENAME_HEADER, "")
        if not wanted:
            return _base(output_path)
        return f"{wanted}{_extension(output_path)}"


def _parse_multipart(request: Any) -> tuple[dict[str, list[str]], list[Any]]:
    if request.mimetype != "multipart/form-data":
        raise wrap_error(
            ValueError("get multipart form: request Content-Type isn't multipart/form-data"),
            SentinelHttpError(
                415, "Invalid 'Content-Type' header value: want 'multipart/form-data'"
            ),
        )
    if not request.mimetype_params.get("boundary"):
        raise wrap_error(
            ValueError("get multipart form: no multipart boundary param in Content-Type"),
            SentinelHttpError(415, "Invalid 'Content-Type' header value: no boundary"),
        )
    try:
        _, form, files = parse_form_data(request.environ, silent=False)
    except ValueError as exc:
        raise wrap_error(
            ValueError(f"get multipart form: {exc}"),
            SentinelHttpError(
                400, "Malformed body: it does not match the 'Content-Type' header boundaries"
            ),
        ) from exc

    values = {key: list(form.getlist(key)) for key in form}
    uploads = []
    for key in files:
        for storage in files.getlist(key):
            if storage.filename:
                uploads.append(storage)
            else:
                text = storage.stream.read().decode("utf-8", errors="replace")
                values.setdefault(key, []).append(text)
    return values, uploads


def _parse_download_from(raw: str) -> list[_DownloadEntry]:
    data = json.loads(raw)
    if data is None:
        return []
    if not isinstance(data, list):
        raise ValueError(f"cannot read {type(data).__name__} as an array of downloads")

    entries = []
    for item in data:
        if item is None:
            entries.append(_DownloadEntry(""))
            continue
        if not isinstance(item, dict):
            raise ValueError(f"cannot read {type(item).__name__} as a download")
        lowered = {key.lower(): value for key, value in item.items()}
        url = lowered.get("url")
        if url is None:
            url = ""
        if not isinstance(url, str):
            raise ValueError("download 'url' must be a string")
        headers = lowered.get("extrahttpheaders")
        if headers is None:
            headers = {}
        if not isinstance(headers, dict) or not all(
            isinstance(value, str) for value in headers.values()
        ):
            raise ValueError("download 'extraHttpHeaders' must map strings to strings")
        entries.append(_DownloadEntry(url, dict(headers)))
    return entries


def _filter_url(url: str, cfg: DownloadFromConfig, ctx: Context) -> None:
    if ctx._remaining() <= 0:
        raise TimeoutError("context deadline exceeded")
    if cfg.allow_list is not None and not cfg.allow_list.search(url):
        raise wrap_error(
            ValueError(f"'{url}' does not match the expression from the allowed list"),
            SentinelHttpError(403, _status_text(403)),
        )
    if cfg.deny_list is not None and cfg.deny_list.search(url):
        raise wrap_error(
            ValueError(f"'{url}' matches the expression from the denied list"),
            SentinelHttpError(403, _status_text(403)),
        )


def _response_status(response: Any) -> int:
    return response.code if isinstance(response, HTTPError) else response.status


def _should_retry(response: Any, error: Optional[BaseException]) -> bool:
    if error is not None:
        message = str(error)
        return "unknown url type" not in message and "CERTIFICATE_VERIFY_FAILED" not in message
    status = _response_status(response)
    return status == 429 or status == 0 or (status >= 500 and status != 501)


def _backoff(attempt: int, max_wait: float, response: Any) -> float:
    if response is not None and _response_status(response) in (429, 503):
        retry_after = response.headers.get("Retry-After", "")
        if retry_after.isdigit():
            return float(retry_after)
    return min(2.0**attempt, max(max_wait, 0.0))


def _fetch(request: UrlRequest, cfg: DownloadFromConfig, ctx: Context) -> Any:
    max_wait = ctx._remaining()
    attempt = 0
    while True:
        response: Any = None
        error: Optional[BaseException] = None
        try:
            response = urlopen(request, timeout=max(ctx._remaining(), 0.001))
        except HTTPError as exc:
            response = exc
        except (URLError, OSError) as exc:
            error = exc

        if not _should_retry(response, error):
            if error is not None:
                raise error
            return response

        if attempt >= cfg.max_retry or ctx._remaining() <= 0:
            if response is not None:
                response.close()
            suffix = f": {error}" if error is not None else ""
            raise ConnectionError(
                f"GET {request.full_url} giving up after {attempt + 1} attempt(s){suffix}"
            )

        wait = _backoff(attempt, max_wait, response)
        if response is not None:
            response.close()
        ctx.logger.debug("retrying GET %s in %.1fs", request.full_url, wait)
        time.sleep(min(wait, max(ctx._remaining(), 0.0)))
        attempt += 1


def _content_disposition_filename(value: str) -> Optional[str]:
    if not value.split(";", 1)[0].strip():
        raise ValueError("mime: no media type")
    message = Message()
    message["Content-Disposition"] = value
    filename = message.get_param("filename", header="content-disposition")
    if filename is None:
        return None
    return collapse_rfc2231_value(filename)


def _download(
    ctx: Context,
    index: int,
    entry: _DownloadEntry,
    cfg: DownloadFromConfig,
    budget: _ByteBudget,
    trace_header: str,
    trace: str,
) -> None:
    url = entry.url
    if not url.strip():
        raise wrap_error(
            ValueError("empty download from URL"),
            SentinelHttpError(
                400, f"Invalid 'downloadFrom' form field entry {index}: URL must be set"
            ),
        )
    _filter_url(url, cfg, ctx)
    ctx.logger.debug("download file from '%s'", url)

    try:
        request = UrlRequest(url, method="GET")
    except ValueError as exc:
        raise ValueError(f"create request to '{url}': {exc}") from exc
    request.add_header("User-Agent", "Gotenberg")
    for key, value in entry.extra_http_headers.items():
        request.add_header(key, value)
    request.add_header(trace_header, trace)

    try:
        response = _fetch(request, cfg, ctx)
    except OSError as exc:
        raise wrap_error(
            ConnectionError(f"download file from to '{url}': {exc}"),
            SentinelHttpError(400, f"Unable to download file from '{url}': {exc}"),
        ) from exc

    try:
        status = _response_status(response)
        if status != 200:
            status_line = f"{status} {response.reason}"
            raise wrap_error(
                ValueError(f"download file from to '{url}': got status: '{status_line}'"),
                SentinelHttpError(
                    400, f"Unable to download file from '{url}': got status: '{status_line}'"
                ),
            )

        disposition = response.headers.get("Content-Disposition", "")
        if not disposition:
            raise wrap_error(
                ValueError(f"no 'Content-Disposition' header from '{url}'"),
                SentinelHttpError(400, f"No 'Content-Disposition' header from '{url}'"),
            )
        try:
            filename = _content_disposition_filename(disposition)
        except ValueError as exc:
            raise wrap_error(
                ValueError(
                    f"parse 'Content-Disposition' header '{disposition}' from '{url}': {exc}"
                ),
                SentinelHttpError(
                    400,
                    f"Invalid 'Content-Disposition' header '{disposition}' from '{url}': {exc}",
                ),
            ) from exc
        if filename is None:
            raise wrap_error(
                ValueError(
                    f"get filename from 'Content-Disposition' header '{disposition}' "
                    f"from '{url}'"
                ),
                SentinelHttpError(
                    400,
                    f"Invalid 'Content-Disposition' header '{disposition}' from '{url}': "
                    "no filename",
                ),
            )

        filename = _safe_filename(filename)
        path = f"{ctx.dir_path}/{filename}"
        _copy(response, path, budget)
        ctx._add_file(filename, path)
    finally:
        response.close()


def _download_all(
    ctx: Context,
    raw: str,
    cfg: DownloadFromConfig,
    budget: _ByteBudget,
    trace_header: str,
    trace: str,
) -> None:
    try:
        entries = _parse_download_from(raw)
    except ValueError as exc:
        raise wrap_error(
            ValueError(f"unmarshal json: {exc}"),
            SentinelHttpError(400, f"Invalid 'downloadFrom' form field value: {exc}"),
        ) from exc
    if not entries:
        return

    first_error: Optional[BaseException] = None
    with ThreadPoolExecutor(max_workers=len(entries)) as pool:
        futures = [
            pool.submit(_download, ctx, index, entry, cfg, budget, trace_header, trace)
            for index, entry in enumerate(entries)
        ]
        for future in as_completed(futures):
            error = future.exception()
            if error is not None and first_error is None:
                first_error = error
    if first_error is not None:
        raise first_error


def _make_work_dir(work_root: Optional[str]) -> str:
    root = work_root if work_root is not None else _default_work_root()
    path = os.path.join(os.fspath(root), str(uuid.uuid4()))
    os.makedirs(path, mode=0o755)
    return path


def _default_work_root() -> str:
    import tempfile

    return tempfile.gettempdir()


def new_context(
    request: Any,
    logger: Optional[logging.Logger] = None,
    work_root: Optional[str] = None,
    timeout: Union[float, int, timedelta] = 30.0,
    body_limit: int = 0,
    download_from_cfg: Optional[DownloadFromConfig] = None,
    trace_header: str = "Gotenberg-Trace",
    trace: str = "",
) -> Context:
    """Build a :class:`Context` from a multipart/form-data werkzeug request.

    Form values and files are stored in a fresh working directory under
    ``work_root``; files listed in the ``downloadFrom`` field are fetched
    first. On failure the working directory is removed and the error raised.
    """
    logger = logger or _LOGGER
    cfg = download_from_cfg or DownloadFromConfig()
    ctx = Context(logger=logger, request=request, timeout=timeout)
    budget = _ByteBudget(body_limit)

    try:
        values, uploads = _parse_multipart(request)
        budget.add(
            sum(
                len(key.encode()) + sum(len(value.encode()) for value in entries)
                for key, entries in values.items()
            )
        )
        ctx.dir_path = _make_work_dir(work_root)
        ctx.values = values

        raw = values.get("downloadFrom")
        if not cfg.disable and raw:
            _download_all(ctx, raw[0], cfg, budget, trace_header, trace)

        for upload in uploads:
            filename = _safe_filename(upload.filename)
            path = f"{ctx.dir_path}/{filename}"
            _copy(upload.stream, path, budget)
            ctx._add_file(filename, path)
    except BaseException:
        ctx.cancel()
        raise

    logger.debug("form fields: %s", ctx.values)
    logger.debug("form files: %s", ctx.files)
    logger.debug("total bytes: %d", budget.total)
    return ctx