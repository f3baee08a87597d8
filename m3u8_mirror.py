#!/usr/bin/env python3
import argparse
import hashlib
import json
import logging
import os
import posixpath
import re
import sys
import tempfile
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from threading import Lock
from typing import Dict, FrozenSet, Iterable, Iterator, List, Optional, Set, Tuple, Union
from urllib.parse import urljoin, urlsplit, urlunsplit

import requests
import yaml
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

# -------------------- Config --------------------

DEFAULT_USER_AGENT = "m3u8-mirror/1.0"

PLAYLIST_SUFFIX = ".m3u8"
GENERIC_EXT = ".bin"
MAX_LINE_LENGTH = 1024 * 1024
MANIFEST_NAME = ".m3u8-mirror-manifest.json"

URI_ATTR_RE = re.compile(r'URI="([^"]*)"')

# tag name -> carries URI="..." references
TAG_TABLE: Dict[str, bool] = {
    "EXTM3U": False,
    "EXTINF": False,
    "EXT-X-VERSION": False,
    "EXT-X-TARGETDURATION": False,
    "EXT-X-MEDIA-SEQUENCE": False,
    "EXT-X-DISCONTINUITY-SEQUENCE": False,
    "EXT-X-DISCONTINUITY": False,
    "EXT-X-PLAYLIST-TYPE": False,
    "EXT-X-PROGRAM-DATE-TIME": False,
    "EXT-X-BYTERANGE": False,
    "EXT-X-STREAM-INF": False,
    "EXT-X-INDEPENDENT-SEGMENTS": False,
    "EXT-X-START": False,
    "EXT-X-ENDLIST": False,
    "EXT-X-KEY": True,
    "EXT-X-MEDIA": True,
    "EXT-X-MAP": True,
    "EXT-X-I-FRAME-STREAM-INF": True,
}
RENDITION_TAGS = frozenset({"EXT-X-MEDIA", "EXT-X-I-FRAME-STREAM-INF"})

# -------------------- Settings --------------------


@dataclass
class Settings:
    output_dir: str = "."
    flatten: bool = False
    rewrite: bool = True
    concurrency: int = 5
    include: Set[str] = field(default_factory=set)
    exclude: Set[str] = field(default_factory=set)
    user_agent: str = DEFAULT_USER_AGENT

    # HTTP
    timeout: float = 30.0
    max_retries: int = 3
    backoff_factor: float = 1.0

    # Crawl
    follow_renditions: bool = False

    # Output
    progress: bool = True
    manifest: bool = False


# -------------------- Errors --------------------


class MirrorError(Exception):
    pass


class UrlError(MirrorError):
    def __init__(self, url: str, message: str):
        super().__init__(f"{url}: {message}")
        self.url = url
        self.message = message


class FetchError(UrlError):
    pass


class ParseError(UrlError):
    pass


class SinkError(UrlError):
    pass


class RewriteError(MirrorError):
    pass


# -------------------- Resolver --------------------


def resolve_url(base: str, ref: str) -> str:
    """Resolve a playlist reference against the URL of the playlist holding it.

    References with a scheme come back unchanged. References that cannot be
    parsed at all are joined onto the directory of the base path instead of
    being rejected.
    """
    try:
        parts = urlsplit(ref)
    except ValueError:
        return join_base_dir(base, ref)
    if parts.scheme:
        return ref
    return urljoin(base, ref)


def join_base_dir(base: str, ref: str) -> str:
    b = urlsplit(base)
    path = posixpath.normpath(posixpath.join(posixpath.dirname(b.path) or "/", ref))
    if path.startswith("//"):
        path = "/" + path.lstrip("/")
    return urlunsplit((b.scheme, b.netloc, path, "", ""))


def is_playlist_ref(ref: str) -> bool:
    return ref.endswith(PLAYLIST_SUFFIX) or (PLAYLIST_SUFFIX + "?") in ref


def url_extension(url: str) -> str:
    try:
        path = urlsplit(url).path
    except ValueError:
        path = url.split("?", 1)[0]
    return posixpath.splitext(path)[1].lower()


def url_digest(url: str) -> str:
    return hashlib.sha256(url.encode("utf-8")).hexdigest()


def hashed_filename(url: str) -> str:
    return url_digest(url)[:16] + GENERIC_EXT


# -------------------- Tokenizer --------------------


class LineKind(Enum):
    BLANK = "blank"
    COMMENT = "comment"
    TAG = "tag"
    REFERENCE = "reference"


@dataclass(frozen=True)
class Line:
    kind: LineKind
    raw: str
    ending: str = ""
    tag: Optional[str] = None
    uris: Tuple[str, ...] = ()

    @property
    def value(self) -> str:
        return self.raw.strip().lstrip("\ufeff")


def decode_playlist(data: Union[bytes, str]) -> str:
    if isinstance(data, str):
        return data
    return bytes(data).decode("utf-8", "surrogateescape")


def encode_playlist(text: str) -> bytes:
    return text.encode("utf-8", "surrogateescape")


def classify_line(raw: str, ending: str = "") -> Line:
    s = raw.strip().lstrip("\ufeff")
    if not s:
        return Line(LineKind.BLANK, raw, ending)
    if s.startswith("#"):
        tag = s[1:].split(":", 1)[0]
        if TAG_TABLE.get(tag, False):
            uris = tuple(u for u in URI_ATTR_RE.findall(s) if u)
            return Line(LineKind.TAG, raw, ending, tag, uris)
        return Line(LineKind.COMMENT, raw, ending, tag or None)
    return Line(LineKind.REFERENCE, raw, ending)


def tokenize(text: str) -> Iterator[Line]:
    # split on "\n" only; str.splitlines() also breaks on form feeds etc.
    pos, n = 0, len(text)
    while pos < n:
        nl = text.find("\n", pos)
        if nl == -1:
            raw, ending, pos = text[pos:], "", n
        else:
            raw, ending, pos = text[pos:nl], "\n", nl + 1
        if raw.endswith("\r"):
            raw, ending = raw[:-1], "\r" + ending
        yield classify_line(raw, ending)


# -------------------- Playlist --------------------


@dataclass(frozen=True)
class Reference:
    url: str
    is_playlist: bool


@dataclass(frozen=True)
class PlaylistDocument:
    data: bytes
    base_url: str
    references: Tuple[Reference, ...]

    @property
    def urls(self) -> List[str]:
        return [r.url for r in self.references]

    def playlists(self) -> List[str]:
        return [r.url for r in self.references if r.is_playlist]


def parse_playlist(
    data: Union[bytes, str], base_url: str, *, follow_renditions: bool = False
) -> PlaylistDocument:
    try:
        base = urlsplit(base_url)
    except ValueError as e:
        raise ParseError(base_url, f"invalid base URL: {e}") from e
    if not base.scheme or not base.netloc:
        raise ParseError(base_url, "base URL must be absolute")

    refs: List[Reference] = []
    for lineno, line in enumerate(tokenize(decode_playlist(data)), 1):
        if len(line.raw) > MAX_LINE_LENGTH:
            raise ParseError(
                base_url, f"line {lineno} longer than {MAX_LINE_LENGTH} characters"
            )
        if line.kind is LineKind.TAG:
            for uri in line.uris:
                nested = (
                    follow_renditions
                    and line.tag in RENDITION_TAGS
                    and is_playlist_ref(uri)
                )
                refs.append(Reference(resolve_url(base_url, uri), nested))
        elif line.kind is LineKind.REFERENCE:
            ref = line.value
            refs.append(Reference(resolve_url(base_url, ref), is_playlist_ref(ref)))

    raw = encode_playlist(data) if isinstance(data, str) else bytes(data)
    return PlaylistDocument(raw, base_url, tuple(refs))


# -------------------- Path mapping --------------------


class PathMapper:
    def __init__(self, output_dir: Union[str, Path], flatten: bool = False):
        self.root = Path(output_dir).resolve()
        self.flatten = flatten
        self._url_to_path: Dict[str, Path] = {}
        self._claimed: Set[Path] = set()
        self._lock = Lock()

    def assign_path(self, url: str) -> Path:
        with self._lock:
            p = self._url_to_path.get(url)
            if p is not None:
                return p
            p = self._candidate(url)
            if p in self._claimed:
                p = self._resolve_collision(p, url)
            self._url_to_path[url] = p
            self._claimed.add(p)
            return p

    def lookup(self, url: str) -> Optional[Path]:
        with self._lock:
            return self._url_to_path.get(url)

    def relative_path(self, from_url: str, to_url: str, *, assign: bool = True) -> str:
        if assign:
            src, dst = self.assign_path(from_url), self.assign_path(to_url)
        else:
            src, dst = self.lookup(from_url), self.lookup(to_url)
            if src is None:
                raise RewriteError(f"no local path for {from_url}")
            if dst is None:
                raise RewriteError(f"no local path for {to_url}")
        try:
            return Path(os.path.relpath(dst, src.parent)).as_posix()
        except ValueError as e:
            # different drives on Windows
            raise RewriteError(f"cannot relate {dst} to {src}: {e}") from e

    def items(self) -> List[Tuple[str, Path]]:
        with self._lock:
            return list(self._url_to_path.items())

    def __len__(self) -> int:
        with self._lock:
            return len(self._url_to_path)

    def _candidate(self, url: str) -> Path:
        path = urlsplit(url).path
        name = posixpath.basename(path)
        if name in ("", ".", ".."):
            name = hashed_filename(url)
        if self.flatten:
            return self.root / name
        dirs = [s for s in path.split("/")[:-1] if s not in ("", ".", "..")]
        return self.root.joinpath(*dirs, name)

    def _resolve_collision(self, path: Path, url: str) -> Path:
        h = url_digest(url)[:8]
        stem, ext = os.path.splitext(path.name)
        candidate = path.with_name(f"{stem}_{h}{ext}")
        n = 1
        while candidate in self._claimed:
            candidate = path.with_name(f"{stem}_{h}_{n}{ext}")
            n += 1
        logging.debug("path collision for %s, using %s", url, candidate)
        return candidate


# -------------------- Rewriter --------------------


def rewrite_playlist(
    data: Union[bytes, str], source_url: str, mapper: PathMapper
) -> bytes:
    """Replace every mapped reference in a playlist with a relative local path.

    Only URLs that already have a path are rewritten; anything the crawl
    skipped keeps its original text, line for line.
    """
    out: List[str] = []
    for line in tokenize(decode_playlist(data)):
        try:
            if line.kind is LineKind.TAG and line.uris:
                out.append(_rewrite_tag_line(line.raw, source_url, mapper) + line.ending)
                continue
            if line.kind is LineKind.REFERENCE:
                out.append(_local_ref(line.value, source_url, mapper) + line.ending)
                continue
        except RewriteError as e:
            logging.debug("keeping original line in %s: %s", source_url, e)
        out.append(line.raw + line.ending)
    return encode_playlist("".join(out))


def _local_ref(ref: str, source_url: str, mapper: PathMapper) -> str:
    target = resolve_url(source_url, ref)
    return mapper.relative_path(source_url, target, assign=False)


def _rewrite_tag_line(raw: str, source_url: str, mapper: PathMapper) -> str:
    def repl(m: re.Match) -> str:
        value = m.group(1)
        if not value:
            return m.group(0)
        return f'URI="{_local_ref(value, source_url, mapper)}"'

    return URI_ATTR_RE.sub(repl, raw)


# -------------------- Fetcher / Sink --------------------


def build_session(settings: Settings) -> requests.Session:
    s = requests.Session()
    retry = Retry(
        total=settings.max_retries,
        backoff_factor=settings.backoff_factor,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods={"GET"},
        raise_on_status=False,
        respect_retry_after_header=True,
    )
    pool_size = max(10, settings.concurrency)
    adapter = HTTPAdapter(
        max_retries=retry, pool_connections=pool_size, pool_maxsize=pool_size
    )
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.headers["User-Agent"] = settings.user_agent or DEFAULT_USER_AGENT
    return s


class Fetcher:
    def fetch(self, ctx: "CrawlContext", url: str) -> bytes:
        raise NotImplementedError

    def close(self) -> None:
        pass


class HttpFetcher(Fetcher):
    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.timeout = settings.timeout
        self.session = session if session is not None else build_session(settings)

    def fetch(self, ctx: "CrawlContext", url: str) -> bytes:
        if ctx.cancelled:
            raise FetchError(url, "cancelled")
        try:
            r = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            raise FetchError(url, f"request failed: {e}") from e
        if r.status_code != 200:
            raise FetchError(url, f"unexpected status code {r.status_code}")
        return r.content

    def close(self) -> None:
        self.session.close()


def ensure_parent_dir(p: Path) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)


def atomic_write_bytes(path: Path, data: bytes) -> None:
    ensure_parent_dir(path)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.chmod(tmp, 0o644)
        os.replace(tmp, path)
    except Exception:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


class Sink:
    def write(self, url: str, data: bytes) -> Path:
        raise NotImplementedError


class FileSink(Sink):
    def __init__(self, mapper: PathMapper):
        self.mapper = mapper

    def write(self, url: str, data: bytes) -> Path:
        path = self.mapper.assign_path(url)
        try:
            atomic_write_bytes(path, data)
        except OSError as e:
            raise SinkError(url, f"failed to write {path}: {e}") from e
        return path


# -------------------- Crawl state --------------------


class CrawlContext:
    """Cancellation token shared by every task of one crawl.

    The first failure reported through fail() is kept and cancels the crawl;
    later failures are ignored.
    """

    def __init__(self):
        self._cancelled = threading.Event()
        self._lock = Lock()
        self.error: Optional[BaseException] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    def fail(self, exc: BaseException) -> bool:
        with self._lock:
            first = self.error is None
            if first:
                self.error = exc
        self._cancelled.set()
        return first


class VisitedSet:
    def __init__(self):
        self._urls: Set[str] = set()
        self._lock = Lock()

    def claim(self, url: str) -> bool:
        with self._lock:
            if url in self._urls:
                return False
            self._urls.add(url)
            return True

    def __contains__(self, url: str) -> bool:
        with self._lock:
            return url in self._urls

    def __len__(self) -> int:
        with self._lock:
            return len(self._urls)


def normalize_extensions(values: Iterable[str]) -> Set[str]:
    out: Set[str] = set()
    for v in values or []:
        for ext in str(v).split(","):
            ext = ext.strip().lower()
            if not ext:
                continue
            out.add(ext if ext.startswith(".") else "." + ext)
    return out


@dataclass(frozen=True)
class ExtensionFilter:
    include: FrozenSet[str] = frozenset()
    exclude: FrozenSet[str] = frozenset()

    @classmethod
    def from_settings(cls, settings: Settings) -> "ExtensionFilter":
        return cls(
            frozenset(normalize_extensions(settings.include)),
            frozenset(normalize_extensions(settings.exclude)),
        )

    def allows(self, ref: Reference) -> bool:
        # nested playlists are always traversed
        if ref.is_playlist:
            return True
        ext = url_extension(ref.url)
        if ext in self.exclude:
            return False
        if self.include:
            return ext in self.include
        return True


class TaskState(Enum):
    QUEUED = "queued"
    FETCHING = "fetching"
    PARSED = "parsed"
    CHILDREN_QUEUED = "children_queued"
    CHILDREN_DONE = "children_done"
    WRITTEN = "written"
    FAILED = "failed"


TERMINAL_STATES = frozenset({TaskState.WRITTEN, TaskState.FAILED})


@dataclass(frozen=True)
class CrawlTask:
    url: str
    is_playlist: bool


@dataclass
class _Node:
    task: CrawlTask
    state: TaskState = TaskState.QUEUED
    document: Optional[PlaylistDocument] = None
    discovering: bool = True
    pending: Set[str] = field(default_factory=set)
    waiters: Set[str] = field(default_factory=set)


# -------------------- Progress --------------------


def format_bytes(n: int) -> str:
    unit = 1024
    if n < unit:
        return f"{n} B"
    value = float(n)
    for suffix in ("KB", "MB", "GB", "TB"):
        value /= unit
        if value < unit or suffix == "TB":
            return f"{value:.1f} {suffix}"
    return f"{n} B"


def format_duration(seconds: float) -> str:
    s = int(round(seconds))
    h, s = divmod(s, 3600)
    m, s = divmod(s, 60)
    if h:
        return f"{h}h {m}m {s}s"
    if m:
        return f"{m}m {s}s"
    return f"{s}s"


class Progress:
    def __init__(self, enabled: bool = True, interval: float = 0.5, stream=None):
        self.enabled = enabled
        self.interval = interval
        self._stream = stream
        self.playlists = 0
        self.files = 0
        self.bytes = 0
        self.failures = 0
        self.started = time.monotonic()
        self._lock = Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def stream(self):
        return self._stream if self._stream is not None else sys.stderr

    def playlist_written(self, size: int) -> None:
        with self._lock:
            self.playlists += 1
            self.bytes += size

    def file_written(self, size: int) -> None:
        with self._lock:
            self.files += 1
            self.bytes += size

    def failed(self) -> None:
        with self._lock:
            self.failures += 1

    def snapshot(self) -> Dict[str, float]:
        with self._lock:
            return {
                "playlists": self.playlists,
                "files": self.files,
                "bytes": self.bytes,
                "failures": self.failures,
                "elapsed": time.monotonic() - self.started,
            }

    def line(self) -> str:
        snap = self.snapshot()
        elapsed = snap["elapsed"]
        speed = snap["bytes"] / elapsed if elapsed > 0 else 0.0
        return (
            f"Progress: {snap['playlists'] + snap['files']} files | "
            f"{format_bytes(int(snap['bytes']))} downloaded | "
            f"{format_bytes(int(speed))}/s | Elapsed: {format_duration(elapsed)}"
        )

    def start(self) -> None:
        self.started = time.monotonic()
        if not self.enabled or self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._report, name="m3u8-mirror-progress", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
            self.stream.write("\n")
            self.stream.flush()

    def _report(self) -> None:
        while not self._stop.wait(self.interval):
            self.stream.write(f"\r{self.line():<100}")
            self.stream.flush()

    def summary(self) -> str:
        snap = self.snapshot()
        elapsed = snap["elapsed"]
        speed = snap["bytes"] / elapsed if elapsed > 0 else 0.0
        rule = "-" * 60
        return "\n".join(
            [
                rule,
                "  Mirror complete",
                rule,
                f"  Files written:   {snap['playlists'] + snap['files']}",
                f"    playlists:     {snap['playlists']}",
                f"    other files:   {snap['files']}",
                f"  Total data:      {format_bytes(int(snap['bytes']))}",
                f"  Average speed:   {format_bytes(int(speed))}/s",
                f"  Time elapsed:    {format_duration(elapsed)}",
                rule,
            ]
        )


# -------------------- Crawl --------------------


class Mirror:
    """Mirrors one playlist tree. An instance drives a single crawl.

    Every discovered URL becomes one task on a shared, bounded thread pool.
    A playlist is rewritten and written only once all the URLs it waits on
    have been written, so every relative path it gets is final.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        fetcher: Optional[Fetcher] = None,
        sink: Optional[Sink] = None,
        mapper: Optional[PathMapper] = None,
        progress: Optional[Progress] = None,
    ):
        self.settings = settings
        self.mapper = mapper or PathMapper(settings.output_dir, settings.flatten)
        self._own_fetcher = fetcher is None
        self.fetcher = fetcher if fetcher is not None else HttpFetcher(settings)
        self.sink = sink if sink is not None else FileSink(self.mapper)
        self.filter = ExtensionFilter.from_settings(settings)
        self.progress = progress or Progress(enabled=False)
        self.visited = VisitedSet()
        self.ctx = CrawlContext()
        self.written: Dict[str, Path] = {}
        self._nodes: Dict[str, _Node] = {}
        self._lock = Lock()
        self._finished = threading.Event()
        self._pool: Optional[ThreadPoolExecutor] = None
        self._root: Optional[str] = None

    def run(self, url: str) -> Path:
        if self._root is not None:
            raise RuntimeError("Mirror instances run a single crawl")
        self._root = url
        self.mapper.assign_path(url)
        logging.info("mirroring %s -> %s", url, self.mapper.root)

        workers = max(1, int(self.settings.concurrency))
        with ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="m3u8-mirror"
        ) as pool:
            self._pool = pool
            task = CrawlTask(url, True)
            with self._lock:
                self.visited.claim(url)
                self._nodes[url] = _Node(task)
            self._submit(task)
            try:
                self._finished.wait()
            except BaseException:
                self.ctx.cancel()
                raise
        self._pool = None

        if self.ctx.error is not None:
            raise self.ctx.error
        logging.info("mirrored %d files from %s", len(self.written), url)
        return self.written[url]

    def close(self) -> None:
        if self._own_fetcher:
            self.fetcher.close()

    def state_of(self, url: str) -> Optional[TaskState]:
        with self._lock:
            node = self._nodes.get(url)
            return None if node is None else node.state

    # -- tasks --

    def _submit(self, task: CrawlTask) -> None:
        if self.ctx.cancelled or self._pool is None:
            return
        self._pool.submit(self._run_task, task)

    def _run_task(self, task: CrawlTask) -> None:
        if self.ctx.cancelled:
            return
        try:
            if task.is_playlist:
                self._mirror_playlist(task.url)
            else:
                self._mirror_file(task.url)
        except Exception as e:
            failed_url = getattr(e, "url", None) or task.url
            self._set_state(failed_url, TaskState.FAILED)
            self.progress.failed()
            if self.ctx.fail(e):
                logging.error("aborting mirror: %s", e)
            self._finished.set()

    def _mirror_file(self, url: str) -> None:
        self._set_state(url, TaskState.FETCHING)
        logging.debug("fetching %s", url)
        data = self.fetcher.fetch(self.ctx, url)
        path = self.sink.write(url, data)
        self.progress.file_written(len(data))
        logging.debug("wrote %s -> %s", url, path)
        self._complete(url, path)

    def _mirror_playlist(self, url: str) -> None:
        self._set_state(url, TaskState.FETCHING)
        logging.debug("fetching playlist %s", url)
        data = self.fetcher.fetch(self.ctx, url)
        doc = parse_playlist(
            data, url, follow_renditions=self.settings.follow_renditions
        )
        with self._lock:
            node = self._nodes[url]
            node.document = doc
            node.state = TaskState.PARSED
        logging.debug("found %d references in %s", len(doc.references), url)

        seen_here: Set[str] = set()
        for ref in doc.references:
            if self.ctx.cancelled:
                return
            if ref.url in seen_here:
                continue
            seen_here.add(ref.url)
            if not self.filter.allows(ref):
                logging.debug("filtered out %s", ref.url)
                continue
            self.mapper.assign_path(ref.url)
            self._link(url, ref)

        with self._lock:
            node.discovering = False
            node.state = TaskState.CHILDREN_QUEUED
            ready = not node.pending
            if ready:
                node.state = TaskState.CHILDREN_DONE
        if ready:
            self._finalize(url)

    def _link(self, parent_url: str, ref: Reference) -> None:
        submit: Optional[CrawlTask] = None
        with self._lock:
            parent = self._nodes[parent_url]
            if self.visited.claim(ref.url):
                child = _Node(CrawlTask(ref.url, ref.is_playlist))
                self._nodes[ref.url] = child
                submit = child.task
            else:
                child = self._nodes[ref.url]
                logging.debug("already visited %s", ref.url)
                if child.state in TERMINAL_STATES:
                    return
                # waiting on an ancestor would never finish; its path is fixed anyway
                if self._reaches(ref.url, parent_url):
                    return
            parent.pending.add(ref.url)
            child.waiters.add(parent_url)
        if submit is not None:
            self._submit(submit)

    def _reaches(self, start: str, target: str) -> bool:
        stack = [start]
        seen: Set[str] = set()
        while stack:
            u = stack.pop()
            if u == target:
                return True
            if u in seen:
                continue
            seen.add(u)
            stack.extend(self._nodes[u].pending)
        return False

    def _finalize(self, url: str) -> None:
        if self.ctx.cancelled:
            return
        with self._lock:
            doc = self._nodes[url].document
        data = doc.data
        if self.settings.rewrite:
            data = rewrite_playlist(data, url, self.mapper)
        path = self.sink.write(url, data)
        self.progress.playlist_written(len(data))
        logging.debug("wrote playlist %s -> %s", url, path)
        self._complete(url, path)

    def _complete(self, url: str, path: Path) -> None:
        ready: List[str] = []
        with self._lock:
            node = self._nodes[url]
            node.state = TaskState.WRITTEN
            self.written[url] = path
            for w in node.waiters:
                parent = self._nodes[w]
                parent.pending.discard(url)
                if (
                    not parent.pending
                    and not parent.discovering
                    and parent.state is TaskState.CHILDREN_QUEUED
                ):
                    parent.state = TaskState.CHILDREN_DONE
                    ready.append(w)
            node.waiters.clear()
        if url == self._root:
            self._finished.set()
        for w in ready:
            self._finalize(w)

    def _set_state(self, url: str, state: TaskState) -> None:
        with self._lock:
            node = self._nodes.get(url)
            if node is not None:
                node.state = state


# -------------------- Manifest --------------------


def write_manifest(
    root_url: str, settings: Settings, mapper: PathMapper, written: Dict[str, Path]
) -> Path:
    def rel(p: Path) -> str:
        return Path(os.path.relpath(p, mapper.root)).as_posix()

    # RFC3339 UTC timestamp without microseconds
    created_ts = (
        datetime.now(timezone.utc)
        .replace(microsecond=0)
        .isoformat()
        .replace("+00:00", "Z")
    )
    data = {
        "source": root_url,
        "created_utc": created_ts,
        "layout": "flat" if settings.flatten else "hierarchical",
        "rewritten": settings.rewrite,
        "files": {u: rel(p) for u, p in sorted(written.items())},
    }
    path = mapper.root / MANIFEST_NAME
    atomic_write_bytes(path, json.dumps(data, indent=2).encode("utf-8"))
    logging.info("manifest written: %s", path)
    return path


# -------------------- Config loader --------------------

CONFIG_GROUPS = ("general", "crawl", "filter", "http", "output")


def load_config_file(path: str) -> Dict[str, Union[str, int, float, bool, List[str]]]:
    p = Path(path)
    suf = p.suffix.lower()
    if suf in {".toml", ".tml"}:
        try:
            import tomllib  # py311+
        except ImportError:
            import tomli as tomllib  # backport
        with open(p, "rb") as f:
            return tomllib.load(f) or {}
    elif suf in {".yaml", ".yml"}:
        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise RuntimeError("Top-level YAML must be a mapping")
            return data
    else:
        raise RuntimeError("Unsupported config format. Use .toml or .yaml")


def flatten_config(cfg: Dict) -> Dict:
    flat = {k: v for k, v in cfg.items() if not isinstance(v, dict)}
    for g in CONFIG_GROUPS:
        if isinstance(cfg.get(g), dict):
            flat.update(cfg[g])
    flat = {str(k).replace("-", "_"): v for k, v in flat.items()}
    for key in ("include", "exclude"):
        if isinstance(flat.get(key), str):
            flat[key] = [flat[key]]
    return flat


# -------------------- CLI --------------------


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="m3u8-mirror",
        description="Mirror an M3U8 playlist and everything it references.",
    )
    p.add_argument("--config", type=str, help="path to config.toml|.yaml", default=None)

    p.add_argument("url", help="http(s) URL of the playlist")
    p.add_argument("-o", "--output", default=".", help="output directory")
    p.add_argument(
        "--no-rewrite",
        action="store_true",
        help="keep the original URLs inside mirrored playlists",
    )
    p.add_argument(
        "--flatten",
        action="store_true",
        help="write every file directly into the output directory",
    )
    p.add_argument(
        "--include",
        action="append",
        default=[],
        help="extensions to download, comma separated (e.g. .ts,.key)",
    )
    p.add_argument(
        "--exclude",
        action="append",
        default=[],
        help="extensions to skip, comma separated (e.g. .vtt,.srt)",
    )
    p.add_argument(
        "-c", "--concurrency", type=int, default=5, help="concurrent downloads"
    )
    p.add_argument(
        "--user-agent", type=str, default=DEFAULT_USER_AGENT, help="User-Agent header"
    )
    p.add_argument(
        "--timeout", type=float, default=30.0, help="request timeout seconds"
    )
    p.add_argument("--retries", type=int, default=3, help="retries per request")
    p.add_argument(
        "--follow-renditions",
        action="store_true",
        help="crawl playlists referenced from EXT-X-MEDIA / EXT-X-I-FRAME-STREAM-INF",
    )
    p.add_argument(
        "--manifest", action="store_true", help="write a url -> path manifest"
    )
    p.add_argument("--no-progress", action="store_true", help="no progress output")
    p.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    return p


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_arg_parser()
    preliminary, _ = parser.parse_known_args(argv)
    if preliminary.config:
        cfg = load_config_file(preliminary.config)
        if isinstance(cfg, dict):
            parser.set_defaults(**flatten_config(cfg))
    return parser.parse_args(argv)


def settings_from_args(args: argparse.Namespace) -> Settings:
    return Settings(
        output_dir=args.output,
        flatten=args.flatten,
        rewrite=not args.no_rewrite,
        concurrency=max(1, args.concurrency),
        include=normalize_extensions(args.include),
        exclude=normalize_extensions(args.exclude),
        user_agent=args.user_agent or DEFAULT_USER_AGENT,
        timeout=max(1.0, args.timeout),
        max_retries=max(0, args.retries),
        follow_renditions=args.follow_renditions,
        progress=not args.no_progress,
        manifest=args.manifest,
    )


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    if urlsplit(args.url).scheme not in {"http", "https"}:
        print("Invalid URL. Use http:// or https://")
        sys.exit(1)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )
    settings = settings_from_args(args)
    logging.debug("settings: %s", settings)

    progress = Progress(enabled=settings.progress)
    fetcher = HttpFetcher(settings)
    mirror = Mirror(settings, fetcher=fetcher, progress=progress)
    progress.start()
    try:
        root_path = mirror.run(args.url)
    except MirrorError as e:
        logging.error("mirror failed: %s", e)
        sys.exit(1)
    finally:
        progress.stop()
        fetcher.close()

    if settings.manifest:
        write_manifest(args.url, settings, mirror.mapper, mirror.written)
    if settings.progress:
        print(progress.summary())
    print(f"Playlist: {root_path}")


if __name__ == "__main__":
    main()
