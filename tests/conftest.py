"""Shared fixtures: an in-memory fetcher and a small HLS tree."""

import threading
import time

import pytest

from m3u8_mirror import FetchError, Fetcher, FileSink, Settings

MASTER = "https://example.com/live/master.m3u8"
HI = "https://example.com/live/hi/index.m3u8"
LO = "https://example.com/live/lo/index.m3u8"
SUBS = "https://example.com/live/subs/en.vtt"
KEY = "https://example.com/keys/k1.key"
AD = "https://example.com/shared/ad.ts"


class FakeFetcher(Fetcher):
    """Serves canned bodies, counting calls per URL."""

    def __init__(self, resources, fail=None, delay=0.0):
        self.resources = dict(resources)
        self.fail = set(fail or [])
        self.delay = delay
        self.calls = {}
        self._lock = threading.Lock()

    def fetch(self, ctx, url):
        with self._lock:
            self.calls[url] = self.calls.get(url, 0) + 1
        if self.delay:
            time.sleep(self.delay)
        if url in self.fail or url not in self.resources:
            raise FetchError(url, "unexpected status code 404")
        data = self.resources[url]
        return data.encode("utf-8") if isinstance(data, str) else data


class RecordingSink(FileSink):
    """FileSink that remembers the order URLs were written in."""

    def __init__(self, mapper):
        super().__init__(mapper)
        self.order = []
        self._lock = threading.Lock()

    def write(self, url, data):
        path = super().write(url, data)
        with self._lock:
            self.order.append(url)
        return path


def _site():
    res = {
        MASTER: (
            "#EXTM3U\n"
            "#EXT-X-VERSION:3\n"
            f'#EXT-X-MEDIA:TYPE=SUBTITLES,GROUP-ID="subs",NAME="English",URI="{SUBS}"\n'
            "#EXT-X-STREAM-INF:BANDWIDTH=1280000\n"
            "hi/index.m3u8\n"
            "#EXT-X-STREAM-INF:BANDWIDTH=640000\n"
            "lo/index.m3u8\n"
        ),
        HI: (
            "#EXTM3U\n"
            "#EXT-X-TARGETDURATION:10\n"
            '#EXT-X-KEY:METHOD=AES-128,URI="/keys/k1.key"\n'
            '#EXT-X-MAP:URI="init.mp4"\n'
            "#EXTINF:10.0,\n"
            "seg0.ts\n"
            "#EXTINF:10.0,\n"
            "seg1.ts\n"
            "#EXTINF:5.0,\n"
            f"{AD}\n"
            "#EXT-X-ENDLIST\n"
        ),
        LO: (
            "#EXTM3U\n"
            "#EXT-X-TARGETDURATION:10\n"
            f'#EXT-X-KEY:METHOD=AES-128,URI="{KEY}"\n'
            '#EXT-X-MAP:URI="init.mp4"\n'
            "#EXTINF:10.0,\n"
            "seg0.ts\n"
            "#EXTINF:10.0,\n"
            "seg1.ts\n"
            "#EXTINF:5.0,\n"
            "../../shared/ad.ts\n"
            "#EXT-X-ENDLIST\n"
        ),
    }
    for url in (
        SUBS,
        KEY,
        AD,
        "https://example.com/live/hi/init.mp4",
        "https://example.com/live/hi/seg0.ts",
        "https://example.com/live/hi/seg1.ts",
        "https://example.com/live/lo/init.mp4",
        "https://example.com/live/lo/seg0.ts",
        "https://example.com/live/lo/seg1.ts",
    ):
        res[url] = f"body of {url}".encode("utf-8")
    return res


@pytest.fixture
def site():
    return _site()


@pytest.fixture
def out_dir(tmp_path):
    return tmp_path / "out"


@pytest.fixture
def make_settings(out_dir):
    def _make(**kwargs):
        kwargs.setdefault("output_dir", str(out_dir))
        kwargs.setdefault("progress", False)
        return Settings(**kwargs)

    return _make
