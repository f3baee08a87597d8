"""Tests for playlist rewriting."""

from m3u8_mirror import PathMapper, rewrite_playlist

SOURCE = "https://example.com/path/sub/playlist.m3u8"


def _mapper(tmp_path, *urls, flatten=False):
    mapper = PathMapper(tmp_path, flatten=flatten)
    mapper.assign_path(SOURCE)
    for u in urls:
        mapper.assign_path(u)
    return mapper


def test_rewrites_reference_lines(tmp_path):
    mapper = _mapper(
        tmp_path,
        "https://example.com/path/segment.ts",
        "https://example.com/path/sub/local.ts",
    )
    content = (
        b"#EXTM3U\n"
        b"#EXTINF:10,\n"
        b"https://example.com/path/segment.ts\n"
        b"\n"
        b"#EXTINF:10,\n"
        b"local.ts\n"
    )

    out = rewrite_playlist(content, SOURCE, mapper)

    assert out == (
        b"#EXTM3U\n"
        b"#EXTINF:10,\n"
        b"../segment.ts\n"
        b"\n"
        b"#EXTINF:10,\n"
        b"local.ts\n"
    )


def test_rewrites_every_uri_in_tag_lines(tmp_path):
    mapper = _mapper(
        tmp_path, "https://example.com/keys/a.key", "https://example.com/path/sub/b.key"
    )
    content = b'#EXT-X-KEY:METHOD=AES-128,URI="/keys/a.key",X-ALT-URI="https://example.com/path/sub/b.key"\n'

    out = rewrite_playlist(content, SOURCE, mapper)

    assert out == b'#EXT-X-KEY:METHOD=AES-128,URI="../../keys/a.key",X-ALT-URI="b.key"\n'


def test_unmapped_references_keep_original_text(tmp_path):
    """References the crawl skipped stay as they were."""
    mapper = _mapper(tmp_path, "https://example.com/path/sub/seg.ts")
    content = (
        b'#EXT-X-MEDIA:TYPE=SUBTITLES,URI="https://cdn.example.com/en.vtt"\n'
        b"https://cdn.example.com/other.ts\n"
        b"seg.ts\n"
    )

    out = rewrite_playlist(content, SOURCE, mapper)

    assert out == (
        b'#EXT-X-MEDIA:TYPE=SUBTITLES,URI="https://cdn.example.com/en.vtt"\n'
        b"https://cdn.example.com/other.ts\n"
        b"seg.ts\n"
    )
    assert len(mapper) == 2


def test_tag_line_with_one_unmapped_uri_is_left_alone(tmp_path):
    mapper = _mapper(tmp_path, "https://example.com/path/sub/a.key")
    content = b'#EXT-X-KEY:URI="https://example.com/path/sub/a.key",X-URI="missing.key"\n'

    assert rewrite_playlist(content, SOURCE, mapper) == content


def test_passes_other_lines_through_byte_for_byte(tmp_path):
    mapper = _mapper(tmp_path, "https://example.com/path/sub/seg.ts")
    content = b"#EXTM3U\r\n# comment \xff\r\n   \r\n#EXTINF:1,\r\nhttps://example.com/path/sub/seg.ts"

    out = rewrite_playlist(content, SOURCE, mapper)

    assert out == b"#EXTM3U\r\n# comment \xff\r\n   \r\n#EXTINF:1,\r\nseg.ts"


def test_flattened_rewrite(tmp_path):
    mapper = _mapper(
        tmp_path, "https://a.example.com/x/seg.ts", "https://b.example.com/y/seg.ts", flatten=True
    )
    content = b"https://a.example.com/x/seg.ts\nhttps://b.example.com/y/seg.ts\n"

    lines = rewrite_playlist(content, SOURCE, mapper).decode().splitlines()

    assert lines[0] == "seg.ts"
    assert lines[1].startswith("seg_") and lines[1].endswith(".ts")
    assert "/" not in lines[1]
