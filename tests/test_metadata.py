import pytest

from streamclip.errors import SourceLookupError
from streamclip.metadata import SourceInfo, info_from_dict, lookup_source


def test_info_from_dict_vod():
    info = info_from_dict({"id": "abc123", "title": "Talk", "duration": 3600.5, "live_status": "was_live"})
    assert info == SourceInfo(duration_seconds=3600.5, is_live=False, title="Talk", canonical_id="abc123")


@pytest.mark.parametrize(
    "data",
    [
        {"is_live": True},
        {"live_status": "is_live"},
        {"live_status": "is_upcoming", "duration": None},
    ],
)
def test_info_from_dict_live(data):
    info = info_from_dict(data)
    assert info.is_live
    assert info.duration_seconds == 0.0


class _FakeYDL:
    result = None
    error = None
    opts = None

    def __init__(self, opts):
        _FakeYDL.opts = opts

    def __enter__(self):
        return self

    def __exit__(self, *args):
        return False

    def extract_info(self, url, download=True):
        assert download is False
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def fake_ydl(monkeypatch):
    yt_dlp = pytest.importorskip("yt_dlp")
    _FakeYDL.result = None
    _FakeYDL.error = None
    monkeypatch.setattr(yt_dlp, "YoutubeDL", _FakeYDL)
    return _FakeYDL


def test_lookup_source(fake_ydl):
    fake_ydl.result = {"id": "xyz", "title": "Stream", "duration": 90}
    info = lookup_source("https://example.com/v/xyz")
    assert info.canonical_id == "xyz"
    assert info.duration_seconds == 90.0
    assert fake_ydl.opts["skip_download"] is True
    assert fake_ydl.opts["noplaylist"] is True


def test_lookup_source_wraps_errors(fake_ydl):
    fake_ydl.error = RuntimeError("Video unavailable")
    with pytest.raises(SourceLookupError, match="Video unavailable"):
        lookup_source("https://example.com/v/gone")


def test_lookup_source_empty_result(fake_ydl):
    with pytest.raises(SourceLookupError, match="no metadata"):
        lookup_source("https://example.com/v/empty")
