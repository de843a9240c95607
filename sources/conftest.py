# conftest.py
"""Shared fixtures: a real sqlite-backed repository, a compass pointing east,
a GPS fix in Bangkok and the capture / area stack wired around them, plus a
scripted HTTP endpoint standing in for aiohttp."""

from types import SimpleNamespace
from typing import List

import pytest

from compass import CompassReconciler, StaticMagnetometer
from models import GpsFix, Notice
from payload_codec import TelemetryDecoder
from point_capture import PointCapture
from reading_aggregator import ReadingAggregator
from storage import KeyValueStore
from survey_areas import SurveyAreaManager
from survey_repository import SurveyRepository
from upload import UploadResult, UploadStatus


class FakeUploader:
    """Stands in for UploadPipeline; records what it was asked to send."""

    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self.result = UploadResult(UploadStatus.SUCCESS, "sent", http_status=200)

    async def submit_area(self, area):
        self.calls.append(("area", area.id))
        return self.result

    async def submit_loose(self, **kwargs):
        self.calls.append(("loose", kwargs))
        return self.result


# ----------------------------------------------------------------------
# Fake aiohttp session
# ----------------------------------------------------------------------
class FakeResponse:
    def __init__(self, status, text=""):
        self.status = status
        self._text = text

    async def text(self):
        return self._text

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class Server:
    """Scripted endpoint: ``responses`` are consumed one per POST."""

    def __init__(self, *responses, probe_error=None):
        self.responses = list(responses)
        self.probe_error = probe_error
        self.heads = []
        self.posts = []
        self.timeouts = []

    def session(self, timeout=None):
        self.timeouts.append(timeout.total if timeout else None)
        return FakeSession(self)


class FakeSession:
    def __init__(self, server):
        self.server = server

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def head(self, url, **kwargs):
        self.server.heads.append(url)
        if self.server.probe_error is not None:
            raise self.server.probe_error
        return FakeResponse(200)

    def post(self, url, data=None):
        self.server.posts.append((url, data))
        item = self.server.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


def feed(aggregator: ReadingAggregator, *payloads: bytes) -> None:
    """Push raw notification payloads through the decoder into the aggregator."""
    decoder = TelemetryDecoder()
    for payload in payloads:
        for fld in decoder.decode(payload):
            aggregator.apply(fld)


@pytest.fixture
def store(tmp_path):
    kv = KeyValueStore(tmp_path / "survey.db")
    yield kv
    kv.close()


@pytest.fixture
def repo(store):
    return SurveyRepository(store)


@pytest.fixture
def compass():
    c = CompassReconciler()
    c.poll(StaticMagnetometer.pointing_at(90))
    return c


@pytest.fixture
def location():
    return SimpleNamespace(latest=GpsFix(13.736, 100.523, altitude=250.0, accuracy=4.0))


@pytest.fixture
def stack(repo, compass, location):
    notices: List[Notice] = []
    uploader = FakeUploader()
    aggregator = ReadingAggregator(compass, location)
    areas = SurveyAreaManager(repo, location, compass, uploader=uploader, notify=notices.append)
    capture = PointCapture(aggregator, areas, repo, device_id=lambda: "24:0A:C4:00:00:01")
    return SimpleNamespace(
        repo=repo,
        compass=compass,
        location=location,
        aggregator=aggregator,
        areas=areas,
        capture=capture,
        uploader=uploader,
        notices=notices,
    )
