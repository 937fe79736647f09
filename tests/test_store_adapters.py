from datetime import date
from types import SimpleNamespace

import pytest
import requests

from flyer_ingest.domain.models import FlyerRef
from flyer_ingest.errors import PipelineError, SourceQuotaError, TransientIOError
from flyer_ingest.pipeline.stores import (
    STORE_SPECS,
    ListingPageAdapter,
    default_registry,
    validity_from_text,
    validity_from_url,
)

IKI_SPEC = next(spec for spec in STORE_SPECS if spec.code == "iki")

IKI_HTML = """
<html><body>
  <div class="title-wrapper"><h1 class="text-center">IKI savaitės leidinys</h1></div>
  <div class="publication">
    <div class="date-block">Pasiūlymai galioja 2025 11 03 - 2025 11 09</div>
    <div class="mt-4"><a href="/wp-content/uploads/2025/11/03/IKI-leidinys-45.pdf">ATSIŲSTI LEIDINĮ</a></div>
  </div>
  <a href="/kontaktai">Kontaktai</a>
</body></html>
"""


class FakeSession:
    def __init__(self, responses):
        self.responses = dict(responses)
        self.requests = []

    def get(self, url, headers=None, timeout=None):
        self.requests.append((url, headers, timeout))
        response = self.responses[url]
        if isinstance(response, BaseException):
            raise response
        return response


def response(status=200, text="", content=b"", headers=None):
    return SimpleNamespace(status_code=status, text=text, content=content, headers=headers or {})


def test_iki_listing_page_yields_pdf_flyer():
    session = FakeSession({IKI_SPEC.listing_url: response(text=IKI_HTML)})
    adapter = ListingPageAdapter(IKI_SPEC, session=session, user_agent="TestBot/1.0", timeout_seconds=5)

    (flyer,) = adapter.discover()

    assert flyer.url == "https://iki.lt/wp-content/uploads/2025/11/03/IKI-leidinys-45.pdf"
    assert flyer.identity == flyer.url
    assert flyer.store_code == "iki"
    assert flyer.title == "ATSIŲSTI LEIDINĮ"
    assert (flyer.valid_from, flyer.valid_to) == (date(2025, 11, 3), date(2025, 11, 9))
    url, headers, timeout = session.requests[0]
    assert headers["User-Agent"] == "TestBot/1.0"
    assert timeout == 5


def test_raw_pdf_urls_are_a_fallback():
    html = '<script>window.flyer = "https://cdn.example.lt/2025/11/05/rimi.pdf";</script>'
    adapter = ListingPageAdapter(IKI_SPEC, session=FakeSession({}))
    (flyer,) = adapter.parse_listing(html)
    assert flyer.url == "https://cdn.example.lt/2025/11/05/rimi.pdf"
    assert (flyer.valid_from, flyer.valid_to) == (date(2025, 11, 3), date(2025, 11, 9))


def test_download_returns_pdf_bytes():
    ref = FlyerRef("iki", "https://iki.lt/a.pdf", "https://iki.lt/a.pdf")
    session = FakeSession({ref.url: response(content=b"%PDF-1.7 ...")})
    assert ListingPageAdapter(IKI_SPEC, session=session).download(ref) == b"%PDF-1.7 ..."


def test_oversized_download_rejected():
    ref = FlyerRef("iki", "https://iki.lt/a.pdf", "https://iki.lt/a.pdf")
    session = FakeSession({ref.url: response(content=b"x" * 11)})
    with pytest.raises(PipelineError):
        ListingPageAdapter(IKI_SPEC, session=session, max_pdf_bytes=10).download(ref)


@pytest.mark.parametrize(
    "outcome, expected",
    [
        (response(status=429, headers={"Retry-After": "120"}), SourceQuotaError),
        (response(status=503), TransientIOError),
        (requests.Timeout("read timed out"), TransientIOError),
        (requests.ConnectionError("reset by peer"), TransientIOError),
        (response(status=404), PipelineError),
    ],
)
def test_http_failures_are_classified(outcome, expected):
    session = FakeSession({IKI_SPEC.listing_url: outcome})
    with pytest.raises(expected) as exc:
        ListingPageAdapter(IKI_SPEC, session=session).discover()
    if expected is SourceQuotaError:
        assert exc.value.retry_after == 120.0
        assert exc.value.source == "iki"


def test_validity_parsing():
    assert validity_from_text("Pasiūlymai galioja 2025 11 03 - 2025 11 09") == (date(2025, 11, 3), date(2025, 11, 9))
    assert validity_from_text("galioja iki 2025-11-09") == (date(2025, 11, 3), date(2025, 11, 9))
    assert validity_from_text("kas savaitę") == (None, None)
    assert validity_from_url("https://iki.lt/uploads/2025/11/05/x.pdf") == (date(2025, 11, 3), date(2025, 11, 9))
    assert validity_from_url("https://iki.lt/x.pdf") == (None, None)


def test_default_registry_knows_the_stores():
    registry = default_registry(session=FakeSession({}))
    assert registry.codes() == ["iki", "maxima", "rimi"]
    assert "SUPER KAINA" in registry.locale("iki").prompt_hint
    fallback = registry.locale("lidl")
    assert fallback.code == "lidl" and fallback.currency == "EUR"
    with pytest.raises(KeyError):
        registry.get("lidl")
