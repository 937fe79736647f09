import pytest

from conftest import make_pdf
from flyer_ingest.config import RenderConfig
from flyer_ingest.errors import RenderError
from flyer_ingest.pipeline.render import PdfRenderer, page_count


A4 = (595, 842)


def test_every_page_rendered_in_order():
    pdf = make_pdf([A4, A4, A4])
    pages = list(PdfRenderer(RenderConfig(dpi=50)).render(pdf))

    assert [p.index for p in pages] == [0, 1, 2]
    assert all(p.ok for p in pages)
    assert all(p.image.startswith(b"\x89PNG") for p in pages)
    assert pages[0].mime_type == "image/png"
    assert pages[0].width > 0 and pages[0].height > pages[0].width


def test_jpeg_output():
    pdf = make_pdf([A4])
    (page,) = PdfRenderer(RenderConfig(dpi=50, image_format="jpeg")).render(pdf)
    assert page.mime_type == "image/jpeg"
    assert page.image.startswith(b"\xff\xd8")


def test_page_count():
    assert page_count(make_pdf([A4, A4])) == 2


@pytest.mark.parametrize("data", [b"", b"this is not a pdf", b"%PDF-1.7\n garbage without objects"])
def test_unreadable_document_is_document_scoped(data):
    renderer = PdfRenderer(RenderConfig())
    with pytest.raises(RenderError) as exc:
        list(renderer.render(data))
    assert exc.value.document_scope is True


def test_oversized_input_rejected_before_decoding():
    pdf = make_pdf([A4])
    with pytest.raises(RenderError) as exc:
        PdfRenderer(RenderConfig(max_pdf_bytes=len(pdf) - 1)).render(pdf)
    assert exc.value.document_scope is True


def test_oversized_page_fails_only_that_page():
    pdf = make_pdf([(300, 300), (600, 2400), (300, 300)])
    pages = list(PdfRenderer(RenderConfig(dpi=72, max_page_dimension=1000)).render(pdf))

    assert [p.index for p in pages] == [0, 1, 2]
    assert pages[0].ok and pages[2].ok
    assert not pages[1].ok
    assert pages[1].error.page_index == 1
    assert pages[1].error.document_scope is False
