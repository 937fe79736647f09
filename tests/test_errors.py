import sqlite3

from flyer_ingest.errors import (
    ExtractionError,
    ExtractionErrorKind,
    PipelineError,
    TerminalJobFailure,
    TransientIOError,
    summarize_error,
)
from flyer_ingest.pipeline.jobs import _AllPagesTransient


def test_foreign_exceptions_keep_their_detail_out_of_the_summary():
    summary = summarize_error(
        RuntimeError("database disk image is malformed at /srv/var/catalog/catalog.sqlite3")
    )
    assert summary == "Unexpected error (RuntimeError)"
    assert summarize_error(sqlite3.OperationalError("no such table: products")) == "Unexpected error (OperationalError)"


def test_subclasses_use_their_family_prefix():
    assert summarize_error(_AllPagesTransient("all 3 page(s) failed")) == "Temporary I/O problem: all 3 page(s) failed"
    assert summarize_error(PipelineError("iki: HTTP 404")) == "Pipeline error: iki: HTTP 404"


def test_reason_and_kind_are_shown():
    assert summarize_error(TerminalJobFailure("DocumentCorrupt", "not a PDF")) == "Job failed (DocumentCorrupt): not a PDF"
    assert summarize_error(ExtractionError(ExtractionErrorKind.TRANSIENT, "timeout")) == (
        "Product extraction failed (transient): timeout"
    )


def test_summary_is_one_bounded_line():
    text = summarize_error(TransientIOError("line one\nline two " + "x" * 500), limit=60)
    assert "\n" not in text
    assert len(text) == 60
    assert text.endswith("...")
