"""Flyer processing pipeline: rendering, extraction, jobs, matching, scheduling.

Modules:
- render: PDF -> per-page raster images
- extraction: vision-model client for one page image
- parser: validation of the untrusted model payload
- jobs: ExtractionJob state machine
- matching: listing -> ProductMaster resolution and price history
- queue: lease queue in SQLite
- scheduler: worker pool over the queue
- stores: per-store discovery and download adapters
"""

from .extraction import ExtractionClient, ExtractionContext
from .jobs import Disposition, JobOutcome, JobRunner
from .matching import CreatedNew, MatchedExisting, MatchingEngine, Rejected
from .queue import SqliteJobQueue
from .render import PdfRenderer, RenderedPage
from .scheduler import Scheduler, build_pipeline
from .stores import ListingPageAdapter, StoreRegistry, default_registry

__all__ = [
    "ExtractionClient",
    "ExtractionContext",
    "Disposition",
    "JobOutcome",
    "JobRunner",
    "CreatedNew",
    "MatchedExisting",
    "MatchingEngine",
    "Rejected",
    "SqliteJobQueue",
    "PdfRenderer",
    "RenderedPage",
    "Scheduler",
    "build_pipeline",
    "ListingPageAdapter",
    "StoreRegistry",
    "default_registry",
]
