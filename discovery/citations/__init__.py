"""Citation provenance for generated replies."""

from discovery.citations.sources import ClaimSpan, Source, extract_sources, locate_claims
from discovery.citations.tracker import CitationDraft, CitationTracker

__all__ = [
    "CitationDraft",
    "CitationTracker",
    "ClaimSpan",
    "Source",
    "extract_sources",
    "locate_claims",
]
