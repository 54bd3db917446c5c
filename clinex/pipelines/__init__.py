"""Extraction pipeline tying the six stages together."""

from .extraction import DomainFailure, ExtractionPipeline, PipelineReport

__all__ = ["DomainFailure", "ExtractionPipeline", "PipelineReport"]
