"""Recover the representative product image of a product-page URL."""

from .extractor import ExtractionPipeline
from .models import ErrorKind, ExtractionResult, Failure, Success

__all__ = ["ErrorKind", "ExtractionPipeline", "ExtractionResult", "Failure", "Success"]
