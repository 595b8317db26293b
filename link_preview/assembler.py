from __future__ import annotations

import logging

from .models import CascadeReport, ErrorKind, ExtractionResult, Failure, NotFound, Success
from .normalizer import NormalizationError, normalize

logger = logging.getLogger(__name__)


def assemble(report: CascadeReport, base_url: str) -> ExtractionResult:
    """Package a cascade report: a normalized URL or a failure with the full rule trail."""
    if report.match is None:
        return Failure(
            ErrorKind.NO_MATCH_FOUND,
            f"No image found after trying {len(report.tried)} rule(s)",
            report.tried,
        )

    match = report.match
    try:
        image_url = normalize(match.image_ref, base_url)
    except NormalizationError as exc:
        logger.warning("Rule %s matched %r but it could not be normalized: %s", match.rule_id, match.image_ref[:100], exc)
        return Failure(
            ErrorKind.URL_PROCESSING_ERROR,
            f"Image reference from {match.rule_id} could not be resolved: {exc}",
            report.tried + (NotFound(match.rule_id, f"normalization failed: {exc}"),),
        )

    return Success(image_url, match.rule_id, report.tried)


def failure_from_error(kind: ErrorKind, message: str) -> Failure:
    return Failure(kind, message, ())
