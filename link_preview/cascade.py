from __future__ import annotations

import asyncio
import html
import json
import logging
import re
from typing import Any, Iterator, List, Optional, Tuple

from .assembler import assemble
from .models import (
    CascadeReport,
    ElementRule,
    ExtractionResult,
    Found,
    JsonLdRule,
    MetaRule,
    NotFound,
    SelectorOutcome,
    SelectorRule,
    SiteProfile,
)
from .normalizer import is_placeholder

logger = logging.getLogger(__name__)

# absolute image URL embedded in markup, e.g. inside <noscript> or inline styles
_EMBEDDED_IMAGE_REGEX = re.compile(
    r"""https?://[^\s"'<>()\\]+?\.(?:jpe?g|png|webp|gif|avif)(?:\?[^\s"'<>()\\]*)?""",
    re.IGNORECASE,
)
# a srcset URL runs to the next whitespace; a trailing comma ends the candidate
_SRCSET_URL = re.compile(r"[^\s,]\S*")
_DESCRIPTOR_REGEX = re.compile(r"^(\d+(?:\.\d+)?)([wx])$", re.IGNORECASE)

PLACEHOLDER_REJECTED = "placeholder rejected"


def _srcset_candidates(value: str) -> Iterator[Tuple[str, List[str]]]:
    position = 0
    while True:
        match = _SRCSET_URL.search(value, position)
        if match is None:
            return
        url = match.group(0)
        position = match.end()
        if url.endswith(","):
            yield url.rstrip(","), []
            continue
        end = value.find(",", position)
        if end == -1:
            end = len(value)
        yield url, value[position:end].split()
        position = end + 1


def pick_from_srcset(value: str) -> Optional[str]:
    """Return the largest candidate of a srcset value."""
    best: Optional[str] = None
    best_size = -1.0
    for index, (url, descriptors) in enumerate(_srcset_candidates(value)):
        if not url or is_placeholder(url):
            continue
        size = float(index) / 1000
        if descriptors:
            match = _DESCRIPTOR_REGEX.match(descriptors[-1])
            if match:
                size = float(match.group(1))
        if size > best_size:
            best, best_size = url, size
    return best


async def _evaluate_meta(page, rule: MetaRule) -> SelectorOutcome:
    element = await page.query(rule.selector, (rule.attribute,))
    if element is None:
        return NotFound(rule.rule_id, "tag not found")
    value = element.attributes.get(rule.attribute)
    if value is None:
        return NotFound(rule.rule_id, f"{rule.attribute} attribute absent")
    if not value.strip():
        return NotFound(rule.rule_id, f"{rule.attribute} attribute empty")
    if is_placeholder(value):
        return NotFound(rule.rule_id, f"{PLACEHOLDER_REJECTED} ({rule.attribute})")
    return Found(value.strip(), rule.rule_id)


async def _evaluate_element(page, rule: ElementRule) -> SelectorOutcome:
    element = await page.query(rule.selector, rule.attributes)
    if element is None:
        return NotFound(rule.rule_id, "element not found")

    placeholders: List[str] = []
    for name in rule.attributes:
        value = (element.attributes.get(name) or "").strip()
        if not value:
            continue
        if is_placeholder(value):
            placeholders.append(name)
            continue
        candidate = pick_from_srcset(value) if name.endswith("srcset") else value
        if candidate:
            return Found(candidate, rule.rule_id)

    if rule.scan_markup and element.inner_html:
        match = _EMBEDDED_IMAGE_REGEX.search(element.inner_html)
        if match:
            return Found(html.unescape(match.group(0)), rule.rule_id)

    if placeholders:
        return NotFound(rule.rule_id, f"{PLACEHOLDER_REJECTED} ({', '.join(placeholders)})")
    return NotFound(rule.rule_id, f"attribute absent ({', '.join(rule.attributes)})")


def _json_ld_items(data: Any) -> Iterator[dict]:
    if isinstance(data, list):
        for item in data:
            yield from _json_ld_items(item)
    elif isinstance(data, dict):
        yield data
        if "@graph" in data:
            yield from _json_ld_items(data["@graph"])


def _is_product(item: dict) -> bool:
    item_type = item.get("@type")
    if isinstance(item_type, list):
        return "Product" in item_type
    return item_type == "Product"


def _json_ld_image(image_data: Any) -> Optional[str]:
    if isinstance(image_data, str):
        return image_data
    if isinstance(image_data, list) and image_data:
        return _json_ld_image(image_data[0])
    if isinstance(image_data, dict):
        return image_data.get("url") or image_data.get("contentUrl")
    return None


async def _evaluate_json_ld(page, rule: JsonLdRule) -> SelectorOutcome:
    blobs = await page.query_texts(rule.selector)
    if not blobs:
        return NotFound(rule.rule_id, "no JSON-LD scripts")
    saw_placeholder = False
    for blob in blobs:
        try:
            data = json.loads(blob)
        except json.JSONDecodeError:
            continue
        for item in _json_ld_items(data):
            if not _is_product(item):
                continue
            image = _json_ld_image(item.get("image"))
            if not isinstance(image, str) or not image.strip():
                continue
            if is_placeholder(image):
                saw_placeholder = True
                continue
            return Found(image.strip(), rule.rule_id)
    if saw_placeholder:
        return NotFound(rule.rule_id, f"{PLACEHOLDER_REJECTED} (Product.image)")
    return NotFound(rule.rule_id, "no Product image in JSON-LD")


async def evaluate_rule(page, rule: SelectorRule) -> SelectorOutcome:
    try:
        if isinstance(rule, MetaRule):
            outcome = await _evaluate_meta(page, rule)
        elif isinstance(rule, ElementRule):
            outcome = await _evaluate_element(page, rule)
        elif isinstance(rule, JsonLdRule):
            outcome = await _evaluate_json_ld(page, rule)
        else:
            raise TypeError(f"unsupported rule type {type(rule).__name__}")
    except Exception as exc:
        logger.debug("Rule %s raised: %s", rule.rule_id, exc)
        return NotFound(rule.rule_id, f"evaluation error: {exc}")

    if isinstance(outcome, Found):
        logger.debug("Rule %s matched: %s", rule.rule_id, outcome.image_ref[:100])
    else:
        logger.debug("Rule %s missed: %s", rule.rule_id, outcome.reason)
    return outcome


async def _evaluate_direct(page, profile: SiteProfile) -> SelectorOutcome:
    rule_id = profile.direct_rule_id
    try:
        value = await profile.direct(page)
    except Exception as exc:
        logger.debug("Direct evaluation for %s raised: %s", profile.name, exc)
        return NotFound(rule_id, f"evaluation error: {exc}")
    if not isinstance(value, str) or not value.strip():
        return NotFound(rule_id, "direct evaluation returned nothing")
    if is_placeholder(value):
        return NotFound(rule_id, PLACEHOLDER_REJECTED)
    return Found(value.strip(), rule_id)


async def run_cascade(page, profile: SiteProfile) -> CascadeReport:
    """Direct evaluation, then priority rules in order, then fallback rules concurrently.

    Fallback rules run together but the winner is the earliest declared
    rule that matched, whatever order the evaluations finished in.
    """
    tried: List[NotFound] = []

    if profile.direct is not None:
        outcome = await _evaluate_direct(page, profile)
        if isinstance(outcome, Found):
            return CascadeReport(outcome, ())
        tried.append(outcome)

    for rule in profile.priority:
        outcome = await evaluate_rule(page, rule)
        if isinstance(outcome, Found):
            return CascadeReport(outcome, tuple(tried))
        tried.append(outcome)

    match: Optional[Found] = None
    if profile.fallback:
        outcomes = await asyncio.gather(*(evaluate_rule(page, rule) for rule in profile.fallback))
        for outcome in outcomes:
            if isinstance(outcome, Found):
                if match is None:
                    match = outcome
            else:
                tried.append(outcome)

    return CascadeReport(match, tuple(tried))


async def extract(page, profile: SiteProfile, base_url: str) -> ExtractionResult:
    report = await run_cascade(page, profile)
    return assemble(report, base_url)
