"""Site profiles and the classifier that picks one for a URL.

Each profile bundles the selector rules for one retailer. Profiles are
built once at import (built-ins) or at startup (JSON overrides) and never
mutated afterwards.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import urlsplit

from .models import ElementRule, JsonLdRule, MetaRule, ResourcePolicy, SelectorRule, SiteProfile
from .normalizer import is_placeholder

logger = logging.getLogger(__name__)

IMAGE_ATTRIBUTES = (
    "src",
    "data-src",
    "data-lazy-src",
    "data-original",
    "data-zoom-image",
    "data-old-hires",
    "srcset",
    "data-srcset",
)

DOCUMENT_ONLY = ResourcePolicy(allowed_types=frozenset({"document", "script"}))
FULL_FIDELITY = ResourcePolicy(block=False)


def meta_property(name: str) -> MetaRule:
    return MetaRule(name, f'meta[property="{name}"]')


def meta_name(name: str, rule_id: Optional[str] = None) -> MetaRule:
    return MetaRule(rule_id or name, f'meta[name="{name}"]')


GENERIC_PRIORITY: Tuple[SelectorRule, ...] = (
    meta_property("og:image"),
    meta_property("og:image:secure_url"),
    meta_name("og:image", rule_id="og:image(name)"),
    meta_name("twitter:image"),
    meta_name("twitter:image:src"),
    MetaRule("image_src", 'link[rel="image_src"]', attribute="href"),
    JsonLdRule(),
    ElementRule("itemprop-image", '[itemprop="image"]', ("content", "src", "href") + IMAGE_ATTRIBUTES[1:]),
)

GENERIC_FALLBACK: Tuple[SelectorRule, ...] = (
    ElementRule("product-image", "img.product-image, img.product-img, img#product-image", IMAGE_ATTRIBUTES),
    ElementRule("product-image-testid", 'img[data-testid*="product-image"]', IMAGE_ATTRIBUTES),
    ElementRule("product-image-class", 'img[class*="ProductImage"], img[class*="product-image"]', IMAGE_ATTRIBUTES),
    ElementRule("product-media", "div.product-media img, div.product-gallery img", IMAGE_ATTRIBUTES),
    ElementRule("product-image-container", 'div[class*="ProductImage"] img, div[class*="product-image"] img', IMAGE_ATTRIBUTES),
    ElementRule("first-img", "img", IMAGE_ATTRIBUTES, scan_markup=False),
)


def _dig(data: Any, *keys: Any) -> Any:
    for key in keys:
        if isinstance(data, dict):
            data = data.get(key)
        elif isinstance(data, list) and isinstance(key, int) and -len(data) <= key < len(data):
            data = data[key]
        else:
            return None
    return data


def _usable(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip() and not is_placeholder(value):
        return value.strip()
    return None


async def amazon_landing_image(page) -> Optional[str]:
    """Largest rendition from ``data-a-dynamic-image``, else ``data-old-hires``."""
    element = await page.query(
        "#landingImage, #imgBlkFront, #ebooksImgBlkFront",
        ("data-a-dynamic-image", "data-old-hires"),
    )
    if element is None:
        return None
    dynamic = element.attributes.get("data-a-dynamic-image")
    if dynamic:
        try:
            renditions = json.loads(dynamic)
        except json.JSONDecodeError:
            logger.debug("Unparseable data-a-dynamic-image on Amazon page")
            renditions = {}
        if isinstance(renditions, dict) and renditions:

            def _area(item) -> int:
                size = item[1]
                try:
                    return int(size[0]) * int(size[1])
                except (TypeError, ValueError, IndexError):
                    return 0

            best = _usable(max(renditions.items(), key=_area)[0])
            if best:
                return best
    return _usable(element.attributes.get("data-old-hires"))


async def walmart_next_data(page) -> Optional[str]:
    """Walmart ships product image info in the Next.js data blob."""
    for blob in await page.query_texts("script#__NEXT_DATA__"):
        try:
            data = json.loads(blob)
        except json.JSONDecodeError:
            continue
        image_info = _dig(data, "props", "pageProps", "initialData", "data", "product", "imageInfo")
        if not isinstance(image_info, dict):
            continue
        image = _usable(_dig(image_info, "allImages", 0, "url")) or _usable(image_info.get("thumbnailUrl"))
        if image:
            return image
    return None


async def ebay_zoom_image(page) -> Optional[str]:
    element = await page.query(".ux-image-carousel-item.active img", ("data-zoom-src", "src"))
    if element is None:
        element = await page.query("#icImg", ("data-zoom-src", "src"))
    if element is None:
        return None
    return _usable(element.attributes.get("data-zoom-src")) or _usable(element.attributes.get("src"))


GENERIC_PROFILE = SiteProfile(
    name="generic",
    priority=GENERIC_PRIORITY,
    fallback=GENERIC_FALLBACK,
)

BUILTIN_PROFILES: Tuple[SiteProfile, ...] = (
    SiteProfile(
        name="amazon",
        host_pattern=re.compile(r"(^|\.)amazon\.(com|ca|co\.uk|de|fr|it|es|in|co\.jp|com\.au)$"),
        direct=amazon_landing_image,
        priority=(
            ElementRule("amazon:landing-image", "#landingImage", ("data-old-hires", "src"), scan_markup=False),
            meta_property("og:image"),
        ),
        fallback=(
            ElementRule("amazon:img-tag-wrapper", "#imgTagWrapperId img", IMAGE_ATTRIBUTES),
            ElementRule("amazon:main-image-container", "#main-image-container img", IMAGE_ATTRIBUTES),
        ) + GENERIC_FALLBACK,
        resources=DOCUMENT_ONLY,
    ),
    SiteProfile(
        name="walmart",
        host_pattern=re.compile(r"(^|\.)walmart\.com$"),
        direct=walmart_next_data,
        priority=(
            ElementRule("walmart:hero-image", '[data-testid="hero-image-container"] img', IMAGE_ATTRIBUTES),
            meta_property("og:image"),
        ),
        fallback=GENERIC_FALLBACK,
    ),
    SiteProfile(
        name="target",
        host_pattern=re.compile(r"(^|\.)target\.com$"),
        path_pattern=re.compile(r"^/p/"),
        priority=(
            ElementRule("target:product-image", '[data-test="product-image"] img', IMAGE_ATTRIBUTES),
            ElementRule("target:gallery", '[data-test="image-gallery-item-0"] img', IMAGE_ATTRIBUTES),
            meta_property("og:image"),
            JsonLdRule(),
        ),
        fallback=GENERIC_FALLBACK,
        # gallery images are injected by deferred scripts
        resources=FULL_FIDELITY,
    ),
    SiteProfile(
        name="ebay",
        host_pattern=re.compile(r"(^|\.)ebay\.(com|ca|co\.uk|de|fr|it|es|com\.au)$"),
        path_pattern=re.compile(r"^/itm/"),
        direct=ebay_zoom_image,
        priority=(
            ElementRule("ebay:ic-img", "#icImg", ("data-zoom-src", "src"), scan_markup=False),
            meta_property("og:image"),
        ),
        fallback=GENERIC_FALLBACK,
        resources=DOCUMENT_ONLY,
    ),
    SiteProfile(
        name="bestbuy",
        host_pattern=re.compile(r"(^|\.)bestbuy\.com$"),
        priority=(
            ElementRule("bestbuy:primary-image", "img.primary-image", IMAGE_ATTRIBUTES),
            meta_property("og:image"),
            JsonLdRule(),
        ),
        fallback=GENERIC_FALLBACK,
    ),
    SiteProfile(
        name="macys",
        host_pattern=re.compile(r"(^|\.)macys\.com$"),
        priority=(
            meta_property("og:image"),
            ElementRule("macys:main-image", ".main-image img, picture.main-img img", IMAGE_ATTRIBUTES),
            JsonLdRule(),
        ),
        fallback=GENERIC_FALLBACK,
        resources=FULL_FIDELITY,
    ),
)


class SiteClassifier:
    """Maps a URL to the first profile whose host (and path) pattern matches."""

    def __init__(self, profiles: Sequence[SiteProfile] = BUILTIN_PROFILES, default: SiteProfile = GENERIC_PROFILE) -> None:
        self._profiles = tuple(profiles)
        self._default = default

    @property
    def profiles(self) -> Tuple[SiteProfile, ...]:
        return self._profiles

    def classify(self, url: str) -> SiteProfile:
        try:
            parts = urlsplit(url)
            host = (parts.hostname or "").lower()
        except ValueError:
            return self._default
        path = parts.path or "/"
        for profile in self._profiles:
            if profile.host_pattern is None or not profile.host_pattern.search(host):
                continue
            if profile.path_pattern is not None and not profile.path_pattern.search(path):
                continue
            return profile
        return self._default


def rule_from_config(item: Dict[str, Any], position: int) -> SelectorRule:
    """Build a rule from one JSON entry.

    Accepted shapes::

        {"meta": "og:image"}                      # meta[property=...] content
        {"meta": "twitter:image", "by": "name"}   # meta[name=...] content
        {"link": "image_src"}                     # link[rel=...] href
        {"json_ld": true}
        {"selector": "img.hero", "attributes": ["src", "data-src"], "id": "hero"}
    """
    if not isinstance(item, dict):
        raise ValueError(f"rule #{position} must be an object")
    if "meta" in item:
        by = item.get("by", "property")
        if by not in {"property", "name", "itemprop"}:
            raise ValueError(f"rule #{position}: unsupported meta attribute {by!r}")
        name = str(item["meta"])
        return MetaRule(str(item.get("id") or name), f'meta[{by}="{name}"]')
    if "link" in item:
        rel = str(item["link"])
        return MetaRule(str(item.get("id") or rel), f'link[rel="{rel}"]', attribute="href")
    if item.get("json_ld"):
        return JsonLdRule(rule_id=str(item.get("id") or "json-ld"))
    if "selector" in item:
        attributes = item.get("attributes") or list(IMAGE_ATTRIBUTES)
        if not isinstance(attributes, list) or not all(isinstance(a, str) for a in attributes):
            raise ValueError(f"rule #{position}: attributes must be a list of strings")
        return ElementRule(
            str(item.get("id") or item["selector"]),
            str(item["selector"]),
            tuple(attributes),
            scan_markup=bool(item.get("scan_markup", True)),
        )
    raise ValueError(f"rule #{position}: expected one of meta, link, json_ld, selector")


def _rules(items: Optional[Iterable[Any]], default: Tuple[SelectorRule, ...]) -> Tuple[SelectorRule, ...]:
    if items is None:
        return default
    return tuple(rule_from_config(item, index) for index, item in enumerate(items, start=1))


def profiles_from_config(config: Dict[str, Any]) -> List[SiteProfile]:
    profiles: List[SiteProfile] = []
    for name, spec in config.items():
        try:
            if not isinstance(spec, dict) or not spec.get("host"):
                raise ValueError("a host pattern is required")
            allowed = spec.get("allow")
            resources = ResourcePolicy(
                block=bool(spec.get("block_resources", True)),
                allowed_types=frozenset(allowed) if allowed else ResourcePolicy().allowed_types,
            )
            profiles.append(
                SiteProfile(
                    name=name,
                    host_pattern=re.compile(spec["host"]),
                    path_pattern=re.compile(spec["path"]) if spec.get("path") else None,
                    priority=_rules(spec.get("priority"), GENERIC_PRIORITY),
                    fallback=_rules(spec.get("fallback"), GENERIC_FALLBACK),
                    resources=resources,
                )
            )
        except (ValueError, TypeError, re.error) as exc:
            logger.warning("Skipping site profile %s: %s", name, exc)
    return profiles


def build_classifier(overrides: Optional[Dict[str, Any]] = None) -> SiteClassifier:
    configured = profiles_from_config(overrides or {})
    if configured:
        logger.info("Loaded %d custom site profile(s): %s", len(configured), ", ".join(p.name for p in configured))
    return SiteClassifier(tuple(configured) + BUILTIN_PROFILES)


DEFAULT_CLASSIFIER = SiteClassifier()


def classify(url: str) -> SiteProfile:
    return DEFAULT_CLASSIFIER.classify(url)
