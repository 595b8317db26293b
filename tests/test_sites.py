import json

import pytest

from link_preview.models import ElementRule, JsonLdRule, MetaRule
from link_preview.renderer import StaticPage
from link_preview.sites import (
    GENERIC_PROFILE,
    amazon_landing_image,
    build_classifier,
    classify,
    ebay_zoom_image,
    profiles_from_config,
    rule_from_config,
    walmart_next_data,
)


@pytest.mark.parametrize(
    "url, expected",
    [
        ("https://www.amazon.com/dp/B000123", "amazon"),
        ("https://amazon.co.uk/gp/product/B000123", "amazon"),
        ("https://www.walmart.com/ip/widget/123", "walmart"),
        ("https://www.target.com/p/widget/-/A-123", "target"),
        ("https://www.target.com/c/kitchen", "generic"),
        ("https://www.ebay.com/itm/1234", "ebay"),
        ("https://www.bestbuy.com/site/widget/123.p", "bestbuy"),
        ("https://www.macys.com/shop/product/widget?ID=1", "macys"),
        ("https://shop.example/p/42", "generic"),
        ("https://notamazon.com/dp/B000123", "generic"),
        ("https://amazon.com.evil.example/dp/1", "generic"),
    ],
)
def test_classify_by_host_and_path(url, expected):
    assert classify(url).name == expected


@pytest.mark.parametrize("url", ["", "::::", "http://[::1", "mailto:someone@example.com"])
def test_classify_is_total(url):
    assert classify(url) is GENERIC_PROFILE


def test_generic_profile_starts_with_original_metadata_order():
    ids = [rule.rule_id for rule in GENERIC_PROFILE.priority]
    assert ids.index("og:image") < ids.index("twitter:image") < ids.index("image_src")
    assert GENERIC_PROFILE.fallback[-1].rule_id == "first-img"


def test_rule_from_config_shapes():
    assert rule_from_config({"meta": "og:image"}, 1) == MetaRule("og:image", 'meta[property="og:image"]')
    assert rule_from_config({"meta": "twitter:image", "by": "name"}, 2).selector == 'meta[name="twitter:image"]'
    link = rule_from_config({"link": "image_src"}, 3)
    assert link.attribute == "href" and link.selector == 'link[rel="image_src"]'
    assert isinstance(rule_from_config({"json_ld": True}, 4), JsonLdRule)
    element = rule_from_config({"selector": "img.hero", "attributes": ["data-zoom-image", "src"], "id": "hero"}, 5)
    assert element == ElementRule("hero", "img.hero", ("data-zoom-image", "src"))

    with pytest.raises(ValueError):
        rule_from_config({"xpath": "//img"}, 6)
    with pytest.raises(ValueError):
        rule_from_config({"meta": "og:image", "by": "http-equiv"}, 7)


def test_configured_profiles_take_precedence_and_bad_entries_are_skipped():
    config = {
        "example-shop": {
            "host": r"(^|\.)example-shop\.com$",
            "priority": [{"selector": "img.hero", "id": "hero"}],
            "block_resources": False,
        },
        "amazon-override": {"host": r"(^|\.)amazon\.com$", "path": "^/dp/"},
        "broken": {"priority": []},
        "bad-regex": {"host": "(unclosed"},
    }
    profiles = profiles_from_config(config)
    assert [p.name for p in profiles] == ["example-shop", "amazon-override"]
    assert profiles[0].resources.block is False
    assert profiles[1].priority == GENERIC_PROFILE.priority

    classifier = build_classifier(config)
    assert classifier.classify("https://www.example-shop.com/x").name == "example-shop"
    assert classifier.classify("https://www.amazon.com/dp/B01").name == "amazon-override"
    assert classifier.classify("https://www.amazon.com/gp/B01").name == "amazon"


@pytest.mark.asyncio
async def test_amazon_direct_picks_largest_dynamic_rendition():
    renditions = {
        "https://m.media-amazon.com/images/I/small.jpg": [300, 300],
        "https://m.media-amazon.com/images/I/large.jpg": [1500, 1500],
        "https://m.media-amazon.com/images/I/medium.jpg": [800, 800],
    }
    html = (
        "<html><body><img id='landingImage' src='data:image/gif;base64,AAAA' "
        f"data-a-dynamic-image='{json.dumps(renditions)}' "
        "data-old-hires='https://m.media-amazon.com/images/I/hires.jpg'></body></html>"
    )
    page = StaticPage("https://www.amazon.com/dp/B01", html)
    assert await amazon_landing_image(page) == "https://m.media-amazon.com/images/I/large.jpg"


@pytest.mark.asyncio
async def test_amazon_direct_falls_back_to_old_hires():
    html = "<img id='imgBlkFront' data-a-dynamic-image='not json' data-old-hires='https://m.media-amazon.com/hires.jpg'>"
    page = StaticPage("https://www.amazon.com/dp/B01", html)
    assert await amazon_landing_image(page) == "https://m.media-amazon.com/hires.jpg"


@pytest.mark.asyncio
async def test_walmart_direct_reads_next_data():
    data = {
        "props": {
            "pageProps": {
                "initialData": {
                    "data": {
                        "product": {
                            "imageInfo": {
                                "thumbnailUrl": "https://i5.walmartimages.com/thumb.jpg",
                                "allImages": [{"url": "https://i5.walmartimages.com/full.jpg"}],
                            }
                        }
                    }
                }
            }
        }
    }
    html = f"<script id='__NEXT_DATA__' type='application/json'>{json.dumps(data)}</script>"
    page = StaticPage("https://www.walmart.com/ip/1", html)
    assert await walmart_next_data(page) == "https://i5.walmartimages.com/full.jpg"
    assert await walmart_next_data(StaticPage("https://www.walmart.com/ip/1", "<html></html>")) is None


@pytest.mark.asyncio
async def test_ebay_direct_prefers_zoom_source():
    html = (
        "<div class='ux-image-carousel-item active'>"
        "<img src='https://i.ebayimg.com/s-l500.jpg' data-zoom-src='https://i.ebayimg.com/s-l1600.jpg'></div>"
    )
    page = StaticPage("https://www.ebay.com/itm/1", html)
    assert await ebay_zoom_image(page) == "https://i.ebayimg.com/s-l1600.jpg"
