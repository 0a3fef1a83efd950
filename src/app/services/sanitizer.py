from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

NOISE_TAGS = ("script", "style", "noscript", "template", "iframe", "svg", "form", "nav", "footer", "header", "aside")
PRIORITY_PATTERN = re.compile(r"ingredient|instruction|direction|method|preparation|steps?\b", re.IGNORECASE)
BLANK_LINES_PATTERN = re.compile(r"\n{3,}")
SPACES_PATTERN = re.compile(r"[ \t\r\f\v]+")


@dataclass
class SanitizedContent:
    """Plain text and structured payloads pulled out of a fetched page."""
    text: str
    json_ld: list[dict[str, Any]] = field(default_factory=list)
    priority_blocks: list[str] = field(default_factory=list)
    title: Optional[str] = None
    site_name: Optional[str] = None
    author: Optional[str] = None
    license_hint: Optional[str] = None
    image_url: Optional[str] = None


def _clean_text(text: str) -> str:
    lines = [SPACES_PATTERN.sub(" ", line).strip() for line in text.splitlines()]
    return BLANK_LINES_PATTERN.sub("\n\n", "\n".join(lines)).strip()


def _meta_content(soup: BeautifulSoup, **attrs: str) -> Optional[str]:
    tag = soup.find("meta", attrs=attrs)
    if tag is None:
        return None
    content = tag.get("content")
    return content.strip() if isinstance(content, str) and content.strip() else None


def _parse_json_ld(soup: BeautifulSoup) -> list[dict[str, Any]]:
    payloads: list[dict[str, Any]] = []
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        raw_json = script.string or script.get_text()
        if not raw_json or not raw_json.strip():
            continue
        try:
            data = json.loads(raw_json)
        except json.JSONDecodeError:
            logger.debug("sanitizer.bad_json_ld length=%d", len(raw_json))
            continue

        if isinstance(data, list):
            payloads.extend(item for item in data if isinstance(item, dict))
        elif isinstance(data, dict):
            payloads.append(data)
    return payloads


def _priority_blocks(soup: BeautifulSoup) -> list[str]:
    blocks: list[str] = []
    seen: set[str] = set()
    for element in soup.find_all(["section", "div", "ol", "ul"]):
        marker = " ".join(element.get("class") or []) + " " + (element.get("id") or "")
        if not PRIORITY_PATTERN.search(marker):
            continue
        text = _clean_text(element.get_text("\n"))
        if text and text not in seen and not any(text in block for block in blocks):
            seen.add(text)
            blocks.append(text)
    return blocks


def sanitize_html(html: str) -> SanitizedContent:
    """
    Strip markup from a fetched page.

    JSON-LD payloads and page metadata (site name, author, license link) are
    collected before scripts and chrome are removed. Blocks that look like
    ingredient or instruction lists are returned separately so they can be
    kept when the text has to be truncated.
    """
    soup = BeautifulSoup(html or "", "html.parser")

    json_ld = _parse_json_ld(soup)
    title_tag = soup.find("title")
    title = _clean_text(title_tag.get_text()) if title_tag else None
    site_name = _meta_content(soup, property="og:site_name")
    author = _meta_content(soup, name="author")
    image_url = _meta_content(soup, property="og:image")

    license_link = soup.find(["a", "link"], rel="license")
    license_hint = license_link.get("href") if license_link is not None else None

    for tag in soup(NOISE_TAGS):
        tag.decompose()

    priority_blocks = _priority_blocks(soup)
    body = soup.body or soup
    text = _clean_text(body.get_text("\n"))

    return SanitizedContent(
        text=text,
        json_ld=json_ld,
        priority_blocks=priority_blocks,
        title=title or None,
        site_name=site_name,
        author=author,
        license_hint=license_hint,
        image_url=image_url,
    )


def build_budgeted_content(content: SanitizedContent, budget: int) -> str:
    """Text for the model, ingredient/instruction blocks first, cut to ``budget`` characters."""
    if len(content.text) <= budget:
        return content.text

    pieces: list[str] = []
    remaining = budget
    for block in content.priority_blocks:
        if remaining <= 0:
            break
        piece = block[:remaining]
        pieces.append(piece)
        remaining -= len(piece) + 2

    if remaining > 0:
        pieces.append(content.text[:remaining])

    return "\n\n".join(pieces)[:budget]
