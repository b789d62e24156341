"""
开品宝 Backend — Page Extraction Heuristics

Pure text-processing over what Firecrawl returns for a competitor page
(markdown + raw HTML + metadata). Nothing here performs I/O or raises on
bad input: a heuristic that finds nothing returns None / [].

Each heuristic is a small `TextExtractor` (try_extract(text) -> result | None)
so they can be tested and reordered independently:
  - image URLs: vendor high-res patterns first, generic image URL last, first match wins
  - reviews: three strategies from strict to permissive, results accumulated
    until there are enough
"""

import re
from typing import Iterable, Optional, Protocol, TypeVar

from bs4 import BeautifulSoup

from kaipinbao.config import log
from kaipinbao.models import ProductInfo, ReviewRecord, ReviewSummary, StarShare


T = TypeVar("T", covariant=True)

MAX_REVIEWS = 100
ENOUGH_REVIEWS = 5
DEDUPE_PREFIX_CHARS = 50


class TextExtractor(Protocol[T]):
    name: str

    def try_extract(self, text: str) -> Optional[T]:
        ...


def first_match(extractors: Iterable["TextExtractor[T]"], text: str) -> Optional[T]:
    """Run extractors in order; return the first non-None result."""
    for extractor in extractors:
        result = extractor.try_extract(text)
        if result is not None:
            return result
    return None


# ─────────────────────────────────────────────
# Image URL
# ─────────────────────────────────────────────

class PatternImageExtractor:
    """First URL in the text matching one regex."""

    def __init__(self, name: str, pattern: str):
        self.name = name
        self._pattern = re.compile(pattern, re.IGNORECASE)

    def try_extract(self, text: str) -> Optional[str]:
        if not text:
            return None
        match = self._pattern.search(text)
        return match.group(0) if match else None


_AMAZON_IMG = r"https?://m\.media-amazon\.com/images/I/[A-Za-z0-9+%-]+"

# Highest resolution first.
VENDOR_IMAGE_EXTRACTORS: list[PatternImageExtractor] = [
    PatternImageExtractor("amazon_ac_sl1500", _AMAZON_IMG + r"\._AC_SL1500_[^\"'\s)]*\.(?:jpg|png|webp)"),
    PatternImageExtractor("amazon_sl1500", _AMAZON_IMG + r"\._SL1500_[^\"'\s)]*\.(?:jpg|png|webp)"),
    PatternImageExtractor("amazon_ac_sl1200", _AMAZON_IMG + r"\._AC_SL1200_[^\"'\s)]*\.(?:jpg|png|webp)"),
    PatternImageExtractor("amazon_any", _AMAZON_IMG + r"[^\"'\s)]*\.(?:jpg|png|webp)"),
    PatternImageExtractor("ebay_s_l1600", r"https?://i\.ebayimg\.com/images/g/[^\"'\s)/]+/s-l1600\.(?:jpg|png|webp)"),
    PatternImageExtractor("aliexpress", r"https?://ae\d{2}\.alicdn\.com/kf/[^\"'\s)]+?\.(?:jpg|png|webp)"),
]

GENERIC_IMAGE_EXTRACTOR = PatternImageExtractor("generic", r"https?://[^\"'\s()]+\.(?:jpg|jpeg|png|webp)")


def extract_main_image(markdown: str) -> Optional[str]:
    """Primary product image URL, or None."""
    return first_match([*VENDOR_IMAGE_EXTRACTORS, GENERIC_IMAGE_EXTRACTOR], markdown)


# ─────────────────────────────────────────────
# Review summary
# ─────────────────────────────────────────────

_OVERALL_RATING_RE = re.compile(r"(\d+\.?\d*)\s*out of\s*5\s*stars?", re.IGNORECASE)
_TOTAL_REVIEWS_RE = re.compile(r"([\d,]+)\s*(?:global\s+)?(?:ratings?|reviews?|customer\s+reviews?)", re.IGNORECASE)
_BREAKDOWN_RE = re.compile(r"(\d)\s*stars?\s*(\d+)%", re.IGNORECASE)
_POSITIVE_RE = re.compile(
    r"customers\s+(?:like|love|mention|say)[^.]*?"
    r"(?:quality|durable|value|great|excellent|good|perfect|easy)[^.]*\.",
    re.IGNORECASE,
)
_NEGATIVE_RE = re.compile(
    r"customers\s+(?:dislike|complain|mention|report|say)[^.]*?"
    r"(?:broke|broken|cheap|poor|flimsy|difficult|stopped|defective|disappoint|issue|problem)[^.]*\.",
    re.IGNORECASE,
)
_CUSTOMERS_PREFIX_RE = re.compile(
    r"^customers\s+(?:like|love|mention|say|dislike|complain|report)\s*", re.IGNORECASE
)

MAX_HIGHLIGHTS = 3


def _highlights(pattern: re.Pattern, markdown: str) -> list[str]:
    found: list[str] = []
    for match in pattern.finditer(markdown):
        if len(found) >= MAX_HIGHLIGHTS:
            break
        cleaned = _CUSTOMERS_PREFIX_RE.sub("", match.group(0)).strip()
        if 10 < len(cleaned) < 200:
            found.append(cleaned)
    return found


def extract_review_summary(markdown: str) -> ReviewSummary:
    """Independent regex passes; a miss in one leaves that part empty."""
    summary = ReviewSummary()
    if not markdown:
        return summary

    rating_match = _OVERALL_RATING_RE.search(markdown)
    if rating_match:
        try:
            summary.overallRating = float(rating_match.group(1))
        except ValueError:
            log("WARN", "review summary rating unparsable", raw=rating_match.group(1))

    count_match = _TOTAL_REVIEWS_RE.search(markdown)
    if count_match:
        digits = count_match.group(1).replace(",", "")
        if digits.isdigit():
            summary.totalReviews = int(digits)

    summary.ratingBreakdown = [
        StarShare(stars=int(m.group(1)), percentage=int(m.group(2)))
        for m in _BREAKDOWN_RE.finditer(markdown)
    ]
    summary.topPositives = _highlights(_POSITIVE_RE, markdown)
    summary.topNegatives = _highlights(_NEGATIVE_RE, markdown)
    return summary


# ─────────────────────────────────────────────
# Review text filters
# ─────────────────────────────────────────────

_URL_RE = re.compile(r"https?://|www\.|amazon\.com", re.IGNORECASE)
_LETTER_RUN_RE = re.compile(r"[^\W\d_]{4,}")
_CJK_RE = re.compile(r"[一-鿿]")

# Candidate texts that are really page chrome.
UI_TEXT_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"^(see|read|show)\s+(more|all|full)",
        r"^(helpful|report|share)",
        r"^\d+\s*(people|person)\s+found",
        r"^verified purchase$",
        r"^reviewed in",
        r"add to cart",
        r"buy now",
        r"in stock",
        r"free shipping",
        r"sold by",
        r"sponsored",
        r"advertisement",
    )
]

# Single lines of page chrome inside a review listing.
UI_LINE_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"^(see|read|show)\s+(more|all|full)",
        r"^(helpful|report|share)",
        r"^\d+\s*(people|person)\s+found",
        r"^verified purchase$",
        r"^reviewed in",
        r"^\d+\s*out of\s*\d+",
        r"^\[.*\]$",
        r"^!\[",
        r"amazon\.com",
        r"^https?:",
        r"^add to",
        r"^buy now",
        r"^in stock",
        r"^color:",
        r"^size:",
        r"^style:",
        r"^\d+\s*star",
        r"^(next|previous)\s+page",
        r"^page\s+\d+",
        r"customer reviews?$",
    )
]

# Only strips a tail that starts the line or follows sentence punctuation,
# so "the manual was not helpful" keeps its last word.
_TRAILING_BOILERPLATE_RE = re.compile(
    r"(?:^|(?<=[.!?。！？]))"
    r"(?:\s*(?:\d+\s+(?:people|person)\s+found\s+this\s+helpful\.?|(?:helpful|report(?:\s+abuse)?|share)\b))+\s*$",
    re.IGNORECASE,
)
# A line that closes the review body it follows.
_REVIEW_END_RE = re.compile(
    r"^(?:\d+\s+(?:people|person)\s+found\s+this\s+helpful|helpful|report(?:\s+abuse)?)\b", re.IGNORECASE
)
_RATING_MARKER_RE = re.compile(r"^\s*(\d)(?:\.0)?\s+out of 5 stars\b\s*(.*)$", re.IGNORECASE)
_VERIFIED_RE = re.compile(r"verified purchase", re.IGNORECASE)


def is_ui_line(line: str) -> bool:
    stripped = line.strip()
    return any(p.search(stripped) for p in UI_LINE_PATTERNS)


def strip_trailing_boilerplate(text: str) -> str:
    """Drop 'Helpful', 'Report', 'N people found this helpful' tails glued to review text."""
    return _TRAILING_BOILERPLATE_RE.sub("", text).strip()


def is_valid_review(text: str, min_length: int = 50, max_length: int = 3000) -> bool:
    if not text or not (min_length <= len(text) <= max_length):
        return False
    if _URL_RE.search(text):
        return False
    if any(p.search(text) for p in UI_TEXT_PATTERNS):
        return False
    if not _LETTER_RUN_RE.search(text):
        return False
    # Real prose: several words, or enough CJK characters for unspaced text
    words = [w for w in text.split() if len(w) >= 3]
    return len(words) >= 5 or len(_CJK_RE.findall(text)) >= 15


def _parse_rating(raw: Optional[str]) -> Optional[int]:
    if not raw:
        return None
    value = int(raw)
    return value if 1 <= value <= 5 else None


# ─────────────────────────────────────────────
# Review strategies
# ─────────────────────────────────────────────

class StructuredBlockReviewExtractor:
    """
    Strategy 1: "N.0 out of 5 stars" → "Verified Purchase" → review body.

    The page is split at each rating marker; within a section only lines after
    the verified-purchase marker count as review body.
    """

    name = "structured_blocks"
    min_length = 50

    _SECTION_SPLIT_RE = re.compile(r"(?=\d\.0 out of 5 stars)", re.IGNORECASE)

    def try_extract(self, text: str) -> Optional[list[ReviewRecord]]:
        if not text or len(text) < 100:
            return None

        reviews: list[ReviewRecord] = []
        for section in self._SECTION_SPLIT_RE.split(text):
            if len(section) < 100:
                continue
            marker = _RATING_MARKER_RE.match(section.split("\n", 1)[0])
            rating = _parse_rating(marker.group(1)) if marker else None

            parts: list[str] = []
            found_verified = False
            for line in section.split("\n"):
                stripped = line.strip()
                if _VERIFIED_RE.search(stripped):
                    found_verified = True
                    continue
                if found_verified and parts and _REVIEW_END_RE.match(stripped):
                    break
                if len(stripped) < 20 or is_ui_line(stripped):
                    continue
                if found_verified and len(stripped) >= 30:
                    parts.append(strip_trailing_boilerplate(stripped))

            body = " ".join(p for p in parts if p).strip()
            if is_valid_review(body, min_length=self.min_length):
                reviews.append(ReviewRecord(text=body, rating=rating))
        return reviews or None


class LineStateReviewExtractor:
    """
    Strategy 2: walk lines, remembering the last rating marker seen.

    Lines after a marker are accumulated as review body (UI chrome skipped,
    short lines ignored) until the next marker closes the review.
    """

    name = "line_state"
    min_length = 30
    min_line_length = 20

    def try_extract(self, text: str) -> Optional[list[ReviewRecord]]:
        if not text:
            return None

        reviews: list[ReviewRecord] = []
        in_review = False
        current_rating: Optional[int] = None
        parts: list[str] = []

        def flush():
            body = " ".join(parts).strip()
            if in_review and is_valid_review(body, min_length=self.min_length):
                reviews.append(ReviewRecord(text=body, rating=current_rating))

        for line in text.split("\n"):
            stripped = line.strip()
            marker = _RATING_MARKER_RE.match(stripped)
            if marker:
                flush()
                in_review = True
                current_rating = _parse_rating(marker.group(1))
                parts = []
                continue
            if in_review and parts and _REVIEW_END_RE.match(stripped):
                flush()
                in_review = False
                parts = []
                continue
            if not in_review or _VERIFIED_RE.search(stripped) or is_ui_line(stripped):
                continue
            cleaned = strip_trailing_boilerplate(stripped)
            if len(cleaned) >= self.min_line_length:
                parts.append(cleaned)
        flush()
        return reviews or None


class ParagraphReviewExtractor:
    """Strategy 3: any blank-line-separated paragraph that reads like prose."""

    name = "paragraphs"
    min_length = 80
    max_length = 2000

    _PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n")

    def try_extract(self, text: str) -> Optional[list[ReviewRecord]]:
        if not text:
            return None

        reviews: list[ReviewRecord] = []
        for paragraph in self._PARAGRAPH_SPLIT_RE.split(text):
            lines = [ln.strip() for ln in paragraph.split("\n") if ln.strip() and not is_ui_line(ln)]
            rating = None
            if lines:
                marker = _RATING_MARKER_RE.match(lines[0])
                if marker:
                    rating = _parse_rating(marker.group(1))
                    lines = lines[1:]
            body = strip_trailing_boilerplate(" ".join(lines))
            if is_valid_review(body, min_length=self.min_length, max_length=self.max_length):
                reviews.append(ReviewRecord(text=body, rating=rating))
        return reviews or None


REVIEW_STRATEGIES = [
    StructuredBlockReviewExtractor(),
    LineStateReviewExtractor(),
    ParagraphReviewExtractor(),
]


def _dedupe_key(text: str) -> str:
    return text[:DEDUPE_PREFIX_CHARS]


def merge_unique_reviews(
    existing: list[ReviewRecord],
    incoming: Iterable[ReviewRecord],
    limit: int = MAX_REVIEWS,
) -> list[ReviewRecord]:
    """Append incoming reviews whose first 50 chars are new, up to `limit`."""
    merged = list(existing)
    seen = {_dedupe_key(r.text) for r in merged}
    for review in incoming:
        if len(merged) >= limit:
            break
        key = _dedupe_key(review.text)
        if key in seen:
            continue
        seen.add(key)
        merged.append(review)
    return merged


def extract_reviews_from_markdown(
    markdown: str,
    enough: int = ENOUGH_REVIEWS,
    limit: int = MAX_REVIEWS,
    strategies: Optional[list] = None,
) -> list[ReviewRecord]:
    """Run the strategy cascade, stopping once `enough` reviews are collected."""
    reviews: list[ReviewRecord] = []
    for strategy in strategies or REVIEW_STRATEGIES:
        found = strategy.try_extract(markdown) or []
        reviews = merge_unique_reviews(reviews, found, limit=limit)
        log("INFO", "review strategy finished", strategy=strategy.name, found=len(found), total=len(reviews))
        if len(reviews) >= enough:
            break
    return reviews


# ─────────────────────────────────────────────
# HTML reviews
# ─────────────────────────────────────────────

_HTML_RATING_RE = re.compile(r"(\d)(?:\.0)? out of 5 stars", re.IGNORECASE)
_STAR_CLASS_RE = re.compile(r"a-star-(\d)")


def _html_rating(element) -> Optional[int]:
    """Rating from the enclosing review container (star icon class or alt text)."""
    container = element.find_parent(attrs={"data-hook": "review"})
    candidates = [container] if container is not None else list(element.parents)[:3]
    for node in candidates:
        if node is None:
            continue
        for icon in node.find_all("i", class_=True):
            for cls in icon.get("class", []):
                star = _STAR_CLASS_RE.match(cls)
                if star:
                    return _parse_rating(star.group(1))
        text_match = _HTML_RATING_RE.search(node.get_text(" ", strip=True))
        if text_match:
            return _parse_rating(text_match.group(1))
    return None


def extract_reviews_from_html(html: str, limit: int = MAX_REVIEWS) -> list[ReviewRecord]:
    """`data-hook="review-body"` spans, then any `review-text` div."""
    if not html or len(html) < 100:
        return []

    soup = BeautifulSoup(html, "html.parser")
    for tag in soup.find_all(["script", "style"]):
        tag.decompose()

    candidates = list(soup.find_all(attrs={"data-hook": "review-body"}))
    candidates += [
        div for div in soup.find_all("div", class_=True)
        if any("review-text" in cls for cls in div.get("class", []))
    ]

    reviews: list[ReviewRecord] = []
    for element in candidates:
        text = re.sub(r"\s+", " ", element.get_text(" ", strip=True)).strip()
        text = strip_trailing_boilerplate(text)
        if not is_valid_review(text):
            continue
        reviews = merge_unique_reviews(reviews, [ReviewRecord(text=text, rating=_html_rating(element))], limit)

    log("INFO", "html review extraction finished", found=len(reviews))
    return reviews


# ─────────────────────────────────────────────
# Product info
# ─────────────────────────────────────────────

_ASIN_PATTERNS = [
    re.compile(r"/dp/([A-Z0-9]{10})", re.IGNORECASE),
    re.compile(r"/gp/product/([A-Z0-9]{10})", re.IGNORECASE),
    re.compile(r"/product/([A-Z0-9]{10})", re.IGNORECASE),
    re.compile(r"/ASIN/([A-Z0-9]{10})", re.IGNORECASE),
]

_PRICE_PATTERNS = [
    re.compile(r"US\s*\$\s?[\d,]+\.?\d*", re.IGNORECASE),
    re.compile(r"\$[\d,]+\.?\d*"),
    re.compile(r"[￥¥]\s?[\d,]+\.?\d*"),
]

_RATING_PATTERNS = [
    re.compile(r"(\d+\.?\d*)\s*out of\s*5", re.IGNORECASE),
    re.compile(r"Rating:\s*(\d+\.?\d*)", re.IGNORECASE),
]

_REVIEW_COUNT_PATTERNS = [
    re.compile(r"([\d,]+)\s*(?:global\s+)?(?:ratings?|reviews?)", re.IGNORECASE),
    re.compile(r"(\d+)\s*customer\s*reviews?", re.IGNORECASE),
]

_TITLE_SUFFIX_RE = re.compile(r"\s*[-|:]\s*(Amazon|AliExpress|eBay).*$", re.IGNORECASE)
_TITLE_PREFIX_RE = re.compile(r"^\s*Amazon\.[a-z.]+\s*:\s*", re.IGNORECASE)


def extract_asin(url: str) -> Optional[str]:
    for pattern in _ASIN_PATTERNS:
        match = pattern.search(url or "")
        if match:
            return match.group(1).upper()
    return None


def is_amazon_url(url: str) -> bool:
    return "amazon" in (url or "").lower()


def clean_title(title: str) -> str:
    title = _TITLE_PREFIX_RE.sub("", title or "")
    return _TITLE_SUFFIX_RE.sub("", title).strip()


def extract_product_info(markdown: str, metadata: Optional[dict] = None) -> ProductInfo:
    metadata = metadata or {}
    markdown = markdown or ""
    info = ProductInfo(
        title=clean_title(str(metadata.get("title") or "")),
        description=str(metadata.get("description") or ""),
    )

    for pattern in _PRICE_PATTERNS:
        match = pattern.search(markdown)
        if match:
            info.price = match.group(0).strip()
            break

    for pattern in _RATING_PATTERNS:
        match = pattern.search(markdown)
        if not match:
            continue
        try:
            value = float(match.group(1))
        except ValueError:
            continue
        if 0 <= value <= 5:
            info.rating = value
            break

    for pattern in _REVIEW_COUNT_PATTERNS:
        match = pattern.search(markdown)
        if match:
            digits = match.group(1).replace(",", "")
            if digits.isdigit():
                info.reviewCount = int(digits)
                break

    return info
