"""Post-processing for generated titles, terms, brand descriptions and highlights."""

from __future__ import annotations

import html
import random
import re
from dataclasses import dataclass
from typing import Iterable, Sequence

from bs4 import BeautifulSoup, Tag

from .text import similarity_percent, slugify, ucfirst

TERMS_PADDING = ("See full terms on website", "Terms and conditions apply")
DEFAULT_PHRASES = ("Expert Service", "Premium Quality", "Fast Delivery")

_HASHTAG_RE = re.compile(r"#[a-zA-Z0-9_-]+")
_HASHTAG_PARAGRAPH_RE = re.compile(r"<p[^>]*>\s*#.*?</p>", re.DOTALL)
_BULLET_PREFIX_RE = re.compile(r"^[ \t]*(?:[•*-]|\d+[.)])[ \t]*", re.MULTILINE)
_TERMINAL_PUNCTUATION_RE = re.compile(r"[.!?]$")
_LI_PHRASE_RE = re.compile(r"<li[^>]*>\s*(?:<img[^>]*>)?\s*([^<]+)</li>")
_DASH_PHRASE_RE = re.compile(r"^[ \t]*[-•][ \t]*([^\"\n]+)", re.MULTILINE)

# tag -> attributes kept on that tag
DESCRIPTION_ALLOWED_TAGS: dict[str, frozenset[str]] = {
    "h4": frozenset({"style", "class"}),
    "p": frozenset({"style", "class"}),
    "strong": frozenset(),
    "em": frozenset(),
    "ul": frozenset(),
    "li": frozenset(),
    "br": frozenset(),
}

_ICON_BASE = "https://www.adealsweden.com/wp-content/uploads/2023/11/"


@dataclass(frozen=True, slots=True)
class Icon:
    name: str
    image: str
    keywords: tuple[str, ...]


ICON_VOCABULARY: tuple[Icon, ...] = (
    Icon("gift", _ICON_BASE + "gift-2.png", ("gift", "present", "surprise", "unique", "special", "perfect")),
    Icon("tag", _ICON_BASE + "tag.png", ("price", "value", "affordable", "saving", "deal", "budget")),
    Icon("free", _ICON_BASE + "free.png", ("free", "bonus", "extra", "complimentary", "gift")),
    Icon("piggy", _ICON_BASE + "piggybank.png", ("save", "savings", "discount", "bargain", "offer", "cheap")),
    Icon("security", _ICON_BASE + "security-payment.png", ("secure", "safe", "protected", "trusted", "payment")),
    Icon("cyber", _ICON_BASE + "cyber-security.png", ("online", "digital", "cyber", "electronic", "virtual")),
    Icon("social", _ICON_BASE + "social-security-1.png", ("social", "community", "shared", "connected", "together")),
    Icon("certified", _ICON_BASE + "certified.png", ("certified", "approved", "verified", "tested", "authentic")),
    Icon("heart", _ICON_BASE + "healthy-heart.png", ("heart", "loved", "favorite", "chosen", "adored")),
    Icon(
        "service",
        _ICON_BASE + "customer-service.png",
        ("customer service", "customer", "support", "assistance", "care", "helpdesk", "excellence"),
    ),
    Icon("24hours", _ICON_BASE + "24-hours.png", ("24/7", "always", "available", "constant", "nonstop")),
    Icon("recommended", _ICON_BASE + "recommended.png", ("recommended", "endorsed", "rated", "reviewed", "trusted")),
    Icon("fast", _ICON_BASE + "fast-delivery.png", ("fast", "quick", "rapid", "speedy", "prompt")),
    Icon("delivery", _ICON_BASE + "delivery.png", ("delivery", "shipping", "transport", "sent", "dispatch")),
    Icon("store", _ICON_BASE + "in-store-display.png", ("store", "shop", "retail", "display", "collection")),
    Icon("refund", _ICON_BASE + "refund.png", ("refund", "return", "money", "guarantee", "promise")),
    Icon("exchange", _ICON_BASE + "exchange.png", ("exchange", "swap", "trade", "replace", "change")),
    Icon("medal", _ICON_BASE + "medal.png", ("quality", "premium", "luxury", "best", "finest")),
    Icon("handmade", _ICON_BASE + "hand-made.png", ("handmade", "crafted", "custom", "artisan", "unique")),
    Icon("famous", _ICON_BASE + "famous.png", ("famous", "popular", "known", "celebrated", "recognized")),
)

MIN_ICON_SCORE = 2.0


def clean_title(raw: str) -> str:
    text = " ".join(raw.split())
    return text.replace('"', "").replace("'", "").strip()


def split_terms(raw: str, *, padding: Sequence[str] = TERMS_PADDING, count: int = 3) -> list[str]:
    """Split provider output into ``count`` unique bullet texts."""

    stripped = _BULLET_PREFIX_RE.sub("", raw)
    terms: list[str] = []
    seen: set[str] = set()

    def add(candidate: str) -> None:
        # Compare the rendered form so "valid once" and "Valid once." count as one term.
        key = punctuate(candidate).casefold()
        if key not in seen:
            seen.add(key)
            terms.append(candidate)

    for line in stripped.splitlines():
        candidate = line.strip().lstrip(". ").strip()
        if candidate:
            add(candidate)
        if len(terms) == count:
            break

    for filler in padding:
        if len(terms) >= count:
            break
        add(filler)
    while len(terms) < count:
        terms.append(padding[-1] if padding else "Terms and conditions apply")
    return terms


def punctuate(term: str) -> str:
    text = ucfirst(term.strip().lstrip(". "))
    if text and not _TERMINAL_PUNCTUATION_RE.search(text):
        text += "."
    return text


def render_terms(terms: Iterable[str]) -> str:
    items = [f"<li>{html.escape(punctuate(term), quote=False)}</li>" for term in terms if term.strip()]
    return "<ul>" + "\n".join(items) + "</ul>"


def hashtag_line(brand_name: str) -> str:
    slug = slugify(brand_name)
    tags = ", ".join(
        f"#{slug}-{suffix}"
        for suffix in ("discountcodes", "savings", "sales", "bargains", "vouchers", "codes")
    )
    return f'<p style="text-align: left"><strong>{tags}</strong></p>'


def has_hashtags(content: str) -> bool:
    return bool(_HASHTAG_RE.search(content))


def append_hashtags(content: str, brand_name: str) -> str:
    if has_hashtags(content):
        return content
    content = _HASHTAG_PARAGRAPH_RE.sub("", content)
    return content.strip() + "\n\n" + hashtag_line(brand_name)


def sanitize_description(content: str) -> str:
    """Keep only the allow-listed tags and attributes; other tags are unwrapped."""

    soup = BeautifulSoup(content, "html.parser")
    for element in list(soup.find_all(True)):
        if not isinstance(element, Tag):
            continue
        if element.name in {"script", "style"}:
            element.decompose()
            continue
        allowed = DESCRIPTION_ALLOWED_TAGS.get(element.name)
        if allowed is None:
            element.unwrap()
            continue
        element.attrs = {key: value for key, value in element.attrs.items() if key in allowed}
    return str(soup).strip()


def format_brand_description(content: str, brand_name: str) -> str:
    return append_hashtags(sanitize_description(content), brand_name)


def extract_phrases(
    content: str,
    *,
    defaults: Sequence[str] = DEFAULT_PHRASES,
    count: int = 3,
    max_words: int = 3,
) -> list[str]:
    phrases = [match.strip() for match in _LI_PHRASE_RE.findall(content) if match.strip()]
    if not phrases:
        phrases = [match.strip() for match in _DASH_PHRASE_RE.findall(content) if match.strip()]
    if not phrases:
        phrases = [part.strip() for part in re.split(r"[,\n]", content) if part.strip()]

    trimmed = [" ".join(phrase.split()[:max_words]).strip(" .\"'") for phrase in phrases]
    trimmed = [phrase for phrase in trimmed if phrase][:count]
    while len(trimmed) < count and len(trimmed) < len(defaults):
        trimmed.append(defaults[len(trimmed)])
    return trimmed


def score_icon(phrase: str, icon: Icon) -> float:
    lowered = phrase.lower()
    score = 0.0
    for keyword in icon.keywords:
        if keyword in lowered:
            score += 5
        score += similarity_percent(lowered, keyword) / 20
    return score


def choose_icon(phrase: str, used: set[str], rng: random.Random) -> Icon:
    best: Icon | None = None
    best_score = 0.0
    for icon in ICON_VOCABULARY:
        if icon.image in used:
            continue
        score = score_icon(phrase, icon)
        if score > best_score:
            best, best_score = icon, score

    if best is None or best_score < MIN_ICON_SCORE:
        available = [icon for icon in ICON_VOCABULARY if icon.image not in used]
        best = rng.choice(available or list(ICON_VOCABULARY))
    return best


def render_why_we_love(phrases: Sequence[str], *, rng: random.Random | None = None) -> str:
    rng = rng or random.Random()
    used: set[str] = set()
    rows: list[str] = []
    for phrase in phrases:
        icon = choose_icon(phrase, used, rng)
        used.add(icon.image)
        label = html.escape(phrase.title(), quote=False)
        rows.append(
            f'<li><img class="alignnone size-full" src="{html.escape(icon.image)}" '
            f'alt="" width="64" height="64" /> {label}</li>'
        )
    return "<ul>\n" + "\n".join(rows) + "\n</ul>"


__all__ = [
    "DEFAULT_PHRASES",
    "ICON_VOCABULARY",
    "TERMS_PADDING",
    "Icon",
    "append_hashtags",
    "choose_icon",
    "clean_title",
    "extract_phrases",
    "format_brand_description",
    "has_hashtags",
    "hashtag_line",
    "punctuate",
    "render_terms",
    "render_why_we_love",
    "sanitize_description",
    "score_icon",
    "split_terms",
]
