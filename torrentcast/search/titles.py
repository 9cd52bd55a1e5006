"""Release title helpers.

Parsing of scene-style torrent names into a clean title and year, quality
detection, and keyword validation used to reject races that resolved to an
unrelated video file.
"""

import re
from dataclasses import dataclass, field

# =============================================================================
# Quality Definitions
# =============================================================================

# Word boundaries avoid false positives (e.g., DVDRip matching DV)
# 4K and 2160p are unified
QUALITY_PATTERNS = {
    "720p": [r"\b720p\b", r"\b720i\b", r"\bHD[\s._-]*720\b"],
    "1080p": [r"\b1080p\b", r"\b1080i\b", r"\bFull[\s._-]*HD\b", r"\bFHD\b"],
    "4K": [r"\b4K\b", r"\bUHD\b", r"\bUltra[\s._-]*HD\b", r"\b2160p\b", r"\b2160i\b"],
    "HDR": [r"\bHDR10\b", r"\bHDR\b", r"\bDolby[\s._-]*Vision\b"],
}

# Tokens removed when cleaning a release name
RELEASE_NOISE_TOKENS = [
    "2160p", "1080p", "720p", "480p", "4k", "uhd",
    "bluray", "blu-ray", "bdrip", "brrip", "webrip", "web-dl", "webdl",
    "hdtv", "dvdrip", "hdrip", "remux",
    "x264", "x265", "hevc", "h264", "h265", "avc",
    "aac", "ac3", "dts", "truehd", "atmos", "flac",
    "hdr10", "hdr", "dolby", "vision", "dv",
    "extended", "directors", "cut", "remastered", "proper",
]  # fmt: skip

YEAR_PATTERN = re.compile(r"\b(?:19|20)\d{2}\b")

EPISODE_PATTERN = re.compile(r"[Ss](\d{1,2})[ ._-]?[Ee](\d{1,3})")
ALT_EPISODE_PATTERN = re.compile(r"\b(\d{1,2})x(\d{2,3})\b")

STOP_WORDS = {"the", "a", "an", "and", "of", "in", "on", "at", "to", "for", "with"}

# Keywords shorter than this are ignored
MIN_KEYWORD_LENGTH = 2


def detect_quality(title: str) -> str | None:
    """Detect video quality from title.

    Args:
        title: Torrent title to analyze.

    Returns:
        Quality string if detected, None otherwise.
    """
    for quality, patterns in QUALITY_PATTERNS.items():
        for pattern in patterns:
            if re.search(pattern, title, re.IGNORECASE):
                return quality

    return None


def parse_release_title(name: str) -> tuple[str, int | None]:
    """Extract a clean title and year from a torrent name.

    Example:
        "Blade.Runner.2049.2017.1080p.BluRay" -> ("Blade Runner 2049", 2017)

    The last year-looking token is taken as the release year, so titles that
    contain a year ("Blade Runner 2049") keep it.

    Args:
        name: Raw torrent or file name.

    Returns:
        Tuple of (title-cased clean title, year or None).
    """
    text = name.lower().replace(".", " ").replace("_", " ")
    # Drop a file extension left over after dot replacement
    text = re.sub(r"\s(mkv|mp4|avi|mov|wmv|flv|webm|m4v|ts)$", "", text)

    year: int | None = None
    matches = list(YEAR_PATTERN.finditer(text))
    if matches:
        # A year at the very start is part of the title ("1917", "2012")
        candidates = [m for m in matches if m.start() > 0] or matches
        match = next(
            (m for m in candidates if _followed_by_noise(text[m.end() :])),
            candidates[-1],
        )
        year = int(match.group(0))
        if match.start() > 0:
            text = text[: match.start()]

    tokens = [t for t in re.split(r"[\s\[\]()]+", text) if t]
    tokens = [t for t in tokens if t not in RELEASE_NOISE_TOKENS]

    title = " ".join(word[:1].upper() + word[1:] for word in tokens)
    return title, year


def _followed_by_noise(rest: str) -> bool:
    """Check whether the text after a year starts with release noise or ends."""
    words = rest.split()
    if not words:
        return True
    return words[0].strip("[]()-") in RELEASE_NOISE_TOKENS


def parse_episode(name: str) -> tuple[int, int] | None:
    """Extract (season, episode) from names like "Show.S02E05" or "2x05"."""
    match = EPISODE_PATTERN.search(name)
    if match:
        return int(match.group(1)), int(match.group(2))
    match = ALT_EPISODE_PATTERN.search(name)
    if match:
        return int(match.group(1)), int(match.group(2))
    return None


def extract_keywords(text: str) -> list[str]:
    """Split text into lower-case keywords, dropping stop words and years.

    Args:
        text: Search query or title.

    Returns:
        Sorted, de-duplicated keyword list.
    """
    words = re.split(r"[^0-9a-z]+", text.lower())
    keywords = {
        w
        for w in words
        if len(w) >= MIN_KEYWORD_LENGTH and w not in STOP_WORDS and not YEAR_PATTERN.fullmatch(w)
    }
    return sorted(keywords)


@dataclass
class ReleaseValidation:
    """Decides whether a torrent's file plausibly matches the search.

    Attributes:
        keywords: Keywords taken from the query and canonical metadata title.
        year: Expected release year, if known.
        min_keyword_ratio: Fraction of keywords that must appear in the name.
    """

    keywords: list[str] = field(default_factory=list)
    year: int | None = None
    min_keyword_ratio: float = 0.5

    @classmethod
    def from_texts(cls, *texts: str | None, year: int | None = None) -> "ReleaseValidation | None":
        """Build validation criteria from query and metadata titles.

        Returns:
            ReleaseValidation, or None when there is nothing to validate against.
        """
        keywords: set[str] = set()
        for text in texts:
            if text:
                keywords.update(extract_keywords(text))
        if not keywords and year is None:
            return None
        return cls(keywords=sorted(keywords), year=year)

    def matches(self, name: str) -> bool:
        """Check a torrent or file name against the criteria.

        Args:
            name: Torrent name or video file path.

        Returns:
            True if enough keywords appear and the year (when both sides have one) agrees.
        """
        name_words = set(re.split(r"[^0-9a-z]+", name.lower()))

        if self.keywords:
            hits = sum(1 for k in self.keywords if k in name_words)
            if hits / len(self.keywords) < self.min_keyword_ratio:
                return False

        if self.year is not None:
            years = {int(y) for y in YEAR_PATTERN.findall(name.lower())}
            if years and self.year not in years:
                return False

        return True
