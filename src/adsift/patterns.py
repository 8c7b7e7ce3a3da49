from __future__ import annotations

import logging
import re
from typing import List, Optional, Sequence

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

# Known rotating ad-serving infrastructure. Anchored; matched against a bare
# normalized host.
DYNAMIC_AD_PATTERNS: Sequence[str] = (
    # Google ads serving hosts
    r"^tpc\.googlesyndication\.com$",
    r"^pagead\d*\.l\.google\.com$",
    r"^googleads\.g\.doubleclick\.net$",
    r"^stats\.g\.doubleclick\.net$",
    r"^cm\.g\.doubleclick\.net$",
    r"^.*\.googletag\..*$",
    r"^connect\.facebook\.net$",
    # Amazon ads
    r"^.*\.amazon-adsystem\.com$",
    r"^.*\.adsystem\.amazon\..*$",
    # Generic ad subdomains
    r"^.*\.ads\..*$",
    r"^.*\.ad\..*$",
    r"^.*\.advertising\..*$",
    r"^.*\.adsystem\..*$",
    # Exchanges and verification vendors
    r"^.*\.adnxs\.com$",
    r"^.*\.adsafeprotected\.com$",
    r"^.*\.criteo\.com$",
    r"^.*\.moatads\.com$",
    r"^.*\.rlcdn\.com$",
    r"^.*\.rubiconproject\.com$",
    r"^.*\.pubmatic\.com$",
    r"^.*\.openx\.net$",
    r"^.*\.adform\.net$",
    r"^.*\.serving-sys\.com$",
    # Video and mobile ad platforms
    r"^.*\.videologygroup\.com$",
    r"^.*\.mopub\.com$",
    r"^.*\.applovin\.com$",
    # Pop-under and native networks
    r"^.*\.popads\.net$",
    r"^.*\.popcash\.net$",
    r"^.*\.propellerads\.com$",
    r"^.*\.mgid\.com$",
    r"^.*\.revcontent\.com$",
    r"^.*\.nativo\.com$",
    r"^.*\.sharethrough\.com$",
    r"^.*\.plista\.com$",
)

TRACKING_PATTERNS: Sequence[str] = (
    r"analytics",
    r"tracking",
    r"telemetry",
    r"metrics",
    r"beacon",
    r"collector",
    r"pixel",
    r"impression",
    r"conversion",
    r"retargeting",
    r"remarketing",
    r"affiliate",
    r"google-analytics\.com",
    r"googletagmanager\.com",
    r"hotjar\.com",
    r"mixpanel\.com",
    r"scorecardresearch\.com",
    r"quantserve\.com",
)

SUBDOMAIN_SHAPE_PATTERNS: Sequence[str] = (
    r"^[a-z0-9]{8,}\..*$",
    r"^[0-9]+\..*$",
    r"^ads[0-9]*\..*$",
    r"^banner[0-9]*\..*$",
    r"^track[0-9]*\..*$",
    r"^ad[0-9]*\..*$",
    r"^promo[0-9]*\..*$",
    r"^popup[0-9]*\..*$",
    r"^click[0-9]*\..*$",
    r"^serve[0-9]*\..*$",
    r"^cdn[0-9]*\..*ads.*$",
    r"^static[0-9]*\..*ads.*$",
)

# A shape match alone is not enough: CDNs routinely use random or numeric
# leading labels.
SHAPE_COOCCURRENCE_KEYWORDS: Sequence[str] = ("ads", "track", "analytics", "doubleclick")

PROGRAMMATIC_VOCABULARY: Sequence[str] = (
    "rtb",
    "bid",
    "auction",
    "exchange",
    "dsp",
    "adtech",
    "adx",
    "ssp",
    "prebid",
)


class HeuristicThresholds(BaseModel):
    """Brief: Tunable thresholds for the structural ad heuristics.

    Inputs:
      - min_labels: A domain needs strictly more labels than this for the
        programmatic-vocabulary check to apply (default 3).
      - digit_ratio_divisor: A domain whose digit count exceeds
        len(domain) / digit_ratio_divisor and contains "ad" is flagged
        (default 3, i.e. more than one third digits).
      - programmatic_vocabulary: Substrings indicating RTB/exchange hosts.
      - shape_keywords: Keywords that must co-occur with a subdomain-shape match.

    Outputs:
      - HeuristicThresholds instance.
    """

    min_labels: int = Field(default=3, ge=1)
    digit_ratio_divisor: int = Field(default=3, ge=1)
    programmatic_vocabulary: List[str] = Field(
        default_factory=lambda: list(PROGRAMMATIC_VOCABULARY)
    )
    shape_keywords: List[str] = Field(
        default_factory=lambda: list(SHAPE_COOCCURRENCE_KEYWORDS)
    )

    class Config:
        extra = "ignore"


def _compile_all(patterns: Sequence[str]) -> List[re.Pattern]:
    compiled: List[re.Pattern] = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern, re.IGNORECASE))
        except re.error as e:
            logger.error("Invalid regex pattern '%s': %s", pattern, e)
    return compiled


def _first_match(patterns: Sequence[re.Pattern], domain: str) -> Optional[str]:
    for pattern in patterns:
        if pattern.search(domain):
            return pattern.pattern
    return None


class PatternClassifier:
    """
    Compiled regex and heuristic matchers for ad and tracking hosts.

    All inputs are expected to be normalized (lower-cased, no trailing dot);
    patterns are compiled case-insensitively regardless. The matcher lists
    are built once and never mutated, so instances are safe to share across
    handler threads.

    Example use:
        >>> pc = PatternClassifier()
        >>> pc.matches_tracking_keyword("www.google-analytics.com")
        True
        >>> pc.looks_promotional("x7k2m9q1z.ads-cdn.com")
        True
        >>> pc.looks_promotional("a1b2c3d4e5.cloudfront.net")
        False
    """

    def __init__(
        self,
        thresholds: Optional[HeuristicThresholds] = None,
        *,
        dynamic_patterns: Sequence[str] = DYNAMIC_AD_PATTERNS,
        tracking_patterns: Sequence[str] = TRACKING_PATTERNS,
        subdomain_patterns: Sequence[str] = SUBDOMAIN_SHAPE_PATTERNS,
    ) -> None:
        self.thresholds = thresholds or HeuristicThresholds()
        self.dynamic_patterns = _compile_all(dynamic_patterns)
        self.tracking_patterns = _compile_all(tracking_patterns)
        self.subdomain_patterns = _compile_all(subdomain_patterns)
        self._shape_keywords = tuple(k.lower() for k in self.thresholds.shape_keywords)
        self._vocabulary = tuple(
            v.lower() for v in self.thresholds.programmatic_vocabulary
        )

    def first_dynamic_pattern(self, domain: str) -> Optional[str]:
        return _first_match(self.dynamic_patterns, domain)

    def first_tracking_pattern(self, domain: str) -> Optional[str]:
        return _first_match(self.tracking_patterns, domain)

    def first_subdomain_shape(self, domain: str) -> Optional[str]:
        """Brief: Return the shape pattern that fired, if a keyword co-occurs.

        Inputs:
          - domain: Normalized domain.

        Outputs:
          - Optional[str]: the matching shape pattern, or None when no shape
            matches or none of the co-occurrence keywords is present.
        """
        if not any(k in domain for k in self._shape_keywords):
            return None
        return _first_match(self.subdomain_patterns, domain)

    def matches_dynamic_pattern(self, domain: str) -> bool:
        return self.first_dynamic_pattern(domain) is not None

    def matches_tracking_keyword(self, domain: str) -> bool:
        return self.first_tracking_pattern(domain) is not None

    def matches_subdomain_shape(self, domain: str) -> bool:
        return self.first_subdomain_shape(domain) is not None

    def is_programmatic_ad_domain(self, domain: str) -> bool:
        """Brief: Structural heuristic for RTB/exchange and ad-rotation hosts.

        Inputs:
          - domain: Normalized domain.

        Outputs:
          - bool: True when the domain has more than ``min_labels`` labels and
            contains a programmatic-vocabulary word, OR when more than
            1/``digit_ratio_divisor`` of its characters are digits and it
            contains "ad". Either branch alone is sufficient.

        Example:
          >>> PatternClassifier().is_programmatic_ad_domain("eu.rtb.media.example.com")
          True
        """
        t = self.thresholds
        if len(domain.split(".")) > t.min_labels:
            if any(word in domain for word in self._vocabulary):
                return True

        digits = sum(1 for ch in domain if ch.isdigit())
        if digits * t.digit_ratio_divisor > len(domain) and "ad" in domain:
            return True
        return False

    def looks_promotional(self, domain: str) -> bool:
        return self.matches_subdomain_shape(domain) or self.is_programmatic_ad_domain(
            domain
        )
