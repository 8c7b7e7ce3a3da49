from __future__ import annotations

import ipaddress
import logging
import threading
from typing import TYPE_CHECKING, Iterable, List, Optional, Tuple
from urllib.parse import urlparse

from .blocklist import BlocklistStore, normalize_domain, validate_domain
from .errors import FilterSourceUnavailable, InvalidDomain
from .filter_engine import FilterEngineAdapter, builtin_rule_sets
from .lists import FilterListCache, FilterSources
from .patterns import PatternClassifier
from .stats import BlockStats, StatsCollector
from .verdict import Category, Verdict

if TYPE_CHECKING:  # pragma: no cover
    from .config.config_schema import BlockerConfig

logger = logging.getLogger(__name__)

INVALID_FORMAT_REASON = "invalid format"


def _split_target(target: str) -> Optional[Tuple[str, str]]:
    """Brief: Turn a URL or bare domain into (host, url) for classification.

    Inputs:
      - target: Absolute URL ("https://host/path") or bare domain.

    Outputs:
      - (normalized_host, url) or None when the target is malformed.
        Bare domains become "http://<domain>/"; bracketed IPv6 URL hosts
        are kept in compressed form.

    Example:
      >>> _split_target("ads.example.com")
      ('ads.example.com', 'http://ads.example.com/')
      >>> _split_target("not a url") is None
      True
    """
    text = str(target or "").strip()
    if not text:
        return None
    if "://" in text:
        try:
            host = urlparse(text).hostname
        except ValueError:
            return None
        if not host:
            return None
        if ":" in host:
            # Bracketed IPv6 literal; classified by its address text.
            try:
                return str(ipaddress.IPv6Address(host)), text
            except ValueError:
                return None
        url = text
    else:
        host = text
        url = None
    try:
        host = validate_domain(host)
    except InvalidDomain:
        return None
    if url is None:
        url = f"http://{host}/"
    return host, url


class ClassificationPipeline:
    """
    Ordered, short-circuiting classifier shared by the DNS and proxy front ends.

    Tiers, first positive wins:
      1. whitelist (exact domain)           -> allowed, Whitelisted
      2. blocklist (exact or ancestor)      -> blocked, entry provenance
      3. dynamic ad-network patterns        -> blocked, Advertisement
      4. subdomain-shape heuristic          -> blocked, Advertisement
      5. tracking keywords (block_tracking) -> blocked, Tracking
      6. programmatic-ad heuristic          -> blocked, Advertisement
      7. filter engine rules                -> blocked with the rule set's
                                               category, else Clean

    Tiers 2-6 look at the host only; tier 7 sees the full URL.

    Example use:
        >>> p = ClassificationPipeline(blocklist=BlocklistStore({"doubleclick.net"}))
        >>> p.classify("stats.g.doubleclick.net").should_block
        True
        >>> p.get_stats().total_requests
        1
    """

    def __init__(
        self,
        blocklist: Optional[BlocklistStore] = None,
        patterns: Optional[PatternClassifier] = None,
        engine: Optional[FilterEngineAdapter] = None,
        whitelist: Optional[Iterable[str]] = None,
        stats: Optional[StatsCollector] = None,
        block_tracking: bool = True,
    ) -> None:
        self.blocklist = blocklist if blocklist is not None else BlocklistStore()
        self.patterns = patterns if patterns is not None else PatternClassifier()
        self.engine = engine
        self.stats = stats if stats is not None else StatsCollector()
        self.block_tracking = bool(block_tracking)
        self._whitelist_lock = threading.Lock()
        self._whitelist: frozenset = frozenset()
        for domain in whitelist or ():
            self.add_whitelist_domain(domain)

    @classmethod
    def from_config(
        cls,
        cfg: "BlockerConfig",
        *,
        stats: Optional[StatsCollector] = None,
        cache: Optional[FilterListCache] = None,
    ) -> "ClassificationPipeline":
        """Brief: Build a pipeline (and its lists) from the ``blocker`` config.

        Inputs:
          - cfg: BlockerConfig (see adsift.config.config_schema).
          - stats: Optional shared StatsCollector.
          - cache: Optional FilterListCache; built from cfg when omitted.

        Outputs:
          - ClassificationPipeline ready to classify.

        Lists that cannot be downloaded or read are logged and skipped.
        """
        if cache is None:
            cache = FilterListCache(
                ttl_seconds=cfg.cache_ttl_seconds,
                cache_dir=cfg.cache_dir,
                enabled=cfg.cache_filters,
            )

        sources: List[Tuple[str, Category, str]] = []
        if cfg.enable_malware_protection:
            sources.append(("malware", Category.MALWARE, FilterSources.MALWARE_DOMAINS))
        if cfg.enable_easylist:
            sources.append(("easylist", Category.ADVERTISEMENT, FilterSources.EASYLIST))
        if cfg.enable_easyprivacy and cfg.block_tracking:
            sources.append(("easyprivacy", Category.TRACKING, FilterSources.EASYPRIVACY))
        if cfg.block_social:
            sources.append(("social", Category.SOCIAL, FilterSources.SOCIAL_ANNOYANCES))

        engine = FilterEngineAdapter.from_sources(
            sources,
            cache=cache,
            custom_filters=cfg.custom_filters,
            extra_rule_sets=builtin_rule_sets(
                block_tracking=cfg.block_tracking, block_social=cfg.block_social
            ),
        )

        blocklist = BlocklistStore()
        blocklist.load_exact(cfg.blocked_domains, Category.CUSTOM)
        for entry in list(cfg.blocklist_urls) + list(cfg.blocklist_files):
            try:
                domains = cache.load_domains(entry.source)
            except FilterSourceUnavailable as e:
                logger.warning("Could not load blocklist %s: %s", entry.source, e)
                continue
            count = blocklist.load_exact(domains, entry.category)
            logger.info("Loaded %d domains from %s", count, entry.source)

        return cls(
            blocklist=blocklist,
            patterns=PatternClassifier(cfg.heuristics),
            engine=engine,
            whitelist=cfg.whitelist_domains,
            stats=stats,
            block_tracking=cfg.block_tracking,
        )

    # Whitelist management --------------------------------------------------

    @property
    def whitelist(self) -> frozenset:
        return self._whitelist

    def add_whitelist_domain(self, domain: str) -> None:
        name = validate_domain(domain)
        with self._whitelist_lock:
            self._whitelist = self._whitelist | {name}
        logger.info("Whitelisted %s", name)

    def remove_whitelist_domain(self, domain: str) -> bool:
        name = normalize_domain(domain)
        with self._whitelist_lock:
            if name not in self._whitelist:
                return False
            self._whitelist = self._whitelist - {name}
        return True

    # Blocklist / engine management -----------------------------------------

    def add_blocked_domain(
        self, domain: str, category: Category = Category.CUSTOM
    ) -> None:
        self.blocklist.add(domain, category)

    def remove_blocked_domain(self, domain: str) -> bool:
        return self.blocklist.remove(domain)

    def add_custom_filter(self, rule: str) -> None:
        if self.engine is None:
            self.engine = FilterEngineAdapter()
        self.engine.add_custom_filter(rule)

    # Stats -----------------------------------------------------------------

    def get_stats(self) -> BlockStats:
        return self.stats.snapshot()

    def reset_stats(self) -> None:
        self.stats.reset()

    # Classification --------------------------------------------------------

    def classify(
        self,
        target: str,
        source_url: Optional[str] = None,
        resource_type: str = "other",
    ) -> Verdict:
        """Brief: Classify a URL or bare domain and record the outcome.

        Inputs:
          - target: Absolute URL or bare domain.
          - source_url: Optional referring page URL (used by tier 7).
          - resource_type: Resource type hint for tier 7 ("script", ...).

        Outputs:
          - Verdict. Malformed targets yield a Clean verdict with reason
            "invalid format" and are never blocked.
        """
        self.stats.record_request()
        split = _split_target(target)
        if split is None:
            logger.debug("Unclassifiable target %r", target)
            return Verdict.clean(INVALID_FORMAT_REASON)

        host, url = split
        verdict = self._evaluate(host, url, source_url, resource_type)
        if verdict.should_block:
            self.stats.record_block(verdict.category)
            logger.info(
                "Blocked %s (%s: %s)", url, verdict.category.value, verdict.reason
            )
        else:
            logger.debug("Allowed %s (%s)", url, verdict.reason)
        return verdict

    def classify_domain(self, domain: str) -> Verdict:
        return self.classify(domain)

    def classify_url(
        self,
        url: str,
        source_url: Optional[str] = None,
        resource_type: str = "other",
    ) -> Verdict:
        return self.classify(url, source_url, resource_type)

    def batch_classify(self, targets: Iterable[str]) -> List[Tuple[str, Verdict]]:
        return [(t, self.classify(t)) for t in targets]

    def _evaluate(
        self,
        host: str,
        url: str,
        source_url: Optional[str],
        resource_type: str,
    ) -> Verdict:
        if host in self._whitelist:
            return Verdict(False, "Domain is whitelisted", Category.WHITELISTED, host)

        hit = self.blocklist.lookup(host)
        if hit is not None:
            entry, category = hit
            return Verdict.blocked("Domain in blocklist", category, entry)

        pattern = self.patterns.first_dynamic_pattern(host)
        if pattern is not None:
            return Verdict.blocked(
                "Matched dynamic ad pattern", Category.ADVERTISEMENT, pattern
            )

        pattern = self.patterns.first_subdomain_shape(host)
        if pattern is not None:
            return Verdict.blocked(
                "Matched suspicious subdomain pattern",
                Category.ADVERTISEMENT,
                pattern,
            )

        if self.block_tracking:
            pattern = self.patterns.first_tracking_pattern(host)
            if pattern is not None:
                return Verdict.blocked(
                    "Matched tracking pattern", Category.TRACKING, pattern
                )

        if self.patterns.is_programmatic_ad_domain(host):
            return Verdict.blocked(
                "Detected programmatic ad domain", Category.ADVERTISEMENT
            )

        engine = self.engine
        if engine is not None:
            match = engine.classify(url, source_url, resource_type)
            if match.matched:
                return Verdict.blocked(
                    "Blocked by filter rules", match.category, match.matched_rule
                )

        return Verdict.clean()
