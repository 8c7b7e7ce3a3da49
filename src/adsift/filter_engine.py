from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

from adblockparser import AdblockRule, AdblockRules

from .errors import FilterSourceUnavailable
from .lists import FilterListCache
from .verdict import Category

logger = logging.getLogger(__name__)

# Resource-type options understood by adblockparser. Every classify() call
# supplies all of them so option-bearing rules are evaluated, not skipped.
_BINARY_OPTIONS: Tuple[str, ...] = tuple(AdblockRule.BINARY_OPTIONS)

BUILTIN_AD_RULES: Sequence[str] = (
    "||googlesyndication.com^",
    "||doubleclick.net^",
    "||googleadservices.com^",
    "||amazon-adsystem.com^",
    "||adsystem.amazon.com^",
    "||outbrain.com^",
    "||taboola.com^",
    "||ads.yahoo.com^",
    "||advertising.com^",
    "/pagead/",
)

BUILTIN_TRACKING_RULES: Sequence[str] = (
    "||google-analytics.com^",
    "||googletagmanager.com^",
    "||facebook.com/tr^",
    "||connect.facebook.net^",
    "||scorecardresearch.com^",
    "||quantserve.com^",
    "||hotjar.com^",
    "||mixpanel.com^",
    "||segment.com^",
    "||amplitude.com^",
)

BUILTIN_SOCIAL_RULES: Sequence[str] = (
    "facebook.com/plugins",
    "twitter.com/widgets",
    "linkedin.com/widgets",
    "instagram.com/embed",
    "youtube.com/embed",
    "tiktok.com/embed",
    "||addthis.com^",
    "||sharethis.com^",
)


@dataclass(frozen=True)
class RuleSet:
    """Brief: Adblock-syntax rules tagged with the category they contribute.

    Inputs (constructor fields):
      - name: Label used in logs (e.g. "easylist", "custom").
      - category: Category reported when a rule from this set matches.
      - rules: Rule strings, comments already removed.

    Outputs:
      - Immutable RuleSet instance.
    """

    name: str
    category: Category
    rules: Tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class EngineMatch:
    matched: bool
    matched_rule: Optional[str] = None
    category: Category = Category.CLEAN


@dataclass(frozen=True)
class _CompiledRuleSet:
    rule_set: RuleSet
    engine: Optional[AdblockRules]


@dataclass(frozen=True)
class _Engine:
    sets: Tuple[_CompiledRuleSet, ...] = ()
    # "@@" rules of every set, stored in blocking form so should_block()
    # means "some exception matches".
    exceptions: Optional[AdblockRules] = None


def builtin_rule_sets(
    *, block_tracking: bool = True, block_social: bool = False
) -> List[RuleSet]:
    """Brief: Small built-in rule sets used alongside (or instead of) remote lists.

    Inputs:
      - block_tracking: Include the tracker rule set.
      - block_social: Include the social-widget rule set.

    Outputs:
      - List[RuleSet]: ad rules always, tracking/social when enabled.
    """
    sets = [RuleSet("builtin-ads", Category.ADVERTISEMENT, tuple(BUILTIN_AD_RULES))]
    if block_tracking:
        sets.append(
            RuleSet("builtin-tracking", Category.TRACKING, tuple(BUILTIN_TRACKING_RULES))
        )
    if block_social:
        sets.append(
            RuleSet("builtin-social", Category.SOCIAL, tuple(BUILTIN_SOCIAL_RULES))
        )
    return sets


def _compile(rule_set: RuleSet) -> _CompiledRuleSet:
    if not rule_set.rules:
        return _CompiledRuleSet(rule_set, None)
    engine = AdblockRules(list(rule_set.rules), skip_unsupported_rules=True)
    return _CompiledRuleSet(rule_set, engine)


def _assemble(compiled: Iterable[_CompiledRuleSet]) -> _Engine:
    sets = tuple(compiled)
    allow = [
        rule[2:]
        for c in sets
        for rule in c.rule_set.rules
        if rule.startswith("@@") and rule[2:].strip()
    ]
    if not allow:
        return _Engine(sets)
    return _Engine(sets, AdblockRules(allow, skip_unsupported_rules=True))


def _is_third_party(host: str, source_host: Optional[str]) -> bool:
    if not source_host or not host:
        return False
    if host == source_host:
        return False
    return not (host.endswith("." + source_host) or source_host.endswith("." + host))


def _request_options(
    url: str, source_url: Optional[str], resource_type: str
) -> Dict[str, object]:
    host = (urlparse(url).hostname or "").lower()
    source_host = (urlparse(source_url).hostname or "").lower() if source_url else ""
    options: Dict[str, object] = {name: False for name in _BINARY_OPTIONS}
    rtype = (resource_type or "other").lower()
    if rtype in options:
        options[rtype] = True
    else:
        options["other"] = True
    options["third-party"] = _is_third_party(host, source_host or None)
    options["domain"] = source_host or host
    return options


def _find_matching_rule(
    engine: AdblockRules, url: str, options: Dict[str, object]
) -> Optional[str]:
    for rule in getattr(engine, "rules", ()):
        if rule.is_exception or not rule.matching_supported(options):
            continue
        try:
            if rule.match_url(url, options):
                return rule.raw_rule_text
        except ValueError:
            continue
    return None


class FilterEngineAdapter:
    """
    Final-tier URL oracle backed by adblockparser.

    Each rule set is compiled into its own ``AdblockRules`` instance so a
    match can be attributed to the category of the set that produced it.
    Sets are consulted in construction order; the first set that blocks
    wins. Exception rules (``@@``) from any set suppress matches from every
    set, so a custom ``@@||site^`` overrides a subscribed list.

    The compiled state lives in one immutable ``_Engine`` behind
    ``self._engine``. Rebuilds (``add_custom_filter``, ``rebuild``) compile
    off to the side and then replace that reference, so a concurrent
    ``classify`` sees either the old engine or the new one.

    Example use:
        >>> adapter = FilterEngineAdapter([RuleSet("custom", Category.CUSTOM, ("||ads.example.com^",))])
        >>> adapter.classify("https://ads.example.com/banner.png").matched
        True
    """

    def __init__(self, rule_sets: Optional[Iterable[RuleSet]] = None) -> None:
        self._write_lock = threading.Lock()
        self._engine: _Engine = _assemble(_compile(s) for s in (rule_sets or ()))
        logger.debug(
            "FilterEngineAdapter initialized with %d rule sets (%d rules)",
            len(self._engine.sets),
            self.rule_count,
        )

    @classmethod
    def from_sources(
        cls,
        sources: Sequence[Tuple[str, Category, str]],
        *,
        cache: Optional[FilterListCache] = None,
        custom_filters: Sequence[str] = (),
        extra_rule_sets: Sequence[RuleSet] = (),
    ) -> "FilterEngineAdapter":
        """Brief: Build an adapter from remote/local list sources.

        Inputs:
          - sources: (name, category, url_or_path) triples, in priority order.
          - cache: FilterListCache used to load sources (a default one is
            created when omitted).
          - custom_filters: Operator-supplied rules, compiled first as the
            "custom" set.
          - extra_rule_sets: Additional in-memory sets appended after sources
            (e.g. builtin_rule_sets()).

        Outputs:
          - FilterEngineAdapter with every set that loaded successfully.

        Unreachable sources are logged and skipped; construction never fails
        because a list could not be downloaded.
        """
        cache = cache or FilterListCache()
        rule_sets: List[RuleSet] = [
            RuleSet("custom", Category.CUSTOM, tuple(custom_filters))
        ]
        for name, category, source in sources:
            try:
                rules = cache.load_rules(source)
            except FilterSourceUnavailable as e:
                logger.warning("Could not load %s filters: %s", name, e)
                continue
            logger.info("Loaded %d %s rules", len(rules), name)
            rule_sets.append(RuleSet(name, category, tuple(rules)))
        rule_sets.extend(extra_rule_sets)
        return cls(rule_sets)

    @property
    def rule_count(self) -> int:
        return sum(len(c.rule_set.rules) for c in self._engine.sets)

    @property
    def rule_sets(self) -> Tuple[RuleSet, ...]:
        return tuple(c.rule_set for c in self._engine.sets)

    @property
    def categories(self) -> Tuple[Category, ...]:
        seen: List[Category] = []
        for c in self._engine.sets:
            if c.rule_set.rules and c.rule_set.category not in seen:
                seen.append(c.rule_set.category)
        return tuple(seen)

    def classify(
        self,
        url: str,
        source_url: Optional[str] = None,
        resource_type: str = "other",
    ) -> EngineMatch:
        """Brief: Match a request URL against every rule set.

        Inputs:
          - url: Absolute request URL.
          - source_url: Optional URL of the page that issued the request; used
            for third-party and $domain= options.
          - resource_type: adblock resource type ("script", "image", ...).
            Unknown types are treated as "other".

        Outputs:
          - EngineMatch: matched flag, the raw rule text when it can be
            identified, and the category of the set that matched. A matching
            exception rule from any set yields EngineMatch(False).
        """
        engine = self._engine
        if not engine.sets:
            return EngineMatch(False)
        options = _request_options(url, source_url, resource_type)
        for compiled in engine.sets:
            if compiled.engine is None:
                continue
            if compiled.engine.should_block(url, options):
                if engine.exceptions is not None and engine.exceptions.should_block(
                    url, options
                ):
                    logger.debug("Exception rule allows %s", url)
                    return EngineMatch(False)
                rule = _find_matching_rule(compiled.engine, url, options)
                return EngineMatch(True, rule, compiled.rule_set.category)
        return EngineMatch(False)

    def rebuild(self, rule_sets: Iterable[RuleSet]) -> None:
        engine = _assemble(_compile(s) for s in rule_sets)
        with self._write_lock:
            self._engine = engine
        logger.info("Filter engine rebuilt with %d rules", self.rule_count)

    def add_custom_filter(self, rule: str) -> None:
        """Brief: Append a rule to the custom set and publish a rebuilt engine.

        Inputs:
          - rule: Adblock-syntax rule string.

        Outputs:
          - None. Only the custom set and the shared exception rules are
            recompiled; other compiled sets are reused as-is.
        """
        rule = str(rule).strip()
        if not rule or rule.startswith("!"):
            return
        with self._write_lock:
            current = list(self._engine.sets)
            for i, compiled in enumerate(current):
                if compiled.rule_set.category is Category.CUSTOM:
                    updated = RuleSet(
                        compiled.rule_set.name,
                        Category.CUSTOM,
                        compiled.rule_set.rules + (rule,),
                    )
                    current[i] = _compile(updated)
                    break
            else:
                current.insert(0, _compile(RuleSet("custom", Category.CUSTOM, (rule,))))
            self._engine = _assemble(current)
        logger.info("Added custom filter %s", rule)
