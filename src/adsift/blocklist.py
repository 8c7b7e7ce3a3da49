from __future__ import annotations

import logging
import threading
from types import MappingProxyType
from typing import Iterable, Iterator, Mapping, Optional, Tuple

from .errors import InvalidDomain
from .verdict import Category

logger = logging.getLogger(__name__)


def normalize_domain(domain: str) -> str:
    """Brief: Normalize a domain for lookups and storage.

    Inputs:
      - domain: Raw domain name (may have surrounding whitespace, trailing dot,
        mixed case).

    Outputs:
      - str: Lower-cased domain without trailing dot.

    Example:
      >>> normalize_domain(" Stats.G.DoubleClick.NET. ")
      'stats.g.doubleclick.net'
    """
    return str(domain).strip().rstrip(".").lower()


def validate_domain(domain: str) -> str:
    """Brief: Normalize and validate a domain, raising InvalidDomain when unusable.

    Inputs:
      - domain: Raw domain name.

    Outputs:
      - str: Normalized domain.

    Raises:
      - InvalidDomain: when the domain is empty, has no dot, contains an empty
        label or is not ASCII.

    Example:
      >>> validate_domain("Example.com.")
      'example.com'
    """
    name = normalize_domain(domain)
    if not name:
        raise InvalidDomain("empty domain")
    if "." not in name:
        raise InvalidDomain(f"domain {name!r} has no dot")
    if not name.isascii():
        raise InvalidDomain(f"domain {name!r} is not ASCII")
    if any(not label for label in name.split(".")):
        raise InvalidDomain(f"domain {name!r} has an empty label")
    return name


def iter_domain_candidates(domain: str) -> Iterator[str]:
    """Brief: Yield a domain followed by its ancestors, most specific first.

    Inputs:
      - domain: Normalized domain.

    Outputs:
      - Iterator[str]: the domain itself, then each parent down to the last two
        labels. A bare TLD is never yielded as a parent.

    Example:
      >>> list(iter_domain_candidates("a.b.example.com"))
      ['a.b.example.com', 'b.example.com', 'example.com']
    """
    labels = domain.split(".")
    for i in range(0, max(1, len(labels) - 1)):
        yield ".".join(labels[i:])


class BlocklistStore:
    """
    Exact-match domain blocklist with ancestor lookups.

    Membership of an entry blocks that domain and every subdomain of it. Each
    entry remembers the Category of the list that contributed it so verdicts
    can report provenance (Custom when unknown).

    The entry mapping is copy-on-write: writers build a new dict under
    ``_write_lock`` and publish it with a single attribute assignment, so
    readers never lock and always see either the old or the new mapping.

    Example use:
        >>> store = BlocklistStore()
        >>> store.load_exact({"doubleclick.net"})
        1
        >>> store.is_blocked("stats.g.doubleclick.net")
        True
        >>> store.is_blocked("github.com")
        False
    """

    def __init__(self, domains: Optional[Iterable[str]] = None) -> None:
        self._write_lock = threading.Lock()
        self._entries: Mapping[str, Category] = MappingProxyType({})
        if domains:
            self.load_exact(domains)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, domain: object) -> bool:
        if not isinstance(domain, str):
            return False
        return normalize_domain(domain) in self._entries

    def load_exact(
        self,
        domains: Iterable[str],
        category: Category = Category.CUSTOM,
        *,
        replace: bool = False,
    ) -> int:
        """Brief: Merge (or replace) a batch of domains into the store.

        Inputs:
          - domains: Iterable of raw domain strings.
          - category: Provenance category recorded for every new entry.
          - replace: When True, the batch replaces the whole store.

        Outputs:
          - int: number of valid domains accepted from the batch.

        Invalid entries are skipped; they are never inserted.
        """
        accepted = {}
        rejected = 0
        for raw in domains:
            try:
                accepted[validate_domain(raw)] = category
            except InvalidDomain:
                rejected += 1
        if rejected:
            logger.debug("BlocklistStore: skipped %d invalid domains", rejected)

        with self._write_lock:
            if replace:
                merged = accepted
            else:
                merged = dict(self._entries)
                # Entries that are already present keep their first provenance.
                for name, cat in accepted.items():
                    merged.setdefault(name, cat)
            self._entries = MappingProxyType(merged)
        return len(accepted)

    def add(self, domain: str, category: Category = Category.CUSTOM) -> None:
        name = validate_domain(domain)
        with self._write_lock:
            merged = dict(self._entries)
            merged[name] = category
            self._entries = MappingProxyType(merged)

    def remove(self, domain: str) -> bool:
        """Remove an exact entry; returns True when something was removed."""
        name = validate_domain(domain)
        with self._write_lock:
            if name not in self._entries:
                return False
            merged = dict(self._entries)
            del merged[name]
            self._entries = MappingProxyType(merged)
        return True

    def lookup(self, domain: str) -> Optional[Tuple[str, Category]]:
        """Brief: Find the most specific entry blocking ``domain``.

        Inputs:
          - domain: Raw or normalized domain.

        Outputs:
          - (entry, category) for the first matching entry walking from the
            domain itself towards its two-label parent, or None.
        """
        name = normalize_domain(domain)
        if not name:
            return None
        entries = self._entries
        for candidate in iter_domain_candidates(name):
            category = entries.get(candidate)
            if category is not None:
                return candidate, category
        return None

    def is_blocked(self, domain: str) -> bool:
        return self.lookup(domain) is not None

    def domains(self) -> frozenset:
        return frozenset(self._entries)
