"""
Brief: Tests for adsift.blocklist normalization, validation and ancestor lookups.

Inputs:
  - None

Outputs:
  - None
"""

import threading

import pytest

from adsift.blocklist import (
    BlocklistStore,
    iter_domain_candidates,
    normalize_domain,
    validate_domain,
)
from adsift.errors import InvalidDomain, InvalidInput
from adsift.verdict import Category


def test_normalize_domain_strips_dot_space_and_case():
    assert normalize_domain("  WWW.Example.COM. ") == "www.example.com"


@pytest.mark.parametrize("bad", ["", "   ", "localhost", "a..b.com", "bücher.de", "."])
def test_validate_domain_rejects_malformed(bad):
    with pytest.raises(InvalidDomain):
        validate_domain(bad)


def test_invalid_domain_is_value_error():
    assert issubclass(InvalidDomain, InvalidInput)
    assert issubclass(InvalidDomain, ValueError)


def test_iter_domain_candidates_stops_at_two_labels():
    assert list(iter_domain_candidates("a.b.c.example.com")) == [
        "a.b.c.example.com",
        "b.c.example.com",
        "c.example.com",
        "example.com",
    ]
    assert list(iter_domain_candidates("example.com")) == ["example.com"]


def test_ancestor_entry_blocks_subdomains():
    store = BlocklistStore({"doubleclick.net"})
    assert store.is_blocked("stats.g.doubleclick.net")
    assert store.is_blocked("doubleclick.net")
    assert not store.is_blocked("github.com")
    # Suffix match only on label boundaries.
    assert not store.is_blocked("notdoubleclick.net")


def test_lookup_returns_most_specific_entry_and_category():
    store = BlocklistStore()
    store.load_exact({"example.com"}, Category.CUSTOM)
    store.load_exact({"ads.example.com"}, Category.MALWARE)
    assert store.lookup("x.ads.example.com") == ("ads.example.com", Category.MALWARE)
    assert store.lookup("www.example.com") == ("example.com", Category.CUSTOM)
    assert store.lookup("other.org") is None


def test_load_exact_skips_invalid_entries():
    store = BlocklistStore()
    accepted = store.load_exact(["good.example", "bad", "", "also.good.example."])
    assert accepted == 2
    assert len(store) == 2
    assert "also.good.example" in store
    assert "bad" not in store


def test_load_exact_keeps_first_provenance_unless_replaced():
    store = BlocklistStore()
    store.load_exact(["tracker.example"], Category.TRACKING)
    store.load_exact(["tracker.example", "new.example"], Category.MALWARE)
    assert store.lookup("tracker.example")[1] is Category.TRACKING
    assert store.lookup("new.example")[1] is Category.MALWARE

    store.load_exact(["only.example"], replace=True)
    assert store.domains() == frozenset({"only.example"})


def test_add_and_remove():
    store = BlocklistStore()
    store.add("Ads.Example.COM.")
    assert store.is_blocked("cdn.ads.example.com")
    assert store.remove("ads.example.com") is True
    assert store.remove("ads.example.com") is False
    assert not store.is_blocked("cdn.ads.example.com")
    with pytest.raises(InvalidDomain):
        store.add("nodot")


def test_concurrent_readers_and_writers_do_not_fail():
    store = BlocklistStore({"base.example"})
    errors = []

    def writer():
        for i in range(200):
            store.add(f"w{i}.example")

    def reader():
        try:
            for _ in range(500):
                assert store.is_blocked("x.base.example")
        except AssertionError as e:  # pragma: no cover - failure path
            errors.append(e)

    threads = [threading.Thread(target=writer)] + [
        threading.Thread(target=reader) for _ in range(4)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert not errors
    assert len(store) == 201
