"""
Tests for the per-sender rate limiter.
"""

import logging
import threading

from meshobserv.rate_limiter import RateLimiter


def test_limit_boundary():
    limiter = RateLimiter(limit=4000)
    results = [limiter.accept(0xAAAA01) for _ in range(4001)]
    assert all(results[:4000])
    assert results[3999] is True
    assert results[4000] is False


def test_senders_are_counted_independently():
    limiter = RateLimiter(limit=2)
    assert limiter.accept(1)
    assert limiter.accept(1)
    assert not limiter.accept(1)
    assert limiter.accept(2)
    assert limiter.count(1) == 3
    assert limiter.count(2) == 1
    assert limiter.count(3) == 0


def test_reset_restarts_counting_for_everyone():
    limiter = RateLimiter(limit=3)
    for sender in (1, 2):
        for _ in range(5):
            limiter.accept(sender)
    assert not limiter.accept(1)
    limiter.reset()
    assert limiter.count(1) == 0
    assert limiter.count(2) == 0
    assert all(limiter.accept(1) for _ in range(3))
    assert not limiter.accept(1)
    assert limiter.accept(2)


def test_blocked_sender_rejected_without_counting():
    limiter = RateLimiter(limit=10, blocked={99})
    assert not limiter.accept(99)
    assert limiter.count(99) == 0
    assert limiter.accept(100)


def test_only_every_hundredth_rejection_is_logged(caplog):
    limiter = RateLimiter(limit=10)
    with caplog.at_level(logging.INFO, logger='meshobserv.rate_limiter'):
        for _ in range(300):
            limiter.accept(5)
    messages = [r.getMessage() for r in caplog.records if 'rate limited' in r.getMessage()]
    assert messages == [
        'Node 5 rate limited (100 messages)',
        'Node 5 rate limited (200 messages)',
        'Node 5 rate limited (300 messages)',
    ]


def test_concurrent_counting_is_exact():
    limiter = RateLimiter(limit=1_000_000)

    def worker():
        for _ in range(1000):
            limiter.accept(7)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert limiter.count(7) == 8000
