from __future__ import annotations

from src.api.config import ActorSettings
from src.api.services.actor_windows import ActorPatternDetector, ActorWindows
from src.api.services.cooldown import CooldownGate


def test_cooldown_suppresses_until_elapsed(clock):
    gate = CooldownGate(clock)
    assert gate.try_fire("massive_attack", 3600)
    clock.advance(3599)
    assert not gate.try_fire("massive_attack", 3600)
    clock.advance(1)
    assert gate.try_fire("massive_attack", 3600)


def test_suppressed_attempt_does_not_extend_cooldown(clock):
    gate = CooldownGate(clock)
    gate.try_fire("k", 100)
    clock.advance(50)
    assert not gate.try_fire("k", 100)
    clock.advance(50)
    assert gate.try_fire("k", 100)


def test_cooldown_keys_are_independent(clock):
    gate = CooldownGate(clock)
    assert gate.try_fire("suspicious_ip:1.1.1.1", 1800)
    assert gate.try_fire("suspicious_ip:2.2.2.2", 1800)
    assert not gate.try_fire("suspicious_ip:1.1.1.1", 1800)
    assert len(gate.active()) == 2


def test_purge_expired_drops_only_elapsed_records(clock):
    gate = CooldownGate(clock)
    gate.try_fire("short", 60)
    gate.try_fire("long", 600)
    clock.advance(60)
    assert gate.purge_expired() == 1
    assert [r.rule_key for r in gate.last_fired()] == ["long"]
    assert gate.try_fire("short", 60)


def test_actor_window_prunes_at_window_edge(clock):
    windows = ActorWindows(900, clock)
    windows.record("a@x.com:1.1.1.1")
    clock.advance(899)
    assert windows.record("a@x.com:1.1.1.1") == 2
    clock.advance(1)
    # first entry is now exactly one window old
    assert windows.count("a@x.com:1.1.1.1") == 1


def test_actor_windows_purge_idle_keys(clock):
    windows = ActorWindows(60, clock)
    windows.record("a")
    clock.advance(30)
    windows.record("b")
    clock.advance(30)
    assert windows.purge_idle() == 1
    assert windows.keys() == ["b"]


def test_failed_login_pattern_fires_once_then_resets(clock):
    detector = ActorPatternDetector(ActorSettings(5, 900), ActorSettings(10, 3600), clock)
    hits = [detector.record_failed_login("ana@example.com", "10.1.1.1", "UA") for _ in range(5)]
    assert hits[:4] == [None, None, None, None]
    hit = hits[4]
    assert hit is not None
    assert hit.pattern == "repeated_failed_logins"
    assert hit.key == "ana@example.com:10.1.1.1"
    assert hit.count == 5

    assert detector.failed_logins.count("ana@example.com:10.1.1.1") == 0
    assert detector.record_failed_login("ana@example.com", "10.1.1.1", "UA") is None
    assert detector.failed_logins.count("ana@example.com:10.1.1.1") == 1


def test_failed_logins_are_tracked_per_email_and_ip(clock):
    detector = ActorPatternDetector(ActorSettings(5, 900), ActorSettings(10, 3600), clock)
    for _ in range(4):
        detector.record_failed_login("ana@example.com", "10.1.1.1")
        detector.record_failed_login("ana@example.com", "10.1.1.2")
    assert detector.tracked()["failedLogins"] == 2


def test_failed_logins_spread_past_window_do_not_fire(clock):
    detector = ActorPatternDetector(ActorSettings(5, 900), ActorSettings(10, 3600), clock)
    for _ in range(4):
        detector.record_failed_login("bob@example.com", "10.0.0.1")
    clock.advance(900)
    assert detector.record_failed_login("bob@example.com", "10.0.0.1") is None


def test_rate_limit_pattern_counts_across_endpoints(clock):
    detector = ActorPatternDetector(ActorSettings(5, 900), ActorSettings(10, 3600), clock)
    for i in range(9):
        assert detector.record_rate_limit_block("8.8.8.8", f"/e{i}") is None
    hit = detector.record_rate_limit_block("8.8.8.8", "/login")
    assert hit is not None
    assert hit.key == "rate_limit:8.8.8.8"
    assert hit.pattern == "excessive_rate_limiting"
    assert detector.rate_limit_blocks.count("rate_limit:8.8.8.8") == 0
