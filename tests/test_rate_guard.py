"""Tests for the global command ceiling and per-sender cooldowns."""

from __future__ import annotations

from wabot.rate_limit import RateGuard

ALICE = "628111@s.whatsapp.net"
BOB = "628222@s.whatsapp.net"


class TestGlobalRate:
    def test_allows_up_to_ceiling(self, clock):
        guard = RateGuard(max_commands=3, window_seconds=60, clock=clock)
        assert [guard.check_global_rate() for _ in range(4)] == [True, True, True, False]
        assert guard.window_count == 3

    def test_window_resets_after_expiry(self, clock):
        guard = RateGuard(max_commands=2, window_seconds=60, clock=clock)
        guard.check_global_rate()
        guard.check_global_rate()
        assert guard.check_global_rate() is False
        clock.advance(61)
        assert guard.check_global_rate() is True
        assert guard.window_count == 1

    def test_window_boundary_is_inclusive(self, clock):
        """Exactly ``window`` seconds later is still the same window."""
        guard = RateGuard(max_commands=1, window_seconds=60, clock=clock)
        assert guard.check_global_rate() is True
        clock.advance(60)
        assert guard.check_global_rate() is False

    def test_rejections_do_not_count(self, clock):
        guard = RateGuard(max_commands=1, window_seconds=60, clock=clock)
        guard.check_global_rate()
        for _ in range(5):
            guard.check_global_rate()
        assert guard.window_count == 1


class TestCooldown:
    def test_first_command_allowed(self, clock):
        guard = RateGuard(cooldown_seconds=5, clock=clock)
        decision = guard.check_cooldown(ALICE)
        assert decision.allowed
        assert decision.remaining_seconds == 0

    def test_second_command_too_soon(self, clock):
        guard = RateGuard(cooldown_seconds=5, clock=clock)
        guard.check_cooldown(ALICE)
        clock.advance(2)
        decision = guard.check_cooldown(ALICE)
        assert not decision.allowed
        assert decision.remaining_seconds == 3

    def test_rejection_does_not_restart_cooldown(self, clock):
        guard = RateGuard(cooldown_seconds=5, clock=clock)
        guard.check_cooldown(ALICE)
        clock.advance(4)
        guard.check_cooldown(ALICE)
        clock.advance(1)
        assert guard.check_cooldown(ALICE).allowed

    def test_same_tick_only_one_passes(self, clock):
        guard = RateGuard(cooldown_seconds=5, clock=clock)
        first = guard.check_cooldown(ALICE)
        second = guard.check_cooldown(ALICE)
        assert first.allowed
        assert not second.allowed

    def test_senders_are_independent(self, clock):
        guard = RateGuard(cooldown_seconds=5, clock=clock)
        guard.check_cooldown(ALICE)
        assert guard.check_cooldown(BOB).allowed

    def test_custom_interval(self, clock):
        guard = RateGuard(cooldown_seconds=5, clock=clock)
        guard.check_cooldown(ALICE, 1)
        clock.advance(1.5)
        assert guard.check_cooldown(ALICE, 1).allowed
