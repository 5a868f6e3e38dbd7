from apps.ingestor.cooldown import CooldownGuard
from tests.conftest import START, FakeClock


def test_inactive_until_triggered():
    guard = CooldownGuard(FakeClock())

    assert guard.is_active() is False
    assert guard.remaining() == 0.0
    assert guard.until is None


def test_expires_purely_by_time():
    clock = FakeClock()
    guard = CooldownGuard(clock)

    assert guard.trigger(300, reason="overload") == START + 300
    assert guard.is_active()

    clock.advance(299)
    assert guard.remaining() == 1.0

    clock.advance(1)
    assert guard.is_active() is False
    assert guard.until is None


def test_later_trigger_extends_but_never_shortens():
    clock = FakeClock()
    guard = CooldownGuard(clock)

    guard.trigger(600)
    guard.trigger(300)
    assert guard.remaining() == 600

    clock.advance(500)
    guard.trigger(300)
    assert guard.remaining() == 300
