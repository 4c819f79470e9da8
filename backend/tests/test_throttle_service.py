"""
Tests for per-entity cooldown tracking.
"""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from app.schemas import Cooldown
from app.services.throttle_service import ThrottleTracker

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


@pytest.mark.anyio
async def test_throttle_isolated_per_entity_and_rule(session_factory):
    tracker = ThrottleTracker(session_factory)
    rule_a, rule_b = uuid.uuid4(), uuid.uuid4()

    await tracker.apply(rule_a, ["kw-A"], Cooldown(unit="hours", value=24), NOW)

    assert await tracker.get_throttled(rule_a, NOW) == {"kw-A"}
    # Sibling entity of the same rule stays eligible
    assert "kw-B" not in await tracker.get_throttled(rule_a, NOW)
    # Same entity under another rule stays eligible
    assert await tracker.get_throttled(rule_b, NOW) == set()


@pytest.mark.anyio
async def test_throttle_expires(session_factory):
    tracker = ThrottleTracker(session_factory)
    rule_id = uuid.uuid4()
    await tracker.apply(rule_id, ["kw-A"], Cooldown(unit="minutes", value=30), NOW)

    assert await tracker.get_throttled(rule_id, NOW + timedelta(minutes=29)) == {"kw-A"}
    assert await tracker.get_throttled(rule_id, NOW + timedelta(minutes=30)) == set()


@pytest.mark.anyio
async def test_reapply_extends_and_duplicates_are_fine(session_factory):
    tracker = ThrottleTracker(session_factory)
    rule_id = uuid.uuid4()
    await tracker.apply(rule_id, ["kw-A"], Cooldown(unit="hours", value=1), NOW)

    later = NOW + timedelta(minutes=50)
    count = await tracker.apply(rule_id, ["kw-A", "kw-A", "kw-B"], Cooldown(unit="hours", value=1), later)

    assert count == 2
    assert await tracker.get_throttled(rule_id, NOW + timedelta(minutes=90)) == {"kw-A", "kw-B"}


@pytest.mark.anyio
async def test_zero_cooldown_writes_nothing(session_factory):
    tracker = ThrottleTracker(session_factory)
    rule_id = uuid.uuid4()
    assert await tracker.apply(rule_id, ["kw-A"], Cooldown(unit="days", value=0), NOW) == 0
    assert await tracker.get_throttled(rule_id, NOW) == set()


@pytest.mark.anyio
async def test_search_terms_with_spaces_are_keys(session_factory):
    tracker = ThrottleTracker(session_factory)
    rule_id = uuid.uuid4()
    await tracker.apply(rule_id, ["red running shoes"], Cooldown(unit="days", value=7), NOW)
    assert await tracker.get_throttled(rule_id, NOW) == {"red running shoes"}
