import pytest

from voice_agent.models.intent import IntentType
from voice_agent.services.patience_limiter import PatienceLevel, PatienceLimiter


@pytest.mark.parametrize("intent", [
    IntentType.PRODUCT_SEARCH,
    IntentType.STOCK,
    IntentType.POLICY,
    IntentType.CATEGORIES,
])
def test_on_topic_leaves_counter_alone(intent):
    decision = PatienceLimiter(threshold=10).evaluate(intent, off_topic_count=3)
    assert decision.off_topic_count == 3
    assert not decision.off_topic
    assert not decision.cutoff


@pytest.mark.parametrize("intent", [IntentType.GENERAL, IntentType.UNKNOWN])
def test_off_topic_increments_once(intent):
    decision = PatienceLimiter(threshold=10).evaluate(intent, off_topic_count=0)
    assert decision.off_topic_count == 1
    assert decision.off_topic
    assert decision.level == PatienceLevel.NORMAL


def test_cutoff_at_threshold_and_after():
    limiter = PatienceLimiter(threshold=3)
    count = 0
    levels = []
    for _ in range(5):
        decision = limiter.evaluate(IntentType.GENERAL, count)
        count = decision.off_topic_count
        levels.append(decision.cutoff)

    # Turns 1..2 pass, turn 3 (== threshold) and later are cut off
    assert levels == [False, False, True, True, True]
    assert count == 5


def test_severity_levels():
    limiter = PatienceLimiter(threshold=10)
    assert limiter.evaluate(IntentType.UNKNOWN, 3).level == PatienceLevel.NORMAL      # 4
    assert limiter.evaluate(IntentType.UNKNOWN, 4).level == PatienceLevel.NOTICE      # 5
    assert limiter.evaluate(IntentType.UNKNOWN, 5).level == PatienceLevel.NOTICE      # 6
    assert limiter.evaluate(IntentType.UNKNOWN, 6).level == PatienceLevel.WARNING     # 7
    assert limiter.evaluate(IntentType.UNKNOWN, 8).level == PatienceLevel.WARNING     # 9
    assert limiter.evaluate(IntentType.UNKNOWN, 9).level == PatienceLevel.CUTOFF      # 10


def test_negative_count_is_clamped():
    decision = PatienceLimiter(threshold=10).evaluate(IntentType.GENERAL, -4)
    assert decision.off_topic_count == 1


def test_invalid_threshold():
    with pytest.raises(ValueError):
        PatienceLimiter(threshold=0)
