"""
Patience Limiter - caps consecutive off-topic turns.

The only state is the off-topic counter. Everything else (normal,
warned, cutoff) is derived from it against the threshold each turn.
"""

import logging
from dataclasses import dataclass
from enum import Enum

from voice_agent.models.intent import OFF_TOPIC_INTENTS, IntentType

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 10
NOTICE_PERCENT = 50
WARNING_PERCENT = 70

PATIENCE_LIMIT_MESSAGE = (
    "I'm sorry, but I've noticed that your questions are not related to our "
    "products, stock, or store policies. Please focus your inquiries on topics "
    "relevant to our store. I cannot continue assisting you with topics outside "
    "of these areas."
)


class PatienceLevel(str, Enum):
    NORMAL = "normal"
    NOTICE = "notice"       # Warned, >= 50% of threshold
    WARNING = "warning"     # Warned, >= 70% of threshold
    CUTOFF = "cutoff"


@dataclass(frozen=True)
class PatienceDecision:
    off_topic_count: int    # Counter after this turn
    level: PatienceLevel
    off_topic: bool

    @property
    def cutoff(self) -> bool:
        return self.level == PatienceLevel.CUTOFF


class PatienceLimiter:
    """
    Usage:
        limiter = PatienceLimiter(threshold=10)
        decision = limiter.evaluate(IntentType.GENERAL, off_topic_count=9)
        decision.cutoff   # True: the 10th off-topic turn triggers it
    """

    def __init__(self, threshold: int = DEFAULT_THRESHOLD):
        if threshold < 1:
            raise ValueError("threshold must be at least 1")
        self.threshold = threshold

    def level_for(self, count: int) -> PatienceLevel:
        if count >= self.threshold:
            return PatienceLevel.CUTOFF
        if count * 100 >= self.threshold * WARNING_PERCENT:
            return PatienceLevel.WARNING
        if count * 100 >= self.threshold * NOTICE_PERCENT:
            return PatienceLevel.NOTICE
        return PatienceLevel.NORMAL

    def evaluate(self, intent: IntentType, off_topic_count: int) -> PatienceDecision:
        """Apply one turn to the counter."""
        current = max(off_topic_count, 0)

        if intent not in OFF_TOPIC_INTENTS:
            # On-topic turns always reach the dispatcher
            logger.info(f"[Patience Check] On-topic question. Count remains: {current}/{self.threshold}")
            level = self.level_for(current)
            if level == PatienceLevel.CUTOFF:
                level = PatienceLevel.WARNING
            return PatienceDecision(off_topic_count=current, level=level, off_topic=False)

        new_count = current + 1
        level = self.level_for(new_count)

        if level == PatienceLevel.CUTOFF:
            logger.warning(f"[Patience Check] Patience limit reached ({new_count}/{self.threshold})")
        elif level == PatienceLevel.WARNING:
            logger.warning(
                f"[Patience Check] High off-topic count ({new_count}/{self.threshold}). "
                f"{self.threshold - new_count} questions remaining."
            )
        elif level == PatienceLevel.NOTICE:
            logger.info(f"[Patience Check] Moderate off-topic count ({new_count}/{self.threshold})")
        else:
            logger.info(f"[Patience Check] Off-topic question. Count: {current} -> {new_count}/{self.threshold}")

        return PatienceDecision(off_topic_count=new_count, level=level, off_topic=True)
