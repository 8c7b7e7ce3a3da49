from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional


class Category(str, enum.Enum):
    """Brief: Tag attached to a verdict by the tier that produced it.

    Inputs:
      - None (enumeration)

    Outputs:
      - Category member; the value is the display name used in logs and stats.

    Example:
      >>> Category("Tracking") is Category.TRACKING
      True
    """

    ADVERTISEMENT = "Advertisement"
    TRACKING = "Tracking"
    MALWARE = "Malware"
    SOCIAL = "Social"
    CUSTOM = "Custom"
    WHITELISTED = "Whitelisted"
    CLEAN = "Clean"


@dataclass(frozen=True)
class Verdict:
    """Brief: Classification outcome for a single target.

    Inputs (constructor fields):
      - should_block: True when the request must be blocked.
      - reason: Human-readable explanation (e.g. "Matched tracking pattern").
      - category: Category of the tier that fired, or CLEAN / WHITELISTED.
      - matched_rule: Optional rule, pattern or list entry that matched.

    Outputs:
      - Immutable Verdict instance.

    Example:
      >>> v = Verdict.clean()
      >>> v.should_block, v.category.value
      (False, 'Clean')
    """

    should_block: bool
    reason: str
    category: Category
    matched_rule: Optional[str] = None

    @classmethod
    def blocked(
        cls, reason: str, category: Category, matched_rule: Optional[str] = None
    ) -> "Verdict":
        return cls(True, reason, category, matched_rule)

    @classmethod
    def clean(cls, reason: str = "URL is clean") -> "Verdict":
        return cls(False, reason, Category.CLEAN, None)

    def to_dict(self) -> dict:
        return {
            "should_block": self.should_block,
            "reason": self.reason,
            "category": self.category.value,
            "matched_rule": self.matched_rule,
        }
