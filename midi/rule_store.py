"""Ordered rule storage with structural edit operations."""

import logging
from typing import Iterable, Iterator, List, Optional, Tuple

from .models import Rule

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 24
MAX_CAPACITY = 200

MOVE_UP = "up"
MOVE_DOWN = "down"


class RuleStore:
    """Ordered, never-empty collection of rules.

    Order is display order only; every matching rule fires. Rules sharing a
    ``group`` key (written on one mini-language line) are kept next to each
    other and are duplicated, deleted and moved as one unit.

    Bounds problems (full store, last rule, bad index) are logged and the
    operation returns False without changing anything.
    """

    def __init__(self, rules: Optional[Iterable[Rule]] = None, capacity: int = DEFAULT_CAPACITY):
        if not 1 <= capacity <= MAX_CAPACITY:
            raise ValueError(f"Rule capacity must be between 1 and {MAX_CAPACITY}, got {capacity}")
        self.capacity = capacity
        self._rules: List[Rule] = []
        self.replace(rules or [])

    def __len__(self) -> int:
        return len(self._rules)

    def __iter__(self) -> Iterator[Rule]:
        return iter(list(self._rules))

    def __getitem__(self, index: int) -> Rule:
        return self._rules[index]

    @property
    def rules(self) -> List[Rule]:
        return list(self._rules)

    def enabled_rules(self) -> List[Rule]:
        return [rule for rule in self._rules if rule.enabled]

    def replace(self, rules: Iterable[Rule]) -> None:
        """Replace the whole rule set, truncating at capacity."""
        new_rules = list(rules)
        if len(new_rules) > self.capacity:
            logger.warning(f"{len(new_rules)} rules exceed the maximum of {self.capacity}, "
                           f"dropping {len(new_rules) - self.capacity}")
            new_rules = new_rules[:self.capacity]
        if not new_rules:
            new_rules = [Rule.default(0)]
        self._rules = new_rules

    def clear(self) -> None:
        """Collapse to a single disabled default rule."""
        self._rules = [Rule.default(0)]
        logger.warning("Cleared all rules")

    # --- Helpers ---
    def _valid_index(self, index: int) -> bool:
        if 0 <= index < len(self._rules):
            return True
        logger.warning(f"Invalid rule index {index} (have {len(self._rules)} rules)")
        return False

    def block(self, index: int) -> Tuple[int, int]:
        """Return the [start, end) span of the unit containing ``index``."""
        group = self._rules[index].group
        start, end = index, index + 1
        if group is None:
            return start, end
        while start > 0 and self._rules[start - 1].group == group:
            start -= 1
        while end < len(self._rules) and self._rules[end].group == group:
            end += 1
        return start, end

    def next_group(self) -> int:
        groups = [rule.group for rule in self._rules if rule.group is not None]
        return max(groups) + 1 if groups else 0

    # --- Structural operations ---
    def append(self, rule: Rule) -> bool:
        if len(self._rules) >= self.capacity:
            logger.warning(f"Maximum number of rules ({self.capacity}) reached")
            return False
        self._rules.append(rule)
        return True

    def update(self, index: int, rule: Rule) -> bool:
        """Replace the rule at ``index`` in place."""
        if not self._valid_index(index):
            return False
        self._rules[index] = rule
        return True

    def resize(self, count: int) -> bool:
        """Grow with default rules or truncate to ``count`` rules."""
        if not 1 <= count <= self.capacity:
            logger.warning(f"Rule count must be between 1 and {self.capacity}, got {count}")
            return False
        if count < len(self._rules):
            del self._rules[count:]
        while len(self._rules) < count:
            index = len(self._rules)
            self._rules.append(Rule.default(index).copy(
                number=60 + index, osc_address=f"/midi/note/{60 + index}"))
        return True

    def duplicate(self, index: int) -> bool:
        """Insert an exact copy of the unit at ``index`` right after it."""
        if not self._valid_index(index):
            return False
        start, end = self.block(index)
        size = end - start
        if len(self._rules) + size > self.capacity:
            logger.warning(f"Maximum number of rules ({self.capacity}) reached")
            return False
        group = self.next_group() if self._rules[index].group is not None else None
        copies = [rule.copy(group=group) for rule in self._rules[start:end]]
        self._rules[end:end] = copies
        logger.info(f"Duplicated rule {index + 1} as rule {end + 1}")
        return True

    def delete(self, index: int) -> bool:
        """Remove the unit at ``index``; the last unit cannot be removed."""
        if not self._valid_index(index):
            return False
        start, end = self.block(index)
        if end - start >= len(self._rules):
            logger.warning("Cannot delete the last rule")
            return False
        del self._rules[start:end]
        logger.info(f"Deleted rule {index + 1}")
        return True

    def move(self, index: int, direction: str) -> bool:
        """Swap the unit at ``index`` with its neighbour above or below."""
        if not self._valid_index(index):
            return False
        start, end = self.block(index)
        if direction == MOVE_UP:
            if start == 0:
                logger.warning(f"Rule {index + 1} is already first")
                return False
            other_start, other_end = self.block(start - 1)
            self._rules[other_start:end] = self._rules[start:end] + self._rules[other_start:other_end]
        elif direction == MOVE_DOWN:
            if end >= len(self._rules):
                logger.warning(f"Rule {index + 1} is already last")
                return False
            other_start, other_end = self.block(end)
            self._rules[start:other_end] = self._rules[end:other_end] + self._rules[start:end]
        else:
            logger.warning(f"Invalid move direction: {direction}")
            return False
        logger.info(f"Moved rule {index + 1} {direction}")
        return True
