"""
Keyword sentiment scoring from an explicit rule table (keyword -> signed weight).
"""

import re
from dataclasses import dataclass

from loguru import logger

# Inflections a keyword may carry and still count
_SUFFIX = r"(?:s|es|d|ed|ing|ion|ions)?"


@dataclass(frozen=True)
class SentimentRule:
    keyword: str
    weight: float
    group: str


class SentimentRules:
    """
    Scores a headline as the sum of weights of the keywords it contains.

    Longer keywords win over keywords they contain ("de-escalate" is never
    also counted as "escalate").

    Usage:
        rules = SentimentRules.from_sets({"escalation": {"surge": 1.0}})
        rules.score("Troops surge toward border")  # 1.0
    """

    def __init__(self, rules: list[SentimentRule]):
        self._rules = {r.keyword: r for r in rules}
        self._pattern: re.Pattern | None = None
        if self._rules:
            alternatives = sorted(self._rules, key=len, reverse=True)
            body = "|".join(re.escape(k) for k in alternatives)
            self._pattern = re.compile(
                rf"(?<![\w-])({body}){_SUFFIX}(?![\w-])", re.IGNORECASE
            )

    @classmethod
    def from_sets(cls, keyword_sets: dict[str, dict[str, float]]) -> "SentimentRules":
        rules: list[SentimentRule] = []
        for group, table in keyword_sets.items():
            for keyword, weight in table.items():
                keyword = keyword.strip().lower()
                if not keyword:
                    continue
                rules.append(SentimentRule(keyword=keyword, weight=float(weight), group=group))
        logger.debug(f"Loaded {len(rules)} sentiment rules from {len(keyword_sets)} sets")
        return cls(rules)

    def matches(self, text: str) -> list[SentimentRule]:
        if self._pattern is None:
            return []
        return [self._rules[m.group(1).lower()] for m in self._pattern.finditer(text)]

    def score(self, text: str) -> float:
        return sum(rule.weight for rule in self.matches(text))

    def __len__(self) -> int:
        return len(self._rules)
