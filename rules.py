"""
rules.py — Named, time-bounded rule sets for suspicion scoring.

Provides:
  - Rule / RuleSet: ordered rules, first full match wins
  - load_rule_set(store, name, now, ttl) → RuleSet
  - CachedRuleSet: rule set payload + expiry
  - RuleSetCache: single-flight refresh of one cached rule set
"""
import json
import operator
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional

from config import RULE_SET_TTL_S, get_logger
from errors import ConfigurationError

logger = get_logger("rules")

OPERATORS = {
    "==": operator.eq,
    "!=": operator.ne,
    "<":  operator.lt,
    "<=": operator.le,
    ">":  operator.gt,
    ">=": operator.ge,
}


# ─── Rules ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Condition:
    fact: str
    op: str
    operand: object     # number, or the name of another fact

    def holds(self, facts: dict) -> bool:
        return OPERATORS[self.op](_lookup(facts, self.fact), self._operand_value(facts))

    def _operand_value(self, facts: dict):
        if isinstance(self.operand, str):
            return _lookup(facts, self.operand)
        return self.operand


@dataclass(frozen=True)
class Rule:
    name: str
    severity: int
    conditions: tuple

    def matches(self, facts: dict) -> bool:
        return all(c.holds(facts) for c in self.conditions)


def _lookup(facts: dict, name: str):
    if name not in facts:
        raise ConfigurationError(f"Fact '{name}' is not defined")
    return facts[name]


@dataclass
class RuleSet:
    """An ordered, named rule set that is valid until ``expires_at``."""
    name: str
    rules: list = field(default_factory=list)
    expires_at: float = 0.0

    def expired(self, now: float) -> bool:
        return now >= self.expires_at

    def match(self, numeric_facts: dict, string_facts: Optional[dict] = None) -> Optional[Rule]:
        facts = dict(string_facts or {})
        facts.update(numeric_facts)
        for rule in self.rules:
            if rule.matches(facts):
                return rule
        return None

    def evaluate(self, numeric_facts: dict, string_facts: Optional[dict] = None) -> Optional[str]:
        """Return the name of the first matching rule, or None."""
        rule = self.match(numeric_facts, string_facts)
        return rule.name if rule else None

    def severity(self, rule_name: str) -> int:
        for rule in self.rules:
            if rule.name == rule_name:
                return rule.severity
        raise ConfigurationError(f"Rule '{rule_name}' is not part of rule set {self.name}")


def parse_rule(name: str, severity: int, conditions_json: str) -> Rule:
    try:
        raw = json.loads(conditions_json)
        conditions = tuple(Condition(str(fact), str(op), operand) for fact, op, operand in raw)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Rule '{name}' is unparseable: {e}") from e

    for c in conditions:
        if c.op not in OPERATORS:
            raise ConfigurationError(f"Rule '{name}' uses unknown operator '{c.op}'")
    return Rule(name=name, severity=int(severity), conditions=conditions)


def load_rule_set(store, name: str, now: float, ttl: float = RULE_SET_TTL_S) -> RuleSet:
    """Load rule set ``name`` from the store, valid for ``ttl`` seconds."""
    rows = store.get_rule_rows(name)
    if not rows:
        raise ConfigurationError(f"Rule set {name} not found")

    rules = [parse_rule(r["rule_name"], r["severity"], r["conditions"]) for r in rows]
    logger.debug("Loaded rule set %s (%d rules)", name, len(rules))
    return RuleSet(name=name, rules=rules, expires_at=now + ttl)


# ─── Cache ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CachedRuleSet:
    rule_set: RuleSet
    expires_at: float

    def expired(self, now: float) -> bool:
        return now >= self.expires_at


class RuleSetCache:
    """Holds one cached rule set and refreshes it on read once expired.

    Concurrent readers that find the value stale wait on one lock; only the
    first reloads, the rest see the fresh value on re-check.
    """

    def __init__(self, loader: Callable[[float], RuleSet]):
        self._loader = loader
        self._lock = threading.Lock()
        self.value: Optional[CachedRuleSet] = None

    def get(self, now: float) -> RuleSet:
        cached = self.value
        if cached is not None and not cached.expired(now):
            return cached.rule_set

        with self._lock:
            cached = self.value
            if cached is None or cached.expired(now):
                rule_set = self._loader(now)
                cached = CachedRuleSet(rule_set=rule_set, expires_at=rule_set.expires_at)
                self.value = cached
                logger.info("Refreshed rule set %s, valid until %.0f", rule_set.name, cached.expires_at)
        return cached.rule_set

    def invalidate(self):
        self.value = None
