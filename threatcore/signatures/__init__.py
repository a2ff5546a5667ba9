# Threat signatures as data, compiled once into immutable Python objects.
#
# A signature is a named list of rules; every rule must hold (AND) for the
# signature to match.  Definitions come from YAML signature sets (see
# loader.py) or the import API.  Compilation validates operators, coerces
# values and pre-compiles regexes so the hot path only evaluates.  A
# definition that can't be compiled raises InvalidSignature and the engine
# quarantines it; it never takes the rest of the set down with it.

import re
from dataclasses import dataclass, field as dc_field, replace
from typing import Any

from threatcore.errors import InvalidSignature

SEVERITIES = ("low", "medium", "high", "critical")

# Upper bound for a signature's weight. Feedback clamps into
# [FeedbackSettings.min_weight, FeedbackSettings.max_weight] within this.
MAX_WEIGHT = 100.0

# Longest matched value copied onto a match (verdicts travel downstream).
_MAX_EVIDENCE_CHARS = 120

_ALIASES = {
    "==": "equals",
    "!=": "not_equals",
    ">": "gt",
    ">=": "gte",
    "<": "lt",
    "<=": "lte",
}

_TEXT_OPS = {
    "contains": lambda a, b: b in a,
    "not_contains": lambda a, b: b not in a,
    "equals": lambda a, b: a == b,
    "not_equals": lambda a, b: a != b,
    "starts_with": lambda a, b: a.startswith(b),
    "ends_with": lambda a, b: a.endswith(b),
}

_NUMERIC_OPS = {
    "gt": lambda a, b: a > b,
    "gte": lambda a, b: a >= b,
    "lt": lambda a, b: a < b,
    "lte": lambda a, b: a <= b,
}

_LENGTH_OPS = {
    "length_greater": lambda a, b: len(a) > b,
    "length_less": lambda a, b: len(a) < b,
}

OPERATORS = frozenset(
    list(_TEXT_OPS) + list(_NUMERIC_OPS) + list(_LENGTH_OPS) + ["regex", "in"]
    + list(_ALIASES)
)

# Operators allowed on the pseudo-field "any" (match if any text target does).
_ANY_FIELD_OPS = {"contains", "equals", "starts_with", "ends_with", "regex"}


@dataclass(frozen=True)
class SignatureRule:
    field: str
    operator: str
    value: Any
    case_sensitive: bool = False
    _regex: Any = dc_field(default=None, compare=False, repr=False)

    def evaluate(self, targets: dict) -> str | None:
        """Return the matched target value (as text) or None."""
        if self.field == "any":
            for name, actual in targets.items():
                if isinstance(actual, str) and actual and self._check(actual):
                    return f"{name}={actual}"
            return None

        if self.field not in targets:
            return None
        actual = targets[self.field]
        if actual is None:
            return None
        return str(actual) if self._check(actual) else None

    def _check(self, actual) -> bool:
        op = self.operator
        if op == "regex":
            return self._regex.search(str(actual)) is not None
        if op == "in":
            candidate = actual if self.case_sensitive or not isinstance(actual, str) else actual.lower()
            return candidate in self.value
        if op in _NUMERIC_OPS:
            if isinstance(actual, str):
                try:
                    actual = float(actual)
                except ValueError:
                    return False
            return _NUMERIC_OPS[op](actual, self.value)
        if op in _LENGTH_OPS:
            return _LENGTH_OPS[op](str(actual), self.value)

        # Text operators. Numeric targets compare numerically on equality.
        if isinstance(actual, (int, float)) and op in ("equals", "not_equals"):
            try:
                expected = float(self.value)
            except (TypeError, ValueError):
                return op == "not_equals"
            return _TEXT_OPS[op](float(actual), expected)
        text = str(actual)
        if not self.case_sensitive:
            text = text.lower()
        return _TEXT_OPS[op](text, self.value)


@dataclass(frozen=True)
class ThreatSignature:
    id: str
    name: str
    category: str
    severity: str
    weight: float
    rules: tuple
    enabled: bool = True
    description: str = ""
    signature_set: str = "custom"
    tags: tuple = ()

    def evaluate(self, targets: dict) -> "SignatureMatch | None":
        """AND all rules; the first rule's matched value is kept as evidence."""
        evidence = None
        for rule in self.rules:
            matched = rule.evaluate(targets)
            if matched is None:
                return None
            if evidence is None:
                evidence = (rule, matched)
        rule, value = evidence
        return SignatureMatch(
            signature_id=self.id,
            name=self.name,
            category=self.category,
            severity=self.severity,
            weight=self.weight,
            matched_field=rule.field,
            matched_value=value[:_MAX_EVIDENCE_CHARS],
            rule_operator=rule.operator,
        )

    def with_weight(self, weight: float) -> "ThreatSignature":
        return replace(self, weight=weight)

    def with_enabled(self, enabled: bool) -> "ThreatSignature":
        return replace(self, enabled=enabled)

    def to_definition(self) -> dict:
        """Inverse of compile_signature, for export."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "severity": self.severity,
            "weight": self.weight,
            "enabled": self.enabled,
            "tags": list(self.tags),
            "rules": [
                {
                    "field": r.field,
                    "operator": r.operator,
                    "value": sorted(r.value) if isinstance(r.value, frozenset) else r.value,
                    **({"case_sensitive": True} if r.case_sensitive else {}),
                }
                for r in self.rules
            ],
        }


@dataclass(frozen=True)
class SignatureMatch:
    signature_id: str
    name: str
    category: str
    severity: str
    weight: float
    matched_field: str
    matched_value: str
    rule_operator: str


# ---------------------------------------------------------------------------
# Compilation
# ---------------------------------------------------------------------------

def compile_signature(definition: dict, signature_set: str = "custom") -> ThreatSignature:
    """Validate a signature definition dict. Raises InvalidSignature."""
    if not isinstance(definition, dict):
        raise InvalidSignature("?", "definition must be a mapping")
    sig_id = definition.get("id")
    if not isinstance(sig_id, str) or not sig_id:
        raise InvalidSignature(str(sig_id), "missing 'id'")

    name = definition.get("name") or sig_id
    severity = definition.get("severity")
    if severity not in SEVERITIES:
        raise InvalidSignature(sig_id, f"severity must be one of {SEVERITIES}, got {severity!r}")

    weight = definition.get("weight", 50)
    if isinstance(weight, bool) or not isinstance(weight, (int, float)):
        raise InvalidSignature(sig_id, "weight must be a number")
    if not 0 <= weight <= MAX_WEIGHT:
        raise InvalidSignature(sig_id, f"weight must be within [0, {MAX_WEIGHT:g}]")

    raw_rules = list(definition.get("rules") or [])
    pattern = definition.get("pattern")
    if pattern:
        pattern_type = definition.get("pattern_type", "regex")
        if pattern_type not in ("regex", "literal"):
            raise InvalidSignature(sig_id, f"unknown pattern_type {pattern_type!r}")
        raw_rules.insert(0, {
            "field": "any",
            "operator": "regex" if pattern_type == "regex" else "contains",
            "value": pattern,
        })
    if not raw_rules:
        raise InvalidSignature(sig_id, "signature must have at least one rule or a pattern")

    rules = tuple(_compile_rule(sig_id, i, r) for i, r in enumerate(raw_rules))

    return ThreatSignature(
        id=sig_id,
        name=str(name),
        category=str(definition.get("category", "uncategorized")),
        severity=severity,
        weight=float(weight),
        rules=rules,
        enabled=bool(definition.get("enabled", True)),
        description=str(definition.get("description", "")),
        signature_set=str(definition.get("signature_set", signature_set)),
        tags=tuple(definition.get("tags") or ()),
    )


def _compile_rule(sig_id: str, index: int, raw) -> SignatureRule:
    if not isinstance(raw, dict):
        raise InvalidSignature(sig_id, f"rule {index}: must be a mapping")
    field_name = raw.get("field")
    if not isinstance(field_name, str) or not field_name:
        raise InvalidSignature(sig_id, f"rule {index}: field is required")
    op = raw.get("operator")
    if op not in OPERATORS:
        raise InvalidSignature(sig_id, f"rule {index}: invalid operator {op!r}")
    op = _ALIASES.get(op, op)
    if field_name == "any" and op not in _ANY_FIELD_OPS:
        raise InvalidSignature(sig_id, f"rule {index}: operator '{op}' not allowed on 'any'")
    if "value" not in raw:
        raise InvalidSignature(sig_id, f"rule {index}: value is required")

    value = raw["value"]
    case_sensitive = bool(raw.get("case_sensitive", False))
    regex = None

    if op == "regex":
        try:
            regex = re.compile(str(value), 0 if case_sensitive else re.IGNORECASE)
        except re.error as e:
            raise InvalidSignature(sig_id, f"rule {index}: invalid regex: {e}") from None
    elif op in _NUMERIC_OPS:
        value = _as_number(sig_id, index, value)
    elif op in _LENGTH_OPS:
        value = _as_number(sig_id, index, value)
        if value <= 0:
            raise InvalidSignature(sig_id, f"rule {index}: length must be positive")
    elif op == "in":
        if not isinstance(value, (list, tuple)) or not value:
            raise InvalidSignature(sig_id, f"rule {index}: 'in' needs a non-empty list")
        value = frozenset(
            v.lower() if isinstance(v, str) and not case_sensitive else v for v in value
        )
    elif isinstance(value, str):
        if not case_sensitive:
            value = value.lower()
    elif op in ("equals", "not_equals") and isinstance(value, (int, float)):
        pass
    else:
        raise InvalidSignature(sig_id, f"rule {index}: '{op}' needs a string value")

    return SignatureRule(
        field=field_name.lower() if field_name.startswith("header.") else field_name,
        operator=op,
        value=value,
        case_sensitive=case_sensitive,
        _regex=regex,
    )


def _as_number(sig_id, index, value) -> float:
    if isinstance(value, bool):
        raise InvalidSignature(sig_id, f"rule {index}: value must be numeric")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise InvalidSignature(sig_id, f"rule {index}: value must be numeric") from None
