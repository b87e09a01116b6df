"""
Rule formulas and threshold operators.

A formula is one of a closed set of typed variants, registered at import and
built from the rule's JSON definition. Nothing here executes source text: the
legacy free-text ``calculation_formula`` is accepted only when it is a bare
metric name.

Formula kinds:
  - metric:          {"kind": "metric", "metric": "days_of_stock"}
  - ratio:           {"kind": "ratio", "numerator": "a", "denominator": "b", "scale": 100}
  - difference:      {"kind": "difference", "minuend": "a", "subtrahend": "b", "percent": true}
  - weighted_score:  {"kind": "weighted_score", "weights": {"a": 0.5, "b": 0.5}}
  - days_since:      {"kind": "days_since", "field": "last_sale_date"}
"""

from __future__ import annotations

import math
import operator
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from core.errors import FormulaError

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _number(values: Mapping[str, Any], name: str) -> float | None:
    raw = values.get(name)
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    return value if math.isfinite(value) else None


def _require(definition: Mapping[str, Any], key: str) -> Any:
    value = definition.get(key)
    if value in (None, ""):
        raise FormulaError(f"formula kind '{definition.get('kind')}' requires '{key}'")
    return value


def _identifier(definition: Mapping[str, Any], key: str) -> str:
    value = _require(definition, key)
    if not isinstance(value, str) or not _IDENTIFIER.match(value):
        raise FormulaError(f"'{key}' must be a metric name, got {value!r}")
    return value


# ──────────────────────────────────────────────────────────────────────────
# Formula registry
# ──────────────────────────────────────────────────────────────────────────


class Formula:
    kind: str = ""

    @classmethod
    def from_definition(cls, definition: Mapping[str, Any]) -> Formula:
        raise NotImplementedError

    def evaluate(self, values: Mapping[str, Any], today: date) -> float | None:
        """Value for one object, or None when an input is missing."""
        raise NotImplementedError

    def inputs(self) -> list[str]:
        raise NotImplementedError


_FORMULA_REGISTRY: dict[str, type[Formula]] = {}


def register_formula(kind: str):
    """Decorator to register a formula variant."""

    def decorator(cls: type[Formula]) -> type[Formula]:
        cls.kind = kind
        _FORMULA_REGISTRY[kind] = cls
        return cls

    return decorator


def formula_kinds() -> list[str]:
    return sorted(_FORMULA_REGISTRY)


def compile_formula(definition: Mapping[str, Any]) -> Formula:
    """Build a formula from its JSON definition. Unknown kinds raise FormulaError."""
    if not isinstance(definition, Mapping):
        raise FormulaError(f"formula must be an object, got {type(definition).__name__}")
    kind = definition.get("kind")
    formula_cls = _FORMULA_REGISTRY.get(kind)
    if formula_cls is None:
        raise FormulaError(f"Unknown formula kind: {kind!r}. Available: {formula_kinds()}")
    return formula_cls.from_definition(definition)


def formula_for_rule(formula: Mapping[str, Any] | None, calculation_formula: str | None) -> Formula:
    """Typed formula first; the legacy text field only as a bare metric name."""
    if formula:
        return compile_formula(formula)
    text = (calculation_formula or "").strip()
    if not text:
        raise FormulaError("rule has neither a formula nor a calculation_formula")
    if not _IDENTIFIER.match(text):
        raise FormulaError(f"unsupported calculation_formula expression: {text!r}")
    return MetricFormula(metric=text)


@register_formula("metric")
@dataclass(frozen=True)
class MetricFormula(Formula):
    metric: str

    @classmethod
    def from_definition(cls, definition):
        return cls(metric=_identifier(definition, "metric"))

    def evaluate(self, values, today):
        return _number(values, self.metric)

    def inputs(self):
        return [self.metric]


@register_formula("ratio")
@dataclass(frozen=True)
class RatioFormula(Formula):
    numerator: str
    denominator: str
    scale: float = 1.0

    @classmethod
    def from_definition(cls, definition):
        return cls(
            numerator=_identifier(definition, "numerator"),
            denominator=_identifier(definition, "denominator"),
            scale=float(definition.get("scale", 1.0)),
        )

    def evaluate(self, values, today):
        num = _number(values, self.numerator)
        den = _number(values, self.denominator)
        if num is None or not den:
            return None
        return num / den * self.scale

    def inputs(self):
        return [self.numerator, self.denominator]


@register_formula("difference")
@dataclass(frozen=True)
class DifferenceFormula(Formula):
    minuend: str
    subtrahend: str
    percent: bool = False

    @classmethod
    def from_definition(cls, definition):
        return cls(
            minuend=_identifier(definition, "minuend"),
            subtrahend=_identifier(definition, "subtrahend"),
            percent=bool(definition.get("percent", False)),
        )

    def evaluate(self, values, today):
        a = _number(values, self.minuend)
        b = _number(values, self.subtrahend)
        if a is None or b is None:
            return None
        if not self.percent:
            return a - b
        if b == 0:
            return None
        return (a - b) / abs(b) * 100

    def inputs(self):
        return [self.minuend, self.subtrahend]


@register_formula("weighted_score")
@dataclass(frozen=True)
class WeightedScoreFormula(Formula):
    weights: tuple[tuple[str, float], ...]

    @classmethod
    def from_definition(cls, definition):
        weights = _require(definition, "weights")
        if not isinstance(weights, Mapping):
            raise FormulaError("'weights' must map metric names to numbers")
        terms = []
        for name, weight in weights.items():
            if not isinstance(name, str) or not _IDENTIFIER.match(name):
                raise FormulaError(f"invalid metric name in weights: {name!r}")
            try:
                terms.append((name, float(weight)))
            except (TypeError, ValueError) as exc:
                raise FormulaError(f"weight for '{name}' is not a number") from exc
        return cls(weights=tuple(sorted(terms)))

    def evaluate(self, values, today):
        total = 0.0
        for name, weight in self.weights:
            value = _number(values, name)
            if value is None:
                return None
            total += value * weight
        return total

    def inputs(self):
        return [name for name, _ in self.weights]


@register_formula("days_since")
@dataclass(frozen=True)
class DaysSinceFormula(Formula):
    field: str

    @classmethod
    def from_definition(cls, definition):
        return cls(field=_identifier(definition, "field"))

    def evaluate(self, values, today):
        raw = values.get(self.field)
        if raw is None:
            return None
        if isinstance(raw, datetime):
            when = raw.date()
        elif isinstance(raw, date):
            when = raw
        else:
            try:
                when = date.fromisoformat(str(raw)[:10])
            except ValueError:
                return None
        return float((today - when).days)

    def inputs(self):
        return [self.field]


# ──────────────────────────────────────────────────────────────────────────
# Threshold operators
# ──────────────────────────────────────────────────────────────────────────


def _equals(value: float, threshold: float) -> bool:
    return math.isclose(value, threshold, rel_tol=1e-9, abs_tol=1e-9)


OPERATORS: dict[str, Callable[[float, float], bool]] = {
    "less_than": operator.lt,
    "less_than_or_equal": operator.le,
    "greater_than": operator.gt,
    "greater_than_or_equal": operator.ge,
    "equals": _equals,
    "not_equals": lambda value, threshold: not _equals(value, threshold),
    # Change operators compare a percent change: decreases are negative values
    "change_decrease": operator.le,
    "change_increase": operator.ge,
}

OPERATOR_ALIASES = {
    "<": "less_than",
    "<=": "less_than_or_equal",
    ">": "greater_than",
    ">=": "greater_than_or_equal",
    "==": "equals",
    "=": "equals",
    "!=": "not_equals",
}


def normalize_operator(op: str | None) -> str:
    name = OPERATOR_ALIASES.get((op or "").strip(), (op or "").strip())
    if name not in OPERATORS:
        raise FormulaError(f"Unknown threshold operator: {op!r}")
    return name


def compare(value: float, op: str, threshold: float) -> bool:
    return OPERATORS[normalize_operator(op)](value, threshold)


def _threshold(config: Mapping[str, Any], *keys: str) -> float | None:
    for key in keys:
        raw = config.get(key)
        if raw is not None:
            try:
                return float(raw)
            except (TypeError, ValueError) as exc:
                raise FormulaError(f"threshold '{key}' is not a number: {raw!r}") from exc
    return None


@dataclass(frozen=True)
class SeverityThresholds:
    operator: str
    critical: float | None
    warning: float | None

    @classmethod
    def from_config(cls, config: Mapping[str, Any] | None) -> SeverityThresholds:
        config = config or {}
        if not isinstance(config, Mapping):
            raise FormulaError(f"threshold_config must be an object, got {type(config).__name__}")
        op = normalize_operator(config.get("operator", "greater_than"))
        critical = _threshold(config, "critical", "critical_days", "value")
        warning = _threshold(config, "warning", "warning_days")
        if critical is None and warning is None:
            raise FormulaError("threshold_config needs 'critical' or 'warning'")
        return cls(operator=op, critical=critical, warning=warning)

    def classify(self, value: float) -> tuple[str, float] | None:
        """(severity, breached threshold) or None. Critical wins over warning."""
        check = OPERATORS[self.operator]
        if self.critical is not None and check(value, self.critical):
            return "critical", self.critical
        if self.warning is not None and check(value, self.warning):
            return "warning", self.warning
        return None
