"""
Policy engine for scheduled contract calls.

A policy table is an ordered list of declarative rules. Rules are evaluated
top-down and the first rule that matches decides the risk tier. When no
rule matches the call is MEDIUM, never LOW.

Design principles:
- Deterministic (same call and table always give the same tier)
- Auditable (every assessment names the rule that fired and what it saw)
- Configured, not coded (thresholds live in the policy JSON)

Example table:
    {
      "id": "deposit_minter_v2",
      "version": "1.0.0",
      "rules": [
        {"id": "unknown_call", "type": "unknown_function", "tier": "CRITICAL"},
        {"id": "ratio_bounds", "type": "ratio_bounds", "tier": "CRITICAL",
         "parameters": {"params": ["hbarRatio", "usdcRatio"], "min": 1, "max": 100}}
      ]
    }
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from .errors import PolicyConfigError
from .wire import DecodedCall
from .util import sha256_hex, canonicalize

VERSION_PATTERN = re.compile(r'^[0-9]+\.[0-9]+\.[0-9]+$')
RULE_ID_PATTERN = re.compile(r'^[a-z][a-z0-9_.\-]*$')


class RiskTier(str, Enum):
    """Risk tiers, lowest to highest."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]

    def permits_signing(self) -> bool:
        return self in (RiskTier.LOW, RiskTier.MEDIUM)


_SEVERITY = {RiskTier.LOW: 0, RiskTier.MEDIUM: 1, RiskTier.HIGH: 2, RiskTier.CRITICAL: 3}


@dataclass(frozen=True)
class RiskAssessment:
    schedule_id: str
    tier: RiskTier
    rationale: str
    evaluated_function_name: str
    rule_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schedule_id": self.schedule_id,
            "tier": self.tier.value,
            "rationale": self.rationale,
            "evaluated_function_name": self.evaluated_function_name,
            "rule_id": self.rule_id,
        }


@dataclass
class RuleEvaluation:
    """Result of evaluating a single rule."""
    rule_id: str
    matched: bool
    observed: Optional[str] = None


OPERATORS = {
    "eq": lambda a, b: a == b,
    "ne": lambda a, b: a != b,
    "lt": lambda a, b: a < b,
    "le": lambda a, b: a <= b,
    "gt": lambda a, b: a > b,
    "ge": lambda a, b: a >= b,
}


def _numeric(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _fmt(value: Decimal) -> str:
    return format(value.normalize(), "f")


class Rule(ABC):
    """Abstract base class for policy rules."""

    REQUIRED_PARAMETERS: tuple = ()

    def __init__(self, rule_id: str, tier: RiskTier, parameters: Dict[str, Any]):
        self.rule_id = rule_id
        self.tier = tier
        if not isinstance(parameters, dict):
            raise PolicyConfigError(f"Rule {rule_id}: parameters must be an object")
        self.parameters = parameters
        missing = [p for p in self.REQUIRED_PARAMETERS if p not in parameters]
        if missing:
            raise PolicyConfigError(f"Rule {rule_id}: missing parameters {missing}")
        functions = parameters.get("functions")
        if functions is not None and (
            not isinstance(functions, list) or not all(isinstance(f, str) for f in functions)
        ):
            raise PolicyConfigError(f"Rule {rule_id}: 'functions' must be a list of names")
        self.functions = frozenset(functions) if functions is not None else None
        self._configure()

    def _configure(self) -> None:
        """Validate and normalize rule-specific parameters."""

    def applies_to(self, call: DecodedCall) -> bool:
        return self.functions is None or call.function_name in self.functions

    def evaluate(self, call: DecodedCall, known_functions: FrozenSet[str]) -> RuleEvaluation:
        if not self.applies_to(call):
            return self._no_match()
        return self._evaluate(call, known_functions)

    @abstractmethod
    def _evaluate(self, call: DecodedCall, known_functions: FrozenSet[str]) -> RuleEvaluation:
        """Decide whether the rule matches. Must not raise."""
        pass

    def _match(self, observed: str) -> RuleEvaluation:
        return RuleEvaluation(rule_id=self.rule_id, matched=True, observed=observed)

    def _no_match(self) -> RuleEvaluation:
        return RuleEvaluation(rule_id=self.rule_id, matched=False)

    def _param_list(self, key: str, default: Optional[List[str]] = None) -> List[str]:
        value = self.parameters.get(key, default)
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise PolicyConfigError(f"Rule {self.rule_id}: '{key}' must be a list of names")
        return value

    def _param_name(self, key: str) -> str:
        value = self.parameters.get(key)
        if not isinstance(value, str) or not value:
            raise PolicyConfigError(f"Rule {self.rule_id}: '{key}' must be a parameter name")
        return value

    def _decimal(self, key: str, default: Any = None) -> Optional[Decimal]:
        raw = self.parameters.get(key, default)
        if raw is None:
            return None
        value = _numeric(raw)
        if value is None:
            raise PolicyConfigError(f"Rule {self.rule_id}: '{key}' must be numeric")
        return value

    def _decimal_map(self, key: str) -> Dict[str, Decimal]:
        raw = self.parameters.get(key, {})
        if not isinstance(raw, dict):
            raise PolicyConfigError(f"Rule {self.rule_id}: '{key}' must be an object")
        out = {}
        for name, value in raw.items():
            number = _numeric(value)
            if number is None:
                raise PolicyConfigError(f"Rule {self.rule_id}: '{key}.{name}' must be numeric")
            out[name] = number
        return out


class UnknownFunctionRule(Rule):
    """Matches calls the interface table does not recognize."""

    def _evaluate(self, call: DecodedCall, known_functions: FrozenSet[str]) -> RuleEvaluation:
        if call.is_unknown():
            if call.interpret_error:
                return self._match(f"arguments could not be decoded ({call.interpret_error})")
            selector = "0x" + call.raw_payload[:4].hex() if call.raw_payload else "none"
            return self._match(f"unrecognized function call (selector {selector})")
        if known_functions and call.function_name not in known_functions:
            return self._match(f"function {call.function_name} is not in the contract interface")
        return self._no_match()


class AddressAllowlistRule(Rule):
    """Matches address parameters set to zero or to an address off the allow-list."""

    REQUIRED_PARAMETERS = ("params",)

    def _configure(self) -> None:
        self.params = self._param_list("params")
        self.allowlist = frozenset(a.lower() for a in self._param_list("allowlist", default=[]))

    def _evaluate(self, call, known_functions):
        args = call.argument_map()
        for name in self.params:
            if name not in args:
                continue
            address = str(args[name]).lower()
            try:
                is_zero = int(address, 16) == 0
            except ValueError:
                return self._match(f"{name}={address} is not an address")
            if is_zero:
                return self._match(f"{name} is the zero address")
            if address not in self.allowlist:
                return self._match(f"{name}={address} is not on the allow-list")
        return self._no_match()


class RatioBoundsRule(Rule):
    """Matches any ratio parameter outside [min, max]."""

    REQUIRED_PARAMETERS = ("params", "min", "max")

    def _configure(self) -> None:
        self.params = self._param_list("params")
        self.minimum = self._decimal("min")
        self.maximum = self._decimal("max")
        if self.minimum > self.maximum:
            raise PolicyConfigError(f"Rule {self.rule_id}: min above max")

    def _evaluate(self, call, known_functions):
        args = call.argument_map()
        for name in self.params:
            if name not in args:
                continue
            value = _numeric(args[name])
            if value is None:
                return self._match(f"{name}={args[name]!r} is not numeric")
            if value < self.minimum:
                return self._match(f"{name}={_fmt(value)} below minimum {_fmt(self.minimum)}")
            if value > self.maximum:
                return self._match(f"{name}={_fmt(value)} above maximum {_fmt(self.maximum)}")
        return self._no_match()


class RatioConcentrationRule(Rule):
    """
    Economic-attack heuristic over a ratio set.

    Matches when every ratio sits at the maximum, or when a single ratio
    holds more than imbalance_threshold of the combined weight.
    """

    REQUIRED_PARAMETERS = ("params", "max", "imbalance_threshold")

    def _configure(self) -> None:
        self.params = self._param_list("params")
        self.maximum = self._decimal("max")
        self.threshold = self._decimal("imbalance_threshold")
        if not Decimal(0) < self.threshold <= Decimal(1):
            raise PolicyConfigError(f"Rule {self.rule_id}: imbalance_threshold must be in (0, 1]")

    def _evaluate(self, call, known_functions):
        args = call.argument_map()
        ratios = {}
        for name in self.params:
            if name in args:
                value = _numeric(args[name])
                if value is not None:
                    ratios[name] = value
        if len(ratios) < 2:
            return self._no_match()

        if all(v == self.maximum for v in ratios.values()):
            return self._match(f"all {len(ratios)} ratios at maximum {_fmt(self.maximum)}")

        total = sum(ratios.values())
        if total <= 0:
            return self._no_match()
        for name, value in ratios.items():
            share = value / total
            if share > self.threshold:
                return self._match(
                    f"{name} holds {share * 100:.1f}% of total ratio weight, "
                    f"above {_fmt(self.threshold * 100)}%"
                )
        return self._no_match()


class MinimumDepositRule(Rule):
    """Matches payments or deposits below a per-unit floor times the requested amount."""

    REQUIRED_PARAMETERS = ("amount_param",)

    def _configure(self) -> None:
        self.amount_param = self._param_name("amount_param")
        self.payable_per_unit = self._decimal("payable_minimum_per_unit")
        self.minimums = self._decimal_map("minimums_per_unit")

    def _evaluate(self, call, known_functions):
        args = call.argument_map()
        amount = _numeric(args.get(self.amount_param))
        if amount is None:
            return self._no_match()
        if amount <= 0:
            return self._match(f"{self.amount_param}={_fmt(amount)} is not positive")

        if self.payable_per_unit is not None:
            required = self.payable_per_unit * amount
            if Decimal(call.payable_amount) < required:
                return self._match(
                    f"payable amount {call.payable_amount} below minimum {_fmt(required)} "
                    f"for {self.amount_param}={_fmt(amount)}"
                )
        for name, per_unit in self.minimums.items():
            value = _numeric(args.get(name))
            required = per_unit * amount
            if value is None or value < required:
                shown = _fmt(value) if value is not None else "missing"
                return self._match(f"{name}={shown} below minimum {_fmt(required)}")
        return self._no_match()


class RatioDeltaRule(Rule):
    """
    Matches ratio changes larger than max_delta_percent from the current state.

    mode "relative" (default) measures |new - current| / current; mode
    "absolute" measures |new - current| in ratio points.
    """

    REQUIRED_PARAMETERS = ("current", "max_delta_percent")

    def _configure(self) -> None:
        self.current = self._decimal_map("current")
        self.max_delta = self._decimal("max_delta_percent")
        self.mode = self.parameters.get("mode", "relative")
        if self.mode not in ("relative", "absolute"):
            raise PolicyConfigError(f"Rule {self.rule_id}: mode must be relative or absolute")

    def _evaluate(self, call, known_functions):
        args = call.argument_map()
        for name, current in self.current.items():
            if name not in args:
                continue
            value = _numeric(args[name])
            if value is None:
                continue
            change = abs(value - current)
            if self.mode == "absolute":
                delta = change
            elif current == 0:
                if change == 0:
                    continue
                return self._match(f"{name} changes from 0 to {_fmt(value)}")
            else:
                delta = change / current * 100
            if delta > self.max_delta:
                return self._match(
                    f"{name} changes {_fmt(current)} -> {_fmt(value)} "
                    f"({delta:.1f}% > {_fmt(self.max_delta)}%)"
                )
        return self._no_match()


class NumericThresholdRule(Rule):
    """Matches when `param operator value` holds."""

    REQUIRED_PARAMETERS = ("param", "operator", "value")

    def _configure(self) -> None:
        self.param = self._param_name("param")
        self.operator = self.parameters["operator"]
        if not isinstance(self.operator, str) or self.operator not in OPERATORS:
            raise PolicyConfigError(f"Rule {self.rule_id}: unknown operator {self.operator}")
        self.value = self._decimal("value")

    def _evaluate(self, call, known_functions):
        args = call.argument_map()
        if self.param == "payableAmount":
            observed = Decimal(call.payable_amount)
        elif self.param in args:
            observed = _numeric(args[self.param])
        else:
            return self._no_match()
        if observed is None:
            return self._no_match()
        if OPERATORS[self.operator](observed, self.value):
            return self._match(f"{self.param}={_fmt(observed)} {self.operator} {_fmt(self.value)}")
        return self._no_match()


class DepositConsistencyRule(Rule):
    """Known-safe pattern: every deposit covers the current ratio-derived amount."""

    REQUIRED_PARAMETERS = ("amount_param", "expected_per_unit")

    def _configure(self) -> None:
        self.amount_param = self._param_name("amount_param")
        self.payable_per_unit = self._decimal("payable_per_unit")
        self.expected = self._decimal_map("expected_per_unit")

    def _evaluate(self, call, known_functions):
        args = call.argument_map()
        amount = _numeric(args.get(self.amount_param))
        if amount is None or amount <= 0:
            return self._no_match()
        if self.payable_per_unit is not None:
            if Decimal(call.payable_amount) < self.payable_per_unit * amount:
                return self._no_match()
        for name, per_unit in self.expected.items():
            value = _numeric(args.get(name))
            if value is None or value < per_unit * amount:
                return self._no_match()
        return self._match(
            f"deposits for {self.amount_param}={_fmt(amount)} consistent with current ratios"
        )


class FunctionMatchRule(Rule):
    """Matches by function name alone."""

    REQUIRED_PARAMETERS = ("functions",)

    def _evaluate(self, call, known_functions):
        return self._match(f"{call.function_name} within bounds and thresholds")


RULE_TYPES: Dict[str, type] = {
    "unknown_function": UnknownFunctionRule,
    "address_allowlist": AddressAllowlistRule,
    "ratio_bounds": RatioBoundsRule,
    "ratio_concentration": RatioConcentrationRule,
    "minimum_deposit": MinimumDepositRule,
    "ratio_delta": RatioDeltaRule,
    "numeric_threshold": NumericThresholdRule,
    "deposit_consistency": DepositConsistencyRule,
    "function_match": FunctionMatchRule,
}


def create_rule(rule_id: str, rule_type: str, tier: RiskTier, parameters: Dict[str, Any]) -> Rule:
    """Factory function to create a rule instance."""
    if rule_type not in RULE_TYPES:
        raise PolicyConfigError(f"Unknown rule type: {rule_type}")
    return RULE_TYPES[rule_type](rule_id, tier, parameters)


@dataclass
class RuleDefinition:
    """Definition of a rule within a policy table."""
    id: str
    type: str
    tier: RiskTier
    parameters: Dict[str, Any] = field(default_factory=dict)
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "id": self.id,
            "type": self.type,
            "tier": self.tier.value,
            "parameters": self.parameters,
        }
        if self.description:
            d["description"] = self.description
        return d


@dataclass
class PolicyTable:
    """
    An ordered, versioned rule list.

    Validated on construction; a malformed table raises PolicyConfigError
    before any transaction is classified.
    """
    id: str
    version: str
    rules: List[RuleDefinition]
    default_tier: RiskTier = RiskTier.MEDIUM

    def __post_init__(self):
        self._validate()

    def _validate(self):
        if not RULE_ID_PATTERN.match(self.id):
            raise PolicyConfigError(f"Invalid policy id '{self.id}'")
        if not VERSION_PATTERN.match(self.version):
            raise PolicyConfigError(f"Invalid version '{self.version}': must be semantic version")
        if not self.rules:
            raise PolicyConfigError("Policy table must have at least one rule")
        if self.default_tier == RiskTier.LOW:
            raise PolicyConfigError("default_tier may not be LOW")

        rule_ids = set()
        for rule in self.rules:
            if not RULE_ID_PATTERN.match(rule.id):
                raise PolicyConfigError(f"Invalid rule id '{rule.id}'")
            if rule.id in rule_ids:
                raise PolicyConfigError(f"Duplicate rule id: {rule.id}")
            rule_ids.add(rule.id)
            if rule.type not in RULE_TYPES:
                raise PolicyConfigError(f"Unknown rule type: {rule.type}")
        # Instantiate once so parameter errors surface at load time
        self.create_rules()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "version": self.version,
            "default_tier": self.default_tier.value,
            "rules": [r.to_dict() for r in self.rules],
        }

    def get_hash(self) -> str:
        return "sha256:" + sha256_hex(canonicalize(self.to_dict()))

    def create_rules(self) -> List[Rule]:
        return [create_rule(r.id, r.type, r.tier, r.parameters) for r in self.rules]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PolicyTable":
        if not isinstance(data, dict):
            raise PolicyConfigError("Policy table must be a JSON object")
        try:
            rules = [
                RuleDefinition(
                    id=r["id"],
                    type=r["type"],
                    tier=_tier(r["tier"]),
                    parameters=r.get("parameters", {}),
                    description=r.get("description", ""),
                )
                for r in data.get("rules", [])
            ]
            return cls(
                id=data["id"],
                version=data["version"],
                rules=rules,
                default_tier=_tier(data.get("default_tier", "MEDIUM")),
            )
        except (KeyError, TypeError, AttributeError) as e:
            raise PolicyConfigError(f"Malformed policy table: {e!r}") from e


def _tier(value: Any) -> RiskTier:
    try:
        return RiskTier(str(value).upper())
    except ValueError as e:
        raise PolicyConfigError(f"Unknown risk tier: {value!r}") from e


class PolicyEngine:
    """
    Classifies decoded calls against a policy table.

    Holds no per-call state; safe to share across review threads.
    """

    def __init__(self, table: PolicyTable, known_functions: Optional[FrozenSet[str]] = None):
        self.table = table
        self.rules = table.create_rules()
        self.known_functions = frozenset(known_functions or ())

    def classify(self, call: DecodedCall, schedule_id: str = "") -> RiskAssessment:
        for rule in self.rules:
            evaluation = rule.evaluate(call, self.known_functions)
            if evaluation.matched:
                return RiskAssessment(
                    schedule_id=schedule_id,
                    tier=rule.tier,
                    rationale=f"{rule.rule_id}: {evaluation.observed}",
                    evaluated_function_name=call.function_name,
                    rule_id=rule.rule_id,
                )
        return RiskAssessment(
            schedule_id=schedule_id,
            tier=self.table.default_tier,
            rationale="no rule matched",
            evaluated_function_name=call.function_name,
        )
