"""
CaptureHub Filter Data Models

Defines the structured capture filter: atomic rules joined left-to-right
by logical operators, plus the raw BPF string alternative.
"""

import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Iterator, Union


class FilterValidationError(ValueError):
    """Raised when a filter rule or expression is locally invalid."""


class FilterKind(str, Enum):
    """What a single rule matches on."""

    IP = "ip"
    PORT = "port"
    PROTOCOL = "protocol"
    MAC = "mac"


class Direction(str, Enum):
    """Sub-kind for address and port rules."""

    SRC = "src"
    DST = "dst"


class Protocol(str, Enum):
    """Sub-kind for protocol rules."""

    TCP = "tcp"
    UDP = "udp"
    ICMP = "icmp"
    ARP = "arp"
    IP = "ip"
    IPV6 = "ipv6"
    HTTP = "http"
    HTTPS = "https"
    DNS = "dns"


class LogicalOperator(str, Enum):
    """Joins a rule to the one before it."""

    AND = "and"
    OR = "or"


# Kinds whose rules need a value
VALUE_KINDS = frozenset({FilterKind.IP, FilterKind.PORT, FilterKind.MAC})

# Frequently used ports offered when building port rules
COMMON_PORTS = {
    "80": "HTTP",
    "443": "HTTPS",
    "53": "DNS",
    "22": "SSH",
    "21": "FTP",
    "25": "SMTP",
    "110": "POP3",
    "143": "IMAP",
    "3306": "MySQL",
    "5432": "PostgreSQL",
    "1433": "MS SQL",
    "27017": "MongoDB",
    "6379": "Redis",
    "8080": "Alternative HTTP",
    "8443": "Alternative HTTPS",
}

_DISPLAY_NAMES = {
    FilterKind.IP: "IP",
    FilterKind.PORT: "port",
    FilterKind.MAC: "MAC",
}


# =============================================================================
# Identifiers
# =============================================================================

_id_lock = threading.Lock()
_last_id = 0


def next_id() -> int:
    """
    Return a creation-time identifier in milliseconds.

    Identifiers are strictly increasing within the process, so two rules
    created in the same millisecond still get distinct ids.
    """
    global _last_id
    with _id_lock:
        now = int(time.time() * 1000)
        _last_id = now if now > _last_id else _last_id + 1
        return _last_id


def _parse_enum(enum_cls: type[Enum], value: Any, what: str) -> Any:
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        raise FilterValidationError(f"Unknown {what}: {value!r}") from None


# =============================================================================
# Rules
# =============================================================================


@dataclass
class FilterRule:
    """
    One atomic capture predicate.

    ``sub_kind`` is a Direction value for ip/port/mac rules and a Protocol
    value for protocol rules. ``logical_operator`` relates the rule to the
    previous one and is None for the first rule of an expression.
    """

    kind: FilterKind
    sub_kind: str
    value: str | None = None
    operator: str = "equals"
    logical_operator: LogicalOperator | None = None
    id: int = field(default_factory=next_id)

    @classmethod
    def create(
        cls,
        kind: FilterKind | str,
        sub_kind: str,
        value: str | int | None = None,
        operator: str = "equals",
    ) -> "FilterRule":
        """
        Build a validated rule.

        Raises:
            FilterValidationError: unknown kind or sub-kind, or a missing
                or non-scalar value for ip/port/mac rules
        """
        kind = _parse_enum(FilterKind, kind.value if isinstance(kind, Enum) else kind, "filter kind")

        if kind == FilterKind.PROTOCOL:
            sub = _parse_enum(Protocol, sub_kind, "protocol").value
            value = None
        else:
            sub = _parse_enum(Direction, sub_kind, "direction").value
            if value is None:
                value = ""
            elif isinstance(value, bool) or not isinstance(value, (str, int, float)):
                raise FilterValidationError(
                    f"A {kind.value} rule value must be text or a number, got {type(value).__name__}"
                )
            value = str(value).strip()
            if not value:
                raise FilterValidationError(f"A {kind.value} rule requires a value")

        return cls(kind=kind, sub_kind=sub, value=value, operator=operator)

    @property
    def display(self) -> str:
        """Human-readable label for the rule."""
        if self.kind == FilterKind.PROTOCOL:
            return f"protocol {self.operator} {self.sub_kind}"
        name = _DISPLAY_NAMES.get(self.kind, str(self.kind))
        return f"{self.sub_kind} {name} {self.operator} {self.value}"

    def to_dict(self) -> dict[str, Any]:
        """Serialize using the persisted key layout."""
        data: dict[str, Any] = {
            "id": self.id,
            "type": self.kind.value if isinstance(self.kind, Enum) else self.kind,
            "subType": self.sub_kind,
            "operator": self.operator,
            "display": self.display,
        }
        if self.value is not None:
            data["value"] = self.value
        if self.logical_operator is not None:
            data["logicalOperator"] = self.logical_operator.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FilterRule":
        """
        Rebuild a rule from its serialized form.

        A malformed logical operator is dropped; the compiler treats a
        missing operator as ``and``.
        """
        if not isinstance(data, dict):
            raise FilterValidationError(f"Filter rule must be an object, got {type(data).__name__}")

        rule = cls.create(
            kind=data.get("type", data.get("kind", "")),
            sub_kind=data.get("subType", data.get("sub_kind", "")),
            value=data.get("value"),
            operator=data.get("operator") or "equals",
        )

        raw_op = data.get("logicalOperator", data.get("logical_operator"))
        try:
            rule.logical_operator = LogicalOperator(raw_op) if raw_op else None
        except ValueError:
            rule.logical_operator = None

        if data.get("id") is not None:
            rule.id = data["id"]
        return rule


# =============================================================================
# Expressions
# =============================================================================


@dataclass
class FilterExpression:
    """
    Ordered sequence of rules, evaluated strictly left to right.

    The first rule never carries a logical operator; every later rule does.
    """

    rules: list[FilterRule] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.rules and self.rules[0].logical_operator is not None:
            self.rules[0] = replace(self.rules[0], logical_operator=None)

    def __len__(self) -> int:
        return len(self.rules)

    def __iter__(self) -> Iterator[FilterRule]:
        return iter(self.rules)

    @property
    def is_empty(self) -> bool:
        return not self.rules

    def add(
        self,
        rule: FilterRule,
        logical_operator: LogicalOperator | str = LogicalOperator.AND,
    ) -> FilterRule:
        """
        Append a rule, tagging it with the operator unless it is first.

        Raises:
            FilterValidationError: the rule lacks a required value, the
                operator is unknown, or the id is already used
        """
        if rule.kind in VALUE_KINDS and not (rule.value or "").strip():
            raise FilterValidationError(f"A {rule.kind.value} rule requires a value")
        if any(existing.id == rule.id for existing in self.rules):
            raise FilterValidationError(f"Duplicate rule id: {rule.id}")

        if self.rules:
            op = _parse_enum(LogicalOperator, getattr(logical_operator, "value", logical_operator), "logical operator")
            rule = replace(rule, logical_operator=op)
        else:
            rule = replace(rule, logical_operator=None)

        self.rules.append(rule)
        return rule

    def remove(self, rule_id: int) -> bool:
        """Remove a rule by id. Returns True if something was removed."""
        before = len(self.rules)
        self.rules = [r for r in self.rules if r.id != rule_id]
        if self.rules and self.rules[0].logical_operator is not None:
            self.rules[0] = replace(self.rules[0], logical_operator=None)
        return len(self.rules) != before

    def to_list(self) -> list[dict[str, Any]]:
        """Serialize to a list of rule dictionaries."""
        return [rule.to_dict() for rule in self.rules]

    @classmethod
    def from_list(cls, items: list[dict[str, Any]]) -> "FilterExpression":
        """Rebuild an expression, keeping stored ids and operators."""
        return cls(rules=[FilterRule.from_dict(item) for item in items])


# A filter is either structured or a raw, hand-written BPF string
FilterSpec = Union[FilterExpression, str]


def spec_to_json(spec: FilterSpec | None) -> str | list[dict[str, Any]] | None:
    """Serialize a filter spec to its JSON-compatible form."""
    if spec is None or isinstance(spec, str):
        return spec
    return spec.to_list()


def spec_from_json(data: Any) -> FilterSpec | None:
    """
    Decode a filter spec from JSON data.

    Strings are raw BPF, lists are structured rules, None means no filter.
    """
    if data is None or isinstance(data, str):
        return data
    if isinstance(data, list):
        return FilterExpression.from_list(data)
    raise FilterValidationError(f"Unsupported filter format: {type(data).__name__}")


def describe_spec(spec: FilterSpec | None) -> str:
    """Short label for an active filter, e.g. for status tables."""
    if spec is None:
        return "none"
    if isinstance(spec, str):
        text = spec if len(spec) <= 20 else spec[:20] + "..."
        return f"BPF: {text}"
    return f"{len(spec)} filters active"
