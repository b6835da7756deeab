"""Netfilter intermediate representation and its wire formats.

The IR mirrors the nftables object model: tables hold chains, chains
hold rules, a rule is a list of match conditions plus one policy
statement. Base chains carry a hook, priority, type and default policy.

Two codecs are provided:
- nft JSON (``nft -j list ruleset``) parse and emit
- nft script text, rendered through a Jinja2 template
"""

from dataclasses import dataclass, field
from typing import Any, Optional, Union

from jinja2 import Environment, PackageLoader, StrictUndefined, select_autoescape

from fleetfw.core.exceptions import FirewallError
from fleetfw.core.output import console


# =============================================================================
# Operands
# =============================================================================

@dataclass(frozen=True)
class Meta:
    key: str


@dataclass(frozen=True)
class Payload:
    protocol: str
    field: str


@dataclass(frozen=True)
class Prefix:
    addr: str
    length: int


@dataclass(frozen=True)
class Value:
    value: Union[str, int]


@dataclass(frozen=True)
class Values:
    """An anonymous set, e.g. { established, related }."""
    values: tuple


@dataclass(frozen=True)
class Ct:
    key: str


@dataclass(frozen=True)
class Range:
    low: Union[str, int]
    high: Union[str, int]


@dataclass(frozen=True)
class RawOperand:
    """An operand we do not model; kept verbatim from nft JSON."""
    data: Any


Operand = Union[Meta, Payload, Prefix, Value, Values, Ct, Range, RawOperand]


@dataclass(frozen=True)
class Condition:
    left: Operand
    op: str
    right: Operand


def match(left: Operand, right: Operand, op: str = "==") -> Condition:
    return Condition(left=left, op=op, right=right)


# =============================================================================
# Policies
# =============================================================================

@dataclass(frozen=True)
class Accept:
    pass


@dataclass(frozen=True)
class Drop:
    pass


@dataclass(frozen=True)
class Return:
    pass


@dataclass(frozen=True)
class Reject:
    expr: Optional[str] = None


@dataclass(frozen=True)
class Jump:
    target: str


@dataclass(frozen=True)
class DNat:
    addr: str
    port: Optional[int] = None


@dataclass(frozen=True)
class Masquerade:
    pass


@dataclass(frozen=True)
class Mangle:
    """Set a packet attribute, e.g. meta nftrace set 1."""
    key: Operand
    value: Union[str, int]


Policy = Union[Accept, Drop, Return, Reject, Jump, DNat, Masquerade, Mangle]


# =============================================================================
# Rules, chains, tables
# =============================================================================

@dataclass(frozen=True)
class Counter:
    packets: int = 0
    bytes: int = 0


@dataclass
class Rule:
    conditions: list[Condition] = field(default_factory=list)
    policy: Optional[Policy] = None
    handle: Optional[int] = None
    counter: Optional[Counter] = None


@dataclass
class Chain:
    """A chain; base chains have a hook and are entered by the kernel."""
    name: str
    rules: list[Rule] = field(default_factory=list)
    hook: Optional[str] = None
    prio: Optional[Union[str, int]] = None
    policy: Optional[str] = None
    type: Optional[str] = None

    @property
    def is_base_chain(self) -> bool:
        return self.hook is not None


@dataclass
class Table:
    name: str
    family: str
    chains: list[Chain] = field(default_factory=list)

    def chain(self, name: str) -> Optional[Chain]:
        for chain in self.chains:
            if chain.name == name:
                return chain
        return None


def find_table(tables: list[Table], family: str, name: str) -> Optional[Table]:
    for table in tables:
        if table.family == family and table.name == name:
            return table
    return None


# Named priorities accepted by nft, per family
NAMED_PRIORITIES = {
    "raw": -300,
    "mangle": -150,
    "dstnat": -100,
    "filter": 0,
    "security": 50,
    "srcnat": 100,
}
BRIDGE_NAMED_PRIORITIES = {
    "dstnat": -300,
    "filter": -200,
    "out": 100,
    "srcnat": 300,
}


def numeric_priority(family: str, prio: Union[str, int]) -> int:
    if isinstance(prio, int):
        return prio
    names = BRIDGE_NAMED_PRIORITIES if family == "bridge" else NAMED_PRIORITIES
    if prio in names:
        return names[prio]
    try:
        return int(prio)
    except ValueError:
        raise FirewallError(f"Unknown chain priority: {prio}")


# =============================================================================
# nft JSON
# =============================================================================

def _parse_operand(data: Any) -> Operand:
    if isinstance(data, (str, int)):
        return Value(data)
    if isinstance(data, dict):
        if "meta" in data:
            return Meta(data["meta"]["key"])
        if "payload" in data:
            payload = data["payload"]
            return Payload(payload.get("protocol", ""), payload["field"])
        if "prefix" in data:
            return Prefix(data["prefix"]["addr"], int(data["prefix"]["len"]))
        if "set" in data:
            return Values(tuple(data["set"]))
        if "ct" in data:
            return Ct(data["ct"]["key"])
        if "range" in data:
            low, high = data["range"]
            return Range(low, high)
    if isinstance(data, list):
        return Values(tuple(data))
    return RawOperand(data)


def _parse_policy(entry: dict) -> Optional[Policy]:
    if "accept" in entry:
        return Accept()
    if "drop" in entry:
        return Drop()
    if "return" in entry:
        return Return()
    if "reject" in entry:
        reject = entry["reject"] or {}
        return Reject(reject.get("expr"))
    if "jump" in entry:
        return Jump(entry["jump"]["target"])
    if "dnat" in entry:
        dnat = entry["dnat"]
        return DNat(dnat["addr"], dnat.get("port"))
    if "masquerade" in entry:
        return Masquerade()
    if "mangle" in entry:
        mangle = entry["mangle"]
        return Mangle(_parse_operand(mangle["key"]), mangle["value"])
    return None


def parse_rule(data: dict) -> Rule:
    """Convert one nft JSON rule object into the IR.

    Statements we do not model (xt, log, limit, ...) are skipped.
    """
    rule = Rule(handle=data.get("handle"))
    for entry in data.get("expr", []):
        if "match" in entry:
            m = entry["match"]
            rule.conditions.append(Condition(
                left=_parse_operand(m["left"]),
                op=m.get("op", "=="),
                right=_parse_operand(m["right"]),
            ))
        elif "counter" in entry:
            counter = entry["counter"] or {}
            rule.counter = Counter(counter.get("packets", 0), counter.get("bytes", 0))
        else:
            policy = _parse_policy(entry)
            if policy is None:
                console.debug(f"Skipping unsupported nft statement: {sorted(entry)}")
            else:
                rule.policy = policy
    return rule


def parse_ruleset(document: dict) -> list[Table]:
    """Convert the output of ``nft -j list ruleset`` into tables.

    Raises:
        FirewallError: If the document is malformed
    """
    entries = document.get("nftables")
    if not isinstance(entries, list):
        raise FirewallError("Malformed nft JSON: missing 'nftables' list")

    tables: list[Table] = []
    for entry in entries:
        if "table" in entry:
            t = entry["table"]
            tables.append(Table(name=t["name"], family=t["family"]))
        elif "chain" in entry:
            c = entry["chain"]
            table = find_table(tables, c["family"], c["table"])
            if table is None:
                raise FirewallError(
                    f"Chain {c['name']} references unknown table {c['family']} {c['table']}",
                    table=c["table"],
                    chain=c["name"],
                )
            table.chains.append(Chain(
                name=c["name"],
                hook=c.get("hook"),
                prio=c.get("prio"),
                policy=c.get("policy"),
                type=c.get("type"),
            ))
        elif "rule" in entry:
            r = entry["rule"]
            table = find_table(tables, r["family"], r["table"])
            chain = table.chain(r["chain"]) if table is not None else None
            if chain is None:
                raise FirewallError(
                    f"Rule references unknown chain {r['family']} {r['table']} {r['chain']}",
                    table=r["table"],
                    chain=r["chain"],
                )
            chain.rules.append(parse_rule(r))
    return tables


def _operand_to_json(operand: Operand) -> Any:
    if isinstance(operand, Meta):
        return {"meta": {"key": operand.key}}
    if isinstance(operand, Payload):
        return {"payload": {"protocol": operand.protocol, "field": operand.field}}
    if isinstance(operand, Prefix):
        return {"prefix": {"addr": operand.addr, "len": operand.length}}
    if isinstance(operand, Value):
        return operand.value
    if isinstance(operand, Values):
        return {"set": list(operand.values)}
    if isinstance(operand, Ct):
        return {"ct": {"key": operand.key}}
    if isinstance(operand, Range):
        return {"range": [operand.low, operand.high]}
    return operand.data


def _policy_to_json(policy: Policy) -> dict:
    if isinstance(policy, Accept):
        return {"accept": None}
    if isinstance(policy, Drop):
        return {"drop": None}
    if isinstance(policy, Return):
        return {"return": None}
    if isinstance(policy, Reject):
        if policy.expr is None:
            return {"reject": None}
        return {"reject": {"type": "icmp", "expr": policy.expr}}
    if isinstance(policy, Jump):
        return {"jump": {"target": policy.target}}
    if isinstance(policy, DNat):
        dnat: dict[str, Any] = {"addr": policy.addr}
        if policy.port is not None:
            dnat["port"] = policy.port
        return {"dnat": dnat}
    if isinstance(policy, Masquerade):
        return {"masquerade": None}
    if isinstance(policy, Mangle):
        return {"mangle": {"key": _operand_to_json(policy.key), "value": policy.value}}
    raise FirewallError(f"Unsupported policy: {policy!r}")


def rule_to_json(rule: Rule) -> list[dict]:
    """Statement list of a rule in nft JSON."""
    expr: list[dict] = [
        {"match": {
            "op": c.op,
            "left": _operand_to_json(c.left),
            "right": _operand_to_json(c.right),
        }}
        for c in rule.conditions
    ]
    counter = rule.counter or Counter()
    expr.append({"counter": {"packets": counter.packets, "bytes": counter.bytes}})
    if rule.policy is not None:
        expr.append(_policy_to_json(rule.policy))
    return expr


def ruleset_to_json(tables: list[Table]) -> dict:
    """Tables as an nft JSON document in ``list ruleset`` layout."""
    entries: list[dict] = []
    for table in tables:
        entries.append({"table": {"family": table.family, "name": table.name}})
        for chain in table.chains:
            c: dict[str, Any] = {"family": table.family, "table": table.name, "name": chain.name}
            if chain.is_base_chain:
                c["type"] = chain.type
                c["hook"] = chain.hook
                c["prio"] = numeric_priority(table.family, chain.prio or "filter")
                if chain.policy is not None:
                    c["policy"] = chain.policy
            entries.append({"chain": c})
        for chain in table.chains:
            for rule in chain.rules:
                r: dict[str, Any] = {
                    "family": table.family,
                    "table": table.name,
                    "chain": chain.name,
                    "expr": rule_to_json(rule),
                }
                if rule.handle is not None:
                    r["handle"] = rule.handle
                entries.append({"rule": r})
    return {"nftables": entries}


# =============================================================================
# nft script text
# =============================================================================

# Meta keys whose values are interface names and must be quoted
_QUOTED_META_KEYS = frozenset({"iifname", "oifname"})


def _format_scalar(value: Union[str, int], quoted: bool) -> str:
    if quoted and isinstance(value, str):
        return f'"{value}"'
    return str(value)


def render_operand(operand: Operand, quoted: bool = False) -> str:
    if isinstance(operand, Meta):
        return f"meta {operand.key}"
    if isinstance(operand, Payload):
        return f"{operand.protocol} {operand.field}".strip()
    if isinstance(operand, Prefix):
        return f"{operand.addr}/{operand.length}"
    if isinstance(operand, Value):
        return _format_scalar(operand.value, quoted)
    if isinstance(operand, Values):
        return "{ " + ", ".join(_format_scalar(v, quoted) for v in operand.values) + " }"
    if isinstance(operand, Ct):
        return f"ct {operand.key}"
    if isinstance(operand, Range):
        return f"{operand.low}-{operand.high}"
    raise FirewallError(f"Cannot render unsupported operand: {operand.data!r}")


def render_condition(condition: Condition) -> str:
    quoted = isinstance(condition.left, Meta) and condition.left.key in _QUOTED_META_KEYS
    left = render_operand(condition.left)
    right = render_operand(condition.right, quoted)
    if condition.op == "!=":
        return f"{left} != {right}"
    return f"{left} {right}"


def render_policy(policy: Policy) -> str:
    if isinstance(policy, Accept):
        return "accept"
    if isinstance(policy, Drop):
        return "drop"
    if isinstance(policy, Return):
        return "return"
    if isinstance(policy, Reject):
        if policy.expr is None:
            return "reject"
        return f"reject with icmp type {policy.expr}"
    if isinstance(policy, Jump):
        return f"jump {policy.target}"
    if isinstance(policy, DNat):
        if policy.port is None:
            return f"dnat to {policy.addr}"
        return f"dnat to {policy.addr}:{policy.port}"
    if isinstance(policy, Masquerade):
        return "masquerade"
    if isinstance(policy, Mangle):
        return f"{render_operand(policy.key)} set {policy.value}"
    raise FirewallError(f"Unsupported policy: {policy!r}")


def render_rule(rule: Rule) -> str:
    parts = [render_condition(c) for c in rule.conditions]
    parts.append("counter")
    if rule.policy is not None:
        parts.append(render_policy(rule.policy))
    return " ".join(parts)


def render_chain_header(chain: Chain) -> str:
    """The 'type ... hook ... priority ...; policy ...;' line of a base chain."""
    parts = []
    if chain.type is not None:
        parts.append(f"type {chain.type}")
    if chain.hook is not None:
        parts.append(f"hook {chain.hook}")
    if chain.prio is not None:
        parts.append(f"priority {chain.prio}")

    header = " ".join(parts)
    if header:
        header += ";"
    if chain.policy is not None:
        header = f"{header} policy {chain.policy};".strip()
    return header


_jinja_env = Environment(
    loader=PackageLoader("fleetfw", "templates"),
    autoescape=select_autoescape(),
    undefined=StrictUndefined,
    trim_blocks=True,
    lstrip_blocks=True,
    keep_trailing_newline=True,
)


def render_ruleset(
    tables: list[Table],
    *,
    replace: bool = False,
    shebang: bool = False,
) -> str:
    """Render tables as an nft script.

    Args:
        tables: Tables to render
        replace: Delete and recreate each table in the same transaction
        shebang: Prefix the boot-file header and a ``flush ruleset``
    """
    context = {
        "shebang": shebang,
        "replace": replace,
        "tables": [
            {
                "family": table.family,
                "name": table.name,
                "chains": [
                    {
                        "name": chain.name,
                        "header": render_chain_header(chain),
                        "rules": [render_rule(rule) for rule in chain.rules],
                    }
                    for chain in table.chains
                ],
            }
            for table in tables
        ],
    }
    return _jinja_env.get_template("nftables/ruleset.nft.j2").render(context)
