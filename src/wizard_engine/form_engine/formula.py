from __future__ import annotations

import logging
import math
import re
from decimal import ROUND_HALF_UP, Decimal
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple

from wizard_engine.form_engine.errors import FormulaEvaluationError
from wizard_engine.schemas.metadata import FieldConfig, typed_zero

logger = logging.getLogger("wizard_engine.formula")

Node = Tuple[Any, ...]

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<num>\d+(?:\.\d*)?(?:[eE][+-]?\d+)?|\.\d+)
  | (?P<str>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
  | (?P<brace>\{[^{}]+\})
  | (?P<ident>[A-Za-z_][A-Za-z0-9_.]*)
  | (?P<op><=|>=|<>|!=|==|[-+*/%^&=<>(),])
    """,
    re.VERBOSE,
)

_COMPARISONS = {"=", "==", "!=", "<>", "<", "<=", ">", ">="}


def _tokenize(src: str) -> List[Tuple[str, str]]:
    out: List[Tuple[str, str]] = []
    pos = 0
    while pos < len(src):
        m = _TOKEN_RE.match(src, pos)
        if not m:
            raise FormulaEvaluationError(f"unexpected character {src[pos]!r} at {pos}")
        pos = m.end()
        kind = m.lastgroup or ""
        if kind == "ws":
            continue
        out.append((kind, m.group(kind)))
    out.append(("eof", ""))
    return out


class _Parser:
    """Recursive descent: comparison < concat (&) < additive < multiplicative < power < unary."""

    def __init__(self, tokens: List[Tuple[str, str]]) -> None:
        self.tokens = tokens
        self.pos = 0

    def peek(self) -> Tuple[str, str]:
        return self.tokens[self.pos]

    def take(self) -> Tuple[str, str]:
        tok = self.tokens[self.pos]
        self.pos += 1
        return tok

    def expect_op(self, op: str) -> None:
        kind, text = self.take()
        if kind != "op" or text != op:
            raise FormulaEvaluationError(f"expected {op!r}, got {text or 'end of formula'!r}")

    def parse(self) -> Node:
        node = self.comparison()
        if self.peek()[0] != "eof":
            raise FormulaEvaluationError(f"unexpected {self.peek()[1]!r}")
        return node

    def _binary(self, ops: Set[str], operand: Callable[[], Node]) -> Node:
        node = operand()
        while self.peek()[0] == "op" and self.peek()[1] in ops:
            op = self.take()[1]
            node = ("bin", op, node, operand())
        return node

    def comparison(self) -> Node:
        return self._binary(_COMPARISONS, self.concat)

    def concat(self) -> Node:
        return self._binary({"&"}, self.additive)

    def additive(self) -> Node:
        return self._binary({"+", "-"}, self.term)

    def term(self) -> Node:
        return self._binary({"*", "/", "%"}, self.power)

    def power(self) -> Node:
        base = self.unary()
        if self.peek() == ("op", "^"):
            self.take()
            return ("bin", "^", base, self.power())
        return base

    def unary(self) -> Node:
        if self.peek()[0] == "op" and self.peek()[1] in {"-", "+"}:
            op = self.take()[1]
            return ("neg", self.unary()) if op == "-" else self.unary()
        return self.primary()

    def primary(self) -> Node:
        kind, text = self.take()
        if kind == "num":
            return ("lit", float(text))
        if kind == "str":
            body = text[1:-1]
            return ("lit", re.sub(r"\\(.)", r"\1", body))
        if kind == "brace":
            return ("ref", text[1:-1].strip())
        if kind == "ident":
            upper = text.upper()
            if self.peek() == ("op", "("):
                self.take()
                args: List[Node] = []
                if self.peek() != ("op", ")"):
                    args.append(self.comparison())
                    while self.peek() == ("op", ","):
                        self.take()
                        args.append(self.comparison())
                self.expect_op(")")
                return ("call", upper, args)
            if upper in {"TRUE", "FALSE"}:
                return ("lit", upper == "TRUE")
            return ("ref", text)
        if kind == "op" and text == "(":
            node = self.comparison()
            self.expect_op(")")
            return node
        raise FormulaEvaluationError(f"unexpected {text or 'end of formula'!r}")


@lru_cache(maxsize=512)
def compile_formula(formula: str) -> Node:
    src = (formula or "").strip()
    if src.startswith("="):
        src = src[1:]
    if not src.strip():
        raise FormulaEvaluationError("empty formula")
    return _Parser(_tokenize(src)).parse()


def references(formula: str) -> List[str]:
    """Field ids a formula reads (bare/braced references and `FIELD('id')`). Unparseable formulas read nothing."""
    try:
        node = compile_formula(formula)
    except FormulaEvaluationError:
        return []
    out: List[str] = []

    def walk(n: Node) -> None:
        tag = n[0]
        if tag == "ref" and n[1] not in out:
            out.append(n[1])
        elif tag == "call":
            if n[1] == "FIELD" and n[2] and n[2][0][0] == "lit" and isinstance(n[2][0][1], str):
                if n[2][0][1] not in out:
                    out.append(n[2][0][1])
            for a in n[2]:
                walk(a)
        elif tag == "neg":
            walk(n[1])
        elif tag == "bin":
            walk(n[2])
            walk(n[3])

    walk(node)
    return out


def _is_blank(v: Any) -> bool:
    return v is None or (isinstance(v, str) and not v.strip())


def to_number(v: Any) -> float:
    if _is_blank(v):
        return 0.0
    if isinstance(v, bool):
        return 1.0 if v else 0.0
    if isinstance(v, (int, float)):
        return float(v)
    if isinstance(v, str):
        try:
            return float(v.strip().replace(",", ""))
        except ValueError:
            raise FormulaEvaluationError(f"not a number: {v!r}")
    raise FormulaEvaluationError(f"not a number: {type(v).__name__}")


def _maybe_number(v: Any) -> Optional[float]:
    try:
        return to_number(v)
    except FormulaEvaluationError:
        return None


def _text(v: Any) -> str:
    if v is None:
        return ""
    if isinstance(v, bool):
        return "TRUE" if v else "FALSE"
    if isinstance(v, float) and v.is_integer():
        return str(int(v))
    return str(v)


def _flatten(args: List[Any]) -> List[Any]:
    out: List[Any] = []
    for a in args:
        if isinstance(a, (list, tuple, set)):
            out.extend(a)
        else:
            out.append(a)
    return out


def _numbers(args: List[Any]) -> List[float]:
    nums = [_maybe_number(a) for a in _flatten(args) if not _is_blank(a)]
    return [n for n in nums if n is not None]


def _truthy(v: Any) -> bool:
    if isinstance(v, str):
        return v.strip().lower() not in {"", "false", "0", "no"}
    return bool(v)


def _calc_hours(start: Any, end: Any, break_minutes: Any = 0) -> float:
    def _hours(s: Any) -> float:
        parts = str(s or "").split(":")
        if len(parts) != 2:
            return 0.0
        try:
            return float(parts[0]) + float(parts[1]) / 60
        except ValueError:
            return 0.0

    a, b = _hours(start), _hours(end)
    if a == 0 or b == 0:
        return 0.0
    return max(0.0, b - a - (_maybe_number(break_minutes) or 0.0) / 60)


def _mode(args: List[Any]) -> float:
    nums = _numbers(args)
    if not nums:
        return 0.0
    counts: Dict[float, int] = {}
    best, best_n = nums[0], 0
    for n in nums:
        counts[n] = counts.get(n, 0) + 1
        if counts[n] > best_n:
            best, best_n = n, counts[n]
    return best


def _median(args: List[Any]) -> float:
    nums = sorted(_numbers(args))
    if not nums:
        return 0.0
    mid = len(nums) // 2
    return nums[mid] if len(nums) % 2 else (nums[mid - 1] + nums[mid]) / 2


def _round(value: Any, digits: Any = 0) -> float:
    # Half away from zero on the decimal text, like spreadsheet ROUND (not banker's rounding).
    d = int(to_number(digits))
    q = Decimal(1).scaleb(-d)
    return float(Decimal(repr(to_number(value))).quantize(q, rounding=ROUND_HALF_UP))


def _sqrt(value: Any) -> float:
    x = to_number(value)
    if x < 0:
        raise FormulaEvaluationError("SQRT of a negative number")
    return math.sqrt(x)


def _countif(values: Any, criteria: Any) -> float:
    items = values if isinstance(values, (list, tuple, set)) else [values]
    crit_num = _maybe_number(criteria) if not isinstance(criteria, str) else None
    n = 0
    for item in items:
        if crit_num is not None:
            n += 1 if _maybe_number(item) == crit_num else 0
        else:
            n += 1 if _text(item) == _text(criteria) else 0
    return float(n)


class _Evaluator:
    def __init__(self, state: Mapping[str, Any], known: Optional[Set[str]]) -> None:
        self.state = state
        self.known = known

    def lookup(self, name: str) -> Any:
        if name in self.state:
            return self.state[name]
        if "." in name:
            cur: Any = self.state
            for part in name.split("."):
                if not isinstance(cur, Mapping) or part not in cur:
                    cur = None
                    break
                cur = cur[part]
            if cur is not None:
                return cur
        if self.known is not None and name not in self.known:
            raise FormulaEvaluationError(f"unknown field reference: {name}")
        return None

    def count_matching(self, needle: Any, ignore_case: bool) -> float:
        target = _text(needle)
        if ignore_case:
            target = target.lower()
        n = 0
        for v in self.state.values():
            s = _text(v)
            if (s.lower() if ignore_case else s) == target:
                n += 1
        return float(n)

    def call(self, name: str, arg_nodes: List[Node]) -> Any:
        if name == "IF":
            if not arg_nodes:
                raise FormulaEvaluationError("IF needs a condition")
            cond = _truthy(self.eval(arg_nodes[0]))
            if cond:
                return self.eval(arg_nodes[1]) if len(arg_nodes) > 1 else True
            return self.eval(arg_nodes[2]) if len(arg_nodes) > 2 else False
        if name in {"COUNT", "COUNT_IGNORE_CASE"} and len(arg_nodes) == 1 and arg_nodes[0][0] == "lit" and isinstance(arg_nodes[0][1], str):
            # COUNT('yes') counts form values equal to the literal.
            return self.count_matching(arg_nodes[0][1], ignore_case=name == "COUNT_IGNORE_CASE")
        if name == "FIELD":
            if len(arg_nodes) != 1:
                raise FormulaEvaluationError("FIELD takes one argument")
            ref = self.eval(arg_nodes[0])
            value = self.lookup(_text(ref))
            num = _maybe_number(value)
            return num if num is not None else value

        args = [self.eval(a) for a in arg_nodes]
        fn = _FUNCTIONS.get(name)
        if fn is None:
            raise FormulaEvaluationError(f"unknown function: {name}")
        try:
            return fn(args)
        except (TypeError, IndexError, ArithmeticError, ValueError) as e:
            raise FormulaEvaluationError(f"bad arguments to {name}: {e}") from e

    def eval(self, node: Node) -> Any:
        tag = node[0]
        if tag == "lit":
            return node[1]
        if tag == "ref":
            return self.lookup(node[1])
        if tag == "neg":
            return -to_number(self.eval(node[1]))
        if tag == "call":
            return self.call(node[1], node[2])
        if tag == "bin":
            return self.binary(node[1], self.eval(node[2]), self.eval(node[3]))
        raise FormulaEvaluationError(f"bad node {tag}")

    def binary(self, op: str, left: Any, right: Any) -> Any:
        if op == "&":
            return _text(left) + _text(right)
        if op in _COMPARISONS:
            ln, rn = _maybe_number(left), _maybe_number(right)
            both_numeric = ln is not None and rn is not None and not (isinstance(left, str) and isinstance(right, str))
            a: Any = ln if both_numeric else _text(left)
            b: Any = rn if both_numeric else _text(right)
            if op in {"=", "=="}:
                return a == b
            if op in {"!=", "<>"}:
                return a != b
            if op == "<":
                return a < b
            if op == "<=":
                return a <= b
            if op == ">":
                return a > b
            return a >= b
        a, b = to_number(left), to_number(right)
        if op == "+":
            return a + b
        if op == "-":
            return a - b
        if op == "*":
            return a * b
        if op in {"/", "%"}:
            if b == 0:
                raise FormulaEvaluationError("division by zero")
            return a / b if op == "/" else math.fmod(a, b)
        if op == "^":
            try:
                return math.pow(a, b)
            except (OverflowError, ValueError) as e:
                raise FormulaEvaluationError(f"bad power: {e}") from e
        raise FormulaEvaluationError(f"unknown operator {op}")


_FUNCTIONS: Dict[str, Callable[[List[Any]], Any]] = {
    "SUM": lambda a: sum(_numbers(a)),
    "AVERAGE": lambda a: _average(_numbers(a)),
    "MIN": lambda a: min(_numbers(a)) if _numbers(a) else 0.0,
    "MAX": lambda a: max(_numbers(a)) if _numbers(a) else 0.0,
    "MEDIAN": _median,
    "MODE": _mode,
    "COUNT": lambda a: float(len([x for x in _flatten(a) if not _is_blank(x)])),
    "COUNT_IGNORE_CASE": lambda a: float(len([x for x in _flatten(a) if not _is_blank(x)])),
    "COUNTIF": lambda a: _countif(a[0], a[1]),
    "ROUND": lambda a: _round(*a[:2]),
    "ABS": lambda a: abs(to_number(a[0])),
    "POWER": lambda a: math.pow(to_number(a[0]), to_number(a[1])),
    "SQRT": lambda a: _sqrt(a[0]),
    "SUMPRODUCT": lambda a: sum(
        to_number(x) * to_number(y)
        for x, y in zip(*[v if isinstance(v, (list, tuple)) else [v] for v in a[:2]])
    ),
    "AND": lambda a: all(_truthy(x) for x in a),
    "OR": lambda a: any(_truthy(x) for x in a),
    "NOT": lambda a: not _truthy(a[0]) if a else True,
    "CONCATENATE": lambda a: "".join(_text(x) for x in a),
    "LEN": lambda a: float(len(_text(a[0]))) if a else 0.0,
    "UPPER": lambda a: _text(a[0]).upper() if a else "",
    "LOWER": lambda a: _text(a[0]).lower() if a else "",
    "CALC_HOURS": lambda a: _calc_hours(*a[:3]),
}


def _average(nums: List[float]) -> float:
    return sum(nums) / len(nums) if nums else 0.0


def _same(a: Any, b: Any) -> bool:
    if isinstance(a, bool) or isinstance(b, bool):
        return type(a) is type(b) and a == b
    return a == b


def _finish(value: Any) -> Any:
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise FormulaEvaluationError("result is not a finite number")
        value = round(value, 10)
        if value.is_integer():
            return int(value)
    return value


def evaluate(formula: str, state: Mapping[str, Any], *, known_fields: Optional[Set[str]] = None) -> Any:
    """
    Evaluate a formula against form state. Pure and deterministic.

    Blank and missing references count as 0 in arithmetic. When `known_fields` is given a reference
    outside it (and outside `state`) is an error.

    Raises FormulaEvaluationError on syntax errors, unknown references/functions and division by zero.
    """
    node = compile_formula(formula)
    return _finish(_Evaluator(state, known_fields).eval(node))


class FormulaEngine:
    """Recomputes calculated fields in dependency order and reports only the values that changed."""

    def __init__(self, fields: Mapping[str, FieldConfig]) -> None:
        self._fields: Dict[str, FieldConfig] = {}
        self._order: List[str] = []
        self._recomputing = False
        self.rebuild(fields)

    @property
    def order(self) -> List[str]:
        return list(self._order)

    def rebuild(self, fields: Mapping[str, FieldConfig]) -> None:
        self._fields = dict(fields)
        calculated = [fid for fid, f in fields.items() if f.is_calculated]
        deps: Dict[str, Set[str]] = {}
        for fid in calculated:
            refs = references(fields[fid].formula or "")
            deps[fid] = {r for r in refs if r in deps or (r in fields and fields[r].is_calculated)}

        order: List[str] = []
        done: Set[str] = set()
        pending = list(calculated)
        progressed = True
        while pending and progressed:
            progressed = False
            for fid in list(pending):
                if deps[fid] <= done:
                    order.append(fid)
                    done.add(fid)
                    pending.remove(fid)
                    progressed = True
        if pending:
            logger.warning("formula cycle among %s; evaluating once in declaration order", ", ".join(pending))
            order.extend(pending)
        self._order = order

    def evaluate_field(self, field_id: str, state: Mapping[str, Any]) -> Any:
        f = self._fields[field_id]
        try:
            return evaluate(f.formula or "", state, known_fields=set(self._fields))
        except FormulaEvaluationError as e:
            logger.warning("formula for %s failed (%s); using %r", field_id, e, typed_zero(f.value_kind))
            return typed_zero(f.value_kind)

    def recompute(self, state: Mapping[str, Any]) -> Dict[str, Any]:
        """
        One pass over every calculated field. Returns `{fieldId: newValue}` for values that differ.

        Re-entrant calls (from a write triggered by this pass) return no changes.
        """
        if self._recomputing:
            return {}
        self._recomputing = True
        try:
            working = dict(state)
            changes: Dict[str, Any] = {}
            for fid in self._order:
                value = self.evaluate_field(fid, working)
                if fid not in working or not _same(working[fid], value):
                    changes[fid] = value
                working[fid] = value
            return changes
        finally:
            self._recomputing = False
