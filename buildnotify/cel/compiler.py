"""Type-checks a filter syntax tree and compiles it into closures.

Each node becomes a Program: its static type plus a function of the
activation (the mapping of variable names to values). Checking and code
generation happen in one pass, so anything that reaches evaluation has
already been type-checked.
"""

import re
from dataclasses import dataclass
from typing import Any, Callable

from buildnotify.cel import nodes
from buildnotify.cel import runtime as rt
from buildnotify.cel.schema import (
    BOOL,
    DOUBLE,
    DURATION,
    DYN,
    INT,
    NULL,
    STRING,
    TIMESTAMP,
    Registry,
    Type,
    list_of,
    map_of,
)
from buildnotify.errors import EvaluationError

Activation = dict[str, Any]


class CheckError(Exception):
    def __init__(self, message: str, pos: int) -> None:
        self.pos = pos
        super().__init__(f"{message} at position {pos}")


@dataclass(frozen=True)
class Program:
    type: Type
    eval: Callable[[Activation], Any]
    constant: bool = False


def _const(type_: Type, value: Any) -> Program:
    return Program(type_, lambda act: value, constant=True)


@dataclass(frozen=True)
class _Overload:
    params: tuple[Type | str, ...]
    result: Type
    impl: Callable[..., Any]


def _ident(value: Any) -> Any:
    return value


_TEXT_PREDICATES = {
    "contains": rt.contains,
    "startsWith": rt.starts_with,
    "endsWith": rt.ends_with,
    "matches": rt.matches,
}

GLOBAL_FUNCTIONS: dict[str, list[_Overload]] = {
    "size": [_Overload((kind,), INT, rt.size) for kind in ("string", "list", "map")],
    "matches": [_Overload((STRING, STRING), BOOL, rt.matches)],
    "timestamp": [
        _Overload((STRING,), TIMESTAMP, rt.parse_timestamp),
        _Overload((TIMESTAMP,), TIMESTAMP, _ident),
    ],
    "duration": [
        _Overload((STRING,), DURATION, rt.parse_duration),
        _Overload((DURATION,), DURATION, _ident),
    ],
    "int": [_Overload((t,), INT, rt.to_int) for t in (INT, DOUBLE, STRING, TIMESTAMP)],
    "double": [_Overload((t,), DOUBLE, rt.to_double) for t in (INT, DOUBLE, STRING)],
    "string": [
        _Overload((t,), STRING, rt.to_string)
        for t in (STRING, INT, DOUBLE, BOOL, TIMESTAMP, DURATION, "enum")
    ],
    "dyn": [_Overload(("any",), DYN, _ident)],
}

# Member functions take their receiver as the first parameter.
MEMBER_FUNCTIONS: dict[str, list[_Overload]] = {
    "size": [_Overload((kind,), INT, rt.size) for kind in ("string", "list", "map")],
}
for _name, _impl in _TEXT_PREDICATES.items():
    MEMBER_FUNCTIONS[_name] = [_Overload((STRING, STRING), BOOL, _impl)]
for _name in rt.TIMESTAMP_ACCESSORS:
    MEMBER_FUNCTIONS[_name] = [
        _Overload((TIMESTAMP,), INT, rt.timestamp_accessor(_name)),
        _Overload((TIMESTAMP, STRING), INT, rt.timestamp_accessor(_name)),
    ]
for _name in rt.DURATION_ACCESSORS:
    MEMBER_FUNCTIONS.setdefault(_name, []).append(
        _Overload((DURATION,), INT, rt.duration_accessor(_name))
    )

# Functions evaluated at compile time when every argument is a literal.
_FOLDABLE = {"timestamp", "duration"}

_ARITHMETIC: dict[str, list[tuple[Type, Type, Type]]] = {
    "+": [
        (INT, INT, INT),
        (DOUBLE, DOUBLE, DOUBLE),
        (STRING, STRING, STRING),
        (TIMESTAMP, DURATION, TIMESTAMP),
        (DURATION, TIMESTAMP, TIMESTAMP),
        (DURATION, DURATION, DURATION),
    ],
    "-": [
        (INT, INT, INT),
        (DOUBLE, DOUBLE, DOUBLE),
        (TIMESTAMP, TIMESTAMP, DURATION),
        (TIMESTAMP, DURATION, TIMESTAMP),
        (DURATION, DURATION, DURATION),
    ],
    "*": [(INT, INT, INT), (DOUBLE, DOUBLE, DOUBLE)],
    "/": [(INT, INT, INT), (DOUBLE, DOUBLE, DOUBLE)],
    "%": [(INT, INT, INT)],
}

_ARITHMETIC_IMPL = {
    "+": rt.add,
    "-": rt.subtract,
    "*": rt.multiply,
    "/": rt.divide,
    "%": rt.modulo,
}

_ORDERED = {INT, DOUBLE, STRING, TIMESTAMP, DURATION, BOOL}


def _literal_type(value: Any) -> Type:
    if value is None:
        return NULL
    if isinstance(value, bool):
        return BOOL
    if isinstance(value, int):
        return INT
    if isinstance(value, float):
        return DOUBLE
    return STRING


def _accepts(param: Type | str, arg: Type) -> bool:
    if arg == DYN or param == "any":
        return True
    if isinstance(param, str):
        return arg.kind == param
    return param == arg


def _unify(types: list[Type]) -> Type:
    known = {t for t in types if t != DYN}
    if len(known) == 1:
        return known.pop()
    return DYN


class Compiler:
    def __init__(self, registry: Registry, variables: dict[str, Type]) -> None:
        self._registry = registry
        self._variables = variables

    def compile(self, node: nodes.Node) -> Program:
        return self._compile(node, dict(self._variables))

    def _compile(self, node: nodes.Node, scope: dict[str, Type]) -> Program:
        method = getattr(self, f"_{type(node).__name__.lower()}")
        return method(node, scope)

    # Leaves

    def _literal(self, node: nodes.Literal, scope: dict[str, Type]) -> Program:
        return _const(_literal_type(node.value), node.value)

    def _ident(self, node: nodes.Ident, scope: dict[str, Type]) -> Program:
        if node.name in scope:
            name = node.name
            return Program(scope[name], lambda act: act[name])
        constant = self._registry.enum_constant(node.name)
        if constant is not None:
            return _const(*constant)
        raise CheckError(f"undeclared reference to {node.name!r}", node.pos)

    # Selection

    def _select(self, node: nodes.Select, scope: dict[str, Type]) -> Program:
        qualified = nodes.qualified_name(node)
        if qualified is not None and qualified.split(".", 1)[0] not in scope:
            constant = self._registry.enum_constant(qualified)
            if constant is not None:
                return _const(*constant)
            raise CheckError(f"undeclared reference to {qualified!r}", node.pos)

        operand = self._compile(node.operand, scope)
        field_type = self._field_type(operand.type, node.field, node.pos)
        get, field = operand.eval, node.field
        return Program(field_type, lambda act: rt.select(get(act), field))

    def _field_type(self, owner: Type, field: str, pos: int) -> Type:
        if owner.kind == "message":
            field_type = self._registry.field_type(owner.name, field)
            if field_type is None:
                raise CheckError(f"undefined field {field!r} on {owner}", pos)
            return field_type
        if owner.kind == "map" and owner.params[0] in (STRING, DYN):
            return owner.params[1]
        if owner == DYN:
            return DYN
        raise CheckError(f"type {owner} does not support field selection", pos)

    def _has(self, node: nodes.Has, scope: dict[str, Type]) -> Program:
        operand = self._compile(node.select.operand, scope)
        self._field_type(operand.type, node.select.field, node.select.pos)
        get, field = operand.eval, node.select.field
        return Program(BOOL, lambda act: rt.present(get(act), field))

    def _index(self, node: nodes.Index, scope: dict[str, Type]) -> Program:
        operand = self._compile(node.operand, scope)
        key = self._compile(node.index, scope)
        owner = operand.type
        if owner.kind == "list" and _accepts(INT, key.type):
            result = owner.params[0]
        elif owner.kind == "map" and self._comparable(owner.params[0], key.type):
            result = owner.params[1]
        elif owner == DYN:
            result = DYN
        else:
            raise CheckError(f"no matching overload for index of {owner} with {key.type}", node.pos)
        get, get_key = operand.eval, key.eval
        return Program(result, lambda act: rt.index(get(act), get_key(act)))

    # Aggregates

    def _listexpr(self, node: nodes.ListExpr, scope: dict[str, Type]) -> Program:
        elements = [self._compile(e, scope) for e in node.elements]
        elem_type = _unify([e.type for e in elements]) if elements else DYN
        getters = [e.eval for e in elements]
        return Program(list_of(elem_type), lambda act: [g(act) for g in getters])

    def _mapexpr(self, node: nodes.MapExpr, scope: dict[str, Type]) -> Program:
        keys = [self._compile(k, scope) for k, _ in node.entries]
        values = [self._compile(v, scope) for _, v in node.entries]
        for key, (key_node, _) in zip(keys, node.entries):
            if key.type not in (STRING, INT, BOOL, DYN):
                raise CheckError(f"unsupported map key type {key.type}", key_node.pos)
        key_type = _unify([k.type for k in keys]) if keys else DYN
        value_type = _unify([v.type for v in values]) if values else DYN
        pairs = [(k.eval, v.eval) for k, v in zip(keys, values)]
        return Program(map_of(key_type, value_type), lambda act: {k(act): v(act) for k, v in pairs})

    # Operators

    def _unary(self, node: nodes.Unary, scope: dict[str, Type]) -> Program:
        operand = self._compile(node.operand, scope)
        get = operand.eval
        if node.op == "!":
            self._expect_bool(operand, node.operand)
            return Program(BOOL, lambda act: not _as_bool(get(act)))
        if operand.type in (INT, DOUBLE, DYN):
            return Program(operand.type, lambda act: rt.negate(get(act)))
        raise CheckError(f"no matching overload for '-' applied to {operand.type}", node.pos)

    def _binary(self, node: nodes.Binary, scope: dict[str, Type]) -> Program:
        left = self._compile(node.left, scope)
        right = self._compile(node.right, scope)
        op = node.op
        lhs, rhs = left.eval, right.eval

        if op in ("&&", "||"):
            self._expect_bool(left, node.left)
            self._expect_bool(right, node.right)
            return Program(BOOL, _logical_and(lhs, rhs) if op == "&&" else _logical_or(lhs, rhs))

        if op in ("==", "!="):
            if not self._comparable(left.type, right.type):
                raise self._no_overload(op, left.type, right.type, node.pos)
            self._check_enum_literals(left.type, node.right)
            self._check_enum_literals(right.type, node.left)
            if op == "==":
                return Program(BOOL, lambda act: rt.equals(lhs(act), rhs(act)))
            return Program(BOOL, lambda act: not rt.equals(lhs(act), rhs(act)))

        if op in ("<", "<=", ">", ">="):
            if not self._ordered(left.type, right.type):
                raise self._no_overload(op, left.type, right.type, node.pos)
            return Program(BOOL, lambda act: rt.compare(op, lhs(act), rhs(act)))

        if op == "in":
            container = right.type
            if container.kind == "list":
                elem = container.params[0]
            elif container.kind == "map":
                elem = container.params[0]
            elif container == DYN:
                elem = DYN
            else:
                raise self._no_overload(op, left.type, right.type, node.pos)
            if not self._comparable(left.type, elem):
                raise self._no_overload(op, left.type, right.type, node.pos)
            if left.type.kind == "enum" and isinstance(node.right, nodes.ListExpr):
                for element in node.right.elements:
                    self._check_enum_literals(left.type, element)
            self._check_enum_literals(elem, node.left)
            return Program(BOOL, lambda act: rt.contained_in(lhs(act), rhs(act)))

        return self._arithmetic(node, left, right)

    def _arithmetic(self, node: nodes.Binary, left: Program, right: Program) -> Program:
        op = node.op
        impl = _ARITHMETIC_IMPL[op]
        lhs, rhs = left.eval, right.eval
        if DYN in (left.type, right.type):
            return Program(DYN, lambda act: impl(lhs(act), rhs(act)))
        if op == "+" and left.type.kind == "list" and right.type.kind == "list":
            result = list_of(_unify([left.type.params[0], right.type.params[0]]))
            return Program(result, lambda act: impl(lhs(act), rhs(act)))
        for lt, rt_, result in _ARITHMETIC[op]:
            if left.type == lt and right.type == rt_:
                return Program(result, lambda act: impl(lhs(act), rhs(act)))
        raise self._no_overload(op, left.type, right.type, node.pos)

    def _conditional(self, node: nodes.Conditional, scope: dict[str, Type]) -> Program:
        cond = self._compile(node.condition, scope)
        self._expect_bool(cond, node.condition)
        then = self._compile(node.then, scope)
        otherwise = self._compile(node.otherwise, scope)
        if then.type == otherwise.type:
            result = then.type
        elif then.type == NULL and otherwise.type.nullable:
            result = otherwise.type
        elif otherwise.type == NULL and then.type.nullable:
            result = then.type
        elif DYN in (then.type, otherwise.type):
            result = DYN
        else:
            raise CheckError(
                f"conditional branches have different types {then.type} and {otherwise.type}",
                node.pos,
            )
        test, a, b = cond.eval, then.eval, otherwise.eval
        return Program(result, lambda act: a(act) if _as_bool(test(act)) else b(act))

    # Calls and macros

    def _call(self, node: nodes.Call, scope: dict[str, Type]) -> Program:
        args = [self._compile(a, scope) for a in node.args]
        if node.target is not None:
            table = MEMBER_FUNCTIONS
            args.insert(0, self._compile(node.target, scope))
        else:
            table = GLOBAL_FUNCTIONS
        overloads = table.get(node.function)
        if overloads is None:
            raise CheckError(f"undeclared reference to function {node.function!r}", node.pos)

        arg_types = [a.type for a in args]
        for overload in overloads:
            if len(overload.params) == len(args) and all(
                _accepts(p, t) for p, t in zip(overload.params, arg_types)
            ):
                break
        else:
            shown = ", ".join(str(t) for t in arg_types)
            raise CheckError(
                f"no matching overload for {node.function!r} applied to ({shown})", node.pos
            )

        impl = overload.impl
        if node.function == "matches" and args[-1].constant:
            pattern = args[-1].eval({})
            try:
                compiled = re.compile(pattern)
            except re.error as e:
                raise CheckError(f"invalid regular expression {pattern!r}: {e}", node.pos) from e
            args[-1] = _const(STRING, compiled)

        getters = [a.eval for a in args]
        if node.function in _FOLDABLE and all(a.constant for a in args):
            try:
                return _const(overload.result, impl(*(g({}) for g in getters)))
            except EvaluationError as e:
                raise CheckError(str(e), node.pos) from e

        def call(act: Activation) -> Any:
            values = [g(act) for g in getters]
            try:
                return impl(*values)
            except (TypeError, AttributeError, ValueError, OverflowError) as e:
                raise EvaluationError(f"{node.function}() failed: {e}") from e

        return Program(overload.result, call)

    def _comprehension(self, node: nodes.Comprehension, scope: dict[str, Type]) -> Program:
        rng = self._compile(node.range, scope)
        if rng.type.kind in ("list", "map"):
            var_type = rng.type.params[0]
        elif rng.type == DYN:
            var_type = DYN
        else:
            raise CheckError(f"{node.macro}() cannot range over {rng.type}", node.pos)

        inner = dict(scope)
        inner[node.var] = var_type
        body = self._compile(node.body, inner)
        predicate = self._compile(node.predicate, inner) if node.predicate is not None else None
        if predicate is not None:
            self._expect_bool(predicate, node.predicate)

        get_range, var, get_body = rng.eval, node.var, body.eval
        get_pred = predicate.eval if predicate is not None else None

        def items(act: Activation):
            for item in rt.require(get_range(act), f"range of {node.macro}()"):
                scoped = dict(act)
                scoped[var] = item
                yield scoped

        if node.macro == "map":
            if get_pred is None:
                return Program(list_of(body.type), lambda act: [get_body(s) for s in items(act)])
            return Program(
                list_of(body.type),
                lambda act: [get_body(s) for s in items(act) if _as_bool(get_pred(s))],
            )

        self._expect_bool(body, node.body)
        if node.macro == "filter":
            return Program(
                list_of(var_type), lambda act: [s[var] for s in items(act) if _as_bool(get_body(s))]
            )
        if node.macro == "exists_one":
            return Program(
                BOOL, lambda act: sum(1 for s in items(act) if _as_bool(get_body(s))) == 1
            )
        if node.macro == "all":
            return Program(BOOL, lambda act: _absorbing(get_body, items(act), stop_on=False))
        return Program(BOOL, lambda act: _absorbing(get_body, items(act), stop_on=True))

    # Checks

    def _expect_bool(self, program: Program, node: nodes.Node) -> None:
        if program.type not in (BOOL, DYN):
            raise CheckError(f"expected bool but found {program.type}", node.pos)

    def _comparable(self, a: Type, b: Type) -> bool:
        if a == b or DYN in (a, b):
            return True
        if {a, b} == {INT, DOUBLE}:
            return True
        if NULL in (a, b):
            return a.nullable and b.nullable
        if {a.kind, b.kind} == {"enum", "string"}:
            return True
        if a.kind == b.kind and a.kind in ("list", "map"):
            return all(self._comparable(x, y) for x, y in zip(a.params, b.params))
        return False

    def _ordered(self, a: Type, b: Type) -> bool:
        if DYN in (a, b):
            return True
        if {a, b} <= {INT, DOUBLE}:
            return True
        return a == b and a in _ORDERED

    def _check_enum_literals(self, enum_type: Type, node: nodes.Node) -> None:
        if enum_type.kind != "enum":
            return
        if isinstance(node, nodes.Literal) and isinstance(node.value, str):
            members = self._registry.enums[enum_type.name].__members__
            if node.value not in members:
                raise CheckError(f"{node.value!r} is not a value of {enum_type}", node.pos)

    def _no_overload(self, op: str, a: Type, b: Type, pos: int) -> CheckError:
        return CheckError(f"no matching overload for {op!r} applied to ({a}, {b})", pos)


def _as_bool(value: Any) -> bool:
    if not isinstance(value, bool):
        raise EvaluationError(f"expected bool but got {type(value).__name__}")
    return value


def _logical_and(lhs: Callable, rhs: Callable) -> Callable[[Activation], bool]:
    # A false operand decides the result even if the other one errors.
    def evaluate(act: Activation) -> bool:
        try:
            left = _as_bool(lhs(act))
        except EvaluationError:
            if not _as_bool(rhs(act)):
                return False
            raise
        return left and _as_bool(rhs(act))

    return evaluate


def _logical_or(lhs: Callable, rhs: Callable) -> Callable[[Activation], bool]:
    # A true operand decides the result even if the other one errors.
    def evaluate(act: Activation) -> bool:
        try:
            left = _as_bool(lhs(act))
        except EvaluationError:
            if _as_bool(rhs(act)):
                return True
            raise
        return left or _as_bool(rhs(act))

    return evaluate


def _absorbing(body: Callable, scopes, stop_on: bool) -> bool:
    error: EvaluationError | None = None
    for scope in scopes:
        try:
            if _as_bool(body(scope)) is stop_on:
                return stop_on
        except EvaluationError as e:
            error = error or e
    if error is not None:
        raise error
    return not stop_on
