"""
Restricted expression language for logic nodes and trigger conditions.

Expressions are Python-syntax boolean expressions parsed with `ast` and
evaluated by walking a whitelist of node types. Nothing is ever passed to
`eval`. Supported:

- literals (str, int, float, bool, None, lists, tuples, dicts), plus
  `true` / `false` / `null`
- names, resolved against the scope mapping (unknown names are None)
- attribute and subscript access into dicts and lists
  (`trigger.department`, `steps["docs"]["outcome"]`)
- comparisons, `in` / `not in`, `is` / `is not`
- `and`, `or`, `not`, unary minus, + - * / % (`*` on numbers only)
- conditional expressions (`a if cond else b`)
- calls to `len`, `lower`, `upper`, `str`, `int`, `float`, `bool`,
  and `<mapping>.get(key, default)`

Evaluation is a pure function of the scope: the same scope always yields
the same value.
"""

import ast
import operator
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping

from .exceptions import ExpressionError

_CONSTANT_NAMES = {"true": True, "false": False, "null": None, "none": None}

_COMPARE_OPS: Dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b if b is not None else False,
    ast.NotIn: lambda a, b: a not in b if b is not None else True,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}


def _multiply(a: Any, b: Any) -> Any:
    # Numbers only: repeating strings or lists could allocate without bound
    for value in (a, b):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise TypeError(f"can only multiply numbers, not {type(value).__name__}")
    return a * b


_BIN_OPS: Dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: _multiply,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
}

_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "lower": lambda v: str(v).lower() if v is not None else None,
    "upper": lambda v: str(v).upper() if v is not None else None,
}

_ALLOWED_NODES = (
    ast.Expression, ast.Constant, ast.Name, ast.Load, ast.Attribute, ast.Subscript,
    ast.Compare, ast.BoolOp, ast.And, ast.Or, ast.UnaryOp, ast.Not, ast.USub,
    ast.BinOp, ast.IfExp, ast.Call, ast.List, ast.Tuple, ast.Dict,
    *(_COMPARE_OPS.keys()), *(_BIN_OPS.keys()),
)


class _Checker(ast.NodeVisitor):
    """Collects every construct outside the whitelist."""

    def __init__(self):
        self.errors: List[str] = []

    def generic_visit(self, node: ast.AST) -> None:
        if not isinstance(node, _ALLOWED_NODES):
            self.errors.append(f"unsupported syntax: {type(node).__name__}")
            return
        super().generic_visit(node)

    def visit_Attribute(self, node: ast.Attribute) -> None:
        if node.attr.startswith("_"):
            self.errors.append(f"private attribute '{node.attr}' is not allowed")
            return
        self.generic_visit(node)

    def visit_Call(self, node: ast.Call) -> None:
        if node.keywords:
            self.errors.append("keyword arguments are not allowed")
        func = node.func
        if isinstance(func, ast.Name):
            if func.id not in _FUNCTIONS:
                self.errors.append(f"function '{func.id}' is not allowed")
        elif isinstance(func, ast.Attribute):
            if func.attr != "get":
                self.errors.append(f"method '{func.attr}' is not allowed")
            else:
                self.visit(func.value)
        else:
            self.errors.append("only simple function calls are allowed")
        for arg in node.args:
            self.visit(arg)


@lru_cache(maxsize=1024)
def compile_expression(expression: str) -> ast.Expression:
    """
    Parse and whitelist-check an expression.

    Raises:
        ExpressionError: syntax error or disallowed construct
    """
    if not expression or not expression.strip():
        raise ExpressionError("Expression is empty", expression=expression)
    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as e:
        raise ExpressionError(f"Invalid expression syntax: {e.msg}", expression=expression)

    checker = _Checker()
    checker.visit(tree)
    if checker.errors:
        raise ExpressionError(
            f"Invalid expression '{expression}': {'; '.join(checker.errors)}",
            expression=expression,
        )
    return tree


def check_expression(expression: str) -> List[str]:
    """Return a list of problems with the expression (empty when valid)."""
    try:
        compile_expression(expression)
    except ExpressionError as e:
        return [e.message]
    return []


def _access(container: Any, key: Any) -> Any:
    if container is None:
        return None
    if isinstance(container, Mapping):
        return container.get(key)
    if isinstance(container, (list, tuple)) and isinstance(key, int):
        return container[key] if -len(container) <= key < len(container) else None
    return None


class _Evaluator:
    def __init__(self, scope: Mapping[str, Any], expression: str):
        self.scope = scope
        self.expression = expression

    def eval(self, node: ast.AST) -> Any:
        method = getattr(self, f"_eval_{type(node).__name__}", None)
        if method is None:
            raise ExpressionError(
                f"Unsupported syntax: {type(node).__name__}", expression=self.expression
            )
        return method(node)

    def _eval_Expression(self, node):
        return self.eval(node.body)

    def _eval_Constant(self, node):
        return node.value

    def _eval_Name(self, node):
        if node.id in self.scope:
            return self.scope[node.id]
        return _CONSTANT_NAMES.get(node.id.lower())

    def _eval_Attribute(self, node):
        return _access(self.eval(node.value), node.attr)

    def _eval_Subscript(self, node):
        return _access(self.eval(node.value), self.eval(node.slice))

    def _eval_List(self, node):
        return [self.eval(e) for e in node.elts]

    def _eval_Tuple(self, node):
        return tuple(self.eval(e) for e in node.elts)

    def _eval_Dict(self, node):
        return {self.eval(k): self.eval(v) for k, v in zip(node.keys, node.values)}

    def _eval_BoolOp(self, node):
        if isinstance(node.op, ast.And):
            result = True
            for value in node.values:
                result = self.eval(value)
                if not result:
                    return result
            return result
        result = False
        for value in node.values:
            result = self.eval(value)
            if result:
                return result
        return result

    def _eval_UnaryOp(self, node):
        operand = self.eval(node.operand)
        if isinstance(node.op, ast.Not):
            return not operand
        if isinstance(node.op, ast.USub):
            return -operand
        raise ExpressionError("Unsupported unary operator", expression=self.expression)

    def _eval_BinOp(self, node):
        return _BIN_OPS[type(node.op)](self.eval(node.left), self.eval(node.right))

    def _eval_IfExp(self, node):
        return self.eval(node.body) if self.eval(node.test) else self.eval(node.orelse)

    def _eval_Compare(self, node):
        left = self.eval(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.eval(comparator)
            if not _COMPARE_OPS[type(op)](left, right):
                return False
            left = right
        return True

    def _eval_Call(self, node):
        args = [self.eval(a) for a in node.args]
        if isinstance(node.func, ast.Name):
            return _FUNCTIONS[node.func.id](*args)
        # <mapping>.get(key, default)
        target = self.eval(node.func.value)
        if not args or len(args) > 2:
            raise ExpressionError("get() takes a key and an optional default", expression=self.expression)
        default = args[1] if len(args) == 2 else None
        if isinstance(target, Mapping):
            return target.get(args[0], default)
        return default


def evaluate(expression: str, scope: Mapping[str, Any]) -> Any:
    """
    Evaluate an expression against a read-only scope.

    Raises:
        ExpressionError: invalid expression or runtime type error
    """
    tree = compile_expression(expression)
    try:
        return _Evaluator(scope, expression).eval(tree)
    except ExpressionError:
        raise
    except (TypeError, ValueError, ZeroDivisionError) as e:
        raise ExpressionError(f"Failed to evaluate '{expression}': {e}", expression=expression)


def evaluate_condition(expression: str, scope: Mapping[str, Any]) -> bool:
    """Evaluate an expression and coerce the result to a boolean."""
    return bool(evaluate(expression, scope))
