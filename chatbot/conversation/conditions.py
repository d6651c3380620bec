"""
Safe evaluation of condition-node expressions.

Expressions are small Python-like boolean expressions over context variables,
e.g. ``lead_score >= 70 and lower(city) == 'cdmx'``. They are parsed with ``ast``
and only a whitelist of node types is interpreted; nothing is ever passed to eval.
"""

import ast
import logging
import operator
from typing import Any, Dict, Optional

from .context import ConversationContext

logger = logging.getLogger(__name__)


class ConditionError(ValueError):
    """Raised for expressions outside the supported grammar."""
    pass


_COMPARE_OPS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
}

_FUNCTIONS = {
    "len": len,
    "lower": lambda v: str(v).lower(),
    "upper": lambda v: str(v).upper(),
    "str": str,
    "int": int,
    "float": float,
}

_CONSTANT_NAMES = {"true": True, "false": False, "null": None, "none": None}

MAX_EXPRESSION_LENGTH = 500


class _Evaluator:

    def __init__(self, context: ConversationContext):
        self.context = context

    def visit(self, node: ast.AST) -> Any:
        method = getattr(self, f"visit_{type(node).__name__}", None)
        if method is None:
            raise ConditionError(f"Unsupported syntax: {type(node).__name__}")
        return method(node)

    def visit_Expression(self, node: ast.Expression) -> Any:
        return self.visit(node.body)

    def visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def visit_List(self, node: ast.List) -> Any:
        return [self.visit(elt) for elt in node.elts]

    def visit_Tuple(self, node: ast.Tuple) -> Any:
        return tuple(self.visit(elt) for elt in node.elts)

    def visit_Name(self, node: ast.Name) -> Any:
        if node.id in self.context:
            return self.context.get(node.id)
        lowered = node.id.lower()
        if lowered in _CONSTANT_NAMES:
            return _CONSTANT_NAMES[lowered]
        return None

    def visit_Attribute(self, node: ast.Attribute) -> Any:
        target = self.visit(node.value)
        if isinstance(target, dict):
            return target.get(node.attr)
        return None

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        target = self.visit(node.value)
        key = self.visit(node.slice)
        try:
            return target[key]
        except (KeyError, IndexError, TypeError):
            return None

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        if isinstance(node.op, ast.And):
            result: Any = True
            for value in node.values:
                result = self.visit(value)
                if not result:
                    return result
            return result
        result = False
        for value in node.values:
            result = self.visit(value)
            if result:
                return result
        return result

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        operand = self.visit(node.operand)
        if isinstance(node.op, ast.Not):
            return not operand
        if isinstance(node.op, ast.USub):
            return -operand
        if isinstance(node.op, ast.UAdd):
            return +operand
        raise ConditionError(f"Unsupported unary operator: {type(node.op).__name__}")

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        op = _BIN_OPS.get(type(node.op))
        if op is None:
            raise ConditionError(f"Unsupported operator: {type(node.op).__name__}")
        return op(self.visit(node.left), self.visit(node.right))

    def visit_Compare(self, node: ast.Compare) -> Any:
        left = self.visit(node.left)
        for op_node, comparator in zip(node.ops, node.comparators):
            op = _COMPARE_OPS.get(type(op_node))
            if op is None:
                raise ConditionError(f"Unsupported comparison: {type(op_node).__name__}")
            right = self.visit(comparator)
            try:
                if not op(left, right):
                    return False
            except TypeError:
                return False
            left = right
        return True

    def visit_Call(self, node: ast.Call) -> Any:
        if not isinstance(node.func, ast.Name) or node.func.id not in _FUNCTIONS:
            raise ConditionError("Only len/lower/upper/str/int/float calls are allowed")
        if node.keywords:
            raise ConditionError("Keyword arguments are not allowed")
        args = [self.visit(arg) for arg in node.args]
        return _FUNCTIONS[node.func.id](*args)


def _normalize_expression(expression: str) -> str:
    # Builder expressions are often written JS-style
    return (
        expression.replace("===", "==")
        .replace("!==", "!=")
        .replace("&&", " and ")
        .replace("||", " or ")
    )


def evaluate_expression(expression: str, context: ConversationContext) -> bool:
    """Evaluate ``expression`` against ``context``; raises ConditionError when it is not allowed."""
    if not expression or not expression.strip():
        raise ConditionError("Empty condition")
    if len(expression) > MAX_EXPRESSION_LENGTH:
        raise ConditionError("Condition too long")

    rendered = context.render(expression) if "{{" in expression else expression
    source = _normalize_expression(rendered.strip())

    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as e:
        raise ConditionError(f"Invalid condition '{expression}': {e.msg}") from e

    try:
        return bool(_Evaluator(context).visit(tree))
    except ConditionError:
        raise
    except (TypeError, ValueError, ZeroDivisionError) as e:
        raise ConditionError(f"Condition '{expression}' failed: {e}") from e


def evaluate_structured(condition: Dict[str, Any], context: ConversationContext) -> bool:
    """Evaluate ``{variable, operator, value}`` conditions."""
    variable = condition.get("variable")
    operator_name = condition.get("operator", "equals")
    expected = condition.get("value")
    if not variable:
        raise ConditionError("Structured condition needs a variable")

    actual = context.resolve(variable)

    if operator_name == "exists":
        return actual not in (None, "")
    if operator_name == "not_exists":
        return actual in (None, "")
    if operator_name == "equals":
        return _loose_equals(actual, expected)
    if operator_name == "not_equals":
        return not _loose_equals(actual, expected)
    if operator_name == "contains":
        if actual is None:
            return False
        if isinstance(actual, (list, tuple, dict)):
            return expected in actual
        return str(expected).lower() in str(actual).lower()
    if operator_name in ("greater_than", "less_than"):
        try:
            left, right = float(actual), float(expected)
        except (TypeError, ValueError):
            return False
        return left > right if operator_name == "greater_than" else left < right

    raise ConditionError(f"Unknown operator: {operator_name}")


def _loose_equals(actual: Any, expected: Any) -> bool:
    if actual == expected:
        return True
    if actual is None or expected is None:
        return False
    return str(actual).strip().lower() == str(expected).strip().lower()


def evaluate_condition(condition: Any, context: ConversationContext) -> bool:
    """Evaluate an expression string or a structured condition dict."""
    if isinstance(condition, dict):
        return evaluate_structured(condition, context)
    if isinstance(condition, str):
        return evaluate_expression(condition, context)
    raise ConditionError(f"Unsupported condition: {condition!r}")


def condition_handle(node_data: Dict[str, Any], context: ConversationContext) -> str:
    """Map a condition node to its ``yes``/``no`` handle; evaluation errors take ``no``."""
    condition: Optional[Any] = node_data.get("condition")
    if condition is None and node_data.get("variable"):
        condition = {
            "variable": node_data.get("variable"),
            "operator": node_data.get("operator", "equals"),
            "value": node_data.get("value"),
        }

    try:
        return "yes" if evaluate_condition(condition, context) else "no"
    except ConditionError as e:
        logger.warning(f"Condition evaluation failed, taking 'no': {e}")
        return "no"
