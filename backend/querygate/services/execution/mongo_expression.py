from __future__ import annotations

"""backend/querygate/services/execution/mongo_expression.py

Parse and evaluate Mongo shell-style query expressions such as::

    db.users.find({status: "active"}).sort({createdAt: -1}).limit(10)
    db.collection("orders").aggregate([{$group: {_id: "$sku", n: {$sum: 1}}}])
    db["audit-events"].countDocuments({level: "error"})

Expressions are never executed as code. The text is normalized (trailing
semicolons, bare object keys, ``new`` / ``await`` keywords), parsed with
``ast`` into an expression tree, and walked by an evaluator that only knows
the ``db`` / ``collection`` roots, the allow-listed collection and cursor
methods from ``mongo_accessor``, and literal arguments (documents, arrays,
strings, numbers, ``true/false/null``, ``ObjectId(...)``, ``ISODate(...)``).
Anything else raises MongoExpressionError.
"""

import ast
import re
from datetime import datetime, timezone
from typing import Any, Callable

from bson import ObjectId
from bson.errors import InvalidId

from querygate.services.execution.mongo_accessor import (
    COLLECTION_METHODS,
    CURSOR_METHODS,
    DATABASE_METHODS,
    CollectionWrapper,
    CursorChain,
    DatabaseAccessor,
)

_STRING_LITERAL = re.compile(r"(\"(?:\\.|[^\"\\])*\"|'(?:\\.|[^'\\])*')")
_BARE_KEY = re.compile(r"([{,]\s*)([A-Za-z_$][\w$]*)(\s*:)")
_KEYWORDS = re.compile(r"\b(?:new|await)\s+")
_TRAILING_SEMICOLONS = re.compile(r";+$")

_NAMED_CONSTANTS = {
    "true": True,
    "false": False,
    "null": None,
    "undefined": None,
    "True": True,
    "False": False,
    "None": None,
}


class MongoExpressionError(ValueError):
    """The expression is not a supported Mongo query expression."""


class _AllowedCall:
    def __init__(self, label: str, fn: Callable[..., Any]) -> None:
        self.label = label
        self._fn = fn

    def __call__(self, *args: Any) -> Any:
        return self._fn(*args)


def strip_trailing_semicolons(text: str) -> str:
    return _TRAILING_SEMICOLONS.sub("", text.strip())


def normalize_expression(text: str) -> str:
    """Rewrite shell syntax into something ``ast`` can parse.

    String literals are left untouched; only the code between them is
    rewritten.
    """
    segments = _STRING_LITERAL.split(strip_trailing_semicolons(text))
    for i in range(0, len(segments), 2):
        code = _KEYWORDS.sub("", segments[i])
        segments[i] = _BARE_KEY.sub(r'\1"\2"\3', code)
    return "".join(segments)


def parse_expression(text: str) -> ast.Expression:
    normalized = normalize_expression(text or "")
    if not normalized:
        raise MongoExpressionError("empty expression")
    try:
        return ast.parse(normalized, mode="eval")
    except SyntaxError as exc:
        raise MongoExpressionError(f"invalid expression ({exc.msg})") from None


def _parse_date(value: Any) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    if not isinstance(value, str):
        raise MongoExpressionError("ISODate expects a string")
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise MongoExpressionError(f"invalid date '{value}'") from None


def _literal(node: ast.AST) -> Any:
    if isinstance(node, ast.Constant):
        return node.value
    if isinstance(node, ast.Name):
        if node.id in _NAMED_CONSTANTS:
            return _NAMED_CONSTANTS[node.id]
        raise MongoExpressionError(f"unknown identifier '{node.id}'")
    if isinstance(node, ast.Dict):
        document = {}
        for key, value in zip(node.keys, node.values):
            if isinstance(key, ast.Constant) and isinstance(key.value, str):
                name = key.value
            elif isinstance(key, ast.Name):
                name = key.id
            else:
                raise MongoExpressionError("document keys must be strings")
            document[name] = _literal(value)
        return document
    if isinstance(node, (ast.List, ast.Tuple)):
        return [_literal(item) for item in node.elts]
    if isinstance(node, ast.UnaryOp) and isinstance(node.op, (ast.USub, ast.UAdd)):
        operand = _literal(node.operand)
        if isinstance(operand, (int, float)) and not isinstance(operand, bool):
            return -operand if isinstance(node.op, ast.USub) else operand
    if isinstance(node, ast.Call) and isinstance(node.func, ast.Name) and not node.keywords:
        args = [_literal(arg) for arg in node.args]
        if len(args) > 1:
            raise MongoExpressionError(f"{node.func.id} takes one argument")
        value = args[0] if args else None
        if node.func.id == "ObjectId":
            try:
                return ObjectId(value) if value is not None else ObjectId()
            except (InvalidId, TypeError):
                raise MongoExpressionError(f"invalid ObjectId '{value}'") from None
        if node.func.id in ("ISODate", "Date"):
            return _parse_date(value)
    raise MongoExpressionError(
        f"unsupported value '{ast.unparse(node)}'"
    )


def _resolve_attribute(target: Any, attr: str) -> Any:
    if isinstance(target, DatabaseAccessor):
        if attr in DATABASE_METHODS:
            return _AllowedCall(attr, target.collection)
        if attr.startswith("_"):
            raise MongoExpressionError(f"invalid collection name '{attr}'")
        return target.collection(attr)
    if isinstance(target, CollectionWrapper):
        if attr not in COLLECTION_METHODS:
            raise MongoExpressionError(f"unsupported collection method '{attr}'")
        return _AllowedCall(attr, getattr(target, COLLECTION_METHODS[attr]))
    if isinstance(target, CursorChain):
        if attr not in CURSOR_METHODS or not target.allows(attr):
            raise MongoExpressionError(f"unsupported cursor method '{attr}'")
        return _AllowedCall(attr, getattr(target, CURSOR_METHODS[attr]))
    raise MongoExpressionError(f"cannot access '{attr}' here")


class _Evaluator:
    def __init__(self, db: DatabaseAccessor) -> None:
        self.db = db

    def evaluate(self, node: ast.AST) -> Any:
        if isinstance(node, ast.Expression):
            return self.evaluate(node.body)
        if isinstance(node, ast.Name):
            if node.id == "db":
                return self.db
            if node.id == "collection":
                return _AllowedCall("collection", self.db.collection)
            raise MongoExpressionError(f"unknown name '{node.id}'")
        if isinstance(node, ast.Attribute):
            return _resolve_attribute(self.evaluate(node.value), node.attr)
        if isinstance(node, ast.Subscript):
            target = self.evaluate(node.value)
            name = _literal(node.slice)
            if not isinstance(target, DatabaseAccessor) or not isinstance(name, str):
                raise MongoExpressionError("only db[\"collection\"] subscripts are supported")
            return target.collection(name)
        if isinstance(node, ast.Call):
            fn = self.evaluate(node.func)
            if not isinstance(fn, _AllowedCall):
                raise MongoExpressionError("expression is not callable")
            if node.keywords:
                raise MongoExpressionError(f"{fn.label} does not take keyword arguments")
            return fn(*[_literal(arg) for arg in node.args])
        raise MongoExpressionError(
            f"unsupported expression '{ast.unparse(node)}'"
        )


def evaluate_expression(expression: ast.Expression, db: DatabaseAccessor) -> Any:
    """Evaluate a parsed expression; cursors are drained into lists."""
    result = _Evaluator(db).evaluate(expression)
    if isinstance(result, CursorChain):
        return result.to_array()
    if isinstance(result, (DatabaseAccessor, CollectionWrapper, _AllowedCall)):
        raise MongoExpressionError("expression does not call a collection method")
    return result
