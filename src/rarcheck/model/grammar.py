"""PEG grammar for the formula subset, and the visitor that builds the tree.

Supported syntax (Alloy-flavoured):

    all p: Processor, a: p.actionVec | a.status = PENDING => some a.idx
    no (target.p & RAR)
    #p.actionVec <= 2
    e.idxInTable <= e.owner.msrInfo.tableMaxIndex

Precedence, loosest first: `<=>`, `=>`, `or`, `and`, unary (`not`,
quantifiers, multiplicity tests, comparisons). In expressions: `+`/`-`,
then `#`, then `&`, then `.`, then `~`, so `#a.b & C` counts the
intersection. A quantifier body extends as far right as possible.
"""

from __future__ import annotations

from typing import Optional

from parsimonious.exceptions import ParseError
from parsimonious.grammar import Grammar
from parsimonious.nodes import NodeVisitor

from rarcheck.errors import DefinitionError, FormulaSyntaxError
from rarcheck.model.ast import (
    And,
    Cardinality,
    Compare,
    Constant,
    Difference,
    Iff,
    Implies,
    IntCompare,
    IntLiteral,
    IntValue,
    Intersection,
    Join,
    MultTest,
    Name,
    NoneExpr,
    Not,
    Or,
    Quantified,
    Quantifier,
    Transpose,
    Union_,
)

__all__ = ["FORMULA_GRAMMAR", "parse_formula", "position"]

FORMULA_GRAMMAR = Grammar(
    r"""
    formula      = _ iff _
    iff          = implies (_ iff_op _ implies)*
    implies      = disjunction (_ implies_op _ implies)?
    disjunction  = conjunction (_ or_op _ conjunction)*
    conjunction  = unary (_ and_op _ unary)*
    unary        = negation / quantified / multiplicity / comparison / grouped / constant
    negation     = not_op _ unary
    quantified   = quant_kw _ decls _ "|" _ iff
    decls        = decl (_ "," _ decl)*
    decl         = names _ ":" _ expr
    names        = name (_ "," _ name)*
    multiplicity = mult_kw _ expr
    comparison   = operand _ compare_op _ operand
    operand      = number / count / expr
    count        = "#" _ intersection
    grouped      = "(" _ iff _ ")"
    constant     = ("true" / "false") !name_char

    expr         = intersection (_ union_op _ intersection)*
    intersection = join (_ "&" !"&" _ join)*
    join         = prefixed (_ "." _ prefixed)*
    prefixed     = transpose / primary
    transpose    = "~" _ prefixed
    primary      = parens / empty / name
    parens       = "(" _ expr _ ")"
    empty        = "none" !name_char

    quant_kw     = ("all" / "some" / "no" / "one" / "lone") !name_char
    mult_kw      = ("some" / "no" / "one" / "lone") !name_char
    not_op       = ("not" !name_char) / ("!" !"=")
    and_op       = ("and" !name_char) / "&&"
    or_op        = ("or" !name_char) / "||"
    implies_op   = ("implies" !name_char) / "=>"
    iff_op       = ("iff" !name_char) / "<=>"
    union_op     = "+" / ("-" !"-")
    compare_op   = "!=" / not_in / ("<=" !">") / ">=" / ("=" !">") / "<" / ">" / ("in" !name_char)
    not_in       = (("not" !name_char) / "!") _ "in" !name_char

    name         = !keyword ~r"[A-Za-z_][A-Za-z0-9_]*"
    keyword      = ("all" / "some" / "none" / "not" / "no" / "one" / "lone" / "and" / "or"
                    / "implies" / "iff" / "in" / "true" / "false") !name_char
    name_char    = ~r"[A-Za-z0-9_]"
    number       = ~r"[0-9]+"
    _            = ~r"(?:\s|--[^\n]*|//[^\n]*)*"
    """
)

_INT_ONLY_OPS = {"<", "<=", ">", ">="}


def position(text: str, offset: int) -> tuple[int, int]:
    """1-based (line, column) of a character offset."""
    line = text.count("\n", 0, offset) + 1
    column = offset - (text.rfind("\n", 0, offset) + 1) + 1
    return line, column


def _repeats(visited) -> list:
    # Empty repetitions come back from generic_visit as the bare Node
    return visited if isinstance(visited, list) else []


def _is_int(node) -> bool:
    return isinstance(node, (IntLiteral, Cardinality))


def _as_int(node):
    return node if _is_int(node) else IntValue(node, pos=node.pos)


class _FormulaBuilder(NodeVisitor):
    """Transforms the parsimonious parse tree into formula nodes."""

    unwrapped_exceptions = (DefinitionError,)

    def __init__(self, text: str, where: Optional[str]):
        self._text = text
        self._where = where

    def _error(self, message: str, offset: int) -> FormulaSyntaxError:
        line, column = position(self._text, offset)
        return FormulaSyntaxError(message, where=self._where, line=line, column=column)

    def generic_visit(self, node, visited_children):
        return visited_children or node

    # ---------- formulas ----------

    def visit_formula(self, node, visited_children):
        _, body, _ = visited_children
        return body

    def visit_iff(self, node, visited_children):
        result, rest = visited_children
        for item in _repeats(rest):
            result = Iff(result, item[-1], pos=node.start)
        return result

    def visit_implies(self, node, visited_children):
        antecedent, rest = visited_children
        tail = _repeats(rest)
        if not tail:
            return antecedent
        return Implies(antecedent, tail[0][-1], pos=node.start)

    def visit_disjunction(self, node, visited_children):
        first, rest = visited_children
        operands = [first] + [item[-1] for item in _repeats(rest)]
        if len(operands) == 1:
            return first
        return Or(tuple(operands), pos=node.start)

    def visit_conjunction(self, node, visited_children):
        first, rest = visited_children
        operands = [first] + [item[-1] for item in _repeats(rest)]
        if len(operands) == 1:
            return first
        return And(tuple(operands), pos=node.start)

    def visit_unary(self, node, visited_children):
        return visited_children[0]

    def visit_negation(self, node, visited_children):
        return Not(visited_children[-1], pos=node.start)

    def visit_quantified(self, node, visited_children):
        quantifier, _, decls, _, _, _, body = visited_children
        bound = [(name, domain) for names, domain in decls for name in names]
        if len(bound) > 1 and quantifier in (Quantifier.ONE, Quantifier.LONE):
            raise self._error(
                f"'{quantifier.value}' quantifiers take a single variable", node.start
            )
        # no x, y | F  ==  not (some x | some y | F)
        nested = Quantifier.SOME if quantifier is Quantifier.NO else quantifier
        if len(bound) == 1:
            nested = quantifier
        for name, domain in reversed(bound):
            body = Quantified(nested, name, domain, body, pos=node.start)
        if quantifier is Quantifier.NO and len(bound) > 1:
            body = Not(body, pos=node.start)
        return body

    def visit_decls(self, node, visited_children):
        first, rest = visited_children
        return [first] + [item[-1] for item in _repeats(rest)]

    def visit_decl(self, node, visited_children):
        names, _, _, _, domain = visited_children
        return names, domain

    def visit_names(self, node, visited_children):
        first, rest = visited_children
        return [first.ident] + [item[-1].ident for item in _repeats(rest)]

    def visit_quant_kw(self, node, visited_children):
        return Quantifier(node.text)

    def visit_mult_kw(self, node, visited_children):
        return Quantifier(node.text)

    def visit_multiplicity(self, node, visited_children):
        kind, _, operand = visited_children
        return MultTest(kind, operand, pos=node.start)

    def visit_comparison(self, node, visited_children):
        left, _, op, _, right = visited_children
        if op in _INT_ONLY_OPS:
            return IntCompare(op, _as_int(left), _as_int(right), pos=node.start)
        if op in ("=", "!="):
            if _is_int(left) or _is_int(right):
                return IntCompare(op, _as_int(left), _as_int(right), pos=node.start)
            return Compare(op, left, right, pos=node.start)
        if _is_int(left) or _is_int(right):
            raise self._error(f"'{op}' needs relational operands", node.start)
        subset = Compare("in", left, right, pos=node.start)
        return Not(subset, pos=node.start) if op == "not in" else subset

    def visit_compare_op(self, node, visited_children):
        text = " ".join(node.text.split())
        return "not in" if text in ("!in", "! in") else text

    def visit_operand(self, node, visited_children):
        return visited_children[0]

    def visit_number(self, node, visited_children):
        return IntLiteral(int(node.text), pos=node.start)

    def visit_count(self, node, visited_children):
        return Cardinality(visited_children[-1], pos=node.start)

    def visit_grouped(self, node, visited_children):
        return visited_children[2]

    def visit_constant(self, node, visited_children):
        return Constant(node.text == "true", pos=node.start)

    # ---------- expressions ----------

    def visit_expr(self, node, visited_children):
        result, rest = visited_children
        for item in _repeats(rest):
            op, operand = item[1], item[-1]
            if op == "+":
                result = Union_(result, operand, pos=node.start)
            else:
                result = Difference(result, operand, pos=node.start)
        return result

    def visit_union_op(self, node, visited_children):
        return node.text

    def visit_intersection(self, node, visited_children):
        result, rest = visited_children
        for item in _repeats(rest):
            result = Intersection(result, item[-1], pos=node.start)
        return result

    def visit_join(self, node, visited_children):
        result, rest = visited_children
        for item in _repeats(rest):
            result = Join(result, item[-1], pos=node.start)
        return result

    def visit_prefixed(self, node, visited_children):
        return visited_children[0]

    def visit_transpose(self, node, visited_children):
        return Transpose(visited_children[-1], pos=node.start)

    def visit_primary(self, node, visited_children):
        return visited_children[0]

    def visit_parens(self, node, visited_children):
        return visited_children[2]

    def visit_empty(self, node, visited_children):
        return NoneExpr(pos=node.start)

    def visit_name(self, node, visited_children):
        return Name(node.text, pos=node.start)


def parse_formula(text: str, *, where: Optional[str] = None):
    """Parse `text` into an unresolved formula tree.

    Raises:
        FormulaSyntaxError: the text is not a formula of the supported subset.
    """
    try:
        tree = FORMULA_GRAMMAR.parse(text)
    except ParseError as e:
        snippet = text[e.pos : e.pos + 20]
        raise FormulaSyntaxError(
            f"cannot parse formula near {snippet!r}",
            where=where,
            line=e.line(),
            column=e.column(),
        ) from e
    return _FormulaBuilder(text, where).visit(tree)
