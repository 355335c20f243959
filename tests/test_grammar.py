import pytest

from rarcheck.errors import FormulaSyntaxError
from rarcheck.model.ast import (
    And,
    Cardinality,
    Compare,
    Constant,
    Iff,
    Implies,
    IntCompare,
    Intersection,
    IntLiteral,
    IntValue,
    Join,
    MultTest,
    Name,
    Not,
    Or,
    Quantified,
    Quantifier,
    Transpose,
    Union_,
    to_text,
)
from rarcheck.model.grammar import parse_formula, position


class TestPrecedence:
    def test_and_binds_tighter_than_or(self):
        tree = parse_formula("a in b or c in d and e in f")
        assert isinstance(tree, Or)
        assert isinstance(tree.operands[1], And)

    def test_implication_is_right_associative(self):
        tree = parse_formula("a in b => c in d => e in f")
        assert isinstance(tree, Implies)
        assert isinstance(tree.consequent, Implies)

    def test_iff_is_loosest(self):
        tree = parse_formula("a in b => c in d <=> e in f")
        assert isinstance(tree, Iff)
        assert isinstance(tree.left, Implies)

    def test_join_binds_tighter_than_union(self):
        tree = parse_formula("x in a.b + c")
        assert isinstance(tree.right, Union_)
        assert isinstance(tree.right.left, Join)

    def test_quantifier_body_extends_right(self):
        tree = parse_formula("all p: P | p in Q and p in R")
        assert isinstance(tree, Quantified)
        assert isinstance(tree.body, And)


class TestForms:
    def test_multiple_variables_nest(self):
        tree = parse_formula("all a, b: S | a = b")
        assert tree.var == "a"
        assert isinstance(tree.body, Quantified)
        assert tree.body.var == "b"

    def test_no_with_several_variables(self):
        tree = parse_formula("no a: S, b: T | a = b")
        assert isinstance(tree, Not)
        assert tree.operand.quantifier is Quantifier.SOME

    def test_multiplicity_tests(self):
        tree = parse_formula("lone p.actionVec")
        assert isinstance(tree, MultTest)
        assert tree.kind is Quantifier.LONE

    def test_integer_comparisons(self):
        tree = parse_formula("#p.actionVec <= e.idx")
        assert isinstance(tree, IntCompare)
        assert isinstance(tree.left, Cardinality)
        assert isinstance(tree.right, IntValue)
        tree = parse_formula("a.idx = 0")
        assert isinstance(tree, IntCompare)
        assert tree.right == IntLiteral(0)

    def test_count_covers_intersection(self):
        tree = parse_formula("#n.next & Special <= 1")
        assert isinstance(tree, IntCompare)
        assert isinstance(tree.left, Cardinality)
        assert isinstance(tree.left.operand, Intersection)
        assert isinstance(tree.left.operand.left, Join)

    def test_relational_equality_stays_relational(self):
        tree = parse_formula("p.rarBit = True")
        assert isinstance(tree, Compare)
        assert tree.right == Name("True")

    @pytest.mark.parametrize("text", ["a not in b", "a !in b", "!(a in b)", "not a in b"])
    def test_negated_membership(self, text):
        tree = parse_formula(text)
        assert isinstance(tree, Not)
        assert isinstance(tree.operand, Compare)
        assert tree.operand.op == "in"

    def test_transpose_and_constants(self):
        tree = parse_formula("~owner in none.x or true")
        assert isinstance(tree.operands[0].left, Transpose)
        assert tree.operands[1] == Constant(True)

    def test_comments_are_whitespace(self):
        tree = parse_formula("a in b -- trailing\n  and c in d // other")
        assert isinstance(tree, And)

    def test_round_trip_text(self):
        text = "all p: Processor | p.execState = INIT => no (target.p & RAR)"
        assert parse_formula(to_text(parse_formula(text))) == parse_formula(text)


class TestErrors:
    def test_reports_position(self):
        with pytest.raises(FormulaSyntaxError) as excinfo:
            parse_formula("all p: P |\n  p in", where="fact Broken")
        err = excinfo.value
        assert err.line == 2
        assert err.where == "fact Broken"
        assert "FormulaSyntaxError" in str(err)

    @pytest.mark.parametrize(
        "text", ["", "a in", "all | a in b", "one a, b: S | a = b", "1 in a", "and in or"]
    )
    def test_rejected(self, text):
        with pytest.raises(FormulaSyntaxError):
            parse_formula(text)

    @pytest.mark.parametrize("word", ["none", "not", "no"])
    def test_reserved_words_are_not_names(self, word):
        with pytest.raises(FormulaSyntaxError):
            parse_formula(f"all {word}: S | {word} in S")

    def test_position_helper(self):
        assert position("ab\ncd", 0) == (1, 1)
        assert position("ab\ncd", 4) == (2, 2)
