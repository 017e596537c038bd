"""Tests for lexis.arithmetic -- safe evaluation and number helpers."""
import pytest

from lexis import arithmetic
from lexis.arithmetic import UndefinedResult, evaluate, evaluate_text, extract_expression, normalize_number
from lexis.errors import InvalidInput


class TestEvaluate:
    def test_precedence_and_parentheses(self):
        assert evaluate("5 + 3 * 2") == 11
        assert evaluate("(5 + 3) * 2") == 16

    def test_unary_minus(self):
        assert evaluate("-4 + 10") == 6

    def test_floor_division_and_modulo(self):
        assert evaluate("17 // 5") == 3
        assert evaluate("17 % 5") == 2

    def test_division_by_zero_is_undefined(self):
        with pytest.raises(UndefinedResult):
            evaluate("1 / 0")
        with pytest.raises(UndefinedResult):
            evaluate("5 % 0")

    def test_undefined_is_invalid_input(self):
        with pytest.raises(InvalidInput):
            evaluate("1 / (2 - 2)")

    def test_huge_exponent_rejected(self):
        with pytest.raises(UndefinedResult):
            evaluate("2 ** 5000")

    def test_float_overflow_is_undefined(self):
        with pytest.raises(UndefinedResult):
            evaluate("10.0 ** 400")

    def test_complex_result_is_undefined(self):
        with pytest.raises(UndefinedResult):
            evaluate("(-8) ** 0.5")

    def test_malformed(self):
        with pytest.raises(InvalidInput):
            evaluate("5 +")
        with pytest.raises(InvalidInput):
            evaluate("")

    def test_names_and_calls_rejected(self):
        with pytest.raises(InvalidInput):
            evaluate("__import__('os').getcwd()")
        with pytest.raises(InvalidInput):
            evaluate("x + 1")

    def test_booleans_rejected(self):
        with pytest.raises(InvalidInput):
            evaluate("True + 1")


class TestNaturalLanguage:
    @pytest.mark.parametrize("text,expected", [
        ("what is 5 plus 3", 8),
        ("7 minus 10", -3),
        ("6 times 7", 42),
        ("6 x 7", 42),
        ("6 multiplied by 7", 42),
        ("10 divided by 4", 2.5),
        ("2 to the power of 10", 1024),
        ("15 mod 4", 3),
        ("9 × 3", 27),
        ("9 ÷ 3", 3),
    ])
    def test_operator_words(self, text, expected):
        _expr, value = evaluate_text(text)
        assert value == expected

    def test_no_expression(self):
        assert extract_expression("hello there") == ""
        with pytest.raises(InvalidInput):
            evaluate_text("hello there")

    def test_longest_span_wins(self):
        assert extract_expression("step 1: compute 12 + 30 / 3 please") == "12 + 30 / 3"


class TestNormalizeNumber:
    def test_integral_float(self):
        assert normalize_number(8.0) == "8"

    def test_float_noise_removed(self):
        assert normalize_number(0.1 + 0.2) == "0.3"

    def test_plain_values(self):
        assert normalize_number(2.5) == "2.5"
        assert normalize_number(42) == "42"

    def test_infinite_rejected(self):
        with pytest.raises(UndefinedResult):
            normalize_number(float("inf"))


class TestHelpers:
    def test_factorial(self):
        assert arithmetic.factorial(5) == 120
        assert arithmetic.factorial(0) == 1
        with pytest.raises(InvalidInput):
            arithmetic.factorial(-1)
        with pytest.raises(InvalidInput):
            arithmetic.factorial(171)

    def test_gcd_lcm(self):
        assert arithmetic.gcd(12, 18) == 6
        assert arithmetic.lcm(4, 6) == 12
        assert arithmetic.lcm(0, 5) == 0

    def test_is_prime(self):
        assert [n for n in range(20) if arithmetic.is_prime(n)] == [2, 3, 5, 7, 11, 13, 17, 19]
        assert arithmetic.is_prime(97)
        assert not arithmetic.is_prime(91)

    def test_fibonacci(self):
        assert [arithmetic.fibonacci(n) for n in range(8)] == [0, 1, 1, 2, 3, 5, 8, 13]
        with pytest.raises(InvalidInput):
            arithmetic.fibonacci(-1)

    def test_percentage(self):
        assert arithmetic.percentage(25, 200) == 12.5
        with pytest.raises(InvalidInput):
            arithmetic.percentage(1, 0)

    def test_sqrt(self):
        assert arithmetic.sqrt(16) == 4.0
        with pytest.raises(InvalidInput):
            arithmetic.sqrt(-1)
