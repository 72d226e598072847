import pytest

from codesandbox.core.models import RunOutcome, TestCase
from codesandbox.services.test_battery import evaluate_case, generate_diff_info, normalize_output


def test_normalize_output():
    assert normalize_output("  Hello\r\n  World  \n") == "hello world"
    assert normalize_output("A\rB\r\nC") == "a b c"
    assert normalize_output(None) == ""
    assert normalize_output("   \n\t") == ""


@pytest.mark.parametrize("raw", ["x", " a  b\n\nc ", "MiXeD\r\nCase\t \n", "", "ßx"])
def test_normalize_is_idempotent(raw):
    once = normalize_output(raw)
    assert normalize_output(once) == once


def test_no_diff_when_equal():
    assert generate_diff_info("abc", "abc") is None


def test_length_mismatch():
    info = generate_diff_info("abc", "abcd")
    assert info["type"] == "length_mismatch"
    assert info["expected_length"] == 3
    assert info["actual_length"] == 4


def test_content_mismatch_reports_first_position():
    info = generate_diff_info("hello world", "hello wxrld")
    assert info["type"] == "content_mismatch"
    assert info["position"] == 7
    assert info["expected_context"] == "hello world"
    assert info["actual_context"] == "hello wxrld"


@pytest.mark.parametrize("pos,start,end", [(0, 0, 10), (20, 10, 30), (29, 19, 30)])
def test_context_window_edges(pos, start, end):
    expected = "a" * 30
    actual = expected[:pos] + "b" + expected[pos + 1:]
    info = generate_diff_info(expected, actual)
    assert info["position"] == pos
    assert info["expected_context"] == expected[start:end]
    assert info["actual_context"] == actual[start:end]


def test_pass_requires_clean_exit_and_empty_stderr():
    case = TestCase(input="", expected_output="42")
    ok = evaluate_case(case, RunOutcome(stdout="42\n", stderr="", exit_code=0))
    assert ok.passed and ok.diff_info is None

    noisy = evaluate_case(case, RunOutcome(stdout="42\n", stderr="warning", exit_code=0))
    assert not noisy.passed
    assert noisy.diff_info is None

    crashed = evaluate_case(case, RunOutcome(stdout="42\n", stderr="", exit_code=1))
    assert not crashed.passed

    wrong = evaluate_case(case, RunOutcome(stdout="41\n", stderr="", exit_code=0))
    assert not wrong.passed
    assert wrong.diff_info["type"] == "content_mismatch"
    assert wrong.diff_info["position"] == 1
