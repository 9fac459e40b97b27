"""Tests for pipe filters."""

import pytest

from clustersim.pipeline import apply_filter, apply_pipeline, grep, head, is_filter, sort, tail, uniq, wc

TEXT = "alpha\nBeta\ngamma\nbeta\ndelta\n"


class TestGrep:
    def test_basic(self):
        assert grep(["beta"], TEXT) == ("beta\n", 0)

    def test_ignore_case_and_number(self):
        """-in combines -i and -n."""
        assert grep(["-in", "beta"], TEXT) == ("2:Beta\n4:beta\n", 0)

    def test_invert_count(self):
        assert grep(["-vc", "a"], TEXT) == ("0\n", 1)

    def test_no_match_exit_code(self):
        assert grep(["omega"], TEXT) == ("", 1)

    def test_basic_regex_alternation(self):
        """In basic regex \\| alternates and a bare | is literal."""
        assert grep(["alpha\\|delta"], TEXT)[0] == "alpha\ndelta\n"
        assert grep(["alpha|delta"], TEXT) == ("", 1)

    def test_extended_regex(self):
        assert grep(["-E", "alpha|delta"], TEXT)[0] == "alpha\ndelta\n"

    def test_missing_pattern(self):
        output, code = grep([], TEXT)
        assert code == 2
        assert "Usage: grep" in output

    def test_invalid_regex(self):
        assert grep(["-E", "("], TEXT)[1] == 2

    def test_max_count(self):
        assert grep(["-m", "1", "a"], TEXT) == ("alpha\n", 0)


class TestLineFilters:
    def test_head_tail(self):
        assert head(["-n", "2"], TEXT) == ("alpha\nBeta\n", 0)
        assert head(["-2"], TEXT) == ("alpha\nBeta\n", 0)
        assert tail(["-n", "1"], TEXT) == ("delta\n", 0)
        assert tail(["-n", "0"], TEXT) == ("", 0)

    def test_head_invalid_count(self):
        output, code = head(["-n", "x"], TEXT)
        assert code == 1
        assert "invalid number of lines" in output

    def test_wc(self):
        assert wc(["-l"], TEXT) == ("5\n", 0)
        assert wc([], "a b\n") == ("      1       2       4\n", 0)

    def test_sort_and_uniq(self):
        assert sort([], "b\na\nb\n") == ("a\nb\nb\n", 0)
        assert sort(["-nr"], "2\n10\n1\n") == ("10\n2\n1\n", 0)
        assert uniq(["-c"], "a\na\nb\n") == ("      2 a\n      1 b\n", 0)


class TestApplyPipeline:
    def test_chain(self):
        output, code, unsupported = apply_pipeline(["grep -i beta", "wc -l"], TEXT)
        assert (output, code, unsupported) == ("2\n", 0, None)

    def test_exit_code_from_last_filter(self):
        """A failing first command piped into a filter takes the filter's exit code."""
        output, code, _ = apply_pipeline(["head -n 1"], "error line\n", exit_code=1)
        assert code == 0
        assert output == "error line\n"

    def test_unsupported_segment(self):
        output, code, unsupported = apply_pipeline(["awk '{print $1}'"], TEXT)
        assert unsupported == "awk"
        assert code == 127
        assert output == TEXT

    def test_apply_filter_non_filter(self):
        assert apply_filter("less", TEXT) is None

    @pytest.mark.parametrize("name", ["grep", "egrep", "head", "tail", "wc", "sort", "uniq"])
    def test_is_filter(self, name):
        assert is_filter(name)
