"""Tests for command-line parsing."""

from clustersim.parser import parse, split_pipeline, tokenize


class TestTokenize:
    """Tests for quote-aware tokenization."""

    def test_whitespace_split(self):
        """Runs of whitespace separate tokens."""
        assert tokenize("nvidia-smi   -i  0") == ["nvidia-smi", "-i", "0"]

    def test_quotes_are_removed(self):
        """Quoted spans keep their spaces and lose the quotes."""
        assert tokenize('grep "fallen off" /var/log/syslog') == ["grep", "fallen off", "/var/log/syslog"]

    def test_quote_joins_adjacent_text(self):
        """A quoted span glues onto the surrounding token."""
        assert tokenize("Reason='xid 79'") == ["Reason=xid 79"]

    def test_unterminated_quote(self):
        """An unterminated quote runs to end of line."""
        assert tokenize("echo 'abc def") == ["echo", "abc def"]


class TestSplitPipeline:
    def test_no_pipe(self):
        assert split_pipeline("nvidia-smi") == ["nvidia-smi"]

    def test_empty_input(self):
        assert split_pipeline("") == [""]

    def test_pipe_inside_quotes_is_literal(self):
        """Pipes inside quotes do not split."""
        assert split_pipeline("grep 'a|b' file | wc -l") == ["grep 'a|b' file ", " wc -l"]


class TestParse:
    """Tests for parse()."""

    def test_empty_line(self):
        parsed = parse("   ")
        assert parsed.is_empty
        assert parsed.base_command == ""

    def test_non_string_input(self):
        """Non-string input yields an empty command instead of raising."""
        assert parse(None).is_empty

    def test_subcommands_before_flags(self):
        """Bare tokens before the first flag are subcommands."""
        parsed = parse("dcgmi diag -r 3")
        assert parsed.base_command == "dcgmi"
        assert parsed.subcommands == ["diag"]
        assert parsed.flags == {"r": "3"}
        assert parsed.positional_args == []

    def test_positional_after_flags(self):
        parsed = parse("scontrol -o show node dgx-00")
        assert parsed.subcommands == []
        assert parsed.flags == {"o": "show"}
        assert parsed.positional_args == ["node", "dgx-00"]
        assert parsed.args == ["node", "dgx-00"]

    def test_long_flag_with_equals(self):
        """Only the first '=' separates name from value."""
        parsed = parse("nvidia-smi --query-gpu=index,temperature.gpu --format=csv,noheader")
        assert parsed.get_flag("query-gpu") == "index,temperature.gpu"
        assert parsed.get_flag("format") == "csv,noheader"

    def test_long_flag_value_with_equals_inside(self):
        parsed = parse("tool --opt=a=b")
        assert parsed.get_flag("opt") == "a=b"

    def test_flag_without_value(self):
        """A flag followed by another flag is boolean."""
        parsed = parse("nvidia-smi -L -q")
        assert parsed.flags == {"L": True, "q": True}

    def test_multi_letter_short_flag(self):
        """-la stays one flag rather than two."""
        parsed = parse("ls -la")
        assert parsed.has_flag("la")
        assert not parsed.has_flag("l")

    def test_negative_number_is_a_value(self):
        """-0 after -i is a value, not a flag."""
        parsed = parse("nvidia-smi -i -0")
        assert parsed.get_flag("i") == "-0"

    def test_bare_long_flag_is_boolean(self):
        """A bare --name does not swallow the token after it."""
        parsed = parse("cmd --verbose file")
        assert parsed.flags == {"verbose": True}
        assert parsed.positional_args == ["file"]

    def test_long_flag_with_declared_value(self):
        """Long flags named in value_flags take the next token as their value."""
        parsed = parse("nccl-test --operation broadcast --burn-in --iterations 5", value_flags=("operation", "iterations"))
        assert parsed.flags == {"operation": "broadcast", "burn-in": True, "iterations": "5"}
        assert parsed.positional_args == []

    def test_declared_value_flag_before_another_flag(self):
        parsed = parse("tool --node -v", value_flags=("node",))
        assert parsed.flags == {"node": True, "v": True}

    def test_double_dash_ends_flags(self):
        parsed = parse("srun -N 1 -- nvidia-smi -L")
        assert parsed.get_flag("N") == "1"
        assert parsed.positional_args == ["nvidia-smi", "-L"]

    def test_pipe_segments_kept_verbatim(self):
        """Only the first segment is parsed; the rest are stripped text."""
        parsed = parse("dmesg | grep -i xid | tail -n 5")
        assert parsed.base_command == "dmesg"
        assert parsed.flags == {}
        assert parsed.pipe_segments == ["grep -i xid", "tail -n 5"]

    def test_raw_preserved(self):
        line = "  nvidia-smi  -q "
        assert parse(line).raw == line


class TestParsedCommandAccessors:
    def test_get_flag_first_present(self):
        parsed = parse("nvidia-smi --id 3", value_flags=("id",))
        assert parsed.get_flag("i", "id") == "3"
        assert parsed.get_flag("x", default="none") == "none"

    def test_get_flag_str_ignores_boolean(self):
        """get_flag_str skips flags that were given without a value."""
        parsed = parse("nvidia-smi -q -i 2")
        assert parsed.get_flag_str("q") is None
        assert parsed.get_flag_str("q", "i") == "2"

    def test_to_dict(self):
        data = parse("sinfo -N | head").to_dict()
        assert data["base_command"] == "sinfo"
        assert data["flags"] == {"N": True}
        assert data["pipe_segments"] == ["head"]
