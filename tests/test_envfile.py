"""
Tests for the env-file codec.

Tests cover:
- Parsing comments, blank lines, quotes and ``export`` prefixes
- Serialization and quoting
- Merge precedence and ordering
- EnvMap mapping behaviour
- Atomic file writes
"""
import os
import stat

import pytest

from navigator_env.envfile import (
    EnvMap,
    merge,
    parse,
    read_env_file,
    stringify,
    write_env_file,
)


class TestParse:
    """Tests for parse()."""

    def test_simple_pairs(self):
        """Test plain KEY=value lines in order."""
        env = parse("A=1\nB=two\n")
        assert list(env.items()) == [("A", "1"), ("B", "two")]

    def test_skips_comments_and_blank_lines(self):
        """Test comments and empty lines are ignored."""
        env = parse("# header\n\n   \nA=1\n  # indented comment\n")
        assert env.to_dict() == {"A": "1"}

    def test_value_keeps_equals(self):
        """Test only the first '=' separates name and value."""
        env = parse("URL=postgres://u:p@h/db?sslmode=require\n")
        assert env["URL"] == "postgres://u:p@h/db?sslmode=require"

    def test_quoted_values(self):
        """Test one layer of matching quotes is stripped."""
        env = parse("A=\"hello world\"\nB='single'\nC=\"unbalanced'\n")
        assert env["A"] == "hello world"
        assert env["B"] == "single"
        assert env["C"] == "\"unbalanced'"

    def test_escaped_double_quotes(self):
        """Test escapes inside double quotes."""
        env = parse('A="say \\"hi\\" \\\\ bye"\n')
        assert env["A"] == 'say "hi" \\ bye'

    def test_export_prefix(self):
        """Test shell-style export prefix."""
        env = parse("export TOKEN=abc\n")
        assert env["TOKEN"] == "abc"

    def test_lines_without_separator_ignored(self):
        """Test garbage lines are skipped."""
        env = parse("NOT_A_PAIR\n=novalue\nA=1\n")
        assert env.to_dict() == {"A": "1"}

    def test_last_duplicate_wins(self):
        """Test duplicate names keep the last value."""
        env = parse("A=1\nA=2\n")
        assert env["A"] == "2"
        assert len(env) == 1

    def test_empty_value(self):
        env = parse("EMPTY=\n")
        assert env["EMPTY"] == ""

    def test_parsed_map_is_not_changed(self):
        assert parse("A=1").is_changed is False


class TestStringify:
    """Tests for stringify()."""

    def test_empty(self):
        assert stringify(EnvMap()) == ""

    def test_plain_values(self):
        assert stringify({"A": "1", "B": "x"}) == "A=1\nB=x\n"

    def test_quotes_when_needed(self):
        """Test values with spaces, hashes or quotes are quoted."""
        out = stringify({"A": "hello world", "B": "x#y", "C": 'say "hi"'})
        assert out == 'A="hello world"\nB="x#y"\nC="say \\"hi\\""\n'

    def test_parse_of_stringify_is_identity(self):
        """Test a serialized map parses back to the same content."""
        env = EnvMap({
            "URL": "postgres://x?a=b",
            "SPACED": "  padded  ",
            "QUOTE": "it's \"fine\"",
            "SLASH": "C:\\path\\",
            "EMPTY": "",
        })
        assert parse(stringify(env)).to_dict() == env.to_dict()

    def test_stringify_is_idempotent(self):
        text = "A=1\nB=\"two words\"\n"
        once = stringify(parse(text))
        assert stringify(parse(once)) == once


class TestMerge:
    """Tests for merge()."""

    def test_overlay_wins(self):
        merged = merge({"A": "1", "B": "2"}, {"B": "3", "C": "4"})
        assert merged.to_dict() == {"A": "1", "B": "3", "C": "4"}

    def test_base_order_kept(self):
        merged = merge({"A": "1", "B": "2"}, {"C": "3", "A": "9"})
        assert list(merged) == ["A", "B", "C"]

    def test_inputs_not_mutated(self):
        base = EnvMap({"A": "1"})
        merge(base, {"A": "2"})
        assert base["A"] == "1"


class TestEnvMap:
    """Tests for the EnvMap mapping."""

    def test_rejects_empty_name(self):
        with pytest.raises(KeyError):
            EnvMap()[""] = "x"

    def test_rejects_non_string_value(self):
        with pytest.raises(TypeError):
            EnvMap()["A"] = 1

    def test_without(self):
        env = EnvMap({"A": "1", "KEY": "secret"})
        assert env.without("KEY").to_dict() == {"A": "1"}
        assert "KEY" in env

    def test_repr_hides_values(self):
        env = EnvMap({"PASSWORD": "hunter2"})
        assert "hunter2" not in repr(env)
        assert "PASSWORD" in repr(env)

    def test_changed_flag(self):
        env = EnvMap()
        assert env.is_changed is False
        env["A"] = "1"
        assert env.is_changed is True
        del env["A"]
        assert len(env) == 0


class TestEnvFiles:
    """Tests for reading and writing env files."""

    def test_roundtrip(self, tmp_path):
        path = tmp_path / ".env"
        write_env_file(path, {"A": "1", "B": "two words"})
        assert read_env_file(path).to_dict() == {"A": "1", "B": "two words"}

    def test_new_file_is_private(self, tmp_path):
        path = tmp_path / ".env"
        write_env_file(path, {"A": "1"})
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600

    def test_existing_mode_kept(self, tmp_path):
        path = tmp_path / ".env"
        path.write_text("A=0\n")
        os.chmod(path, 0o640)
        write_env_file(path, {"A": "1"})
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o640

    def test_no_temp_files_left(self, tmp_path):
        write_env_file(tmp_path / ".env", {"A": "1"})
        assert [p.name for p in tmp_path.iterdir()] == [".env"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            read_env_file(tmp_path / "nope")

class TestVariableNames:
    """Tests for variable name validation."""

    @pytest.mark.parametrize("name", ["export FOO", "A=B", "#HIDDEN", "1ABC", "MY-VAR"])
    def test_invalid_names_rejected(self, name):
        with pytest.raises(KeyError):
            EnvMap()[name] = "1"

    def test_stringify_rejects_invalid_names(self):
        """Test a plain dict with a name parse() would drop cannot be serialized."""
        with pytest.raises(KeyError):
            stringify({"export FOO": "1"})

    def test_parse_skips_invalid_names(self):
        env = parse("MY-VAR=1\nGOOD_1=2\n")
        assert env.to_dict() == {"GOOD_1": "2"}
