"""Test the command-line entry point."""
import json

from minidelphi import run_cli


HELLO = "var x: Integer; begin x := 6 * 7; writeln(x) end."


class TestRunCli:
    """Tests for run_cli."""

    def test_run_file(self, tmp_path, capsys):
        """Test running a program from a file."""
        path = tmp_path / "hello.pas"
        path.write_text(HELLO, encoding="utf-8")
        assert run_cli([str(path)]) == 0
        assert capsys.readouterr().out == "42\n"

    def test_run_source_text(self, capsys):
        """Test -source treats the argument as program text."""
        assert run_cli(["-source", HELLO]) == 0
        assert capsys.readouterr().out == "42\n"

    def test_missing_file(self, tmp_path, capsys):
        """Test an unreadable file exits with status 1."""
        assert run_cli([str(tmp_path / "missing.pas")]) == 1
        assert "Failed to read" in capsys.readouterr().err

    def test_parse_error(self, capsys):
        """Test parse errors are reported on stderr."""
        assert run_cli(["-source", "begin x := end."]) == 1
        err = capsys.readouterr().err
        assert err.startswith("ParseError: ")

    def test_runtime_error_traceback(self, capsys):
        """Test runtime faults print a traceback and exit 1."""
        assert run_cli(["-source", "var x: Integer; begin x := 1 / 0 end."]) == 1
        err = capsys.readouterr().err
        assert "Traceback (most recent call last):" in err
        assert "DivisionByZero: Division by zero" in err

    def test_traceback_json(self, capsys):
        """Test --traceback-json appends a JSON document."""
        assert run_cli(["-source", "--traceback-json", "begin y := 1 end."]) == 1
        err = capsys.readouterr().err
        payload = err[err.index("{"):]
        data = json.loads(payload)
        assert data["error"]["type"] == "UndeclaredAssignmentTarget"

    def test_trace_flag(self, capsys, counter_program):
        """Test --trace logs call entry and exit to stderr."""
        assert run_cli(["-source", "--trace", counter_program]) == 0
        captured = capsys.readouterr()
        assert captured.out == "7\n"
        assert "-> TCounter.Create(5)" in captured.err
        assert "<- TCounter.GetValue = 7" in captured.err
