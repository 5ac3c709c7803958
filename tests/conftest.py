"""Test fixtures for the minidelphi test suite."""
import pytest
import sys
from pathlib import Path
from typing import Callable, List, Optional

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from extensions import RuntimeServices
from interpreter import Interpreter


COUNTER_PROGRAM = """
program CounterDemo;
type
  TCounter = class
  private
    value: Integer;
  public
    constructor Create(start: Integer);
    procedure Inc;
    function GetValue: Integer;
  end;

var
  c: TCounter;

constructor TCounter.Create(start: Integer);
begin
  value := start
end;

procedure TCounter.Inc;
begin
  value := value + 1
end;

function TCounter.GetValue: Integer;
begin
  GetValue := value
end;

begin
  c := TCounter.Create(5);
  c.Inc;
  c.Inc;
  writeln(c.GetValue())
end.
"""


def scripted_input(lines: List[str]) -> Callable[[], str]:
    """Input provider that yields ``lines`` then signals end of input."""
    pending = list(lines)

    def provider() -> str:
        if not pending:
            raise EOFError
        return pending.pop(0)

    return provider


@pytest.fixture
def counter_program() -> str:
    """The TCounter demo program."""
    return COUNTER_PROGRAM


@pytest.fixture
def make_interpreter() -> Callable[..., Interpreter]:
    """Factory for interpreters with scripted input and captured output.

    Captured lines are available as ``interpreter.captured``.
    """

    def factory(
        source: str,
        inputs: Optional[List[str]] = None,
        services: Optional[RuntimeServices] = None,
        verbose: bool = False,
    ) -> Interpreter:
        captured: List[str] = []
        interpreter = Interpreter(
            source=source,
            verbose=verbose,
            services=services,
            input_provider=scripted_input(inputs or []),
            output_sink=captured.append,
        )
        interpreter.captured = captured
        return interpreter

    return factory


@pytest.fixture
def run_program(make_interpreter) -> Callable[..., List[str]]:
    """Run source text and return the lines it wrote."""

    def runner(source: str, inputs: Optional[List[str]] = None) -> List[str]:
        interpreter = make_interpreter(source, inputs)
        interpreter.run()
        return interpreter.captured

    return runner
