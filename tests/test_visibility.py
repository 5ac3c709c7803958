"""Test public/protected/private member access."""
import pytest

from runtime import AccessDenied


VAULT_CLASS = """
type
  TVault = class
    open: Integer;
  private
    secret: Integer;
    procedure Hide;
  protected
    guarded: Integer;
    function Peek: Integer;
  public
    constructor Create;
    procedure Reveal;
    function Total: Integer;
  end;

  TThief = class
  public
    constructor Create;
    procedure Rob(v: TVault);
  end;

constructor TVault.Create;
begin
  secret := 1;
  self.guarded := 2;
  open := 3
end;

procedure TVault.Hide;
begin
  secret := secret + 10
end;

function TVault.Peek: Integer;
begin
  Peek := self.secret + guarded
end;

procedure TVault.Reveal;
begin
  self.Hide;
  writeln(self.Peek())
end;

function TVault.Total: Integer;
begin
  Total := secret + guarded + open
end;

constructor TThief.Create;
begin
end;

procedure TThief.Rob(v: TVault);
begin
  writeln(v.secret)
end;

var
  v: TVault;
  t: TThief;
  x: Integer;
"""


def program(main: str) -> str:
    return f"{VAULT_CLASS}\nbegin\n  v := TVault.Create();\n  {main}\nend."


class TestPublicAccess:
    """Tests for unrestricted members."""

    def test_members_before_marker_are_public(self, run_program):
        """Test members before any marker default to public."""
        assert run_program(program("v.open := 9; writeln(v.open)")) == ["9"]

    def test_public_method_reads_private_state(self, run_program):
        """Test a public method may use private and protected members."""
        assert run_program(program("writeln(v.Total())")) == ["6"]

    def test_private_method_called_from_own_class(self, run_program):
        """Test self-dispatch to private and protected methods is allowed."""
        assert run_program(program("v.Reveal")) == ["13"]


class TestRestrictedAccess:
    """Tests for private and protected members from outside the class."""

    @pytest.mark.parametrize(
        "statement, visibility, member",
        [
            ("x := v.secret", "private", "secret"),
            ("v.secret := 5", "private", "secret"),
            ("x := v.guarded", "protected", "guarded"),
            ("v.guarded := 5", "protected", "guarded"),
            ("v.Hide", "private", "Hide"),
            ("x := v.Peek()", "protected", "Peek"),
        ],
    )
    def test_access_denied_from_global_scope(self, run_program, statement, visibility, member):
        """Test restricted members are rejected at global scope."""
        with pytest.raises(AccessDenied) as excinfo:
            run_program(program(statement))
        error = excinfo.value
        assert (error.visibility, error.class_name, error.member) == (visibility, "TVault", member)
        assert error.rewrite_rule == "ACCESS"

    def test_access_denied_from_other_class(self, run_program):
        """Test another class's method cannot read a private field."""
        with pytest.raises(AccessDenied):
            run_program(program("t := TThief.Create(); t.Rob(v)"))

    def test_denied_write_leaves_field_unchanged(self, make_interpreter):
        """Test the visibility check happens before mutation."""
        interpreter = make_interpreter(program("v.secret := 5"))
        with pytest.raises(AccessDenied):
            interpreter.run()
        vault = interpreter.runtime.global_frame.get("v").value
        assert vault.get_field("secret").value == 1

    def test_visibility_names_case_insensitive(self, run_program):
        """Test member lookup for access checks ignores case."""
        with pytest.raises(AccessDenied):
            run_program(program("x := v.SECRET"))
