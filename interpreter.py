from __future__ import annotations
import json
import os
import re
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional

from lexer import Lexer
from extensions import HookRegistry, RuntimeServices, StepContext, build_default_services
from parser import (
    AddSub,
    Assignment,
    Expression,
    FieldDecl,
    IntLiteral,
    LvalueRef,
    Lvalue,
    MethodHeader,
    MethodImplSection,
    MethodOrStaticCall,
    MulDiv,
    Parens,
    Parser,
    ProcCall,
    Program,
    SourceLocation,
    Statement,
    TypeDecl,
    TypeSection,
    VarSection,
    VisibilitySection,
)
from runtime import (
    INT_MAX,
    INT_MIN,
    SELF_NAME,
    TYPE_INT,
    TYPE_OBJ,
    VIS_PUBLIC,
    AccessDenied,
    ArgumentCountMismatch,
    ClassCatalog,
    ClassDef,
    DelphiRuntimeError,
    DivisionByZero,
    Frame,
    InvalidArgument,
    InvalidInput,
    MalformedLvalue,
    MethodInfo,
    MethodNotImplemented,
    NotAConstructor,
    NotAnObject,
    ObjectInstance,
    RuntimeEnvironment,
    TypeMismatch,
    UnknownField,
    UnknownProcedure,
    Value,
    nil,
    trunc_div,
    wrap_int32,
)


INTEGER_TYPE_NAME = "integer"
OBJECT_PLACEHOLDER = "object"

_INT_TOKEN = re.compile(r"[+-]?[0-9]+\Z")


@dataclass
class StateEntry:
    step_index: int
    rule: str
    frame_id: Optional[str] = None
    source_location: Optional[SourceLocation] = None
    detail: Dict[str, Any] = field(default_factory=dict)
    env_snapshot: Optional[Dict[str, str]] = None

    @property
    def state_id(self) -> str:
        return f"s_{self.step_index:06d}"

    @property
    def statement(self) -> Optional[str]:
        return self.source_location.statement if self.source_location else None

    @property
    def rewrite_record(self) -> Dict[str, Any]:
        previous = f"s_{self.step_index - 1:06d}" if self.step_index else "seed"
        return {"rule": self.rule, **self.detail, "from_state_id": previous, "to_state_id": self.state_id}


class StateLogger:
    """Append-only step log, indexed by the frame that was active for each step."""

    def __init__(self) -> None:
        self.entries: List[StateEntry] = []
        self._latest_by_frame: Dict[str, StateEntry] = {}

    def record(
        self,
        rule: str,
        *,
        frame: Optional[Frame] = None,
        location: Optional[SourceLocation] = None,
        detail: Optional[Dict[str, Any]] = None,
        env_snapshot: Optional[Dict[str, str]] = None,
    ) -> StateEntry:
        entry = StateEntry(
            step_index=len(self.entries),
            rule=rule,
            frame_id=frame.frame_id if frame is not None else None,
            source_location=location,
            detail=dict(detail or {}),
            env_snapshot=env_snapshot,
        )
        self.entries.append(entry)
        if frame is not None:
            self._latest_by_frame[frame.frame_id] = entry
        return entry

    @property
    def last_entry(self) -> Optional[StateEntry]:
        return self.entries[-1] if self.entries else None

    def last_entry_for_frame(self, frame_id: str) -> Optional[StateEntry]:
        return self._latest_by_frame.get(frame_id)


class InputTokens:
    """Whitespace-separated tokens drawn from a line-at-a-time input provider."""

    def __init__(self, provider: Callable[[], str]) -> None:
        self.provider = provider
        self._pending: Deque[str] = deque()

    def next_token(self) -> Optional[str]:
        while not self._pending:
            try:
                line = self.provider()
            except EOFError:
                return None
            if line is None:
                return None
            self._pending.extend(line.split())
        return self._pending.popleft()


BuiltinImpl = Callable[["Interpreter", List[Value], List[Expression], SourceLocation], None]


@dataclass
class BuiltinProcedure:
    name: str
    min_args: int
    max_args: Optional[int]
    impl: BuiltinImpl
    # readln names its target instead of reading it.
    evaluate_args: bool = True


class Builtins:
    def __init__(self) -> None:
        self.table: Dict[str, BuiltinProcedure] = {}
        self._register("writeln", 0, None, self._writeln)
        self._register("readln", 1, 1, self._readln, evaluate_args=False)

    def _register(
        self,
        name: str,
        min_args: int,
        max_args: Optional[int],
        impl: BuiltinImpl,
        *,
        evaluate_args: bool = True,
    ) -> None:
        self.table[name] = BuiltinProcedure(
            name=name, min_args=min_args, max_args=max_args, impl=impl, evaluate_args=evaluate_args
        )

    def invoke(
        self,
        interpreter: "Interpreter",
        name: str,
        args: List[Value],
        arg_nodes: List[Expression],
        location: SourceLocation,
    ) -> None:
        builtin = self.table.get(name.lower())
        if builtin is None:
            raise UnknownProcedure(name, location=location)
        supplied = len(arg_nodes)
        if supplied < builtin.min_args or (builtin.max_args is not None and supplied > builtin.max_args):
            raise ArgumentCountMismatch(builtin.min_args, supplied, callee=builtin.name, location=location)
        builtin.impl(interpreter, args, arg_nodes, location)

    def _writeln(
        self,
        interpreter: "Interpreter",
        args: List[Value],
        __: List[Expression],
        ___: SourceLocation,
    ) -> None:
        if not args:
            interpreter.output_sink("")
        for arg in args:
            interpreter.output_sink(self.render(arg))
        interpreter.io_log.append({"event": "writeln", "values": [self.render(arg) for arg in args]})

    def render(self, value: Value) -> str:
        if value.type == TYPE_INT:
            return str(value.value)
        if value.type == TYPE_OBJ:
            return OBJECT_PLACEHOLDER
        return "nil"

    def _readln(
        self,
        interpreter: "Interpreter",
        _: List[Value],
        arg_nodes: List[Expression],
        location: SourceLocation,
    ) -> None:
        target = arg_nodes[0]
        if not isinstance(target, LvalueRef):
            raise InvalidArgument("readln", "argument must be a variable", location=location, rewrite_rule="readln")
        if len(target.target.parts) != 1:
            raise InvalidArgument(
                "readln", "only simple integer variables are supported", location=location, rewrite_rule="readln"
            )
        token = interpreter.input_tokens.next_token()
        if token is None or not _INT_TOKEN.match(token):
            raise InvalidInput(token, location=location)
        number = int(token)
        if number < INT_MIN or number > INT_MAX:
            raise InvalidInput(token, location=location)
        interpreter.io_log.append({"event": "readln", "text": token})
        interpreter._assign_name(target.target.parts[0], Value(TYPE_INT, number))


class Interpreter:
    def __init__(
        self,
        *,
        source: str = "",
        filename: str = "<string>",
        verbose: bool = False,
        services: Optional[RuntimeServices] = None,
        input_provider: Optional[Callable[[], str]] = None,
        output_sink: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.source = source
        self._source_lines = source.splitlines()
        self.filename = filename if filename == "<string>" else os.path.abspath(filename)
        self.verbose = verbose
        self.services = services or build_default_services()
        self.hook_registry: HookRegistry = self.services.hook_registry
        self.input_provider = input_provider or (lambda: input())
        self.output_sink = output_sink or (lambda text: print(text))
        self.input_tokens = InputTokens(self.input_provider)
        self.builtins = Builtins()

        self.catalog = ClassCatalog()
        self.runtime = RuntimeEnvironment()
        self.logger = StateLogger()
        self.logger.record("SEED")
        self.io_log: List[Dict[str, Any]] = []

    def parse(self) -> Program:
        lexer = Lexer(self.source, self.filename)
        tokens = lexer.tokenize()
        parser = Parser(tokens, self.filename, self._source_lines)
        return parser.parse()

    def run(self) -> None:
        self.execute(self.parse())

    def execute(self, program: Program) -> None:
        self._emit_event("program_start", self, program)
        try:
            if program.type_section is not None:
                self._register_type_section(program.type_section)
            if program.method_impl_section is not None:
                self._attach_method_impls(program.method_impl_section)
            if program.var_section is not None:
                self._declare_globals(program.var_section)
            self._execute_block(program.block.statements)
        except DelphiRuntimeError as error:
            if error.call_stack is None:
                error.call_stack = self.runtime.frames()
            error.step_index = self.logger.last_entry.step_index
            self._emit_event("on_error", self, error)
            raise
        except Exception as exc:
            self._emit_event("on_error", self, exc)
            # Python-level faults are reported through the same traceback path.
            last = self.logger.last_entry
            wrapped = DelphiRuntimeError(
                f"Internal interpreter error: {exc}", location=last.source_location, rewrite_rule="internal"
            )
            wrapped.call_stack = getattr(exc, "call_stack", None) or self.runtime.frames()
            wrapped.step_index = last.step_index
            raise wrapped from exc
        else:
            self._emit_event("program_end", self, 0)

    # ---- declarations ----

    def _register_type_section(self, section: TypeSection) -> None:
        for decl in section.decls:
            self.register_class(decl)

    def register_class(self, decl: TypeDecl) -> ClassDef:
        class_def = ClassDef(name=decl.name)
        current = VIS_PUBLIC
        for member in decl.members:
            if isinstance(member, VisibilitySection):
                # A marker changes the visibility of every member after it.
                current = member.visibility
                for inner in member.members:
                    self._register_member(class_def, inner, current)
                continue
            self._register_member(class_def, member, current)
        self.catalog.define(class_def, location=decl.location)
        self._log_step(rule="CLASS", location=decl.location, detail={"class": decl.name})
        return class_def

    def _register_member(self, class_def: ClassDef, member: Any, visibility: str) -> None:
        if isinstance(member, FieldDecl):
            for name in member.names:
                class_def.add_field(name, visibility)
            return
        if isinstance(member, MethodHeader):
            class_def.declare_method(member.name, member.kind, member.param_names, visibility)
            return
        raise DelphiRuntimeError(f"Unsupported class member {member.__class__.__name__}", rewrite_rule="CLASS")

    def _attach_method_impls(self, section: MethodImplSection) -> None:
        for impl in section.impls:
            info = self.catalog.attach_method(
                impl.class_name,
                impl.method_name,
                impl.is_function,
                impl.param_names,
                impl.body,
                kind=impl.kind,
                location=impl.location,
            )
            self._log_step(rule="METHOD", location=impl.location, detail={"method": info.qualified_name})

    def _declare_globals(self, section: VarSection) -> None:
        for decl in section.decls:
            for name in decl.names:
                if decl.type_name.lower() == INTEGER_TYPE_NAME:
                    value = Value(TYPE_INT, 0)
                else:
                    value = nil()
                self.runtime.global_frame.declare(name, value)

    # ---- statements ----

    def _execute_block(self, statements: List[Statement]) -> None:
        # No statement halts the list early; the last return assignment wins.
        emit_event = self._emit_event
        execute_stmt = self._execute_statement
        for statement in statements:
            emit_event("before_statement", self, statement)
            execute_stmt(statement)
            emit_event("after_statement", self, statement)

    def _execute_statement(self, statement: Statement) -> None:
        self._log_step(rule=statement.__class__.__name__, location=statement.location)
        try:
            if isinstance(statement, Assignment):
                value = self._evaluate_expression(statement.expression)
                self._assign_lvalue(statement.target, value)
                return
            if isinstance(statement, MethodOrStaticCall):
                self._evaluate_call(statement)
                return
            if isinstance(statement, ProcCall):
                self._call_builtin(statement)
                return
            raise DelphiRuntimeError("Unsupported statement", location=statement.location)
        except DelphiRuntimeError as error:
            if error.location is None:
                error.location = statement.location
            raise

    def _call_builtin(self, statement: ProcCall) -> None:
        name = statement.name
        builtin = self.builtins.table.get(name.lower())
        if builtin is None:
            raise UnknownProcedure(name, location=statement.location)
        args: List[Value] = []
        if builtin.evaluate_args:
            args = [self._evaluate_expression(arg) for arg in statement.args]
        self._emit_event("before_call", self, name, args, statement.location)
        self.builtins.invoke(self, name, args, statement.args, statement.location)
        self._log_step(
            rule=name.lower(),
            location=statement.location,
            detail={"args": [arg.render() for arg in args]},
        )
        self._emit_event("after_call", self, name, nil(), statement.location)

    # ---- names ----

    def _split_lvalue(self, lvalue: Lvalue) -> List[str]:
        if len(lvalue.parts) > 2:
            raise MalformedLvalue(lvalue.text, location=lvalue.location)
        return lvalue.parts

    def _resolve_object(self, base: str, location: Optional[SourceLocation]) -> ObjectInstance:
        if base.lower() == SELF_NAME:
            return self.runtime.require_self()
        value = self.runtime.lookup(base)
        if value.type != TYPE_OBJ:
            raise NotAnObject(base, value.type, location=location)
        return value.value

    def _enforce_visibility(
        self,
        class_def: ClassDef,
        member: str,
        visibility: str,
        location: Optional[SourceLocation],
    ) -> None:
        # protected and private are enforced identically: there are no subclasses.
        if visibility == VIS_PUBLIC or self.runtime.in_class_context(class_def):
            return
        raise AccessDenied(visibility, class_def.name, member, location=location)

    def _read_lvalue(self, lvalue: Lvalue) -> Value:
        parts = self._split_lvalue(lvalue)
        if len(parts) == 1:
            return self.runtime.lookup(parts[0])
        base, field_name = parts
        obj = self._resolve_object(base, lvalue.location)
        self._enforce_visibility(obj.class_def, field_name, obj.class_def.field_visibility(field_name), lvalue.location)
        if not obj.has_field(field_name):
            raise UnknownField(obj.class_def.name, field_name, location=lvalue.location)
        return obj.get_field(field_name)

    def _assign_lvalue(self, lvalue: Lvalue, value: Value) -> None:
        parts = self._split_lvalue(lvalue)
        if len(parts) == 1:
            self._assign_name(parts[0], value)
            return
        base, field_name = parts
        obj = self._resolve_object(base, lvalue.location)
        self._enforce_visibility(obj.class_def, field_name, obj.class_def.field_visibility(field_name), lvalue.location)
        if not obj.has_field(field_name):
            raise UnknownField(obj.class_def.name, field_name, location=lvalue.location)
        obj.set_field(field_name, value)

    def _assign_name(self, name: str, value: Value) -> None:
        frame = self.runtime.frame
        if frame.is_function_result(name):
            frame.record_return(value)
            return
        self.runtime.assign(name, value)

    # ---- expressions ----

    def _evaluate_expression(self, expression: Expression) -> Value:
        if isinstance(expression, IntLiteral):
            return Value(TYPE_INT, expression.value)
        if isinstance(expression, LvalueRef):
            return self._read_lvalue(expression.target)
        if isinstance(expression, Parens):
            return self._evaluate_expression(expression.expression)
        if isinstance(expression, (AddSub, MulDiv)):
            left = self._expect_int(self._evaluate_expression(expression.left), expression.location)
            right = self._expect_int(self._evaluate_expression(expression.right), expression.location)
            return Value(TYPE_INT, self._arithmetic(expression.op, left, right, expression.location))
        if isinstance(expression, MethodOrStaticCall):
            return self._evaluate_call(expression)
        raise DelphiRuntimeError("Unsupported expression", location=expression.location)

    def _expect_int(self, value: Value, location: Optional[SourceLocation]) -> int:
        if value.type != TYPE_INT:
            raise TypeMismatch(TYPE_INT, value.type, location=location)
        return value.value

    def _arithmetic(self, op: str, left: int, right: int, location: Optional[SourceLocation]) -> int:
        if op == "+":
            result = left + right
        elif op == "-":
            result = left - right
        elif op == "*":
            result = left * right
        elif op == "/":
            if right == 0:
                raise DivisionByZero(location=location)
            result = trunc_div(left, right)
        else:
            raise DelphiRuntimeError(f"Unknown operator '{op}'", location=location, rewrite_rule="ARITH")
        return wrap_int32(result)

    # ---- calls ----

    def _evaluate_call(self, call: MethodOrStaticCall) -> Value:
        args = [self._evaluate_expression(arg) for arg in call.args]
        class_def = self._constructed_class(call.left)
        if class_def is not None:
            return self.construct(class_def, call.member, args, call.location)
        receiver = self._resolve_object(call.left, call.location)
        return self.invoke_method(receiver, call.member, args, call.location)

    def _constructed_class(self, left: str) -> Optional[ClassDef]:
        """Class a call on ``left`` constructs, or None to dispatch on a receiver.

        The class's declared spelling always names the class, so ``t := T.Create()``
        works next to ``var t: T``. Any other spelling names a variable in scope
        first and falls back to a case-insensitive class match.
        """
        if left.lower() == SELF_NAME:
            return None
        class_def = self.catalog.get_optional(left)
        if class_def is None or class_def.name == left:
            return class_def
        if self.runtime.lookup_optional(left) is not None:
            return None
        return class_def

    def construct(
        self,
        class_def: ClassDef,
        member: str,
        args: List[Value],
        location: Optional[SourceLocation] = None,
    ) -> Value:
        if not class_def.is_constructor(member):
            raise NotAConstructor(class_def.name, member, location=location)
        ctor = class_def.constructor
        assert ctor is not None
        if not ctor.implemented:
            raise MethodNotImplemented(class_def.name, member, location=location)
        instance = ObjectInstance(class_def)
        self._invoke(instance, ctor, args, location, rule="NEW")
        return Value(TYPE_OBJ, instance)

    def invoke_method(
        self,
        receiver: ObjectInstance,
        member: str,
        args: List[Value],
        location: Optional[SourceLocation] = None,
    ) -> Value:
        class_def = receiver.class_def
        self._enforce_visibility(class_def, member, class_def.visibility_of_method(member), location)
        method = class_def.find_method(member)
        if method is None or not method.implemented:
            raise MethodNotImplemented(class_def.name, member, location=location)
        rule = "DESTROY" if class_def.is_destructor(member) else "CALL"
        return self._invoke(receiver, method, args, location, rule=rule)

    def _invoke(
        self,
        receiver: ObjectInstance,
        method: MethodInfo,
        args: List[Value],
        location: Optional[SourceLocation],
        *,
        rule: str,
    ) -> Value:
        if len(args) != len(method.param_names):
            raise ArgumentCountMismatch(
                len(method.param_names), len(args), callee=method.qualified_name, location=location
            )
        frame = self.runtime.new_frame(method.qualified_name, location)
        for name, arg in zip(method.param_names, args):
            frame.declare(name, arg)
        if method.is_function:
            frame.function_name = method.method_name
            frame.return_value = Value(TYPE_INT, 0)

        self._log_step(
            rule=rule,
            location=location,
            detail={"method": method.qualified_name, "args": [arg.render() for arg in args]},
        )
        self._emit_event("before_call", self, method.qualified_name, args, location)
        assert method.body is not None
        with self.runtime.activate(frame, receiver.class_def, receiver):
            self._execute_block(method.body.statements)
        result = frame.return_value if method.is_function else nil()
        self._emit_event("after_call", self, method.qualified_name, result, location)
        return result

    # ---- events and logging ----

    def _guard_hook(self, label: str, location: Optional[SourceLocation], call: Callable[[], None]) -> None:
        # Observer failures abort the run like any other runtime fault.
        try:
            call()
        except DelphiRuntimeError:
            raise
        except Exception as exc:
            raise DelphiRuntimeError(f"{label} failed: {exc}", location=location, rewrite_rule="EXT") from exc

    def _emit_event(self, event: str, *args: Any) -> None:
        self._guard_hook(
            f"Hook '{event}'",
            self.logger.last_entry.source_location,
            lambda: self.hook_registry.emit(event, *args),
        )

    def _log_step(
        self,
        *,
        rule: str,
        location: Optional[SourceLocation],
        detail: Optional[Dict[str, Any]] = None,
    ) -> None:
        frame = self.runtime.frame
        entry = self.logger.record(
            rule,
            frame=frame,
            location=location,
            detail=detail,
            env_snapshot=frame.snapshot() if self.verbose else None,
        )
        if not self.hook_registry.step_rules:
            return
        ctx = StepContext(step_index=entry.step_index, rule=rule, location=location, depth=self.runtime.depth)
        self._guard_hook("Step rule", location, lambda: self.hook_registry.after_step(self, ctx))


@dataclass
class TracebackFrame:
    name: str
    call_location: Optional[SourceLocation]
    state_entry: Optional[StateEntry]

    @property
    def location(self) -> Optional[SourceLocation]:
        if self.state_entry is not None and self.state_entry.source_location is not None:
            return self.state_entry.source_location
        return self.call_location


class TracebackFormatter:
    """Renders a fatal error against the step log, outermost frame first."""

    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def build_frames(self, error: DelphiRuntimeError) -> List[TracebackFrame]:
        stack = error.call_stack if error.call_stack is not None else self.interpreter.runtime.frames()
        latest = self.interpreter.logger.last_entry_for_frame
        return [TracebackFrame(frame.name, frame.call_location, latest(frame.frame_id)) for frame in stack]

    def format_text(self, error: DelphiRuntimeError, verbose: bool) -> str:
        lines = ["Traceback (most recent call last):"]
        for frame in self.build_frames(error):
            location = frame.location
            if location is None:
                lines.append(f"  <unknown location> in {frame.name}")
            else:
                lines.append(f'  File "{location.file}", line {location.line}, in {frame.name}')
                if location.statement:
                    lines.append(f"    {location.statement}")
            entry = frame.state_entry
            if entry is None:
                continue
            lines.append(f"    State log index: {entry.step_index}  State id: {entry.state_id}")
            if verbose and entry.env_snapshot is not None:
                pairs = ", ".join(f"{name}={value}" for name, value in entry.env_snapshot.items())
                lines.append(f"    Env snapshot: {pairs}")
        lines.append(f"{type(error).__name__}: {error.message} (rewrite: {error.rewrite_rule})")
        return "\n".join(lines)

    def _frame_record(self, index: int, frame: TracebackFrame) -> Dict[str, Any]:
        record: Dict[str, Any] = {"frame_index": index, "name": frame.name}
        location = frame.location
        if location is not None:
            record["source_location"] = {"file": location.file, "line": location.line, "statement": location.statement}
        entry = frame.state_entry
        if entry is not None:
            record.update(state_id=entry.state_id, step_index=entry.step_index, rewrite_record=entry.rewrite_record)
            if entry.env_snapshot is not None:
                record["env_snapshot"] = entry.env_snapshot
        return record

    def to_json(self, error: DelphiRuntimeError) -> str:
        return json.dumps(
            {
                "error": {
                    "type": type(error).__name__,
                    "message": error.message,
                    "rewrite_rule": error.rewrite_rule,
                    "failing_step_index": error.step_index,
                },
                "traceback": [self._frame_record(i, frame) for i, frame in enumerate(self.build_frames(error))],
            },
            indent=2,
        )
