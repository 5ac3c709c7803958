"""Runtime object model for minidelphi.

Holds everything the evaluator mutates while a program runs:

- Value: tagged INT / OBJ / NIL datum
- ClassDef, MethodInfo, ClassCatalog: per-class metadata built from the type section
- ObjectInstance: a class plus its field slots
- Frame, Activation, RuntimeEnvironment: the activation-record stack
- DelphiRuntimeError and its subclasses: one error kind per runtime fault
"""

from __future__ import annotations

from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

import numpy as np

from lexer import DelphiError
from parser import Block, SourceLocation


TYPE_INT = "INT"
TYPE_OBJ = "OBJ"
TYPE_NIL = "NIL"

VIS_PUBLIC = "public"
VIS_PROTECTED = "protected"
VIS_PRIVATE = "private"

KIND_CONSTRUCTOR = "constructor"
KIND_DESTRUCTOR = "destructor"
KIND_PROCEDURE = "procedure"
KIND_FUNCTION = "function"

INT_MIN = int(np.iinfo(np.int32).min)
INT_MAX = int(np.iinfo(np.int32).max)

SELF_NAME = "self"


def wrap_int32(value: int) -> int:
    """Reduce a Python int to the signed 32-bit two's-complement range.

    Operands are always int32, so every intermediate result of + - * /
    fits in int64 and the cast only has to drop the high bits.
    """
    return int(np.array(value, dtype=np.int64).astype(np.int32))


def trunc_div(a: int, b: int) -> int:
    quotient = abs(a) // abs(b)
    return quotient if (a < 0) == (b < 0) else -quotient


def _key(name: str) -> str:
    return name.lower()


# ---- Errors ----


class DelphiRuntimeError(DelphiError):
    """Raised for runtime faults."""

    rule = "runtime"

    def __init__(
        self,
        message: str,
        *,
        location: Optional[SourceLocation] = None,
        rewrite_rule: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.location = location
        self.rewrite_rule = rewrite_rule or self.rule
        self.step_index: Optional[int] = None
        # Frames live at the point of failure, captured before unwinding.
        self.call_stack: Optional[List["Frame"]] = None


class UndefinedVariable(DelphiRuntimeError):
    rule = "IDENT"

    def __init__(self, name: str, **kwargs: Any) -> None:
        super().__init__(f"Undefined variable '{name}'", **kwargs)
        self.name = name


class UndeclaredAssignmentTarget(DelphiRuntimeError):
    rule = "ASSIGN"

    def __init__(self, name: str, **kwargs: Any) -> None:
        super().__init__(f"Assignment to undeclared variable '{name}'", **kwargs)
        self.name = name


class UnknownClass(DelphiRuntimeError):
    rule = "CLASS"

    def __init__(self, name: str, **kwargs: Any) -> None:
        super().__init__(f"Unknown class '{name}'", **kwargs)
        self.name = name


class DuplicateClass(DelphiRuntimeError):
    rule = "CLASS"

    def __init__(self, name: str, **kwargs: Any) -> None:
        super().__init__(f"Class '{name}' is already defined", **kwargs)
        self.name = name


class NotAConstructor(DelphiRuntimeError):
    rule = "NEW"

    def __init__(self, class_name: str, member: str, **kwargs: Any) -> None:
        super().__init__(f"'{class_name}.{member}' is not a constructor", **kwargs)
        self.class_name = class_name
        self.member = member


class MethodNotImplemented(DelphiRuntimeError):
    rule = "CALL"

    def __init__(self, class_name: str, member: str, **kwargs: Any) -> None:
        super().__init__(f"Method not implemented: {class_name}.{member}", **kwargs)
        self.class_name = class_name
        self.member = member


class UnknownProcedure(DelphiRuntimeError):
    rule = "CALL"

    def __init__(self, name: str, **kwargs: Any) -> None:
        super().__init__(f"Unknown procedure '{name}'", **kwargs)
        self.name = name


class AccessDenied(DelphiRuntimeError):
    rule = "ACCESS"

    def __init__(self, visibility: str, class_name: str, member: str, **kwargs: Any) -> None:
        super().__init__(f"{visibility.capitalize()} member access denied: {class_name}.{member}", **kwargs)
        self.visibility = visibility
        self.class_name = class_name
        self.member = member


class ArgumentCountMismatch(DelphiRuntimeError):
    rule = "CALL"

    def __init__(self, expected: int, got: int, *, callee: str = "", **kwargs: Any) -> None:
        target = f"{callee} " if callee else ""
        super().__init__(f"{target}expects {expected} arguments but received {got}", **kwargs)
        self.expected = expected
        self.got = got
        self.callee = callee


class TypeMismatch(DelphiRuntimeError):
    rule = "ARITH"

    def __init__(self, expected: str, got: str, **kwargs: Any) -> None:
        super().__init__(f"Type mismatch: expected {expected} but got {got}", **kwargs)
        self.expected = expected
        self.got = got


class DivisionByZero(DelphiRuntimeError):
    rule = "DIV"

    def __init__(self, **kwargs: Any) -> None:
        super().__init__("Division by zero", **kwargs)


class NoSelfInContext(DelphiRuntimeError):
    rule = "SELF"

    def __init__(self, **kwargs: Any) -> None:
        super().__init__("'self' used outside of a method body", **kwargs)


class NotAnObject(DelphiRuntimeError):
    rule = "DEREF"

    def __init__(self, name: str, got: str, **kwargs: Any) -> None:
        super().__init__(f"Not an object: '{name}' holds {got}", **kwargs)
        self.name = name
        self.got = got


class UnknownField(DelphiRuntimeError):
    rule = "FIELD"

    def __init__(self, class_name: str, field_name: str, **kwargs: Any) -> None:
        super().__init__(f"No such field: {class_name}.{field_name}", **kwargs)
        self.class_name = class_name
        self.field_name = field_name


class MalformedLvalue(DelphiRuntimeError):
    rule = "DEREF"

    def __init__(self, text: str, **kwargs: Any) -> None:
        super().__init__(f"Only one level of member access is supported: '{text}'", **kwargs)
        self.text = text


class InvalidInput(DelphiRuntimeError):
    rule = "readln"

    def __init__(self, text: Optional[str], **kwargs: Any) -> None:
        shown = "end of input" if text is None else f"'{text}'"
        super().__init__(f"readln expected an integer but got {shown}", **kwargs)
        self.text = text


class InvalidArgument(DelphiRuntimeError):
    rule = "CALL"

    def __init__(self, procedure: str, detail: str, **kwargs: Any) -> None:
        super().__init__(f"{procedure}: {detail}", **kwargs)
        self.procedure = procedure


# ---- Values and objects ----


@dataclass
class Value:
    type: str
    value: Any

    def render(self) -> str:
        if self.type == TYPE_INT:
            return str(self.value)
        if self.type == TYPE_OBJ:
            return f"<object {self.value.class_def.name}>"
        return "nil"


def nil() -> Value:
    return Value(TYPE_NIL, None)


@dataclass
class MethodInfo:
    class_name: str
    method_name: str
    is_function: bool
    param_names: List[str]
    body: Optional[Block] = None
    kind: str = KIND_PROCEDURE

    @property
    def qualified_name(self) -> str:
        return f"{self.class_name}.{self.method_name}"

    @property
    def implemented(self) -> bool:
        return self.body is not None


@dataclass(eq=False)
class ClassDef:
    """Metadata for one class; member tables are keyed by lower-cased name."""

    name: str
    fields: Dict[str, str] = field(default_factory=OrderedDict)
    field_names: Dict[str, str] = field(default_factory=OrderedDict)
    method_visibility: Dict[str, str] = field(default_factory=dict)
    methods: Dict[str, MethodInfo] = field(default_factory=dict)
    constructor: Optional[MethodInfo] = None
    destructor: Optional[MethodInfo] = None

    def add_field(self, name: str, visibility: str) -> None:
        key = _key(name)
        self.fields[key] = visibility
        self.field_names.setdefault(key, name)

    def declare_method(
        self,
        name: str,
        kind: str,
        param_names: List[str],
        visibility: str,
    ) -> MethodInfo:
        key = _key(name)
        existing = self.methods.get(key)
        if existing is not None:
            return existing
        self.method_visibility[key] = visibility
        placeholder = MethodInfo(
            class_name=self.name,
            method_name=name,
            is_function=kind == KIND_FUNCTION,
            param_names=list(param_names),
            body=None,
            kind=kind,
        )
        self.methods[key] = placeholder
        self._bind_special(placeholder)
        return placeholder

    def attach_method(self, info: MethodInfo) -> MethodInfo:
        key = _key(info.method_name)
        replaced = self.methods.get(key)
        self.methods[key] = info
        # The bound constructor/destructor follows its entry in the method table.
        if replaced is not None and replaced is self.constructor:
            self.constructor = info
        if replaced is not None and replaced is self.destructor:
            self.destructor = info
        self._bind_special(info)
        return info

    def _bind_special(self, info: MethodInfo) -> None:
        if info.kind == KIND_CONSTRUCTOR:
            self.constructor = info
        elif info.kind == KIND_DESTRUCTOR:
            self.destructor = info

    def find_method(self, name: str) -> Optional[MethodInfo]:
        return self.methods.get(_key(name))

    def has_field(self, name: str) -> bool:
        return _key(name) in self.fields

    def field_visibility(self, name: str) -> str:
        return self.fields.get(_key(name), VIS_PUBLIC)

    def visibility_of_method(self, name: str) -> str:
        return self.method_visibility.get(_key(name), VIS_PUBLIC)

    def is_constructor(self, name: str) -> bool:
        ctor = self.constructor
        return ctor is not None and _key(ctor.method_name) == _key(name)

    def is_destructor(self, name: str) -> bool:
        dtor = self.destructor
        return dtor is not None and _key(dtor.method_name) == _key(name)


class ClassCatalog:
    def __init__(self) -> None:
        self._classes: Dict[str, ClassDef] = OrderedDict()

    def define(self, class_def: ClassDef, *, location: Optional[SourceLocation] = None) -> ClassDef:
        key = _key(class_def.name)
        if key in self._classes:
            raise DuplicateClass(class_def.name, location=location)
        self._classes[key] = class_def
        return class_def

    def get(self, name: str) -> ClassDef:
        class_def = self._classes.get(_key(name))
        if class_def is None:
            raise UnknownClass(name)
        return class_def

    def get_optional(self, name: str) -> Optional[ClassDef]:
        return self._classes.get(_key(name))

    def has(self, name: str) -> bool:
        return _key(name) in self._classes

    def names(self) -> List[str]:
        return [cd.name for cd in self._classes.values()]

    def attach_method(
        self,
        class_name: str,
        method_name: str,
        is_function: bool,
        param_names: List[str],
        body: Block,
        *,
        kind: Optional[str] = None,
        location: Optional[SourceLocation] = None,
    ) -> MethodInfo:
        class_def = self._classes.get(_key(class_name))
        if class_def is None:
            raise UnknownClass(class_name, location=location)
        info = MethodInfo(
            class_name=class_def.name,
            method_name=method_name,
            is_function=is_function,
            param_names=list(param_names),
            body=body,
            kind=kind or (KIND_FUNCTION if is_function else KIND_PROCEDURE),
        )
        return class_def.attach_method(info)


@dataclass(eq=False)
class ObjectInstance:
    class_def: ClassDef
    fields: Dict[str, Value] = field(init=False)

    def __post_init__(self) -> None:
        self.fields = {key: Value(TYPE_INT, 0) for key in self.class_def.fields}

    def has_field(self, name: str) -> bool:
        return _key(name) in self.fields

    def get_field(self, name: str) -> Value:
        try:
            return self.fields[_key(name)]
        except KeyError:
            raise UnknownField(self.class_def.name, name)

    def set_field(self, name: str, value: Value) -> None:
        key = _key(name)
        if key not in self.fields:
            raise UnknownField(self.class_def.name, name)
        self.fields[key] = value

    def __repr__(self) -> str:
        return f"<object {self.class_def.name}>"


# ---- Activation records ----


@dataclass
class Frame:
    name: str
    frame_id: str
    call_location: Optional[SourceLocation] = None
    vars: Dict[str, Value] = field(default_factory=dict)
    spellings: Dict[str, str] = field(default_factory=dict)
    function_name: Optional[str] = None
    return_value: Value = field(default_factory=lambda: Value(TYPE_INT, 0))
    has_returned: bool = False

    def declare(self, name: str, value: Value) -> None:
        key = _key(name)
        self.vars[key] = value
        self.spellings.setdefault(key, name)

    def has(self, name: str) -> bool:
        return _key(name) in self.vars

    def get(self, name: str) -> Value:
        return self.vars[_key(name)]

    def set(self, name: str, value: Value) -> None:
        self.vars[_key(name)] = value

    def is_function_result(self, name: str) -> bool:
        return self.function_name is not None and _key(self.function_name) == _key(name)

    def record_return(self, value: Value) -> None:
        self.return_value = value
        self.has_returned = True

    def snapshot(self) -> Dict[str, str]:
        return {self.spellings.get(k, k): v.render() for k, v in self.vars.items()}


@dataclass
class Activation:
    """Locals, class-context and self-object pushed and popped as one unit."""

    frame: Frame
    class_def: Optional[ClassDef] = None
    self_object: Optional[ObjectInstance] = None


class RuntimeEnvironment:
    def __init__(self) -> None:
        self.frame_counter = 0
        self._activations: List[Activation] = [Activation(frame=self.new_frame("<program>"))]

    def new_frame(self, name: str, call_location: Optional[SourceLocation] = None) -> Frame:
        frame_id = f"f_{self.frame_counter:04d}"
        self.frame_counter += 1
        return Frame(name=name, frame_id=frame_id, call_location=call_location)

    @property
    def global_frame(self) -> Frame:
        return self._activations[0].frame

    @property
    def frame(self) -> Frame:
        return self._activations[-1].frame

    @property
    def class_context(self) -> Optional[ClassDef]:
        return self._activations[-1].class_def

    @property
    def self_object(self) -> Optional[ObjectInstance]:
        return self._activations[-1].self_object

    @property
    def depth(self) -> int:
        """Number of active calls; 0 at global scope."""
        return len(self._activations) - 1

    def frames(self) -> List[Frame]:
        return [activation.frame for activation in self._activations]

    @contextmanager
    def activate(
        self,
        frame: Frame,
        class_def: Optional[ClassDef],
        self_object: Optional[ObjectInstance],
    ) -> Iterator[Activation]:
        activation = Activation(frame=frame, class_def=class_def, self_object=self_object)
        self._activations.append(activation)
        try:
            yield activation
        except Exception as error:
            if getattr(error, "call_stack", None) is None:
                error.call_stack = self.frames()
            raise
        finally:
            self._activations.pop()

    def in_class_context(self, class_def: ClassDef) -> bool:
        return self.class_context is class_def

    def require_self(self) -> ObjectInstance:
        obj = self.self_object
        if obj is None:
            raise NoSelfInContext()
        return obj

    def declare(self, name: str, value: Value) -> None:
        self.frame.declare(name, value)

    def _slot_owner(self, name: str) -> Optional[Any]:
        # Innermost frame, then the receiver's fields, then outer frames.
        innermost = self._activations[-1]
        if innermost.frame.has(name):
            return innermost.frame
        if innermost.self_object is not None and innermost.self_object.has_field(name):
            return innermost.self_object
        for activation in reversed(self._activations[:-1]):
            if activation.frame.has(name):
                return activation.frame
        return None

    def lookup_optional(self, name: str) -> Optional[Value]:
        owner = self._slot_owner(name)
        if owner is None:
            return None
        if isinstance(owner, ObjectInstance):
            return owner.get_field(name)
        return owner.get(name)

    def lookup(self, name: str) -> Value:
        found = self.lookup_optional(name)
        if found is None:
            raise UndefinedVariable(name)
        return found

    def assign(self, name: str, value: Value) -> None:
        owner = self._slot_owner(name)
        if owner is None:
            raise UndeclaredAssignmentTarget(name)
        if isinstance(owner, ObjectInstance):
            owner.set_field(name, value)
        else:
            owner.set(name, value)
