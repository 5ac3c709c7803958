"""Observer hooks for the minidelphi interpreter.

Callers subscribe to lifecycle events or ask for a callback every N logged
steps; the interpreter holds one ``HookRegistry`` per run through
``RuntimeServices``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional


EVENTS = (
    "program_start",
    "before_statement",
    "after_statement",
    "before_call",
    "after_call",
    "on_error",
    "program_end",
)


class HookError(Exception):
    """Raised for an invalid subscription."""


@dataclass(frozen=True)
class StepContext:
    step_index: int
    rule: str
    location: Any  # SourceLocation | None
    depth: int


EventHandler = Callable[..., None]
StepHandler = Callable[[Any, StepContext], None]


@dataclass
class Subscription:
    handler: EventHandler
    priority: int = 0
    owner: str = ""


@dataclass
class StepRule:
    name: str
    every_n: int
    handler: StepHandler

    def due(self, step_index: int) -> bool:
        return step_index % self.every_n == 0


@dataclass
class HookRegistry:
    subscriptions: Dict[str, List[Subscription]] = field(default_factory=dict)
    step_rules: List[StepRule] = field(default_factory=list)

    def on_event(self, event: str, handler: EventHandler, *, priority: int = 0, owner: str = "") -> Subscription:
        if event not in EVENTS:
            raise HookError(f"Unknown event '{event}'; expected one of {', '.join(EVENTS)}")
        subscription = Subscription(handler=handler, priority=priority, owner=owner)
        handlers = self.subscriptions.setdefault(event, [])
        handlers.append(subscription)
        # Stable: equal priorities keep registration order.
        handlers.sort(key=lambda sub: -sub.priority)
        return subscription

    def emit(self, event: str, *args: Any) -> None:
        for subscription in self.subscriptions.get(event, ()):
            subscription.handler(*args)

    def add_step_rule(self, name: str, every_n: int, handler: StepHandler) -> StepRule:
        if every_n < 1:
            raise HookError(f"Step rule '{name}' needs an interval of at least 1, got {every_n}")
        rule = StepRule(name=name, every_n=every_n, handler=handler)
        self.step_rules.append(rule)
        return rule

    def after_step(self, interpreter: Any, ctx: StepContext) -> None:
        for rule in self.step_rules:
            if rule.due(ctx.step_index):
                rule.handler(interpreter, ctx)


@dataclass
class RuntimeServices:
    hook_registry: HookRegistry = field(default_factory=HookRegistry)

    def on_event(self, event: str, handler: Optional[EventHandler] = None, *, priority: int = 0, owner: str = ""):
        """Subscribe ``handler`` to ``event``; without a handler, return a decorator."""

        def register(fn: EventHandler) -> EventHandler:
            self.hook_registry.on_event(event, fn, priority=priority, owner=owner)
            return fn

        return register if handler is None else register(handler)

    def every_n_steps(self, every_n: int, handler: Optional[StepHandler] = None, *, name: str = ""):
        def register(fn: StepHandler) -> StepHandler:
            self.hook_registry.add_step_rule(name or fn.__name__, every_n, fn)
            return fn

        return register if handler is None else register(handler)


def build_default_services() -> RuntimeServices:
    return RuntimeServices()
