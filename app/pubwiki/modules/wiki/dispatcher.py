from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from markupsafe import escape

from app.pubwiki.models import User
from app.pubwiki.modules.wiki.markup import ModuleCall, Node, ParseErrorNode, Text
from app.pubwiki.modules.wiki.registry import (
    DENY_SILENT,
    BoundCall,
    ModuleDescriptor,
    ModuleRegistry,
    ParameterError,
)
from app.pubwiki.rbac import user_permission_keys

logger = logging.getLogger(__name__)

# Fragment kinds
TEXT = "text"
MODULE = "module"
NOT_FOUND = "not_found"
DENIED = "denied"
PARAMETER_ERROR = "parameter_error"
MODULE_ERROR = "module_error"
PARSE_ERROR = "parse_error"

ERROR_KINDS = frozenset({NOT_FOUND, PARAMETER_ERROR, MODULE_ERROR, PARSE_ERROR})


class ModuleRenderError(Exception):
    """Raised by a module to report bad input or missing data; shown inline on the page."""


@dataclass(frozen=True)
class Caller:
    user_id: int | None = None
    name: str = "anonymous"
    permissions: frozenset[str] = frozenset()

    @classmethod
    def from_user(cls, user: User | None) -> "Caller":
        if not user or not user.is_active:
            return cls()
        return cls(user_id=user.id, name=user.name, permissions=user_permission_keys(user))

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    def can(self, permission_key: str) -> bool:
        return permission_key in self.permissions


@dataclass(frozen=True)
class RenderContext:
    """Read-only request data handed to every module invocation."""

    page_name: str
    caller: Caller = field(default_factory=Caller)
    query: Mapping[str, str] = field(default_factory=dict)
    services: Any = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "query", MappingProxyType(dict(self.query)))


@dataclass(frozen=True)
class Fragment:
    kind: str
    html: str
    module: str | None = None

    @property
    def is_error(self) -> bool:
        return self.kind in ERROR_KINDS


@dataclass(frozen=True)
class RenderedPage:
    fragments: tuple[Fragment, ...]

    @property
    def html(self) -> str:
        return "".join(f.html for f in self.fragments)

    @property
    def error_count(self) -> int:
        return sum(1 for f in self.fragments if f.is_error)

    def __str__(self) -> str:
        return self.html


def _marker(kind: str, css_class: str, message: str, module: str | None = None) -> Fragment:
    attrs = f' data-module="{escape(module)}"' if module else ""
    return Fragment(kind, f'<span class="{css_class}"{attrs}>{escape(message)}</span>', module)


def error_fragment(kind: str, message: str, module: str | None = None) -> Fragment:
    return _marker(kind, "wiki-error", message, module)


class Dispatcher:
    """
    Renders a parsed page: text passes through, module calls are resolved against the
    registry and run concurrently. Every failure is confined to its own fragment; the
    page always completes and is returned only once all modules have finished or
    timed out.
    """

    def __init__(self, registry: ModuleRegistry, *, timeout: float | None = 5.0, max_workers: int = 8):
        self.registry = registry
        self.timeout = timeout
        self.max_workers = max(1, int(max_workers))

    def render(self, nodes: Iterable[Node], context: RenderContext) -> RenderedPage:
        slots: list[Fragment | None] = []
        jobs: list[tuple[int, ModuleDescriptor, BoundCall]] = []

        for node in nodes:
            if isinstance(node, Text):
                slots.append(Fragment(TEXT, node.text))
            elif isinstance(node, ParseErrorNode):
                slots.append(error_fragment(PARSE_ERROR, f"Markup error: {node.message}: {node.raw_span}"))
            elif isinstance(node, ModuleCall):
                frag, job = self._prepare(node, context)
                slots.append(frag)
                if job is not None:
                    jobs.append((len(slots) - 1, *job))
            else:
                raise TypeError(f"Unexpected node type: {type(node).__name__}")

        if jobs:
            for idx, frag in self._run(jobs, context):
                slots[idx] = frag

        return RenderedPage(tuple(f for f in slots if f is not None))

    def _prepare(
        self, node: ModuleCall, context: RenderContext
    ) -> tuple[Fragment | None, tuple[ModuleDescriptor, BoundCall] | None]:
        d = self.registry.get(node.name)
        if d is None:
            logger.info("Unknown wiki module %r on page %s", node.name, context.page_name)
            return error_fragment(NOT_FOUND, f"Module not found: {node.name}", node.name), None

        if d.required_permission and not context.caller.can(d.required_permission):
            logger.debug(
                "Wiki module %s denied for user_id=%s (needs %s)",
                d.name,
                context.caller.user_id,
                d.required_permission,
            )
            if d.on_denied == DENY_SILENT:
                return Fragment(DENIED, "", d.name), None
            return _marker(DENIED, "wiki-denied", f"{d.name}: permission required", d.name), None

        try:
            bound = d.bind(node)
        except ParameterError as e:
            return error_fragment(PARAMETER_ERROR, f"Parameter error: {e}", d.name), None
        return None, (d, bound)

    def _run(
        self, jobs: list[tuple[int, ModuleDescriptor, BoundCall]], context: RenderContext
    ) -> list[tuple[int, Fragment]]:
        size = min(self.max_workers, len(jobs))
        pool = ThreadPoolExecutor(max_workers=size, thread_name_prefix="wiki-module")
        changed = threading.Condition()
        # Each module's clock starts when a worker picks it up, not when it is queued.
        started: dict[int, float] = {}

        def run_one(idx: int, d: ModuleDescriptor, bound: BoundCall) -> Fragment:
            with changed:
                started[idx] = time.monotonic()
                changed.notify_all()
            return self._invoke(d, bound, context)

        def wake(_fut: Future) -> None:
            with changed:
                changed.notify_all()

        def timed_out(d: ModuleDescriptor) -> Fragment:
            logger.warning("Wiki module %s timed out after %ss on page %s", d.name, self.timeout, context.page_name)
            return error_fragment(MODULE_ERROR, f"{d.name}: timed out", d.name)

        try:
            pending: dict[int, tuple[ModuleDescriptor, Future]] = {}
            for idx, d, bound in jobs:
                fut = pool.submit(run_one, idx, d, bound)
                fut.add_done_callback(wake)
                pending[idx] = (d, fut)

            results: list[tuple[int, Fragment]] = []
            overrunning: list[Future] = []
            with changed:
                while pending:
                    now = time.monotonic()
                    for idx, (d, fut) in list(pending.items()):
                        if fut.done():
                            results.append((idx, fut.result()))
                            del pending[idx]
                        elif self.timeout is not None and idx in started and now - started[idx] >= self.timeout:
                            results.append((idx, timed_out(d)))
                            overrunning.append(fut)
                            del pending[idx]
                    if not pending:
                        break

                    # Every worker is stuck in a module that already overran; nothing queued can start.
                    if sum(1 for f in overrunning if not f.done()) >= size:
                        for idx, (d, fut) in pending.items():
                            fut.cancel()
                            results.append((idx, timed_out(d)))
                        break

                    wait = None
                    if self.timeout is not None:
                        ends = [started[i] + self.timeout for i in pending if i in started]
                        if ends:
                            wait = max(0.0, min(ends) - now)
                    changed.wait(wait)
            return results
        finally:
            # Do not block the request on workers that overran their window.
            pool.shutdown(wait=False, cancel_futures=True)

    @staticmethod
    def _invoke(d: ModuleDescriptor, bound: BoundCall, context: RenderContext) -> Fragment:
        try:
            out = d.render(bound, context)
        except ModuleRenderError as e:
            logger.warning("Wiki module %s reported an error on page %s: %s", d.name, context.page_name, e)
            return error_fragment(MODULE_ERROR, f"{d.name}: {e}", d.name)
        except Exception:
            logger.exception("Wiki module %s crashed on page %s", d.name, context.page_name)
            return error_fragment(MODULE_ERROR, f"{d.name}: failed to render", d.name)
        if isinstance(out, Fragment):
            return out
        return Fragment(MODULE, "" if out is None else str(out), d.name)
