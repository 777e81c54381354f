from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from app.pubwiki.modules.wiki.markup import MODULE_NAME_RE, ModuleCall

if TYPE_CHECKING:
    from app.pubwiki.modules.wiki.dispatcher import Fragment, RenderContext


DENY_MESSAGE = "message"
DENY_SILENT = "silent"


class DuplicateModuleError(RuntimeError):
    """Two descriptors share a name (case-insensitive). Raised at startup."""


class ParameterError(ValueError):
    """Arguments of a module invocation do not fit the module's declared parameters."""


def as_int(raw: str) -> int:
    return int(raw.strip())


def as_bool(raw: str) -> bool:
    v = raw.strip().lower()
    if v in ("", "1", "true", "yes", "y", "on"):
        return True
    if v in ("0", "false", "no", "n", "off"):
        return False
    raise ValueError(f"not a boolean: {raw!r}")


def as_int_list(raw: str) -> list[int]:
    return [int(part) for part in (p.strip() for p in raw.split(",")) if part]


@dataclass(frozen=True)
class ParamSpec:
    name: str
    required: bool = False
    default: Any = None
    convert: Callable[[str], Any] = str


@dataclass(frozen=True)
class BoundCall:
    name: str
    params: Mapping[str, Any]
    call: ModuleCall

    def __getitem__(self, key: str) -> Any:
        return self.params[key]

    def get(self, key: str, default: Any = None) -> Any:
        return self.params.get(key, default)


RenderFn = Callable[["BoundCall", "RenderContext"], "str | Fragment"]


@dataclass(frozen=True)
class ModuleDescriptor:
    name: str
    render: RenderFn
    params: tuple[ParamSpec, ...] = ()
    required_permission: str | None = None
    on_denied: str = DENY_MESSAGE
    description: str = ""
    # Accept any number of extra positional values (exposed as params["args"]).
    varargs: bool = False

    def __post_init__(self) -> None:
        if not MODULE_NAME_RE.match(self.name or ""):
            raise ValueError(f"Invalid module name: {self.name!r}")
        if self.on_denied not in (DENY_MESSAGE, DENY_SILENT):
            raise ValueError(f"Invalid on_denied policy for {self.name}: {self.on_denied!r}")
        names = [p.name for p in self.params]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate parameter names in {self.name}: {names}")

    def bind(self, call: ModuleCall) -> BoundCall:
        """
        Map an invocation's arguments onto the declared parameters.

        Positional values fill parameters in declaration order; named values match by
        name. Raises ParameterError on too many positional values, unknown names,
        a parameter given twice, a missing required parameter or a failed conversion.
        """
        specs = {p.name: p for p in self.params}
        raw: dict[str, str] = {}
        extra: list[str] = []

        for spec, value in zip(self.params, call.positional):
            raw[spec.name] = value
        if len(call.positional) > len(self.params):
            if not self.varargs:
                raise ParameterError(
                    f"{self.name} takes at most {len(self.params)} positional value(s), "
                    f"got {len(call.positional)}"
                )
            extra = list(call.positional[len(self.params):])

        for key, value in call.named.items():
            if key not in specs:
                raise ParameterError(f"{self.name} has no parameter {key!r}")
            if key in raw:
                raise ParameterError(f"{self.name} got parameter {key!r} twice")
            raw[key] = value

        params: dict[str, Any] = {}
        for spec in self.params:
            if spec.name not in raw:
                if spec.required:
                    raise ParameterError(f"{self.name} requires parameter {spec.name!r}")
                params[spec.name] = spec.default
                continue
            try:
                params[spec.name] = spec.convert(raw[spec.name])
            except (TypeError, ValueError) as e:
                raise ParameterError(f"{self.name}: invalid value for {spec.name!r}: {e}") from e
        if self.varargs:
            params["args"] = tuple(extra)
        return BoundCall(name=self.name, params=MappingProxyType(params), call=call)


class ModuleRegistry:
    """
    Immutable, case-insensitive name -> ModuleDescriptor table.
    Built once at startup; a duplicate name aborts construction.
    """

    def __init__(self, descriptors: Iterable[ModuleDescriptor]):
        table: dict[str, ModuleDescriptor] = {}
        for d in descriptors:
            key = d.name.casefold()
            if key in table:
                raise DuplicateModuleError(
                    f"Wiki module {d.name!r} registered twice (already registered as {table[key].name!r})"
                )
            table[key] = d
        self._table: Mapping[str, ModuleDescriptor] = MappingProxyType(table)

    def get(self, name: str) -> ModuleDescriptor | None:
        return self._table.get((name or "").casefold())

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.casefold() in self._table

    def __len__(self) -> int:
        return len(self._table)

    def __iter__(self):
        return iter(self._table.values())

    def names(self) -> list[str]:
        return sorted((d.name for d in self._table.values()), key=str.casefold)
