"""
Content modules shipped with the site.

Each module is a plain function ``render(call, context) -> str`` registered through a
ModuleDescriptor in BUILTIN_MODULES. Modules only read through context.services.
"""
from __future__ import annotations

from collections.abc import Iterable

from markupsafe import escape

from app.pubwiki.modules.wiki.dispatcher import ModuleRenderError, RenderContext
from app.pubwiki.modules.wiki.providers import WikiServices
from app.pubwiki.modules.wiki.registry import (
    DENY_SILENT,
    BoundCall,
    ModuleDescriptor,
    ModuleRegistry,
    ParamSpec,
    as_bool,
    as_int,
    as_int_list,
)

GAME_RESOURCES_ROOT = "GameResources"


def _services(context: RenderContext) -> WikiServices:
    if context.services is None:
        raise ModuleRenderError("data services are not available")
    return context.services


def _page_link(page_name: str) -> str:
    return f'<a href="/wiki/page/{escape(page_name)}">{escape(page_name)}</a>'


def _list(items: Iterable[str], css_class: str) -> str:
    body = "".join(f"<li>{item}</li>" for item in items)
    return f'<ul class="{css_class}">{body}</ul>' if body else ""


def display_game_name(call: BoundCall, context: RenderContext) -> str:
    gids = call["gid"] or []
    if not gids:
        raise ModuleRenderError("No game ID specified")
    games = _services(context).games.by_ids(gids)
    return str(escape(", ".join(g.display_name for g in games)))


def game_name(call: BoundCall, context: RenderContext) -> str:
    parts = context.page_name.split("/")
    if len(parts) == 2 and parts[0] == GAME_RESOURCES_ROOT:
        # GameResources/<System> is a system page, not a game page
        system = _services(context).games.system_name(parts[1])
        return f'<span class="wiki-game-system">{escape(system or "various")}</span>'

    # GameResources/<System>/<Game>/... belongs to the game registered for the first three segments
    games = _services(context).games.for_resource_page("/".join(parts[:3]))
    return _list(
        (f'<a href="/games/{g.id}">{escape(g.display_name)}</a>' for g in games),
        "wiki-game-name",
    )


def list_sub_pages(call: BoundCall, context: RenderContext) -> str:
    pages = _services(context).pages.subpages(context.page_name)
    if not pages and call["show_empty"]:
        return '<p class="wiki-subpages-empty">No subpages.</p>'
    return _list((_page_link(p) for p in pages), "wiki-subpages")


def orphan_game_resources(call: BoundCall, context: RenderContext) -> str:
    services = _services(context)
    pages = [
        p
        for p in services.pages.page_names(GAME_RESOURCES_ROOT + "/")
        if len(p.split("/")) == 3
    ]
    referenced = services.games.resource_pages()
    return _list((_page_link(p) for p in pages if p not in referenced), "wiki-orphans")


def page_history(call: BoundCall, context: RenderContext) -> str:
    revisions = _services(context).pages.recent_revisions(context.page_name, call["limit"])
    items = []
    for r in revisions:
        line = f"r{r.revision_number} by {escape(r.author_name)} on {r.created_at:%Y-%m-%d %H:%M}"
        if r.revision_message:
            line += f": {escape(r.revision_message)}"
        if r.minor_edit:
            line += " (minor)"
        items.append(line)
    return _list(items, "wiki-page-history")


def echo(call: BoundCall, context: RenderContext) -> str:
    return str(escape(" ".join(call["args"])))


def _positive_int(raw: str) -> int:
    value = as_int(raw)
    if value < 1:
        raise ValueError("must be at least 1")
    return value


BUILTIN_MODULES: tuple[ModuleDescriptor, ...] = (
    ModuleDescriptor(
        name="DisplayGameName",
        render=display_game_name,
        params=(ParamSpec("gid", default=None, convert=as_int_list),),
        description="Display names of the given game ids, comma separated.",
    ),
    ModuleDescriptor(
        name="GameName",
        render=game_name,
        description="Games whose resource page contains the current page, or the system name on a system page.",
    ),
    ModuleDescriptor(
        name="ListSubPages",
        render=list_sub_pages,
        params=(ParamSpec("show_empty", default=False, convert=as_bool),),
        description="Links to every subpage of the current page.",
    ),
    ModuleDescriptor(
        name="OrphanGameResources",
        render=orphan_game_resources,
        description="GameResources pages that no game points at.",
    ),
    ModuleDescriptor(
        name="PageHistory",
        render=page_history,
        params=(ParamSpec("limit", default=10, convert=_positive_int),),
        required_permission="wiki.history",
        on_denied=DENY_SILENT,
        description="Most recent revisions of the current page.",
    ),
    ModuleDescriptor(
        name="Echo",
        render=echo,
        varargs=True,
        description="Echoes its positional arguments (diagnostics).",
    ),
)


def build_registry(extra: Iterable[ModuleDescriptor] = ()) -> ModuleRegistry:
    return ModuleRegistry([*BUILTIN_MODULES, *extra])
