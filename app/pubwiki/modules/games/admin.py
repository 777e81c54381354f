from __future__ import annotations

from flask import Blueprint, abort, g, request
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.pubwiki.db import db_session
from app.pubwiki.modules.games.models import Game
from app.pubwiki.modules.games.service import create_game, delete_game, update_game, validate_game_payload
from app.pubwiki.rbac import require_permission

bp = Blueprint("games", __name__)


def _get_game_or_404(s: Session, game_id: int) -> Game:
    game = s.get(Game, game_id)
    if not game:
        abort(404)
    return game


def _payload() -> dict:
    if request.is_json:
        return dict(request.get_json(silent=True) or {})
    return request.form.to_dict()


def _game_json(game: Game) -> dict:
    return {
        "id": game.id,
        "display_name": game.display_name,
        "abbreviation": game.abbreviation,
        "aliases": game.aliases,
        "screenshot_url": game.screenshot_url,
        "game_resources_page": game.game_resources_page,
        "updated_at": game.updated_at.isoformat(),
    }


@bp.get("/games")
@require_permission("games.view")
def list_games():
    s = db_session()
    games = s.scalars(select(Game).order_by(Game.display_name.asc())).all()
    return {"games": [_game_json(x) for x in games]}


@bp.post("/games")
@require_permission("games.edit")
def create_game_post():
    s = db_session()
    payload = _payload()
    errors = validate_game_payload(payload)
    if errors:
        return {"ok": False, "errors": errors}, 400
    game = create_game(s, payload, getattr(g, "current_user", None))
    s.commit()
    return {"ok": True, "game": _game_json(game)}, 201


@bp.post("/games/<int:game_id>")
@require_permission("games.edit")
def update_game_post(game_id: int):
    s = db_session()
    game = _get_game_or_404(s, game_id)
    payload = _payload()
    errors = validate_game_payload(payload, partial=True)
    if errors:
        return {"ok": False, "errors": errors}, 400
    update_game(s, game, payload, getattr(g, "current_user", None))
    s.commit()
    return {"ok": True, "game": _game_json(game)}


@bp.post("/games/<int:game_id>/delete")
@require_permission("games.edit")
def delete_game_post(game_id: int):
    s = db_session()
    game = _get_game_or_404(s, game_id)
    delete_game(s, game, getattr(g, "current_user", None))
    s.commit()
    return {"ok": True}
