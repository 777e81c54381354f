"""
Field-level audit history for auditable entities.

Auditable types are listed in AUDITABLE_ENTITIES. Hooks installed on the application
sessionmaker (``install_history_hook``) diff the scalar columns of every new, dirty
and deleted auditable object and append one HistoryRecord per change on the flush's
own connection. Update diffs are taken in ``before_flush``: by ``after_flush`` the
ORM has already folded the version column into committed state. The records therefore
commit or roll back together with the change they describe; a failed history write
raises HistoryWriteFailure and aborts the flush.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping, Sequence
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from flask import g, has_app_context
from sqlalchemy import event, inspect as sa_inspect, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.pubwiki.models import HistoryRecord, User

logger = logging.getLogger(__name__)

CREATE = "Create"
UPDATE = "Update"
DELETE = "Delete"
CHANGE_KINDS = (CREATE, UPDATE, DELETE)

# Entity type name -> fields that are never copied into history.
AUDITABLE_ENTITIES: dict[str, frozenset[str]] = {
    "WikiPage": frozenset(),
    "Game": frozenset(),
    "Role": frozenset(),
    "User": frozenset({"password_hash"}),
}

FieldChange = tuple[str, Any, Any]

_ACTOR_KEY = "history_actor"
_UPDATES_KEY = "history_pending_updates"


class HistoryWriteFailure(RuntimeError):
    pass


def is_auditable(entity_type: str) -> bool:
    return entity_type in AUDITABLE_ENTITIES


def set_actor(s: Session, actor: User | None) -> None:
    """Bind the user responsible for the changes flushed by this session."""
    s.info[_ACTOR_KEY] = actor


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, bytes):
        return value.hex()
    return str(value)


def compute_diff(
    before: Mapping[str, Any] | None,
    after: Mapping[str, Any] | None,
    *,
    fields: Sequence[str] | None = None,
) -> list[FieldChange]:
    """
    Ordered (field, old, new) triples between two scalar snapshots.

    - Create: ``before`` is None, every field is reported.
    - Delete: ``after`` is None, every field is reported.
    - Update: only fields whose values differ.
    """
    if before is None and after is None:
        return []
    if fields is None:
        fields = list(dict.fromkeys([*(before or {}), *(after or {})]))
    changes: list[FieldChange] = []
    for key in fields:
        old = _jsonable(before.get(key)) if before is not None else None
        new = _jsonable(after.get(key)) if after is not None else None
        if before is not None and after is not None and old == new:
            continue
        changes.append((key, old, new))
    return changes


def _audited_fields(obj: Any) -> list[str]:
    mapper = sa_inspect(obj).mapper
    excluded = AUDITABLE_ENTITIES.get(type(obj).__name__, frozenset())
    # column_attrs only: relationships and collections are not part of history
    return [attr.key for attr in mapper.column_attrs if attr.key not in excluded]


def entity_snapshot(obj: Any) -> dict[str, Any]:
    """JSON-compatible scalar snapshot of an entity, as history replay reproduces it."""
    state = sa_inspect(obj)
    return {key: _jsonable(state.dict.get(key)) for key in _audited_fields(obj)}


def entity_id_of(obj: Any) -> str:
    pk = sa_inspect(obj).mapper.primary_key_from_instance(obj)
    return ":".join(str(v) for v in pk)


def _update_diff(obj: Any) -> list[FieldChange]:
    state = sa_inspect(obj)
    changes: list[FieldChange] = []
    for key in _audited_fields(obj):
        hist = state.attrs[key].history
        if not hist.has_changes():
            continue
        old = _jsonable(hist.deleted[0]) if hist.deleted else None
        new = _jsonable(hist.added[0]) if hist.added else None
        if old != new:
            changes.append((key, old, new))
    return changes


def _current_request_id() -> str | None:
    if not has_app_context():
        return None
    return getattr(g, "request_id", None)


def record_change(
    s: Session,
    *,
    entity_type: str,
    entity_id: str,
    change_kind: str,
    diff: Iterable[FieldChange],
    actor: User | None,
    request_id: str | None = None,
) -> None:
    """
    Append one history record on the session's current connection.

    Must be called inside the transaction that performs the underlying mutation.
    """
    if change_kind not in CHANGE_KINDS:
        raise ValueError(f"Unsupported change kind: {change_kind!r}")
    values = {
        "created_at": datetime.utcnow(),
        "request_id": request_id or _current_request_id(),
        "actor_user_id": actor.id if actor else None,
        "actor_user_email": actor.email if actor else None,
        "entity_type": entity_type,
        "entity_id": str(entity_id),
        "change_kind": change_kind,
        "changes_json": json.dumps([list(c) for c in diff]),
    }
    try:
        s.connection().execute(HistoryRecord.__table__.insert().values(**values))
    except SQLAlchemyError as e:
        logger.error("History write failed for %s %s (%s): %s", entity_type, entity_id, change_kind, e)
        raise HistoryWriteFailure(f"Could not record {change_kind} of {entity_type} {entity_id}") from e


def _before_flush(s: Session, _flush_context: Any, _instances: Any) -> None:
    updates: list[tuple[Any, list[FieldChange]]] = []
    for obj in s.dirty:
        if is_auditable(type(obj).__name__):
            diff = _update_diff(obj)
            if diff:
                updates.append((obj, diff))
    s.info[_UPDATES_KEY] = updates


def _after_flush(s: Session, _flush_context: Any) -> None:
    pending: list[tuple[Any, str, list[FieldChange]]] = []
    for obj in s.new:
        if is_auditable(type(obj).__name__):
            pending.append((obj, CREATE, compute_diff(None, entity_snapshot(obj), fields=_audited_fields(obj))))
    pending.extend((obj, UPDATE, diff) for obj, diff in s.info.pop(_UPDATES_KEY, ()))
    for obj in s.deleted:
        if is_auditable(type(obj).__name__):
            pending.append((obj, DELETE, compute_diff(entity_snapshot(obj), None, fields=_audited_fields(obj))))
    if not pending:
        return

    actor: User | None = s.info.get(_ACTOR_KEY)
    for obj, kind, diff in pending:
        record_change(
            s,
            entity_type=type(obj).__name__,
            entity_id=entity_id_of(obj),
            change_kind=kind,
            diff=diff,
            actor=actor,
        )


def install_history_hook(session_factory: Any) -> None:
    """Attach the history hooks to a sessionmaker (or Session subclass)."""
    for name, fn in (("before_flush", _before_flush), ("after_flush", _after_flush)):
        if not event.contains(session_factory, name, fn):
            event.listen(session_factory, name, fn)


def get_history(s: Session, entity_type: str, entity_id: str | int) -> list[HistoryRecord]:
    """History of one entity, newest first."""
    stmt = (
        select(HistoryRecord)
        .where(HistoryRecord.entity_type == entity_type, HistoryRecord.entity_id == str(entity_id))
        .order_by(HistoryRecord.id.desc())
    )
    return list(s.scalars(stmt))


def replay(records: Iterable[HistoryRecord]) -> dict[str, Any] | None:
    """
    Fold chronological (oldest first) records into the resulting snapshot.
    Returns None when the last record is a Delete.
    """
    state: dict[str, Any] | None = None
    for rec in records:
        if rec.change_kind == CREATE:
            state = {field: new for field, _old, new in rec.changes}
        elif rec.change_kind == UPDATE:
            # History that predates auditing starts with an Update; fold what we have.
            state = dict(state or {})
            state.update({field: new for field, _old, new in rec.changes})
        elif rec.change_kind == DELETE:
            state = None
    return state


def reconstruct(
    s: Session,
    entity_type: str,
    entity_id: str | int,
    upto_record_id: int | None = None,
) -> dict[str, Any] | None:
    records = list(reversed(get_history(s, entity_type, entity_id)))
    if upto_record_id is not None:
        records = [r for r in records if r.id <= upto_record_id]
    return replay(records)
