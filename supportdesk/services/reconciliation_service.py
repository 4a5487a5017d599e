"""Reconciliation engine.

Idempotent upserts of provider data into local rows keyed by natural keys.
Only sync-owned fields are ever written on update; operator-owned fields are
set once, on insert, through insert_defaults.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from supportdesk.db.models import Call, Customer, Order, Return

logger = logging.getLogger(__name__)

R = TypeVar("R")


@dataclass(frozen=True)
class EntityRules:
    model: type
    key_fields: tuple[str, ...]
    sync_fields: frozenset[str]
    operator_fields: frozenset[str] = frozenset()


ENTITY_RULES: dict[str, EntityRules] = {
    "customer": EntityRules(
        model=Customer,
        key_fields=("email",),
        sync_fields=frozenset({"first_name", "last_name", "phone", "provider_customer_id"}),
        operator_fields=frozenset({"notes"}),
    ),
    "order": EntityRules(
        model=Order,
        key_fields=("order_number",),
        sync_fields=frozenset({
            "customer_id",
            "provider_order_id",
            "total_amount",
            "currency",
            "provider_status",
            "ordered_at",
        }),
        operator_fields=frozenset({"internal_note"}),
    ),
    "return": EntityRules(
        model=Return,
        key_fields=("order_id", "source"),
        sync_fields=frozenset({"customer_id", "provider_status", "total_refund_amount", "reason_detail"}),
        operator_fields=frozenset({"status", "refund_status", "internal_note", "return_number", "reason"}),
    ),
    "call": EntityRules(
        model=Call,
        key_fields=("provider_call_id",),
        sync_fields=frozenset({
            "customer_id",
            "direction",
            "phone_number",
            "duration_seconds",
            "status",
            "call_started_at",
            "call_ended_at",
        }),
        operator_fields=frozenset({"notes", "matched_order_id"}),
    ),
}


@dataclass
class UpsertResult:
    id: uuid.UUID
    created: bool
    changed: list[str] = field(default_factory=list)

    @property
    def updated(self) -> bool:
        return not self.created and bool(self.changed)


@dataclass
class BatchResult:
    """Per-record tally; failures are captured here instead of raised."""

    processed: int = 0
    created: int = 0
    updated: int = 0
    failed: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "created": self.created,
            "updated": self.updated,
            "failed": self.failed,
            "errors": self.errors,
        }


def _key_dict(rules: EntityRules, natural_key: Any) -> dict[str, Any]:
    if not isinstance(natural_key, tuple):
        natural_key = (natural_key,)
    if len(natural_key) != len(rules.key_fields):
        raise ValueError(f"Natural key for {rules.model.__name__} needs {rules.key_fields}")
    return dict(zip(rules.key_fields, natural_key))


def _find(db: Session, rules: EntityRules, key: dict[str, Any]):
    query = db.query(rules.model)
    for name, value in key.items():
        query = query.filter(getattr(rules.model, name) == value)
    return query.first()


def _apply_sync_fields(row, attrs: dict[str, Any]) -> list[str]:
    changed = []
    for name, value in attrs.items():
        if getattr(row, name) != value:
            setattr(row, name, value)
            changed.append(name)
    return changed


def upsert_by_natural_key(
    db: Session,
    kind: str,
    natural_key: Any,
    attrs: dict[str, Any],
    *,
    insert_defaults: dict[str, Any] | None = None,
) -> UpsertResult:
    """
    Insert or update one entity by its natural key.

    attrs may only contain the kind's sync-owned fields. insert_defaults may
    additionally carry operator-owned initial values; they are ignored when
    the row already exists. Flushes, does not commit.
    """
    rules = ENTITY_RULES.get(kind)
    if rules is None:
        raise ValueError(f"Unknown entity kind: {kind}")
    not_owned = set(attrs) - rules.sync_fields
    if not_owned:
        raise ValueError(f"{kind} fields not owned by sync: {sorted(not_owned)}")
    defaults = insert_defaults or {}
    not_allowed = set(defaults) - rules.sync_fields - rules.operator_fields
    if not_allowed:
        raise ValueError(f"{kind} insert defaults not allowed: {sorted(not_allowed)}")

    key = _key_dict(rules, natural_key)
    row = _find(db, rules, key)
    if row is not None:
        changed = _apply_sync_fields(row, attrs)
        db.flush()
        return UpsertResult(id=row.id, created=False, changed=changed)

    row = rules.model(**key, **defaults, **attrs)
    try:
        with db.begin_nested():
            db.add(row)
    except IntegrityError:
        # A concurrent writer inserted the same key first
        row = _find(db, rules, key)
        if row is None:
            raise
        logger.info("Lost insert race for %s %s, updating instead", kind, key)
        changed = _apply_sync_fields(row, attrs)
        db.flush()
        return UpsertResult(id=row.id, created=False, changed=changed)

    return UpsertResult(id=row.id, created=True, changed=sorted(attrs))


def reconcile_batch(
    db: Session,
    records: Iterable[R],
    apply: Callable[[Session, R], UpsertResult],
    *,
    key: Callable[[R], str] = lambda record: str(record),
) -> BatchResult:
    """
    Apply each record inside its own savepoint.

    A failing record is rolled back to its savepoint and tallied; the rest of
    the batch proceeds. The caller commits.
    """
    result = BatchResult()
    for record in records:
        result.processed += 1
        try:
            with db.begin_nested():
                outcome = apply(db, record)
        except Exception as exc:
            result.failed += 1
            record_key = str(key(record))
            result.errors.append({"key": record_key, "error": f"{type(exc).__name__}: {exc}"[:300]})
            logger.warning("Record %s failed to reconcile: %s", record_key, type(exc).__name__)
            continue
        if outcome.created:
            result.created += 1
        elif outcome.changed:
            result.updated += 1
    return result

