"""
Account-scoped query helpers.

Every get-by-id in the core goes through these helpers instead of
``db.session.get(Model, pk)``. A direct ``.get()`` would ignore the account
the caller passed in, so a row from another account could leak into the
operation.

Usage:
    card = get_scoped(Card, card_id, account_id=account_id)
    column = get_scoped_or_none(BoardColumn, column_id, account_id=account_id)

    # Row-locked read for serialized transitions
    card = get_scoped(Card, card_id, account_id=account_id, for_update=True)

Scope field resolution:
    Each keyword argument maps directly to a column name on the model. If
    the model lacks that column a ValueError is raised at call time so the
    bug surfaces during testing rather than silently allowing an unscoped
    lookup.
"""

import logging

from sqlalchemy import select

from cardflow.core.exceptions import NotFoundError
from cardflow.models import db

logger = logging.getLogger(__name__)


def get_scoped(
    model,
    pk: int,
    *,
    account_id: int | None = None,
    board_id: int | None = None,
    for_update: bool = False,
):
    """Fetch a single entity by PK with mandatory scope filter.

    Cross-account access is indistinguishable from a missing record: both
    raise NotFoundError.

    With ``for_update=True`` the row is read with ``SELECT ... FOR UPDATE``
    and the identity map is refreshed from the locked row, so the caller
    sees the state another transaction committed before the lock was
    granted.

    Raises:
        ValueError: If no scope parameter is provided, or a provided scope
                    names a column the model does not have.
        NotFoundError: If the entity does not exist or belongs to a
                       different scope.
    """
    provided_scopes = {
        field: value
        for field, value in (("account_id", account_id), ("board_id", board_id))
        if value is not None
    }
    if not provided_scopes:
        raise ValueError(
            f"{model.__name__} id={pk} requires a scope filter (account_id or board_id). "
            "Unscoped lookups are forbidden."
        )

    missing_fields = [field for field in provided_scopes if not hasattr(model, field)]
    if missing_fields:
        raise ValueError(
            f"{model.__name__} has no scope column(s) {sorted(missing_fields)}; "
            "refusing to perform an unscoped lookup."
        )

    stmt = select(model).where(model.id == pk)
    for field, value in provided_scopes.items():
        stmt = stmt.where(getattr(model, field) == value)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)

    result = db.session.execute(stmt).scalar_one_or_none()

    if result is None:
        logger.debug("get_scoped: %s id=%s not found in scope %s",
                     model.__name__, pk, provided_scopes)
        raise NotFoundError(resource=model.__name__, resource_id=pk,
                            account_id=account_id)

    return result


def get_scoped_or_none(
    model,
    pk: int | None,
    *,
    account_id: int | None = None,
    board_id: int | None = None,
    for_update: bool = False,
):
    """Same as get_scoped but returns None instead of raising NotFoundError.

    A ``None`` primary key short-circuits to ``None`` (optional FK lookups).
    Scope enforcement still applies.
    """
    if pk is None:
        return None
    try:
        return get_scoped(model, pk, account_id=account_id, board_id=board_id,
                          for_update=for_update)
    except NotFoundError:
        return None
