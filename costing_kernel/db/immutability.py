"""
ORM-level immutability enforcement for the costing ledger.

===============================================================================
HOW IT WORKS
===============================================================================

SQLAlchemy fires mapper events before UPDATE/DELETE statements reach the
database.  The listeners below intercept them and check the invariants:

    session.flush()
         |
         v
    [before_update event] --> _check_*_immutability() --> ImmutabilityViolationError
         |                                                        ^
         v                                                        |
    [before_delete event] --> _check_*_delete() -----------------+
         |
         v
    SQL sent to database (only if checks pass)

If a check fails, ImmutabilityViolationError is raised and the flush is
aborted.  The database is never modified.

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity               | When Immutable                      | Rule
---------------------|-------------------------------------|--------------------------
CostAuditLogEntry    | ALWAYS (from creation)              | Append-only audit trail
StockLot             | Delete while any draw references it | Conservation of quantity

Bulk ``DELETE``/``UPDATE`` statements issued with ``session.execute()`` do not
fire mapper events.  Services never issue them against protected tables.

===============================================================================
USAGE
===============================================================================

Called automatically when the composition root is built:

    from costing_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()

To temporarily disable (TESTS ONLY):

    unregister_immutability_listeners()
"""

from sqlalchemy import func, select
from sqlalchemy import event

from costing_kernel.exceptions import ImmutabilityViolationError
from costing_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _check_cost_audit_immutability(mapper, connection, target):
    """
    Prevent ANY updates to cost audit entries.

    An entry records what a cascade changed and why.  Corrections are made
    by a later cascade writing a new entry, never by editing an old one.
    """
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": "CostAuditLogEntry",
            "entity_id": str(target.id),
            "operation": "UPDATE",
        },
    )
    raise ImmutabilityViolationError(
        entity_type="CostAuditLogEntry",
        entity_id=str(target.id),
        reason="Cost audit entries are append-only and cannot be modified",
    )


def _check_cost_audit_delete(mapper, connection, target):
    """Prevent deletion of cost audit entries."""
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": "CostAuditLogEntry",
            "entity_id": str(target.id),
            "operation": "DELETE",
        },
    )
    raise ImmutabilityViolationError(
        entity_type="CostAuditLogEntry",
        entity_id=str(target.id),
        reason="Cost audit entries are append-only and cannot be deleted",
    )


def _check_stock_lot_delete(mapper, connection, target):
    """
    Prevent physical deletion of a lot that sale consumptions or supplier
    return draws still reference.

    Retiring a lot and replaying its product releases every sale
    consumption; supplier returns must be cancelled explicitly.
    """
    from costing_kernel.models.stock_lot import StockLotConsumption, SupplierReturnConsumption

    referenced = 0
    for model in (StockLotConsumption, SupplierReturnConsumption):
        table = model.__table__
        referenced += connection.execute(
            select(func.count()).select_from(table).where(table.c.lot_id == str(target.id))
        ).scalar_one()

    if referenced:
        logger.error(
            "immutability_violation_blocked",
            extra={
                "entity_type": "StockLot",
                "entity_id": str(target.id),
                "operation": "DELETE",
                "consumption_count": referenced,
            },
        )
        raise ImmutabilityViolationError(
            entity_type="StockLot",
            entity_id=str(target.id),
            reason=f"Lot is still referenced by {referenced} consumption(s)",
        )


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners.

    Safe to call more than once; a listener already present is not added
    again.
    """
    from costing_kernel.models.cost_audit_log import CostAuditLogEntry
    from costing_kernel.models.stock_lot import StockLot

    for target, event_name, listener_fn in (
        (CostAuditLogEntry, "before_update", _check_cost_audit_immutability),
        (CostAuditLogEntry, "before_delete", _check_cost_audit_delete),
        (StockLot, "before_delete", _check_stock_lot_delete),
    ):
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)


def _safe_remove_listener(target, event_name, listener_fn):
    """Remove an event listener, ignoring it if not registered."""
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests that must violate the rules on purpose.
    """
    from costing_kernel.models.cost_audit_log import CostAuditLogEntry
    from costing_kernel.models.stock_lot import StockLot

    _safe_remove_listener(CostAuditLogEntry, "before_update", _check_cost_audit_immutability)
    _safe_remove_listener(CostAuditLogEntry, "before_delete", _check_cost_audit_delete)
    _safe_remove_listener(StockLot, "before_delete", _check_stock_lot_delete)
