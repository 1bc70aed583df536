"""
Table-state reconciliation: derives the dashboard view of every table from
the current orders and reservations. Nothing here is persisted.
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from cafe_pos.schemas import (
    Order,
    OrderStatus,
    Reservation,
    ReservationStatus,
    Table,
    TableStatus,
    to_money,
)

TABLES_COUNT = 12
RESERVATION_LOOKAHEAD = timedelta(hours=1)


def _aware(moment: datetime) -> datetime:
    # naive values are local wall-clock time
    return moment if moment.tzinfo is not None else moment.astimezone()


def _occupying_order(orders: Iterable[Order], number: int) -> Optional[Order]:
    candidates = [o for o in orders if o.table_number == number and o.status == OrderStatus.OPEN]
    if not candidates:
        return None
    # one open order per table is expected; if not, show the latest one
    return max(candidates, key=lambda o: (_aware(o.created_at), o.id))


def _upcoming_reservation(reservations: Iterable[Reservation], number: int,
                          now: datetime, lookahead: timedelta) -> Optional[Reservation]:
    # reservations already in the past also satisfy this comparison
    candidates = [
        r for r in reservations
        if r.table_number == number
        and r.status == ReservationStatus.ACTIVE
        and _aware(r.reserved_at) - now < lookahead
    ]
    if not candidates:
        return None
    return min(candidates, key=lambda r: (_aware(r.reserved_at), r.id))


def reconcile_tables(
    orders: List[Order],
    reservations: List[Reservation],
    now: datetime,
    table_count: int = TABLES_COUNT,
    lookahead: timedelta = RESERVATION_LOOKAHEAD,
) -> List[Table]:
    """
    Returns `table_count` tables numbered from 1, in order.
    An open order marks a table occupied; failing that, an active reservation
    inside the look-ahead window marks it reserved; otherwise it is free.
    """
    now = _aware(now)
    tables = []
    for number in range(1, table_count + 1):
        order = _occupying_order(orders, number)
        if order is not None:
            tables.append(Table(number=number, status=TableStatus.OCCUPIED, order=order))
            continue

        reservation = _upcoming_reservation(reservations, number, now, lookahead)
        if reservation is not None:
            tables.append(Table(number=number, status=TableStatus.RESERVED, reservation=reservation))
            continue

        tables.append(Table(number=number, status=TableStatus.FREE))
    return tables


def table_link(table: Table) -> str:
    if table.status == TableStatus.RESERVED:
        return "/reservations"
    return f"/commandes/nouvelle?table={table.number}"


def _same_day(moment: datetime, now: datetime) -> bool:
    return _aware(moment).astimezone(now.tzinfo).date() == now.date()


def dashboard_stats(orders: List[Order], reservations: List[Reservation], now: datetime) -> Dict[str, object]:
    now = _aware(now)
    today_orders = [o for o in orders if _same_day(o.created_at, now)]
    today_revenue = sum(
        (o.total for o in today_orders if o.status == OrderStatus.PAID),
        Decimal("0"),
    )
    return {
        "today_orders": len(today_orders),
        "today_revenue": to_money(today_revenue),
        "active_orders": sum(1 for o in orders if o.status == OrderStatus.OPEN),
        "today_reservations": sum(
            1 for r in reservations
            if r.status == ReservationStatus.ACTIVE and _same_day(r.reserved_at, now)
        ),
    }
