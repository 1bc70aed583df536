import logging
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from cafe_pos import models
from cafe_pos.database import as_utc
from cafe_pos.errors import InvalidTransition, Result
from cafe_pos.schemas import Order, OrderItem, OrderStatus, Product, compute_total, to_money
from cafe_pos.stores import RemoteStore

logger = logging.getLogger(__name__)


def order_from_row(row: models.Order, server_name: Optional[str] = None) -> Order:
    return Order(
        id=row.id,
        table_number=row.table_number,
        server_id=row.server_id,
        server_name=server_name,
        items=[OrderItem(**item) for item in (row.items_json or [])],
        total=to_money(row.total),
        status=OrderStatus(row.status),
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


class OrderStore(RemoteStore):

    def __init__(self, session_factory):
        super().__init__(session_factory)
        self.orders: List[Order] = []

    def list(self) -> Result:
        """Newest first, with the server's display name joined in."""
        db = self.session_factory()
        try:
            rows = db.query(models.Order).order_by(models.Order.created_at.desc()).all()
            server_ids = {row.server_id for row in rows}
            names = {}
            if server_ids:
                profiles = (
                    db.query(models.Profile.id, models.Profile.username)
                    .filter(models.Profile.id.in_(server_ids))
                    .all()
                )
                names = {profile.id: profile.username for profile in profiles}
            orders = [order_from_row(row, names.get(row.server_id)) for row in rows]
        except (SQLAlchemyError, ValueError) as e:
            return self._failure("Erreur lors du chargement des commandes", e)
        finally:
            db.close()
            self.loading = False

        self.orders = orders
        return Result.success(value=orders)

    def filter_by_status(self, status: Optional[OrderStatus] = None) -> List[Order]:
        if status is None:
            return list(self.orders)
        return [order for order in self.orders if order.status == status]

    def create(self, table_number: int, server_id: str, items: List[OrderItem], total) -> Result:
        # an empty item list is the caller's concern
        try:
            total = to_money(total)
        except ValueError as e:
            return self._invalid(e)

        db = self.session_factory()
        try:
            row = models.Order(
                table_number=table_number,
                server_id=server_id,
                items_json=[item.to_document() for item in items],
                total=total,
                status=OrderStatus.OPEN.value,
            )
            db.add(row)
            db.commit()
            order_id = row.id
        except SQLAlchemyError as e:
            db.rollback()
            return self._failure("Erreur lors de la création de la commande", e)
        finally:
            db.close()

        logger.info(f"Order {order_id} created for table {table_number}")
        self.list()
        return Result.success(f"Commande créée pour la table {table_number}", value=order_id)

    def update_status(self, order_id: str, new_status) -> Result:
        try:
            target = OrderStatus(new_status)
        except ValueError as e:
            return self._invalid(e)

        db = self.session_factory()
        try:
            row = db.query(models.Order).filter(models.Order.id == order_id).first()
            if row is None:
                return self._not_found("Commande introuvable")

            current = OrderStatus(row.status)
            if not current.can_transition_to(target):
                message = f"Transition impossible : {current.label} → {target.label}"
                logger.warning(f"Order {order_id}: {current.value} -> {target.value} rejected")
                return Result.failure(InvalidTransition(message))

            row.status = target.value
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            return self._failure("Erreur lors de la mise à jour", e)
        finally:
            db.close()

        self.list()
        return Result.success("Commande mise à jour")


class OrderDraft:
    """
    Items being collected for a new order. Each line is a snapshot of the
    product taken when it is first added, so later catalog edits don't leak in.
    """

    def __init__(self, table_number: int):
        self.table_number = table_number
        self._items: List[OrderItem] = []

    @property
    def items(self) -> List[OrderItem]:
        return list(self._items)

    @property
    def is_empty(self) -> bool:
        return not self._items

    @property
    def total(self):
        return compute_total(self._items)

    def _index(self, product_id: str) -> Optional[int]:
        for index, item in enumerate(self._items):
            if item.product_id == product_id:
                return index
        return None

    def add_product(self, product: Product, quantity: int = 1):
        index = self._index(product.id)
        if index is None:
            self._items.append(OrderItem(
                product_id=product.id,
                name=product.name,
                price=product.price,
                quantity=quantity,
            ))
            return
        self.update_quantity(product.id, quantity)

    def update_quantity(self, product_id: str, delta: int):
        index = self._index(product_id)
        if index is None:
            return
        item = self._items[index]
        quantity = item.quantity + delta
        if quantity <= 0:
            del self._items[index]
            return
        self._items[index] = OrderItem(
            product_id=item.product_id,
            name=item.name,
            price=item.price,
            quantity=quantity,
        )

    def remove_item(self, product_id: str):
        self._items = [item for item in self._items if item.product_id != product_id]
