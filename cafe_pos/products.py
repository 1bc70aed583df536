import logging
from typing import List

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from cafe_pos import models
from cafe_pos.database import as_utc
from cafe_pos.errors import Result
from cafe_pos.schemas import Product, ProductCreate, ProductUpdate, to_money
from cafe_pos.stores import RemoteStore

logger = logging.getLogger(__name__)


def product_from_row(row: models.Product) -> Product:
    return Product(
        id=row.id,
        name=row.name,
        price=to_money(row.price),
        active=row.active,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


def search_products(products: List[Product], query: str) -> List[Product]:
    needle = (query or "").strip().lower()
    if not needle:
        return list(products)
    return [p for p in products if needle in p.name.lower()]


class ProductStore(RemoteStore):

    def __init__(self, session_factory):
        super().__init__(session_factory)
        self.products: List[Product] = []

    def list(self) -> Result:
        db = self.session_factory()
        try:
            rows = db.query(models.Product).order_by(models.Product.name.asc()).all()
            products = [product_from_row(row) for row in rows]
        except (SQLAlchemyError, ValueError) as e:
            return self._failure("Erreur lors du chargement des produits", e)
        finally:
            db.close()
            self.loading = False

        self.products = products
        return Result.success(value=products)

    def active_products(self) -> List[Product]:
        return [p for p in self.products if p.active]

    def get(self, product_id: str):
        return next((p for p in self.products if p.id == product_id), None)

    def create(self, name: str, price, active: bool = True) -> Result:
        try:
            data = ProductCreate(name=name, price=price, active=active)
        except ValidationError as e:
            return self._invalid(e)

        db = self.session_factory()
        try:
            row = models.Product(name=data.name, price=data.price, active=data.active)
            db.add(row)
            db.commit()
            product_id = row.id
        except SQLAlchemyError as e:
            db.rollback()
            return self._failure("Erreur lors de la création du produit", e)
        finally:
            db.close()

        self.list()
        return Result.success("Produit ajouté", value=product_id)

    def update(self, product_id: str, **fields) -> Result:
        try:
            data = ProductUpdate(**fields)
        except ValidationError as e:
            return self._invalid(e)
        changes = {key: value for key, value in data.dict(exclude_unset=True).items() if value is not None}
        if not changes:
            return self._invalid("Aucune modification")

        db = self.session_factory()
        try:
            row = db.query(models.Product).filter(models.Product.id == product_id).first()
            if row is None:
                return self._not_found("Produit introuvable")
            for key, value in changes.items():
                setattr(row, key, value)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            return self._failure("Erreur lors de la modification du produit", e)
        finally:
            db.close()

        self.list()
        return Result.success("Produit modifié")

    def toggle_active(self, product_id: str) -> Result:
        product = self.get(product_id)
        if product is None:
            return self._not_found("Produit introuvable")
        return self.update(product_id, active=not product.active)

    def delete(self, product_id: str) -> Result:
        db = self.session_factory()
        try:
            deleted = db.query(models.Product).filter(models.Product.id == product_id).delete()
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            return self._failure("Erreur lors de la suppression du produit", e)
        finally:
            db.close()

        if not deleted:
            return self._not_found("Produit introuvable")
        self.list()
        return Result.success("Produit supprimé")
