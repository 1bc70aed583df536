# models.py
import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, text

from cafe_pos.database import Base, utcnow


def _new_id():
    return str(uuid.uuid4())


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(String(36), primary_key=True, default=_new_id)
    username = Column(String(50), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class UserRole(Base):
    __tablename__ = "user_roles"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), unique=True, nullable=False)
    role = Column(String(20), nullable=False)


class Product(Base):
    __tablename__ = "products"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String(100), nullable=False, index=True)
    price = Column(Numeric(10, 3), nullable=False)
    active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=utcnow, nullable=True)


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=_new_id)
    table_number = Column(Integer, nullable=False, index=True)
    server_id = Column(String(36), nullable=False, index=True)
    items_json = Column(JSON, nullable=False, default=list)
    total = Column(Numeric(10, 3), nullable=False, default=0)
    status = Column(String(20), nullable=False, default="EN_COURS")
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=utcnow, nullable=True)


class Reservation(Base):
    __tablename__ = "reservations"

    id = Column(String(36), primary_key=True, default=_new_id)
    table_number = Column(Integer, nullable=False)
    reserved_at = Column(DateTime(timezone=True), nullable=False)
    client_name = Column(String(100), nullable=True)
    party_size = Column(Integer, nullable=True)
    note = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default="ACTIVE")
    created_by = Column(String(36), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        # one ACTIVE reservation per table and time slot
        Index(
            "uq_reservations_active_slot",
            "table_number",
            "reserved_at",
            unique=True,
            postgresql_where=text("status = 'ACTIVE'"),
            sqlite_where=text("status = 'ACTIVE'"),
        ),
    )
