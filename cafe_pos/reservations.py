import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from cafe_pos import models
from cafe_pos.database import as_utc, is_unique_violation
from cafe_pos.errors import ErrorKind, InvalidTransition, Result
from cafe_pos.schemas import Reservation, ReservationStatus
from cafe_pos.stores import RemoteStore

logger = logging.getLogger(__name__)

SLOT_TAKEN_MESSAGE = "Une réservation existe déjà pour cette table à cette heure"


def reservation_from_row(row: models.Reservation) -> Reservation:
    return Reservation(
        id=row.id,
        table_number=row.table_number,
        reserved_at=as_utc(row.reserved_at),
        client_name=row.client_name,
        party_size=row.party_size,
        note=row.note,
        status=ReservationStatus(row.status),
        created_by=row.created_by,
        created_at=as_utc(row.created_at),
    )


class ReservationStore(RemoteStore):

    def __init__(self, session_factory):
        super().__init__(session_factory)
        self.reservations: List[Reservation] = []

    def list(self) -> Result:
        db = self.session_factory()
        try:
            rows = db.query(models.Reservation).order_by(models.Reservation.reserved_at.asc()).all()
            reservations = [reservation_from_row(row) for row in rows]
        except (SQLAlchemyError, ValueError) as e:
            return self._failure("Erreur lors du chargement des réservations", e)
        finally:
            db.close()
            self.loading = False

        self.reservations = reservations
        return Result.success(value=reservations)

    def filter_by_status(self, status: Optional[ReservationStatus] = None) -> List[Reservation]:
        if status is None:
            return list(self.reservations)
        return [r for r in self.reservations if r.status == status]

    def create(
        self,
        table_number: int,
        reserved_at: datetime,
        created_by: str,
        client_name: Optional[str] = None,
        party_size: Optional[int] = None,
        note: Optional[str] = None,
    ) -> Result:
        # naive times are local wall-clock time
        reserved_at = reserved_at.astimezone(timezone.utc)
        db = self.session_factory()
        try:
            row = models.Reservation(
                table_number=table_number,
                reserved_at=reserved_at,
                client_name=client_name,
                party_size=party_size,
                note=note,
                created_by=created_by,
                status=ReservationStatus.ACTIVE.value,
            )
            db.add(row)
            db.commit()
            reservation_id = row.id
        except IntegrityError as e:
            db.rollback()
            if is_unique_violation(e):
                logger.warning(f"Table {table_number} already reserved at {reserved_at.isoformat()}")
                return self._failure(SLOT_TAKEN_MESSAGE, e, ErrorKind.CONFLICT)
            return self._failure("Erreur lors de la création de la réservation", e)
        except SQLAlchemyError as e:
            db.rollback()
            return self._failure("Erreur lors de la création de la réservation", e)
        finally:
            db.close()

        self.list()
        return Result.success("Réservation créée avec succès", value=reservation_id)

    def update_status(self, reservation_id: str, new_status) -> Result:
        try:
            target = ReservationStatus(new_status)
        except ValueError as e:
            return self._invalid(e)

        db = self.session_factory()
        try:
            row = db.query(models.Reservation).filter(models.Reservation.id == reservation_id).first()
            if row is None:
                return self._not_found("Réservation introuvable")

            current = ReservationStatus(row.status)
            if not current.can_transition_to(target):
                message = f"Transition impossible : {current.label} → {target.label}"
                logger.warning(f"Reservation {reservation_id}: {current.value} -> {target.value} rejected")
                return Result.failure(InvalidTransition(message))

            row.status = target.value
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            return self._failure("Erreur lors de la mise à jour", e)
        finally:
            db.close()

        self.list()
        return Result.success("Réservation mise à jour")
