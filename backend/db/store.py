"""
Pothole store: records, confirmation votes and detection sessions.

Methods are synchronous and open one session per call; async callers go
through ``asyncio.to_thread``. Rows never leave this module, callers get
the detached pydantic models from ``schemas``.
"""
from __future__ import annotations

import logging
import math
import threading
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import and_, func, or_, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from common.config import BOUNDS_QUERY_LIMIT, PROXIMITY_EPSILON_DEG
from db.models import DetectionSession, Pothole, PotholeConfirmation, utcnow
from orchestrator.exceptions import (
    DuplicateVoteError,
    InvalidLocationError,
    RecordNotFoundError,
    SessionNotFoundError,
    StoreError,
)
from schemas import (
    BoundingBox,
    ConfirmationVote,
    DetectionSessionRecord,
    PotholeRecord,
    VoteStatus,
    VoteSummary,
)

logger = logging.getLogger(__name__)


def validate_location(latitude: float, longitude: float) -> None:
    if not (-90 <= latitude <= 90) or math.isnan(latitude):
        raise InvalidLocationError(f"Latitude {latitude} outside [-90, 90]")
    if not (-180 <= longitude <= 180) or math.isnan(longitude):
        raise InvalidLocationError(f"Longitude {longitude} outside [-180, 180]")


class GeoLockTable:
    """Striped locks keyed by epsilon-sized grid cells.

    A point locks its own cell and the eight around it. Any two points that
    can resolve to the same record (or to each other) share at least one
    cell, so their check-then-write sections are serialized while distant
    detections proceed in parallel. The thread locks cover one process;
    ``advisory_keys`` gives the same cells as database-wide lock keys.
    """

    # Larger than the number of epsilon columns for any supported epsilon
    _KEY_STRIDE = 1 << 32

    def __init__(self, epsilon: float = PROXIMITY_EPSILON_DEG, stripes: int = 64):
        self.epsilon = epsilon
        self._locks = [threading.Lock() for _ in range(stripes)]

    def cells_for(self, latitude: float, longitude: float) -> list[tuple[int, int]]:
        row = math.floor(latitude / self.epsilon)
        col = math.floor(longitude / self.epsilon)
        return [(row + d_row, col + d_col) for d_row in (-1, 0, 1) for d_col in (-1, 0, 1)]

    def stripes_for(self, latitude: float, longitude: float) -> list[int]:
        indexes = {hash(cell) % len(self._locks) for cell in self.cells_for(latitude, longitude)}
        # Fixed acquisition order
        return sorted(indexes)

    def advisory_keys(self, latitude: float, longitude: float) -> list[int]:
        """Stable signed 64-bit keys, identical across processes, in acquisition order."""
        return sorted(row * self._KEY_STRIDE + col for row, col in self.cells_for(latitude, longitude))

    @contextmanager
    def hold(self, latitude: float, longitude: float) -> Iterator[None]:
        acquired: list[threading.Lock] = []
        try:
            for index in self.stripes_for(latitude, longitude):
                lock = self._locks[index]
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


class PotholeStore:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        epsilon: float = PROXIMITY_EPSILON_DEG,
        lock_stripes: int = 64,
    ):
        self._session_factory = session_factory
        self.epsilon = epsilon
        self._geo_locks = GeoLockTable(epsilon, lock_stripes)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error("[store] Database operation failed: %s", exc)
            raise StoreError(str(exc)) from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ---------- Proximity ----------

    def _nearby_query(self, latitude: float, longitude: float):
        eps = self.epsilon
        return (
            select(Pothole)
            .where(
                Pothole.latitude.between(latitude - eps, latitude + eps),
                Pothole.longitude.between(longitude - eps, longitude + eps),
            )
            .order_by(Pothole.detected_at.desc())
            .limit(1)
        )

    def find_nearby(self, latitude: float, longitude: float) -> PotholeRecord | None:
        """Most recently detected record within epsilon degrees on both axes."""
        validate_location(latitude, longitude)
        with self._session() as session:
            row = session.scalars(self._nearby_query(latitude, longitude)).first()
            return PotholeRecord.model_validate(row) if row is not None else None

    # ---------- Records ----------

    def create_record(
        self,
        latitude: float,
        longitude: float,
        confidence: float,
        images: list[str] | None = None,
        reporter_id: str | None = None,
        verified: bool = False,
        detection_count: int = 1,
    ) -> PotholeRecord:
        validate_location(latitude, longitude)
        with self._session() as session:
            row = self._new_row(latitude, longitude, confidence, list(images or []), reporter_id)
            row.verified = verified
            row.detection_count = detection_count
            session.add(row)
            session.flush()
            record = PotholeRecord.model_validate(row)
        logger.info("[store] Created pothole %s at (%.6f, %.6f)", record.id, latitude, longitude)
        return record

    def merge_detection(self, record_id: str, image_url: str, confidence: float) -> PotholeRecord:
        with self._session() as session:
            row = session.scalars(
                select(Pothole).where(Pothole.id == record_id).with_for_update()
            ).first()
            if row is None:
                raise RecordNotFoundError(record_id)
            self._apply_merge(row, image_url, confidence)
            session.flush()
            return PotholeRecord.model_validate(row)

    def upsert_detection(
        self,
        latitude: float,
        longitude: float,
        confidence: float,
        image_url: str,
        reporter_id: str | None = None,
    ) -> tuple[PotholeRecord, bool]:
        """Merge into the nearby record or create one. Returns (record, created)."""
        validate_location(latitude, longitude)
        with self._geo_locks.hold(latitude, longitude):
            with self._session() as session:
                self._lock_cells_in_database(session, latitude, longitude)
                row = session.scalars(
                    self._nearby_query(latitude, longitude).with_for_update()
                ).first()
                created = row is None
                if created:
                    row = self._new_row(latitude, longitude, confidence, [image_url], reporter_id)
                    session.add(row)
                else:
                    self._apply_merge(row, image_url, confidence)
                session.flush()
                record = PotholeRecord.model_validate(row)

        if created:
            logger.info("[store] New pothole %s at (%.6f, %.6f)", record.id, latitude, longitude)
        else:
            logger.info("[store] Merged detection into %s (count=%d)", record.id, record.detection_count)
        return record, created

    def _lock_cells_in_database(self, session: Session, latitude: float, longitude: float) -> None:
        """Serialize merge-or-create across instances sharing one PostgreSQL database.

        Transaction-scoped advisory locks on the same 3x3 cells the thread locks
        cover; they are released on commit or rollback. Other dialects rely on
        the in-process locks alone.
        """
        if session.get_bind().dialect.name != "postgresql":
            return
        for key in self._geo_locks.advisory_keys(latitude, longitude):
            session.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": key})

    @staticmethod
    def _new_row(
        latitude: float,
        longitude: float,
        confidence: float,
        images: list[str],
        reporter_id: str | None,
    ) -> Pothole:
        now = utcnow()
        return Pothole(
            latitude=latitude,
            longitude=longitude,
            confidence_score=confidence,
            images=images,
            detection_count=1,
            verified=False,
            reporter_id=reporter_id,
            detected_at=now,
            created_at=now,
            updated_at=now,
        )

    @staticmethod
    def _apply_merge(row: Pothole, image_url: str, confidence: float) -> None:
        now = utcnow()
        # Reassign so the JSON column is flagged dirty
        row.images = [*row.images, image_url]
        row.detection_count = row.detection_count + 1
        row.confidence_score = max(row.confidence_score, confidence)
        row.detected_at = now
        row.updated_at = now

    def get_record(self, record_id: str) -> PotholeRecord:
        with self._session() as session:
            row = session.get(Pothole, record_id)
            if row is None:
                raise RecordNotFoundError(record_id)
            return PotholeRecord.model_validate(row)

    def list_recent(self, limit: int) -> list[PotholeRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(Pothole).order_by(Pothole.detected_at.desc()).limit(limit)
            ).all()
            return [PotholeRecord.model_validate(row) for row in rows]

    def list_in_bounds(self, bounds: BoundingBox, limit: int = BOUNDS_QUERY_LIMIT) -> list[PotholeRecord]:
        if bounds.west <= bounds.east:
            lng_clause = Pothole.longitude.between(bounds.west, bounds.east)
        else:
            lng_clause = or_(Pothole.longitude >= bounds.west, Pothole.longitude <= bounds.east)

        with self._session() as session:
            rows = session.scalars(
                select(Pothole)
                .where(and_(Pothole.latitude.between(bounds.south, bounds.north), lng_clause))
                .order_by(Pothole.detected_at.desc())
                .limit(limit)
            ).all()
            return [PotholeRecord.model_validate(row) for row in rows]

    def set_verified(self, record_id: str, verified: bool) -> PotholeRecord:
        with self._session() as session:
            row = session.get(Pothole, record_id)
            if row is None:
                raise RecordNotFoundError(record_id)
            row.verified = verified
            row.updated_at = utcnow()
            session.flush()
            return PotholeRecord.model_validate(row)

    def delete_record(self, record_id: str) -> bool:
        with self._session() as session:
            row = session.get(Pothole, record_id)
            if row is None:
                return False
            session.delete(row)
        logger.info("[store] Deleted pothole %s", record_id)
        return True

    # ---------- Confirmation votes ----------

    def record_vote(self, record_id: str, user_id: str, status: VoteStatus) -> ConfirmationVote:
        with self._session() as session:
            if session.get(Pothole, record_id) is None:
                raise RecordNotFoundError(record_id)
            vote = PotholeConfirmation(
                pothole_id=record_id,
                user_id=user_id,
                status=status,
                confirmed_at=utcnow(),
            )
            session.add(vote)
            try:
                session.flush()
            except IntegrityError as exc:
                session.rollback()
                if self._has_voted(session, record_id, user_id):
                    raise DuplicateVoteError(f"User {user_id} already confirmed {record_id}") from exc
                # Record or user vanished between the checks and the insert
                raise
            return ConfirmationVote.model_validate(vote)

    @staticmethod
    def _has_voted(session: Session, record_id: str, user_id: str) -> bool:
        existing = session.scalars(
            select(PotholeConfirmation.id).where(
                PotholeConfirmation.pothole_id == record_id,
                PotholeConfirmation.user_id == user_id,
            )
        ).first()
        return existing is not None

    def list_votes(self, record_id: str) -> list[ConfirmationVote]:
        with self._session() as session:
            rows = session.scalars(
                select(PotholeConfirmation)
                .where(PotholeConfirmation.pothole_id == record_id)
                .order_by(PotholeConfirmation.confirmed_at.desc())
            ).all()
            return [ConfirmationVote.model_validate(row) for row in rows]

    def vote_summary(self, record_id: str) -> VoteSummary:
        with self._session() as session:
            if session.get(Pothole, record_id) is None:
                raise RecordNotFoundError(record_id)
            counts = dict(
                session.execute(
                    select(PotholeConfirmation.status, func.count())
                    .where(PotholeConfirmation.pothole_id == record_id)
                    .group_by(PotholeConfirmation.status)
                ).all()
            )
        still_there = counts.get(VoteStatus.STILL_THERE, 0)
        not_there = counts.get(VoteStatus.NOT_THERE, 0)
        return VoteSummary(still_there=still_there, not_there=not_there, total=still_there + not_there)

    # ---------- Detection sessions ----------

    def open_session(self, user_id: str | None) -> DetectionSessionRecord:
        """Start a session, closing any the same user still has open."""
        now = utcnow()
        with self._session() as session:
            if user_id is not None:
                closed = session.execute(
                    update(DetectionSession)
                    .where(DetectionSession.user_id == user_id, DetectionSession.is_active.is_(True))
                    .values(is_active=False, ended_at=now, updated_at=now)
                ).rowcount
                if closed:
                    logger.info("[store] Closed %d stale session(s) for user %s", closed, user_id)
            row = DetectionSession(
                user_id=user_id,
                started_at=now,
                is_active=True,
                total_detections=0,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            return DetectionSessionRecord.model_validate(row)

    def close_session(self, session_id: str) -> bool:
        now = utcnow()
        with self._session() as session:
            closed = session.execute(
                update(DetectionSession)
                .where(DetectionSession.id == session_id, DetectionSession.is_active.is_(True))
                .values(is_active=False, ended_at=now, updated_at=now)
            ).rowcount
        return bool(closed)

    def increment_session_detections(self, session_id: str, amount: int = 1) -> bool:
        with self._session() as session:
            updated = session.execute(
                update(DetectionSession)
                .where(DetectionSession.id == session_id)
                .values(
                    total_detections=DetectionSession.total_detections + amount,
                    updated_at=utcnow(),
                )
            ).rowcount
        return bool(updated)

    def get_session(self, session_id: str) -> DetectionSessionRecord:
        with self._session() as session:
            row = session.get(DetectionSession, session_id)
            if row is None:
                raise SessionNotFoundError(session_id)
            return DetectionSessionRecord.model_validate(row)

    def list_active_sessions(self, user_id: str | None = None) -> list[DetectionSessionRecord]:
        query = select(DetectionSession).where(DetectionSession.is_active.is_(True))
        if user_id is not None:
            query = query.where(DetectionSession.user_id == user_id)
        with self._session() as session:
            rows = session.scalars(query.order_by(DetectionSession.started_at.desc())).all()
            return [DetectionSessionRecord.model_validate(row) for row in rows]

    # ---------- Health ----------

    def ping(self) -> bool:
        try:
            with self._session() as session:
                session.execute(select(1))
        except StoreError:
            return False
        return True
