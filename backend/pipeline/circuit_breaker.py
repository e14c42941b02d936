"""
Circuit breaker: stop hammering sources that keep failing.

States
------
closed     normal operation; failures are counted
open       source is skipped until ``open_until``
half_open  cooldown expired; probes are let through.  ``success_threshold``
           consecutive successes close the circuit, a single failure
           reopens it with a fresh cooldown.

State lives in the ``circuit_breaker_state`` table and is re-read on every
call, so it survives restarts and is shared by concurrent pipeline runs.
Every mutation is a single conditional UPDATE evaluated by the database
against the row's current values; there is no read-then-write window.

Note: ``is_available()`` is not a pure read.  When it finds an open circuit
whose cooldown has expired it flips the row to ``half_open`` before
answering.  The half-open probe depends on that transition.

This component never raises.  If the store is unreachable the error is
logged and the source is reported as available / closed so a broken
monitoring table cannot halt data collection.
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from dotenv import load_dotenv
from sqlalchemy import case, null
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from backend.models import CircuitBreakerState, SessionLocal

load_dotenv()

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = int(os.getenv("CIRCUIT_FAILURE_THRESHOLD", "5"))
    timeout_minutes: int = int(os.getenv("CIRCUIT_TIMEOUT_MINUTES", "30"))
    success_threshold: int = int(os.getenv("CIRCUIT_SUCCESS_THRESHOLD", "2"))


@dataclass
class CircuitSnapshot:
    """Point-in-time view of one source's breaker."""

    source: str
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    last_failure_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    open_until: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "last_failure_at": self.last_failure_at,
            "last_success_at": self.last_success_at,
            "open_until": self.open_until,
        }


class CircuitBreaker:
    """Per-source breaker backed by ``circuit_breaker_state`` rows."""

    def __init__(
        self,
        session_factory=SessionLocal,
        config: Optional[CircuitBreakerConfig] = None,
        now: Callable[[], datetime] = datetime.utcnow,
    ):
        self._session_factory = session_factory
        self.config = config or CircuitBreakerConfig()
        self._now = now

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def is_available(self, source: str) -> bool:
        """True when ``source`` may be attempted (closed, half-open, or cooled down)."""
        db = self._session_factory()
        try:
            row = (
                db.query(CircuitBreakerState)
                .filter(CircuitBreakerState.source == source)
                .one_or_none()
            )
            if row is None or row.state == CircuitState.CLOSED.value:
                return True
            if row.state == CircuitState.HALF_OPEN.value:
                return True

            now = self._now()
            if row.open_until is not None and row.open_until > now:
                return False

            # Cooldown expired.  Only the caller whose UPDATE still sees
            # state='open' performs the transition; losers just proceed.
            moved = (
                db.query(CircuitBreakerState)
                .filter(
                    CircuitBreakerState.source == source,
                    CircuitBreakerState.state == CircuitState.OPEN.value,
                    (CircuitBreakerState.open_until.is_(None))
                    | (CircuitBreakerState.open_until <= now),
                )
                .update(
                    {
                        CircuitBreakerState.state: CircuitState.HALF_OPEN.value,
                        CircuitBreakerState.success_count: 0,
                        CircuitBreakerState.updated_at: now,
                    },
                    synchronize_session=False,
                )
            )
            db.commit()
            if moved:
                logger.info("[Circuit Breaker] %s: OPEN -> HALF_OPEN (cooldown expired)", source)
            return True
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("[Circuit Breaker] %s: state read failed, allowing source: %s", source, exc)
            return True
        finally:
            db.close()

    def get_state(self, source: str) -> CircuitSnapshot:
        db = self._session_factory()
        try:
            row = (
                db.query(CircuitBreakerState)
                .filter(CircuitBreakerState.source == source)
                .one_or_none()
            )
            return _snapshot(source, row)
        except SQLAlchemyError as exc:
            logger.error("[Circuit Breaker] %s: state read failed: %s", source, exc)
            return CircuitSnapshot(source=source)
        finally:
            db.close()

    def list_states(self) -> list:
        db = self._session_factory()
        try:
            rows = db.query(CircuitBreakerState).order_by(CircuitBreakerState.source).all()
            return [_snapshot(row.source, row) for row in rows]
        except SQLAlchemyError as exc:
            logger.error("[Circuit Breaker] listing states failed: %s", exc)
            return []
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def record_success(self, source: str) -> CircuitState:
        """Reset failures when closed; advance the half-open success streak."""
        now = self._now()
        cb = CircuitBreakerState
        closes = (cb.state == CircuitState.HALF_OPEN.value) & (
            cb.success_count + 1 >= self.config.success_threshold
        )
        values = {
            cb.state: case((closes, CircuitState.CLOSED.value), else_=cb.state),
            cb.failure_count: case(
                (cb.state == CircuitState.CLOSED.value, 0),
                (closes, 0),
                else_=cb.failure_count,
            ),
            cb.success_count: case(
                (closes, 0),
                (cb.state == CircuitState.HALF_OPEN.value, cb.success_count + 1),
                else_=0,
            ),
            cb.open_until: case((closes, null()), else_=cb.open_until),
            cb.last_success_at: now,
            cb.updated_at: now,
        }
        state = self._apply(source, values)
        logger.info("[Circuit Breaker] %s: SUCCESS -> %s", source, state.value)
        return state

    def record_failure(self, source: str) -> CircuitState:
        """Count a failure; open the circuit at the threshold or from half-open."""
        now = self._now()
        open_until = now + timedelta(minutes=self.config.timeout_minutes)
        cb = CircuitBreakerState
        opens = (cb.state == CircuitState.HALF_OPEN.value) | (
            (cb.state == CircuitState.CLOSED.value)
            & (cb.failure_count + 1 >= self.config.failure_threshold)
        )
        values = {
            cb.state: case((opens, CircuitState.OPEN.value), else_=cb.state),
            cb.failure_count: cb.failure_count + 1,
            cb.success_count: 0,
            cb.open_until: case((opens, open_until), else_=cb.open_until),
            cb.last_failure_at: now,
            cb.updated_at: now,
        }
        state = self._apply(source, values)
        if state == CircuitState.OPEN:
            logger.warning("[Circuit Breaker] %s: FAILURE -> open", source)
        else:
            logger.info("[Circuit Breaker] %s: FAILURE -> %s", source, state.value)
        return state

    def reset(self, source: str) -> None:
        """Operator override: force closed with zeroed counters."""
        db = self._session_factory()
        try:
            db.query(CircuitBreakerState).filter(CircuitBreakerState.source == source).update(
                {
                    CircuitBreakerState.state: CircuitState.CLOSED.value,
                    CircuitBreakerState.failure_count: 0,
                    CircuitBreakerState.success_count: 0,
                    CircuitBreakerState.open_until: None,
                    CircuitBreakerState.updated_at: self._now(),
                },
                synchronize_session=False,
            )
            db.commit()
            logger.info("[Circuit Breaker] %s: MANUALLY RESET", source)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("[Circuit Breaker] %s: reset failed: %s", source, exc)
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ensure_row(self, source: str) -> None:
        """Create the closed row lazily; a concurrent creator winning is fine."""
        db = self._session_factory()
        try:
            exists = (
                db.query(CircuitBreakerState.id)
                .filter(CircuitBreakerState.source == source)
                .first()
            )
            if exists is None:
                now = self._now()
                db.add(CircuitBreakerState(
                    source=source,
                    state=CircuitState.CLOSED.value,
                    failure_count=0,
                    success_count=0,
                    created_at=now,
                    updated_at=now,
                ))
                db.commit()
        except IntegrityError:
            db.rollback()
            logger.debug("[Circuit Breaker] %s: row created concurrently", source)
        finally:
            db.close()

    def _apply(self, source: str, values: dict) -> CircuitState:
        """Run one conditional UPDATE and read the resulting state in the same transaction."""
        try:
            self._ensure_row(source)
        except SQLAlchemyError as exc:
            logger.error("[Circuit Breaker] %s: could not create state row: %s", source, exc)
            return CircuitState.CLOSED

        db = self._session_factory()
        try:
            db.query(CircuitBreakerState).filter(CircuitBreakerState.source == source).update(
                values, synchronize_session=False
            )
            state = (
                db.query(CircuitBreakerState.state)
                .filter(CircuitBreakerState.source == source)
                .scalar()
            )
            db.commit()
            return CircuitState(state or CircuitState.CLOSED.value)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("[Circuit Breaker] %s: state update failed: %s", source, exc)
            return CircuitState.CLOSED
        finally:
            db.close()


def _snapshot(source: str, row: Optional[CircuitBreakerState]) -> CircuitSnapshot:
    if row is None:
        return CircuitSnapshot(source=source)
    return CircuitSnapshot(
        source=row.source,
        state=CircuitState(row.state),
        failure_count=row.failure_count or 0,
        success_count=row.success_count or 0,
        last_failure_at=row.last_failure_at,
        last_success_at=row.last_success_at,
        open_until=row.open_until,
    )
