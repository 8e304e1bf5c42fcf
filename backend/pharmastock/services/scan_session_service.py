# Overview: Two-scan verification sessions (product barcode, then lot barcode); never touches stock.

"""
Two-Scan Verification

A counter clerk scans the product barcode, then the barcode printed on the
physical lot. The session confirms the lot belongs to the product, is
active, has available stock and has not expired.

Session state machine:
    PRODUCT --product scan ok--> LOT --lot scan ok--> COMPLETE

- A failed scan leaves the session in its current step.
- A successful product scan renews the TTL.
- COMPLETE rejects further scans.
- Expired sessions read as missing; scanning one raises SessionExpiredError.

Sessions live in a ScanSessionStore (explicit TTL, lock-guarded) and are not
expected to survive a restart. A SessionSweeper evicts expired entries on a
timer.
"""

from __future__ import annotations

import abc
import enum
import secrets
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable

from flask import current_app

from ..errors import NotFoundError, SessionExpiredError, StateConflictError
from ..time_utils import utcnow, to_utc_z, today
from .catalog_service import find_product_by_barcode
from .lot_service import find_lot_by_barcode


class ScanStep(str, enum.Enum):
    PRODUCT = "PRODUCT"
    LOT = "LOT"
    COMPLETE = "COMPLETE"


@dataclass(frozen=True)
class ScanSession:
    session_id: str
    step: ScanStep
    created_at: datetime
    expires_at: datetime
    product: dict | None = None
    lot: dict | None = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "step": self.step.value,
            "product": self.product,
            "lot": self.lot,
            "created_at": to_utc_z(self.created_at),
            "expires_at": to_utc_z(self.expires_at),
        }


@dataclass(frozen=True)
class ScanResult:
    success: bool
    session: ScanSession
    message: str
    next_step: str | None = None
    error_code: str | None = None

    def to_dict(self) -> dict:
        out = {
            "success": self.success,
            "session": self.session.to_dict(),
            "message": self.message,
            "next_step": self.next_step,
        }
        if self.error_code:
            out["code"] = self.error_code
        return out


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

class ScanSessionStore(abc.ABC):
    """Keyed session storage with explicit expiry."""

    @abc.abstractmethod
    def get(self, session_id: str) -> ScanSession | None:
        """Return the stored session, expired or not."""

    @abc.abstractmethod
    def put(self, session: ScanSession) -> None:
        ...

    @abc.abstractmethod
    def delete(self, session_id: str) -> bool:
        ...

    @abc.abstractmethod
    def all(self) -> list[ScanSession]:
        ...

    @abc.abstractmethod
    def purge_expired(self, now: datetime) -> int:
        """Remove every session expired as of `now`; return how many."""


class InMemoryScanSessionStore(ScanSessionStore):
    def __init__(self):
        self._sessions: dict[str, ScanSession] = {}
        self._lock = threading.Lock()

    def get(self, session_id):
        with self._lock:
            return self._sessions.get(session_id)

    def put(self, session):
        with self._lock:
            self._sessions[session.session_id] = session

    def delete(self, session_id):
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def all(self):
        with self._lock:
            return list(self._sessions.values())

    def purge_expired(self, now):
        with self._lock:
            expired = [sid for sid, s in self._sessions.items() if s.is_expired(now)]
            for sid in expired:
                del self._sessions[sid]
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


class SessionSweeper:
    """Re-arming threading.Timer that purges expired sessions every `interval` seconds."""

    def __init__(self, service: "ScanSessionService", interval: float, logger=None):
        self.service = service
        self.interval = interval
        self.logger = logger
        self._timer: threading.Timer | None = None
        self._lock = threading.Lock()
        self._stopped = True

    def start(self) -> None:
        with self._lock:
            self._stopped = False
            self._schedule()

    def stop(self) -> None:
        with self._lock:
            self._stopped = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    @property
    def running(self) -> bool:
        return not self._stopped

    def _schedule(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = threading.Timer(self.interval, self._tick)
        self._timer.daemon = True
        self._timer.start()

    def _tick(self) -> None:
        try:
            removed = self.service.sweep()
            if removed and self.logger is not None:
                self.logger.debug("Scan session sweep evicted %d expired session(s)", removed)
        except Exception:
            if self.logger is not None:
                self.logger.exception("Scan session sweep failed; will retry next interval")
        finally:
            with self._lock:
                if not self._stopped:
                    self._schedule()


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

def _new_session_id() -> str:
    return f"scan_{secrets.token_hex(8)}"


def _product_snapshot(product) -> dict:
    return {
        "id": product.id,
        "name": product.name,
        "barcode": product.barcode,
        "requires_prescription": product.requires_prescription,
    }


def _lot_snapshot(lot) -> dict:
    return {
        "id": lot.id,
        "product_id": lot.product_id,
        "lot_number": lot.lot_number,
        "lot_barcode": lot.lot_barcode,
        "expiration_date": lot.expiration_date.isoformat(),
        "available_quantity": lot.available_quantity,
    }


class ScanSessionService:
    def __init__(
        self,
        store: ScanSessionStore | None = None,
        *,
        ttl_seconds: int = 300,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store if store is not None else InMemoryScanSessionStore()
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock

    def start(self) -> ScanResult:
        now = self.clock()
        session = ScanSession(
            session_id=_new_session_id(),
            step=ScanStep.PRODUCT,
            created_at=now,
            expires_at=now + self.ttl,
        )
        self.store.put(session)
        return ScanResult(
            success=True,
            session=session,
            message="Session started. Scan the product barcode.",
            next_step=ScanStep.PRODUCT.value,
        )

    def get_session(self, session_id: str) -> ScanSession | None:
        """Live session or None; expired sessions are evicted on read."""
        session = self.store.get(session_id)
        if session is None:
            return None
        if session.is_expired(self.clock()):
            self.store.delete(session_id)
            return None
        return session

    def _require_live(self, session_id: str) -> ScanSession:
        session = self.store.get(session_id)
        if session is None:
            raise NotFoundError("Scan session not found", details={"session_id": session_id})
        if session.is_expired(self.clock()):
            self.store.delete(session_id)
            raise SessionExpiredError(
                "Scan session expired; start a new session",
                details={"session_id": session_id},
            )
        return session

    def submit_scan(self, session_id: str, code: str) -> ScanResult:
        """
        Feed one barcode into the session.

        Missing sessions raise NotFoundError, expired ones SessionExpiredError.
        Scan-level failures come back as ScanResult(success=False) with an
        error_code and leave the session unchanged.
        """
        session = self._require_live(session_id)
        code = (code or "").strip()

        if session.step == ScanStep.COMPLETE:
            return self._fail(session, "Session is already complete; finalize or cancel it.", StateConflictError.code)
        if not code:
            return self._fail(session, "Barcode is required.", "VALIDATION")
        if session.step == ScanStep.PRODUCT:
            return self._scan_product(session, code)
        return self._scan_lot(session, code)

    def _fail(self, session: ScanSession, message: str, code: str) -> ScanResult:
        return ScanResult(
            success=False,
            session=session,
            message=message,
            next_step=None if session.step == ScanStep.COMPLETE else session.step.value,
            error_code=code,
        )

    def _scan_product(self, session: ScanSession, code: str) -> ScanResult:
        product = find_product_by_barcode(code)
        if product is None:
            if find_lot_by_barcode(code) is not None:
                return self._fail(
                    session,
                    "That is a lot barcode. Scan the product barcode first.",
                    StateConflictError.code,
                )
            return self._fail(session, "Product not found. Check the barcode and try again.", NotFoundError.code)
        if not product.is_active:
            return self._fail(session, "Product is inactive.", NotFoundError.code)

        updated = replace(
            session,
            step=ScanStep.LOT,
            product=_product_snapshot(product),
            expires_at=self.clock() + self.ttl,
        )
        self.store.put(updated)
        return ScanResult(
            success=True,
            session=updated,
            message=f"Product identified: {product.name}. Now scan the lot barcode.",
            next_step=ScanStep.LOT.value,
        )

    def _scan_lot(self, session: ScanSession, code: str) -> ScanResult:
        lot = find_lot_by_barcode(code)
        if lot is None:
            return self._fail(session, "Lot not found. Check the lot barcode and try again.", NotFoundError.code)
        if not lot.is_active:
            return self._fail(session, "Lot is inactive.", NotFoundError.code)
        if lot.product_id != session.product["id"]:
            return self._fail(
                session,
                "The scanned lot does not belong to the selected product.",
                StateConflictError.code,
            )
        if lot.available_quantity <= 0:
            return self._fail(session, "Lot has no available stock.", "INSUFFICIENT_STOCK")
        if lot.expiration_date < today():
            return self._fail(session, "Lot is expired and cannot be used.", StateConflictError.code)

        updated = replace(session, step=ScanStep.COMPLETE, lot=_lot_snapshot(lot))
        self.store.put(updated)
        return ScanResult(
            success=True,
            session=updated,
            message=f"Lot identified: {lot.lot_number}. Verification complete.",
            next_step="FINALIZE",
        )

    def validate_complete(self, session_id: str) -> dict:
        session = self.get_session(session_id)
        if session is None:
            return {"valid": False, "message": "Scan session not found or expired."}
        if session.step != ScanStep.COMPLETE:
            return {"valid": False, "message": "Two-scan verification is not complete.", "step": session.step.value}
        return {
            "valid": True,
            "product": session.product,
            "lot": session.lot,
            "message": "Session is complete and valid.",
        }

    def finalize(self, session_id: str) -> dict:
        """Hand back the verified product/lot pair and drop the session."""
        session = self._require_live(session_id)
        if session.step != ScanStep.COMPLETE:
            raise StateConflictError(
                "Two-scan verification is not complete",
                details={"session_id": session_id, "step": session.step.value},
            )
        self.store.delete(session_id)
        return {"product": session.product, "lot": session.lot}

    def cancel(self, session_id: str) -> bool:
        return self.store.delete(session_id)

    def list_active(self) -> list[ScanSession]:
        now = self.clock()
        self.store.purge_expired(now)
        return sorted(self.store.all(), key=lambda s: s.created_at)

    def sweep(self) -> int:
        return self.store.purge_expired(self.clock())


def init_scan_sessions(app, store: ScanSessionStore | None = None) -> ScanSessionService:
    service = ScanSessionService(store, ttl_seconds=app.config["SCAN_SESSION_TTL_SECONDS"])
    app.extensions["scan_sessions"] = service

    if app.config.get("SCAN_SESSION_SWEEPER_ENABLED") and not app.config.get("TESTING"):
        sweeper = SessionSweeper(service, app.config["SCAN_SESSION_SWEEP_SECONDS"], logger=app.logger)
        sweeper.start()
        app.extensions["scan_session_sweeper"] = sweeper

    return service


def get_scan_sessions() -> ScanSessionService:
    return current_app.extensions["scan_sessions"]
