"""
Two-scan verification session tests.

Sessions use an injected clock so TTL expiry is tested without sleeping.
"""

from datetime import datetime, timedelta

import pytest

from pharmastock.errors import NotFoundError, SessionExpiredError, StateConflictError
from pharmastock.models import Lot
from pharmastock.services import reservation_service
from pharmastock.services.scan_session_service import (
    InMemoryScanSessionStore,
    ScanSessionService,
    ScanStep,
    SessionSweeper,
)


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 3, 1, 9, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def service(clock):
    return ScanSessionService(InMemoryScanSessionStore(), ttl_seconds=300, clock=clock)


@pytest.fixture
def shelf(db_session, make_product, make_lot):
    """Two products with one barcoded lot each."""
    amox = make_product(name="Amoxicillin 500mg", barcode="7890000000011")
    dipy = make_product(name="Dipyrone 1g", barcode="7890000000028")
    amox_lot = make_lot(amox, quantity=10, lot_barcode="LOT-AMX-1")
    dipy_lot = make_lot(dipy, quantity=10, lot_barcode="LOT-DIP-1")
    return amox, dipy, amox_lot, dipy_lot


class TestTwoScanFlow:
    def test_happy_path(self, service, shelf):
        amox, _, amox_lot, _ = shelf
        sid = service.start().session.session_id

        first = service.submit_scan(sid, amox.barcode)
        assert first.success
        assert first.session.step is ScanStep.LOT
        assert first.session.product["id"] == amox.id
        assert first.next_step == "LOT"

        second = service.submit_scan(sid, "LOT-AMX-1")
        assert second.success
        assert second.session.step is ScanStep.COMPLETE
        assert second.session.lot["id"] == amox_lot.id

        check = service.validate_complete(sid)
        assert check["valid"] is True
        assert check["lot"]["lot_number"] == amox_lot.lot_number

        verified = service.finalize(sid)
        assert verified["product"]["id"] == amox.id
        assert service.get_session(sid) is None

    def test_lot_barcode_first_is_rejected(self, service, shelf):
        sid = service.start().session.session_id

        result = service.submit_scan(sid, "LOT-AMX-1")
        assert not result.success
        assert result.error_code == "STATE_CONFLICT"
        assert service.get_session(sid).step is ScanStep.PRODUCT

    def test_lot_of_other_product_is_rejected(self, service, shelf):
        amox, _, _, _ = shelf
        sid = service.start().session.session_id
        service.submit_scan(sid, amox.barcode)

        result = service.submit_scan(sid, "LOT-DIP-1")
        assert not result.success
        assert result.error_code == "STATE_CONFLICT"
        assert service.get_session(sid).step is ScanStep.LOT

    def test_unknown_product_barcode(self, service, shelf):
        sid = service.start().session.session_id
        result = service.submit_scan(sid, "0000000000000")
        assert result.error_code == "NOT_FOUND"
        assert service.get_session(sid).step is ScanStep.PRODUCT

    def test_inactive_product(self, db_session, service, shelf):
        amox, _, _, _ = shelf
        amox.is_active = False
        db_session.commit()

        sid = service.start().session.session_id
        assert service.submit_scan(sid, amox.barcode).error_code == "NOT_FOUND"

    def test_lot_without_available_stock(self, service, shelf):
        amox, _, amox_lot, _ = shelf
        reservation_service.reserve(amox_lot.id, 10, actor="tester")

        sid = service.start().session.session_id
        service.submit_scan(sid, amox.barcode)
        result = service.submit_scan(sid, "LOT-AMX-1")
        assert result.error_code == "INSUFFICIENT_STOCK"
        assert service.get_session(sid).step is ScanStep.LOT

    def test_expired_lot(self, db_session, service, make_product, make_lot):
        product = make_product(barcode="7890000000035")
        make_lot(product, quantity=5, expires_in=-1, lot_barcode="LOT-OLD")

        sid = service.start().session.session_id
        service.submit_scan(sid, "7890000000035")
        result = service.submit_scan(sid, "LOT-OLD")
        assert not result.success
        assert service.get_session(sid).step is ScanStep.LOT

    def test_complete_session_rejects_more_scans(self, service, shelf):
        amox, _, _, _ = shelf
        sid = service.start().session.session_id
        service.submit_scan(sid, amox.barcode)
        service.submit_scan(sid, "LOT-AMX-1")

        result = service.submit_scan(sid, amox.barcode)
        assert result.error_code == "STATE_CONFLICT"
        assert service.get_session(sid).step is ScanStep.COMPLETE

    def test_sessions_never_touch_stock(self, db_session, service, shelf):
        amox, _, amox_lot, _ = shelf
        sid = service.start().session.session_id
        service.submit_scan(sid, amox.barcode)
        service.submit_scan(sid, "LOT-AMX-1")
        service.finalize(sid)

        lot = db_session.get(Lot, amox_lot.id)
        db_session.refresh(lot)
        assert lot.current_quantity == 10
        assert lot.reserved_quantity == 0


class TestExpiry:
    def test_untouched_session_expires(self, service, clock, shelf):
        sid = service.start().session.session_id
        clock.advance(minutes=6)

        assert service.get_session(sid) is None
        with pytest.raises(NotFoundError):
            service.submit_scan(sid, "anything")

    def test_scan_on_expired_session_raises_expired(self, service, clock, shelf):
        sid = service.start().session.session_id
        clock.advance(seconds=301)
        with pytest.raises(SessionExpiredError):
            service.submit_scan(sid, "anything")

    def test_product_scan_renews_ttl(self, service, clock, shelf):
        amox, _, _, _ = shelf
        sid = service.start().session.session_id
        clock.advance(minutes=4)
        service.submit_scan(sid, amox.barcode)
        clock.advance(minutes=4)

        assert service.get_session(sid).step is ScanStep.LOT

    def test_sweep_evicts_only_expired(self, service, clock):
        old = service.start().session.session_id
        clock.advance(minutes=4)
        young = service.start().session.session_id
        clock.advance(minutes=2)

        assert service.sweep() == 1
        assert [s.session_id for s in service.list_active()] == [young]
        assert service.store.get(old) is None


class TestLifecycle:
    def test_cancel(self, service):
        sid = service.start().session.session_id
        assert service.cancel(sid) is True
        assert service.cancel(sid) is False
        assert service.get_session(sid) is None

    def test_finalize_incomplete_refused(self, service):
        sid = service.start().session.session_id
        with pytest.raises(StateConflictError):
            service.finalize(sid)

    def test_validate_incomplete(self, service):
        sid = service.start().session.session_id
        check = service.validate_complete(sid)
        assert check["valid"] is False
        assert check["step"] == "PRODUCT"
        assert service.validate_complete("missing")["valid"] is False

    def test_missing_session(self, service):
        with pytest.raises(NotFoundError):
            service.submit_scan("scan_missing", "123")

    def test_sweeper_start_stop(self, service):
        sweeper = SessionSweeper(service, interval=3600)
        sweeper.start()
        assert sweeper.running
        sweeper.stop()
        assert not sweeper.running


class BrokenStore(InMemoryScanSessionStore):
    def purge_expired(self, now):
        raise RuntimeError("session backend unavailable")


class RecordingLogger:
    def __init__(self):
        self.errors = []

    def debug(self, *args):
        pass

    def exception(self, msg, *args):
        self.errors.append(msg % args if args else msg)


class TestSweeperResilience:
    def test_failed_sweep_is_logged_and_rearmed(self, clock):
        service = ScanSessionService(BrokenStore(), ttl_seconds=300, clock=clock)
        logger = RecordingLogger()
        sweeper = SessionSweeper(service, interval=3600, logger=logger)
        sweeper.start()
        try:
            sweeper._tick()
            assert len(logger.errors) == 1
            assert sweeper.running
            assert sweeper._timer is not None and sweeper._timer.is_alive()
        finally:
            sweeper.stop()
        assert not sweeper.running
