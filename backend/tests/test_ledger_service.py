"""
Movement ledger tests.

Verifies:
- Stored lot quantities can be rebuilt from the movements alone
- The ledger refuses updates and deletes
- Movement shape validation and query filters
"""

from datetime import timedelta

import pytest
from sqlalchemy import update

from pharmastock.errors import NotFoundError, ValidationError
from pharmastock.models import Lot, LotMovement, MovementKind
from pharmastock.services import ledger_service, reservation_service
from pharmastock.time_utils import utcnow


class TestReconstruction:
    def test_balance_matches_after_mixed_activity(self, db_session, product, make_lot):
        lot = make_lot(product, quantity=20)
        reservation_service.reserve(lot.id, 8, actor="tester", sale_ref="S-1")
        reservation_service.confirm(lot.id, 5, sale_ref="S-1", actor="tester")
        reservation_service.release(lot.id, 3, actor="tester", sale_ref="S-1")
        reservation_service.adjust(lot.id, 12, reason="Recount", actor="tester")
        reservation_service.reserve(lot.id, 2, actor="tester")
        reservation_service.return_to_lot(lot.id, 1, sale_ref="S-1", actor="tester")

        balance = ledger_service.lot_balance(lot.id)
        assert balance.consistent
        assert balance.ledger_current == 13
        assert balance.ledger_reserved == 2
        assert balance.ledger_available == 11
        assert balance.movement_count == 7

    def test_history_timeline_is_oldest_first(self, db_session, product, make_lot):
        lot = make_lot(product, quantity=5)
        reservation_service.reserve(lot.id, 2, actor="tester")

        history = ledger_service.lot_history(lot.id)
        assert [m["kind"] for m in history["timeline"]] == ["ENTRY", "RESERVE"]
        assert history["timeline"][-1]["reserved_after"] == 2
        assert history["balance"]["consistent"] is True

    def test_inconsistency_detected(self, db_session, product, make_lot):
        lot = make_lot(product, quantity=5)
        # Simulate an out-of-band write that bypassed the protocol
        db_session.execute(
            update(Lot).where(Lot.id == lot.id).values(current_quantity=4)
        )
        db_session.commit()

        bad = ledger_service.find_inconsistent_lots()
        assert [b.lot_id for b in bad] == [lot.id]
        assert bad[0].stored_current == 4
        assert bad[0].ledger_current == 5

    def test_history_for_missing_lot(self, db_session):
        with pytest.raises(NotFoundError):
            ledger_service.lot_history(777)


class TestAppendOnly:
    def test_update_refused(self, db_session, product, make_lot):
        lot = make_lot(product)
        movement = db_session.query(LotMovement).filter_by(lot_id=lot.id).one()
        movement.reason = "rewritten"
        with pytest.raises(RuntimeError):
            db_session.commit()
        db_session.rollback()

    def test_delete_refused(self, db_session, product, make_lot):
        lot = make_lot(product)
        movement = db_session.query(LotMovement).filter_by(lot_id=lot.id).one()
        db_session.delete(movement)
        with pytest.raises(RuntimeError):
            db_session.commit()
        db_session.rollback()


class TestAppendMovement:
    def test_shape_mismatch_rejected(self, db_session, product, make_lot):
        lot = make_lot(product)
        with pytest.raises(ValidationError):
            ledger_service.append_movement(
                lot=lot, kind=MovementKind.CONSUME, quantity=2, current_delta=-2, actor="tester"
            )

    def test_requires_actor(self, db_session, product, make_lot):
        lot = make_lot(product)
        with pytest.raises(ValidationError):
            ledger_service.append_movement(
                lot=lot, kind=MovementKind.ENTRY, quantity=1, current_delta=1, actor=""
            )


class TestQueries:
    def test_filter_by_sale_ref_and_kind(self, db_session, product, make_lot):
        a = make_lot(product, quantity=10)
        b = make_lot(product, quantity=10)
        reservation_service.reserve(a.id, 2, actor="tester", sale_ref="S-7")
        reservation_service.reserve(b.id, 1, actor="tester", sale_ref="S-7")
        reservation_service.reserve(b.id, 1, actor="tester", sale_ref="S-8")
        reservation_service.confirm(a.id, 2, sale_ref="S-7", actor="tester")

        for_sale = ledger_service.list_movements_for_sale("S-7")
        assert len(for_sale) == 3
        assert for_sale[0].kind == "CONSUME"

        reserves = ledger_service.list_movements(sale_ref="S-7", kind="reserve")
        assert {m.lot_id for m in reserves} == {a.id, b.id}

    def test_date_range_and_limit(self, db_session, product, make_lot):
        lot = make_lot(product, quantity=10)
        for _ in range(3):
            reservation_service.reserve(lot.id, 1, actor="tester")

        now = utcnow()
        in_range = ledger_service.list_movements(lot_id=lot.id, start=now - timedelta(minutes=5), end=now + timedelta(minutes=5))
        assert len(in_range) == 4
        assert ledger_service.list_movements(lot_id=lot.id, start=now + timedelta(hours=1)) == []
        assert len(ledger_service.list_movements(lot_id=lot.id, limit=2)) == 2

    def test_unknown_kind_rejected(self, db_session):
        with pytest.raises(ValidationError):
            ledger_service.list_movements(kind="TELEPORT")

    def test_inverted_range_rejected(self, db_session):
        now = utcnow()
        with pytest.raises(ValidationError):
            ledger_service.list_movements(start=now, end=now - timedelta(days=1))

    def test_movements_for_missing_lot(self, db_session):
        with pytest.raises(NotFoundError):
            ledger_service.list_movements_for_lot(31337)
