"""
Reservation protocol tests.

Verifies:
- reserve/release/confirm/adjust keep 0 <= reserved <= current <= initial
- failed operations leave no mutation and no ledger row
- sale fulfillment reserves all-or-nothing and compensates on failure
"""

import pytest

from pharmastock.errors import (
    InsufficientStockError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from pharmastock.models import LotMovement, MovementKind
from pharmastock.services import lot_service, reservation_service
from pharmastock.services.allocation_service import AllocationLine


def movement_kinds(db_session, lot_id):
    rows = (
        db_session.query(LotMovement)
        .filter_by(lot_id=lot_id)
        .order_by(LotMovement.id.asc())
        .all()
    )
    return [m.kind for m in rows]


def fresh(lot_id):
    return lot_service.get_lot(lot_id)


# =============================================================================
# RESERVE / RELEASE
# =============================================================================


class TestReserve:
    def test_reserve_increments_reserved(self, db_session, product, make_lot):
        lot = make_lot(product, quantity=10)
        change = reservation_service.reserve(lot.id, 4, actor="tester", sale_ref="S-1")

        assert change.quantity == 4
        assert change.movement.kind == MovementKind.RESERVE.value
        assert change.movement.reserved_delta == 4
        assert change.movement.sale_ref == "S-1"

        lot = fresh(lot.id)
        assert lot.current_quantity == 10
        assert lot.reserved_quantity == 4
        assert lot.available_quantity == 6

    def test_reserve_beyond_available_leaves_no_trace(self, db_session, product, make_lot):
        lot = make_lot(product, quantity=10)
        reservation_service.reserve(lot.id, 8, actor="tester")

        with pytest.raises(InsufficientStockError) as exc:
            reservation_service.reserve(lot.id, 3, actor="tester")
        assert exc.value.details["available"] == 2

        lot = fresh(lot.id)
        assert lot.reserved_quantity == 8
        assert movement_kinds(db_session, lot.id) == ["ENTRY", "RESERVE"]

    def test_reserve_on_inactive_lot_is_not_found(self, db_session, product, make_lot):
        lot = make_lot(product)
        lot_service.deactivate_lot(lot.id, actor="tester")
        with pytest.raises(NotFoundError):
            reservation_service.reserve(lot.id, 1, actor="tester")

    def test_reserve_missing_lot(self, db_session):
        with pytest.raises(NotFoundError):
            reservation_service.reserve(999, 1, actor="tester")

    @pytest.mark.parametrize("qty", [0, -1])
    def test_reserve_non_positive_rejected(self, db_session, product, make_lot, qty):
        lot = make_lot(product)
        with pytest.raises(ValidationError):
            reservation_service.reserve(lot.id, qty, actor="tester")


class TestRelease:
    def test_reserve_then_release_restores_availability(self, db_session, product, make_lot):
        lot = make_lot(product, quantity=10)
        reservation_service.reserve(lot.id, 6, actor="tester")
        change = reservation_service.release(lot.id, 6, actor="tester")

        assert change.quantity == 6
        lot = fresh(lot.id)
        assert lot.reserved_quantity == 0
        assert lot.available_quantity == 10
        assert movement_kinds(db_session, lot.id) == ["ENTRY", "RESERVE", "RELEASE"]

    def test_release_is_clamped_to_reserved(self, db_session, product, make_lot):
        lot = make_lot(product, quantity=10)
        reservation_service.reserve(lot.id, 3, actor="tester")
        change = reservation_service.release(lot.id, 5, actor="tester")

        assert change.quantity == 3
        assert change.movement.quantity == 3
        assert fresh(lot.id).reserved_quantity == 0

    def test_release_with_nothing_reserved_is_noop(self, db_session, product, make_lot):
        lot = make_lot(product, quantity=10)
        change = reservation_service.release(lot.id, 2, actor="tester")

        assert change.quantity == 0
        assert change.movement is None
        assert movement_kinds(db_session, lot.id) == ["ENTRY"]


# =============================================================================
# CONFIRM
# =============================================================================


class TestConfirm:
    def test_confirm_after_reserve_consumes(self, db_session, product, make_lot):
        lot = make_lot(product, quantity=10)
        reservation_service.reserve(lot.id, 4, actor="tester", sale_ref="S-9")
        change = reservation_service.confirm(lot.id, 4, sale_ref="S-9", actor="tester")

        assert change.movement.kind == MovementKind.CONSUME.value
        assert change.movement.current_delta == -4
        assert change.movement.reserved_delta == -4

        lot = fresh(lot.id)
        assert lot.current_quantity == 6
        assert lot.reserved_quantity == 0
        consumes = db_session.query(LotMovement).filter_by(lot_id=lot.id, kind="CONSUME").all()
        assert len(consumes) == 1
        assert consumes[0].sale_ref == "S-9"

    def test_confirm_without_reservation_fails(self, db_session, product, make_lot):
        lot = make_lot(product, quantity=10)
        with pytest.raises(InsufficientStockError):
            reservation_service.confirm(lot.id, 1, sale_ref="S-1", actor="tester")
        assert fresh(lot.id).current_quantity == 10
        assert movement_kinds(db_session, lot.id) == ["ENTRY"]

    def test_confirm_more_than_reserved_fails(self, db_session, product, make_lot):
        lot = make_lot(product, quantity=10)
        reservation_service.reserve(lot.id, 2, actor="tester")
        with pytest.raises(InsufficientStockError):
            reservation_service.confirm(lot.id, 3, sale_ref="S-1", actor="tester")
        assert fresh(lot.id).reserved_quantity == 2

    def test_confirm_requires_sale_ref(self, db_session, product, make_lot):
        lot = make_lot(product)
        reservation_service.reserve(lot.id, 1, actor="tester")
        with pytest.raises(ValidationError):
            reservation_service.confirm(lot.id, 1, sale_ref="", actor="tester")


# =============================================================================
# ADJUST / EXPIRE / RETURN
# =============================================================================


class TestAdjust:
    def test_adjust_down_records_signed_delta(self, db_session, product, make_lot):
        lot = make_lot(product, quantity=10)
        change = reservation_service.adjust(lot.id, 7, reason="Broken vials", actor="tester")

        assert change.quantity == -3
        assert change.movement.kind == MovementKind.ADJUST.value
        assert change.movement.current_delta == -3
        assert change.movement.quantity == 3
        assert fresh(lot.id).current_quantity == 7

    def test_adjust_back_up_within_initial(self, db_session, product, make_lot):
        lot = make_lot(product, quantity=10)
        reservation_service.adjust(lot.id, 5, reason="Count", actor="tester")
        change = reservation_service.adjust(lot.id, 9, reason="Found box", actor="tester")
        assert change.movement.current_delta == 4
        assert fresh(lot.id).current_quantity == 9

    def test_adjust_below_reserved_conflicts(self, db_session, product, make_lot):
        lot = make_lot(product, quantity=10)
        reservation_service.reserve(lot.id, 6, actor="tester")
        with pytest.raises(StateConflictError):
            reservation_service.adjust(lot.id, 5, reason="Count", actor="tester")
        assert fresh(lot.id).current_quantity == 10

    @pytest.mark.parametrize("new_quantity", [-1, 11])
    def test_adjust_out_of_range_rejected(self, db_session, product, make_lot, new_quantity):
        lot = make_lot(product, quantity=10)
        with pytest.raises(ValidationError):
            reservation_service.adjust(lot.id, new_quantity, reason="Count", actor="tester")

    def test_adjust_zero_delta_rejected(self, db_session, product, make_lot):
        lot = make_lot(product, quantity=10)
        with pytest.raises(ValidationError):
            reservation_service.adjust(lot.id, 10, reason="Count", actor="tester")

    def test_adjust_requires_reason(self, db_session, product, make_lot):
        lot = make_lot(product, quantity=10)
        with pytest.raises(ValidationError):
            reservation_service.adjust(lot.id, 8, reason="  ", actor="tester")

    def test_adjust_non_string_reason_rejected(self, db_session, product, make_lot):
        lot = make_lot(product, quantity=10)
        with pytest.raises(ValidationError):
            reservation_service.adjust(lot.id, 8, reason=42, actor="tester")
        assert fresh(lot.id).current_quantity == 10


class TestExpireAndReturn:
    def test_expire_writes_off_available_only(self, db_session, product, make_lot):
        lot = make_lot(product, quantity=10, expires_in=-2)
        reservation_service.reserve(lot.id, 3, actor="tester")

        change = reservation_service.expire_lot(lot.id, actor="tester")
        assert change.quantity == 7
        assert change.movement.kind == MovementKind.EXPIRE.value

        lot = fresh(lot.id)
        assert lot.current_quantity == 3
        assert lot.reserved_quantity == 3

    def test_expire_unexpired_lot_refused(self, db_session, product, make_lot):
        lot = make_lot(product, expires_in=10)
        with pytest.raises(StateConflictError):
            reservation_service.expire_lot(lot.id, actor="tester")

    def test_return_bounded_by_consumed_quantity(self, db_session, product, make_lot):
        lot = make_lot(product, quantity=10)
        reservation_service.reserve(lot.id, 4, actor="tester", sale_ref="S-R")
        reservation_service.confirm(lot.id, 4, sale_ref="S-R", actor="tester")

        change = reservation_service.return_to_lot(lot.id, 3, sale_ref="S-R", actor="tester")
        assert change.movement.kind == MovementKind.RETURN.value
        assert fresh(lot.id).current_quantity == 9

        with pytest.raises(ValidationError):
            reservation_service.return_to_lot(lot.id, 2, sale_ref="S-R", actor="tester")

    def test_return_bound_holds_when_lot_has_room(self, db_session, product, make_lot):
        lot = make_lot(product, quantity=20)
        for sale_ref, qty in (("S-A", 3), ("S-B", 10)):
            reservation_service.reserve(lot.id, qty, actor="tester", sale_ref=sale_ref)
            reservation_service.confirm(lot.id, qty, sale_ref=sale_ref, actor="tester")

        reservation_service.return_to_lot(lot.id, 2, sale_ref="S-A", actor="tester")
        with pytest.raises(ValidationError) as exc:
            reservation_service.return_to_lot(lot.id, 2, sale_ref="S-A", actor="tester")
        assert exc.value.details["returnable"] == 1

        lot = fresh(lot.id)
        assert lot.current_quantity == 9
        returns = db_session.query(LotMovement).filter_by(lot_id=lot.id, kind="RETURN").all()
        assert [m.quantity for m in returns] == [2]

    def test_return_cannot_exceed_initial(self, db_session, product, make_lot):
        lot = make_lot(product, quantity=10)
        with pytest.raises(ValidationError):
            reservation_service.return_to_lot(lot.id, 1, actor="tester")


# =============================================================================
# SALE FULFILLMENT
# =============================================================================


class TestFulfillment:
    def test_reserve_for_sale_spreads_over_lots(self, db_session, product, make_lot):
        first = make_lot(product, quantity=5, expires_in=30)
        second = make_lot(product, quantity=10, expires_in=60)

        plan = reservation_service.reserve_for_sale(product.id, 8, sale_ref="S-100", actor="tester")
        assert plan.as_pairs() == [(first.id, 5), (second.id, 3)]
        assert fresh(first.id).reserved_quantity == 5
        assert fresh(second.id).reserved_quantity == 3

        reservation_service.confirm_reservations(plan.lines, sale_ref="S-100", actor="tester")
        assert fresh(first.id).current_quantity == 0
        assert fresh(second.id).current_quantity == 7

    def test_short_plan_reserves_nothing(self, db_session, product, make_lot):
        lot = make_lot(product, quantity=5)
        with pytest.raises(InsufficientStockError) as exc:
            reservation_service.reserve_for_sale(product.id, 8, sale_ref="S-101", actor="tester")
        assert exc.value.details["unmet_quantity"] == 3
        assert fresh(lot.id).reserved_quantity == 0
        assert movement_kinds(db_session, lot.id) == ["ENTRY"]

    def test_failed_line_releases_prior_reservations(self, db_session, product, make_lot, monkeypatch):
        first = make_lot(product, quantity=5, expires_in=30)
        second = make_lot(product, quantity=5, expires_in=60)

        real_reserve = reservation_service.reserve

        def racing_reserve(lot_id, quantity, **kwargs):
            if lot_id == second.id:
                # Someone else takes the second lot between planning and reserving
                real_reserve(lot_id, 5, actor="other-till")
            return real_reserve(lot_id, quantity, **kwargs)

        monkeypatch.setattr(reservation_service, "reserve", racing_reserve)

        with pytest.raises(InsufficientStockError):
            reservation_service.reserve_for_sale(product.id, 8, sale_ref="S-102", actor="tester")

        assert fresh(first.id).reserved_quantity == 0
        assert movement_kinds(db_session, first.id) == ["ENTRY", "RESERVE", "RELEASE"]
        assert fresh(second.id).reserved_quantity == 5

    def test_release_reservations_cancels_sale(self, db_session, product, make_lot):
        lot = make_lot(product, quantity=10)
        plan = reservation_service.reserve_for_sale(product.id, 4, sale_ref="S-103", actor="tester")
        reservation_service.release_reservations(plan.lines, sale_ref="S-103", actor="tester")

        assert fresh(lot.id).reserved_quantity == 0
        releases = db_session.query(LotMovement).filter_by(lot_id=lot.id, kind="RELEASE").all()
        assert [m.sale_ref for m in releases] == ["S-103"]

    def test_confirm_reservations_is_all_or_nothing(self, db_session, product, make_lot):
        first = make_lot(product, quantity=10)
        second = make_lot(product, quantity=10)
        reservation_service.reserve(first.id, 2, actor="tester")

        lines = [AllocationLine(first.id, 2), AllocationLine(second.id, 2)]
        with pytest.raises(InsufficientStockError):
            reservation_service.confirm_reservations(lines, sale_ref="S-104", actor="tester")

        assert fresh(first.id).current_quantity == 10
        assert fresh(first.id).reserved_quantity == 2
