"""
Tests for the downtime ledger and the return-to-production gate.

Closing an order flagged for return to production must be refused until the
equipment is confirmed back in production and no downtime interval is open.
"""
import pytest
from datetime import timedelta

from ot_lifecycle.models.audit import AuditEvent, AuditEventType
from ot_lifecycle.models.domain import DowntimeLog, FailureOccurrence
from ot_lifecycle.models.enums import DowntimeCategory, Priority, WorkOrderStatus
from ot_lifecycle.services.errors import (
    InvalidStateError,
    NotFoundError,
    ReturnToProductionRequiredError,
    TransitionConflictError,
)
from ot_lifecycle.services import downtime


@pytest.fixture
def stopped_line_order(sm, supervisor, technician, downtime_failure):
    """In-progress work order raised from a failure that stopped the line."""
    wo = sm.create_work_order(supervisor, title="Motor principal detenido", machine_id=7,
                              failure_occurrence_ids=[downtime_failure.id])
    sm.assign(wo.id, technician.user_id, supervisor)
    return sm.start_work_order(wo.id, technician)


class TestIntakeFlags:
    def test_failure_that_caused_downtime_opens_a_log(self, db_session, sm, supervisor, downtime_failure, clock):
        wo = sm.create_work_order(supervisor, title="Parada", failure_occurrence_ids=[downtime_failure.id])

        assert wo.requires_return_to_production is True
        assert wo.return_to_production_confirmed is False
        assert wo.priority == Priority.P1  # taken from the failure
        log = downtime.find_open_log(db_session, wo.id)
        assert log is not None
        assert log.started_at == clock.now
        assert log.machine_id == wo.machine_id

    def test_safety_failure_flags_without_opening_downtime(self, db_session, sm, supervisor):
        failure = FailureOccurrence(company_id=10, machine_id=7, title="Guarda suelta", is_safety_related=True)
        db_session.add(failure)
        db_session.commit()

        wo = sm.create_work_order(supervisor, title="Guarda", failure_occurrence_ids=[failure.id])

        assert wo.requires_return_to_production is True
        assert downtime.find_open_log(db_session, wo.id) is None

    def test_observations_do_not_flag(self, db_session, sm, supervisor):
        failure = FailureOccurrence(company_id=10, machine_id=7, title="Observación", caused_downtime=True,
                                    is_observation=True)
        db_session.add(failure)
        db_session.commit()

        wo = sm.create_work_order(supervisor, title="Observación", failure_occurrence_ids=[failure.id])

        assert wo.requires_return_to_production is False
        assert downtime.find_open_log(db_session, wo.id) is None

    def test_failure_from_another_company_is_not_found(self, sm, outsider, downtime_failure):
        with pytest.raises(NotFoundError):
            sm.create_work_order(outsider, title="Ajena", failure_occurrence_ids=[downtime_failure.id])

    def test_failure_records_are_not_mutated(self, db_session, sm, supervisor, technician, close_payload,
                                             stopped_line_order, downtime_failure):
        sm.confirm_return_to_production(stopped_line_order.id, technician)
        sm.close_work_order(stopped_line_order.id, close_payload, technician)

        db_session.refresh(downtime_failure)
        assert downtime_failure.caused_downtime is True
        assert downtime_failure.priority == Priority.P1


class TestCloseGuard:
    def test_close_refused_while_downtime_open(self, db_session, sm, technician, close_payload, stopped_line_order):
        """
        INVARIANT: No CLOSED while a downtime log is open on a flagged order.
        """
        open_log = downtime.find_open_log(db_session, stopped_line_order.id)

        with pytest.raises(ReturnToProductionRequiredError) as exc_info:
            sm.close_work_order(stopped_line_order.id, close_payload, technician)

        error = exc_info.value
        assert error.kind == "RETURN_TO_PRODUCTION_REQUIRED"
        assert error.blockers == ["OPEN_DOWNTIME", "NOT_CONFIRMED"]
        assert error.open_downtime_log_id == open_log.id
        assert stopped_line_order.status == WorkOrderStatus.IN_PROGRESS
        assert stopped_line_order.completed_date is None

    def test_refused_close_is_recorded(self, db_session, sm, technician, close_payload, stopped_line_order):
        """
        INVARIANT: Refusals are never silent.
        """
        with pytest.raises(ReturnToProductionRequiredError):
            sm.close_work_order(stopped_line_order.id, close_payload, technician)

        refusal = db_session.query(AuditEvent).filter(
            AuditEvent.event_type == AuditEventType.CLOSE_REFUSED_RETURN_TO_PRODUCTION
        ).one()
        assert refusal.work_order_id == stopped_line_order.id
        assert refusal.user_id == technician.user_id
        assert refusal.payload_json["blockers"] == ["OPEN_DOWNTIME", "NOT_CONFIRMED"]

    def test_unconfirmed_without_open_log_blocks_only_on_confirmation(self, db_session, sm, supervisor, technician,
                                                                      close_payload):
        failure = FailureOccurrence(company_id=10, machine_id=7, title="Guarda suelta", is_safety_related=True)
        db_session.add(failure)
        db_session.commit()
        wo = sm.create_work_order(supervisor, title="Guarda", failure_occurrence_ids=[failure.id])
        sm.assign(wo.id, technician.user_id, supervisor)
        sm.start_work_order(wo.id, technician)

        with pytest.raises(ReturnToProductionRequiredError) as exc_info:
            sm.close_work_order(wo.id, close_payload, technician)
        assert exc_info.value.blockers == ["NOT_CONFIRMED"]
        assert exc_info.value.open_downtime_log_id is None

        sm.confirm_return_to_production(wo.id, technician)
        closed = sm.close_work_order(wo.id, close_payload, technician)

        assert closed.status == WorkOrderStatus.CLOSED

    def test_close_succeeds_once_both_conditions_clear(self, sm, technician, close_payload, stopped_line_order, clock):
        clock.advance(minutes=95)
        sm.confirm_return_to_production(stopped_line_order.id, technician, notes="Línea produciendo")

        wo = sm.close_work_order(stopped_line_order.id, close_payload, technician)

        assert wo.status == WorkOrderStatus.CLOSED
        assert wo.completed_date == clock.now

    def test_unflagged_order_closes_without_confirmation(self, sm, technician, close_payload, in_progress_work_order):
        wo = sm.close_work_order(in_progress_work_order.id, close_payload, technician)

        assert wo.status == WorkOrderStatus.CLOSED
        assert wo.return_to_production_confirmed is False


class TestConfirmReturnToProduction:
    def test_confirm_closes_the_open_log(self, db_session, sm, technician, stopped_line_order, clock):
        """
        Scenario: confirming return to production closes the open log with its
        duration in minutes and sets the confirmation flag.
        """
        log = downtime.find_open_log(db_session, stopped_line_order.id)
        started = log.started_at
        clock.advance(minutes=95)

        wo = sm.confirm_return_to_production(stopped_line_order.id, technician, notes="Ok")

        db_session.refresh(log)
        assert log.ended_at == clock.now
        assert log.total_minutes == 95
        assert log.ended_at - started == timedelta(minutes=95)
        assert log.returned_by_id == technician.user_id
        assert log.return_notes == "Ok"
        assert wo.return_to_production_confirmed is True
        assert wo.return_to_production_confirmed_at == clock.now
        assert wo.return_to_production_confirmed_by_id == technician.user_id

    def test_total_minutes_round_half_up(self, db_session, sm, technician, stopped_line_order, clock):
        clock.advance(minutes=90, seconds=30)

        sm.confirm_return_to_production(stopped_line_order.id, technician)

        log = db_session.query(DowntimeLog).filter(DowntimeLog.work_order_id == stopped_line_order.id).one()
        assert log.total_minutes == 91

    def test_confirm_does_not_resume_waiting(self, db_session, sm, technician, stopped_line_order, clock):
        """
        INVARIANT: WAITING and open downtime are independent.
        """
        sm.enter_waiting(stopped_line_order.id, "SPARE_PART", "Esperando rodamiento SKF 6205",
                         clock.now + timedelta(days=3), technician)

        wo = sm.resume(stopped_line_order.id, technician)
        assert downtime.find_open_log(db_session, wo.id) is not None

        sm.enter_waiting(wo.id, "SPARE_PART", "Esperando rodamiento SKF 6205", clock.now + timedelta(days=3),
                         technician)
        wo = sm.confirm_return_to_production(wo.id, technician)

        assert wo.status == WorkOrderStatus.WAITING
        assert downtime.find_open_log(db_session, wo.id) is None

    def test_nothing_to_confirm_is_invalid_state(self, sm, technician, in_progress_work_order):
        with pytest.raises(InvalidStateError):
            sm.confirm_return_to_production(in_progress_work_order.id, technician)

    def test_unknown_log_id_is_not_found(self, sm, technician, stopped_line_order):
        with pytest.raises(NotFoundError):
            sm.confirm_return_to_production(stopped_line_order.id, technician, downtime_log_id=9999)

    def test_already_closed_log_is_invalid_state(self, db_session, sm, technician, stopped_line_order):
        log = downtime.find_open_log(db_session, stopped_line_order.id)
        sm.confirm_return_to_production(stopped_line_order.id, technician)

        with pytest.raises(InvalidStateError):
            sm.confirm_return_to_production(stopped_line_order.id, technician, downtime_log_id=log.id)

    def test_log_closed_concurrently_is_a_conflict(self, db_session, stopped_line_order, clock):
        log = downtime.find_open_log(db_session, stopped_line_order.id)
        downtime.close_log(db_session, log, ended_at=clock.now + timedelta(minutes=5))
        db_session.commit()

        # A stale copy that still believes the interval is open
        stale = DowntimeLog(id=log.id, started_at=log.started_at, ended_at=None)
        with pytest.raises(TransitionConflictError):
            downtime.close_log(db_session, stale, ended_at=clock.now + timedelta(minutes=10))


class TestManualDowntime:
    def test_open_downtime_rearms_the_gate(self, db_session, sm, technician, close_payload, in_progress_work_order,
                                           clock):
        log = sm.open_downtime(in_progress_work_order.id, technician, category=DowntimeCategory.PLANNED)

        assert log.is_open
        assert log.category == DowntimeCategory.PLANNED
        db_session.refresh(in_progress_work_order)
        assert in_progress_work_order.requires_return_to_production is True
        assert in_progress_work_order.return_to_production_confirmed is False

        with pytest.raises(ReturnToProductionRequiredError):
            sm.close_work_order(in_progress_work_order.id, close_payload, technician)

        clock.advance(minutes=20)
        sm.confirm_return_to_production(in_progress_work_order.id, technician)
        wo = sm.close_work_order(in_progress_work_order.id, close_payload, technician)
        assert wo.status == WorkOrderStatus.CLOSED

    def test_at_most_one_open_log(self, sm, technician, stopped_line_order):
        """
        INVARIANT: At most one downtime log is open per work order.
        """
        with pytest.raises(InvalidStateError) as exc_info:
            sm.open_downtime(stopped_line_order.id, technician)

        assert "open_downtime_log_id" in exc_info.value.details

    def test_downtime_minutes_add_up(self, db_session, sm, technician, stopped_line_order, clock):
        clock.advance(minutes=30)
        sm.confirm_return_to_production(stopped_line_order.id, technician)
        sm.open_downtime(stopped_line_order.id, technician)
        clock.advance(minutes=15)
        sm.confirm_return_to_production(stopped_line_order.id, technician)

        db_session.refresh(stopped_line_order)
        assert downtime.total_downtime_minutes(stopped_line_order) == 45

    def test_cannot_open_downtime_on_closed_order(self, sm, technician, close_payload, in_progress_work_order):
        sm.close_work_order(in_progress_work_order.id, close_payload, technician)

        with pytest.raises(InvalidStateError):
            sm.open_downtime(in_progress_work_order.id, technician)
