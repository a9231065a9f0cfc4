"""Tests for the guided close contract and prior-solution suggestions."""
import pytest
from datetime import timedelta

from ot_lifecycle.models.domain import FailureOccurrence, SolutionApplied
from ot_lifecycle.models.enums import ClosingMode, FixType, Outcome, WorkOrderStatus
from ot_lifecycle.services.errors import InvalidStateError, WorkOrderValidationError
from ot_lifecycle.services.guided_close import ClosePayload, derive_title, find_prior_solutions, parse_close_payload


def _in_progress(sm, supervisor, technician, title="Falla", machine_id=7, component_id=None):
    wo = sm.create_work_order(supervisor, title=title, machine_id=machine_id, component_id=component_id)
    sm.assign(wo.id, technician.user_id, supervisor)
    return sm.start_work_order(wo.id, technician)


class TestClosePayload:
    def test_minimum_payload_defaults(self, close_payload):
        close_payload.pop("fix_type")
        data = parse_close_payload(close_payload)

        assert data.closing_mode == ClosingMode.MINIMUM
        assert data.fix_type == FixType.DEFINITIVE
        assert data.outcome == Outcome.WORKED

    def test_member_names_are_accepted(self, close_payload):
        close_payload.update(outcome="DID_NOT_WORK", fix_type="PATCH", closing_mode="professional")
        data = parse_close_payload(close_payload)

        assert data.outcome == Outcome.DID_NOT_WORK
        assert data.fix_type == FixType.PATCH
        assert data.closing_mode == ClosingMode.PROFESSIONAL

    def test_all_field_errors_reported(self):
        with pytest.raises(WorkOrderValidationError) as exc_info:
            parse_close_payload({"diagnosis": "corto", "solution": "x", "outcome": "MAYBE", "effectiveness": 9})

        fields = {e["field"] for e in exc_info.value.errors}
        assert fields == {"diagnosis", "solution", "outcome", "effectiveness"}

    def test_non_positive_minutes_rejected(self, close_payload):
        close_payload["actual_minutes"] = 0
        with pytest.raises(WorkOrderValidationError):
            parse_close_payload(close_payload)

    def test_title_derived_from_solution(self, close_payload):
        close_payload["solution"] = "Reemplazo de rodamiento " * 10
        data = parse_close_payload(close_payload)

        title = derive_title(data, max_length=100)

        assert len(title) == 100
        assert data.solution.startswith(title)

    def test_explicit_title_wins(self, close_payload):
        close_payload["title"] = "Cambio de rodamiento"
        assert derive_title(ClosePayload(**close_payload)) == "Cambio de rodamiento"


class TestGuidedClose:
    def test_close_records_closure_fields(self, db_session, sm, technician, close_payload, in_progress_work_order,
                                          clock):
        """
        INVARIANT: CLOSED implies completed_date set and not before created_at.
        """
        clock.advance(hours=2)
        wo = sm.close_work_order(in_progress_work_order.id, close_payload, technician)

        assert wo.status == WorkOrderStatus.CLOSED
        assert wo.completed_date is not None
        assert wo.completed_date >= wo.created_at
        assert wo.diagnosis_notes == close_payload["diagnosis"]
        assert wo.work_performed_notes == close_payload["solution"]
        assert wo.result_notes == "FUNCIONÓ"
        assert wo.fix_type == FixType.DEFINITIVE
        assert wo.closing_mode == ClosingMode.MINIMUM
        assert wo.closed_title == close_payload["solution"]
        assert wo.actual_minutes == 45
        assert wo.closed_by_id == technician.user_id

    def test_close_writes_solution_applied(self, db_session, sm, technician, close_payload, in_progress_work_order):
        close_payload.update(
            closing_mode="PROFESSIONAL",
            confirmed_cause="Falta de lubricación",
            final_component_id=3,
            effectiveness=4,
        )

        wo = sm.close_work_order(in_progress_work_order.id, close_payload, technician)

        solution = db_session.query(SolutionApplied).filter(SolutionApplied.work_order_id == wo.id).one()
        assert solution.outcome == Outcome.WORKED
        assert solution.final_component_id == 3
        assert solution.effectiveness == 4
        assert solution.performed_by_id == technician.user_id
        assert wo.root_cause == "Falta de lubricación"
        assert wo.closing_mode == ClosingMode.PROFESSIONAL

    def test_long_solution_is_stored_untouched(self, sm, technician, close_payload, in_progress_work_order):
        close_payload["solution"] = "Se desmontó el reductor y se cambiaron los sellos. " * 5

        wo = sm.close_work_order(in_progress_work_order.id, close_payload, technician)

        assert len(wo.closed_title) == 100
        assert wo.solution == close_payload["solution"].strip()

    def test_invalid_payload_leaves_status_unchanged(self, sm, technician, in_progress_work_order):
        with pytest.raises(WorkOrderValidationError):
            sm.close_work_order(in_progress_work_order.id, {"diagnosis": "corto"}, technician)

        assert in_progress_work_order.status == WorkOrderStatus.IN_PROGRESS
        assert in_progress_work_order.completed_date is None

    def test_close_from_pending_is_invalid_state(self, sm, technician, close_payload, pending_work_order):
        with pytest.raises(InvalidStateError):
            sm.close_work_order(pending_work_order.id, close_payload, technician)

    def test_state_checked_before_payload(self, sm, technician, close_payload, in_progress_work_order):
        sm.close_work_order(in_progress_work_order.id, close_payload, technician)

        with pytest.raises(InvalidStateError) as exc_info:
            sm.close_work_order(in_progress_work_order.id, {}, technician)

        assert exc_info.value.kind == "INVALID_STATE"

    def test_close_from_waiting(self, sm, technician, close_payload, in_progress_work_order, clock):
        """
        Scenario: a WAITING order may be closed once the payload is valid and
        nothing blocks return to production.
        """
        sm.enter_waiting(in_progress_work_order.id, "SPARE_PART", "Esperando rodamiento SKF 6205",
                         clock.now + timedelta(days=3), technician)

        with pytest.raises(WorkOrderValidationError):
            sm.close_work_order(in_progress_work_order.id, {"outcome": "FUNCIONÓ"}, technician)

        wo = sm.close_work_order(in_progress_work_order.id, close_payload, technician)
        assert wo.status == WorkOrderStatus.CLOSED

    def test_approved_qa_moves_to_returned_to_production(self, db_session, sm, technician, close_payload,
                                                         in_progress_work_order):
        in_progress_work_order.qa_required = True
        in_progress_work_order.qa_status = "APPROVED"
        db_session.commit()

        wo = sm.close_work_order(in_progress_work_order.id, close_payload, technician)

        assert wo.qa_status == "RETURNED_TO_PRODUCTION"


class TestPriorSolutions:
    def test_suggestions_come_from_same_machine_newest_first(self, db_session, sm, supervisor, technician,
                                                             close_payload, clock):
        first = _in_progress(sm, supervisor, technician, title="Primera")
        sm.close_work_order(first.id, close_payload, technician)
        clock.advance(days=1)
        second = _in_progress(sm, supervisor, technician, title="Segunda")
        sm.close_work_order(second.id, dict(close_payload, solution="Se cambió la correa de transmisión"), technician)
        elsewhere = _in_progress(sm, supervisor, technician, title="Otra máquina", machine_id=8)
        sm.close_work_order(elsewhere.id, close_payload, technician)

        current = sm.create_work_order(supervisor, title="Nueva falla", machine_id=7)
        suggestions = find_prior_solutions(db_session, current)

        assert [s.work_order_id for s in suggestions] == [second.id, first.id]

    def test_component_matches_first(self, db_session, sm, supervisor, technician, close_payload, clock):
        matching = _in_progress(sm, supervisor, technician, title="Rodamiento")
        sm.close_work_order(matching.id, dict(close_payload, final_component_id=5), technician)
        clock.advance(days=1)
        other = _in_progress(sm, supervisor, technician, title="Correa")
        sm.close_work_order(other.id, dict(close_payload, final_component_id=3), technician)

        current = sm.create_work_order(supervisor, title="Ruido", machine_id=7, component_id=5)
        suggestions = find_prior_solutions(db_session, current)

        assert [s.work_order_id for s in suggestions] == [matching.id, other.id]

    def test_limit_and_no_machine(self, db_session, sm, supervisor, technician, close_payload):
        for i in range(3):
            wo = _in_progress(sm, supervisor, technician, title=f"Falla {i}")
            sm.close_work_order(wo.id, close_payload, technician)

        current = sm.create_work_order(supervisor, title="Nueva", machine_id=7)
        assert len(find_prior_solutions(db_session, current, limit=2)) == 2

        unlinked = sm.create_work_order(supervisor, title="Sin máquina")
        assert find_prior_solutions(db_session, unlinked) == []

    def test_same_failure_without_machine(self, db_session, sm, supervisor, technician, close_payload):
        failure = FailureOccurrence(company_id=10, title="Fuga recurrente en línea de aire")
        db_session.add(failure)
        db_session.commit()

        first = sm.create_work_order(supervisor, title="Fuga de aire", failure_occurrence_ids=[failure.id])
        sm.assign(first.id, technician.user_id, supervisor)
        sm.start_work_order(first.id, technician)
        sm.close_work_order(first.id, close_payload, technician)

        current = sm.create_work_order(supervisor, title="Vuelve la fuga", failure_occurrence_ids=[failure.id])
        suggestions = find_prior_solutions(db_session, current)

        assert current.machine_id is None
        assert [s.work_order_id for s in suggestions] == [first.id]
