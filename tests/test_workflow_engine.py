"""
Tests: WorkflowEngine step transitions.

Covers the end-to-end happy path, each step's direct and delegated paths,
duplicate creation, role checks, the tender rejection terminal path and the
supplemented queries (assignment, deactivation, listings).
"""

import pytest

from salesflow.core.exceptions import (
    ConflictError,
    DuplicateWorkflowError,
    GatingViolationError,
    StepAlreadyCompletedError,
    TerminalStateError,
    UnauthorizedError,
    ValidationError,
    WorkflowNotFoundError,
)
from salesflow.models import db as _db
from salesflow.models.workflow import (
    AssignmentStatus,
    ExternalModule,
    Priority,
    Role,
    StepDocument,
    StepOutcome,
    StepPhase,
    WorkflowStatus,
)
from salesflow.services.workflow_engine import Actor

SALES = Actor("sales1", Role.SALES)
PROJECTS = Actor("projects1", Role.PROJECTS)
FINANCE = Actor("finance1", Role.FINANCE)
PRESALES = Actor("presales1", Role.PRESALES)
QA = Actor("qa1", Role.QUALITY_ASSURANCE)
MASTER = Actor("master1", Role.MASTER)


# ── Creation ─────────────────────────────────────────────────────────────────


def test_create_starts_at_step_one(engine, dispatcher):
    result = engine.create(42, SALES)

    wf = result.workflow
    assert wf.current_step == 1
    assert wf.status == WorkflowStatus.IN_PROGRESS
    assert wf.created_by == "sales1"
    assert len(wf.steps) == 8
    assert result.step.step_number == 1
    assert [e.title for e in result.events] == ["Project Workflow Started"]
    assert dispatcher.titles == ["Project Workflow Started"]


def test_create_rejects_second_active_workflow_for_project(engine):
    engine.create(42, SALES)
    with pytest.raises(DuplicateWorkflowError) as exc_info:
        engine.create(42, SALES)
    assert exc_info.value.project_id == 42


def test_deactivated_workflow_frees_the_project(engine):
    first = engine.create(42, SALES).workflow.id
    engine.deactivate(first, MASTER)

    with pytest.raises(WorkflowNotFoundError):
        engine.get_workflow(first)

    second = engine.create(42, SALES).workflow
    assert second.id != first
    assert engine.get_workflow_for_project(42).id == second.id


def test_create_requires_sales_role(engine):
    with pytest.raises(UnauthorizedError):
        engine.create(42, FINANCE)


# ── End-to-end ───────────────────────────────────────────────────────────────


def test_end_to_end_happy_path(engine, dispatcher, exporter, doc):
    wf_id = engine.create(7, SALES).workflow.id

    assert engine.complete_site_survey(wf_id, SALES, doc("survey.pdf")).workflow.current_step == 2
    assert engine.mark_selection_design_not_needed(wf_id, SALES).workflow.current_step == 3

    engine.request_bank_guarantee(wf_id, SALES)
    assert engine.get_workflow(wf_id).current_step == 3
    assert engine.submit_bank_guarantee(wf_id, FINANCE, doc("guarantee.pdf")).workflow.current_step == 4

    assert engine.mark_no_missing_items(wf_id, SALES).workflow.current_step == 5

    engine.mark_tender_accepted(wf_id, SALES)
    assert engine.get_workflow(wf_id).current_step == 5
    assert engine.notify_project_completion(wf_id, PROJECTS).workflow.current_step == 6

    assert engine.confirm_project_finished(wf_id, SALES, doc("cost.xlsx")).workflow.current_step == 7
    assert engine.mark_after_sales_not_needed(wf_id, SALES).workflow.current_step == 8

    result = engine.complete_workflow(wf_id, SALES)
    wf = result.workflow
    assert wf.status == WorkflowStatus.COMPLETED
    assert wf.current_step == 8
    assert wf.completed_at is not None
    assert wf.last_updated_by == "sales1"
    assert all(s.completed for s in wf.steps)

    assert dispatcher.titles == [
        "Project Workflow Started",
        "Site Survey Completed",
        "Selection & Design Not Needed",
        "Bank Guarantee Request",
        "Bank Guarantee Completed",
        "No Missing Items",
        "Project Start - Tender Accepted",
        "Project Work Completed",
        "Project Finished",
        "After-Sales Check Not Needed",
        "Project Workflow Completed",
    ]
    exporter.export_completed.assert_called_once()
    assert StepDocument.query.filter_by(workflow_id=wf_id).count() == 3


def test_each_completing_transition_emits_exactly_one_event(engine, doc):
    wf_id = engine.create(7, SALES).workflow.id
    results = [
        engine.complete_site_survey(wf_id, SALES, doc()),
        engine.mark_selection_design_not_needed(wf_id, SALES),
        engine.mark_bank_guarantee_not_needed(wf_id, SALES),
        engine.mark_no_missing_items(wf_id, SALES),
    ]
    assert [len(r.events) for r in results] == [1, 1, 1, 1]
    assert all(r.events[0].entity_id == wf_id for r in results)
    assert all(r.events[0].actor == "sales1" for r in results)


def test_completed_workflow_is_terminal(engine, advance_to):
    wf_id = advance_to(8)
    engine.complete_workflow(wf_id, SALES)

    with pytest.raises(TerminalStateError):
        engine.complete_workflow(wf_id, SALES)
    assert engine.get_workflow(wf_id).current_step == 8


# ── Step 1 ───────────────────────────────────────────────────────────────────


def test_site_survey_delegated_path(engine, dispatcher, doc):
    wf_id = engine.create(7, SALES).workflow.id

    result = engine.request_site_survey(wf_id, SALES)
    step = result.step
    assert step.needs_external_action is True
    assert step.external_module == ExternalModule.PROJECT
    assert step.phase == StepPhase.AWAITING_EXTERNAL
    assert result.workflow.current_step == 1
    assert result.events[0].title == "Site Survey Request"
    assert result.events[0].target_module == "projects"

    result = engine.submit_site_survey(wf_id, PROJECTS, doc("survey.pdf"))
    assert result.step.completed is True
    assert result.step.external_action_completed is True
    assert result.step.external_completed_by == "projects1"
    assert result.workflow.current_step == 2


def test_submit_without_delegation_is_a_conflict(engine, doc):
    wf_id = engine.create(7, SALES).workflow.id
    with pytest.raises(ConflictError) as exc_info:
        engine.submit_site_survey(wf_id, PROJECTS, doc())
    assert not isinstance(exc_info.value, GatingViolationError)
    assert engine.get_workflow(wf_id).step(1).completed is False


def test_submit_by_wrong_role_is_unauthorized(engine, doc):
    wf_id = engine.create(7, SALES).workflow.id
    engine.request_site_survey(wf_id, SALES)
    with pytest.raises(UnauthorizedError):
        engine.submit_site_survey(wf_id, FINANCE, doc())


def test_master_may_act_for_any_role(engine, doc):
    wf_id = engine.create(7, SALES).workflow.id
    engine.request_site_survey(wf_id, SALES)
    result = engine.submit_site_survey(wf_id, MASTER, doc())
    assert result.workflow.current_step == 2


def test_completing_a_step_twice_is_rejected(engine, doc):
    wf_id = engine.create(7, SALES).workflow.id
    engine.complete_site_survey(wf_id, SALES, doc())
    with pytest.raises(StepAlreadyCompletedError):
        engine.complete_site_survey(wf_id, SALES, doc())
    assert engine.get_workflow(wf_id).current_step == 2


def test_missing_document_is_rejected_before_any_write(engine, dispatcher):
    wf_id = engine.create(7, SALES).workflow.id
    with pytest.raises(ValidationError):
        engine.complete_site_survey(wf_id, SALES, None)
    assert engine.get_workflow(wf_id).step(1).completed is False
    assert len(dispatcher.events) == 1


# ── Step 2 ───────────────────────────────────────────────────────────────────


def test_request_selection_design_before_site_survey_names_step_one_state(engine):
    wf_id = engine.create(7, SALES).workflow.id
    engine.request_site_survey(wf_id, SALES)

    with pytest.raises(GatingViolationError) as exc_info:
        engine.request_selection_design(wf_id, SALES)

    err = exc_info.value
    assert err.step_number == 2
    assert err.current_step == 1
    assert err.prerequisite_state["completed"] is False
    assert err.prerequisite_state["phase"] == "AWAITING_EXTERNAL"
    message = str(err)
    assert "Step 2 cannot start" in message
    assert "step 1 is not completed" in message

    step2 = engine.get_workflow(wf_id).step(2)
    assert step2.needs_external_action is False


def test_selection_design_delegated_to_presales(engine, advance_to, doc):
    wf_id = advance_to(2)
    result = engine.request_selection_design(wf_id, SALES)
    assert result.events[0].title == "Selection & Design Request"
    assert result.events[0].priority == Priority.HIGH

    result = engine.submit_selection_design(wf_id, PRESALES, doc("sizing.xlsx"))
    assert result.workflow.current_step == 3
    assert result.events[0].title == "Sizing & Pricing Completed"


def test_re_request_resets_external_completion(engine, advance_to):
    wf_id = advance_to(2)
    engine.request_selection_design(wf_id, SALES)
    result = engine.request_selection_design(wf_id, SALES)
    assert result.step.phase == StepPhase.AWAITING_EXTERNAL
    assert result.step.external_action_completed is False
    assert len(result.events) == 1


def test_skipped_step_records_outcome(engine, advance_to):
    wf_id = advance_to(2)
    step = engine.mark_selection_design_not_needed(wf_id, SALES).step
    assert step.completed is True
    assert step.outcome == StepOutcome.SKIPPED
    assert step.completed_by == "sales1"


# ── Step 3 ───────────────────────────────────────────────────────────────────


def test_bank_guarantee_cannot_be_requested_before_step_two(engine, advance_to):
    wf_id = advance_to(2)
    with pytest.raises(GatingViolationError):
        engine.request_bank_guarantee(wf_id, SALES)


def test_bank_guarantee_submitted_by_finance(engine, advance_to, doc):
    wf_id = advance_to(3)
    engine.request_bank_guarantee(wf_id, SALES)
    with pytest.raises(UnauthorizedError):
        engine.submit_bank_guarantee(wf_id, PRESALES, doc())
    result = engine.submit_bank_guarantee(wf_id, FINANCE, doc("guarantee.pdf"))
    assert result.workflow.current_step == 4


# ── Step 5 ───────────────────────────────────────────────────────────────────


def test_tender_acceptance_delegates_without_advancing(engine, advance_to):
    wf_id = advance_to(5)
    result = engine.mark_tender_accepted(wf_id, SALES)
    assert result.workflow.current_step == 5
    assert result.step.completed is False
    assert result.step.external_module == ExternalModule.PROJECT
    assert result.events[0].title == "Project Start - Tender Accepted"
    assert result.events[0].priority == Priority.URGENT

    with pytest.raises(ConflictError):
        engine.mark_tender_accepted(wf_id, SALES)


def test_notify_completion_requires_projects_role(engine, advance_to):
    wf_id = advance_to(5)
    engine.mark_tender_accepted(wf_id, SALES)
    with pytest.raises(UnauthorizedError):
        engine.notify_project_completion(wf_id, SALES)


def test_tender_rejection_requires_reason(engine, advance_to):
    wf_id = advance_to(5)
    with pytest.raises(ValidationError):
        engine.mark_tender_rejected(wf_id, SALES, "   ")
    assert engine.get_workflow(wf_id).status == WorkflowStatus.IN_PROGRESS


def test_tender_rejection_is_terminal(engine, advance_to):
    wf_id = advance_to(5)
    result = engine.mark_tender_rejected(wf_id, SALES, "Price too high")

    assert result.workflow.status == WorkflowStatus.REJECTED
    assert result.workflow.current_step == 5
    assert result.step.rejection_reason == "Price too high"
    assert result.step.outcome == StepOutcome.REJECTED
    assert result.step.completed is False
    assert result.step.phase == StepPhase.REJECTED
    assert result.events[0].title == "Tender Rejected"

    with pytest.raises(TerminalStateError):
        engine.mark_tender_accepted(wf_id, SALES)
    with pytest.raises(TerminalStateError):
        engine.report_delay(wf_id, SALES, None)
    with pytest.raises(TerminalStateError):
        engine.mark_tender_rejected(wf_id, SALES, "again")


def test_tender_may_be_rejected_after_acceptance(engine, advance_to):
    wf_id = advance_to(5)
    engine.mark_tender_accepted(wf_id, SALES)
    engine.mark_tender_rejected(wf_id, SALES, "Customer withdrew")

    with pytest.raises(TerminalStateError):
        engine.notify_project_completion(wf_id, PROJECTS)


@pytest.mark.parametrize(
    "operation",
    [
        lambda e, wid: e.mark_after_sales_not_needed(wid, PROJECTS),
        lambda e, wid: e.mark_tender_rejected(wid, SALES, ""),
        lambda e, wid: e.complete_site_survey(wid, SALES, None),
        lambda e, wid: e.mark_execution_completed(wid, PROJECTS, success=False),
        lambda e, wid: e.submit_bank_guarantee(wid, PRESALES, None),
        lambda e, wid: e.assign_step(wid, 6, "", FINANCE),
        lambda e, wid: e.hold_execution(wid, QA, ""),
    ],
    ids=["wrong-role", "blank-reason", "no-document", "no-explanation",
         "wrong-module-no-document", "blank-assignee", "wrong-role-blank-hold"],
)
def test_rejected_workflow_refuses_before_role_and_payload_checks(engine, advance_to, dispatcher, operation):
    wf_id = advance_to(5)
    engine.mark_tender_rejected(wf_id, SALES, "Price too high")
    dispatcher.events.clear()

    with pytest.raises(TerminalStateError):
        operation(engine, wf_id)
    assert dispatcher.events == []


def test_completed_workflow_refuses_unauthorized_actors(engine, advance_to):
    wf_id = advance_to(8)
    engine.complete_workflow(wf_id, SALES)

    with pytest.raises(TerminalStateError):
        engine.complete_workflow(wf_id, FINANCE)
    with pytest.raises(TerminalStateError):
        engine.report_delay(wf_id, QA, None, step_number=8)


# ── Step 6 ───────────────────────────────────────────────────────────────────


def test_execution_completed_successfully(engine, advance_to):
    wf_id = advance_to(6)
    result = engine.mark_execution_completed(wf_id, PROJECTS, success=True)
    assert result.workflow.current_step == 7
    assert result.step.outcome == StepOutcome.COMPLETED
    assert result.step.has_issues is False


def test_execution_with_issues_requires_explanation(engine, advance_to):
    wf_id = advance_to(6)
    with pytest.raises(ValidationError):
        engine.mark_execution_completed(wf_id, PROJECTS, success=False)
    assert engine.get_workflow(wf_id).current_step == 6


def test_execution_with_issues_still_advances(engine, advance_to):
    wf_id = advance_to(6)
    result = engine.mark_execution_completed(
        wf_id, PROJECTS, success=False, explanation="Two panels delivered damaged",
    )
    step = result.step
    assert result.workflow.current_step == 7
    assert step.completed is True
    assert step.has_issues is True
    assert step.outcome == StepOutcome.COMPLETED_WITH_ISSUES
    assert "Two panels delivered damaged" in step.notes
    assert result.events[0].title == "Project Execution Completed With Issues"


def test_execution_success_flag_must_be_boolean(engine, advance_to):
    wf_id = advance_to(6)
    with pytest.raises(ValidationError):
        engine.mark_execution_completed(wf_id, PROJECTS, success="false")
    assert engine.get_workflow(wf_id).current_step == 6


def test_execution_completed_requires_projects_role(engine, advance_to):
    wf_id = advance_to(6)
    with pytest.raises(UnauthorizedError):
        engine.mark_execution_completed(wf_id, SALES)


def test_confirm_finished_and_mark_completed_are_exclusive(engine, advance_to, doc):
    wf_id = advance_to(6)
    engine.confirm_project_finished(wf_id, SALES, doc("cost.xlsx"))
    with pytest.raises(StepAlreadyCompletedError):
        engine.mark_execution_completed(wf_id, PROJECTS)
    assert engine.get_workflow(wf_id).current_step == 7


# ── Step 7 ───────────────────────────────────────────────────────────────────


def test_after_sales_check_by_quality_assurance(engine, advance_to):
    wf_id = advance_to(7)
    result = engine.request_after_sales_check(wf_id, SALES)
    assert result.events[0].title == "After-Sales Check Required"
    assert result.events[0].target_module == "qualityassurance"

    result = engine.complete_after_sales_check(wf_id, QA, notes="Customer satisfied")
    assert result.workflow.current_step == 8
    assert result.step.notes == "Customer satisfied"
    assert result.events[0].title == "After-Sales Check Completed"


def test_step_eight_gated_on_step_seven(engine, advance_to):
    wf_id = advance_to(7)
    with pytest.raises(GatingViolationError):
        engine.complete_workflow(wf_id, SALES)


# ── Supplemented operations ──────────────────────────────────────────────────


def test_assign_current_step(engine, advance_to):
    wf_id = advance_to(2)
    result = engine.assign_step(wf_id, 2, "presales2", SALES)
    assert result.step.assigned_to == "presales2"
    assert result.step.assigned_by == "sales1"
    assert result.step.assigned_at is not None
    assert result.events[0].title == "Workflow Step Assigned"


def test_assign_future_step_is_gated(engine):
    wf_id = engine.create(7, SALES).workflow.id
    with pytest.raises(GatingViolationError):
        engine.assign_step(wf_id, 4, "storage1", SALES)


def test_assignment_lifecycle(engine, advance_to):
    wf_id = advance_to(2)
    step = engine.get_workflow(wf_id).step(2)
    assert step.assignment_status == AssignmentStatus.PENDING_ASSIGNMENT

    assert engine.assign_step(wf_id, 2, "presales2", SALES).step.assignment_status == AssignmentStatus.ASSIGNED
    result = engine.start_step(wf_id, 2, Actor("presales2", Role.PRESALES))
    assert result.step.assignment_status == AssignmentStatus.IN_PROGRESS
    assert result.events == []

    engine.mark_selection_design_not_needed(wf_id, SALES)
    assert engine.get_workflow(wf_id).step(2).assignment_status == AssignmentStatus.COMPLETED


def test_only_the_assignee_may_start_a_step(engine, advance_to):
    wf_id = advance_to(2)
    with pytest.raises(ConflictError):
        engine.start_step(wf_id, 2, Actor("presales2", Role.PRESALES))

    engine.assign_step(wf_id, 2, "presales2", SALES)
    with pytest.raises(UnauthorizedError):
        engine.start_step(wf_id, 2, PRESALES)
    assert engine.start_step(wf_id, 2, MASTER).step.assignment_status == AssignmentStatus.IN_PROGRESS
    with pytest.raises(ConflictError):
        engine.start_step(wf_id, 2, MASTER)


def test_steps_assigned_to_user(engine, advance_to):
    first = advance_to(2, project_id=1)
    second = engine.create(2, SALES).workflow.id
    engine.assign_step(first, 2, "presales2", SALES)
    engine.assign_step(second, 1, "presales2", SALES)
    engine.assign_step(second, 1, "projects2", SALES)

    assert [(s.workflow_id, s.step_number) for s in engine.steps_assigned_to("presales2")] == [(first, 2)]
    assert engine.count_pending_steps_for("presales2") == 1

    engine.mark_selection_design_not_needed(first, SALES)
    assert engine.steps_assigned_to("presales2", pending_only=True) == []
    assert len(engine.steps_assigned_to("presales2")) == 1
    assert engine.count_pending_steps_for("presales2") == 0
    assert engine.count_pending_steps_for("projects2") == 1


def test_unassigned_steps_for_role(engine):
    wf_id = engine.create(7, SALES).workflow.id
    steps = engine.unassigned_steps_for_role(Role.PROJECTS)
    assert [s.step_number for s in steps] == [1, 6]

    engine.assign_step(wf_id, 1, "projects2", SALES)
    assert [s.step_number for s in engine.unassigned_steps_for_role(Role.PROJECTS)] == [6]
    assert engine.unassigned_steps_for_role(Role.SALES) == []


def test_rejected_workflow_leaves_assignment_queries(engine, advance_to):
    wf_id = advance_to(5)
    engine.assign_step(wf_id, 5, "sales2", SALES)
    assert engine.count_pending_steps_for("sales2") == 1

    result = engine.mark_tender_rejected(wf_id, SALES, "Price too high")
    assert result.step.assignment_status == AssignmentStatus.REJECTED
    assert engine.count_pending_steps_for("sales2") == 0
    assert engine.unassigned_steps_for_role(Role.PROJECTS) == []


def test_list_active_workflows_filters_by_creator(engine):
    engine.create(1, SALES)
    engine.create(2, Actor("sales2", Role.SALES))
    deactivated = engine.create(3, SALES).workflow.id
    engine.deactivate(deactivated, MASTER)

    assert {w.project_id for w in engine.list_active_workflows()} == {1, 2}
    assert [w.project_id for w in engine.list_active_workflows("sales2")] == [2]


def test_deactivate_requires_approver_role(engine):
    wf_id = engine.create(1, SALES).workflow.id
    with pytest.raises(UnauthorizedError):
        engine.deactivate(wf_id, SALES)


def test_pending_external_actions_per_module(engine, advance_to):
    wf_a = advance_to(3, project_id=1)
    wf_b = advance_to(2, project_id=2)
    engine.request_bank_guarantee(wf_a, SALES)
    engine.request_selection_design(wf_b, SALES)

    finance_steps = engine.pending_external_actions(ExternalModule.FINANCE)
    assert [(s.workflow_id, s.step_number) for s in finance_steps] == [(wf_a, 3)]
    presales_steps = engine.pending_external_actions(ExternalModule.PRESALES)
    assert [(s.workflow_id, s.step_number) for s in presales_steps] == [(wf_b, 2)]


def test_transition_result_serialises(engine):
    result = engine.create(9, SALES)
    data = result.to_dict()
    assert data["workflow"]["project_id"] == 9
    assert len(data["workflow"]["steps"]) == 8
    assert data["step"]["step_name"] == "Site Survey"
    assert data["events"][0]["priority"] == "LOW"


def test_workflow_row_version_increments_per_transition(engine, doc):
    wf_id = engine.create(7, SALES).workflow.id
    v1 = engine.get_workflow(wf_id).version
    engine.complete_site_survey(wf_id, SALES, doc())
    _db.session.expire_all()
    assert engine.get_workflow(wf_id).version == v1 + 1
