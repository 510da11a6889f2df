"""
Tests: optimistic-lock retries, per-workflow serialization and the
commit-then-notify ordering of the engine.
"""

import gc
import logging
import threading
from unittest.mock import patch

import pytest
from sqlalchemy.orm.exc import StaleDataError

from salesflow.core.exceptions import (
    ConcurrentModificationError,
    DuplicateWorkflowError,
    GatingViolationError,
)
from salesflow.models import db as _db
from salesflow.models.workflow import Role
from salesflow.services.workflow_engine import Actor

SALES = Actor("sales1", Role.SALES)
PROJECTS = Actor("projects1", Role.PROJECTS)


def test_stale_write_is_retried_then_reported(engine, dispatcher, doc):
    wf_id = engine.create(7, SALES).workflow.id
    dispatcher.events.clear()

    with patch.object(_db.session, "commit", side_effect=StaleDataError("row version changed")) as commit:
        with pytest.raises(ConcurrentModificationError) as exc_info:
            engine.complete_site_survey(wf_id, SALES, doc())

    assert commit.call_count == 3
    assert exc_info.value.attempts == 3
    assert exc_info.value.workflow_id == wf_id
    assert dispatcher.events == []
    assert engine.get_workflow(wf_id).current_step == 1


def test_transient_stale_write_succeeds_on_retry(engine, dispatcher, doc):
    wf_id = engine.create(7, SALES).workflow.id
    real_commit = _db.session.commit
    calls = []

    def flaky_commit():
        calls.append(1)
        if len(calls) == 1:
            raise StaleDataError("row version changed")
        return real_commit()

    with patch.object(_db.session, "commit", side_effect=flaky_commit):
        result = engine.complete_site_survey(wf_id, SALES, doc())

    assert len(calls) == 2
    assert result.workflow.current_step == 2
    assert dispatcher.titles.count("Site Survey Completed") == 1


def test_business_errors_are_not_retried(engine, doc):
    wf_id = engine.create(7, SALES).workflow.id
    with patch.object(_db.session, "commit") as commit:
        with pytest.raises(GatingViolationError):
            engine.mark_bank_guarantee_not_needed(wf_id, SALES)
    commit.assert_not_called()


def test_unique_index_backs_duplicate_check(engine):
    engine.create(7, SALES)
    with patch("salesflow.services.workflow_repository.find_for_project", return_value=None):
        with pytest.raises(DuplicateWorkflowError):
            engine.create(7, SALES)
    assert len(engine.list_active_workflows()) == 1


def test_lock_registry_returns_one_lock_per_workflow(engine):
    assert engine.lock_for(1) is engine.lock_for(1)
    assert engine.lock_for(1) is not engine.lock_for(2)


def test_lock_registry_drops_locks_nobody_holds(engine):
    held = engine.lock_for(1)
    for wf_id in range(2, 52):
        engine.lock_for(wf_id)
    gc.collect()

    assert len(engine._locks) == 1
    assert engine.lock_for(1) is held


def test_competing_step_six_completions_do_not_interleave(app, engine, dispatcher, advance_to, doc):
    wf_id = advance_to(6)
    cost = doc("cost.xlsx")
    dispatcher.events.clear()
    _db.session.close()

    barrier = threading.Barrier(2)
    outcomes = {}

    def run(name, operation):
        with app.app_context():
            barrier.wait()
            try:
                operation()
                outcomes[name] = "ok"
            except Exception as exc:
                outcomes[name] = type(exc).__name__

    threads = [
        threading.Thread(target=run, args=(
            "confirm_finished", lambda: engine.confirm_project_finished(wf_id, SALES, cost))),
        threading.Thread(target=run, args=(
            "mark_completed", lambda: engine.mark_execution_completed(wf_id, PROJECTS))),
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)
    assert not any(t.is_alive() for t in threads)

    assert sorted(outcomes.values()) == ["StepAlreadyCompletedError", "ok"]
    _db.session.expire_all()
    assert engine.get_workflow(wf_id).current_step == 7
    assert len(dispatcher.events) == 1
    assert dispatcher.titles[0] in ("Project Finished", "Project Execution Completed")


def test_events_are_published_after_the_lock_is_released(engine, dispatcher, doc):
    wf_id = engine.create(7, SALES).workflow.id
    observed = []

    def check_lock_free(event):
        lock = engine.lock_for(wf_id)
        acquired = []

        def try_acquire():
            got = lock.acquire(blocking=False)
            acquired.append(got)
            if got:
                lock.release()

        t = threading.Thread(target=try_acquire)
        t.start()
        t.join()
        observed.append(acquired[0])

    with patch.object(dispatcher, "publish", side_effect=check_lock_free):
        engine.complete_site_survey(wf_id, SALES, doc())

    assert observed == [True]


def test_dispatch_failure_keeps_committed_transition(engine, dispatcher, doc, caplog):
    wf_id = engine.create(7, SALES).workflow.id
    dispatcher.fail_with = RuntimeError("broker down")

    with caplog.at_level(logging.ERROR):
        result = engine.complete_site_survey(wf_id, SALES, doc())

    assert result.workflow.current_step == 2
    _db.session.expire_all()
    assert engine.get_workflow(wf_id).current_step == 2
    assert "Notification dispatch failed" in caplog.text


def test_exporter_failure_is_logged(engine, exporter, advance_to, caplog):
    wf_id = advance_to(8)
    exporter.export_completed.side_effect = RuntimeError("warehouse offline")

    with caplog.at_level(logging.ERROR):
        result = engine.complete_workflow(wf_id, SALES)

    assert result.workflow.status.value == "COMPLETED"
    exporter.export_completed.assert_called_once()
    assert "Workflow export failed" in caplog.text
