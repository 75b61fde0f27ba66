import os
import time
from pathlib import Path

import pytest

from kubestrap.engine.state import ClusterRun, RunStatus, StepStatus
from kubestrap.errors import ConfigError, InvalidTransition, NotFound
from kubestrap.persistence.store import RunStore


def test_save_and_load_round_trip(tmp_path: Path, make_plan):
    store = RunStore(tmp_path / "runs")
    run = ClusterRun(plan=make_plan())
    run.ensure_steps([("cp", "init"), ("w1", "prep")])
    run.state("cp", "init").transition(StepStatus.RUNNING)
    run.outputs["token"] = "abc"
    store.save(run)

    loaded = store.load(run.run_id)
    assert loaded == run
    assert loaded.state("cp", "init").attempts == 1
    assert store.exists(run.run_id)
    assert [p.name for p in (tmp_path / "runs").iterdir()] == [f"{run.run_id}.json"]


def test_latest_and_listing(tmp_path: Path, make_plan):
    store = RunStore(tmp_path)
    assert store.latest() is None
    first, second = ClusterRun(plan=make_plan()), ClusterRun(plan=make_plan())
    store.save(first)
    store.save(second)
    past = time.time() - 60
    os.utime(tmp_path / f"{first.run_id}.json", (past, past))

    assert store.run_ids() == [second.run_id, first.run_id]
    assert store.latest().run_id == second.run_id


def test_missing_and_invalid_ids(tmp_path: Path):
    store = RunStore(tmp_path)
    with pytest.raises(NotFound):
        store.load("nope")
    with pytest.raises(NotFound):
        store.load("../etc/passwd")
    assert not store.exists("nope")


def test_corrupt_snapshot_is_config_error(tmp_path: Path):
    (tmp_path / "broken.json").write_text("{not json")
    with pytest.raises(ConfigError, match="corrupt"):
        RunStore(tmp_path).load("broken")


def test_step_state_machine():
    from kubestrap.engine.state import StepState

    st = StepState(node_id="cp", step="init")
    with pytest.raises(InvalidTransition):
        st.transition(StepStatus.SUCCEEDED)
    st.transition(StepStatus.RUNNING)
    st.transition(StepStatus.FAILED, error="boom")
    assert st.last_error == "boom"
    with pytest.raises(InvalidTransition):
        st.transition(StepStatus.SUCCEEDED)
    st.transition(StepStatus.PENDING)
    st.transition(StepStatus.RUNNING)
    assert st.last_error is None and st.attempts == 2
    st.transition(StepStatus.SUCCEEDED)
    with pytest.raises(InvalidTransition):
        st.transition(StepStatus.PENDING)


def test_run_state_machine(make_plan):
    run = ClusterRun(plan=make_plan())
    with pytest.raises(InvalidTransition):
        run.transition(RunStatus.PROVISIONING)
    assert run.transition(RunStatus.PLANNING) == RunStatus.NOT_STARTED
    run.transition(RunStatus.PROVISIONING)
    run.transition(RunStatus.FAILED)
    run.transition(RunStatus.PROVISIONING)
    run.transition(RunStatus.VERIFYING)
    run.transition(RunStatus.READY)
    with pytest.raises(InvalidTransition):
        run.transition(RunStatus.FAILED)
    run.transition(RunStatus.TORN_DOWN)
    with pytest.raises(InvalidTransition):
        run.transition(RunStatus.TORN_DOWN)


def test_touched_nodes_and_counts(make_plan):
    run = ClusterRun(plan=make_plan())
    run.ensure_steps([("cp", "init"), ("w1", "prep"), ("w2", "prep")])
    run.state("cp", "init").transition(StepStatus.RUNNING)
    run.state("cp", "init").transition(StepStatus.SUCCEEDED)
    assert run.touched_nodes() == {"cp"}
    assert run.counts() == {"Pending": 2, "Running": 0, "Succeeded": 1, "Failed": 0}
