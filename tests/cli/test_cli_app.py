import json
import logging
from pathlib import Path

import pytest
from typer.testing import CliRunner

import kubestrap.cli.app as app_mod
from kubestrap.cli.app import app
from kubestrap.config.loader import dump_plan, load_plan
from kubestrap.execution.driver import CommandResult
from kubestrap.orchestrator.facade import Orchestrator

runner = CliRunner()
JOIN_W1 = "kubeadm join 10.0.0.10:6443 --token abc --node-name=w1"


@pytest.fixture(autouse=True)
def _detach_log_handlers():
    yield
    logger = logging.getLogger("kubestrap")
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
    logger.propagate = True


@pytest.fixture
def cli_env(tmp_path: Path, monkeypatch, fake_driver):
    monkeypatch.setenv("KUBESTRAP_STATE_DIR", str(tmp_path / "state"))
    monkeypatch.setenv("KUBESTRAP_KUBECONFIG_DIR", str(tmp_path / "kube"))
    monkeypatch.delenv("KUBESTRAP_SECRETS_FILE", raising=False)
    monkeypatch.setattr(
        app_mod, "build_orchestrator",
        lambda settings, observers: Orchestrator(settings, driver=fake_driver, observers=observers),
    )
    return tmp_path


@pytest.fixture
def plan_file(cli_env, make_plan):
    path = cli_env / "plan.yaml"
    dump_plan(make_plan(), path)
    return path


def _bootstrap(plan_file):
    return runner.invoke(app, ["bootstrap", "--plan", str(plan_file)])


def test_init_writes_loadable_plan(tmp_path: Path):
    out = tmp_path / "k.yaml"
    result = runner.invoke(app, ["init", "--workers", "3", "--memory", "4096", "--output", str(out)])
    assert result.exit_code == 0, result.output
    plan = load_plan(out)
    assert [n.id for n in plan.nodes] == ["control-plane", "worker-1", "worker-2", "worker-3"]
    assert plan.nodes[0].resources.memory_mb == 4096

    again = runner.invoke(app, ["init", "--output", str(out)])
    assert again.exit_code == 2
    assert runner.invoke(app, ["init", "--output", str(out), "--force"]).exit_code == 0


def test_init_rejects_invalid_sizes(tmp_path: Path):
    result = runner.invoke(app, ["init", "--memory", "0", "--output", str(tmp_path / "k.yaml")])
    assert result.exit_code == 2


def test_bootstrap_success_prints_access_info(plan_file):
    result = _bootstrap(plan_file)
    assert result.exit_code == 0, result.output
    assert "Cluster is Ready" in result.output
    assert "Control plane : cp (10.0.0.10)" in result.output


def test_bootstrap_partial_failure_exit_code(plan_file, fake_driver):
    fake_driver.script("w1", JOIN_W1, CommandResult(1, "", "boom"))
    result = _bootstrap(plan_file)
    assert result.exit_code == 3
    assert "FAILED  w1/join" in result.output
    assert "--resume" in result.output


def test_bootstrap_bad_plan_is_config_error(cli_env):
    bad = cli_env / "bad.yaml"
    bad.write_text("nodes: []\nsteps: [{name: a}]\n")
    assert _bootstrap(bad).exit_code == 2
    assert _bootstrap(cli_env / "missing.yaml").exit_code == 2


def test_bootstrap_requires_plan_or_resume(cli_env):
    assert runner.invoke(app, ["bootstrap"]).exit_code == 2


def test_status_reads_persisted_run(plan_file):
    assert _bootstrap(plan_file).exit_code == 0

    result = runner.invoke(app, ["status", "--json"])
    assert result.exit_code == 0, result.output
    doc = json.loads(result.output)
    assert doc["status"] == "Ready"
    assert doc["steps"]["w2/join"]["status"] == "Succeeded"

    human = runner.invoke(app, ["status", "--run", doc["run_id"]])
    assert "Status  : Ready" in human.output
    assert "Succeeded  cp/init" in human.output


def test_status_unknown_run(cli_env):
    assert runner.invoke(app, ["status", "--run", "nope"]).exit_code == 1
    assert runner.invoke(app, ["status"]).exit_code == 1


def test_teardown_force_then_repeat(plan_file):
    assert _bootstrap(plan_file).exit_code == 0

    first = runner.invoke(app, ["teardown", "--force"])
    assert first.exit_code == 0, first.output
    assert "torn down" in first.output

    second = runner.invoke(app, ["teardown", "--force"])
    assert second.exit_code == 0
    assert "nothing to tear down" in second.output


def test_teardown_prompts_without_force(plan_file):
    assert _bootstrap(plan_file).exit_code == 0
    result = runner.invoke(app, ["teardown"], input="n\n")
    assert result.exit_code == 1
    status = json.loads(runner.invoke(app, ["status", "--json"]).output)
    assert status["status"] == "Ready"


def test_teardown_with_errors_exit_code(plan_file, fake_driver):
    assert _bootstrap(plan_file).exit_code == 0
    fake_driver.script("cp", "reset cp", CommandResult(1, "", "busy"))
    result = runner.invoke(app, ["teardown", "--force"])
    assert result.exit_code == 5
    assert "cp/reset" in result.output


def test_teardown_without_runs(cli_env):
    result = runner.invoke(app, ["teardown", "--force"])
    assert result.exit_code == 0
    assert "Nothing to tear down" in result.output


def test_bad_concurrency_override_exits_with_config_error(cli_env, monkeypatch):
    monkeypatch.setenv("KUBESTRAP_MAX_CONCURRENCY", "lots")
    result = runner.invoke(app, ["status"])
    assert result.exit_code == 2
    assert "KUBESTRAP_MAX_CONCURRENCY" in result.output
