"""
Unit tests for the step executor.

Most tests run real child processes (the current interpreter) so ordering,
isolation and fail-fast are checked against actual process behaviour.
"""

import os
import threading
import time

import pytest

from envboot.dsl import PlanBuilder, sh, step
from envboot.errors import RunInterrupted, StepExecutionError
from envboot.model import EnvironmentPlan, FAILURE, INTERRUPTED, SUCCESS, SetupStep
from envboot.runner import raise_for_failure, run_plan, step_env


class TestOrdering:
    def test_later_step_reads_earlier_artifact(self, tmp_path, py):
        plan = (
            PlanBuilder()
            .add(step("write-marker", *py("open('marker.txt', 'w').write('built')")))
            .add(
                step(
                    "read-marker",
                    *py("import sys; sys.exit(0 if open('marker.txt').read() == 'built' else 1)"),
                    needs=["write-marker"],
                )
            )
            .build()
        )

        results = run_plan(plan, cwd=tmp_path)

        assert [r.step for r in results] == ["write-marker", "read-marker"]
        assert all(r.status == SUCCESS for r in results)

    def test_output_is_captured(self, tmp_path, py):
        plan = PlanBuilder().add(step("echo", *py("import sys; print('out'); print('err', file=sys.stderr)"))).build()
        (result,) = run_plan(plan, cwd=tmp_path)
        assert result.stdout.strip() == "out"
        assert result.stderr.strip() == "err"
        assert result.exit_code == 0

    def test_shell_string_step(self, tmp_path):
        plan = PlanBuilder().add(sh("shell", "echo hello > greeting.txt")).build()
        (result,) = run_plan(plan, cwd=tmp_path)
        assert result.ok
        assert (tmp_path / "greeting.txt").read_text().strip() == "hello"

    def test_unmet_prerequisite_never_runs(self, tmp_path, py):
        # bypasses PlanBuilder validation on purpose
        plan = EnvironmentPlan(
            steps=(
                SetupStep(name="b", run=py("open('ran', 'w')"), needs=("a",)),
            )
        )
        (result,) = run_plan(plan, cwd=tmp_path)
        assert result.status == FAILURE
        assert "prerequisites not satisfied" in result.stderr
        assert not (tmp_path / "ran").exists()


class TestFailFast:
    def test_install_a_failure_stops_install_b(self, tmp_path, py):
        plan = (
            PlanBuilder()
            .add(step("install-A", *py("import sys; sys.exit(1)"), env={"X": "1"}))
            .add(step("install-B", *py("open('b-ran', 'w')")))
            .build()
        )

        results = run_plan(plan, cwd=tmp_path)

        assert len(results) == 1
        assert results[0].step == "install-A"
        assert results[0].status == FAILURE
        assert results[0].exit_code == 1
        assert not (tmp_path / "b-ran").exists()

    def test_results_length_matches_attempted(self, tmp_path, py):
        plan = (
            PlanBuilder()
            .add(step("one", *py("pass")))
            .add(step("two", *py("raise SystemExit(3)")))
            .add(step("three", *py("pass")))
            .build()
        )
        results = run_plan(plan, cwd=tmp_path)
        assert [r.status for r in results] == [SUCCESS, FAILURE]
        assert results[-1].exit_code == 3

    def test_raise_for_failure(self, tmp_path, py):
        plan = PlanBuilder().add(step("boom", *py("import sys; print('nope', file=sys.stderr); sys.exit(2)"))).build()
        results = run_plan(plan, cwd=tmp_path)

        with pytest.raises(StepExecutionError) as exc:
            raise_for_failure(results, plan)

        err = exc.value
        assert err.step == "boom"
        assert err.returncode == 2
        assert "nope" in err.stderr
        assert err.cmd == plan.get("boom").display
        assert err.exit_code == 3

    def test_raise_for_failure_noop_on_success(self, tmp_path, py):
        plan = PlanBuilder().add(step("fine", *py("pass"))).build()
        raise_for_failure(run_plan(plan, cwd=tmp_path), plan)

    def test_missing_executable(self, tmp_path):
        plan = PlanBuilder().add(step("ghost", "definitely-not-a-real-tool-xyz", "--version")).build()
        (result,) = run_plan(plan, cwd=tmp_path)
        assert result.status == FAILURE
        assert result.exit_code is None
        assert "fix PATH" in result.stderr

    def test_non_executable_file(self, tmp_path):
        tool = tmp_path / "not-executable"
        tool.write_text("#!/bin/sh\necho hi\n")
        tool.chmod(0o644)
        plan = (
            PlanBuilder()
            .add(step("locked", str(tool)))
            .add(step("after", "true"))
            .build()
        )

        results = run_plan(plan, cwd=tmp_path)

        assert len(results) == 1
        assert results[0].status == FAILURE
        assert results[0].exit_code is None
        assert "Permission denied" in results[0].stderr


class TestEnvironment:
    def test_override_not_visible_to_later_step(self, tmp_path, py, monkeypatch):
        monkeypatch.delenv("ENVBOOT_PRIVATE", raising=False)
        check = "import os, sys; sys.exit(0 if os.environ.get('ENVBOOT_PRIVATE') == '{}' else 1)"
        plan = (
            PlanBuilder()
            .add(step("declares", *py(check.format("1")), env={"ENVBOOT_PRIVATE": "1"}))
            .add(step("does-not", *py("import os, sys; sys.exit(1 if 'ENVBOOT_PRIVATE' in os.environ else 0)")))
            .build()
        )

        results = run_plan(plan, cwd=tmp_path)

        assert [r.status for r in results] == [SUCCESS, SUCCESS]
        assert "ENVBOOT_PRIVATE" not in os.environ

    def test_ambient_environment_is_kept(self, tmp_path, py, monkeypatch):
        monkeypatch.setenv("ENVBOOT_AMBIENT", "yes")
        plan = PlanBuilder().add(
            step(
                "reads-ambient",
                *py("import os, sys; sys.exit(0 if os.environ['ENVBOOT_AMBIENT'] == 'yes' and os.environ['EXTRA'] == '2' else 1)"),
                env={"EXTRA": "2"},
            )
        ).build()
        (result,) = run_plan(plan, cwd=tmp_path)
        assert result.ok

    def test_step_env_layers_on_base(self):
        s = SetupStep(name="s", run="true", env={"A": "step"})
        env = step_env(s, {"A": "base", "B": "base"})
        assert env == {"A": "step", "B": "base"}


class TestWorkingDirectory:
    def test_cwd_is_scoped_to_step(self, tmp_path, py):
        (tmp_path / "sub").mkdir()
        before = os.getcwd()
        plan = (
            PlanBuilder()
            .add(step("in-sub", *py("open('here.txt', 'w')"), cwd="sub"))
            .add(step("in-root", *py("open('root.txt', 'w')")))
            .build()
        )

        results = run_plan(plan, cwd=tmp_path)

        assert all(r.ok for r in results)
        assert (tmp_path / "sub" / "here.txt").exists()
        assert (tmp_path / "root.txt").exists()
        assert os.getcwd() == before

    def test_missing_cwd_fails_step(self, tmp_path, py):
        plan = PlanBuilder().add(step("nowhere", *py("pass"), cwd="missing")).build()
        (result,) = run_plan(plan, cwd=tmp_path)
        assert result.status == FAILURE
        assert "working directory not found" in result.stderr


class TestTimeoutAndCancel:
    def test_step_timeout(self, tmp_path, py):
        plan = (
            PlanBuilder()
            .add(step("slow", *py("import time; time.sleep(10)"), timeout=0.5))
            .add(step("after", *py("open('after', 'w')")))
            .build()
        )
        results = run_plan(plan, cwd=tmp_path)
        assert len(results) == 1
        assert results[0].timed_out is True
        assert results[0].exit_code is None
        assert not (tmp_path / "after").exists()

        with pytest.raises(StepExecutionError) as exc:
            raise_for_failure(results)
        assert exc.value.timed_out is True

    def test_run_level_timeout_applies(self, tmp_path, py):
        plan = PlanBuilder().add(step("slow", *py("import time; time.sleep(10)"))).build()
        (result,) = run_plan(plan, cwd=tmp_path, timeout=0.5)
        assert result.timed_out

    def test_cancel_before_start(self, tmp_path, py):
        cancel = threading.Event()
        cancel.set()
        plan = PlanBuilder().add(step("never", *py("open('ran', 'w')"))).build()
        assert run_plan(plan, cwd=tmp_path, cancel=cancel) == []
        assert not (tmp_path / "ran").exists()

    def test_timeout_kills_background_children(self, tmp_path):
        # the shell's background job shares its process group
        plan = PlanBuilder().add(sh("slow", "(sleep 1.5; touch late) & wait", timeout=0.5)).build()
        (result,) = run_plan(plan, cwd=tmp_path)
        assert result.timed_out
        time.sleep(2.5)
        assert not (tmp_path / "late").exists()

    def test_cancel_set_during_step_stops_next(self, tmp_path, fake_runner):
        cancel = threading.Event()
        inner = fake_runner()

        def runner(cmd, **kwargs):
            cancel.set()
            return inner(cmd, **kwargs)

        plan = (
            PlanBuilder()
            .add(sh("first", "echo first"))
            .add(sh("second", "echo second"))
            .build()
        )
        results = run_plan(plan, cwd=tmp_path, cancel=cancel, runner=runner)
        assert [r.step for r in results] == ["first"]
        assert results[0].status == SUCCESS
        assert len(inner.calls) == 1

    def test_keyboard_interrupt_recorded_and_raised(self, tmp_path, fake_runner):
        runner = fake_runner({"second": KeyboardInterrupt()})
        plan = (
            PlanBuilder()
            .add(sh("first", "echo first"))
            .add(sh("second", "echo second"))
            .add(sh("third", "echo third"))
            .build()
        )
        with pytest.raises(RunInterrupted) as exc:
            run_plan(plan, cwd=tmp_path, runner=runner)

        assert isinstance(exc.value, KeyboardInterrupt)
        assert [r.status for r in exc.value.results] == [SUCCESS, INTERRUPTED]
        assert exc.value.results[-1].step == "second"
        assert len(runner.calls) == 2

class TestBuildIsolation:
    def test_flag_appended_for_pip_install(self, tmp_path, fake_runner):
        runner = fake_runner()
        plan = PlanBuilder().add(
            step("build", "python", "-m", "pip", "install", "flash-attn", no_build_isolation=True)
        ).build()
        run_plan(plan, cwd=tmp_path, runner=runner)
        cmd, kwargs = runner.calls[0]
        assert cmd[-1] == "--no-build-isolation"
        assert kwargs["shell"] is False

    def test_isolation_kept_by_default(self, tmp_path, fake_runner):
        runner = fake_runner()
        plan = PlanBuilder().add(step("install", "pip", "install", "numpy")).build()
        run_plan(plan, cwd=tmp_path, runner=runner)
        cmd, _ = runner.calls[0]
        assert "--no-build-isolation" not in cmd

    def test_env_passed_explicitly(self, tmp_path, fake_runner):
        runner = fake_runner()
        plan = PlanBuilder().add(step("build", "pip", "install", "x", env={"MAX_JOBS": "8"})).build()
        run_plan(plan, cwd=tmp_path, runner=runner)
        _, kwargs = runner.calls[0]
        assert kwargs["env"]["MAX_JOBS"] == "8"
        assert kwargs["cwd"] == str(tmp_path.resolve())
