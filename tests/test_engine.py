"""Tests for the runbook engine - the core execution layer."""

import subprocess
from unittest.mock import patch

import pytest

from runbookctl.core.exceptions import RunAborted, StepExecutionError, ValidationError
from runbookctl.runbooks import RunbookEngine, RunMode, StepKind, StepStatus
from runbookctl.runbooks.schema import Runbook, Step

SUBPROCESS_RUN = "runbookctl.runbooks.engine.subprocess.run"


def completed(returncode: int = 0, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args="", returncode=returncode, stdout=stdout, stderr=stderr)


def make_runbook(*steps: Step, **kwargs) -> Runbook:
    return Runbook(name=kwargs.pop("name", "Test runbook"), steps=steps, **kwargs)


@pytest.fixture
def three_steps() -> Runbook:
    return make_runbook(
        Step(title="First", body="echo one"),
        Step(title="Second", body="false"),
        Step(title="Third", body="echo three"),
    )


class TestDryRun:
    """Dry-run never starts a process."""

    def test_no_process_started(self, three_steps):
        engine = RunbookEngine()
        with patch(SUBPROCESS_RUN) as mock_run:
            result = engine.run(three_steps, mode=RunMode.DRY_RUN)

        mock_run.assert_not_called()
        assert result.status == StepStatus.SUCCESS
        assert result.dry_run is True
        assert [r.status for r in result.step_results] == [StepStatus.SUCCESS] * 3

    def test_default_mode_is_dry_run(self, three_steps):
        with patch(SUBPROCESS_RUN) as mock_run:
            result = RunbookEngine().run(three_steps)
        mock_run.assert_not_called()
        assert result.mode == RunMode.DRY_RUN

    def test_output_shows_substituted_command(self):
        rb = make_runbook(Step(title="Create", body="conda create -n {{ env_name }} python=3.8"))
        result = RunbookEngine().run(rb, mode="dry-run", variables={"env_name": "robosim"})
        assert result.step_results[0].command == "conda create -n robosim python=3.8"
        assert "[DRY RUN] Would execute:" in result.step_results[0].output

    def test_unresolved_variables_are_allowed(self):
        rb = make_runbook(Step(title="Login", body="ssh {{ user }}@{{ host }}"))
        result = RunbookEngine().run(rb)
        assert result.step_results[0].command == "ssh {{ user }}@{{ host }}"

    def test_conditional_steps_are_not_asked(self):
        asked = []
        rb = make_runbook(Step(title="GCC", body="module load gcc", precondition="only on error"))
        engine = RunbookEngine(confirm_handler=lambda msg: asked.append(msg) or False)
        result = engine.run(rb)
        assert asked == []
        assert result.step_results[0].status == StepStatus.SUCCESS

    def test_edit_step_is_manual(self):
        rb = make_runbook(
            Step(title="Patch", body="+ x", kind=StepKind.EDIT, target="main.cpp", language="diff")
        )
        result = RunbookEngine().run(rb)
        assert result.step_results[0].status == StepStatus.MANUAL
        assert "main.cpp" in result.step_results[0].output
        assert result.manual_steps == 1

    def test_handlers_called_in_order(self, three_steps):
        seen = []
        engine = RunbookEngine(
            step_handler=lambda index, step: seen.append(("start", index)),
            output_handler=lambda r: seen.append(("done", r.index)),
        )
        engine.run(three_steps)
        assert seen == [
            ("start", 1), ("done", 1),
            ("start", 2), ("done", 2),
            ("start", 3), ("done", 3),
        ]


class TestExecute:
    """Execute mode runs steps in order and stops at the first failure."""

    def test_all_steps_succeed(self, three_steps):
        with patch(SUBPROCESS_RUN, return_value=completed(stdout="ok\n")) as mock_run:
            result = RunbookEngine().run(three_steps, mode=RunMode.EXECUTE)

        assert mock_run.call_count == 3
        assert result.status == StepStatus.SUCCESS
        assert result.successful_steps == 3
        assert result.step_results[0].output == "ok\n"
        assert result.step_results[0].return_code == 0

    def test_commands_run_in_order(self, three_steps):
        with patch(SUBPROCESS_RUN, return_value=completed()) as mock_run:
            RunbookEngine().run(three_steps, mode=RunMode.EXECUTE)
        commands = [c.args[0] for c in mock_run.call_args_list]
        assert commands == ["echo one", "false", "echo three"]

    def test_failure_halts_run(self, three_steps):
        side_effect = [completed(stdout="one\n"), completed(returncode=2, stderr="boom\n")]
        with patch(SUBPROCESS_RUN, side_effect=side_effect) as mock_run:
            with pytest.raises(StepExecutionError) as exc_info:
                RunbookEngine().run(three_steps, mode=RunMode.EXECUTE)

        assert mock_run.call_count == 2
        error = exc_info.value
        assert error.step_index == 2
        assert error.exit_code == 2
        assert error.stderr == "boom\n"

    def test_failure_result_is_attached(self, three_steps):
        side_effect = [completed(), completed(returncode=1, stderr="no such module")]
        with patch(SUBPROCESS_RUN, side_effect=side_effect):
            with pytest.raises(StepExecutionError) as exc_info:
                RunbookEngine().run(three_steps, mode=RunMode.EXECUTE)

        result = exc_info.value.result
        assert result.status == StepStatus.FAILED
        assert result.failed_step == 2
        assert [r.status for r in result.step_results] == [StepStatus.SUCCESS, StepStatus.FAILED]
        assert result.step_results[1].return_code == 1

    def test_stderr_is_verbatim(self):
        stderr = "  error: [bold]gcc[/bold] 4.8.5 too old\n\ttab\n"
        rb = make_runbook(Step(title="Build", body="make"))
        with patch(SUBPROCESS_RUN, return_value=completed(returncode=1, stderr=stderr)):
            with pytest.raises(StepExecutionError) as exc_info:
                RunbookEngine().run(rb, mode=RunMode.EXECUTE)
        assert exc_info.value.stderr == stderr

    def test_failure_output_handler_gets_failed_result(self):
        finished = []
        rb = make_runbook(Step(title="Build", body="make"))
        engine = RunbookEngine(output_handler=finished.append)
        with patch(SUBPROCESS_RUN, return_value=completed(returncode=4, stderr="x")):
            with pytest.raises(StepExecutionError):
                engine.run(rb, mode=RunMode.EXECUTE)
        assert len(finished) == 1
        assert finished[0].status == StepStatus.FAILED

    def test_timeout(self):
        rb = make_runbook(Step(title="Slow", body="sleep 100", timeout=5))
        with patch(SUBPROCESS_RUN, side_effect=subprocess.TimeoutExpired("sleep 100", 5)):
            with pytest.raises(StepExecutionError) as exc_info:
                RunbookEngine().run(rb, mode=RunMode.EXECUTE)
        assert exc_info.value.exit_code is None
        assert "timed out" in exc_info.value.message

    def test_missing_shell(self):
        rb = make_runbook(Step(title="A", body="echo a"))
        with patch(SUBPROCESS_RUN, side_effect=FileNotFoundError("/bin/nosuchshell")):
            with pytest.raises(StepExecutionError) as exc_info:
                RunbookEngine(shell="/bin/nosuchshell").run(rb, mode=RunMode.EXECUTE)
        assert exc_info.value.step_index == 1

    def test_subprocess_arguments(self):
        rb = make_runbook(Step(title="A", body="echo a"))
        with patch(SUBPROCESS_RUN, return_value=completed()) as mock_run:
            RunbookEngine(shell="/bin/sh", timeout=30).run(rb, mode=RunMode.EXECUTE)
        kwargs = mock_run.call_args.kwargs
        assert kwargs["shell"] is True
        assert kwargs["executable"] == "/bin/sh"
        assert kwargs["timeout"] == 30
        assert kwargs["capture_output"] is True

    def test_step_shell_and_timeout_override(self):
        rb = make_runbook(Step(title="A", body="echo a", shell="/bin/zsh", timeout=7))
        with patch(SUBPROCESS_RUN, return_value=completed()) as mock_run:
            RunbookEngine(shell="/bin/sh", timeout=30).run(rb, mode=RunMode.EXECUTE)
        kwargs = mock_run.call_args.kwargs
        assert kwargs["executable"] == "/bin/zsh"
        assert kwargs["timeout"] == 7

    def test_no_capture(self):
        rb = make_runbook(Step(title="A", body="ssh login"))
        with patch(SUBPROCESS_RUN, return_value=completed(stdout=None, stderr=None)) as mock_run:
            result = RunbookEngine(capture_output=False).run(rb, mode=RunMode.EXECUTE)
        assert mock_run.call_args.kwargs["capture_output"] is False
        assert result.step_results[0].output == ""

    def test_prelude_and_environment(self):
        rb = make_runbook(
            Step(title="Activate", body="conda activate {{ env_name }}"),
            prelude="source ~/miniconda3/etc/profile.d/conda.sh",
            environment={"CONDA_ENV": "{{ env_name }}"},
            variables={"env_name": "robosim"},
        )
        engine = RunbookEngine(environment={"SITE": "cluster"})
        with patch(SUBPROCESS_RUN, return_value=completed()) as mock_run:
            engine.run(rb, mode=RunMode.EXECUTE)

        command = mock_run.call_args.args[0]
        assert command == "source ~/miniconda3/etc/profile.d/conda.sh\nconda activate robosim"
        env = mock_run.call_args.kwargs["env"]
        assert env["CONDA_ENV"] == "robosim"
        assert env["SITE"] == "cluster"
        assert env["RUNBOOK_ENV_NAME"] == "robosim"

    def test_unresolved_variables_block_execution(self):
        rb = make_runbook(Step(title="Login", body="ssh {{ user }}@{{ host }}"))
        with patch(SUBPROCESS_RUN) as mock_run:
            with pytest.raises(ValidationError) as exc_info:
                RunbookEngine().run(rb, mode=RunMode.EXECUTE, variables={"user": "alice"})
        mock_run.assert_not_called()
        assert any("host" in issue for issue in exc_info.value.issues)

    def test_keyboard_interrupt(self, three_steps):
        side_effect = [completed(), KeyboardInterrupt()]
        with patch(SUBPROCESS_RUN, side_effect=side_effect) as mock_run:
            with pytest.raises(KeyboardInterrupt):
                RunbookEngine().run(three_steps, mode=RunMode.EXECUTE)
        assert mock_run.call_count == 2

    def test_no_retry(self):
        rb = make_runbook(Step(title="Flaky", body="flaky"))
        with patch(SUBPROCESS_RUN, return_value=completed(returncode=1)) as mock_run:
            with pytest.raises(StepExecutionError):
                RunbookEngine().run(rb, mode=RunMode.EXECUTE)
        assert mock_run.call_count == 1


class TestConditionalSteps:
    """Steps with a precondition run only when a human confirms it."""

    @pytest.fixture
    def runbook(self) -> Runbook:
        return make_runbook(
            Step(title="Check", body="gcc --version"),
            Step(title="Load GCC", body="module load gcc", precondition="only if a GCC error occurs"),
            Step(title="Build", body="make"),
        )

    def test_confirmed(self, runbook):
        questions = []
        engine = RunbookEngine(confirm_handler=lambda q: questions.append(q) or True)
        with patch(SUBPROCESS_RUN, return_value=completed()) as mock_run:
            result = engine.run(runbook, mode=RunMode.EXECUTE)
        assert mock_run.call_count == 3
        assert len(questions) == 1
        assert "only if a GCC error occurs" in questions[0]
        assert result.skipped_steps == 0

    def test_declined(self, runbook):
        engine = RunbookEngine(confirm_handler=lambda q: False)
        with patch(SUBPROCESS_RUN, return_value=completed()) as mock_run:
            result = engine.run(runbook, mode=RunMode.EXECUTE)
        assert mock_run.call_count == 2
        assert result.step_results[1].status == StepStatus.SKIPPED
        assert result.status == StepStatus.SUCCESS

    def test_no_handler_skips(self, runbook):
        with patch(SUBPROCESS_RUN, return_value=completed()) as mock_run:
            result = RunbookEngine().run(runbook, mode=RunMode.EXECUTE)
        assert mock_run.call_count == 2
        assert result.step_results[1].skipped_reason.startswith("Precondition not confirmed")


class TestEditSteps:
    """Edit steps are never applied automatically."""

    @pytest.fixture
    def runbook(self) -> Runbook:
        return make_runbook(
            Step(title="Patch", body="+ include", kind=StepKind.EDIT, target="src/main.cpp"),
            Step(title="Build", body="make"),
        )

    def test_confirmed_edit_continues(self, runbook):
        engine = RunbookEngine(confirm_handler=lambda q: True)
        with patch(SUBPROCESS_RUN, return_value=completed()) as mock_run:
            result = engine.run(runbook, mode=RunMode.EXECUTE)
        assert mock_run.call_count == 1
        assert result.step_results[0].status == StepStatus.MANUAL

    def test_declined_edit_aborts(self, runbook):
        engine = RunbookEngine(confirm_handler=lambda q: False)
        with patch(SUBPROCESS_RUN) as mock_run:
            with pytest.raises(RunAborted) as exc_info:
                engine.run(runbook, mode=RunMode.EXECUTE)
        mock_run.assert_not_called()
        assert exc_info.value.step_index == 1
        assert exc_info.value.result.failed_step == 1

    def test_no_handler_leaves_edit_to_operator(self, runbook):
        with patch(SUBPROCESS_RUN, return_value=completed()):
            result = RunbookEngine().run(runbook, mode=RunMode.EXECUTE)
        assert result.step_results[0].status == StepStatus.MANUAL
        assert result.step_results[0].skipped_reason == "Edit left to the operator"


class TestStart:
    """Resuming a run from a later step."""

    def test_start_skips_earlier_steps(self, three_steps):
        with patch(SUBPROCESS_RUN, return_value=completed()) as mock_run:
            result = RunbookEngine().run(three_steps, mode=RunMode.EXECUTE, start=3)
        assert mock_run.call_count == 1
        assert [r.index for r in result.step_results] == [3]

    @pytest.mark.parametrize("start", [0, 4])
    def test_start_out_of_range(self, three_steps, start):
        with pytest.raises(ValidationError):
            RunbookEngine().run(three_steps, start=start)

    def test_skipped_steps_are_not_validated(self):
        rb = make_runbook(
            Step(title="Allocate", body="salloc --account {{ account }}"),
            Step(title="Check", body="nvidia-smi"),
        )
        with patch(SUBPROCESS_RUN, return_value=completed()) as mock_run:
            result = RunbookEngine().run(rb, mode=RunMode.EXECUTE, start=2)
        assert mock_run.call_count == 1
        assert result.status == StepStatus.SUCCESS

    def test_steps_from_start_are_still_validated(self):
        rb = make_runbook(
            Step(title="Allocate", body="salloc --account {{ account }}"),
            Step(title="Check", body="nvidia-smi"),
        )
        with patch(SUBPROCESS_RUN) as mock_run:
            with pytest.raises(ValidationError):
                RunbookEngine().run(rb, mode=RunMode.EXECUTE, start=1)
        mock_run.assert_not_called()


class TestVariables:
    """Variable precedence: profile, runbook defaults, then overrides."""

    def test_precedence(self):
        rb = make_runbook(
            Step(title="A", body="echo {{ a }} {{ b }} {{ c }}"),
            variables={"b": "runbook", "c": "runbook"},
        )
        engine = RunbookEngine(variables={"a": "profile", "b": "profile"})
        resolved = engine.resolve_variables(rb, {"c": "cli"})
        assert resolved == {"a": "profile", "b": "runbook", "c": "cli"}

    def test_runbook_without_default_keeps_profile_value(self):
        rb = make_runbook(Step(title="A", body="ssh {{ user }}"), variables={"user": None})
        engine = RunbookEngine(variables={"user": "alice"})
        assert engine.resolve_variables(rb)["user"] == "alice"


class TestValidate:
    """Tests for RunbookEngine.validate."""

    def test_valid(self):
        rb = make_runbook(Step(title="A", body="echo {{ x }}"), variables={"x": "1"})
        assert RunbookEngine().validate(rb) == []

    def test_no_steps(self):
        issues = RunbookEngine().validate(make_runbook())
        assert "Runbook must have at least one step" in issues

    def test_undefined_variables(self):
        rb = make_runbook(Step(title="A", body="srun --jobid={{ jobid }} --pty bash"))
        issues = RunbookEngine().validate(rb)
        assert issues == ["Step 1 references undefined variable(s): jobid"]

    def test_placeholders_before_start_are_ignored(self):
        rb = make_runbook(
            Step(title="A", body="srun --jobid={{ jobid }} --pty bash"),
            Step(title="B", body="echo {{ host }}"),
        )
        issues = RunbookEngine().validate(rb, start=2)
        assert issues == ["Step 2 references undefined variable(s): host"]

    def test_undefined_prelude_variable(self):
        rb = make_runbook(Step(title="A", body="echo"), prelude="module load {{ mod }}")
        issues = RunbookEngine().validate(rb)
        assert any("Prelude" in issue for issue in issues)

    def test_edit_without_target(self):
        rb = make_runbook(Step(title="Patch", body="+ x", kind=StepKind.EDIT))
        issues = RunbookEngine().validate(rb)
        assert "Edit step 1 must name a target file" in issues


class TestPresentThroughEngine:
    """RunbookEngine.present substitutes resolved variables."""

    def test_present(self):
        rb = make_runbook(Step(title="Login", body="ssh {{ user }}@{{ host }}"))
        engine = RunbookEngine(variables={"user": "alice"})
        descriptions = list(engine.present(rb, {"host": "login.example.edu"}))
        assert descriptions[0].body == "ssh alice@login.example.edu"


class TestListRunbooks:
    """Tests for RunbookEngine.list_runbooks."""

    def test_lists_markdown_and_yaml(self, tmp_path, sample_markdown, three_step_yaml):
        (tmp_path / "sample.md").write_text(sample_markdown)
        (tmp_path / "notes.txt").write_text("ignored")
        runbooks = RunbookEngine().list_runbooks(tmp_path)
        names = [r["name"] for r in runbooks]
        assert names == ["Sample setup", "Three steps"]
        assert runbooks[0]["tags"] == ["hpc", "sample"]
        assert runbooks[1]["steps"] == 3

    def test_skips_broken_files(self, tmp_path):
        (tmp_path / "broken.md").write_text("# Broken\n\n## Steps\n\n### 1. Empty\n\nNo code.\n")
        assert RunbookEngine().list_runbooks(tmp_path) == []

    def test_skips_undecodable_files(self, tmp_path, three_step_yaml):
        (tmp_path / "bad.yaml").write_bytes(b"name: \xff\n")
        runbooks = RunbookEngine().list_runbooks(tmp_path)
        assert [r["name"] for r in runbooks] == ["Three steps"]

    def test_missing_directory(self, tmp_path):
        assert RunbookEngine().list_runbooks(tmp_path / "missing") == []
