from unittest import mock

import pytest
from click.testing import CliRunner

from slurm_telemetry import __version__
from slurm_telemetry.cli import main
from slurm_telemetry.ports import PortSearchError
from slurm_telemetry.telemetry import WorkerSpawnError

NO_SLURM = {"SLURM_JOB_ID": None, "SLURM_JOB_NODELIST": None, "GPU_DEVICE_ORDINAL": None}


@pytest.fixture
def runner():
    return CliRunner()


def test_version(runner):
    result = runner.invoke(main, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_expand_argument(runner):
    result = runner.invoke(main, ["expand", "node[01-03]"])
    assert result.exit_code == 0
    assert result.output.split() == ["node01", "node02", "node03"]


def test_expand_from_environment(runner):
    result = runner.invoke(main, ["expand"], env={"SLURM_JOB_NODELIST": "nodeA[5],nodeB[10-12]"})
    assert result.output.split() == ["nodeA5", "nodeB10", "nodeB11", "nodeB12"]


def test_expand_without_allocation(runner):
    result = runner.invoke(main, ["expand"], env=NO_SLURM)
    assert result.output.split() == ["127.0.0.1"]


@mock.patch("slurm_telemetry.cli.find_open_port", return_value=4242)
def test_find_port(mocked_find, runner):
    result = runner.invoke(main, ["find-port", "--nodes", "a,b", "--max-attempts", "10"], env=NO_SLURM)
    assert result.exit_code == 0
    assert result.output.strip() == "4242"
    assert mocked_find.call_args.args[0] == ["a", "b"]
    assert mocked_find.call_args.kwargs["max_attempts"] == 10
    assert mocked_find.call_args.kwargs["min_port"] == 2048


@mock.patch("slurm_telemetry.cli.find_open_port", side_effect=PortSearchError("nothing free"))
def test_find_port_gives_up(mocked_find, runner):
    result = runner.invoke(main, ["find-port", "--max-attempts", "1"], env=NO_SLURM)
    assert result.exit_code == 1
    assert "nothing free" in result.output


def test_log_gpu_without_devices_file(runner, tmp_path):
    result = runner.invoke(
        main, ["log-gpu", str(tmp_path / "gpu_usage.csv"), "--cuda-file", str(tmp_path / "missing")]
    )
    assert result.exit_code == 1
    assert "ERROR" in result.output


@mock.patch("slurm_telemetry.cli.TelemetrySampler")
def test_sample_once_reports_failures(mocked_sampler, runner, tmp_path):
    mocked_sampler.return_value.run_pass.return_value = [("a", 0), ("b", 255)]
    result = runner.invoke(main, ["sample-once", "--nodes", "a,b", "--workdir", str(tmp_path)], env=NO_SLURM)
    assert result.exit_code == 1
    assert mocked_sampler.call_args.args[0] == ["a", "b"]
    assert "exit 255" in result.output


def test_run_dryrun_without_sampler(runner):
    result = runner.invoke(
        main,
        ["run", "--dryrun", "--no-run-nvidia-smi", "--srun", "python train.py"],
        env=NO_SLURM,
    )
    assert result.exit_code == 0, result.output
    assert "Done" in result.output


def test_run_prints_cancel_message(runner):
    env = dict(NO_SLURM, SLURM_JOB_ID="777")
    result = runner.invoke(main, ["run", "--no-run-nvidia-smi"], env=env)
    assert result.exit_code == 0, result.output
    assert "scancel --signal=USR1 --batch 777" in result.output


@mock.patch("slurm_telemetry.cli.start_sampler", side_effect=WorkerSpawnError("fork failed"))
def test_run_spawn_failure_is_fatal(mocked_start, runner):
    result = runner.invoke(main, ["run"], env=dict(NO_SLURM, SLURM_JOB_NODELIST="n[1-2]"))
    assert result.exit_code == 1
    assert "fork failed" in result.output


@mock.patch("slurm_telemetry.cli.start_sampler")
@mock.patch("slurm_telemetry.cli.Launcher")
def test_run_stops_sampler_after_job_steps(mocked_launcher, mocked_start, runner):
    mocked_launcher.return_value.wait_all.return_value = [0]
    worker = mocked_start.return_value
    result = runner.invoke(main, ["run", "--srun", "hostname"], env=dict(NO_SLURM, SLURM_JOB_NODELIST="n[1-2]"))

    assert result.exit_code == 0, result.output
    stop = mocked_start.call_args.args[1]
    assert stop.is_set()
    worker.join.assert_called_once_with()
    mocked_launcher.return_value.srun.assert_called_once_with("hostname", gpus=0)


def test_run_rejects_zero_interval(runner):
    result = runner.invoke(main, ["run", "--sleep-nvidia-smi", "0"], env=NO_SLURM)
    assert result.exit_code == 1
    assert "must be positive" in result.output


@mock.patch("slurm_telemetry.cli.run_on_all_nodes", return_value={"a": 0, "b": 0})
def test_exec_all(mocked_run, runner):
    result = runner.invoke(main, ["exec-all", "--nodes", "a,b", "--timeout", "5", "--", "nvidia-smi", "-L"], env=NO_SLURM)
    assert result.exit_code == 0, result.output
    assert mocked_run.call_args.args == (["a", "b"], ("nvidia-smi", "-L"))
    assert mocked_run.call_args.kwargs["timeout"] == 5.0


@mock.patch("slurm_telemetry.cli.run_on_all_nodes", return_value={"n1": 0, "n2": 255})
def test_exec_all_reports_failures(mocked_run, runner):
    result = runner.invoke(main, ["exec-all", "hostname"], env=dict(NO_SLURM, SLURM_JOB_NODELIST="n[1-2]"))
    assert result.exit_code == 1
    assert mocked_run.call_args.args[0] == ["n1", "n2"]
    assert "exit 255" in result.output
