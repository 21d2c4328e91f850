import subprocess
import sys

import pytest

from fastcs_dynamixel import __version__
from fastcs_dynamixel.cli import DynamixelCLI, parse_register
from fastcs_dynamixel.registers import Register


def test_cli_version():
    cmd = [sys.executable, "-m", "fastcs_dynamixel", "--version"]
    assert subprocess.check_output(cmd).decode().strip() == __version__


def test_parse_register_by_name_and_offset():
    assert parse_register("goal_position") is Register.GOAL_POSITION
    assert parse_register("30") is Register.GOAL_POSITION


def test_parse_register_unknown():
    with pytest.raises(ValueError):
        parse_register("no_such_register")
    with pytest.raises(ValueError):
        parse_register("31")


@pytest.fixture
def cli():
    cli = DynamixelCLI("sim://1,2")
    cli.start()
    yield cli
    cli.stop()


def test_scan_and_read(cli, capsys):
    assert cli.run_command("scan 0 5")
    assert "[1, 2]" in capsys.readouterr().out

    cli.run_command("r 1 model_number")
    assert "MODEL_NUMBER = 12" in capsys.readouterr().out


def test_go_and_sync(cli, capsys):
    cli.run_command("scan 1 2")
    cli.run_command("go 2 700 100")
    cli.run_command("sync")
    assert "Synchronized 1 servo(s)" in capsys.readouterr().out
    assert cli.transport.simulator.read_value(2, Register.GOAL_POSITION) == 700


def test_read_only_write_reports_error(cli, capsys):
    cli.run_command("scan 1 2")
    assert cli.run_command("w 1 current_position 5")
    assert "read-only" in capsys.readouterr().out


def test_unknown_servo(cli, capsys):
    cli.run_command("r 9 led")
    assert "not found" in capsys.readouterr().out


def test_quit(cli):
    assert cli.run_command("quit") is False
    assert cli.run_command("") is True
