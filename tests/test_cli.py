"""Tests for the admin command line"""

import pytest

from wallet_collection.cli import build_parser, main, read_users_file
from wallet_collection.exceptions import ConfigurationError, NetworkError


def test_sweep_arguments():
    args = build_parser().parse_args(["--log-level", "debug", "sweep", "alice", "bob", "--both", "--delay", "0.5"])

    assert args.user_ids == ["alice", "bob"]
    assert args.both is True
    assert args.native is False
    assert args.delay == 0.5
    assert args.log_level == "debug"


def test_native_and_both_are_exclusive():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["sweep", "alice", "--native", "--both"])


def test_read_users_file(tmp_path):
    path = tmp_path / "users.txt"
    path.write_text("alice\n\n# paused\nbob  # vip\n  carol\n")

    assert read_users_file(str(path)) == ["alice", "bob", "carol"]


def test_no_command_prints_help(capsys):
    assert main([]) == 0
    assert "wallet-collection" in capsys.readouterr().out


def test_withdraw_arguments():
    args = build_parser().parse_args(["withdraw", "0x3333333333333333333333333333333333333333", "50", "--fee", "1"])

    assert args.to_address == "0x3333333333333333333333333333333333333333"
    assert args.amount == "50"
    assert args.fee == "1"


def test_configuration_errors_exit_with_two(mocker):
    mocker.patch("wallet_collection.cli.load_settings", side_effect=ConfigurationError("WALLET_SEED is required"))

    assert main(["check"]) == 2


def test_runtime_errors_exit_with_one(mocker):
    mocker.patch("wallet_collection.cli.load_settings", side_effect=NetworkError("node unreachable"))

    assert main(["check"]) == 1
