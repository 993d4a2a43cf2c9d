"""Unit tests for the command line parser"""

from pathlib import Path

import pytest

from lab_platform.cli import build_parser


def test_provision_arguments():
    args = build_parser().parse_args([
        "provision", "--user-id", "7", "--team-id", "3",
        "--dep", "node", "--dep", "redis",
        "--cpu", "2", "--public-key-file", "/tmp/id.pub", "--direct"
    ])

    assert args.command == "provision"
    assert args.user_id == 7
    assert args.team_id == 3
    assert args.dependencies == ["node", "redis"]
    assert args.cpu == 2
    assert args.memory_mb == 1024
    assert args.public_key_file == Path("/tmp/id.pub")
    assert args.direct is True


def test_usage_requires_user():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["usage"])


def test_command_is_required():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])
