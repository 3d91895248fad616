"""
Tests for the command line parser and the top-level error mapping.
"""

import os

import pytest

from config import CONFIG
from minipc import cli
from minipc.cli import build_parser, main, MENU
from minipc.error_handling import ValidationError, PhaseAborted


class TestParser:
    def test_phase_commands(self):
        parser = build_parser()
        for command in ("phase1", "phase2", "phase3", "check", "memory", "dokploy"):
            args = parser.parse_args([command])
            assert args.command == command
            assert callable(args.func)

    def test_global_flags(self):
        args = build_parser().parse_args(["--debug", "-y", "check"])
        assert args.debug and args.yes

    def test_cloudflared_add_port(self):
        args = build_parser().parse_args(["cloudflared", "add-port", "8080", "api"])
        assert (args.action, args.port, args.label) == ("add-port", 8080, "api")
        args = build_parser().parse_args(["cloudflared"])
        assert args.action is None and args.port is None

    def test_add_port(self):
        args = build_parser().parse_args(["add-port", "8080,3000", "5173", "--mode", "random"])
        assert args.ports == ["8080,3000", "5173"]
        assert args.mode == "random"

    def test_client_phase(self):
        assert build_parser().parse_args(["client", "phase2"]).phase == "phase2"
        with pytest.raises(SystemExit):
            build_parser().parse_args(["client", "phase7"])

    def test_backup_and_restore(self):
        assert build_parser().parse_args(["backup", "--output-dir", "/mnt"]).output_dir == "/mnt"
        assert build_parser().parse_args(["restore", "a.tar.gz"]).archive == "a.tar.gz"

    def test_menu_commands_parse(self):
        parser = build_parser()
        for command, _ in MENU:
            assert parser.parse_args([command]).command == command


class TestMain:
    @pytest.fixture(autouse=True)
    def quiet_logging(self, monkeypatch):
        monkeypatch.setattr(cli, "setup_logging", lambda level=None: None)
        monkeypatch.setitem(CONFIG, "DEBUG", False)

    def test_minipc_error_maps_to_1(self, monkeypatch):
        def failing(args):
            raise ValidationError("bad input", code="MPC-E800")
        monkeypatch.setattr(cli, "run", lambda args, argv: failing(args))
        assert main(["check"]) == 1

    def test_phase_aborted_maps_to_1(self, monkeypatch):
        def aborted(args, argv):
            raise PhaseAborted("Create VM", RuntimeError("virt-install failed"))
        monkeypatch.setattr(cli, "run", aborted)
        assert main(["phase2"]) == 1

    def test_cancel_maps_to_130(self, monkeypatch):
        def cancelled(args, argv):
            raise KeyboardInterrupt
        monkeypatch.setattr(cli, "run", cancelled)
        assert main(["memory"]) == 130

    def test_menu_exit(self, monkeypatch):
        monkeypatch.setattr(cli, "main_menu", lambda: "exit")
        assert main([]) == 0

    def test_menu_choice_runs_command(self, monkeypatch):
        seen = []
        monkeypatch.setattr(cli, "main_menu", lambda: "check")
        monkeypatch.setattr(cli, "run", lambda args, argv: seen.append((args.command, argv)) or 0)
        assert main(["-y"]) == 0
        assert seen == [("check", ["--yes", "check"])]


class TestLauncher:
    ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

    def test_launcher_does_not_shadow_package(self):
        assert not os.path.exists(os.path.join(self.ROOT, "minipc.py"))
        assert os.path.isfile(os.path.join(self.ROOT, "run_minipc.py"))

    def test_minipc_is_the_package(self):
        import minipc
        assert hasattr(minipc, "__path__")
        assert minipc.cli is cli
