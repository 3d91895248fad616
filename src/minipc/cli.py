# Made by trex099
# https://github.com/Trex099/Glint
"""
minipc command line: one subcommand per phase or tool, and an interactive
menu when no subcommand is given.
"""

import sys
import logging
import argparse

import questionary

from config import CONFIG, setup_logging
from core_utils import console, clear_screen, print_info, print_error, ensure_root, UserCancelled
from . import __version__
from .error_handling import MinipcError, PhaseAborted, get_error_handler

logger = logging.getLogger(__name__)

# Commands that run as the normal user
USER_COMMANDS = {"backup", "restore", "client"}


def cmd_phase1(args):
    from .host import run_phase1
    return 0 if run_phase1() else 1


def cmd_phase2(args):
    from .vm import run_phase2
    return 0 if run_phase2() else 1


def cmd_phase3(args):
    from .guest import run_phase3
    return 0 if run_phase3() else 1


def cmd_client(args):
    from .clients import run_client
    run_client(args.phase)
    return 0


def cmd_check(args):
    from .check import run_check
    report = run_check()
    return 1 if report.failed else 0


def cmd_cloudflared(args):
    from . import cloudflare
    from .system import detect_user
    user = detect_user()
    if args.action == "add-port":
        if args.port is None:
            print_error("Usage: minipc cloudflared add-port <port> [label]")
            return 2
        cloudflare.add_port(user, args.port, args.label)
        return 0
    return 0 if cloudflare.setup_local_tunnel(user) is not None else 1


def cmd_add_port(args):
    from . import cloudflare
    from .system import detect_user
    cloudflare.add_ports(detect_user(), args.ports, args.mode)
    return 0


def cmd_memory(args):
    from .memory import run_memory
    return 0 if run_memory() else 1


def cmd_dokploy(args):
    from .dokploy import run_dokploy
    return 0 if run_dokploy() else 1


def cmd_backup(args):
    from .backup import run_backup
    run_backup(args.output_dir)
    return 0


def cmd_restore(args):
    from .backup import run_restore
    run_restore(args.archive)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="minipc",
        description="Mini PC home server provisioning: host, VM with SR-IOV iGPU, Cloudflare tunnels")
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')
    parser.add_argument('-y', '--yes', action='store_true', help='Accept every default confirmation')
    sub = parser.add_subparsers(dest='command', metavar='COMMAND')

    sub.add_parser('phase1', help='Host preparation').set_defaults(func=cmd_phase1)
    sub.add_parser('phase2', help='VM definition and creation').set_defaults(func=cmd_phase2)
    sub.add_parser('phase3', help='Guest bootstrap over SSH').set_defaults(func=cmd_phase3)

    p = sub.add_parser('client', help='Client device SSH setup (run as your normal user)')
    p.add_argument('phase', nargs='?', choices=['phase1', 'phase2', 'phase3'])
    p.set_defaults(func=cmd_client)

    sub.add_parser('check', help='Health report of everything the phases set up').set_defaults(func=cmd_check)

    p = sub.add_parser('cloudflared', help='Local web services tunnel')
    p.add_argument('action', nargs='?', choices=['add-port'])
    p.add_argument('port', nargs='?', type=int)
    p.add_argument('label', nargs='?')
    p.set_defaults(func=cmd_cloudflared)

    p = sub.add_parser('add-port', help='Expose several local ports through the tunnel')
    p.add_argument('ports', nargs='*', help='Ports, comma and/or space separated')
    p.add_argument('--mode', choices=['default', 'custom', 'random'], help='Subdomain naming')
    p.set_defaults(func=cmd_add_port)

    sub.add_parser('memory', help='ZRAM, sysctl, earlyoom and OOM tuning').set_defaults(func=cmd_memory)
    sub.add_parser('dokploy', help='Dokploy and app tunnel inside the VM').set_defaults(func=cmd_dokploy)

    p = sub.add_parser('backup', help='Pre-reinstall backup archive (run as your normal user)')
    p.add_argument('--output-dir', help='Directory for the archive (default: home)')
    p.set_defaults(func=cmd_backup)

    p = sub.add_parser('restore', help='Restore a backup archive (run as your normal user)')
    p.add_argument('archive')
    p.set_defaults(func=cmd_restore)
    return parser


MENU = [
    ("phase1", "🖥️  Phase 1: Host setup"),
    ("phase2", "💿 Phase 2: Create the VM"),
    ("phase3", "🐧 Phase 3: Configure the VM"),
    ("check", "🩺 Health check"),
    ("cloudflared", "🌐 Local services tunnel"),
    ("add-port", "➕ Add ports to the tunnel"),
    ("memory", "🧠 Memory tuning"),
    ("dokploy", "🚢 Dokploy + app tunnel"),
    ("client", "💻 Client setup"),
    ("backup", "📦 Backup before reinstall"),
]


def main_menu() -> str:
    style = questionary.Style([
        ('selected', 'fg:#673ab7 bold'),
        ('highlighted', 'fg:#673ab7 bold'),
        ('pointer', 'fg:#673ab7 bold'),
    ])
    choices = [questionary.Choice(label, value=value) for value, label in MENU]
    choices += [questionary.Separator(), questionary.Choice("Exit", value="exit")]
    choice = questionary.select("What would you like to do?", choices=choices,
                                use_indicator=True, style=style).ask()
    return choice or "exit"


def run(args, argv) -> int:
    if args.command not in USER_COMMANDS and args.command != "check":
        ensure_root([sys.argv[0]] + argv)
    return args.func(args)


def main(argv=None) -> int:
    parser = build_parser()
    argv = list(sys.argv[1:] if argv is None else argv)
    args = parser.parse_args(argv)

    CONFIG['DEBUG'] = args.debug
    CONFIG['ASSUME_YES'] = args.yes
    setup_logging('DEBUG' if args.debug else None)

    try:
        if args.command is None:
            clear_screen()
            console.print(f"[bold purple]minipc {__version__}[/]")
            command = main_menu()
            if command == "exit":
                print_info("Exiting. Goodbye! 👋")
                return 0
            argv = ((["--debug"] if args.debug else []) + (["--yes"] if args.yes else []) + [command])
            args = parser.parse_args(argv)
        logger.info("minipc %s: %s", __version__, args.command)
        status = run(args, argv)
        if args.debug:
            get_error_handler().display_error_history()
        return status
    except PhaseAborted as e:
        print_error(f"Stopped at step '{e.step}': {e.error}")
        logger.error("phase aborted at %s: %s", e.step, e.error)
        return 1
    except MinipcError as e:
        get_error_handler().handle_error(e)
        return 1
    except (UserCancelled, KeyboardInterrupt, EOFError):
        print_info("\nCancelled.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
