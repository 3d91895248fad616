# Made by trex099
# https://github.com/Trex099/Glint
"""
Core utility functions for minipc.

This module provides a collection of helper functions for command execution,
file operations, user interaction and downloads shared by every phase.
"""
import os
import pwd
import sys
import shlex
import shutil
import logging
import tempfile
import subprocess
import questionary
import requests
from tqdm import tqdm
from rich.console import Console
from rich.panel import Panel

from config import CONFIG

console = Console()
# Create a dedicated console for printing errors to stderr
error_console = Console(stderr=True, style="bold red")
logger = logging.getLogger('minipc.core_utils')

# --- Text and Styling ---

def print_header(text):
    """Prints a styled header to the console."""
    console.print(Panel(f"[bold cyan]{text}[/]", expand=False, border_style="blue"))

def print_step(text):
    """Prints a step separator inside a phase."""
    console.print(f"\n[bold]  ── {text} ──[/]")

def print_info(text):
    """Prints an informational message to the console."""
    console.print(f"[cyan]ℹ️  {text}[/]")

def print_success(text):
    """Prints a success message to the console."""
    console.print(f"[green]✅ {text}[/]")

def print_warning(text):
    """Prints a warning message to the console."""
    console.print(f"[yellow]⚠️  {text}[/]")

def print_error(text):
    """
    Prints raw, unformatted text to stderr so that command output containing
    square brackets never trips rich markup parsing.
    """
    print(f"❌ {text}", file=sys.stderr)


def clear_screen():
    """Clears the console screen."""
    os.system('clear')


class UserCancelled(Exception):
    """Exception raised when user cancels an operation via ESC or Ctrl+C."""
    pass


def safe_ask(prompt_result):
    """
    Safely handle questionary .ask() result.

    If user pressed ESC/Ctrl+C (returns None), raises UserCancelled.
    Otherwise returns the result.
    """
    if prompt_result is None:
        raise UserCancelled("Operation cancelled by user")
    return prompt_result


def safe_text_ask(prompt, default="", allow_empty=False, password=False):
    """
    Safely ask for text input with proper cancellation handling.

    Args:
        prompt: The prompt to display
        default: Default value if user enters empty string
        allow_empty: If True, empty input returns empty string; if False, returns default
        password: Hide the typed characters

    Returns:
        User input (stripped) or default value

    Raises:
        UserCancelled if user presses ESC/Ctrl+C
    """
    if password:
        result = questionary.password(prompt).ask()
    else:
        label = f"{prompt} [{default}]" if default not in ("", None) else prompt
        result = questionary.text(label).ask()
    if result is None:
        raise UserCancelled("Operation cancelled by user")

    stripped = result.strip()
    if not stripped and not allow_empty:
        return default
    return stripped


def safe_int_ask(prompt, default, minimum=None, maximum=None):
    """Ask for an integer; out-of-range or non-numeric answers fall back to the default."""
    answer = safe_text_ask(prompt, default=str(default))
    try:
        value = int(answer)
    except ValueError:
        print_warning(f"'{answer}' is not a number, using {default}")
        return default
    if (minimum is not None and value < minimum) or (maximum is not None and value > maximum):
        print_warning(f"{value} is out of range, using {default}")
        return default
    return value


def confirm(message, default=True):
    """Yes/no question. Returns the default without asking when ASSUME_YES is set."""
    if CONFIG.get('ASSUME_YES'):
        return default
    return safe_ask(questionary.confirm(message, default=default).ask())


def select_from_list(items, prompt, display_key=None, default=None):
    """
    Presents a list of items to the user and returns the selected item.

    Returns None if the list is empty.
    """
    if not items:
        return None
    choices = []
    default_choice = None
    for item in items:
        title = display_key(item) if callable(display_key) else (
            item[display_key] if display_key else str(item))
        choice = questionary.Choice(title, value=item)
        choices.append(choice)
        if default is not None and item == default:
            default_choice = choice
    if CONFIG.get('ASSUME_YES'):
        return default if default is not None else items[0]
    return safe_ask(questionary.select(prompt, choices=choices, default=default_choice,
                                       use_indicator=True).ask())


# --- Command Execution ---

def is_root():
    return os.geteuid() == 0


def ensure_root(argv=None):
    """Re-execute the current command through sudo when not running as root."""
    if is_root():
        return
    argv = list(argv if argv is not None else sys.argv)
    print_warning("Re-running with sudo...")
    logger.info("Re-executing as root: %s", argv)
    os.execvp("sudo", ["sudo", "-E", sys.executable] + argv)


def run_command_live(cmd_list, as_root=False, check=True, quiet=False, env=None, input_text=None):
    """
    Runs a command and prints its output live.
    Returns the command's output as a string if successful, otherwise None.
    """
    cmd_list = list(cmd_list)

    if as_root and not is_root():
        cmd_list.insert(0, "sudo")

    cmd_str = ' '.join(shlex.quote(s) for s in cmd_list)
    if not quiet:
        console.print(f"\n[blue]▶️  Executing: {cmd_str}[/]")
    logger.debug("run: %s", cmd_str)

    run_env = None
    if env:
        run_env = dict(os.environ)
        run_env.update(env)

    try:
        process = subprocess.Popen(
            cmd_list,
            stdin=subprocess.PIPE if input_text is not None else None,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            bufsize=1,
            encoding='utf-8',
            errors='ignore',
            env=run_env
        )

        if input_text is not None:
            process.stdin.write(input_text)
            process.stdin.close()

        output_lines = []
        # Do NOT use a 'with' block on process.stdout, as it closes the stream.
        for line in iter(process.stdout.readline, ''):
            if not quiet:
                console.print(f"  {line.rstrip()}", highlight=False, markup=False)
            output_lines.append(line)

        return_code = process.wait()
        stderr_output = process.stderr.read()
        stdout_output = "".join(output_lines)

        if check and return_code != 0:
            raise subprocess.CalledProcessError(
                return_code, cmd_list, output=stdout_output, stderr=stderr_output
            )

        return stdout_output

    except FileNotFoundError:
        print_error(f"Command not found: '{cmd_list[0]}'. Please ensure it is installed and in your PATH.")
        logger.error("command not found: %s", cmd_list[0])
        return None
    except subprocess.CalledProcessError as e:
        print_error(f"Command failed with exit code {e.returncode}: {cmd_str}")
        logger.error("command failed (%s): %s", e.returncode, cmd_str)
        if e.stderr:
            error_console.print(f"[bold red]Error Details (stderr):[/]\n{e.stderr.strip()}", markup=False)
        elif e.output and not quiet:
            print_error(f"Output:\n{e.output.strip()}")
        return None


def run_capture(cmd, as_root=False, input_text=None, env=None):
    """
    Runs a command and returns its stripped output.
    Raises CalledProcessError / FileNotFoundError for the caller to handle.
    """
    cmd = list(cmd)
    if as_root and not is_root():
        cmd.insert(0, "sudo")
    run_env = None
    if env:
        run_env = dict(os.environ)
        run_env.update(env)
    result = subprocess.run(
        cmd,
        capture_output=True,
        text=True,
        check=True,
        encoding='utf-8',
        input=input_text,
        env=run_env
    )
    return result.stdout.strip()


def try_capture(cmd, as_root=False, default=""):
    """Like run_capture() but returns the default on any command failure."""
    try:
        return run_capture(cmd, as_root=as_root)
    except (subprocess.CalledProcessError, FileNotFoundError, OSError):
        return default


def command_ok(cmd, as_root=False):
    """True when the command exits with status 0."""
    cmd = list(cmd)
    if as_root and not is_root():
        cmd.insert(0, "sudo")
    try:
        return subprocess.run(cmd, capture_output=True, text=True).returncode == 0
    except (FileNotFoundError, OSError):
        return False


def run_as_user(user, cmd_list, env=None):
    """Prefix a command so that it runs as the invoking (non-root) user."""
    prefix = []
    if is_root() and user and user != "root":
        prefix = ["sudo", "-u", user]
        if env:
            prefix += [f"{k}={v}" for k, v in env.items()]
    elif env:
        prefix = ["env"] + [f"{k}={v}" for k, v in env.items()]
    return prefix + list(cmd_list)


def command_exists(name):
    return shutil.which(name) is not None


# --- File Operations ---

def read_file(path, default=""):
    """Returns the contents of a text file, or the default if it cannot be read."""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return f.read()
    except (OSError, UnicodeDecodeError):
        return default


def write_root_file(path, content, mode=0o644):
    """
    Writes a file that may live in a root-owned location.

    Running as root writes directly. Otherwise the content goes to a temp file
    that is copied into place with sudo.
    Returns True if the file content changed.
    """
    if read_file(path, default=None) == content:
        logger.debug("unchanged: %s", path)
        return False

    if is_root() or os.access(os.path.dirname(path) or ".", os.W_OK):
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            f.write(content)
        os.chmod(path, mode)
    else:
        with tempfile.NamedTemporaryFile('w', delete=False, encoding='utf-8') as tmp:
            tmp.write(content)
            tmp_path = tmp.name
        try:
            run_capture(['mkdir', '-p', os.path.dirname(path)], as_root=True)
            run_capture(['cp', tmp_path, path], as_root=True)
            run_capture(['chmod', format(mode, 'o'), path], as_root=True)
        finally:
            os.unlink(tmp_path)
    logger.info("wrote %s", path)
    return True


def append_line_once(path, line):
    """Appends a line to a file unless an identical line is already present."""
    existing = read_file(path)
    if line in existing.splitlines():
        return False
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, 'a', encoding='utf-8') as f:
        if existing and not existing.endswith("\n"):
            f.write("\n")
        f.write(line + "\n")
    return True


def chown_to_user(path, user):
    """Give a file created as root back to the invoking user."""
    if not is_root() or not user or user == "root":
        return
    try:
        entry = pwd.getpwnam(user)
        os.chown(path, entry.pw_uid, entry.pw_gid)
    except (KeyError, OSError) as e:
        logger.warning("chown %s -> %s failed: %s", path, user, e)


def user_home(user=None):
    """Home directory of the given (or invoking) user."""
    user = user or os.environ.get('SUDO_USER') or os.environ.get('USER')
    if user:
        try:
            return pwd.getpwnam(user).pw_dir
        except KeyError:
            pass
    return os.path.expanduser("~")


def download_file(url, destination, resume=False):
    """
    Downloads a file from a URL to a destination, with a progress bar.

    With resume=True an existing partial file is continued with an HTTP
    Range request.
    """
    os.makedirs(os.path.dirname(destination) or ".", exist_ok=True)
    existing = os.path.getsize(destination) if resume and os.path.exists(destination) else 0
    headers = {'Range': f'bytes={existing}-'} if existing else {}
    try:
        with requests.get(url, stream=True, timeout=CONFIG['DOWNLOAD_TIMEOUT'], headers=headers) as r:
            if r.status_code == 416:
                # Server says the range is past the end: nothing left to fetch
                print_success(f"'{os.path.basename(destination)}' already complete.")
                return True
            r.raise_for_status()
            appending = existing and r.status_code == 206
            total_size = int(r.headers.get('content-length', 0)) + (existing if appending else 0)
            with open(destination, 'ab' if appending else 'wb') as f, tqdm(
                total=total_size, initial=existing if appending else 0,
                unit='B', unit_scale=True, desc=os.path.basename(destination)
            ) as pbar:
                for chunk in r.iter_content(chunk_size=8192):
                    f.write(chunk)
                    pbar.update(len(chunk))
        print_success(f"Downloaded '{os.path.basename(destination)}' successfully.")
        return True
    except requests.exceptions.RequestException as e:
        print_error(f"Failed to download {url}: {e}")
        logger.error("download failed %s: %s", url, e)
        return False
    except KeyboardInterrupt:
        print_error("\nDownload cancelled by user.")
        if os.path.exists(destination) and not resume:
            os.remove(destination)
        return False


# --- System Information ---

def detect_distro():
    """
    Detects the Linux distribution ID from /etc/os-release.
    """
    try:
        with open("/etc/os-release", "r", encoding='utf-8') as f:
            for line in f:
                if line.startswith("ID="):
                    return line.strip().split("=", 1)[1].lower().strip('"')
    except FileNotFoundError:
        return None
    return None
