#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
pos_iso_builder.py

Builds the POS Debian live ISO with live-build.

The build runs these steps in order:
1.  Verification of the live-build toolchain, offering to install it with apt.
2.  Removal of any previous build directory (``lb clean --all`` first).
3.  ``lb config`` in a fresh build directory.
4.  Generation of the package list, boot configuration and chroot hooks
    (Docker, Node.js, Tailscale, WireGuard, deployment notes).
5.  ``lb build``, with its output captured to ``build.log``.
6.  A report with the ISO size, build time and SHA-256 checksum, plus test
    instructions. The ISO can then be written to a USB drive with ``flash``.

Filesystem, bootloader and package work is left entirely to live-build and
apt; this tool only prepares their inputs and reports on their results.

MIT License.
"""

import hashlib
import json
import logging
import os
import shutil
import subprocess
import time
from collections import deque
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn

from pos_iso_assets import kernel_in_listing, lb_config_args, render_test_instructions, render_tree
from pos_iso_config import BuildConfig, ConfigError, load_config

# --- Typer App and Rich Console Initialization ---
app = typer.Typer(
    name="pos-iso",
    help="Build the POS Debian live ISO (Docker, Node.js, Tailscale, WireGuard) with live-build.",
    add_completion=False,
    no_args_is_help=True
)
console = Console()
logger = logging.getLogger("pos_iso")

# --- Constants ---
REQUIRED_COMMANDS = ["lb", "xorriso", "mkisofs", "curl", "git", "openssl"]
TOOLCHAIN_PACKAGES = [
    "live-build", "xorriso", "syslinux", "squashfs-tools", "genisoimage", "curl", "git",
    "openssl", "dosfstools", "mtools", "syslinux-common", "syslinux-efi",
    "grub-efi-amd64-bin", "grub-pc-bin",
]
LB_BUILD_LOCK = ".lb_build_lock"
LOG_TAIL_LINES = 20

# --- Shared CLI options ---
CONFIG_OPTION = typer.Option(None, "--config", "-c", help="JSON settings file (default: ./pos_iso_config.json).")
BUILD_DIR_OPTION = typer.Option(None, "--build-dir", help="live-build working directory.")
ISO_NAME_OPTION = typer.Option(None, "--iso-name", help="Name used for the checksum file and reports.")
HOSTNAME_OPTION = typer.Option(None, "--hostname", help="Hostname of the live system.")
USER_OPTION = typer.Option(None, "--user", help="Administrative account created in the image.")
DISTRIBUTION_OPTION = typer.Option(None, "--distribution", help="Debian suite, e.g. bookworm.")
PASSWORD_OPTION = typer.Option(
    None, "--password", envvar="POS_ISO_PASSWORD",
    help="Account password (prompted for when omitted). Only its hash is written.",
)
YES_OPTION = typer.Option(False, "--yes", "-y", help="Install missing dependencies without asking.")


def _setup_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging.")):
    """
    Builds a customized Debian live ISO for POS appliances.
    """
    _setup_logging(verbose)


# --- Subprocess helpers ---
def _privileged(command: List[str]) -> List[str]:
    """Prefixes a command with sudo unless we already run as root."""
    if os.geteuid() == 0:
        return list(command)
    return ["sudo"] + list(command)


def _run(command: List[str], description: str, cwd: Optional[Path] = None, input: Optional[str] = None):
    """Runs a command, turning any failure into a reported exit code 1."""
    logger.debug("%s: %s", description, " ".join(command))
    try:
        return subprocess.run(
            command,
            cwd=cwd,
            input=input,
            check=True,
            capture_output=True,
            text=True
        )
    except FileNotFoundError:
        console.print(f"[bold red]Error:[/bold red] `{command[0]}` is not installed or not in the system PATH.")
        raise typer.Exit(code=1)
    except subprocess.CalledProcessError as e:
        console.print(f"[bold red]Error:[/bold red] {description} failed (exit {e.returncode}).")
        console.print(" ".join(command), style="dim", markup=False, highlight=False)
        if e.stderr:
            console.print(e.stderr.strip(), markup=False, highlight=False)
        raise typer.Exit(code=1)


def _missing_commands() -> List[str]:
    commands = list(REQUIRED_COMMANDS)
    if os.geteuid() != 0:
        commands.insert(0, "sudo")
    return [cmd for cmd in commands if not shutil.which(cmd)]


def _verify_prerequisites(assume_yes: bool = False):
    """Confirms the live-build toolchain is on PATH, offering to install it."""
    missing = _missing_commands()
    if not missing:
        return

    console.print(f"[bold yellow]Missing dependencies:[/bold yellow] {' '.join(missing)}")
    if not assume_yes and not typer.confirm("Install missing dependencies?"):
        console.print("[bold red]Error:[/bold red] Cannot proceed without dependencies.")
        raise typer.Exit(code=1)

    _run(_privileged(["apt", "update"]), "Updating package index")
    _run(_privileged(["apt", "install", "-y"] + TOOLCHAIN_PACKAGES), "Installing live-build toolchain")

    still_missing = _missing_commands()
    if still_missing:
        console.print(f"[bold red]Error:[/bold red] Still missing after install: {' '.join(still_missing)}")
        raise typer.Exit(code=1)


# --- Configuration helpers ---
def _load(config_file: Optional[Path], **overrides) -> BuildConfig:
    try:
        return load_config(config_file, required=config_file is not None).replace(**overrides)
    except ConfigError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(code=1)


def _hash_password(password: str) -> str:
    """Returns the SHA-512 crypt hash of a password using `openssl passwd -6`."""
    result = _run(["openssl", "passwd", "-6", "-stdin"], "Hashing account password", input=password + "\n")
    password_hash = result.stdout.strip()
    if not password_hash.startswith("$6$"):
        console.print("[bold red]Error:[/bold red] openssl did not return a SHA-512 crypt hash.")
        raise typer.Exit(code=1)
    return password_hash


def _read_password(config: BuildConfig, password: Optional[str]) -> Optional[str]:
    """Returns the account password, prompting when neither it nor a stored hash is given."""
    if password is None:
        if config.password_hash:
            return None
        password = typer.prompt(f"Password for '{config.user}'", hide_input=True, confirmation_prompt=True)

    if not password.strip():
        console.print("[bold red]Error:[/bold red] The account password must not be blank or whitespace only.")
        raise typer.Exit(code=1)
    if "\n" in password or "\r" in password:
        console.print("[bold red]Error:[/bold red] The account password must be a single line.")
        raise typer.Exit(code=1)
    return password


# --- Build steps ---
def _cleanup(config: BuildConfig):
    """Removes a previous build directory, asking live-build to clean it first."""
    build_dir = config.build_dir
    if not build_dir.exists():
        return

    if (build_dir / LB_BUILD_LOCK).exists():
        command = _privileged(["lb", "clean", "--all"])
        logger.debug("Cleaning previous live-build state: %s", " ".join(command))
        try:
            result = subprocess.run(command, cwd=build_dir, capture_output=True, text=True)
        except OSError as e:
            logger.warning("lb clean could not run (%s); removing the directory anyway", e)
        else:
            if result.returncode != 0:
                logger.warning("lb clean exited %d; removing the directory anyway", result.returncode)

    try:
        shutil.rmtree(build_dir)
    except PermissionError:
        # live-build leaves root-owned chroot files behind
        _run(_privileged(["rm", "-rf", str(build_dir)]), f"Removing {build_dir}")


def _setup_build_env(config: BuildConfig):
    """Creates the build directory and runs `lb config` in it."""
    config.build_dir.mkdir(parents=True, exist_ok=True)
    _run(lb_config_args(config), "lb config", cwd=config.build_dir)


def _write_assets(config: BuildConfig) -> int:
    """Writes package lists, boot configuration and hooks into the build directory."""
    tree = render_tree(config)
    for relative_path, asset in tree.items():
        path = config.build_dir / relative_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(asset.content)
        os.chmod(path, asset.mode)
        logger.debug("Wrote %s (%o)", path, asset.mode)
    return len(tree)


def _check_dependencies(assume_yes: bool):
    with console.status("[bold green]Verifying prerequisites...[/bold green]"):
        missing = _missing_commands()
    if missing:
        _verify_prerequisites(assume_yes)
    console.print("SUCCESS: All dependencies satisfied.")


def _prepare(config: BuildConfig, password: Optional[str], assume_yes: bool) -> BuildConfig:
    _check_dependencies(assume_yes)
    if password is not None:
        config = config.replace(password_hash=_hash_password(password))

    with console.status("[bold green]Cleaning up previous build...[/bold green]"):
        _cleanup(config)
    console.print(f"SUCCESS: Build directory [yellow]'{config.build_dir}'[/yellow] is clean.")

    with console.status("[bold green]Running lb config...[/bold green]"):
        _setup_build_env(config)
    console.print("SUCCESS: live-build configuration ready.")

    with console.status("[bold green]Writing package list, boot config and hooks...[/bold green]"):
        count = _write_assets(config)
    console.print(f"SUCCESS: {count} configuration files written.")
    return config


def _run_live_build(config: BuildConfig) -> int:
    """Runs `lb build`, copying its output to build.log. Returns the exit code."""
    command = _privileged(["lb", "build"])
    logger.debug("Running %s in %s", " ".join(command), config.build_dir)

    with open(config.log_path, "w", encoding="utf-8") as log, Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        transient=True,
    ) as progress:
        progress.add_task(description="Building ISO (lb build)...", total=None)
        process = subprocess.Popen(
            command,
            cwd=config.build_dir,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace"
        )
        try:
            for line in process.stdout:
                log.write(line)
                logger.debug(line.rstrip())
        except BaseException:
            process.kill()
            process.wait()
            raise
        return process.wait()


def _tail(path: Path, count: int = LOG_TAIL_LINES) -> List[str]:
    if not path.exists():
        return []
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        return [line.rstrip("\n") for line in deque(f, maxlen=count)]


def _human_size(num_bytes: int) -> str:
    """Formats a byte count the way `du -h` does."""
    size = float(num_bytes)
    for unit in ("B", "K", "M", "G", "T"):
        if size < 1024 or unit == "T":
            return f"{int(size)}{unit}" if unit == "B" else f"{size:.1f}{unit}"
        size /= 1024


def _format_duration(seconds: float) -> str:
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}m {secs}s"


def _sha256(path: Path) -> str:
    sha256_hash = hashlib.sha256()
    with open(path, "rb") as f:
        for byte_block in iter(lambda: f.read(1024 * 1024), b""):
            sha256_hash.update(byte_block)
    return sha256_hash.hexdigest()


def _write_checksum(config: BuildConfig) -> str:
    """Writes a `sha256sum`-compatible checksum file next to the ISO."""
    digest = _sha256(config.iso_path)
    config.checksum_path.write_text(f"{digest}  {config.iso_filename}\n")
    return digest


def _verify_iso(config: BuildConfig):
    """Looks for the live kernel inside the ISO when isoinfo is available."""
    if not shutil.which("isoinfo"):
        logger.info("isoinfo not found; skipping ISO structure check")
        return

    command = ["isoinfo", "-i", str(config.iso_path), "-l"]
    logger.debug("Checking ISO structure: %s", " ".join(command))
    result = subprocess.run(
        command,
        capture_output=True,
        text=True
    )
    if result.returncode == 0 and kernel_in_listing(result.stdout):
        console.print("[green]✓ Boot kernel found[/green]")
    else:
        console.print("[bold yellow]⚠ Kernel not found in ISO[/bold yellow]")


def _build_iso(config: BuildConfig):
    console.print("[bold cyan]Starting ISO build process...[/bold cyan]")
    console.print("[yellow]This may take 15-30 minutes.[/yellow]")

    start_time = time.monotonic()
    returncode = _run_live_build(config)
    duration = time.monotonic() - start_time

    if returncode != 0:
        console.print(f"[bold red]Error:[/bold red] ISO build failed (lb build exited {returncode}).")
        console.print(f"Last {LOG_TAIL_LINES} lines of [yellow]{config.log_path}[/yellow]:")
        for line in _tail(config.log_path):
            console.print(line, markup=False, highlight=False)
        raise typer.Exit(code=1)

    if not config.iso_path.exists():
        console.print(f"[bold red]Error:[/bold red] ISO file [yellow]'{config.iso_filename}'[/yellow] was not created.")
        raise typer.Exit(code=1)

    console.rule("[bold green]ISO BUILD SUCCESSFUL[/bold green]")
    console.print(f"ISO Name:   {config.iso_name}")
    console.print(f"ISO Size:   {_human_size(config.iso_path.stat().st_size)}")
    console.print(f"Build Time: {_format_duration(duration)}")
    console.print(f"Location:   [yellow]{config.iso_path}[/yellow]")

    with console.status("[bold green]Computing SHA-256 checksum...[/bold green]"):
        digest = _write_checksum(config)
    console.print(f"SHA-256:    {digest}")
    console.print(f"SUCCESS: Checksum saved to [yellow]'{config.checksum_path.name}'[/yellow].")

    _verify_iso(config)

    config.instructions_path.write_text(render_test_instructions(config))
    console.print(f"SUCCESS: Test instructions saved to [yellow]'{config.instructions_path.name}'[/yellow].")


# --- USB flashing ---
def _find_usb_drives():
    """Finds connected USB drives that are whole disks."""
    command = ["lsblk", "-J", "-o", "NAME,SIZE,TYPE,TRAN,MOUNTPOINT"]
    logger.debug("Listing block devices: %s", " ".join(command))
    try:
        result = subprocess.run(
            command,
            check=True,
            capture_output=True,
            text=True
        )
        devices = json.loads(result.stdout).get("blockdevices", [])
    except (FileNotFoundError, json.JSONDecodeError, subprocess.CalledProcessError):
        return []

    usb_drives = []
    for dev in devices:
        if dev.get("tran") != "usb" or dev.get("type") != "disk":
            continue
        mountpoints = [
            child["mountpoint"]
            for child in [dev] + dev.get("children", [])
            if child.get("mountpoint")
        ]
        usb_drives.append({"name": f"/dev/{dev['name']}", "size": dev["size"], "mountpoints": mountpoints})
    return usb_drives


def _flash_usb_drive(config: BuildConfig, drive: dict, force: bool = False):
    """Writes the ISO to a USB drive with dd, then ejects it."""
    device = drive["name"]
    console.print(f"[bold yellow]Preparing to flash {config.iso_filename} to {device}...[/bold yellow]")

    console.print(f"[bold red]WARNING: This will destroy all data on {device}.[/bold red]")
    if not force and not typer.confirm("Are you absolutely sure you want to continue?"):
        console.print("[yellow]Operation cancelled.[/yellow]")
        raise typer.Exit()

    for mountpoint in drive.get("mountpoints", []):
        umount = _privileged(["umount", mountpoint])
        logger.debug("Unmounting: %s", " ".join(umount))
        result = subprocess.run(umount, capture_output=True, text=True)
        if result.returncode != 0:
            logger.warning("Could not unmount %s: %s", mountpoint, result.stderr.strip())

    command = _privileged([
        "dd", f"if={config.iso_path}", f"of={device}", "bs=4M", "conv=fsync", "status=progress"
    ])
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        transient=True,
    ) as progress:
        progress.add_task(description=f"Flashing to {device}...", total=None)
        _run(command, f"Writing ISO to {device}")
    console.print(f"[bold green]Successfully flashed {config.iso_filename} to {device}.[/bold green]")

    console.print(f"[bold yellow]Ejecting {device}...[/bold yellow]")
    _run(_privileged(["eject", device]), f"Ejecting {device}")
    console.print(f"[bold green]Successfully ejected {device}.[/bold green]")


def _select_drive(usb_drives: list, device: Optional[str]) -> Optional[dict]:
    if device:
        for drive in usb_drives:
            if drive["name"] == device:
                return drive
        console.print(f"[bold yellow]{device} was not detected as a USB disk.[/bold yellow]")
        if not typer.confirm(f"Flash {device} anyway?"):
            return None
        return {"name": device, "size": "?", "mountpoints": []}

    if len(usb_drives) == 1:
        drive = usb_drives[0]
        console.print(f"\n[bold cyan]Detected single USB Drive:[/bold cyan] {drive['name']} ({drive['size']})")
        if typer.confirm(f"Do you want to flash the ISO to {drive['name']}?", default=True):
            return drive
        return None

    console.print("\n[bold cyan]Available USB Drives Detected:[/bold cyan]")
    for i, drive in enumerate(usb_drives):
        console.print(f"  [bold]{i+1}[/bold]: {drive['name']} ({drive['size']})")
    choice = typer.prompt("Enter the number of the drive to flash")
    try:
        drive_index = int(choice) - 1
    except ValueError:
        console.print("[bold red]Invalid input. Please enter a number.[/bold red]")
        return None
    if not 0 <= drive_index < len(usb_drives):
        console.print("[bold red]Invalid selection.[/bold red]")
        return None
    return usb_drives[drive_index]


def _print_next_steps(config: BuildConfig):
    console.print("\n[bold green]Build complete! Next steps:[/bold green]")
    console.print(f"  1. Test ISO: qemu-system-x86_64 -cdrom '{config.iso_path}' -m 2048", markup=False)
    console.print("  2. Create USB: pos-iso flash", markup=False)
    console.print(f"  3. Boot from USB and log in as '{config.user}' with the password chosen for this build", markup=False)


# --- Commands ---
@app.command()
def check(assume_yes: bool = YES_OPTION):
    """
    Verifies (and optionally installs) the live-build toolchain.
    """
    _check_dependencies(assume_yes)


@app.command()
def clean(
    config_file: Optional[Path] = CONFIG_OPTION,
    build_dir: Optional[Path] = BUILD_DIR_OPTION,
):
    """
    Removes the build directory left by a previous build.
    """
    config = _load(config_file, build_dir=build_dir)
    with console.status("[bold green]Cleaning up previous build...[/bold green]"):
        _cleanup(config)
    console.print(f"SUCCESS: Build directory [yellow]'{config.build_dir}'[/yellow] is clean.")


@app.command()
def configure(
    config_file: Optional[Path] = CONFIG_OPTION,
    build_dir: Optional[Path] = BUILD_DIR_OPTION,
    iso_name: Optional[str] = ISO_NAME_OPTION,
    hostname: Optional[str] = HOSTNAME_OPTION,
    user: Optional[str] = USER_OPTION,
    distribution: Optional[str] = DISTRIBUTION_OPTION,
    password: Optional[str] = PASSWORD_OPTION,
    assume_yes: bool = YES_OPTION,
):
    """
    Prepares the live-build directory without running the build.
    """
    config = _load(
        config_file, build_dir=build_dir, iso_name=iso_name,
        hostname=hostname, user=user, distribution=distribution,
    )
    password = _read_password(config, password)
    config = _prepare(config, password, assume_yes)
    console.print(f"\n[bold green]Build directory ready:[/bold green] {config.build_dir}")
    console.print("Run [cyan]sudo lb build[/cyan] there, or [cyan]pos-iso build[/cyan] for the full pipeline.")


@app.command()
def build(
    config_file: Optional[Path] = CONFIG_OPTION,
    build_dir: Optional[Path] = BUILD_DIR_OPTION,
    iso_name: Optional[str] = ISO_NAME_OPTION,
    hostname: Optional[str] = HOSTNAME_OPTION,
    user: Optional[str] = USER_OPTION,
    distribution: Optional[str] = DISTRIBUTION_OPTION,
    password: Optional[str] = PASSWORD_OPTION,
    assume_yes: bool = YES_OPTION,
):
    """
    Builds the POS live ISO from scratch.
    """
    console.print("[bold cyan]POS Debian ISO Builder[/bold cyan]")

    config = _load(
        config_file, build_dir=build_dir, iso_name=iso_name,
        hostname=hostname, user=user, distribution=distribution,
    )
    password = _read_password(config, password)
    config = _prepare(config, password, assume_yes)
    _build_iso(config)
    _print_next_steps(config)


@app.command()
def flash(
    config_file: Optional[Path] = CONFIG_OPTION,
    build_dir: Optional[Path] = BUILD_DIR_OPTION,
    device: Optional[str] = typer.Option(None, "--device", "-d", help="Target device, e.g. /dev/sdb."),
    force: bool = typer.Option(False, "--force", help="Skip the final data-loss confirmation."),
):
    """
    Writes the built ISO to a USB drive.
    """
    config = _load(config_file, build_dir=build_dir)
    if not config.iso_path.exists():
        console.print(f"[bold red]Error:[/bold red] No ISO at [yellow]'{config.iso_path}'[/yellow]. Run `pos-iso build` first.")
        raise typer.Exit(code=1)

    usb_drives = _find_usb_drives()
    if not usb_drives and not device:
        console.print("[bold red]Error:[/bold red] No USB drives detected.")
        raise typer.Exit(code=1)

    drive = _select_drive(usb_drives, device)
    if drive is None:
        console.print("[yellow]Flashing cancelled.[/yellow]")
        raise typer.Exit()

    _flash_usb_drive(config, drive, force=force)


if __name__ == "__main__":
    app()
