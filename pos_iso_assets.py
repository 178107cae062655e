#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
pos_iso_assets.py

Renders everything live-build needs for the POS image: the ``lb config``
command line, the chroot package list, boot configuration, and the chroot
hook scripts that install Docker, Node.js and Tailscale.

Nothing in this module touches the filesystem; ``render_tree`` returns the
files and ``pos_iso_builder`` writes them.

MIT License.
"""

import shlex
from collections import namedtuple

Asset = namedtuple("Asset", ["content", "mode"])

HOOKS_DIR = "config/hooks"
PACKAGE_LIST_PATH = "config/package-lists/custom.list.chroot"
GRUB_DEFAULTS_PATH = "config/includes.chroot/etc/default/grub"
SYSLINUX_CFG_PATH = "config/bootloaders/syslinux/syslinux.cfg"
PRESEED_PATH = "config/includes.installer/preseed.cfg"


def lb_config_args(config) -> list:
    """Returns the full ``lb config`` command line (without privilege prefix)."""
    return [
        "lb", "config",
        "--architectures", config.architecture,
        "--distribution", config.distribution,
        "--binary-images", "iso-hybrid",
        "--system", "live",
        "--bootappend-live", config.bootappend,
        "--apt-indices", "false",
        "--cache", "false",
        "--security", "false",
        "--apt-recommends", "true",
        "--memtest", "none",
        "--compression", config.compression,
    ]


# --- Package list ---
def _package_groups(config):
    microcode = ["intel-microcode", "amd64-microcode"] if config.architecture == "amd64" else []
    if config.architecture == "arm64":
        bootloader = ["grub-efi-arm64", "grub-efi-arm64-bin", "grub2-common", "efibootmgr"]
    else:
        bootloader = ["grub-efi-amd64", "grub-efi-amd64-bin", "grub-pc-bin", "grub2-common", "efibootmgr"]

    groups = [
        ("Essential live boot packages", [
            "live-boot", "live-boot-initramfs-tools", "live-config",
            "live-config-systemd", "systemd-sysv",
        ]),
        ("Linux kernel", [f"linux-image-{config.architecture}"]),
        ("Firmware", ["firmware-linux-free", "firmware-linux-nonfree"] + microcode),
        ("Initramfs tools", ["initramfs-tools"]),
        ("Bootloader", bootloader),
        ("Filesystem support", ["dosfstools", "mtools", "squashfs-tools"]),
        ("Core system", ["sudo", "curl", "git", "ca-certificates", "gnupg", "lsb-release"]),
        ("Networking", ["network-manager", "net-tools", "dnsutils", "resolvconf"]),
        ("Required tools", ["nano", "build-essential", "python3", "python3-pip"]),
    ]
    if config.wireguard:
        groups.append(("WireGuard", ["wireguard", "wireguard-tools"]))
    groups.append(("System tools", ["procps", "htop", "ufw", "jq", "unzip", "tree"]))
    if config.extra_packages:
        groups.append(("Extra packages", list(config.extra_packages)))
    return groups


def package_list(config) -> list:
    """Flat, de-duplicated package list in install order."""
    seen = set()
    packages = []
    for _, names in _package_groups(config):
        for name in names:
            if name not in seen:
                seen.add(name)
                packages.append(name)
    return packages


def render_package_list(config) -> str:
    seen = set()
    lines = []
    for title, names in _package_groups(config):
        fresh = [name for name in names if name not in seen]
        if not fresh:
            continue
        seen.update(fresh)
        if lines:
            lines.append("")
        lines.append(f"# {title}")
        lines.extend(fresh)
    return "\n".join(lines) + "\n"


# --- Boot configuration ---
def render_grub_defaults(config) -> str:
    return f"""GRUB_DEFAULT=0
GRUB_TIMEOUT=5
GRUB_DISTRIBUTOR="{config.distributor}"
GRUB_CMDLINE_LINUX_DEFAULT="quiet nomodeset"
GRUB_CMDLINE_LINUX="boot=live components"
GRUB_TERMINAL=console
GRUB_DISABLE_OS_PROBER=true
GRUB_DISABLE_RECOVERY=true
"""


def render_syslinux_cfg(config) -> str:
    return f"""DEFAULT live
LABEL live
  MENU LABEL Live System
  KERNEL /live/vmlinuz
  APPEND initrd=/live/initrd.img {config.bootappend} quiet
  TIMEOUT 50
"""


def render_preseed(config) -> str:
    """Minimal preseed; the password is only ever given as a crypt hash."""
    return f"""# Minimal preseed for live system
d-i debian-installer/locale string en_US
d-i keyboard-configuration/xkb-keymap select us
d-i netcfg/choose_interface select auto
d-i netcfg/get_hostname string {config.hostname}
d-i passwd/root-login boolean false
d-i passwd/user-fullname string {config.distributor} User
d-i passwd/username string {config.user}
d-i passwd/user-password-crypted password {config.password_hash}
"""


# --- Chroot hooks ---
def _basic_setup_hook(config) -> str:
    credentials = shlex.quote(f"{config.user}:{config.password_hash}")
    expire = f"    chage -d 0 {config.user}\n" if config.force_password_change else ""
    return f"""#!/bin/bash
set -e
echo "[*] Running basic system setup..."

# Set hostname
echo "{config.hostname}" > /etc/hostname
hostname {config.hostname} || true

# Update package list
apt-get update

# Create {config.user} user
if ! id -u {config.user} >/dev/null 2>&1; then
    useradd -m -s /bin/bash {config.user}
    printf '%s\\n' {credentials} | chpasswd -e
{expire}    usermod -aG sudo {config.user}
fi

echo "[+] Basic setup complete"
"""


def _docker_hook(config) -> str:
    return f"""#!/bin/bash
set -e
echo "[*] Installing Docker..."
apt-get install -y ca-certificates curl gnupg
install -m 0755 -d /etc/apt/keyrings
curl -fsSL https://download.docker.com/linux/debian/gpg -o /etc/apt/keyrings/docker.asc
chmod a+r /etc/apt/keyrings/docker.asc
echo "deb [arch=$(dpkg --print-architecture) signed-by=/etc/apt/keyrings/docker.asc] https://download.docker.com/linux/debian {config.distribution} stable" > /etc/apt/sources.list.d/docker.list
apt-get update
apt-get install -y docker-ce docker-ce-cli containerd.io docker-buildx-plugin docker-compose-plugin
usermod -aG docker {config.user}
echo "[+] Docker installed"
"""


def _nodejs_hook(config) -> str:
    return f"""#!/bin/bash
set -e
echo "[*] Installing Node.js {config.node_major}..."
curl -fsSL https://deb.nodesource.com/setup_{config.node_major}.x | bash -
apt-get install -y nodejs
npm install -g npm@latest
npm install -g pm2
corepack enable
corepack prepare pnpm@latest --activate
echo "[+] Node.js installed"
"""


def _tailscale_hook(config) -> str:
    keyring = "/usr/share/keyrings/tailscale-archive-keyring.gpg"
    base = "https://pkgs.tailscale.com/stable/debian"
    return f"""#!/bin/bash
set -e
echo "[*] Installing Tailscale..."
curl -fsSL {base}/{config.distribution}.noarmor.gpg | tee {keyring} >/dev/null
echo "deb [signed-by={keyring}] {base} {config.distribution} main" | tee /etc/apt/sources.list.d/tailscale.list
apt-get update
apt-get install -y tailscale
echo "[+] Tailscale installed"
"""


def _installed_summary(config) -> list:
    items = []
    if config.docker:
        items.append("Docker")
    if config.nodejs:
        items.append(f"Node.js {config.node_major}")
    if config.tailscale:
        items.append("Tailscale")
    if config.wireguard:
        items.append("WireGuard")
    return items


def _deploy_hook(config) -> str:
    home = f"/home/{config.user}"
    steps = [f'echo "{n}. {item} is installed"' for n, item in enumerate(_installed_summary(config), 1)]
    clone = f"git clone {config.deploy_repo}" if config.deploy_repo else "git clone <repository-url>"
    step_lines = "\n".join(steps)
    return f"""#!/bin/bash
set -e
echo "[*] Setting up deployment..."

mkdir -p {home}/deploy
chown -R {config.user}:{config.user} {home}

cat > {home}/setup.sh << 'SETUP_EOF'
#!/bin/bash
echo "{config.distributor} Setup"
echo "================"
echo ""
{step_lines}
echo ""
echo "To deploy your apps:"
echo "  cd {home}/deploy"
echo "  {clone}"
echo ""
SETUP_EOF

chmod +x {home}/setup.sh
chown {config.user}:{config.user} {home}/setup.sh

echo "[+] Deployment setup complete"
"""


def render_motd(config) -> str:
    title = f"{config.distributor} {config.version}"
    lines = [
        "╔══════════════════════════════════════════╗",
        f"║{title:^42}║",
        "╚══════════════════════════════════════════╝",
        "",
        f"User: {config.user}",
        "",
        "Quick commands:",
    ]
    if config.docker:
        lines.append("  docker ps      - List containers")
    if config.nodejs:
        lines.append("  pm2 list       - List Node.js apps")
    if config.tailscale:
        lines.append("  tailscale up   - Connect to Tailscale")
    lines.append("  ~/setup.sh     - Deployment notes")
    return "\n".join(lines) + "\n"


def _final_setup_hook(config) -> str:
    enable_docker = "systemctl enable docker\n" if config.docker else ""
    return f"""#!/bin/bash
set -e
echo "[*] Running final setup..."

update-grub 2>/dev/null || true

{enable_docker}
cat > /etc/motd << 'MOTD_EOF'
{render_motd(config)}MOTD_EOF

apt-get autoremove -y
apt-get clean
rm -rf /var/lib/apt/lists/*

echo "[+] Final setup complete"
"""


def render_hooks(config) -> dict:
    """Maps hook file names to bash scripts, in execution order."""
    hooks = {"001-basic-setup.chroot": _basic_setup_hook(config)}
    if config.docker:
        hooks["010-install-docker.chroot"] = _docker_hook(config)
    if config.nodejs:
        hooks["020-install-nodejs.chroot"] = _nodejs_hook(config)
    if config.tailscale:
        hooks["030-install-tailscale.chroot"] = _tailscale_hook(config)
    hooks["800-deploy-apps.chroot"] = _deploy_hook(config)
    hooks["900-final-setup.chroot"] = _final_setup_hook(config)
    return hooks


def render_tree(config) -> dict:
    """Every file the build directory needs, keyed by path relative to it."""
    if not config.password_hash:
        raise ValueError("A password hash is required before rendering image assets.")

    tree = {
        PACKAGE_LIST_PATH: Asset(render_package_list(config), 0o644),
        GRUB_DEFAULTS_PATH: Asset(render_grub_defaults(config), 0o644),
        SYSLINUX_CFG_PATH: Asset(render_syslinux_cfg(config), 0o644),
        PRESEED_PATH: Asset(render_preseed(config), 0o600),
    }
    for name, script in render_hooks(config).items():
        tree[f"{HOOKS_DIR}/{name}"] = Asset(script, 0o755)
    return tree


def render_test_instructions(config) -> str:
    iso = config.iso_filename
    installed = ", ".join(_installed_summary(config)) or "base system only"
    return f"""TEST INSTRUCTIONS:
==================

1. Test in QEMU:
   qemu-system-x86_64 -cdrom {iso} -m 2048 -boot d

2. Create USB:
   sudo dd if={iso} of=/dev/sdX bs=4M status=progress
   sudo sync
   (or: pos-iso flash)

3. Boot troubleshooting:
   - If blinking cursor: Try different USB port (USB 2.0)
   - In BIOS: Disable Secure Boot, enable Legacy/CSM if needed
   - At boot menu: Press Tab, add "nomodeset" to kernel parameters

ISO INFO:
- Name: {config.iso_name} {config.version}
- User: {config.user} (password set at build time)
- Installed: {installed}
"""


def kernel_in_listing(listing: str) -> bool:
    """True when an ``isoinfo -l`` listing shows a vmlinuz file under /live."""
    directory = None
    for line in listing.splitlines():
        stripped = line.strip()
        if stripped.startswith("Directory listing of "):
            directory = stripped[len("Directory listing of "):].rstrip("/").lower()
            continue
        if directory != "/live" or not stripped:
            continue
        name = stripped.split()[-1].lower()
        if name.startswith("vmlinuz"):
            return True
    return False
