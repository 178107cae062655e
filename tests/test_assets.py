#!/usr/bin/env python3
"""
Tests for the rendered live-build inputs.

Validates the ``lb config`` arguments, package list, boot configuration and
chroot hooks, and makes sure no clear-text or blank password ever appears in
what gets written to the build directory.
"""

import unittest

from pos_iso_assets import (
    HOOKS_DIR,
    PACKAGE_LIST_PATH,
    PRESEED_PATH,
    kernel_in_listing,
    lb_config_args,
    package_list,
    render_hooks,
    render_motd,
    render_package_list,
    render_preseed,
    render_syslinux_cfg,
    render_test_instructions,
    render_tree,
)
from pos_iso_config import BuildConfig

FAKE_HASH = "$6$saltsalt$" + "A1./" * 21 + "xy"


def _config(**overrides):
    overrides.setdefault("password_hash", FAKE_HASH)
    return BuildConfig(**overrides)


# ═══════════════════════════════════════════════════════════════════════════
# lb config
# ═══════════════════════════════════════════════════════════════════════════
class TestLbConfigArgs(unittest.TestCase):

    def _option(self, args, name):
        return args[args.index(name) + 1]

    def test_starts_with_lb_config(self):
        self.assertEqual(lb_config_args(_config())[:2], ["lb", "config"])

    def test_core_options(self):
        args = lb_config_args(_config())
        self.assertEqual(self._option(args, "--architectures"), "amd64")
        self.assertEqual(self._option(args, "--distribution"), "bookworm")
        self.assertEqual(self._option(args, "--binary-images"), "iso-hybrid")
        self.assertEqual(self._option(args, "--bootappend-live"), "boot=live components nomodeset")
        self.assertEqual(self._option(args, "--memtest"), "none")
        self.assertEqual(self._option(args, "--compression"), "gzip")

    def test_follows_config(self):
        args = lb_config_args(_config(distribution="trixie", architecture="arm64", compression="xz"))
        self.assertEqual(self._option(args, "--distribution"), "trixie")
        self.assertEqual(self._option(args, "--architectures"), "arm64")
        self.assertEqual(self._option(args, "--compression"), "xz")


# ═══════════════════════════════════════════════════════════════════════════
# Package list
# ═══════════════════════════════════════════════════════════════════════════
class TestPackageList(unittest.TestCase):

    def test_live_boot_essentials_first(self):
        packages = package_list(_config())
        self.assertEqual(packages[:2], ["live-boot", "live-boot-initramfs-tools"])
        for name in ("live-config", "systemd-sysv", "linux-image-amd64", "initramfs-tools"):
            self.assertIn(name, packages)

    def test_wireguard_toggle(self):
        self.assertIn("wireguard-tools", package_list(_config()))
        self.assertNotIn("wireguard-tools", package_list(_config(wireguard=False)))

    def test_microcode_only_on_amd64(self):
        self.assertIn("intel-microcode", package_list(_config()))
        arm = package_list(_config(architecture="arm64"))
        self.assertNotIn("intel-microcode", arm)
        self.assertIn("linux-image-arm64", arm)
        self.assertIn("grub-efi-arm64", arm)

    def test_extra_packages_deduplicated(self):
        packages = package_list(_config(extra_packages=["vim", "curl", "vim"]))
        self.assertEqual(packages.count("curl"), 1)
        self.assertEqual(packages.count("vim"), 1)
        self.assertEqual(packages[-1], "vim")

    def test_rendered_list_matches_flat_list(self):
        config = _config(extra_packages=["tmux"])
        text = render_package_list(config)
        names = [line for line in text.splitlines() if line and not line.startswith("#")]
        self.assertEqual(names, package_list(config))
        self.assertIn("# WireGuard", text)
        self.assertTrue(text.endswith("\n"))


# ═══════════════════════════════════════════════════════════════════════════
# Boot configuration
# ═══════════════════════════════════════════════════════════════════════════
class TestBootConfig(unittest.TestCase):

    def test_syslinux_boots_live_kernel(self):
        cfg = render_syslinux_cfg(_config())
        self.assertIn("KERNEL /live/vmlinuz", cfg)
        self.assertIn("initrd=/live/initrd.img boot=live components nomodeset", cfg)

    def test_preseed_uses_crypted_password(self):
        preseed = render_preseed(_config(user="kiosk"))
        self.assertIn(f"d-i passwd/user-password-crypted password {FAKE_HASH}", preseed)
        self.assertIn("d-i passwd/username string kiosk", preseed)
        self.assertNotIn("passwd/user-password password", preseed)
        self.assertNotIn("allow-password-weak", preseed)


# ═══════════════════════════════════════════════════════════════════════════
# Chroot hooks
# ═══════════════════════════════════════════════════════════════════════════
class TestHooks(unittest.TestCase):

    def test_all_hooks_by_default(self):
        self.assertEqual(list(render_hooks(_config())), [
            "001-basic-setup.chroot",
            "010-install-docker.chroot",
            "020-install-nodejs.chroot",
            "030-install-tailscale.chroot",
            "800-deploy-apps.chroot",
            "900-final-setup.chroot",
        ])

    def test_feature_toggles_drop_hooks(self):
        hooks = render_hooks(_config(docker=False, nodejs=False, tailscale=False))
        self.assertEqual(list(hooks), [
            "001-basic-setup.chroot", "800-deploy-apps.chroot", "900-final-setup.chroot",
        ])
        self.assertNotIn("systemctl enable docker", hooks["900-final-setup.chroot"])

    def test_every_hook_is_strict_bash(self):
        for name, script in render_hooks(_config()).items():
            with self.subTest(hook=name):
                lines = script.splitlines()
                self.assertEqual(lines[0], "#!/bin/bash")
                self.assertEqual(lines[1], "set -e")

    def test_basic_setup_sets_hashed_password(self):
        script = render_hooks(_config(user="kiosk"))["001-basic-setup.chroot"]
        self.assertIn(f"printf '%s\\n' 'kiosk:{FAKE_HASH}' | chpasswd -e", script)
        self.assertIn("usermod -aG sudo kiosk", script)
        self.assertNotIn("chage", script)

    def test_force_password_change(self):
        script = render_hooks(_config(force_password_change=True))["001-basic-setup.chroot"]
        self.assertIn("chage -d 0 pos", script)

    def test_distribution_flows_into_repositories(self):
        hooks = render_hooks(_config(distribution="trixie"))
        self.assertIn("linux/debian trixie stable", hooks["010-install-docker.chroot"])
        self.assertIn("stable/debian/trixie.noarmor.gpg", hooks["030-install-tailscale.chroot"])

    def test_node_major_version(self):
        script = render_hooks(_config(node_major=20))["020-install-nodejs.chroot"]
        self.assertIn("https://deb.nodesource.com/setup_20.x", script)

    def test_deploy_hook_mentions_repo(self):
        script = render_hooks(_config(deploy_repo="https://example.com/pos.git"))["800-deploy-apps.chroot"]
        self.assertIn("git clone https://example.com/pos.git", script)
        self.assertIn("mkdir -p /home/pos/deploy", script)

    def test_motd_has_no_password(self):
        motd = render_motd(_config())
        self.assertIn("User: pos", motd)
        self.assertNotIn("password", motd.lower())


# ═══════════════════════════════════════════════════════════════════════════
# Whole tree
# ═══════════════════════════════════════════════════════════════════════════
class TestRenderTree(unittest.TestCase):

    def test_requires_password_hash(self):
        with self.assertRaises(ValueError):
            render_tree(BuildConfig())

    def test_hooks_are_executable(self):
        tree = render_tree(_config())
        for path, asset in tree.items():
            with self.subTest(path=path):
                if path.startswith(HOOKS_DIR + "/"):
                    self.assertEqual(asset.mode, 0o755)
                else:
                    self.assertFalse(asset.mode & 0o111)

    def test_preseed_not_world_readable(self):
        self.assertEqual(render_tree(_config())[PRESEED_PATH].mode, 0o600)

    def test_contains_package_list(self):
        self.assertIn(PACKAGE_LIST_PATH, render_tree(_config()))

    def test_no_whitespace_password_anywhere(self):
        for path, asset in render_tree(_config()).items():
            with self.subTest(path=path):
                self.assertNotIn("password    ", asset.content)
                self.assertNotIn("pos:    ", asset.content)


class TestInstructions(unittest.TestCase):

    def test_instructions_reference_iso(self):
        text = render_test_instructions(_config())
        self.assertIn("-cdrom live-image-amd64.hybrid.iso", text)
        self.assertIn("Installed: Docker, Node.js 22, Tailscale, WireGuard", text)
        self.assertIn("password set at build time", text)


# ═══════════════════════════════════════════════════════════════════════════
# isoinfo listing
# ═══════════════════════════════════════════════════════════════════════════
class TestKernelInListing(unittest.TestCase):

    LISTING = (
        "\n"
        "Directory listing of /\n"
        "d---------   0    0    0            2048 Oct 19 2026 [     23 02]  LIVE \n"
        "\n"
        "Directory listing of /LIVE/\n"
        "----------   0    0    0        33554432 Oct 19 2026 [   1234 00]  FILESYSTEM.SQUASHFS;1 \n"
        "----------   0    0    0         7995584 Oct 19 2026 [   4321 00]  VMLINUZ.;1 \n"
    )

    def test_finds_kernel_in_live_dir(self):
        self.assertTrue(kernel_in_listing(self.LISTING))

    def test_rock_ridge_names(self):
        listing = "Directory listing of /live/\n-r--r--r--   1 0 0  7995584 Oct 19 2026 [ 4321 00]  vmlinuz-6.1.0-18-amd64\n"
        self.assertTrue(kernel_in_listing(listing))

    def test_kernel_outside_live_dir_ignored(self):
        listing = "Directory listing of /boot/\n----------   0 0 0  7995584 Oct 19 2026 [ 4321 00]  VMLINUZ.;1\n"
        self.assertFalse(kernel_in_listing(listing))

    def test_empty_listing(self):
        self.assertFalse(kernel_in_listing(""))


if __name__ == "__main__":
    unittest.main()
