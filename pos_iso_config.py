#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
pos_iso_config.py

Build settings for the POS live ISO builder.

Settings come from an optional JSON file (``pos_iso_config.json`` by default)
and are then overridden by command-line options. The account password is
never stored here in clear text: only its SHA-512 crypt hash travels through
the build.

MIT License.
"""

import json
import os
import re
from dataclasses import asdict, dataclass, field, fields, replace as dc_replace
from pathlib import Path

# --- Constants ---
DEFAULT_CONFIG_FILE = "pos_iso_config.json"
SUPPORTED_ARCHITECTURES = ("amd64", "arm64", "i386")

_POSIX_NAME = re.compile(r"^[a-z_][a-z0-9_-]{0,31}$")
_HOSTNAME = re.compile(r"^(?!-)[a-zA-Z0-9-]{1,63}(?<!-)$")
_CRYPT_HASH = re.compile(r"^\$[0-9a-z]+\$[./A-Za-z0-9$=,]+$")
_DISTRIBUTOR = re.compile(r"^[A-Za-z0-9][A-Za-z0-9 ._+-]{0,63}$")
_REPO_URL = re.compile(r"^[A-Za-z0-9@:/._~+=%-]*$")

_STRING_FIELDS = (
    "iso_name", "build_dir", "version", "hostname", "user", "distributor", "distribution",
    "architecture", "compression", "bootappend", "deploy_repo", "password_hash",
)
_BOOL_FIELDS = ("docker", "nodejs", "tailscale", "wireguard", "force_password_change")


class ConfigError(ValueError):
    """Raised when the build settings are unusable."""


@dataclass
class BuildConfig:
    iso_name: str = "sixthkendra"
    build_dir: Path = field(default_factory=lambda: Path.home() / "debian-pos-iso")
    version: str = "1.0"
    hostname: str = "pos"
    user: str = "pos"
    distributor: str = "POS Debian"
    distribution: str = "bookworm"
    architecture: str = "amd64"
    compression: str = "gzip"
    bootappend: str = "boot=live components nomodeset"
    node_major: int = 22
    docker: bool = True
    nodejs: bool = True
    tailscale: bool = True
    wireguard: bool = True
    extra_packages: list = field(default_factory=list)
    deploy_repo: str = ""
    force_password_change: bool = False
    password_hash: str = ""

    # --- Derived paths ---
    @property
    def iso_filename(self) -> str:
        return f"live-image-{self.architecture}.hybrid.iso"

    @property
    def iso_path(self) -> Path:
        return self.build_dir / self.iso_filename

    @property
    def checksum_path(self) -> Path:
        return self.build_dir / f"{self.iso_name}.sha256"

    @property
    def log_path(self) -> Path:
        return self.build_dir / "build.log"

    @property
    def instructions_path(self) -> Path:
        return self.build_dir / "TEST_INSTRUCTIONS.txt"

    @classmethod
    def from_dict(cls, data: dict) -> "BuildConfig":
        """Builds a config from a JSON-style mapping, rejecting unknown keys."""
        if "password" in data:
            raise ConfigError(
                "Plaintext 'password' is not accepted in the config file; "
                "use --password or POS_ISO_PASSWORD, or store a 'password_hash'."
            )
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")

        for key in _STRING_FIELDS:
            if key in data and not isinstance(data[key], str):
                raise ConfigError(f"'{key}' must be a string.")
        for key in _BOOL_FIELDS:
            if key in data and not isinstance(data[key], bool):
                raise ConfigError(f"'{key}' must be true or false.")

        values = dict(data)
        if "build_dir" in values:
            values["build_dir"] = Path(os.path.expanduser(str(values["build_dir"])))
        if "extra_packages" in values:
            packages = values["extra_packages"]
            if not isinstance(packages, list) or not all(isinstance(p, str) for p in packages):
                raise ConfigError("'extra_packages' must be a list of package names.")
            values["extra_packages"] = list(packages)

        config = cls(**values)
        config.validate()
        return config

    def to_dict(self) -> dict:
        data = asdict(self)
        data["build_dir"] = str(self.build_dir)
        return data

    def replace(self, **overrides) -> "BuildConfig":
        """Returns a validated copy with every non-None override applied."""
        changes = {key: value for key, value in overrides.items() if value is not None}
        if "build_dir" in changes:
            changes["build_dir"] = Path(os.path.expanduser(str(changes["build_dir"])))
        config = dc_replace(self, **changes)
        config.validate()
        return config

    def validate(self):
        if not self.iso_name or "/" in self.iso_name:
            raise ConfigError(f"Invalid ISO name: {self.iso_name!r}")
        if not _HOSTNAME.fullmatch(self.hostname):
            raise ConfigError(f"Invalid hostname: {self.hostname!r}")
        if not _POSIX_NAME.fullmatch(self.user) or self.user == "root":
            raise ConfigError(f"Invalid user name: {self.user!r}")
        if self.architecture not in SUPPORTED_ARCHITECTURES:
            raise ConfigError(
                f"Unsupported architecture {self.architecture!r}; "
                f"expected one of {', '.join(SUPPORTED_ARCHITECTURES)}"
            )
        if not _DISTRIBUTOR.fullmatch(self.distributor):
            raise ConfigError(f"Invalid distributor name: {self.distributor!r}")
        if not _REPO_URL.fullmatch(self.deploy_repo):
            raise ConfigError(f"Invalid deploy repository URL: {self.deploy_repo!r}")
        if not self.distribution:
            raise ConfigError("A Debian distribution (suite) is required.")
        if isinstance(self.node_major, bool) or not isinstance(self.node_major, int) or self.node_major < 1:
            raise ConfigError(f"Invalid Node.js major version: {self.node_major!r}")
        if self.password_hash and not _CRYPT_HASH.fullmatch(self.password_hash):
            raise ConfigError("'password_hash' must be a crypt(3) string such as '$6$salt$hash'.")

        build_dir = Path(self.build_dir).resolve()
        if build_dir == Path("/") or build_dir == Path.home().resolve():
            raise ConfigError(f"Refusing to use {build_dir} as the build directory.")


def load_config(path=None, required: bool = False) -> BuildConfig:
    """Loads settings from a JSON file, falling back to defaults when absent."""
    config_path = Path(path) if path else Path(DEFAULT_CONFIG_FILE)

    if not config_path.exists():
        if required:
            raise ConfigError(f"Config file not found: {config_path}")
        return BuildConfig()

    try:
        with open(config_path, "r") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Config file {config_path} is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {config_path} must hold a JSON object.")
    return BuildConfig.from_dict(data)
