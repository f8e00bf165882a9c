"""
Preflight Checks
Gates that must pass before the update sequence touches the system.
Each check raises FatalUpdateError on failure.
"""
import logging
import os

import psutil

from update_core import (
    FatalUpdateError, NOTICE, SUCCESS,
    build_config, command_exists, run_command,
)

logger = logging.getLogger(__name__)


def check_root():
    """Fail unless running with root privileges."""
    if os.geteuid() != 0:
        raise FatalUpdateError("Please run as root")
    logger.debug("Root privileges confirmed")


def install_tool(tool, package):
    """Install a missing tool's package with apt-get."""
    logger.error(f"Command {tool} is not available. Installing...")
    result = run_command(["apt-get", "install", package, "-y"])
    if not result['success']:
        raise FatalUpdateError(f"Failed to install {tool} ({package}): {result['error']}")
    logger.info(f"Installed {package}", extra=SUCCESS)


def resolve_apt_command(settings):
    """Prefer the alternate APT frontend when present."""
    preferred = settings["apt"]["preferred"]
    fallback = settings["apt"]["fallback"]

    if command_exists(preferred):
        logger.info(f"Using {preferred} for package updates.", extra=NOTICE)
        return preferred

    logger.info(f"{preferred.capitalize()} not found, falling back to {fallback}.", extra=NOTICE)
    return fallback


def resolve_tools(settings):
    """
    Pick the APT frontend, install missing required tools and freeze the
    result into an UpdateConfig.

    Flatpak is optional and never installed; its absence is recorded so the
    flatpak step can be skipped.

    Returns:
        UpdateConfig: Configuration passed to every update step

    Raises:
        FatalUpdateError: If a required tool could not be installed
    """
    apt_cmd = resolve_apt_command(settings)
    tools = settings["tools"]
    packages = settings["install_packages"]

    for tool in (apt_cmd, tools["timeshift"], tools["snap"], tools["fwupd"]):
        if not command_exists(tool):
            install_tool(tool, packages.get(tool, tool))

    flatpak_available = command_exists(tools["flatpak"])
    return build_config(settings, apt_cmd, flatpak_available)


def check_network(config):
    """Probe a well-known host once; fail if unreachable."""
    result = run_command(
        ["ping", "-c", "1", config.network_host],
        timeout=config.network_timeout,
        stream=False,
    )
    if not result['success']:
        raise FatalUpdateError("No internet connection. Please check your network settings.")
    logger.debug(f"Network reachable ({config.network_host})")


def free_space_kib(path="/"):
    """Free space available to unprivileged users, in KiB (as df reports it)."""
    return psutil.disk_usage(path).free // 1024


def check_disk_space(config):
    """Fail if free space on the root filesystem is below the minimum."""
    free_kib = free_space_kib(config.disk_path)
    required_gib = config.min_free_kib / (1024 * 1024)
    logger.debug(f"Free space on {config.disk_path}: {free_kib} KiB")

    if free_kib < config.min_free_kib:
        raise FatalUpdateError(
            f"Not enough disk space. At least {required_gib:g}GB free space is required."
        )
    return free_kib
