"""Name and version of the operating system the process runs on."""

from __future__ import annotations

import subprocess
import sys

UNKNOWN = "unknown"
_UNKNOWN_LINUX = "Linux (Unknown Distribution)"
_OS_RELEASE = "/etc/os-release"
_WINDOWS_VERSION_KEY = r"SOFTWARE\Microsoft\Windows NT\CurrentVersion"


def _platform() -> str:
    plat = sys.platform
    if plat.startswith("linux"):
        return "linux"
    if plat in ("win32", "cygwin"):
        return "windows"
    if plat.startswith("freebsd"):
        return "freebsd"
    return plat


def _os_release_pairs(path: str) -> list[tuple[str, str]]:
    with open(path, encoding="utf-8", errors="replace") as handle:
        pairs = []
        for line in handle.read().splitlines():
            key, sep, value = line.partition("=")
            if sep:
                pairs.append((key, value))
        return pairs


def _linux_name() -> str:
    try:
        pairs = _os_release_pairs(_OS_RELEASE)
    except OSError:
        return _UNKNOWN_LINUX
    name = _UNKNOWN_LINUX
    for key, value in pairs:
        if key == "Name":
            name = value.strip('"')
    return name


def _linux_version() -> str:
    try:
        pairs = _os_release_pairs(_OS_RELEASE)
    except OSError:
        return UNKNOWN
    version = UNKNOWN
    for key, value in pairs:
        if key == "VERSION":
            version = value.strip('"')
        elif key == "VERSION_ID" and version == "":
            version = value.strip('"')
    return version


def _command_output(*args: str) -> str | None:
    try:
        result = subprocess.run(list(args), capture_output=True, text=True, check=True)
    except (OSError, subprocess.CalledProcessError):
        return None
    return result.stdout


def _darwin_version() -> str:
    out = _command_output("sw_vers", "-productVersion")
    if out is None:
        return UNKNOWN
    return out.strip("\n")


def _freebsd_version() -> str:
    out = _command_output("uname", "-r")
    if out is None:
        return UNKNOWN
    return out.split("-")[0]


def _windows_version() -> str:
    try:
        import winreg
    except ImportError:
        return UNKNOWN
    try:
        key = winreg.OpenKey(
            winreg.HKEY_LOCAL_MACHINE, _WINDOWS_VERSION_KEY, 0, winreg.KEY_QUERY_VALUE
        )
    except OSError:
        return UNKNOWN

    def query(name: str):
        try:
            return winreg.QueryValueEx(key, name)[0]
        except OSError:
            return None

    with key:
        parts = []
        major = query("CurrentMajorVersionNumber")
        if major is not None:
            parts.append(str(major))
            minor = query("CurrentMinorVersionNumber")
            if minor is not None:
                parts.append(f".{minor}")
        else:
            parts.append(UNKNOWN)
        edition = query("EditionID")
        parts.append(f" {edition}" if edition is not None else " Unknown Edition")
        build = query("CurrentBuild")
        parts.append(f" Build {build}" if build is not None else " Unknown Build")
    return "".join(parts)


def os_name() -> str:
    """Return the operating system name (the distribution name on Linux)."""
    plat = _platform()
    if plat == "linux":
        return _linux_name()
    return plat


def os_version() -> str:
    """Return the operating system version, or "unknown"."""
    plat = _platform()
    if plat == "linux":
        return _linux_version()
    if plat == "darwin":
        return _darwin_version()
    if plat == "freebsd":
        return _freebsd_version()
    if plat == "windows":
        return _windows_version()
    return UNKNOWN