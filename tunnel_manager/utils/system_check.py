"""
System Check module: platform detection and tunnel binary discovery
"""

import platform
import os
import sys
import subprocess
import shutil
from pathlib import Path
from typing import Dict, List, Optional, Tuple
import logging

logger = logging.getLogger(__name__)

TUNNEL_BINARY_NAME = 'xray'


def is_root() -> bool:
    """Check if running with root privileges"""
    return os.geteuid() == 0 if hasattr(os, 'geteuid') else False


def is_windows() -> bool:
    """Check if running on Windows"""
    return platform.system().lower() == 'windows'


def check_command_exists(command: str) -> bool:
    """
    Check if a command exists in PATH

    Args:
        command: Command name to check

    Returns:
        bool: True if command exists
    """
    return shutil.which(command) is not None


def check_required_commands() -> Tuple[bool, List[str]]:
    """
    Check that the proxy configuration tools for this platform exist

    Returns:
        Tuple of (all_present, missing_commands)
    """
    required_commands = {
        'linux': ['gsettings'],
        'darwin': ['networksetup', 'defaults'],
        'windows': ['reg'],
    }

    system = platform.system().lower()
    commands = required_commands.get(system, [])

    missing = [cmd for cmd in commands if not check_command_exists(cmd)]
    return len(missing) == 0, missing


def candidate_binary_paths(configured: Optional[str] = None) -> List[Path]:
    """Locations searched for the tunnel binary, in priority order"""
    exe = TUNNEL_BINARY_NAME + ('.exe' if is_windows() else '')
    paths: List[Path] = []

    if configured:
        paths.append(Path(configured).expanduser())

    # Bundled next to the package or the frozen executable
    package_root = Path(__file__).resolve().parent.parent.parent
    paths.append(package_root / 'bin' / exe)
    if getattr(sys, 'frozen', False):
        paths.append(Path(sys.executable).parent / 'bin' / exe)

    on_path = shutil.which(exe)
    if on_path:
        paths.append(Path(on_path))

    paths.append(Path('/usr/local/bin') / TUNNEL_BINARY_NAME)
    return paths


def find_tunnel_binary(configured: Optional[str] = None) -> Optional[Path]:
    """Return the first existing tunnel binary, or None"""
    checked = candidate_binary_paths(configured)

    for path in checked:
        if path.is_file():
            logger.debug(f"Found tunnel binary at: {path}")
            return path

    logger.error(f"Tunnel binary not found! Checked paths: {[str(p) for p in checked]}")
    return None


def get_tunnel_version(binary: Path) -> str:
    """First line of `xray version`"""
    try:
        result = subprocess.run(
            [str(binary), 'version'],
            capture_output=True,
            text=True,
            timeout=5
        )
        output = (result.stdout or result.stderr).strip()
        return output.split('\n')[0] if output else 'unknown'
    except (OSError, subprocess.SubprocessError) as e:
        return f"Error getting version: {e}"


def get_system_info(configured_binary: Optional[str] = None) -> Dict:
    """Platform and tunnel binary information for diagnostics"""
    binary = find_tunnel_binary(configured_binary)
    commands_present, missing = check_required_commands()

    return {
        'platform': platform.system(),
        'platform_release': platform.release(),
        'arch': platform.machine(),
        'python_version': platform.python_version(),
        'is_root': is_root(),
        'tunnel_binary': str(binary) if binary else 'Not found',
        'tunnel_version': get_tunnel_version(binary) if binary else None,
        'proxy_tools_present': commands_present,
        'missing_commands': missing,
    }
