"""
Xray process wrapper: start, readiness, exit observation, stop
"""

import subprocess
import threading
from pathlib import Path
from typing import Optional, Dict, Callable, List
import logging

from ..core.errors import ProxyBinaryMissing, ProxyStartupError, ProxyStartupTimeout
from ..utils.network_tools import wait_for_port
from ..utils.system_check import find_tunnel_binary
from .xray_config import write_config

logger = logging.getLogger(__name__)

ExitCallback = Callable[['TunnelProcess', Optional[int]], None]


class TunnelProcess:
    """Handle to one running tunnel process"""

    def __init__(self, popen: subprocess.Popen, config_file: Path,
                 on_exit: Optional[ExitCallback] = None):
        self.popen = popen
        self.config_file = config_file
        self._on_exit = on_exit
        self._stopping = False
        self._reader_thread = threading.Thread(
            target=self._read_output,
            daemon=True,
            name=f"Xray-Output-{popen.pid}"
        )

    @property
    def pid(self) -> int:
        return self.popen.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.popen.poll()

    @property
    def is_running(self) -> bool:
        return self.popen.poll() is None

    def start_reader(self):
        self._reader_thread.start()

    def _read_output(self):
        """Stream process output to the log, then report the exit"""
        try:
            if self.popen.stdout is not None:
                for line in iter(self.popen.stdout.readline, ''):
                    line = line.strip()
                    if not line:
                        continue
                    lowered = line.lower()
                    if '[error]' in lowered or 'failed to' in lowered:
                        logger.error(f"Xray: {line}")
                    elif '[warning]' in lowered:
                        logger.warning(f"Xray: {line}")
                    else:
                        logger.debug(f"Xray: {line}")
        except (OSError, ValueError) as e:
            logger.error(f"Error reading Xray output: {e}", exc_info=True)
        finally:
            self._report_exit()

    def _report_exit(self):
        code = self.popen.wait()
        logger.info(f"Xray process {self.pid} exited with code {code}")

        if not self._stopping and self._on_exit is not None:
            try:
                self._on_exit(self, code)
            except Exception as e:
                logger.error(f"Exit callback error: {e}", exc_info=True)

    def stop(self, timeout: float = 5.0):
        """Terminate gracefully, kill if it does not exit in time"""
        self._stopping = True

        if self.is_running:
            self.popen.terminate()
            try:
                self.popen.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                logger.warning(f"Xray process {self.pid} did not terminate, killing")
                self.popen.kill()
                self.popen.wait()

        if (self._reader_thread.is_alive()
                and threading.current_thread() is not self._reader_thread):
            self._reader_thread.join(timeout=timeout)


class ProxyProcessManager:
    """Owns the lifecycle of the external tunnel process"""

    def __init__(self, binary_path: Optional[str] = None,
                 config_file: Optional[Path] = None):
        self.binary_path = binary_path
        if config_file is None:
            config_file = Path.home() / '.config' / 'tunnel-manager' / 'xray_config.json'
        self.config_file = Path(config_file)
        self.current: Optional[TunnelProcess] = None
        self._lock = threading.Lock()

    def build_command(self, binary: Path, config_file: Path) -> List[str]:
        return [str(binary), '-c', str(config_file)]

    def start(self, config: Dict,
              on_exit: Optional[ExitCallback] = None) -> TunnelProcess:
        """
        Write config and spawn the tunnel process

        Args:
            config: Generated Xray configuration
            on_exit: Called with (handle, returncode) on unexpected exit

        Returns:
            TunnelProcess handle
        """
        with self._lock:
            if self.current is not None and self.current.is_running:
                logger.warning("Stopping previous tunnel process before starting a new one")
                self.current.stop()
                self.current = None

            binary = find_tunnel_binary(self.binary_path)
            if binary is None:
                raise ProxyBinaryMissing("Xray binary not found.")

            config_file = write_config(config, self.config_file)

            try:
                popen = subprocess.Popen(
                    self.build_command(binary, config_file),
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    stdin=subprocess.DEVNULL,
                    text=True,
                    encoding='utf-8',
                    errors='replace',
                    bufsize=1
                )
            except OSError as e:
                raise ProxyStartupError(f"Failed to start Xray: {e}") from e

            handle = TunnelProcess(popen, config_file, on_exit)
            handle.start_reader()
            self.current = handle

        logger.info(f"Started Xray (pid {handle.pid}) with config {config_file}")
        return handle

    def wait_until_ready(self, handle: TunnelProcess, host: str, port: int,
                         timeout: float = 10.0, interval: float = 0.2):
        """Poll the local port until it accepts connections"""
        logger.info("Waiting for Xray to initialize with active retry...")

        ready = wait_for_port(
            host, port,
            timeout=timeout,
            interval=interval,
            abort=lambda: not handle.is_running
        )
        if ready:
            logger.info(f"Proxy at {host}:{port} is ready.")
            return

        if not handle.is_running:
            raise ProxyStartupError(
                f"Xray exited with code {handle.returncode} before opening {host}:{port}"
            )
        raise ProxyStartupTimeout(f"Proxy connection timed out after {timeout}s")

    def stop(self, handle: Optional[TunnelProcess] = None):
        """Stop the given (or current) tunnel process"""
        with self._lock:
            target = handle or self.current
            if target is None:
                return

            logger.info("Stopping Xray process")
            target.stop()
            if target is self.current:
                self.current = None
