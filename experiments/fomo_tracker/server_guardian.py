import argparse
import os
import subprocess
import sys
import time
import urllib.error
import urllib.request
from datetime import datetime
from typing import Callable, List, Optional

import psutil

from app_config import load_config
from errors import ConfigError

DEFAULT_PORT = 8080


def _ts() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def _log(msg: str) -> None:
    print(f"[{_ts()}] {msg}", flush=True)


def _health_ok(url: str, timeout_sec: float) -> bool:
    try:
        req = urllib.request.Request(url=url, method="GET")
        with urllib.request.urlopen(req, timeout=float(timeout_sec)) as resp:
            status = int(getattr(resp, "status", 0) or 0)
            return 200 <= status < 300
    except (urllib.error.URLError, TimeoutError, OSError, ValueError):
        return False


def pids_on_port(port: int) -> List[int]:
    pids = set()
    for conn in psutil.net_connections(kind="inet"):
        laddr = conn.laddr
        if not laddr or laddr.port != port or conn.pid is None:
            continue
        if conn.status == psutil.CONN_LISTEN:
            pids.add(conn.pid)
    pids.discard(os.getpid())
    return sorted(pids)


def free_port(port: int, grace_sec: float = 3.0) -> int:
    """Terminates every process listening on port; returns how many were stopped."""
    _log(f"Checking for processes using port {port}...")
    try:
        pids = pids_on_port(port)
    except psutil.AccessDenied:
        _log("Not permitted to list sockets; skipping port cleanup.")
        return 0
    if not pids:
        _log(f"No processes found using port {port}.")
        return 0

    _log(f"Found {len(pids)} process(es) using port {port}.")
    procs = []
    for pid in pids:
        try:
            proc = psutil.Process(pid)
            _log(f"Terminating process with PID: {pid} ({proc.name()})...")
            proc.terminate()
            procs.append(proc)
        except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
            _log(f"Failed to terminate PID {pid}: {e}")

    _, alive = psutil.wait_procs(procs, timeout=grace_sec)
    for proc in alive:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass
    _log("Waiting for port to be released...")
    time.sleep(1.0)
    return len(procs)


def _stop_child(proc: subprocess.Popen, grace_sec: float = 10.0) -> None:
    if proc.poll() is not None:
        return
    try:
        proc.terminate()
    except OSError as e:
        _log(f"terminate failed: {e}")
    try:
        proc.wait(timeout=max(1.0, float(grace_sec)))
        return
    except subprocess.TimeoutExpired:
        pass
    try:
        proc.kill()
    except OSError as e:
        _log(f"kill failed: {e}")


def build_command(args: argparse.Namespace) -> List[str]:
    cmd = [args.python, "-m", "uvicorn", args.app, "--host", args.host, "--port", str(args.port)]
    if args.factory:
        cmd.append("--factory")
    cmd.extend(extra for extra in args.extra_arg if extra)
    return cmd


class ServerGuardian:
    """
    Keeps one uvicorn child alive.

    The child is restarted when it exits or when max_health_failures
    consecutive health checks fail. Restart delays double from
    restart_backoff_sec up to restart_backoff_max_sec and reset on the next
    healthy check.
    """

    def __init__(
        self,
        args: argparse.Namespace,
        spawn: Optional[Callable[[], subprocess.Popen]] = None,
        health_check: Optional[Callable[[], bool]] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.args = args
        self._spawn = spawn or self._spawn_uvicorn
        self._health_check = health_check or (lambda: _health_ok(args.health_url, args.health_timeout_sec))
        self._sleep = sleep
        self._clock = clock
        self.restarts = 0
        self.fail_streak = 0
        self.backoff = max(1.0, float(args.restart_backoff_sec))
        self.child: Optional[subprocess.Popen] = None
        self.next_health_at = 0.0

    def _env(self) -> dict:
        env = os.environ.copy()
        env["PYTHONUNBUFFERED"] = "1"
        for kv in self.args.env:
            if "=" not in kv:
                _log(f"Ignoring invalid --env '{kv}' (expected KEY=VALUE)")
                continue
            k, v = kv.split("=", 1)
            env[k.strip()] = v
        return env

    def _spawn_uvicorn(self) -> subprocess.Popen:
        cmd = build_command(self.args)
        _log(f"Starting server: {' '.join(cmd)}")
        return subprocess.Popen(cmd, cwd=self.args.workdir, env=self._env())

    def start(self):
        if self.args.free_port:
            free_port(self.args.port)
        self.child = self._spawn()
        self.next_health_at = self._clock() + max(0.0, float(self.args.startup_grace_sec))

    def _over_limit(self) -> bool:
        return self.args.max_restarts > 0 and self.restarts > self.args.max_restarts

    def restart(self, reason: str) -> bool:
        """Returns False when the restart budget is exhausted."""
        self.restarts += 1
        _log(f"{reason} Restart #{self.restarts}.")
        if self._over_limit():
            _log("Max restart limit reached. Exiting guardian.")
            _stop_child(self.child)
            return False
        _stop_child(self.child)
        self._sleep(self.backoff)
        self.backoff = min(float(self.args.restart_backoff_max_sec), self.backoff * 2.0)
        self.fail_streak = 0
        self.child = self._spawn()
        self.next_health_at = self._clock() + max(5.0, float(self.args.startup_grace_sec))
        return True

    def step(self) -> Optional[int]:
        """One supervision pass; returns an exit code once the guardian should stop."""
        code = self.child.poll()
        if code is not None:
            return None if self.restart(f"Server exited with code {code}.") else 1

        if self.args.no_healthcheck or self._clock() < self.next_health_at:
            return None

        if self._health_check():
            self.fail_streak = 0
            self.backoff = max(1.0, float(self.args.restart_backoff_sec))
        else:
            self.fail_streak += 1
            _log(f"Health check failed ({self.fail_streak}/{self.args.max_health_failures}) for {self.args.health_url}")
            if self.fail_streak >= self.args.max_health_failures:
                return None if self.restart("Restarting due to health failures.") else 2
        self.next_health_at = self._clock() + max(5.0, float(self.args.health_interval_sec))
        return None

    def run(self) -> int:
        started = self._clock()
        self.start()
        try:
            while True:
                if self.args.max_runtime_sec > 0 and self._clock() - started >= float(self.args.max_runtime_sec):
                    _log("Max guardian runtime reached, stopping.")
                    _stop_child(self.child)
                    return 0
                code = self.step()
                if code is not None:
                    return code
                self._sleep(1.0)
        except KeyboardInterrupt:
            _log("Guardian interrupted. Stopping child process.")
            _stop_child(self.child)
            return 0


def _default_port() -> int:
    try:
        return load_config().get_int("PORT")
    except ConfigError:
        return DEFAULT_PORT


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run the tracker under a local watchdog that frees the port and restarts on crash or health failures.",
    )
    parser.add_argument("--python", default=sys.executable, help="Python executable to run uvicorn.")
    parser.add_argument("--app", default="main:create_app", help="ASGI app (or factory) path for uvicorn.")
    parser.add_argument("--no-factory", dest="factory", action="store_false", help="--app is an app object, not a factory.")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=None, help="Defaults to PORT from the tracker config.")
    parser.add_argument(
        "--workdir",
        default=os.path.dirname(os.path.abspath(__file__)),
        help="Working directory for uvicorn process.",
    )
    parser.add_argument("--health-path", default="/api/health")
    parser.add_argument("--health-interval-sec", type=float, default=20.0)
    parser.add_argument("--health-timeout-sec", type=float, default=6.0)
    parser.add_argument("--startup-grace-sec", type=float, default=12.0)
    parser.add_argument("--max-health-failures", type=int, default=3)
    parser.add_argument("--restart-backoff-sec", type=float, default=3.0)
    parser.add_argument("--restart-backoff-max-sec", type=float, default=60.0)
    parser.add_argument("--max-restarts", type=int, default=0, help="0 means unlimited restarts.")
    parser.add_argument("--max-runtime-sec", type=float, default=0.0, help="0 means no runtime cap.")
    parser.add_argument("--no-healthcheck", action="store_true")
    parser.add_argument("--no-free-port", dest="free_port", action="store_false", help="Leave processes already on the port alone.")
    parser.add_argument("--extra-arg", action="append", default=[], help="Extra uvicorn args (repeatable).")
    parser.add_argument("--env", action="append", default=[], help="Extra env vars in KEY=VALUE format.")
    args = parser.parse_args(argv)
    args.max_health_failures = max(1, int(args.max_health_failures))
    args.port = max(1, int(args.port if args.port is not None else _default_port()))
    args.health_url = f"http://{args.host}:{args.port}{args.health_path}"
    return args


if __name__ == "__main__":
    raise SystemExit(ServerGuardian(parse_args()).run())
